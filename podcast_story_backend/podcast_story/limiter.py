import asyncio
import logging
import traceback
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)

Unit = Callable[[], Awaitable[Any]]
ErrorHandler = Callable[[int, BaseException], Awaitable[None]]


@dataclass
class UnitOutcome:
    """Terminal result of one unit of work."""
    index: int
    ok: bool
    result: Any = None
    error: Optional[BaseException] = None


class ConcurrencyLimiter:
    """
    Caps how many outbound generation calls run at once for one fan-out.

    Settle semantics: a failing unit never cancels its siblings. Each
    failure is handed to ``on_error`` (typically a per-job ``failed``
    update) and the batch keeps going until every unit is terminal.
    """

    def __init__(self, capacity: int, name: str = "limiter"):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.name = name
        self._semaphore = asyncio.Semaphore(capacity)
        self.active = 0
        self.peak = 0
        self.waiting = 0

    @property
    def idle(self) -> bool:
        return self.active == 0 and self.waiting == 0

    async def run(self, unit: Unit, index: int = 0, on_error: Optional[ErrorHandler] = None) -> UnitOutcome:
        self.waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self.waiting -= 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            result = await unit()
            return UnitOutcome(index=index, ok=True, result=result)
        except Exception as e:
            logger.error(f"[{self.name}] unit {index} failed: {e}")
            if on_error is not None:
                try:
                    await on_error(index, e)
                except Exception:
                    logger.error(f"[{self.name}] failure handler for unit {index} raised: {traceback.format_exc()}")
            return UnitOutcome(index=index, ok=False, error=e)
        finally:
            self.active -= 1
            self._semaphore.release()

    async def run_all(self, units: Sequence[Unit], on_error: Optional[ErrorHandler] = None) -> List[UnitOutcome]:
        """Run every unit, at most ``capacity`` at a time, and wait for all of them."""
        if not units:
            return []
        logger.info(f"[{self.name}] running {len(units)} units (max {self.capacity} concurrent)")
        outcomes = await asyncio.gather(*(self.run(unit, i, on_error) for i, unit in enumerate(units)))
        failed = sum(1 for o in outcomes if not o.ok)
        logger.info(f"[{self.name}] settled {len(outcomes)} units: {len(outcomes) - failed} ok, {failed} failed")
        return list(outcomes)
