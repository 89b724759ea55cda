import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class StoryEventHub:
    """
    Fan-out of story progress events to WebSocket subscribers, keyed by story id.

    Publishing never raises: a story with no listeners is a no-op and a
    socket that fails to receive is dropped.
    """

    def __init__(self):
        self._clients: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, story_id: str, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self._clients.setdefault(story_id, set()).add(websocket)
        logger.info(f"WebSocket subscribed to story {story_id} ({self.subscriber_count(story_id)} total)")

    async def disconnect(self, story_id: str, websocket: WebSocket):
        async with self._lock:
            clients = self._clients.get(story_id)
            if clients:
                clients.discard(websocket)
                if not clients:
                    self._clients.pop(story_id, None)
        logger.info(f"WebSocket unsubscribed from story {story_id}")

    def subscriber_count(self, story_id: str) -> int:
        return len(self._clients.get(story_id, ()))

    async def publish(self, story_id: str, event_type: str, **payload):
        clients = list(self._clients.get(story_id, ()))
        if not clients:
            return
        message = {
            "type": event_type,
            "story_id": story_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        dead = []
        for websocket in clients:
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Dropping WebSocket for story {story_id}: {e}")
                dead.append(websocket)
        for websocket in dead:
            await self.disconnect(story_id, websocket)
