"""
Story completion evaluation.

Script, per-scene audio, per-shot images and music all finish out of order
and from different callback sources, so no single callback knows it is the
last one. Every completion handler therefore calls
``check_story_completion`` after its own registry write; the check recomputes
readiness from live registry counts and fires the next phase at most once.
"""
import logging
import traceback
from typing import Any, Awaitable, Callable, Dict, Optional

from . import settings
from .background import fire_and_forget
from .events import StoryEventHub
from .models import (
    IMAGE_FAILED_STATUSES,
    IMAGE_NON_TERMINAL_STATUSES,
    CompletionStatus,
    ImageStatus,
    ImagesCompletion,
    JobKind,
    MusicStatus,
    Story,
    StoryStatus,
)
from .registry import JobRegistry

logger = logging.getLogger(__name__)

PhaseTrigger = Callable[[str], Awaitable[Any]]

# Past the ready marker; a check on these is always a no-op.
_SETTLED_STATUSES = {
    StoryStatus.DO_COMPLETED.value,
    StoryStatus.COMPLETED.value,
}


class _Evaluation:
    """In-flight marker for one story. ``rerun`` is set by callers that arrive mid-check."""

    __slots__ = ("rerun",)

    def __init__(self):
        self.rerun = False


class StoryCompletionService:
    """
    Decides whether a story's generation is complete enough to proceed.

    Ready means: narration mixed (story at ``audio_completed`` with an audio
    URL), every dispatched image terminal with a success rate of at least
    ``min_image_success_rate``, and music completed. Audio-only stories skip
    the image gate.

    The in-flight map only deduplicates within this process. Across
    instances the at-most-once guarantee rests on ``mark_story_ready``,
    which the KV registry implements as a conditional write.
    """

    def __init__(self, registry: JobRegistry, phase_trigger: Optional[PhaseTrigger] = None,
                 min_image_success_rate: float = settings.MIN_IMAGE_SUCCESS_RATE,
                 events: Optional[StoryEventHub] = None):
        self.registry = registry
        self.phase_trigger = phase_trigger
        self.min_image_success_rate = settings.validate_success_rate(min_image_success_rate)
        self.events = events
        self._in_flight: Dict[str, _Evaluation] = {}

    def is_evaluating(self, story_id: str) -> bool:
        return story_id in self._in_flight

    async def check_story_completion(self, story_id: str) -> bool:
        """
        Re-evaluate ``story_id`` and trigger the next phase if it just became ready.

        Safe to call redundantly and concurrently; never raises. Returns True
        only for the call that crossed the ready threshold.
        """
        marker = self._in_flight.get(story_id)
        if marker is not None:
            # The running check will look again once it finishes.
            marker.rerun = True
            logger.info(f"Story completion check already in progress for: {story_id}")
            return False

        marker = _Evaluation()
        self._in_flight[story_id] = marker
        try:
            while True:
                marker.rerun = False
                crossed = await self._evaluate(story_id)
                if crossed or not marker.rerun:
                    return crossed
                logger.info(f"Story {story_id}: state changed during check, re-evaluating")
        finally:
            self._in_flight.pop(story_id, None)

    async def _evaluate(self, story_id: str) -> bool:
        try:
            logger.info(f"Checking story completion for: {story_id}")

            story = await self.registry.get_story(story_id)
            if not story:
                logger.warning(f"Story not found: {story_id}")
                return False

            if story.status in _SETTLED_STATUSES or story.ready_at is not None:
                logger.info(f"Story already ready or completed: {story_id} ({story.status})")
                return False

            if not self.check_audio_completion(story):
                logger.info(f"Story {story_id}: Audio not ready (status={story.status})")
                return False

            images = None
            if story.video:
                images = await self.check_images_completion(story_id)
                if not images.allAttempted:
                    logger.info(
                        f"Story {story_id}: Images not ready - still in progress: {images.nonTerminal} "
                        f"(completed {images.completed}/{images.total})"
                    )
                    return False
                if not images.acceptable:
                    logger.info(
                        f"Story {story_id}: Images below threshold "
                        f"({images.successRate * 100:.1f}% < {self.min_image_success_rate * 100:.0f}%)"
                    )
                    return False

            if not await self.check_music_completion(story_id):
                logger.info(f"Story {story_id}: Music not ready")
                return False

            if not await self.registry.mark_story_ready(story_id):
                logger.info(f"Story {story_id}: ready marker already set elsewhere, not triggering again")
                return False

            if images is not None:
                logger.info(
                    f"Story ready for assembly: {story_id} ({images.completed}/{images.total} images, "
                    f"{images.successRate * 100:.1f}% success rate)"
                )
            else:
                logger.info(f"Story ready for assembly: {story_id} (audio-only)")

            await self._publish(story_id, "story.ready", status=StoryStatus.AUDIO_COMPLETED.value)
            self._trigger_next_phase(story_id)
            return True
        except Exception:
            logger.error(f"Error checking story completion for {story_id}: {traceback.format_exc()}")
            return False

    @staticmethod
    def check_audio_completion(story: Story) -> bool:
        # Narration is ready once it is mixed, uploaded and the status says so.
        return bool(story.audio_url) and story.status == StoryStatus.AUDIO_COMPLETED

    async def check_images_completion(self, story_id: str) -> ImagesCompletion:
        """
        Every dispatched shot must be terminal before the success threshold
        applies, so an early burst of failures can never pass a partially
        dispatched population.
        """
        try:
            total = await self.registry.count_by_status(story_id, JobKind.IMAGE)
            completed = await self.registry.count_by_status(story_id, JobKind.IMAGE, [ImageStatus.COMPLETED])
            failed = await self.registry.count_by_status(story_id, JobKind.IMAGE, IMAGE_FAILED_STATUSES)
            non_terminal = await self.registry.count_by_status(story_id, JobKind.IMAGE, IMAGE_NON_TERMINAL_STATUSES)
        except Exception:
            logger.error(f"Error checking images completion for {story_id}: {traceback.format_exc()}")
            return ImagesCompletion()

        if total == 0:
            return ImagesCompletion()

        success_rate = completed / total
        all_attempted = non_terminal == 0
        acceptable = all_attempted and success_rate >= self.min_image_success_rate

        logger.info(
            f"Story {story_id}: images - total={total}, completed={completed}, failed={failed}, "
            f"inProgress={non_terminal}, successRate={success_rate * 100:.1f}%, "
            f"allAttempted={all_attempted}, acceptable={acceptable}"
        )
        return ImagesCompletion(
            acceptable=acceptable,
            total=total,
            completed=completed,
            failed=failed,
            missing=total - completed,
            nonTerminal=non_terminal,
            allAttempted=all_attempted,
            successRate=success_rate,
        )

    async def check_music_completion(self, story_id: str) -> bool:
        try:
            tracks = await self.registry.list_jobs(story_id, JobKind.MUSIC)
        except Exception:
            logger.error(f"Error checking music completion for {story_id}: {traceback.format_exc()}")
            return False
        return any(t.status == MusicStatus.COMPLETED and t.media_url for t in tracks)

    def _trigger_next_phase(self, story_id: str):
        if self.phase_trigger is None:
            logger.warning(f"No next phase configured for story {story_id}")
            return
        logger.info(f"Triggering next phase for story: {story_id}")
        fire_and_forget(self.phase_trigger(story_id), f"Next phase for story {story_id}")

    async def _publish(self, story_id: str, event_type: str, **payload):
        if self.events is not None:
            await self.events.publish(story_id, event_type, **payload)

    async def get_completion_status(self, story_id: str) -> Optional[CompletionStatus]:
        story = await self.registry.get_story(story_id)
        if not story:
            return None
        audio = self.check_audio_completion(story)
        images = await self.check_images_completion(story_id)
        music = await self.check_music_completion(story_id)
        images_ok = images.acceptable or not story.video
        ready = story.ready_at is not None or story.status in _SETTLED_STATUSES
        return CompletionStatus(
            story_id=story_id,
            status=story.status,
            audio=audio or ready,
            images=images,
            images_required=story.video,
            music=music,
            overall=ready or (audio and images_ok and music),
        )
