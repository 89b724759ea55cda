"""
Inbound vendor callbacks. Each one is routed to its story through the
correlation record written when the request was submitted; unknown ids are
acknowledged and dropped so vendors do not retry forever.
"""
import logging

from .assembly import AssemblyService
from .background import fire_and_forget
from .images import ImageService
from .models import JobKind, ResponseKind, StoryStatus
from .registry import JobRegistry
from .stories import StoryService

logger = logging.getLogger(__name__)

OPENAI_TERMINAL_EVENTS = {
    "response.completed",
    "response.failed",
    "response.cancelled",
    "response.incomplete",
}


class WebhookHandlers:
    def __init__(self, registry: JobRegistry, stories: StoryService, images: ImageService,
                 assembly: AssemblyService):
        self.registry = registry
        self.stories = stories
        self.images = images
        self.assembly = assembly

    async def handle_openai(self, payload: dict) -> dict:
        event_type = payload.get("type")
        response_id = (payload.get("data") or {}).get("id")
        logger.info(f"OpenAI webhook: {event_type} for {response_id}")
        if event_type not in OPENAI_TERMINAL_EVENTS or not response_id:
            return {"received": True, "handled": False}

        record = await self.registry.find_response(response_id)
        if not record or record.kind != ResponseKind.SCRIPT:
            logger.warning(f"No script request recorded for response {response_id}")
            return {"received": True, "handled": False}

        # The full response is fetched and processed after the vendor gets its 200.
        fire_and_forget(
            self.stories.handle_script_response(record.story_id, response_id),
            f"Script completion for story {record.story_id}",
        )
        return {"received": True, "handled": True, "story_id": record.story_id}

    async def handle_replicate(self, payload: dict) -> dict:
        pred_id = payload.get("id")
        logger.info(f"Replicate webhook: {pred_id} status={payload.get('status')}")
        record = await self.registry.find_response(pred_id) if pred_id else None
        if not record or record.kind not in (ResponseKind.IMAGE, ResponseKind.ANCHOR) or not record.job_id:
            logger.warning(f"No image job recorded for prediction {pred_id}")
            return {"received": True, "handled": False}

        kind = JobKind.IMAGE if record.kind == ResponseKind.IMAGE else JobKind.ANCHOR
        await self.images.handle_prediction(kind, record.story_id, record.job_id, payload)
        return {"received": True, "handled": True, "story_id": record.story_id}

    async def handle_cloudflare(self, payload: dict) -> dict:
        uid = payload.get("uid")
        state = (payload.get("status") or {}).get("state")
        logger.info(f"Cloudflare webhook: {uid} state={state} readyToStream={payload.get('readyToStream')}")
        story_id = await self._stream_story_id(uid, payload)
        if not story_id:
            logger.warning(f"No story recorded for stream {uid}")
            return {"received": True, "handled": False}

        if payload.get("readyToStream") or state == "ready":
            hls_url = (payload.get("playback") or {}).get("hls")
            completed = await self.assembly.complete_story(story_id, hls_url=hls_url)
            return {"received": True, "handled": completed, "story_id": story_id}

        if state == "error":
            reason = (payload.get("status") or {}).get("errorReasonText") or "stream processing failed"
            logger.error(f"Cloudflare Stream failed for story {story_id}: {reason}")
            failed = await self.registry.update_story_status(story_id, StoryStatus.VIDEO_FAILED)
            return {"received": True, "handled": failed, "story_id": story_id}

        return {"received": True, "handled": False, "story_id": story_id}

    async def _stream_story_id(self, uid, payload: dict):
        record = await self.registry.find_response(uid) if uid else None
        if record and record.kind == ResponseKind.VIDEO:
            return record.story_id
        # The uid is recorded only after the copy call returns; the copy names the video after its story.
        story_id = (payload.get("meta") or {}).get("name")
        if story_id and await self.registry.get_story(story_id):
            logger.info(f"Stream {uid} not recorded yet, routing by name to story {story_id}")
            return story_id
        return None
