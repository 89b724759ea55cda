import logging
from typing import Awaitable, Callable, Optional

from . import llm
from .background import fire_and_forget
from .events import StoryEventHub
from .images import ImageService
from .models import PodcastScript, ResponseKind, ResponseRecord, Story, StoryRequest, StoryStatus
from .music import MusicService
from .registry import JobRegistry
from .speech import SpeechService

logger = logging.getLogger(__name__)

ScriptSubmitter = Callable[[Story], Awaitable[str]]
ResponseFetcher = Callable[[str], Awaitable[object]]


class ScriptSubmissionError(RuntimeError):
    pass


def build_transcript(script: PodcastScript) -> str:
    return "\n\n".join(
        "\n".join(i.text for i in scene.inputs) for scene in script.scenes
    )


class StoryService:
    """Story intake, script generation, and fan-out into the generation phases."""

    def __init__(self, registry: JobRegistry, speech: SpeechService, music: MusicService,
                 images: Optional[ImageService] = None,
                 events: Optional[StoryEventHub] = None,
                 submit: ScriptSubmitter = llm.submit_script,
                 fetch: ResponseFetcher = llm.fetch_response):
        self.registry = registry
        self.speech = speech
        self.music = music
        self.images = images
        self.events = events
        self.submit = submit
        self.fetch = fetch

    async def create_story(self, request: StoryRequest) -> Story:
        story = Story(
            video=request.video,
            duration=request.duration,
            style=request.style,
            tone=request.tone,
            speakers=request.speakers,
            voices=request.voices,
            image_style=request.image_style,
            prompt=request.story,
        )
        await self.registry.create_story(story)
        logger.info(f"Creating story {story.id}: {request.story[:80]}")

        try:
            response_id = await self.submit(story)
        except Exception as e:
            logger.error(f"Script submission failed for story {story.id}: {e}")
            await self._fail(story.id, str(e))
            raise ScriptSubmissionError(f"Script generation could not be started: {e}") from e

        await self.registry.update_story_status(story.id, StoryStatus.PROCESSING, response_id=response_id)
        await self.registry.record_response(
            ResponseRecord(response_id=response_id, kind=ResponseKind.SCRIPT, story_id=story.id)
        )
        return await self.registry.get_story(story.id)

    async def handle_script_response(self, story_id: str, response_id: str):
        """Completion of the background script request, delivered by webhook."""
        story = await self.registry.get_story(story_id)
        if not story:
            logger.warning(f"Script response {response_id} for unknown story {story_id}")
            return
        if story.status != StoryStatus.PROCESSING:
            logger.info(f"Story {story_id} already past script generation ({story.status}), ignoring")
            return

        response = await self.fetch(response_id)
        status = getattr(response, "status", None)
        if status != "completed":
            logger.error(f"Script response {response_id} for story {story_id} ended as {status}")
            await self._fail(story_id, f"script response {status}")
            return

        try:
            script = llm.parse_script(getattr(response, "output_text", None))
        except llm.ScriptParseError as e:
            logger.error(f"Story {story_id}: {e}")
            await self._fail(story_id, str(e))
            return

        await self.handle_script(story, script)

    async def handle_script(self, story: Story, script: PodcastScript):
        if not await self.registry.update_story_status(
            story.id, StoryStatus.SCRIPT_COMPLETED, title=script.title, transcript=build_transcript(script)
        ):
            return
        logger.info(f"Story {story.id}: script completed with {len(script.scenes)} scenes")
        await self._publish(story.id, "story.script_completed", status=StoryStatus.SCRIPT_COMPLETED.value,
                            title=script.title, scenes=len(script.scenes))

        if story.video and self.images is not None:
            # Anchor rows first, so shots can find the anchors they wait on.
            anchors = await self.images.register_anchors(story.id, script.metadata.anchors)
            fire_and_forget(self.images.dispatch_anchors(story, anchors), f"Anchor generation for story {story.id}")

        fire_and_forget(self.speech.generate_audio(story, script), f"Audio generation for story {story.id}")
        music_prompt = script.metadata.musicPrompt or llm.build_music_prompt(story.style, story.tone)
        fire_and_forget(self.music.generate_music(story.id, music_prompt), f"Music generation for story {story.id}")

    async def _fail(self, story_id: str, reason: str):
        if await self.registry.update_story_status(story_id, StoryStatus.SCRIPT_FAILED):
            await self._publish(story_id, "story.script_failed", status=StoryStatus.SCRIPT_FAILED.value, error=reason)

    async def _publish(self, story_id: str, event_type: str, **payload):
        if self.events is not None:
            await self.events.publish(story_id, event_type, **payload)
