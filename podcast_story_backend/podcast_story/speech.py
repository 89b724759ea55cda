import os
import shutil
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from . import blob_store, elevenlabs_client, media, settings
from .background import fire_and_forget
from .completion import StoryCompletionService
from .events import StoryEventHub
from .images import ImageService
from .limiter import ConcurrencyLimiter
from .models import AudioSegment, AudioStatus, DialogueInput, JobKind, PodcastScript, Scene, Story, StoryStatus
from .registry import JobRegistry

logger = logging.getLogger(__name__)

Synthesizer = Callable[[List[DialogueInput]], Awaitable[bytes]]
Transcriber = Callable[[bytes], Awaitable[dict]]
Uploader = Callable[[bytes, str, str], Awaitable[str]]


class SpeechService:
    """
    Per-scene narration under a process-wide cap on concurrent synthesis calls.

    A scene that fails is recorded as a failed segment; the batch still
    settles and the story then moves to ``audio_failed`` instead of being
    mixed.
    """

    def __init__(self, registry: JobRegistry, evaluator: StoryCompletionService,
                 images: Optional[ImageService] = None,
                 events: Optional[StoryEventHub] = None,
                 synthesize: Synthesizer = elevenlabs_client.text_to_dialogue,
                 transcribe: Transcriber = elevenlabs_client.speech_to_text,
                 upload: Uploader = blob_store.upload,
                 max_concurrent: int = settings.MAX_CONCURRENT_CALLS):
        self.registry = registry
        self.evaluator = evaluator
        self.images = images
        self.events = events
        self.synthesize = synthesize
        self.transcribe = transcribe
        self.upload = upload
        self.limiter = ConcurrencyLimiter(max_concurrent, name="speech")

    async def generate_audio(self, story: Story, script: PodcastScript):
        work_dir = os.path.join(settings.TEMP_ROOT, story.id, "audio")
        os.makedirs(work_dir, exist_ok=True)
        try:
            await self._generate(story, script, work_dir)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    async def _generate(self, story: Story, script: PodcastScript, work_dir: str):
        segments = []
        for number, scene in enumerate(script.scenes, start=1):
            text = " ".join(i.text for i in scene.inputs)
            segment = AudioSegment(
                story_id=story.id,
                scene_id=scene.id,
                scene_number=number,
                text_content=text,
                character_count=len(text),
            )
            await self.registry.create_job(segment)
            segments.append(segment)
        logger.info(f"Generating audio for story {story.id}: {len(segments)} scenes")

        async def on_error(index: int, error: BaseException):
            await self.registry.mark_job_terminal(JobKind.AUDIO, segments[index].id, AudioStatus.FAILED,
                                                  error=str(error) or type(error).__name__)

        units = [
            lambda scene=scene, segment=segment: self._scene_unit(story, scene, segment, work_dir)
            for scene, segment in zip(script.scenes, segments)
        ]
        outcomes = await self.limiter.run_all(units, on_error=on_error)

        failed = [o.index for o in outcomes if not o.ok]
        if failed:
            logger.error(f"Story {story.id}: {len(failed)} of {len(segments)} scenes failed audio generation")
            await self._fail(story.id, f"{len(failed)} scene(s) failed")
            return

        try:
            paths = [o.result for o in sorted(outcomes, key=lambda o: o.index)]
            audio_url, subtitles = await self._mix(story.id, paths, work_dir)
        except Exception as e:
            logger.error(f"Story {story.id}: mixing narration failed: {e}")
            await self._fail(story.id, str(e))
            return

        if not await self.registry.update_story_status(story.id, StoryStatus.AUDIO_COMPLETED,
                                                       audio_url=audio_url, subtitles=subtitles):
            return
        await self._publish(story.id, "story.audio_completed", status=StoryStatus.AUDIO_COMPLETED.value,
                            audio_url=audio_url)
        await self.evaluator.check_story_completion(story.id)

    async def _scene_unit(self, story: Story, scene: Scene, segment: AudioSegment, work_dir: str) -> str:
        audio = await self.synthesize(scene.inputs)
        path = os.path.join(work_dir, f"scene_{segment.scene_number:03d}.mp3")
        media.write_bytes(path, audio)
        duration = await asyncio.to_thread(media.probe_duration, path)
        url = await self.upload(audio, f"stories/{story.id}/audio/scene_{segment.scene_number:03d}.mp3", "audio/mpeg")

        shots = []
        if story.video and self.images is not None:
            # Rows exist before this scene can count as done.
            shots = await self.images.register_scene_shots(story, scene, segment.scene_number, duration)

        await self.registry.mark_job_terminal(JobKind.AUDIO, segment.id, AudioStatus.COMPLETED,
                                              media_url=url, duration=duration)
        logger.info(f"Story {story.id}: scene {scene.id} audio completed ({duration:.1f}s)")
        if shots:
            fire_and_forget(self.images.dispatch_shots(story.id, shots),
                            f"Image generation for story {story.id} scene {scene.id}")
        return path

    async def _mix(self, story_id: str, paths: List[str], work_dir: str):
        out_path = os.path.join(work_dir, "narration.mp3")
        await asyncio.to_thread(media.concat_audio, paths, out_path)
        with open(out_path, "rb") as f:
            data = f.read()
        audio_url = await self.upload(data, f"stories/{story_id}/audio/narration.mp3", "audio/mpeg")
        return audio_url, await self._subtitles(story_id, data)

    async def _subtitles(self, story_id: str, data: bytes) -> dict:
        try:
            return await self.transcribe(data)
        except Exception as e:
            logger.warning(f"Story {story_id}: subtitle generation failed, continuing without: {e}")
            return {}

    async def _fail(self, story_id: str, reason: str):
        if await self.registry.update_story_status(story_id, StoryStatus.AUDIO_FAILED):
            await self._publish(story_id, "story.audio_failed", status=StoryStatus.AUDIO_FAILED.value, error=reason)

    async def _publish(self, story_id: str, event_type: str, **payload):
        if self.events is not None:
            await self.events.publish(story_id, event_type, **payload)
