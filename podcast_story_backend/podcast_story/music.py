import re
import random
import logging
from typing import Awaitable, Callable, Optional

from . import blob_store, elevenlabs_client, settings
from .completion import StoryCompletionService
from .events import StoryEventHub
from .models import JobKind, MusicStatus, MusicTrack
from .prompts import AMBIENT_DESCRIPTORS, AMBIENT_SUFFIX, ENERGETIC_REPLACEMENTS, ENERGETIC_TERMS
from .registry import JobRegistry

logger = logging.getLogger(__name__)

Composer = Callable[[str, int], Awaitable[bytes]]
Uploader = Callable[[bytes, str, str], Awaitable[str]]


def build_ambient_prompt(base: str, descriptor: Optional[str] = None) -> str:
    """Soften a music prompt into a background bed that sits under speech."""
    prompt = base.lower()
    for term in ENERGETIC_TERMS:
        prompt = re.sub(rf"\b{re.escape(term)}\b", "", prompt)
    for word, calm in ENERGETIC_REPLACEMENTS.items():
        prompt = re.sub(rf"\b{word}\b", calm, prompt)
    prompt = re.sub(r"\s*,\s*(,\s*)+", ", ", prompt)
    prompt = re.sub(r"\s+,", ",", prompt)
    prompt = re.sub(r"\s{2,}", " ", prompt).strip(" ,")
    descriptor = descriptor or random.choice(AMBIENT_DESCRIPTORS)
    return f"{descriptor} {prompt}, {AMBIENT_SUFFIX}" if prompt else f"{descriptor}, {AMBIENT_SUFFIX}"


class MusicService:
    def __init__(self, registry: JobRegistry, evaluator: StoryCompletionService,
                 events: Optional[StoryEventHub] = None,
                 compose: Composer = elevenlabs_client.compose_music,
                 upload: Uploader = blob_store.upload,
                 music_length_ms: int = settings.MUSIC_LENGTH_MS):
        self.registry = registry
        self.evaluator = evaluator
        self.events = events
        self.compose = compose
        self.upload = upload
        self.music_length_ms = music_length_ms

    async def generate_music(self, story_id: str, prompt: str) -> MusicTrack:
        ambient = build_ambient_prompt(prompt)
        track = MusicTrack(story_id=story_id, prompt=ambient, duration_ms=self.music_length_ms)
        await self.registry.create_job(track)
        logger.info(f"Generating background music for story {story_id}: {ambient[:120]}")

        try:
            data = await self.compose(ambient, self.music_length_ms)
            url = await self.upload(data, f"stories/{story_id}/music/{track.id}.mp3", "audio/mpeg")
        except Exception as e:
            # No retry: the story stays below the ready threshold.
            logger.error(f"Music generation failed for story {story_id}: {e}")
            await self.registry.mark_job_terminal(JobKind.MUSIC, track.id, MusicStatus.FAILED, error=str(e))
            await self._publish(story_id, "music.failed", job_id=track.id, error=str(e))
            return track

        await self.registry.mark_job_terminal(JobKind.MUSIC, track.id, MusicStatus.COMPLETED, media_url=url)
        logger.info(f"Music completed for story {story_id}")
        await self._publish(story_id, "music.completed", job_id=track.id)
        await self.evaluator.check_story_completion(story_id)
        return track

    async def _publish(self, story_id: str, event_type: str, **payload):
        if self.events is not None:
            await self.events.publish(story_id, event_type, **payload)
