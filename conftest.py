"""
Pytest Configuration and Fixtures

Shared fixtures for all tests. Nothing here reaches the network or ffmpeg.
"""
import pytest
from unittest.mock import AsyncMock

from podcast_story import settings
from podcast_story.completion import StoryCompletionService
from podcast_story.events import StoryEventHub
from podcast_story.models import (
    AudioSegment,
    AudioStatus,
    ImageJob,
    ImageStatus,
    MusicStatus,
    MusicTrack,
    PodcastScript,
    Story,
    StoryStatus,
)
from podcast_story.registry import InMemoryJobRegistry

# Forward path a story takes to become ready for assembly
READY_PATH = (StoryStatus.PROCESSING, StoryStatus.SCRIPT_COMPLETED, StoryStatus.AUDIO_COMPLETED)


@pytest.fixture
def registry():
    return InMemoryJobRegistry()


@pytest.fixture
def events():
    return StoryEventHub()


@pytest.fixture
def phase_trigger():
    return AsyncMock(return_value=None)


@pytest.fixture
def evaluator(registry, phase_trigger, events):
    return StoryCompletionService(registry, phase_trigger=phase_trigger, events=events)


@pytest.fixture(autouse=True)
def temp_root(tmp_path, monkeypatch):
    root = tmp_path / "work"
    monkeypatch.setattr(settings, "TEMP_ROOT", str(root))
    return root


async def create_story(registry, video=True, statuses=(), **fields) -> Story:
    story = Story(video=video, voices=["voice-a"], prompt="The lighthouse keeper's last night", **fields)
    await registry.create_story(story)
    for status in statuses:
        assert await registry.update_story_status(story.id, status)
    return await registry.get_story(story.id)


async def audio_ready_story(registry, video=True) -> Story:
    story = await create_story(registry, video=video, statuses=READY_PATH[:2])
    assert await registry.update_story_status(
        story.id, StoryStatus.AUDIO_COMPLETED, audio_url="https://cdn.test/narration.mp3"
    )
    segment = AudioSegment(story_id=story.id, scene_id="scene_1", scene_number=1,
                           status=AudioStatus.COMPLETED, media_url="https://cdn.test/scene_1.mp3")
    await registry.create_job(segment)
    return await registry.get_story(story.id)


async def add_images(registry, story_id: str, statuses, scene_number=1):
    jobs = []
    for shot, status in enumerate(statuses, start=1):
        job = ImageJob(
            story_id=story_id,
            scene_id=f"scene_{scene_number}",
            scene_number=scene_number,
            shot_number=shot,
            duration=5.0,
            status=status,
            media_url=f"https://cdn.test/{story_id}/{scene_number}_{shot}.jpg" if status == ImageStatus.COMPLETED else None,
        )
        await registry.create_job(job)
        jobs.append(job)
    return jobs


async def add_music(registry, story_id: str, status=MusicStatus.COMPLETED) -> MusicTrack:
    track = MusicTrack(
        story_id=story_id,
        status=status,
        prompt="soft ambient",
        media_url="https://cdn.test/music.mp3" if status == MusicStatus.COMPLETED else None,
    )
    await registry.create_job(track)
    return track


@pytest.fixture
def sample_script() -> PodcastScript:
    return PodcastScript.model_validate({
        "title": "The Last Lighthouse",
        "totalDuration": 60,
        "estimatedWordsPerMinute": 160,
        "scenes": [
            {
                "id": "scene_1",
                "startTime": 0,
                "duration": 12,
                "wordCount": 32,
                "image_prompt": "A lighthouse on a cliff at dusk",
                "characters": [{"name": "Keeper Ada", "uuid": "char_ada12345"}],
                "setting": {"name": "North Light", "uuid": "setting_north123"},
                "inputs": [
                    {"text": "Welcome back to the show.", "voice_id": "voice-a"},
                    {"text": "Tonight we climb the North Light.", "voice_id": "voice-a"},
                ],
            },
            {
                "id": "scene_2",
                "startTime": 12,
                "duration": 7,
                "wordCount": 18,
                "image_prompt": "Storm over the sea, lantern glowing",
                "characters": [{"name": "Keeper Ada", "uuid": "char_ada12345"}],
                "inputs": [{"text": "The storm arrived at midnight.", "voice_id": "voice-a"}],
            },
        ],
        "metadata": {
            "musicPrompt": "mysterious documentary background instrumental",
            "anchors": {
                "characters": [
                    {"uuid": "char_ada12345", "name": "Keeper Ada", "description": "weathered keeper", "appearances": 2},
                ],
                "settings": [
                    {"uuid": "setting_north123", "name": "North Light", "description": "stone tower", "appearances": 1},
                ],
            },
        },
    })
