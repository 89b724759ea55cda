import asyncio

import pytest

from conftest import create_story
from podcast_story.models import (
    AnchorStatus,
    ImageJob,
    ImageStatus,
    JobKind,
    ResponseKind,
    ResponseRecord,
    StoryStatus,
    can_transition,
    is_terminal,
)


def test_forward_path_is_allowed():
    path = ["pending", "processing", "script_completed", "audio_completed", "do_completed", "completed"]
    for current, new in zip(path, path[1:]):
        assert can_transition(current, new)


def test_backward_and_sideways_writes_are_rejected():
    assert not can_transition(StoryStatus.AUDIO_COMPLETED, StoryStatus.SCRIPT_COMPLETED)
    assert not can_transition(StoryStatus.COMPLETED, StoryStatus.AUDIO_COMPLETED)
    assert not can_transition(StoryStatus.AUDIO_COMPLETED, StoryStatus.AUDIO_COMPLETED)
    assert not can_transition(StoryStatus.AUDIO_FAILED, StoryStatus.AUDIO_COMPLETED)


def test_terminal_statuses_accept_enums_and_strings():
    assert is_terminal(JobKind.IMAGE, ImageStatus.TERMINAL_FAILED)
    assert is_terminal(JobKind.IMAGE, "completed")
    assert not is_terminal(JobKind.IMAGE, ImageStatus.GENERATING)
    assert is_terminal(JobKind.ANCHOR, AnchorStatus.NOT_NEEDED)


@pytest.mark.asyncio
async def test_story_status_only_moves_forward(registry):
    story = await create_story(registry, statuses=[StoryStatus.PROCESSING, StoryStatus.SCRIPT_COMPLETED])
    assert await registry.update_story_status(story.id, StoryStatus.PROCESSING) is False
    assert (await registry.get_story(story.id)).status == StoryStatus.SCRIPT_COMPLETED
    assert await registry.update_story_status(story.id, StoryStatus.AUDIO_FAILED) is True
    assert await registry.update_story_status(story.id, StoryStatus.AUDIO_COMPLETED) is False


@pytest.mark.asyncio
async def test_update_story_rejects_status_and_ready_marker(registry):
    story = await create_story(registry)
    with pytest.raises(ValueError):
        await registry.update_story(story.id, status="completed")
    with pytest.raises(ValueError):
        await registry.update_story(story.id, ready_at=None)
    updated = await registry.update_story(story.id, title="A title")
    assert updated.title == "A title"


@pytest.mark.asyncio
async def test_status_update_validates_fields_first(registry):
    story = await create_story(registry, statuses=[StoryStatus.PROCESSING])

    with pytest.raises(ValueError):
        await registry.update_story_status(story.id, StoryStatus.SCRIPT_COMPLETED, duration="long")
    with pytest.raises(ValueError):
        await registry.update_story_status(story.id, StoryStatus.SCRIPT_COMPLETED, ready_at=None)

    stored = await registry.get_story(story.id)
    assert stored.status == StoryStatus.PROCESSING
    assert stored.duration == 5


@pytest.mark.asyncio
async def test_ready_marker_requires_audio_completed(registry):
    story = await create_story(registry, statuses=[StoryStatus.PROCESSING])
    assert await registry.mark_story_ready(story.id) is False
    assert await registry.update_story_status(story.id, StoryStatus.SCRIPT_COMPLETED)
    assert await registry.update_story_status(story.id, StoryStatus.AUDIO_COMPLETED)
    assert await registry.mark_story_ready(story.id) is True
    assert await registry.mark_story_ready(story.id) is False


@pytest.mark.asyncio
async def test_concurrent_ready_marks_succeed_once(registry):
    story = await create_story(registry, statuses=[
        StoryStatus.PROCESSING, StoryStatus.SCRIPT_COMPLETED, StoryStatus.AUDIO_COMPLETED,
    ])
    results = await asyncio.gather(*(registry.mark_story_ready(story.id) for _ in range(10)))
    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_job_resolves_at_most_once(registry):
    story = await create_story(registry)
    job = ImageJob(story_id=story.id, scene_id="scene_1", scene_number=1, shot_number=1, duration=5)
    await registry.create_job(job)

    assert await registry.update_job(JobKind.IMAGE, job.id, status=ImageStatus.PROCESSING, response_id="p1")
    assert await registry.mark_job_terminal(JobKind.IMAGE, job.id, ImageStatus.COMPLETED, media_url="https://x/1.jpg")
    # The slower of webhook and poll loses.
    assert await registry.mark_job_terminal(JobKind.IMAGE, job.id, ImageStatus.FAILED, error="late") is False
    assert await registry.update_job(JobKind.IMAGE, job.id, status=ImageStatus.PROCESSING) is False

    stored = await registry.get_job(JobKind.IMAGE, job.id)
    assert stored.status == ImageStatus.COMPLETED
    assert stored.media_url == "https://x/1.jpg"
    assert stored.error is None


@pytest.mark.asyncio
async def test_terminal_mark_requires_terminal_status(registry):
    story = await create_story(registry)
    job = ImageJob(story_id=story.id, scene_id="scene_1", scene_number=1, shot_number=1, duration=5)
    await registry.create_job(job)
    with pytest.raises(ValueError):
        await registry.mark_job_terminal(JobKind.IMAGE, job.id, ImageStatus.PROCESSING)


@pytest.mark.asyncio
async def test_counts_and_copies(registry):
    story = await create_story(registry)
    for shot, status in enumerate([ImageStatus.COMPLETED, ImageStatus.FAILED, ImageStatus.PENDING], start=1):
        await registry.create_job(ImageJob(story_id=story.id, scene_id="scene_1", scene_number=1,
                                           shot_number=shot, duration=5, status=status))

    assert await registry.count_by_status(story.id, JobKind.IMAGE) == 3
    assert await registry.count_by_status(story.id, JobKind.IMAGE, [ImageStatus.COMPLETED]) == 1
    assert await registry.count_by_status(story.id, JobKind.IMAGE, ["failed", "terminal_failed"]) == 1
    assert await registry.count_by_status(story.id, JobKind.AUDIO) == 0

    jobs = await registry.list_jobs(story.id, JobKind.IMAGE)
    jobs[0].status = ImageStatus.FAILED
    assert await registry.count_by_status(story.id, JobKind.IMAGE, [ImageStatus.COMPLETED]) == 1


@pytest.mark.asyncio
async def test_responses_round_trip(registry):
    await registry.record_response(ResponseRecord(response_id="resp_1", kind=ResponseKind.SCRIPT, story_id="s1"))
    record = await registry.find_response("resp_1")
    assert record.kind == ResponseKind.SCRIPT
    assert record.story_id == "s1"
    assert await registry.find_response("nope") is None
