import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from conftest import audio_ready_story, create_story
from podcast_story import background
from podcast_story.assembly import AssemblyService
from podcast_story.models import (
    JobKind,
    ResponseKind,
    ResponseRecord,
    StoryRequest,
    StoryStatus,
)
from podcast_story.stories import ScriptSubmissionError, StoryService, build_transcript
from podcast_story.webhooks import WebhookHandlers


def story_request(**overrides):
    fields = dict(story="The lighthouse keeper's last night", voices=["voice-a"], tone="mysterious")
    fields.update(overrides)
    return StoryRequest(**fields)


def make_stories(registry, submit=None, fetch=None):
    speech = SimpleNamespace(generate_audio=AsyncMock())
    music = SimpleNamespace(generate_music=AsyncMock())
    images = SimpleNamespace(
        register_anchors=AsyncMock(return_value=[]),
        dispatch_anchors=AsyncMock(),
        handle_prediction=AsyncMock(),
    )
    service = StoryService(registry, speech, music, images=images,
                           submit=submit or AsyncMock(return_value="resp_1"),
                           fetch=fetch or AsyncMock())
    return service, speech, music, images


@pytest.mark.asyncio
async def test_create_story_submits_script(registry):
    stories, *_ = make_stories(registry)
    story = await stories.create_story(story_request())

    assert story.status == StoryStatus.PROCESSING
    assert story.response_id == "resp_1"
    record = await registry.find_response("resp_1")
    assert record.kind == ResponseKind.SCRIPT
    assert record.story_id == story.id


@pytest.mark.asyncio
async def test_submission_failure_marks_script_failed(registry):
    stories, *_ = make_stories(registry, submit=AsyncMock(side_effect=RuntimeError("openai 500")))
    with pytest.raises(ScriptSubmissionError):
        await stories.create_story(story_request())

    story = list(registry._stories.values())[0]
    assert story.status == StoryStatus.SCRIPT_FAILED


@pytest.mark.asyncio
async def test_script_completion_fans_out(registry, sample_script):
    fetch = AsyncMock(return_value=SimpleNamespace(status="completed", output_text=sample_script.model_dump_json()))
    stories, speech, music, images = make_stories(registry, fetch=fetch)
    story = await stories.create_story(story_request())

    await stories.handle_script_response(story.id, "resp_1")
    await background.drain(timeout=5)

    refreshed = await registry.get_story(story.id)
    assert refreshed.status == StoryStatus.SCRIPT_COMPLETED
    assert refreshed.title == "The Last Lighthouse"
    assert "Tonight we climb the North Light." in refreshed.transcript
    images.register_anchors.assert_awaited_once()
    speech.generate_audio.assert_awaited_once()
    music.generate_music.assert_awaited_once_with(story.id, "mysterious documentary background instrumental")

    # A duplicate delivery does nothing.
    await stories.handle_script_response(story.id, "resp_1")
    await background.drain(timeout=5)
    assert speech.generate_audio.await_count == 1


@pytest.mark.asyncio
async def test_audio_only_script_skips_anchors(registry, sample_script):
    fetch = AsyncMock(return_value=SimpleNamespace(status="completed", output_text=sample_script.model_dump_json()))
    stories, speech, _, images = make_stories(registry, fetch=fetch)
    story = await stories.create_story(story_request(video=False))

    await stories.handle_script_response(story.id, "resp_1")
    await background.drain(timeout=5)

    images.register_anchors.assert_not_awaited()
    speech.generate_audio.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    SimpleNamespace(status="completed", output_text="{not json"),
    SimpleNamespace(status="completed", output_text=json.dumps({"title": "x", "scenes": []})),
    SimpleNamespace(status="failed", output_text=None),
])
async def test_bad_script_marks_script_failed(registry, response):
    stories, speech, *_ = make_stories(registry, fetch=AsyncMock(return_value=response))
    story = await stories.create_story(story_request())

    await stories.handle_script_response(story.id, "resp_1")

    assert (await registry.get_story(story.id)).status == StoryStatus.SCRIPT_FAILED
    speech.generate_audio.assert_not_awaited()


def test_transcript_keeps_scene_breaks(sample_script):
    transcript = build_transcript(sample_script)
    assert transcript.split("\n\n")[1] == "The storm arrived at midnight."


# --- webhooks ---

def make_handlers(registry, stories=None, images=None, assembly=None):
    stories = stories or SimpleNamespace(handle_script_response=AsyncMock())
    images = images or SimpleNamespace(handle_prediction=AsyncMock())
    assembly = assembly or AssemblyService(registry, copy_to_stream=AsyncMock(return_value="uid"))
    return WebhookHandlers(registry, stories, images, assembly), stories, images


@pytest.mark.asyncio
async def test_openai_webhook_routes_script(registry):
    handlers, stories, _ = make_handlers(registry)
    await registry.record_response(ResponseRecord(response_id="resp_9", kind=ResponseKind.SCRIPT, story_id="s9"))

    result = await handlers.handle_openai({"type": "response.completed", "data": {"id": "resp_9"}})
    await background.drain(timeout=5)

    assert result["handled"] is True
    stories.handle_script_response.assert_awaited_once_with("s9", "resp_9")


@pytest.mark.asyncio
async def test_openai_webhook_ignores_unknown_and_progress_events(registry):
    handlers, stories, _ = make_handlers(registry)
    assert (await handlers.handle_openai({"type": "response.completed", "data": {"id": "nope"}}))["handled"] is False
    assert (await handlers.handle_openai({"type": "response.in_progress", "data": {"id": "nope"}}))["handled"] is False
    stories.handle_script_response.assert_not_awaited()


@pytest.mark.asyncio
async def test_replicate_webhook_routes_by_prediction(registry):
    handlers, _, images = make_handlers(registry)
    await registry.record_response(
        ResponseRecord(response_id="pred_1", kind=ResponseKind.ANCHOR, story_id="s1", job_id="a1")
    )
    body = {"id": "pred_1", "status": "succeeded", "output": ["https://replicate.test/a.png"]}

    result = await handlers.handle_replicate(body)

    assert result["handled"] is True
    images.handle_prediction.assert_awaited_once_with(JobKind.ANCHOR, "s1", "a1", body)
    assert (await handlers.handle_replicate({"id": "pred_unknown", "status": "succeeded"}))["handled"] is False


@pytest.mark.asyncio
async def test_cloudflare_ready_completes_story(registry):
    handlers, *_ = make_handlers(registry)
    story = await audio_ready_story(registry)
    assert await registry.update_story_status(story.id, StoryStatus.DO_COMPLETED, media_url="https://cdn.test/f.mp4")
    await registry.record_response(ResponseRecord(response_id="uid_1", kind=ResponseKind.VIDEO, story_id=story.id))

    result = await handlers.handle_cloudflare({
        "uid": "uid_1",
        "readyToStream": True,
        "status": {"state": "ready"},
        "playback": {"hls": "https://stream.test/uid_1/manifest/video.m3u8"},
    })

    assert result["handled"] is True
    refreshed = await registry.get_story(story.id)
    assert refreshed.status == StoryStatus.COMPLETED
    assert refreshed.hls_url.endswith("video.m3u8")


@pytest.mark.asyncio
async def test_cloudflare_error_fails_video(registry):
    handlers, *_ = make_handlers(registry)
    story = await create_story(registry, statuses=[
        StoryStatus.PROCESSING, StoryStatus.SCRIPT_COMPLETED, StoryStatus.AUDIO_COMPLETED, StoryStatus.DO_COMPLETED,
    ])
    await registry.record_response(ResponseRecord(response_id="uid_2", kind=ResponseKind.VIDEO, story_id=story.id))

    await handlers.handle_cloudflare({"uid": "uid_2", "status": {"state": "error", "errorReasonText": "bad codec"}})

    assert (await registry.get_story(story.id)).status == StoryStatus.VIDEO_FAILED


@pytest.mark.asyncio
async def test_cloudflare_unrecorded_uid_routes_by_video_name(registry):
    handlers, *_ = make_handlers(registry)
    story = await create_story(registry, statuses=[
        StoryStatus.PROCESSING, StoryStatus.SCRIPT_COMPLETED, StoryStatus.AUDIO_COMPLETED, StoryStatus.DO_COMPLETED,
    ])

    unknown = await handlers.handle_cloudflare({"uid": "uid_4", "readyToStream": True, "meta": {"name": "nope"}})
    assert unknown == {"received": True, "handled": False}

    result = await handlers.handle_cloudflare({
        "uid": "uid_3",
        "readyToStream": True,
        "meta": {"name": story.id},
        "playback": {"hls": "https://stream.test/uid_3/manifest/video.m3u8"},
    })
    assert result == {"received": True, "handled": True, "story_id": story.id}
    assert (await registry.get_story(story.id)).status == StoryStatus.COMPLETED
