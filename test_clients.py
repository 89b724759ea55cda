import json
from types import SimpleNamespace

import httpx
import pytest

from podcast_story import cloudflare_client, elevenlabs_client, replicate_client
from podcast_story.models import DialogueInput


@pytest.fixture(autouse=True)
def keys(monkeypatch):
    monkeypatch.setenv("ELEVENLABS_API_KEY", "el-key")
    monkeypatch.setenv("REPLICATE_API_TOKEN", "r8-token")


@pytest.fixture
def no_sleep(monkeypatch):
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    monkeypatch.setattr(elevenlabs_client, "asyncio", SimpleNamespace(sleep=fake_sleep))
    return waits


@pytest.mark.asyncio
async def test_dialogue_retries_rate_limits(no_sleep):
    calls = []

    def handler(request):
        calls.append(json.loads(request.content))
        assert request.headers["xi-api-key"] == "el-key"
        if len(calls) < 3:
            return httpx.Response(429, text="slow down")
        return httpx.Response(200, content=b"ID3audio")

    audio = await elevenlabs_client.text_to_dialogue(
        [DialogueInput(text="Hello", voice_id="v1"), DialogueInput(text="Hi", voice_id="v2")],
        transport=httpx.MockTransport(handler),
    )

    assert audio == b"ID3audio"
    assert no_sleep == [1, 2]
    assert calls[0] == {"inputs": [{"text": "Hello", "voice_id": "v1"}, {"text": "Hi", "voice_id": "v2"}]}


@pytest.mark.asyncio
async def test_dialogue_gives_up_after_max_retries(no_sleep):
    transport = httpx.MockTransport(lambda request: httpx.Response(429))
    with pytest.raises(httpx.HTTPStatusError):
        await elevenlabs_client.text_to_dialogue([DialogueInput(text="x", voice_id="v")], max_retries=2,
                                                 transport=transport)
    assert no_sleep == [1, 2]


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(no_sleep):
    transport = httpx.MockTransport(lambda request: httpx.Response(401, text="bad key"))
    with pytest.raises(httpx.HTTPStatusError):
        await elevenlabs_client.compose_music("calm", 300000, transport=transport)
    assert no_sleep == []


@pytest.mark.asyncio
async def test_compose_music_payload():
    seen = {}

    def handler(request):
        seen.update(json.loads(request.content))
        assert request.url.path == "/v1/music"
        return httpx.Response(200, content=b"ID3music")

    assert await elevenlabs_client.compose_music("calm", 300000, transport=httpx.MockTransport(handler)) == b"ID3music"
    assert seen == {"prompt": "calm", "music_length_ms": 300000}


@pytest.mark.asyncio
async def test_speech_to_text_uses_scribe():
    def handler(request):
        assert request.url.path == "/v1/speech-to-text"
        assert b"scribe_v1" in request.content
        return httpx.Response(200, json={"text": "hello", "words": [{"text": "hello", "start": 0.0, "end": 0.4}]})

    result = await elevenlabs_client.speech_to_text(b"ID3audio", transport=httpx.MockTransport(handler))
    assert result["text"] == "hello"


@pytest.mark.asyncio
async def test_create_prediction_with_webhook_and_references(monkeypatch):
    monkeypatch.setattr(replicate_client, "REPLICATE_MODEL_VERSION", "")
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "pred_1", "status": "starting"})

    pred = await replicate_client.create_prediction(
        "a lighthouse", webhook_url="https://api.test/v1/webhooks/replicate",
        reference_images=["https://cdn.test/anchor.jpg"], transport=httpx.MockTransport(handler),
    )

    assert pred["id"] == "pred_1"
    assert seen["url"].endswith("/models/black-forest-labs/flux-schnell/predictions")
    assert seen["body"]["webhook"] == "https://api.test/v1/webhooks/replicate"
    assert seen["body"]["webhook_events_filter"] == ["completed"]
    assert seen["body"]["input"][replicate_client.REFERENCE_INPUT_KEY] == ["https://cdn.test/anchor.jpg"]


@pytest.mark.asyncio
async def test_create_prediction_falls_back_to_latest_version(monkeypatch):
    monkeypatch.setattr(replicate_client, "REPLICATE_MODEL_VERSION", "owner/model")
    posted = []

    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json={"latest_version": {"id": "v123"}})
        posted.append((request.url.path, json.loads(request.content)))
        if request.url.path.startswith("/v1/models/"):
            return httpx.Response(404, text="not found")
        return httpx.Response(201, json={"id": "pred_2", "status": "starting"})

    pred = await replicate_client.create_prediction("x", transport=httpx.MockTransport(handler))

    assert pred["id"] == "pred_2"
    assert posted[-1][0] == "/v1/predictions"
    assert posted[-1][1]["version"] == "v123"


@pytest.mark.asyncio
async def test_wait_for_prediction_is_bounded():
    polls = []

    def handler(request):
        polls.append(request.url.path)
        return httpx.Response(200, json={"id": "p", "status": "processing"})

    with pytest.raises(TimeoutError):
        await replicate_client.wait_for_prediction("p", max_attempts=3, interval_ms=0,
                                                   transport=httpx.MockTransport(handler))
    assert len(polls) == 3


@pytest.mark.asyncio
async def test_wait_for_prediction_stops_when_resolved_elsewhere():
    async def resolved():
        return True

    transport = httpx.MockTransport(lambda request: pytest.fail("should not poll"))
    assert await replicate_client.wait_for_prediction("p", max_attempts=3, interval_ms=0,
                                                      resolved_elsewhere=resolved, transport=transport) is None


def test_prediction_output_url():
    assert replicate_client.prediction_output_url({"output": ["https://a"]}) == "https://a"
    assert replicate_client.prediction_output_url({"output": "https://b"}) == "https://b"
    with pytest.raises(RuntimeError):
        replicate_client.prediction_output_url({"id": "p", "output": None})


@pytest.mark.asyncio
async def test_cloudflare_copy(monkeypatch):
    monkeypatch.setattr(cloudflare_client, "CLOUDFLARE_ACCOUNT_ID", "acct")
    monkeypatch.setattr(cloudflare_client, "CLOUDFLARE_TOKEN", "cf-token")

    def handler(request):
        assert request.url.path == "/client/v4/accounts/acct/stream/copy"
        assert json.loads(request.content) == {"url": "https://cdn.test/f.mp4", "meta": {"name": "s1"}}
        return httpx.Response(200, json={"result": {"uid": "uid_1"}})

    assert cloudflare_client.is_configured()
    uid = await cloudflare_client.copy_to_stream("https://cdn.test/f.mp4", "s1", transport=httpx.MockTransport(handler))
    assert uid == "uid_1"


@pytest.fixture
def stream(monkeypatch):
    monkeypatch.setattr(cloudflare_client, "CLOUDFLARE_ACCOUNT_ID", "acct")
    monkeypatch.setattr(cloudflare_client, "CLOUDFLARE_TOKEN", "cf-token")


@pytest.mark.asyncio
async def test_generate_captions(stream):
    def handler(request):
        assert request.method == "POST"
        assert request.url.path == "/client/v4/accounts/acct/stream/uid_1/captions/fr/generate"
        assert request.headers["Authorization"] == "Bearer cf-token"
        return httpx.Response(200, json={"success": True, "result": {"language": "fr", "status": "inprogress"}})

    await cloudflare_client.generate_captions("uid_1", "fr", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_generate_captions_reports_existing_track(stream):
    existing = httpx.MockTransport(lambda request: httpx.Response(409, json={
        "success": False, "errors": [{"code": 10005, "message": "video already has an existing caption for en"}],
    }))
    with pytest.raises(cloudflare_client.CaptionExistsError):
        await cloudflare_client.generate_captions("uid_1", "en", transport=existing)

    broken = httpx.MockTransport(lambda request: httpx.Response(500, json={
        "success": False, "errors": [{"code": 10000, "message": "internal"}],
    }))
    with pytest.raises(RuntimeError) as exc:
        await cloudflare_client.generate_captions("uid_1", "en", transport=broken)
    assert not isinstance(exc.value, cloudflare_client.CaptionExistsError)


@pytest.mark.asyncio
async def test_wait_for_captions(stream):
    states = iter(["inprogress", "inprogress", "ready"])

    def handler(request):
        assert request.url.path == "/client/v4/accounts/acct/stream/uid_1/captions"
        return httpx.Response(200, json={"success": True, "result": [
            {"language": "de", "status": "ready"},
            {"language": "en", "status": next(states)},
        ]})

    assert await cloudflare_client.wait_for_captions("uid_1", "en", interval_ms=0, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_wait_for_captions_stops_on_error_or_timeout(stream):
    errored = httpx.MockTransport(lambda request: httpx.Response(200, json={
        "success": True, "result": [{"language": "en", "status": "error"}],
    }))
    assert await cloudflare_client.wait_for_captions("uid_1", "en", interval_ms=0, transport=errored) is False

    calls = []

    def pending(request):
        calls.append(request)
        return httpx.Response(200, json={"success": True, "result": []})

    assert await cloudflare_client.wait_for_captions(
        "uid_1", "en", max_attempts=3, interval_ms=0, transport=httpx.MockTransport(pending)
    ) is False
    assert len(calls) == 3
