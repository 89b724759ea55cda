import httpx, asyncio, logging
from typing import Optional
from .settings import CAPTION_POLL_INTERVAL_MS, CAPTION_POLL_MAX_ATTEMPTS, CLOUDFLARE_ACCOUNT_ID, CLOUDFLARE_TOKEN

logger = logging.getLogger(__name__)

API_BASE = "https://api.cloudflare.com/client/v4"
# Languages Stream can generate captions for
SUPPORTED_CAPTION_LANGUAGES = ("cs", "nl", "en", "fr", "de", "it", "ja", "ko", "pl", "pt", "ru", "es")
CAPTION_EXISTS_CODE = 10005


class CaptionExistsError(RuntimeError):
    pass


def is_configured() -> bool:
    return bool(CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_TOKEN)


def _headers():
    return {"Authorization": f"Bearer {CLOUDFLARE_TOKEN}", "Content-Type": "application/json"}


def _stream_url(path: str) -> str:
    return f"{API_BASE}/accounts/{CLOUDFLARE_ACCOUNT_ID}/stream/{path}"


async def copy_to_stream(video_url: str, name: str,
                         transport: Optional[httpx.AsyncBaseTransport] = None) -> str:
    """Ask Cloudflare Stream to ingest ``video_url``; returns the stream uid."""
    async with httpx.AsyncClient(timeout=30, transport=transport) as client:
        r = await client.post(
            _stream_url("copy"),
            headers=_headers(),
            json={"url": video_url, "meta": {"name": name}},
        )
        if r.status_code >= 400:
            logger.error(f"Cloudflare Stream copy failed {r.status_code}: {r.text}")
            raise RuntimeError(f"Cloudflare Stream copy failed {r.status_code}: {r.text}")
        uid = r.json()["result"]["uid"]
        logger.info(f"Cloudflare Stream copy started: {uid}")
        return uid


async def generate_captions(uid: str, language: str,
                            transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
    """
    Start caption generation for a stream video.

    Stream answers with a ``success`` flag rather than the HTTP status, so the
    body decides. Raises CaptionExistsError when the language already has a
    caption track.
    """
    async with httpx.AsyncClient(timeout=30, transport=transport) as client:
        r = await client.post(_stream_url(f"{uid}/captions/{language}/generate"), headers=_headers(), json={})
    try:
        body = r.json()
    except ValueError:
        body = {}
    if body.get("success"):
        logger.info(f"Caption generation started for stream {uid} ({language})")
        return

    errors = body.get("errors") or []
    first = errors[0] if errors else {}
    if first.get("code") == CAPTION_EXISTS_CODE and "existing caption" in (first.get("message") or ""):
        logger.info(f"Stream {uid} already has {language} captions")
        raise CaptionExistsError(f"{language} captions already exist for stream {uid}")
    logger.error(f"Cloudflare caption generation failed {r.status_code}: {r.text}")
    raise RuntimeError(f"Cloudflare caption generation failed {r.status_code}: {r.text}")


async def get_captions(uid: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    async with httpx.AsyncClient(timeout=30, transport=transport) as client:
        r = await client.get(_stream_url(f"{uid}/captions"), headers=_headers())
        if r.status_code >= 400:
            logger.error(f"Cloudflare captions status failed {r.status_code}: {r.text}")
            raise RuntimeError(f"Cloudflare captions status failed {r.status_code}: {r.text}")
        return r.json()


async def wait_for_captions(uid: str, language: str,
                            max_attempts: int = CAPTION_POLL_MAX_ATTEMPTS,
                            interval_ms: int = CAPTION_POLL_INTERVAL_MS,
                            transport: Optional[httpx.AsyncBaseTransport] = None) -> bool:
    """True once the ``language`` track is ready; False on an error state or timeout."""
    for attempt in range(1, max_attempts + 1):
        body = await get_captions(uid, transport=transport)
        if body.get("success"):
            track = next((c for c in body.get("result") or [] if c.get("language") == language), None)
            status = track.get("status") if track else None
            logger.info(f"Stream {uid} {language} captions: {status} (poll {attempt}/{max_attempts})")
            if status == "ready":
                return True
            if status == "error":
                logger.error(f"Caption generation failed for stream {uid} ({language})")
                return False
        await asyncio.sleep(interval_ms / 1000.0)
    logger.error(f"Caption polling timeout for stream {uid} after {max_attempts} attempts")
    return False
