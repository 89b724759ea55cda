import os, httpx, asyncio, logging
from typing import List, Optional

from .models import DialogueInput

logger = logging.getLogger(__name__)

API_BASE = "https://api.elevenlabs.io/v1"


def _api_key() -> str:
    api_key = os.getenv("ELEVENLABS_API_KEY", "")
    if not api_key:
        raise RuntimeError("ELEVENLABS_API_KEY is not set; please configure your .env")
    return api_key


def _headers(accept: Optional[str] = None):
    headers = {
        "xi-api-key": _api_key(),
        "Content-Type": "application/json"
    }
    if accept:
        headers["Accept"] = accept
    return headers


async def _post_with_retry(url: str, payload: dict, timeout: float, max_retries: int = 3,
                           transport: Optional[httpx.AsyncBaseTransport] = None) -> bytes:
    for attempt in range(max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                r = await client.post(url, headers=_headers("audio/mpeg"), json=payload)
                r.raise_for_status()
                return r.content
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429 and attempt < max_retries:
                # Exponential backoff: wait 2^attempt seconds
                wait_time = 2 ** attempt
                logger.warning(f"ElevenLabs rate limited (429). Retrying in {wait_time} seconds... (attempt {attempt + 1}/{max_retries + 1})")
                await asyncio.sleep(wait_time)
                continue
            body = e.response.text[:500]
            request_id = e.response.headers.get("request-id") or e.response.headers.get("x-request-id") or "N/A"
            logger.error(f"ElevenLabs {url}: HTTP {e.response.status_code} reqId={request_id} body={body}")
            raise
    raise RuntimeError("unreachable")


async def text_to_dialogue(inputs: List[DialogueInput], max_retries: int = 3,
                           transport: Optional[httpx.AsyncBaseTransport] = None) -> bytes:
    """Synthesize one scene's dialogue (one or more voices) into a single MP3."""
    payload = {
        "inputs": [{"text": i.text, "voice_id": i.voice_id} for i in inputs],
    }
    return await _post_with_retry(f"{API_BASE}/text-to-dialogue", payload, timeout=120,
                                  max_retries=max_retries, transport=transport)


async def compose_music(prompt: str, music_length_ms: int, max_retries: int = 3,
                        transport: Optional[httpx.AsyncBaseTransport] = None) -> bytes:
    payload = {
        "prompt": prompt,
        "music_length_ms": music_length_ms,
    }
    return await _post_with_retry(f"{API_BASE}/music", payload, timeout=600,
                                  max_retries=max_retries, transport=transport)


async def speech_to_text(audio_bytes: bytes, transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    """Word-level transcript of the final narration, used for subtitles."""
    files = {"file": ("audio.mp3", audio_bytes, "audio/mpeg")}
    async with httpx.AsyncClient(timeout=300, transport=transport) as client:
        r = await client.post(
            f"{API_BASE}/speech-to-text",
            headers={"xi-api-key": _api_key()},
            data={"model_id": "scribe_v1"},
            files=files,
        )
        r.raise_for_status()
        return r.json()
