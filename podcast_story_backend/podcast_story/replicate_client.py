import os, httpx, asyncio, logging
from typing import Awaitable, Callable, List, Optional
from .settings import IMAGE_POLL_INTERVAL_MS, IMAGE_POLL_MAX_ATTEMPTS, REPLICATE_MODEL_VERSION

logger = logging.getLogger(__name__)

API_BASE = "https://api.replicate.com/v1"
TERMINAL_PREDICTION_STATES = ("succeeded", "failed", "canceled")
# Input field multi-reference models take for consistency images
REFERENCE_INPUT_KEY = "input_images"


def _headers():
    token = os.getenv("REPLICATE_API_TOKEN", "")
    if not token:
        raise RuntimeError("REPLICATE_API_TOKEN is not set; please configure your .env")
    return {"Authorization": f"Token {token}"}


def _model_selector() -> str:
    # Prefer explicit version from env for stability; fall back to a public model alias (latest).
    return REPLICATE_MODEL_VERSION or "black-forest-labs/flux-schnell"


def _parse_selector(selector: str):
    # Returns a tuple (mode, data)
    # mode == "version": data={"version": <hash>}
    # mode == "model": data={"owner": <owner>, "name": <name>}
    if "/" in selector:
        # Could be owner/name or owner/name:versionAlias
        owner_name, _, _version_alias = selector.partition(":")
        if "/" in owner_name:
            owner, name = owner_name.split("/", 1)
            return "model", {"owner": owner, "name": name}
    # Fallback assume it's a version hash
    return "version", {"version": selector}


def prediction_output_url(body: dict) -> str:
    output = body.get("output")
    if isinstance(output, list) and output:
        return output[0]
    if isinstance(output, str) and output:
        return output
    raise RuntimeError(f"Replicate prediction {body.get('id')} succeeded but no output URL")


async def create_prediction(prompt: str, webhook_url: Optional[str] = None,
                            reference_images: Optional[List[str]] = None,
                            aspect_ratio: str = "16:9",
                            transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    """Submit one image generation; returns the prediction body (id, status, ...)."""
    logger.info(f"Starting Replicate image generation for prompt: {prompt[:100]}...")

    async with httpx.AsyncClient(timeout=30, transport=transport) as client:
        selector = _model_selector()
        json_body = {
            "input": {
                "prompt": prompt,
                "num_outputs": 1,
                "aspect_ratio": aspect_ratio,
            }
        }
        if reference_images:
            json_body["input"][REFERENCE_INPUT_KEY] = reference_images
        if webhook_url:
            json_body["webhook"] = webhook_url
            json_body["webhook_events_filter"] = ["completed"]

        mode, data = _parse_selector(selector)
        if mode == "version":
            json_body["version"] = data["version"]
            url = f"{API_BASE}/predictions"
        else:
            url = f"{API_BASE}/models/{data['owner']}/{data['name']}/predictions"

        async def _create(url_to_use: str, body: dict):
            return await client.post(
                url_to_use,
                headers={**_headers(), "Content-Type": "application/json"},
                json=body,
            )

        r = await _create(url, json_body)
        if r.status_code >= 400:
            logger.error(f"Replicate create failed {r.status_code}: {r.text}")
            if mode == "model" and r.status_code == 404:
                # Model endpoint unavailable for this alias: resolve the latest version instead.
                logger.info("Falling back to latest version resolution for model")
                model_resp = await client.get(f"{API_BASE}/models/{data['owner']}/{data['name']}", headers=_headers())
                model_resp.raise_for_status()
                version_id = (model_resp.json().get("latest_version") or {}).get("id")
                if not version_id:
                    raise RuntimeError("Could not resolve latest version for model")
                logger.info(f"Resolved latest version: {version_id}")
                r = await _create(f"{API_BASE}/predictions", {**json_body, "version": version_id})
                if r.status_code >= 400:
                    raise RuntimeError(f"Replicate create failed {r.status_code}: {r.text}")
            else:
                raise RuntimeError(f"Replicate create failed {r.status_code}: {r.text}")

        pred = r.json()
        logger.info(f"Replicate prediction created with ID: {pred['id']}")
        return pred


async def get_prediction(pred_id: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    async with httpx.AsyncClient(timeout=30, transport=transport) as client:
        s = await client.get(f"{API_BASE}/predictions/{pred_id}", headers=_headers())
        if s.status_code >= 400:
            logger.error(f"Replicate status failed {s.status_code}: {s.text}")
            raise RuntimeError(f"Replicate status failed {s.status_code}: {s.text}")
        return s.json()


async def wait_for_prediction(pred_id: str,
                              max_attempts: int = IMAGE_POLL_MAX_ATTEMPTS,
                              interval_ms: int = IMAGE_POLL_INTERVAL_MS,
                              resolved_elsewhere: Optional[Callable[[], Awaitable[bool]]] = None,
                              transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[dict]:
    """
    Poll until the prediction is terminal and return its body.

    Returns None when ``resolved_elsewhere`` reports the job was already
    settled (a webhook got there first). Raises TimeoutError once
    ``max_attempts`` polls pass without a terminal state.
    """
    for attempt in range(1, max_attempts + 1):
        if resolved_elsewhere is not None and await resolved_elsewhere():
            logger.info(f"Replicate prediction {pred_id} already resolved, stopping poll")
            return None
        body = await get_prediction(pred_id, transport=transport)
        status = body.get("status")
        logger.info(f"Replicate prediction {pred_id} status: {status} (poll {attempt}/{max_attempts})")
        if status in TERMINAL_PREDICTION_STATES:
            return body
        await asyncio.sleep(interval_ms / 1000.0)
    logger.error(f"Replicate polling timeout for {pred_id} after {max_attempts} attempts")
    raise TimeoutError(f"Replicate prediction {pred_id} not finished after {max_attempts} polls")


async def download(url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> bytes:
    async with httpx.AsyncClient(timeout=60, transport=transport, follow_redirects=True) as client:
        r = await client.get(url)
        r.raise_for_status()
        return r.content
