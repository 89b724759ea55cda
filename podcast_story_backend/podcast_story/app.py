import logging
import traceback
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

# Ensure .env is loaded before importing modules that initialize API clients
from .settings import ALLOWED_ORIGINS, KV_REST_API_TOKEN, KV_REST_API_URL, has_all_keys, validate_settings
from . import cloudflare_client
from .assembly import AssemblyService
from .completion import StoryCompletionService
from .events import StoryEventHub
from .images import ImageService
from .kv_storage import KVJobRegistry
from .models import CaptionRequest, StoryRequest
from .music import MusicService
from .registry import InMemoryJobRegistry, JobRegistry
from .speech import SpeechService
from .stories import ScriptSubmissionError, StoryService
from .webhooks import WebhookHandlers

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    registry: JobRegistry
    events: StoryEventHub
    evaluator: StoryCompletionService
    images: ImageService
    speech: SpeechService
    music: MusicService
    stories: StoryService
    assembly: AssemblyService
    webhooks: WebhookHandlers


def default_registry() -> JobRegistry:
    if KV_REST_API_URL and KV_REST_API_TOKEN:
        return KVJobRegistry()
    logger.warning("KV storage not configured, using in-memory registry (state is lost on restart)")
    return InMemoryJobRegistry()


def build_services(registry: Optional[JobRegistry] = None, events: Optional[StoryEventHub] = None,
                   **overrides) -> Services:
    """Wire the pipeline. ``overrides`` replace individual services (used by tests)."""
    registry = registry or default_registry()
    events = events or StoryEventHub()
    evaluator = overrides.get("evaluator") or StoryCompletionService(registry, events=events)
    images = overrides.get("images") or ImageService(registry, evaluator, events=events)
    speech = overrides.get("speech") or SpeechService(registry, evaluator, images=images, events=events)
    music = overrides.get("music") or MusicService(registry, evaluator, events=events)
    stories = overrides.get("stories") or StoryService(registry, speech, music, images=images, events=events)
    assembly = overrides.get("assembly") or AssemblyService(registry, events=events)
    if evaluator.phase_trigger is None:
        evaluator.phase_trigger = assembly.assemble_story
    webhooks = WebhookHandlers(registry, stories, images, assembly)
    return Services(registry, events, evaluator, images, speech, music, stories, assembly, webhooks)


def create_app(services: Optional[Services] = None) -> FastAPI:
    validate_settings()
    services = services or build_services()

    app = FastAPI(title="Podcast Story Backend")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS or ["*"],
        allow_credentials=True,
        allow_methods=["POST", "GET", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        keys_ok = has_all_keys()
        logger.info(f"Health check: API keys present = {keys_ok}")
        return {"ok": True, "has_keys": keys_ok, "registry": type(services.registry).__name__}

    @app.post("/v1/stories")
    async def create_story(req: StoryRequest):
        logger.info(f"Starting story: {req.story[:50]}...")
        if not has_all_keys():
            logger.error("API keys missing, cannot start story")
            raise HTTPException(500, "Server configuration error: missing required API keys")
        if req.speakers == "dual" and len(req.voices) < 2:
            raise HTTPException(400, "dual speakers need two voices")
        try:
            story = await services.stories.create_story(req)
        except ScriptSubmissionError as e:
            raise HTTPException(502, str(e))
        return story.model_dump(mode="json")

    @app.get("/v1/stories/{story_id}")
    async def get_story(story_id: str):
        story = await services.registry.get_story(story_id)
        if not story:
            raise HTTPException(404, "story not found")
        return story.model_dump(mode="json")

    @app.get("/v1/stories/{story_id}/completion")
    async def completion_status(story_id: str):
        status = await services.evaluator.get_completion_status(story_id)
        if status is None:
            raise HTTPException(404, "story not found")
        return status.model_dump()

    @app.post("/v1/stories/{story_id}/check")
    async def check_story(story_id: str):
        if not await services.registry.get_story(story_id):
            raise HTTPException(404, "story not found")
        triggered = await services.evaluator.check_story_completion(story_id)
        status = await services.evaluator.get_completion_status(story_id)
        return {"story_id": story_id, "triggered": triggered, "completion": status.model_dump() if status else None}

    @app.post("/v1/stories/{story_id}/captions")
    async def generate_captions(story_id: str, req: Optional[CaptionRequest] = None):
        language = (req or CaptionRequest()).language
        if language not in cloudflare_client.SUPPORTED_CAPTION_LANGUAGES:
            raise HTTPException(400, f"Invalid language. Supported: {', '.join(cloudflare_client.SUPPORTED_CAPTION_LANGUAGES)}")
        story = await services.registry.get_story(story_id)
        if not story:
            raise HTTPException(404, "story not found")
        if not story.cloudflare_id:
            raise HTTPException(400, "Video not yet uploaded to Cloudflare Stream")
        if not cloudflare_client.is_configured():
            raise HTTPException(500, "Server configuration error: Cloudflare Stream not configured")

        logger.info(f"Generating {language} captions for story {story_id} (stream {story.cloudflare_id})")
        try:
            await cloudflare_client.generate_captions(story.cloudflare_id, language)
            ready = await cloudflare_client.wait_for_captions(story.cloudflare_id, language)
        except cloudflare_client.CaptionExistsError:
            raise HTTPException(409, "Caption already exists")
        except (RuntimeError, httpx.HTTPError) as e:
            raise HTTPException(502, str(e))
        if not ready:
            raise HTTPException(500, "Caption generation timed out or failed")
        return {"success": True, "message": "Captions generated successfully", "language": language,
                "story_id": story_id}

    async def _webhook(request: Request, source: str, handler):
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(400, "invalid JSON body")
        try:
            return await handler(payload)
        except Exception:
            # Acknowledge anyway; the poll loop and operator re-checks recover the job.
            logger.error(f"{source} webhook failed: {traceback.format_exc()}")
            return {"received": True, "handled": False}

    @app.post("/v1/webhooks/openai")
    async def openai_webhook(request: Request):
        return await _webhook(request, "OpenAI", services.webhooks.handle_openai)

    @app.post("/v1/webhooks/replicate")
    async def replicate_webhook(request: Request):
        return await _webhook(request, "Replicate", services.webhooks.handle_replicate)

    @app.post("/v1/webhooks/cloudflare")
    async def cloudflare_webhook(request: Request):
        return await _webhook(request, "Cloudflare", services.webhooks.handle_cloudflare)

    @app.websocket("/v1/stories/{story_id}/events")
    async def story_events(websocket: WebSocket, story_id: str):
        await services.events.connect(story_id, websocket)
        try:
            story = await services.registry.get_story(story_id)
            await websocket.send_json({
                "type": "story.snapshot",
                "story_id": story_id,
                "status": story.status if story else None,
            })
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await services.events.disconnect(story_id, websocket)

    return app


app = create_app()
