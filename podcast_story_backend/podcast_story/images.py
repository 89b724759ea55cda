"""
Shot and anchor image generation.

Shot rows are registered inside each scene's audio unit, so the complete
image population exists before narration can be marked ready. Generation
itself runs in the background under a per-story concurrency cap; each shot
is resolved either by the Replicate webhook or by its own bounded poll,
whichever lands first.
"""
import asyncio
import logging
import math
from types import ModuleType
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from . import blob_store, llm, media, replicate_client, settings
from .completion import StoryCompletionService
from .events import StoryEventHub
from .limiter import ConcurrencyLimiter
from .models import (
    Anchor,
    AnchorSet,
    AnchorStatus,
    AnchorType,
    ImageJob,
    ImageStatus,
    JobKind,
    ResponseKind,
    ResponseRecord,
    Scene,
    ShotPlan,
    Story,
    is_terminal,
)
from .prompts import ANCHOR_PROMPT_TEMPLATE
from .registry import JobRegistry

logger = logging.getLogger(__name__)

ShotPlanner = Callable[[Scene, List[float], str], Awaitable[List[ShotPlan]]]
Uploader = Callable[[bytes, str, str], Awaitable[str]]

_WAITING_ANCHOR_STATUSES = {AnchorStatus.PENDING.value, AnchorStatus.PROCESSING.value}


def plan_shot_durations(duration: float, shot_seconds: int = settings.SHOT_SECONDS) -> List[float]:
    """Fixed-length shots covering ``duration``; the last takes the remainder (at least 1s)."""
    shots = max(1, math.ceil(duration / shot_seconds)) if duration > 0 else 1
    durations = [float(shot_seconds)] * (shots - 1)
    remainder = round(duration - shot_seconds * (shots - 1), 2)
    durations.append(max(1.0, remainder))
    return durations


def webhook_url() -> Optional[str]:
    if not settings.PUBLIC_BASE_URL:
        return None
    return f"{settings.PUBLIC_BASE_URL}/v1/webhooks/replicate"


class ImageService:
    def __init__(self, registry: JobRegistry, evaluator: StoryCompletionService,
                 events: Optional[StoryEventHub] = None,
                 client: ModuleType = replicate_client,
                 upload: Uploader = blob_store.upload,
                 shot_planner: ShotPlanner = llm.generate_shot_prompts,
                 max_concurrent: int = settings.MAX_CONCURRENT_IMAGES,
                 poll_interval_ms: int = settings.IMAGE_POLL_INTERVAL_MS,
                 poll_max_attempts: int = settings.IMAGE_POLL_MAX_ATTEMPTS,
                 anchor_interval_ms: int = settings.ANCHOR_POLL_INTERVAL_MS,
                 anchor_max_attempts: int = settings.ANCHOR_WAIT_MAX_ATTEMPTS):
        self.registry = registry
        self.evaluator = evaluator
        self.events = events
        self.client = client
        self.upload = upload
        self.shot_planner = shot_planner
        self.max_concurrent = max_concurrent
        self.poll_interval_ms = poll_interval_ms
        self.poll_max_attempts = poll_max_attempts
        self.anchor_interval_ms = anchor_interval_ms
        self.anchor_max_attempts = anchor_max_attempts
        # story_id -> [limiter, number of dispatches using it]
        self._limiters: Dict[str, list] = {}

    # --- shots ---

    async def register_scene_shots(self, story: Story, scene: Scene, scene_number: int,
                                   duration: float) -> List[ImageJob]:
        durations = plan_shot_durations(duration)
        plans = await self.shot_planner(scene, durations, story.image_style)
        anchor_uuids = scene.entity_uuids()
        jobs = []
        for plan in plans:
            job = ImageJob(
                story_id=story.id,
                scene_id=scene.id,
                scene_number=scene_number,
                shot_number=plan.shot,
                duration=plan.duration,
                prompt=plan.prompt,
                anchor_uuids=anchor_uuids,
            )
            await self.registry.create_job(job)
            jobs.append(job)
        logger.info(f"Registered {len(jobs)} shots for story {story.id} scene {scene.id} ({duration:.1f}s)")
        return jobs

    def _acquire_limiter(self, story_id: str) -> ConcurrencyLimiter:
        entry = self._limiters.get(story_id)
        if entry is None:
            entry = [ConcurrencyLimiter(self.max_concurrent, name=f"images-{story_id[:8]}"), 0]
            self._limiters[story_id] = entry
        entry[1] += 1
        return entry[0]

    def _release_limiter(self, story_id: str):
        entry = self._limiters.get(story_id)
        if entry is None:
            return
        entry[1] -= 1
        if entry[1] <= 0:
            del self._limiters[story_id]

    async def dispatch_shots(self, story_id: str, jobs: Sequence[ImageJob]):
        """Generate ``jobs``; all dispatches for one story share one concurrency cap."""
        if not jobs:
            return
        limiter = self._acquire_limiter(story_id)
        try:
            async def on_error(index: int, error: BaseException):
                await self._resolve(JobKind.IMAGE, story_id, jobs[index].id, ImageStatus.FAILED,
                                    error=str(error) or type(error).__name__)

            units = [lambda job=job: self._generate_shot(story_id, job) for job in jobs]
            await limiter.run_all(units, on_error=on_error)
        finally:
            self._release_limiter(story_id)

    async def _generate_shot(self, story_id: str, job: ImageJob):
        references = await self.wait_for_anchors(story_id, job.anchor_uuids)
        pred = await self.client.create_prediction(
            job.prompt,
            webhook_url=webhook_url(),
            reference_images=references or None,
        )
        await self._track_prediction(pred["id"], ResponseKind.IMAGE, story_id, job.id)
        if not await self.registry.update_job(JobKind.IMAGE, job.id, status=ImageStatus.PROCESSING,
                                              response_id=pred["id"]):
            return
        await self._await_prediction(JobKind.IMAGE, story_id, job.id, pred["id"])

    # --- anchors ---

    async def register_anchors(self, story_id: str, anchors: AnchorSet) -> List[Anchor]:
        """Create anchor rows; only recurring entities get a reference image."""
        pending = []
        for anchor_type, specs in ((AnchorType.CHARACTER, anchors.characters), (AnchorType.SETTING, anchors.settings)):
            for spec in specs:
                needed = spec.appearances >= 2
                anchor = Anchor(
                    story_id=story_id,
                    entity_uuid=spec.uuid,
                    anchor_type=anchor_type,
                    name=spec.name,
                    description=spec.description,
                    appearances=spec.appearances,
                    status=AnchorStatus.PENDING if needed else AnchorStatus.NOT_NEEDED,
                )
                await self.registry.create_job(anchor)
                if needed:
                    pending.append(anchor)
        logger.info(f"Story {story_id}: {len(pending)} anchors need reference images")
        return pending

    async def dispatch_anchors(self, story: Story, anchors: Sequence[Anchor]):
        if not anchors:
            return
        limiter = ConcurrencyLimiter(self.max_concurrent, name=f"anchors-{story.id[:8]}")

        async def on_error(index: int, error: BaseException):
            await self._resolve(JobKind.ANCHOR, story.id, anchors[index].id, AnchorStatus.FAILED,
                                error=str(error) or type(error).__name__)

        units = [lambda a=a: self._generate_anchor(story, a) for a in anchors]
        await limiter.run_all(units, on_error=on_error)

    async def _generate_anchor(self, story: Story, anchor: Anchor):
        prompt = ANCHOR_PROMPT_TEMPLATE.format(
            name=anchor.name, description=anchor.description, image_style=story.image_style,
        )
        pred = await self.client.create_prediction(prompt, webhook_url=webhook_url(), aspect_ratio="1:1")
        await self._track_prediction(pred["id"], ResponseKind.ANCHOR, story.id, anchor.id)
        if not await self.registry.update_job(JobKind.ANCHOR, anchor.id, status=AnchorStatus.PROCESSING,
                                              response_id=pred["id"]):
            return
        await self._await_prediction(JobKind.ANCHOR, story.id, anchor.id, pred["id"])

    async def wait_for_anchors(self, story_id: str, entity_uuids: Sequence[str]) -> List[str]:
        """
        Wait until the anchors for ``entity_uuids`` are terminal and return the
        completed reference URLs. Anchors still unresolved after the wait are
        marked failed so shots are never blocked indefinitely.
        """
        if not entity_uuids:
            return []
        wanted = set(entity_uuids)
        for _ in range(self.anchor_max_attempts):
            anchors = [a for a in await self.registry.list_jobs(story_id, JobKind.ANCHOR) if a.entity_uuid in wanted]
            waiting = [a for a in anchors if a.status in _WAITING_ANCHOR_STATUSES]
            if not waiting:
                return [a.media_url for a in anchors if a.status == AnchorStatus.COMPLETED and a.media_url]
            await asyncio.sleep(self.anchor_interval_ms / 1000.0)

        anchors = [a for a in await self.registry.list_jobs(story_id, JobKind.ANCHOR) if a.entity_uuid in wanted]
        for a in anchors:
            if a.status in _WAITING_ANCHOR_STATUSES:
                logger.warning(f"Anchor {a.name} ({a.entity_uuid}) not ready after {self.anchor_max_attempts} checks")
                await self._resolve(JobKind.ANCHOR, story_id, a.id, AnchorStatus.FAILED,
                                    error="anchor wait timed out")
        anchors = [a for a in await self.registry.list_jobs(story_id, JobKind.ANCHOR) if a.entity_uuid in wanted]
        return [a.media_url for a in anchors if a.status == AnchorStatus.COMPLETED and a.media_url]

    # --- shared resolution path (poll and webhook) ---

    async def _track_prediction(self, pred_id: str, kind: ResponseKind, story_id: str, job_id: str):
        await self.registry.record_response(
            ResponseRecord(response_id=pred_id, kind=kind, story_id=story_id, job_id=job_id)
        )

    async def _is_resolved(self, kind: JobKind, job_id: str) -> bool:
        job = await self.registry.get_job(kind, job_id)
        return job is None or is_terminal(kind, job.status)

    async def _await_prediction(self, kind: JobKind, story_id: str, job_id: str, pred_id: str):
        body = await self.client.wait_for_prediction(
            pred_id,
            max_attempts=self.poll_max_attempts,
            interval_ms=self.poll_interval_ms,
            resolved_elsewhere=lambda: self._is_resolved(kind, job_id),
        )
        if body is None:
            return
        await self.handle_prediction(kind, story_id, job_id, body)

    async def handle_prediction(self, kind: JobKind, story_id: str, job_id: str, body: dict):
        """Apply a terminal prediction body to its job. Later deliveries for the same job are no-ops."""
        status = body.get("status")
        if status not in replicate_client.TERMINAL_PREDICTION_STATES:
            logger.info(f"Prediction {body.get('id')} for {kind.value} job {job_id} still {status}")
            return
        if await self._is_resolved(kind, job_id):
            logger.info(f"{kind.value} job {job_id} already resolved, ignoring prediction {body.get('id')}")
            return

        failed_status = ImageStatus.FAILED if kind == JobKind.IMAGE else AnchorStatus.FAILED
        if status != "succeeded":
            await self._resolve(kind, story_id, job_id, failed_status,
                                error=str(body.get("error") or f"prediction {status}"))
            return

        try:
            url = replicate_client.prediction_output_url(body)
            data = await self.client.download(url)
            jpeg = await asyncio.to_thread(media.reencode_jpeg, data)
            media_url = await self.upload(jpeg, self._blob_key(kind, story_id, job_id), "image/jpeg")
        except Exception as e:
            logger.error(f"Storing output of prediction {body.get('id')} for {kind.value} job {job_id} failed: {e}")
            await self._resolve(kind, story_id, job_id, failed_status, error=str(e))
            return

        completed_status = ImageStatus.COMPLETED if kind == JobKind.IMAGE else AnchorStatus.COMPLETED
        await self._resolve(kind, story_id, job_id, completed_status, media_url=media_url)

    def _blob_key(self, kind: JobKind, story_id: str, job_id: str) -> str:
        folder = "images" if kind == JobKind.IMAGE else "anchors"
        return f"stories/{story_id}/{folder}/{job_id}.jpg"

    async def _resolve(self, kind: JobKind, story_id: str, job_id: str, status, **fields) -> bool:
        if not await self.registry.mark_job_terminal(kind, job_id, status, **fields):
            return False
        logger.info(f"{kind.value} job {job_id} for story {story_id} -> {status.value}")
        if self.events is not None:
            await self.events.publish(story_id, f"{kind.value}.{status.value}", job_id=job_id)
        # Anchors are not part of the image population the evaluator counts.
        if kind == JobKind.IMAGE:
            await self.evaluator.check_story_completion(story_id)
        return True
