"""
Vercel KV / Upstash integration for the job registry.
This allows story and job state to persist across instances and restarts.

Layout:
    story:{id}                 hash of story field -> JSON value
    story:{id}:ready           ready marker, written with SET NX
    jobs:{story_id}:{kind}     hash of job id -> JSON job row
    job:{job_id}               story id owning the job
    response:{response_id}     JSON correlation record
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx

from . import settings
from .models import (
    JobKind,
    JobRecord,
    ResponseRecord,
    Story,
    StoryStatus,
    can_transition,
    is_terminal,
    status_value,
)
from .registry import JobRegistry, apply_story_fields, job_from_dict, _PROTECTED_JOB_FIELDS

logger = logging.getLogger(__name__)


STATUS_WRITE_ATTEMPTS = 3

# Compare-and-set of a story's status field plus any extra field/value pairs.
# Returns -1 when the story is missing, 0 when the status no longer matches.
_STATUS_CAS_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'status')
if not current then return -1 end
if current ~= ARGV[1] then return 0 end
redis.call('HSET', KEYS[1], 'status', ARGV[2], unpack(ARGV, 3))
return 1
"""


class KVError(RuntimeError):
    pass


class KVJobRegistry(JobRegistry):
    """
    Registry over a Redis-compatible REST KV.

    Stories are hashes so field updates never rewrite ``status``; status
    moves only through a server-side compare-and-set. The ready marker uses
    SET NX, so the ready crossing stays at-most-once across instances.
    Job rows are still read-check-write and only safe within one instance.
    """

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.kv_rest_api_url = (url or settings.KV_REST_API_URL).rstrip("/")
        self.kv_rest_api_token = token or settings.KV_REST_API_TOKEN
        self._transport = transport
        if not self.kv_rest_api_url or not self.kv_rest_api_token:
            raise KVError("KV storage not configured - set KV_REST_API_URL and KV_REST_API_TOKEN")
        logger.info("KV storage enabled")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.kv_rest_api_token}",
            "Content-Type": "application/json"
        }

    async def _command(self, *args: Any) -> Any:
        async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
            response = await client.post(self.kv_rest_api_url, headers=self._headers(), json=[str(a) for a in args])
            response.raise_for_status()
            data = response.json()
        if data.get("error"):
            raise KVError(f"KV {args[0]} failed: {data['error']}")
        return data.get("result")

    # --- stories ---

    @staticmethod
    def _story_pairs(story: Story, only: Optional[Iterable[str]] = None) -> List[str]:
        row = story.model_dump(mode="json", include=set(only) if only is not None else None)
        pairs = []
        for key, value in row.items():
            pairs.extend([key, json.dumps(value)])
        return pairs

    async def create_story(self, story: Story) -> Story:
        await self._command("HSET", f"story:{story.id}", *self._story_pairs(story))
        logger.info(f"Stored story {story.id} in KV")
        return story

    async def get_story(self, story_id: str) -> Optional[Story]:
        flat = await self._command("HGETALL", f"story:{story_id}")
        if not flat:
            logger.info(f"Story {story_id} not found in KV")
            return None
        row = {flat[i]: json.loads(flat[i + 1]) for i in range(0, len(flat), 2)}
        return Story.model_validate(row)

    async def update_story_status(self, story_id: str, new_status: StoryStatus, **fields) -> bool:
        for _ in range(STATUS_WRITE_ATTEMPTS):
            story = await self.get_story(story_id)
            if not story:
                logger.error(f"Cannot update story {story_id} - not found in KV")
                return False
            if not can_transition(story.status, new_status):
                logger.warning(f"Refusing story {story_id} transition {story.status} -> {status_value(new_status)}")
                return False
            updated = apply_story_fields(story, fields)
            pairs = self._story_pairs(updated, only=[*fields, "updated_at"])
            swapped = await self._command(
                "EVAL", _STATUS_CAS_SCRIPT, 1, f"story:{story_id}",
                json.dumps(status_value(story.status)), json.dumps(status_value(new_status)), *pairs,
            )
            if int(swapped) == 1:
                logger.info(f"Story {story_id} status -> {status_value(new_status)}")
                return True
            logger.info(f"Story {story_id} status moved during update, re-reading")
        logger.warning(f"Story {story_id} status kept changing, giving up on {status_value(new_status)}")
        return False

    async def update_story(self, story_id: str, **fields) -> Optional[Story]:
        story = await self.get_story(story_id)
        if not story:
            logger.error(f"Cannot update story {story_id} - not found in KV")
            return None
        updated = apply_story_fields(story, fields)
        # Only the named fields are written; status is never part of this row update.
        await self._command("HSET", f"story:{story_id}", *self._story_pairs(updated, only=[*fields, "updated_at"]))
        return updated

    async def mark_story_ready(self, story_id: str) -> bool:
        story = await self.get_story(story_id)
        if not story or story.status != StoryStatus.AUDIO_COMPLETED:
            return False
        now = datetime.now(timezone.utc)
        marker = f"story:{story_id}:ready"
        claimed = await self._command("SET", marker, now.isoformat(), "NX")
        if claimed != "OK":
            return False
        try:
            await self._command("HSET", f"story:{story_id}", "ready_at", json.dumps(now.isoformat()))
        except (KVError, httpx.HTTPError):
            # Release the claim so a later check can win it again.
            logger.error(f"Stamping ready_at for story {story_id} failed, releasing ready marker")
            await self._command("DEL", marker)
            raise
        return True

    # --- jobs ---

    async def create_job(self, job: JobRecord) -> JobRecord:
        kind = status_value(job.kind)
        await self._command("HSET", f"jobs:{job.story_id}:{kind}", job.id, job.model_dump_json())
        await self._command("SET", f"job:{job.id}", job.story_id)
        return job

    async def get_job(self, kind: JobKind, job_id: str) -> Optional[JobRecord]:
        story_id = await self._command("GET", f"job:{job_id}")
        if not story_id:
            return None
        raw = await self._command("HGET", f"jobs:{story_id}:{status_value(kind)}", job_id)
        return job_from_dict(json.loads(raw)) if raw else None

    async def list_jobs(self, story_id: str, kind: JobKind) -> List[JobRecord]:
        rows = await self._command("HVALS", f"jobs:{story_id}:{status_value(kind)}") or []
        return [job_from_dict(json.loads(raw)) for raw in rows]

    async def _put_job(self, job: JobRecord):
        job.updated_at = datetime.now(timezone.utc)
        await self._command("HSET", f"jobs:{job.story_id}:{status_value(job.kind)}", job.id, job.model_dump_json())

    async def update_job(self, kind: JobKind, job_id: str, status: Optional[str] = None, **fields) -> bool:
        job = await self.get_job(kind, job_id)
        if not job:
            logger.error(f"Cannot update {status_value(kind)} job {job_id} - not found in KV")
            return False
        if is_terminal(kind, job.status):
            logger.info(f"{status_value(kind)} job {job_id} already terminal ({job.status}), skipping update")
            return False
        if status is not None:
            job.status = status
        for key, value in fields.items():
            if key in _PROTECTED_JOB_FIELDS:
                raise ValueError(f"{key} cannot be set on a job update")
            setattr(job, key, value)
        await self._put_job(job)
        return True

    async def mark_job_terminal(self, kind: JobKind, job_id: str, status: str, **fields) -> bool:
        if not is_terminal(kind, status):
            raise ValueError(f"{status_value(status)} is not a terminal status for {status_value(kind)} jobs")
        job = await self.get_job(kind, job_id)
        if not job:
            logger.error(f"Cannot resolve {status_value(kind)} job {job_id} - not found in KV")
            return False
        if is_terminal(kind, job.status):
            logger.info(f"{status_value(kind)} job {job_id} already resolved as {job.status}")
            return False
        job.status = status
        for key, value in fields.items():
            if key in _PROTECTED_JOB_FIELDS:
                raise ValueError(f"{key} cannot be set on a job update")
            setattr(job, key, value)
        await self._put_job(job)
        return True

    # --- correlation ids ---

    async def record_response(self, record: ResponseRecord) -> None:
        await self._command("SET", f"response:{record.response_id}", record.model_dump_json())
        logger.info(f"Stored {record.kind} response {record.response_id} in KV")

    async def find_response(self, response_id: str) -> Optional[ResponseRecord]:
        raw = await self._command("GET", f"response:{response_id}")
        if not raw:
            logger.info(f"Response {response_id} not found in KV")
            return None
        return ResponseRecord.model_validate_json(raw)
