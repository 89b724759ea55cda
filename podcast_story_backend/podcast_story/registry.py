"""
Job registry: durable record of every independently completing unit of work.

The completion evaluator only ever reads live counts from here; nothing in
the pipeline keeps cached totals. Two backends exist: the in-memory one
below (single process, default) and the KV-backed one in kv_storage.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .models import (
    JOB_MODELS,
    JobKind,
    JobRecord,
    ResponseRecord,
    Story,
    StoryStatus,
    can_transition,
    is_terminal,
    status_value,
)

logger = logging.getLogger(__name__)

_PROTECTED_STORY_FIELDS = {"id", "status", "ready_at", "created_at"}
_PROTECTED_JOB_FIELDS = {"id", "kind", "story_id", "status", "created_at"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def apply_story_fields(story: Story, fields: dict) -> Story:
    """
    Validated copy of ``story`` with ``fields`` applied. Raises before
    anything is stored, so a bad value never leaves a half-applied update.
    """
    updated = story.model_copy(deep=True)
    for key, value in fields.items():
        if key in _PROTECTED_STORY_FIELDS:
            raise ValueError(f"{key} cannot be set on a story update")
        setattr(updated, key, value)
    updated.updated_at = _now()
    return updated


class JobRegistry(ABC):
    """Access contract shared by the evaluator, the dispatchers and the webhook handlers."""

    # --- stories ---

    @abstractmethod
    async def create_story(self, story: Story) -> Story: ...

    @abstractmethod
    async def get_story(self, story_id: str) -> Optional[Story]: ...

    @abstractmethod
    async def update_story_status(self, story_id: str, new_status: StoryStatus, **fields) -> bool:
        """Advance the story status. Only forward transitions are written."""

    @abstractmethod
    async def update_story(self, story_id: str, **fields) -> Optional[Story]:
        """Update non-status story fields."""

    @abstractmethod
    async def mark_story_ready(self, story_id: str) -> bool:
        """Stamp the ready marker once. Returns True only for the caller that set it."""

    # --- jobs ---

    @abstractmethod
    async def create_job(self, job: JobRecord) -> JobRecord: ...

    @abstractmethod
    async def get_job(self, kind: JobKind, job_id: str) -> Optional[JobRecord]: ...

    @abstractmethod
    async def list_jobs(self, story_id: str, kind: JobKind) -> List[JobRecord]: ...

    @abstractmethod
    async def update_job(self, kind: JobKind, job_id: str, status: Optional[str] = None, **fields) -> bool:
        """Non-terminal update (e.g. pending -> processing). Refused once the job is terminal."""

    @abstractmethod
    async def mark_job_terminal(self, kind: JobKind, job_id: str, status: str, **fields) -> bool:
        """Resolve a job. At most one terminal mutation per job; later calls return False."""

    async def count_by_status(self, story_id: str, kind: JobKind, statuses: Optional[Iterable[str]] = None) -> int:
        jobs = await self.list_jobs(story_id, kind)
        if statuses is None:
            return len(jobs)
        wanted = {status_value(s) for s in statuses}
        return sum(1 for job in jobs if job.status in wanted)

    # --- correlation ids ---

    @abstractmethod
    async def record_response(self, record: ResponseRecord) -> None: ...

    @abstractmethod
    async def find_response(self, response_id: str) -> Optional[ResponseRecord]: ...


class InMemoryJobRegistry(JobRegistry):
    """
    Process-local registry. Every method awaits once so callers see the same
    interleaving points they would against a real store.
    """

    def __init__(self):
        self._stories: Dict[str, Story] = {}
        self._jobs: Dict[str, Dict[str, Dict[str, JobRecord]]] = {}
        self._job_index: Dict[str, str] = {}
        self._responses: Dict[str, ResponseRecord] = {}

    async def _yield(self):
        await asyncio.sleep(0)

    async def create_story(self, story: Story) -> Story:
        await self._yield()
        self._stories[story.id] = story.model_copy(deep=True)
        logger.info(f"Created story {story.id} ({'video' if story.video else 'audio-only'})")
        return story

    async def get_story(self, story_id: str) -> Optional[Story]:
        await self._yield()
        story = self._stories.get(story_id)
        return story.model_copy(deep=True) if story else None

    async def update_story_status(self, story_id: str, new_status: StoryStatus, **fields) -> bool:
        await self._yield()
        story = self._stories.get(story_id)
        if not story:
            logger.warning(f"Cannot update status of story {story_id} - not found")
            return False
        if not can_transition(story.status, new_status):
            logger.warning(f"Refusing story {story_id} transition {story.status} -> {status_value(new_status)}")
            return False
        updated = apply_story_fields(story, fields)
        updated.status = new_status
        self._stories[story_id] = updated
        logger.info(f"Story {story_id} status -> {updated.status}")
        return True

    async def update_story(self, story_id: str, **fields) -> Optional[Story]:
        await self._yield()
        story = self._stories.get(story_id)
        if not story:
            logger.warning(f"Cannot update story {story_id} - not found")
            return None
        updated = apply_story_fields(story, fields)
        self._stories[story_id] = updated
        return updated.model_copy(deep=True)

    async def mark_story_ready(self, story_id: str) -> bool:
        await self._yield()
        story = self._stories.get(story_id)
        if not story or story.ready_at is not None:
            return False
        if story.status != StoryStatus.AUDIO_COMPLETED:
            logger.warning(f"Story {story_id} cannot be marked ready from status {story.status}")
            return False
        story.ready_at = _now()
        story.updated_at = story.ready_at
        return True

    async def create_job(self, job: JobRecord) -> JobRecord:
        await self._yield()
        kind = status_value(job.kind)
        self._jobs.setdefault(job.story_id, {}).setdefault(kind, {})[job.id] = job.model_copy(deep=True)
        self._job_index[job.id] = job.story_id
        return job

    def _find(self, kind: JobKind, job_id: str) -> Optional[JobRecord]:
        story_id = self._job_index.get(job_id)
        if story_id is None:
            return None
        return self._jobs.get(story_id, {}).get(status_value(kind), {}).get(job_id)

    async def get_job(self, kind: JobKind, job_id: str) -> Optional[JobRecord]:
        await self._yield()
        job = self._find(kind, job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, story_id: str, kind: JobKind) -> List[JobRecord]:
        await self._yield()
        jobs = self._jobs.get(story_id, {}).get(status_value(kind), {})
        return [job.model_copy(deep=True) for job in jobs.values()]

    async def update_job(self, kind: JobKind, job_id: str, status: Optional[str] = None, **fields) -> bool:
        await self._yield()
        job = self._find(kind, job_id)
        if not job:
            logger.warning(f"Cannot update {status_value(kind)} job {job_id} - not found")
            return False
        if is_terminal(kind, job.status):
            logger.info(f"{status_value(kind)} job {job_id} already terminal ({job.status}), skipping update")
            return False
        if status is not None:
            job.status = status
        _apply_job_fields(job, fields)
        return True

    async def mark_job_terminal(self, kind: JobKind, job_id: str, status: str, **fields) -> bool:
        if not is_terminal(kind, status):
            raise ValueError(f"{status_value(status)} is not a terminal status for {status_value(kind)} jobs")
        await self._yield()
        job = self._find(kind, job_id)
        if not job:
            logger.warning(f"Cannot resolve {status_value(kind)} job {job_id} - not found")
            return False
        if is_terminal(kind, job.status):
            logger.info(f"{status_value(kind)} job {job_id} already resolved as {job.status}")
            return False
        job.status = status
        _apply_job_fields(job, fields)
        return True

    async def record_response(self, record: ResponseRecord) -> None:
        await self._yield()
        self._responses[record.response_id] = record.model_copy(deep=True)

    async def find_response(self, response_id: str) -> Optional[ResponseRecord]:
        await self._yield()
        record = self._responses.get(response_id)
        return record.model_copy(deep=True) if record else None


def _apply_job_fields(job: JobRecord, fields: dict):
    for key, value in fields.items():
        if key in _PROTECTED_JOB_FIELDS:
            raise ValueError(f"{key} cannot be set on a job update")
        setattr(job, key, value)
    job.updated_at = _now()


def job_from_dict(data: dict) -> JobRecord:
    return JOB_MODELS[JobKind(data["kind"])].model_validate(data)
