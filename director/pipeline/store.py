"""
Persistence for jobs, raw analyses, persona selections and render jobs.

Two backends per concern:
  - In-memory: tests and single-instance development
  - Supabase (jobs, analyses, selections) / Redis (render jobs): production

Job writes are compare-and-set on `version`: a commit only lands if the row
still carries the version the writer read, otherwise JobConflictError.
"""

import os
import asyncio
import logging
from datetime import datetime
from typing import Optional

from supabase import create_client, Client

from ..errors import JobConflictError, JobNotFoundError
from .models import JobState, PersonaSelection, RawAnalysis, RenderJob

logger = logging.getLogger(__name__)

JOBS_TABLE = "director_jobs"
ANALYSES_TABLE = "raw_analyses"
SELECTIONS_TABLE = "persona_selections"

RENDER_JOB_PREFIX = "renderjob:"
ACTIVE_RENDER_JOBS = "renderjobs:active"
TERMINAL_RENDER_JOBS = "renderjobs:terminal"


# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def _get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


# ═════════════════════════════════════════════════════════════════════════════
# Jobs
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryJobStore:
    def __init__(self):
        self._rows: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, job_id: str) -> Optional[JobState]:
        row = self._rows.get(job_id)
        return JobState.model_validate_json(row) if row else None

    async def create(self, job: JobState) -> JobState:
        async with self._lock:
            if job.job_id in self._rows:
                raise JobConflictError(job.job_id, job.version)
            self._rows[job.job_id] = job.model_dump_json()
        return job

    async def commit(self, job: JobState, expected_version: int) -> JobState:
        async with self._lock:
            row = self._rows.get(job.job_id)
            if row is None:
                raise JobNotFoundError(job.job_id)
            if JobState.model_validate_json(row).version != expected_version:
                raise JobConflictError(job.job_id, expected_version)
            committed = job.model_copy(update={"version": expected_version + 1})
            self._rows[job.job_id] = committed.model_dump_json()
        return committed


class SupabaseJobStore:
    """Row per job: id, user_id, stage, version, state (jsonb)."""

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        return self._client or _get_service_client()

    def _row(self, job: JobState) -> dict:
        return {
            "id": job.job_id,
            "user_id": job.user_id,
            "stage": job.stage.value,
            "version": job.version,
            "state": job.model_dump(mode="json"),
        }

    async def get(self, job_id: str) -> Optional[JobState]:
        result = await asyncio.to_thread(
            lambda: self.client.table(JOBS_TABLE).select("state, version").eq("id", job_id).limit(1).execute()
        )
        if not result.data:
            return None
        row = result.data[0]
        return JobState.model_validate({**row["state"], "version": row["version"]})

    async def create(self, job: JobState) -> JobState:
        await asyncio.to_thread(lambda: self.client.table(JOBS_TABLE).insert(self._row(job)).execute())
        return job

    async def commit(self, job: JobState, expected_version: int) -> JobState:
        committed = job.model_copy(update={"version": expected_version + 1})
        result = await asyncio.to_thread(
            lambda: self.client.table(JOBS_TABLE)
            .update(self._row(committed))
            .eq("id", job.job_id)
            .eq("version", expected_version)
            .execute()
        )
        if not result.data:
            raise JobConflictError(job.job_id, expected_version)
        return committed


# ═════════════════════════════════════════════════════════════════════════════
# Raw analyses
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryAnalysisStore:
    def __init__(self):
        self._rows: dict[str, RawAnalysis] = {}

    async def get(self, job_id: str) -> Optional[RawAnalysis]:
        return self._rows.get(job_id)

    async def put(self, job_id: str, analysis: RawAnalysis) -> None:
        self._rows[job_id] = analysis


class SupabaseAnalysisStore:
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        return self._client or _get_service_client()

    async def get(self, job_id: str) -> Optional[RawAnalysis]:
        result = await asyncio.to_thread(
            lambda: self.client.table(ANALYSES_TABLE).select("analysis").eq("job_id", job_id).limit(1).execute()
        )
        if not result.data:
            return None
        return RawAnalysis.model_validate(result.data[0]["analysis"])

    async def put(self, job_id: str, analysis: RawAnalysis) -> None:
        await asyncio.to_thread(
            lambda: self.client.table(ANALYSES_TABLE).upsert({
                "job_id": job_id,
                "analysis": analysis.model_dump(mode="json"),
            }).execute()
        )


# ═════════════════════════════════════════════════════════════════════════════
# Persona selections (learning events)
# ═════════════════════════════════════════════════════════════════════════════

class InMemorySelectionStore:
    def __init__(self):
        self.events: list[PersonaSelection] = []

    async def record(self, selection: PersonaSelection) -> None:
        self.events.append(selection)


class SupabaseSelectionStore:
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        return self._client or _get_service_client()

    async def record(self, selection: PersonaSelection) -> None:
        await asyncio.to_thread(
            lambda: self.client.table(SELECTIONS_TABLE).insert(selection.model_dump(mode="json")).execute()
        )


# ═════════════════════════════════════════════════════════════════════════════
# Render jobs
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryRenderJobStore:
    def __init__(self):
        self._jobs: dict[str, RenderJob] = {}

    async def get(self, job_id: str) -> Optional[RenderJob]:
        return self._jobs.get(job_id)

    async def put(self, job: RenderJob) -> None:
        self._jobs[job.job_id] = job

    async def list_stale(self, created_before: datetime) -> list[RenderJob]:
        return [
            job for job in self._jobs.values()
            if not job.status.is_terminal and job.created_at <= created_before
        ]

    async def purge_terminal(self, completed_before: datetime) -> int:
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.status.is_terminal and job.completed_at and job.completed_at < completed_before
        ]
        for job_id in expired:
            del self._jobs[job_id]
        return len(expired)


class RedisRenderJobStore:
    """
    One hash per render job (`renderjob:{id}` → data, status) plus two
    sorted sets: live jobs scored by creation time for expiry sweeps, and
    terminal jobs scored by completion time for retention sweeps.
    """

    def __init__(self, redis_client):
        self.redis = redis_client

    async def get(self, job_id: str) -> Optional[RenderJob]:
        raw = await self.redis.hget(f"{RENDER_JOB_PREFIX}{job_id}", "data")
        if raw is None:
            return None
        return RenderJob.model_validate_json(raw)

    async def put(self, job: RenderJob) -> None:
        key = f"{RENDER_JOB_PREFIX}{job.job_id}"
        await self.redis.hset(key, mapping={"data": job.model_dump_json(), "status": job.status.value})
        if job.status.is_terminal:
            await self.redis.zrem(ACTIVE_RENDER_JOBS, job.job_id)
            if job.completed_at:
                await self.redis.zadd(TERMINAL_RENDER_JOBS, {job.job_id: job.completed_at.timestamp()})
        else:
            await self.redis.zadd(ACTIVE_RENDER_JOBS, {job.job_id: job.created_at.timestamp()})

    async def list_stale(self, created_before: datetime) -> list[RenderJob]:
        members = await self.redis.zrangebyscore(ACTIVE_RENDER_JOBS, "-inf", created_before.timestamp())
        stale = []
        for member in members:
            job_id = member.decode() if isinstance(member, bytes) else member
            job = await self.get(job_id)
            if job is None:
                await self.redis.zrem(ACTIVE_RENDER_JOBS, job_id)
            elif not job.status.is_terminal:
                stale.append(job)
        return stale

    async def purge_terminal(self, completed_before: datetime) -> int:
        cutoff = completed_before.timestamp()
        expired = await self.redis.zrangebyscore(TERMINAL_RENDER_JOBS, "-inf", f"({cutoff}")
        if not expired:
            return 0
        ids = [e.decode() if isinstance(e, bytes) else e for e in expired]
        await self.redis.delete(*[f"{RENDER_JOB_PREFIX}{job_id}" for job_id in ids])
        await self.redis.zrem(TERMINAL_RENDER_JOBS, *ids)
        logger.info(f"Purged {len(ids)} render job(s) completed before {completed_before.isoformat()}")
        return len(ids)
