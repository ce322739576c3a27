"""
Async render-job poller.

Each submitted scene gets a local render-job record and a background task
that submits it upstream, then polls every POLL_INTERVAL seconds until the
job completes, fails, hits MAX_POLLS, or runs past TIMEOUT_SECONDS.
Records live in an id-keyed store so any instance can answer status
queries. A record that outlives TIMEOUT_SECONDS is failed on read or by the
cleanup sweep, whether or not the task that owned it is still running.
Terminal records are purged after RETENTION_SECONDS.
"""

import os
import time
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional
from uuid import uuid4

from .. import metrics
from ..errors import JobNotFoundError, RenderJobNotCancellableError
from .models import Engine, RenderContext, RenderJob, RenderJobStatus, RenderUpdate, Scene, utcnow

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

POLL_INTERVAL = float(os.getenv("RENDER_POLL_INTERVAL", "5"))
MAX_POLLS = int(os.getenv("RENDER_MAX_POLLS", "180"))
TIMEOUT_SECONDS = float(os.getenv("RENDER_TIMEOUT_SECONDS", "900"))
RETENTION_SECONDS = float(os.getenv("RENDER_RETENTION_SECONDS", "3600"))
SUBMIT_SPACING = float(os.getenv("RENDER_SUBMIT_SPACING", "2"))  # between batch submissions

TIMEOUT_ERROR = "timeout"
CANCELLED_ERROR = "cancelled"
NOT_FOUND_ERROR = "not found"


def new_render_job_id() -> str:
    return f"render-{uuid4().hex}"


class RenderJobPoller:
    """
    Usage:
        poller = RenderJobPoller(KieRenderClient(), RedisRenderJobStore(redis))
        jobs = await poller.submit_batch(scenes, context, Engine.KLING)
        progress = await poller.batch_progress([j.job_id for j in jobs])
    """

    def __init__(
        self,
        client,
        store,
        *,
        poll_interval: float = POLL_INTERVAL,
        max_polls: int = MAX_POLLS,
        timeout_seconds: float = TIMEOUT_SECONDS,
        retention_seconds: float = RETENTION_SECONDS,
        submit_spacing: float = SUBMIT_SPACING,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.store = store
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.timeout_seconds = timeout_seconds
        self.retention_seconds = retention_seconds
        self.submit_spacing = submit_spacing
        self.sleep = sleep
        self.clock = clock
        self.now = now
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Submission ───────────────────────────────────────────────────────

    async def submit(
        self,
        scene: Scene,
        context: RenderContext,
        engine: Engine,
        job_id: Optional[str] = None,
        delay: float = 0.0,
        owner_job_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> RenderJob:
        """Create a pending record and start submitting + polling in the background."""
        record = RenderJob(
            job_id=job_id or new_render_job_id(),
            scene_id=scene.id,
            engine=engine,
            owner_job_id=owner_job_id,
            user_id=user_id,
            created_at=self.now(),
        )
        await self.store.put(record)
        metrics.inc_counter("render.submitted")

        task = asyncio.create_task(self._run(record.job_id, scene, context, engine, delay))
        self._tasks[record.job_id] = task
        task.add_done_callback(lambda _t, jid=record.job_id: self._tasks.pop(jid, None))
        logger.info(f"[{record.job_id}] Render queued for scene {scene.id} on {engine.value}")
        return record

    async def submit_batch(
        self,
        scenes: list[Scene],
        context: RenderContext,
        engine: Engine,
        job_ids: Optional[list[str]] = None,
        owner_job_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> list[RenderJob]:
        """Submit scenes in order, spacing upstream submissions to stay under provider limits."""
        if job_ids is not None and len(job_ids) != len(scenes):
            raise ValueError("job_ids must match scenes one-to-one")
        records = []
        for index, scene in enumerate(scenes):
            records.append(await self.submit(
                scene,
                context,
                engine,
                job_id=job_ids[index] if job_ids else None,
                delay=index * self.submit_spacing,
                owner_job_id=owner_job_id,
                user_id=user_id,
            ))
        return records

    # ── Background loop ──────────────────────────────────────────────────

    def _remaining(self, started: float) -> float:
        return self.timeout_seconds - (self.clock() - started)

    async def _run(self, job_id: str, scene: Scene, context: RenderContext, engine: Engine, delay: float):
        started = self.clock()
        if delay:
            await self.sleep(delay)
        if not await self._is_live(job_id):
            return

        remaining = self._remaining(started)
        if remaining <= 0:
            await self._time_out(job_id, polls=0)
            return
        try:
            external_id = await asyncio.wait_for(self.client.submit(scene, context, engine), remaining)
        except asyncio.TimeoutError:
            await self._time_out(job_id, polls=0)
            return
        except Exception as e:
            logger.error(f"[{job_id}] Render submission failed: {e}")
            await self._finish(job_id, RenderUpdate(status=RenderJobStatus.FAILED, error=f"submission failed: {e}"))
            return

        record = await self._apply(job_id, {
            "external_job_id": external_id,
            "status": RenderJobStatus.PROCESSING,
        })
        if record is None:
            return
        logger.info(f"[{job_id}] Submitted upstream as {external_id}")

        polls = 0
        while True:
            remaining = self._remaining(started)
            if remaining > 0:
                await self.sleep(min(self.poll_interval, remaining))
                remaining = self._remaining(started)
            if not await self._is_live(job_id):
                return
            if polls >= self.max_polls or remaining <= 0:
                await self._time_out(job_id, polls)
                return

            polls += 1
            try:
                # a slow upstream query must not carry the job past its deadline
                update = await asyncio.wait_for(self.client.query(external_id, engine), remaining)
            except asyncio.TimeoutError:
                logger.warning(f"[{job_id}] Poll {polls}/{self.max_polls} ran into the render deadline")
                update = None
            except Exception as e:
                logger.warning(f"[{job_id}] Poll {polls}/{self.max_polls} failed: {e}")
                update = None

            if update is not None and update.status.is_terminal:
                await self._finish(job_id, update, polls=polls)
                return

            changes = {"polls": polls}
            if update is not None:
                changes["progress"] = min(update.progress, 99)
            if await self._apply(job_id, changes) is None:
                return

    async def _is_live(self, job_id: str) -> bool:
        record = await self.store.get(job_id)
        return record is not None and not record.status.is_terminal

    async def _apply(self, job_id: str, changes: dict) -> Optional[RenderJob]:
        """Write changes unless the record went terminal meanwhile (e.g. cancelled)."""
        current = await self.store.get(job_id)
        if current is None or current.status.is_terminal:
            return None
        updated = current.model_copy(update={**changes, "updated_at": self.now()})
        await self.store.put(updated)
        return updated

    async def _finish(self, job_id: str, update: RenderUpdate, polls: Optional[int] = None) -> Optional[RenderJob]:
        changes = {
            "status": update.status,
            "progress": 100 if update.status == RenderJobStatus.COMPLETED else update.progress,
            "video_url": update.video_url,
            "error": update.error,
            "completed_at": self.now(),
        }
        if polls is not None:
            changes["polls"] = polls
        record = await self._apply(job_id, changes)
        if record is None:
            return None
        if update.status == RenderJobStatus.COMPLETED:
            metrics.inc_counter("render.completed")
            logger.info(f"[{job_id}] Render completed: {update.video_url}")
        else:
            metrics.inc_counter("render.failed")
            logger.warning(f"[{job_id}] Render failed: {update.error}")
        return record

    async def _time_out(self, job_id: str, polls: int):
        timed_out = await self._finish(job_id, RenderUpdate(status=RenderJobStatus.FAILED, error=TIMEOUT_ERROR), polls=polls)
        if timed_out is not None:
            metrics.inc_counter("render.timeout")
            logger.warning(f"[{job_id}] Render timed out after {polls} polls")

    # ── Expiry ───────────────────────────────────────────────────────────

    def _is_stale(self, record: RenderJob, now: datetime) -> bool:
        if record.status.is_terminal:
            return False
        return record.created_at + timedelta(seconds=self.timeout_seconds) <= now

    async def _expire_if_stale(self, record: Optional[RenderJob], now: Optional[datetime] = None) -> Optional[RenderJob]:
        """
        Fail a non-terminal record whose deadline has passed. The stored
        record carries its own deadline, so this holds even when the task
        that was polling it died with its process.
        """
        now = now or self.now()
        if record is None or not self._is_stale(record, now):
            return record
        current = await self.store.get(record.job_id)
        if current is None or current.status.is_terminal:
            return current
        expired = current.model_copy(update={
            "status": RenderJobStatus.FAILED,
            "error": TIMEOUT_ERROR,
            "updated_at": now,
            "completed_at": now,
        })
        await self.store.put(expired)
        metrics.inc_counter("render.timeout")
        metrics.inc_counter("render.failed")
        logger.warning(f"[{record.job_id}] Render expired after {self.timeout_seconds:.0f}s without a result")
        return expired

    # ── Queries ──────────────────────────────────────────────────────────

    async def get(self, job_id: str) -> Optional[RenderJob]:
        return await self._expire_if_stale(await self.store.get(job_id))

    async def get_batch(self, job_ids: Iterable[str]) -> list[RenderJob]:
        """Records for each id, in order; unknown ids come back as failed / not found."""
        now = self.now()
        results = []
        for job_id in job_ids:
            record = await self._expire_if_stale(await self.store.get(job_id), now)
            if record is None:
                record = RenderJob(job_id=job_id, status=RenderJobStatus.FAILED, error=NOT_FOUND_ERROR)
            results.append(record)
        return results

    @staticmethod
    def progress_of(records: list[RenderJob]) -> int:
        if not records:
            return 0
        total = sum(100 if r.status == RenderJobStatus.COMPLETED else r.progress for r in records)
        return int(total / len(records) + 0.5)

    async def batch_progress(self, job_ids: list[str]) -> int:
        """Mean progress across the batch, rounded half up."""
        return self.progress_of(await self.get_batch(job_ids))

    async def is_batch_complete(self, job_ids: list[str]) -> bool:
        return all(r.status.is_terminal for r in await self.get_batch(job_ids))

    # ── Control ──────────────────────────────────────────────────────────

    async def cancel(self, job_id: str) -> RenderJob:
        """
        Mark a non-terminal job failed locally. Upstream work is not recalled;
        the background loop sees the terminal record and stops polling.
        """
        record = await self.get(job_id)
        if record is None:
            raise JobNotFoundError(f"Render job {job_id} not found")
        if record.status.is_terminal:
            raise RenderJobNotCancellableError(
                f"Render job {job_id} is already {record.status.value}",
                {"job_id": job_id, "status": record.status.value},
            )
        now = self.now()
        cancelled = record.model_copy(update={
            "status": RenderJobStatus.FAILED,
            "error": CANCELLED_ERROR,
            "updated_at": now,
            "completed_at": now,
        })
        await self.store.put(cancelled)

        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
        logger.info(f"[{job_id}] Render cancelled")
        return cancelled

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """
        Fail records that ran past the render timeout, then purge terminal
        records older than the retention window. Returns the purge count.
        """
        now = now or self.now()
        stale = await self.store.list_stale(now - timedelta(seconds=self.timeout_seconds))
        for record in stale:
            await self._expire_if_stale(record, now)
        if stale:
            logger.info(f"Render cleanup expired {len(stale)} stuck record(s)")

        purged = await self.store.purge_terminal(now - timedelta(seconds=self.retention_seconds))
        if purged:
            logger.info(f"Render cleanup removed {purged} record(s)")
        return purged

    async def wait(self, job_id: str):
        """Wait for this instance's background task for job_id, if any."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def aclose(self):
        """Stop every background loop owned by this instance."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def active_count(self) -> int:
        return len(self._tasks)
