"""
Raw analysis cache — the expensive vision call runs at most once per job.

Concurrent callers for the same job wait on a per-job lock and read the
stored result instead of issuing a second analysis. Locks are held weakly
and disappear once nobody is waiting on them.
"""

import asyncio
import logging
import weakref
from typing import Awaitable, Callable

from ..generative import FailurePolicy, invoke
from .models import RawAnalysis

logger = logging.getLogger(__name__)


class RawAnalysisCache:
    def __init__(self, store, analyze: Callable[[str], Awaitable[RawAnalysis]]):
        self.store = store
        self.analyze = analyze
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def get(self, job_id: str):
        return await self.store.get(job_id)

    async def get_or_analyze(self, job_id: str, image_url: str) -> RawAnalysis:
        cached = await self.store.get(job_id)
        if cached is not None:
            return cached

        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()

        async with lock:
            cached = await self.store.get(job_id)
            if cached is not None:
                return cached

            logger.info(f"[{job_id}] Running raw analysis for {image_url}")
            analysis = await invoke(self.analyze, image_url, policy=FailurePolicy.RAISE, label="analyze_image")
            await self.store.put(job_id, analysis)
            return analysis
