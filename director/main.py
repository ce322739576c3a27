import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request

from . import fallback_limiter, metrics
from .auth_middleware import WorkerAuthMiddleware
from .pipeline.collaborators import Collaborators
from .pipeline.orchestrator import DirectorService
from .pipeline.poller import RenderJobPoller
from .pipeline.routes import director_router
from .pipeline.store import (
    InMemoryAnalysisStore,
    InMemoryJobStore,
    InMemoryRenderJobStore,
    InMemorySelectionStore,
    RedisRenderJobStore,
    SupabaseAnalysisStore,
    SupabaseJobStore,
    SupabaseSelectionStore,
)

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CLEANUP_INTERVAL = float(os.environ.get("CLEANUP_INTERVAL_SECONDS", "300"))


# ── Backends ─────────────────────────────────────────────────────────────────

async def connect_redis():
    """Async Redis client, or None when REDIS_URL is unset or unreachable."""
    redis_url = os.environ.get("REDIS_URL")
    if not redis_url:
        return None
    import redis.asyncio as aioredis

    client = aioredis.from_url(redis_url, decode_responses=False)
    try:
        await client.ping()
        logger.info(f"Redis connected: {redis_url[:30]}...")
        return client
    except Exception as e:
        logger.warning(f"Redis connection failed: {e} — using in-memory stores")
        await client.aclose()
        return None


def build_service(redis_client=None, collaborators: Optional[Collaborators] = None) -> DirectorService:
    """Wire stores and collaborators: Supabase / Redis when configured, in-memory otherwise."""
    collaborators = collaborators or Collaborators()

    if os.environ.get("SUPABASE_URL") and os.environ.get("SUPABASE_SERVICE_ROLE_KEY"):
        job_store, analysis_store, selection_store = (
            SupabaseJobStore(), SupabaseAnalysisStore(), SupabaseSelectionStore()
        )
    else:
        logger.info("Supabase not configured — jobs are kept in memory")
        job_store, analysis_store, selection_store = (
            InMemoryJobStore(), InMemoryAnalysisStore(), InMemorySelectionStore()
        )

    render_store = RedisRenderJobStore(redis_client) if redis_client is not None else InMemoryRenderJobStore()
    poller = RenderJobPoller(collaborators.render_client, render_store)
    return DirectorService(job_store, analysis_store, selection_store, poller, collaborators)


async def _cleanup_loop(app: FastAPI):
    """Purge expired render records and rate-limit buckets."""
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL)
        try:
            await app.state.director.poller.cleanup()
            fallback_limiter.cleanup_expired()
        except Exception as e:
            logger.error(f"Cleanup sweep failed: {e}", exc_info=True)


# ── App ──────────────────────────────────────────────────────────────────────

def create_app(service: Optional[DirectorService] = None, redis_client=None) -> FastAPI:
    """
    Build the worker app. Passing `service` skips backend wiring at startup,
    which is how tests inject fakes.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Director worker starting up...")
        metrics.set_gauge("start_time", time.time())
        if service is None:
            app.state.redis = await connect_redis()
            app.state.director = build_service(app.state.redis)
        cleanup = asyncio.create_task(_cleanup_loop(app))
        yield
        logger.info("Director worker shutting down...")
        cleanup.cancel()
        await asyncio.gather(cleanup, return_exceptions=True)
        await app.state.director.poller.aclose()
        if app.state.redis is not None and service is None:
            await app.state.redis.aclose()

    app = FastAPI(title="director-worker", lifespan=lifespan)
    app.state.director = service
    app.state.redis = redis_client
    app.add_middleware(WorkerAuthMiddleware)
    app.include_router(director_router)

    @app.middleware("http")
    async def time_requests(request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        path = request.url.path
        operation = path.split("/")[2] if path.startswith("/director/") else path
        metrics.record_latency(operation, (time.time() - start) * 1000)
        return response

    @app.get("/health")
    def health_check():
        """Verify the worker is running and provider keys are configured."""
        return {
            "status": "ok",
            "gemini_api_key_set": bool(os.environ.get("GEMINI_API_KEY")),
            "deepseek_api_key_set": bool(os.environ.get("DEEPSEEK_API_KEY")),
            "fal_api_key_set": bool(os.environ.get("FAL_API_KEY")),
            "kie_api_key_set": bool(os.environ.get("KIE_API_KEY")),
            "redis": app.state.redis is not None,
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all worker metrics."""
        if app.state.director is not None:
            metrics.set_gauge("active_render_tasks", app.state.director.poller.active_count)
        return metrics.get_snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("director.main:app", host="0.0.0.0", port=port)
