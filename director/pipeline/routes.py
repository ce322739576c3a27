"""
FastAPI routes for the director pipeline.

Job Endpoints:
  POST /director/upload                           — Upload image, run raw analysis
  POST /director/jobs/{id}/personas               — Fan-out: one pitch per persona
  POST /director/jobs/{id}/persona                — Record the chosen persona
  POST /director/jobs/{id}/init                   — Quality gate + storyboard
  POST /director/jobs/{id}/refine                 — YELLOW / RED scene refinements
  POST /director/jobs/{id}/scenes/{scene_id}/approve — Mark a scene GREEN
  POST /director/jobs/{id}/approve                — Start production
  GET  /director/jobs/{id}                        — Job state (+ render progress)
  POST /director/jobs/{id}/render-jobs/{rid}/cancel — Cancel one of the job's renders

Catalog:
  GET  /director/personas
  GET  /director/styles

The caller is identified by the X-User-Id header, which the upstream API
attaches after authenticating the user.
"""

import logging

from fastapi import APIRouter, Depends, File, Header, HTTPException, Request, UploadFile

from .. import fallback_limiter, metrics, rate_limiter
from ..errors import (
    JobConflictError,
    JobNotFoundError,
    PolicyViolation,
    StoryboardGenerationError,
    UnparseableResponseError,
    UpstreamUnavailableError,
)
from .models import (
    AnalyzeRequest,
    ApproveProductionRequest,
    FanOutResult,
    InitJobRequest,
    JobState,
    PersonaProfile,
    RefineRequest,
    RenderJob,
    SelectPersonaRequest,
    StylePreset,
    UploadResponse,
)
from .orchestrator import DirectorService

logger = logging.getLogger(__name__)

director_router = APIRouter(prefix="/director", tags=["director"])


# ── Dependencies ─────────────────────────────────────────────────────────────

def get_service(request: Request) -> DirectorService:
    return request.app.state.director


def current_user(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    return x_user_id


def rate_limited(endpoint: str):
    """Dependency enforcing the per-user budget for `endpoint`."""

    async def check(request: Request, user_id: str = Depends(current_user)) -> str:
        r = getattr(request.app.state, "redis", None)
        if r is not None:
            allowed, _remaining, retry_after = await rate_limiter.check_rate_limit(r, user_id, endpoint)
        else:
            allowed, _remaining, retry_after = fallback_limiter.check_rate_limit(user_id, endpoint)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail={
                    "code": "rate_limited",
                    "message": f"Rate limit exceeded. Try again in {retry_after}s.",
                    "retry_after": retry_after,
                },
                headers={"Retry-After": str(retry_after)},
            )
        return user_id

    return check


def _to_http(e: Exception, operation: str) -> HTTPException:
    """Map service exceptions onto HTTP responses."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, PermissionError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, JobNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, JobConflictError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PolicyViolation):
        return HTTPException(status_code=400, detail=e.to_dict())
    if isinstance(e, UpstreamUnavailableError):
        metrics.record_error(operation, type(e).__name__, str(e))
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, (StoryboardGenerationError, UnparseableResponseError)):
        metrics.record_error(operation, type(e).__name__, str(e))
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))

    logger.error(f"{operation} failed: {e}", exc_info=True)
    metrics.record_error(operation, type(e).__name__, str(e))
    return HTTPException(status_code=500, detail="Internal error")


# ── Upload & Analysis ────────────────────────────────────────────────────────

@director_router.post("/upload", response_model=UploadResponse)
async def upload(
    file: UploadFile = File(...),
    user_id: str = Depends(rate_limited("upload")),
    service: DirectorService = Depends(get_service),
):
    """
    Store the image and run the raw analysis once.

    Errors:
      - 400: Unsupported type or oversize image
      - 503: Vision provider unavailable
    """
    metrics.inc_counter("requests.upload")
    data = await file.read()
    try:
        return await service.upload_and_analyze(
            user_id=user_id,
            filename=file.filename or "upload",
            data=data,
            content_type=file.content_type or "",
        )
    except Exception as e:
        raise _to_http(e, "upload") from e


@director_router.post("/jobs/{job_id}/personas", response_model=FanOutResult)
async def analyze_personas(
    job_id: str,
    request: AnalyzeRequest,
    user_id: str = Depends(rate_limited("generate")),
    service: DirectorService = Depends(get_service),
):
    """Every persona interprets the cached analysis; failed personas get a fallback pitch."""
    metrics.inc_counter("requests.personas")
    try:
        return await service.analyze_all_personas(job_id, user_id, request.context)
    except Exception as e:
        raise _to_http(e, "personas") from e


@director_router.post("/jobs/{job_id}/persona", response_model=JobState)
async def select_persona(
    job_id: str,
    request: SelectPersonaRequest,
    user_id: str = Depends(rate_limited("query")),
    service: DirectorService = Depends(get_service),
):
    metrics.inc_counter("requests.select_persona")
    try:
        return await service.record_persona_selection(job_id, user_id, request.persona_id)
    except Exception as e:
        raise _to_http(e, "select_persona") from e


# ── Storyboard ───────────────────────────────────────────────────────────────

@director_router.post("/jobs/{job_id}/init", response_model=JobState)
async def init_job(
    job_id: str,
    request: InitJobRequest,
    user_id: str = Depends(rate_limited("generate")),
    service: DirectorService = Depends(get_service),
):
    """
    Quality gate, optional remaster, then the initial storyboard.

    Errors:
      - 400: Job not IDLE
      - 502: Storyboard generation failed (job stays IDLE)
    """
    metrics.inc_counter("requests.init")
    try:
        return await service.init_job(
            job_id,
            user_id,
            force_remaster=request.force_remaster,
            preferred_style_id=request.preferred_style_id,
            scene_count=request.scene_count,
            context=request.context,
        )
    except Exception as e:
        raise _to_http(e, "init") from e


@director_router.post("/jobs/{job_id}/refine", response_model=JobState)
async def refine(
    job_id: str,
    request: RefineRequest,
    user_id: str = Depends(rate_limited("refine")),
    service: DirectorService = Depends(get_service),
):
    """
    Apply YELLOW (tweak) and RED (regenerate) refinements as one batch.

    Errors:
      - 400: Invalid batch or attempt limit reached; no scene changed
    """
    metrics.inc_counter("requests.refine")
    try:
        return await service.refine_storyboard(job_id, user_id, request.refinements)
    except Exception as e:
        raise _to_http(e, "refine") from e


@director_router.post("/jobs/{job_id}/scenes/{scene_id}/approve", response_model=JobState)
async def approve_scene(
    job_id: str,
    scene_id: str,
    user_id: str = Depends(rate_limited("refine")),
    service: DirectorService = Depends(get_service),
):
    metrics.inc_counter("requests.approve_scene")
    try:
        return await service.approve_scene(job_id, user_id, scene_id)
    except Exception as e:
        raise _to_http(e, "approve_scene") from e


# ── Production ───────────────────────────────────────────────────────────────

@director_router.post("/jobs/{job_id}/approve", response_model=JobState)
async def approve_production(
    job_id: str,
    request: ApproveProductionRequest,
    user_id: str = Depends(rate_limited("production")),
    service: DirectorService = Depends(get_service),
):
    """Start rendering the listed GREEN scenes."""
    metrics.inc_counter("requests.production")
    try:
        return await service.approve_production(job_id, user_id, request.scene_ids)
    except Exception as e:
        raise _to_http(e, "production") from e


@director_router.get("/jobs/{job_id}", response_model=JobState)
async def get_job(
    job_id: str,
    user_id: str = Depends(rate_limited("query")),
    service: DirectorService = Depends(get_service),
):
    metrics.inc_counter("requests.query")
    try:
        return await service.get_job_state(job_id, user_id)
    except Exception as e:
        raise _to_http(e, "query") from e


@director_router.post("/jobs/{job_id}/render-jobs/{render_job_id}/cancel", response_model=RenderJob)
async def cancel_render(
    job_id: str,
    render_job_id: str,
    user_id: str = Depends(rate_limited("production")),
    service: DirectorService = Depends(get_service),
):
    metrics.inc_counter("requests.cancel")
    try:
        return await service.cancel_render(job_id, user_id, render_job_id)
    except Exception as e:
        raise _to_http(e, "cancel") from e


# ── Catalog ──────────────────────────────────────────────────────────────────

@director_router.get("/personas", response_model=list[PersonaProfile])
async def list_personas(service: DirectorService = Depends(get_service)):
    return service.list_personas()


@director_router.get("/styles", response_model=list[StylePreset])
async def list_styles(include_premium: bool = True, service: DirectorService = Depends(get_service)):
    return service.list_style_presets(include_premium)
