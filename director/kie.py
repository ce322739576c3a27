"""
Kie.ai render client — submits scene renders and normalizes their status.

Engines map to Kie.ai models:
  kling → kling-2.6-pro   (realistic motion)
  luma  → luma-ray-2      (aesthetic / emotional)

HTTP is synchronous (requests) with exponential backoff; KieRenderClient
exposes it to the async poller through worker threads.
"""

import os
import time
import random
import asyncio
import logging
import requests

from .pipeline.models import Engine, RenderContext, RenderJobStatus, RenderUpdate, Scene

logger = logging.getLogger(__name__)

KIE_API_KEY = os.environ.get("KIE_API_KEY", "")
KIE_API_BASE = "https://api.kie.ai/api/v1"

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 2.0       # seconds, doubling each retry: 2, 4, 8
JITTER_MAX = 1.0
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}
REQUEST_TIMEOUT = 30

ENGINE_MODELS = {
    Engine.KLING: "kling-2.6-pro",
    Engine.LUMA: "luma-ray-2",
}

# Model → generation path segment
MODEL_ENDPOINTS = {
    "kling-2.6-pro": "kling",
    "luma-ray-2": "luma",
}

# Model → status polling path
MODEL_STATUS_PATHS = {
    "kling-2.6-pro": "kling/record-info",
    "luma-ray-2": "luma/record-info",
}

# Model → Kie.ai API model name
MODEL_API_NAMES = {
    "kling-2.6-pro": "kling2.6_pro",
    "luma-ray-2": "ray-2",
}

_FAILED_STATES = ("GENERATE_FAILED", "CREATE_TASK_FAILED", "SENSITIVE_WORD_ERROR", "fail", "failed")
_RUNNING_STATES = ("GENERATING", "PENDING", "queuing", "waiting", "processing")


class RenderSubmissionError(RuntimeError):
    pass


def _request_with_backoff(method: str, url: str, **kwargs) -> requests.Response:
    """
    HTTP request with exponential backoff on 429 / 5xx and connection errors.
    Uses: base_delay * 2^attempt + random jitter.
    """
    headers = kwargs.pop("headers", {})
    headers.setdefault("Authorization", f"Bearer {KIE_API_KEY}")
    kwargs.setdefault("timeout", REQUEST_TIMEOUT)

    for attempt in range(MAX_RETRIES + 1):
        try:
            response = requests.request(method, url, headers=headers, **kwargs)
        except requests.exceptions.RequestException as e:
            if attempt >= MAX_RETRIES:
                raise
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            logger.warning(
                f"Kie.ai request error on attempt {attempt + 1}/{MAX_RETRIES + 1}: {e} "
                f"— retrying in {delay:.1f}s"
            )
            time.sleep(delay)
            continue

        if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= MAX_RETRIES:
            response.raise_for_status()
            return response

        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            delay = int(retry_after)
        else:
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
        logger.warning(
            f"Kie.ai {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1} "
            f"— retrying in {delay:.1f}s (url={url})"
        )
        time.sleep(delay)

    raise RenderSubmissionError(f"Request to {url} failed after {MAX_RETRIES + 1} attempts")


def build_render_prompt(scene: Scene, context: RenderContext) -> str:
    parts = [scene.action, context.style.prompt_template]
    if context.invariant_token:
        parts.append(context.invariant_token)
    return ", ".join(p for p in parts if p)


def submit_render_job(scene: Scene, context: RenderContext, engine: Engine) -> str:
    """Start one scene render; returns the Kie.ai task id."""
    model = ENGINE_MODELS[engine]
    url = f"{KIE_API_BASE}/{MODEL_ENDPOINTS[model]}/generate"

    payload = {
        "prompt": build_render_prompt(scene, context),
        "negativePrompt": context.style.negative_prompt,
        "model": MODEL_API_NAMES[model],
        "aspectRatio": context.aspect_ratio,
        "duration": context.duration_seconds,
    }
    if context.image_url:
        payload["imageUrls"] = [context.image_url]

    logger.info(f"Kie.ai render request for scene {scene.id}: model={payload['model']}")
    data = _request_with_backoff("POST", url, json=payload).json()

    task_id = (data.get("data") or {}).get("taskId") if isinstance(data, dict) else None
    if not task_id:
        raise RenderSubmissionError(f"Kie.ai returned no taskId: {str(data)[:300]}")
    return task_id


def _parse_progress(value) -> int:
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError):
        return 0


def normalize_status(status_data: dict) -> RenderUpdate:
    """
    Collapse Kie.ai's status indicators into a RenderUpdate.

    Kie.ai reports progress through data.status ("SUCCESS" / "GENERATING" /
    "GENERATE_FAILED" ...) and, for some models, data.successFlag
    (0 generating, 1 success, 2/3 failed).
    """
    poll_data = status_data.get("data") if isinstance(status_data, dict) else None
    if not isinstance(poll_data, dict):
        poll_data = {}

    raw_status = poll_data.get("status") or poll_data.get("state") or ""
    success_flag = poll_data.get("successFlag")
    progress = _parse_progress(poll_data.get("progress"))

    if raw_status in ("SUCCESS", "success") or success_flag == 1:
        results = poll_data.get("results") or poll_data.get("works") or []
        video_url = None
        if results and isinstance(results, list) and isinstance(results[0], dict):
            video_url = results[0].get("url") or results[0].get("videoUrl") or results[0].get("video_url")
        if not video_url:
            video_url = poll_data.get("videoUrl") or poll_data.get("url") or poll_data.get("video_url")
        if not video_url:
            return RenderUpdate(status=RenderJobStatus.FAILED, progress=100, error="Completed but no video URL found")
        return RenderUpdate(status=RenderJobStatus.COMPLETED, progress=100, video_url=video_url)

    if raw_status in _FAILED_STATES or success_flag in (2, 3):
        error = poll_data.get("error") or poll_data.get("msg") or poll_data.get("failReason") or "Unknown error"
        return RenderUpdate(status=RenderJobStatus.FAILED, progress=min(progress, 100), error=str(error))

    if raw_status in _RUNNING_STATES or success_flag == 0 or not raw_status:
        return RenderUpdate(status=RenderJobStatus.PROCESSING, progress=min(progress, 99))

    logger.warning(f"Unrecognized Kie.ai status '{raw_status}', treating as processing")
    return RenderUpdate(status=RenderJobStatus.PROCESSING, progress=min(progress, 99))


def query_render_job(task_id: str, engine: Engine) -> RenderUpdate:
    model = ENGINE_MODELS[engine]
    url = f"{KIE_API_BASE}/{MODEL_STATUS_PATHS[model]}"
    response = _request_with_backoff("GET", url, params={"taskId": task_id})
    return normalize_status(response.json())


class KieRenderClient:
    """Async facade used by the render poller."""

    async def submit(self, scene: Scene, context: RenderContext, engine: Engine) -> str:
        return await asyncio.to_thread(submit_render_job, scene, context, engine)

    async def query(self, external_job_id: str, engine: Engine) -> RenderUpdate:
        return await asyncio.to_thread(query_render_job, external_job_id, engine)
