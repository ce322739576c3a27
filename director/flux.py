"""
FAL Flux client for still previews and image remastering.

- render_preview: flux/schnell text-to-image, one frame per scene
- enhance_image:  flux-pro image-to-image, used by the quality gate
"""

import os
import logging
from typing import Optional

import httpx

from .errors import TransientUpstreamError, UnparseableResponseError

logger = logging.getLogger(__name__)

FAL_API_KEY = os.environ.get("FAL_API_KEY") or os.environ.get("FAL_KEY", "")
FAL_API_BASE = "https://fal.run"
PREVIEW_MODEL = "fal-ai/flux/schnell"
REMASTER_MODEL = "fal-ai/flux-pro/v1.1/redux"
REQUEST_TIMEOUT = 120

REMASTER_PROMPT = (
    "Professional product photography, sharp focus, clean lighting, high resolution, "
    "preserve every logo, label and piece of text exactly"
)


async def _run(model: str, payload: dict) -> dict:
    if not FAL_API_KEY:
        raise RuntimeError("FAL_API_KEY not set")
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
        resp = await client.post(
            f"{FAL_API_BASE}/{model}",
            json=payload,
            headers={"Authorization": f"Key {FAL_API_KEY}"},
        )
        resp.raise_for_status()
        return resp.json()


def _first_image_url(data: dict) -> str:
    images = data.get("images") or []
    if images and isinstance(images[0], dict) and images[0].get("url"):
        return images[0]["url"]
    image = data.get("image")
    if isinstance(image, dict) and image.get("url"):
        return image["url"]
    if data.get("status") in ("IN_QUEUE", "IN_PROGRESS"):
        raise TransientUpstreamError("FAL request still queued")
    raise UnparseableResponseError("FAL response has no image URL", str(data)[:500])


async def render_preview(description: str) -> str:
    """Render one still preview frame for a scene description."""
    data = await _run(PREVIEW_MODEL, {
        "prompt": description,
        "image_size": "landscape_16_9",
        "num_inference_steps": 4,
        "num_images": 1,
    })
    url = _first_image_url(data)
    logger.info(f"Flux preview ready: {url}")
    return url


async def enhance_image(image_url: str, hint: Optional[str] = None) -> str:
    """Remaster a low-quality source image, keeping its subject intact."""
    prompt = f"{REMASTER_PROMPT}, focus on {hint}" if hint else REMASTER_PROMPT
    data = await _run(REMASTER_MODEL, {
        "image_url": image_url,
        "prompt": prompt,
        "num_images": 1,
    })
    url = _first_image_url(data)
    logger.info(f"Flux remaster ready: {url}")
    return url
