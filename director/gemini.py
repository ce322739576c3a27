"""
Gemini integration for image analysis and persona interpretation.

- analyze_image: Gemini Flash (vision) via REST → objective RawAnalysis
- interpret:     Gemini Flash (text) via REST → one persona's pitch draft

Both return parsed, validated models; transport errors surface as httpx
exceptions so the retry adapter can classify them.
"""

import os
import json
import base64
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from .errors import UnparseableResponseError
from .generative import extract_json_object
from .pipeline.models import (
    DimensionScores,
    PersonaPitchDraft,
    PersonaProfile,
    RawAnalysis,
)

logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"
VISION_MODEL = os.environ.get("GEMINI_VISION_MODEL", "gemini-2.5-flash")
TEXT_MODEL = os.environ.get("GEMINI_TEXT_MODEL", "gemini-2.5-flash")
REQUEST_TIMEOUT = 60


def _api_url(model: str) -> str:
    return f"{API_BASE}/models/{model}:generateContent?key={GEMINI_API_KEY}"


def _guess_mime(url: str) -> str:
    lower = url.lower()
    if ".png" in lower:
        return "image/png"
    if ".webp" in lower:
        return "image/webp"
    return "image/jpeg"


async def _download_image_bytes(url: str) -> bytes:
    async with httpx.AsyncClient(timeout=30, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content


async def _generate_content(model: str, parts: list, config: dict | None = None) -> str:
    """Call the generateContent REST endpoint and return the concatenated text parts."""
    if not GEMINI_API_KEY:
        raise RuntimeError("GEMINI_API_KEY not set")

    body: dict = {"contents": [{"parts": parts}]}
    if config:
        body["generationConfig"] = config

    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
        resp = await client.post(_api_url(model), json=body)
        resp.raise_for_status()
        data = resp.json()

    candidates = data.get("candidates") or []
    if not candidates:
        raise UnparseableResponseError("Gemini returned no candidates", json.dumps(data)[:500])
    content_parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in content_parts)


def _normalize_score(value, default: float, low: float = 0.0, high: float = 10.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if value != value:  # NaN
        return default
    return max(low, min(high, float(value)))


def _str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


# =========================================================================
# 1. Raw analysis: objective facts, no persona
# =========================================================================

ANALYSIS_PROMPT = """You are an expert brand strategist analyzing a brand image for AI video generation.
Report only what is in the image. Do not recommend a style or engine.

Score three dimensions from 0 to 10:
- motion_score: motion complexity and dynamic potential (cars, water, sports high; logos, still life low)
- emotion_score: emotional and aesthetic impact (cinematic light, luxury feel high; plain, utilitarian low)
- narrative_score: narrative clarity and message coherence (clear product story high; abstract low)

Return ONLY a JSON object with this structure:
{
  "primary_colors": ["#hex1", "#hex2", "#hex3"],
  "mood": "overall emotional tone",
  "industry": "likely industry",
  "typography": "font style if visible",
  "composition": "layout and visual hierarchy",
  "focal_points": ["primary focus", "secondary element"],
  "style_keywords": ["keyword1", "keyword2", "keyword3", "keyword4", "keyword5"],
  "detected_objects": ["object"],
  "detected_text": ["visible text"],
  "quality_score": 8.5,
  "integrity_score": 0.95,
  "motion_score": 6.5,
  "emotion_score": 8.0,
  "narrative_score": 7.5,
  "rationale": {"motion": "why", "emotion": "why", "narrative": "why"}
}"""


def parse_raw_analysis(data: dict) -> RawAnalysis:
    """Build a RawAnalysis from the model's JSON, clamping scores and filling defaults."""
    rationale = data.get("rationale") if isinstance(data.get("rationale"), dict) else {}
    return RawAnalysis(
        primary_colors=_str_list(data.get("primary_colors")),
        mood=str(data.get("mood") or ""),
        industry=str(data.get("industry") or ""),
        typography=str(data.get("typography") or ""),
        composition=str(data.get("composition") or ""),
        focal_points=_str_list(data.get("focal_points")),
        style_keywords=_str_list(data.get("style_keywords")),
        detected_objects=_str_list(data.get("detected_objects")),
        detected_text=_str_list(data.get("detected_text")),
        quality_score=_normalize_score(data.get("quality_score"), 7.0),
        integrity_score=_normalize_score(data.get("integrity_score"), 0.8, 0.0, 1.0),
        scores=DimensionScores(
            motion=_normalize_score(data.get("motion_score"), 5.0),
            emotion=_normalize_score(data.get("emotion_score"), 5.0),
            narrative=_normalize_score(data.get("narrative_score"), 5.0),
        ),
        rationale={k: str(v) for k, v in rationale.items()},
    )


async def analyze_image(image_url: str) -> RawAnalysis:
    """Run the objective vision analysis for one image URL."""
    image_bytes = await _download_image_bytes(image_url)
    parts = [
        {"inlineData": {"mimeType": _guess_mime(image_url), "data": base64.b64encode(image_bytes).decode()}},
        {"text": ANALYSIS_PROMPT},
    ]
    text = await _generate_content(VISION_MODEL, parts, {"temperature": 0.2})
    analysis = parse_raw_analysis(extract_json_object(text))
    logger.info(
        f"Raw analysis: quality={analysis.quality_score} motion={analysis.scores.motion} "
        f"emotion={analysis.scores.emotion} narrative={analysis.scores.narrative}"
    )
    return analysis


# =========================================================================
# 2. Persona interpretation: voice and timeline, no scores
# =========================================================================

INTERPRET_PROMPT = """{modifier}

Tone: {tone}. Prefer words like: {vocabulary}. Never use: {forbidden}.

IMAGE FACTS:
- Mood: {mood}
- Industry: {industry}
- Composition: {composition}
- Focal points: {focal_points}
- Style keywords: {keywords}
- Visible text: {detected_text}
{context_block}
Pitch a short video for this image in your own voice.
Return ONLY a JSON object:
{{
  "narrative": {{
    "vision": "what is the subject, max 15 words",
    "safety": "what must be protected, max 15 words",
    "magic": "what feeling we create, max 15 words"
  }},
  "timeline": {{
    "start":  {{"time": "0s",  "visual": "...", "camera": "..."}},
    "middle": {{"time": "2s",  "visual": "...", "camera": "..."}},
    "end":    {{"time": "5s",  "visual": "...", "camera": "..."}}
  }}
}}"""


def build_interpret_prompt(raw: RawAnalysis, persona: PersonaProfile, context: Optional[str] = None) -> str:
    context_block = f"\nBRIEF FROM THE PRODUCER: {context}\n" if context else ""
    return INTERPRET_PROMPT.format(
        modifier=persona.prompt_modifier,
        tone=persona.voice.tone,
        vocabulary=", ".join(persona.voice.vocabulary),
        forbidden=", ".join(persona.voice.forbidden),
        mood=raw.mood or "unknown",
        industry=raw.industry or "unknown",
        composition=raw.composition or "unknown",
        focal_points=", ".join(raw.focal_points) or "none",
        keywords=", ".join(raw.style_keywords) or "none",
        detected_text=", ".join(raw.detected_text) or "none",
        context_block=context_block,
    )


async def interpret(raw: RawAnalysis, persona: PersonaProfile, context: Optional[str] = None) -> PersonaPitchDraft:
    """Ask one persona for its narrative and three-frame timeline."""
    prompt = build_interpret_prompt(raw, persona, context)
    temperature = 0.4 + 0.6 * persona.hallucination_tolerance
    text = await _generate_content(TEXT_MODEL, [{"text": prompt}], {"temperature": round(temperature, 2)})
    data = extract_json_object(text)
    try:
        return PersonaPitchDraft.model_validate(data)
    except ValidationError as e:
        raise UnparseableResponseError(f"Pitch from {persona.id} has the wrong shape: {e}", text) from e
