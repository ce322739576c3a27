"""
DeepSeek chat-completions client for storyboard writing and scene refinement.

- write_storyboard: N numbered scene descriptions from the raw analysis + style
- refine_scene:     YELLOW → tweak with feedback, RED → full regeneration
"""

import os
import re
import logging
from typing import Optional

import httpx

from .errors import UnparseableResponseError
from .pipeline.models import RawAnalysis, Scene, StylePreset

logger = logging.getLogger(__name__)

DEEPSEEK_API_KEY = os.environ.get("DEEPSEEK_API_KEY", "")
DEEPSEEK_API_URL = os.environ.get("DEEPSEEK_API_URL", "https://api.deepseek.com/v1/chat/completions")
DEEPSEEK_MODEL = "deepseek-chat"
DEFAULT_SCENE_COUNT = 3
REQUEST_TIMEOUT = 60

_NUMBERED_LINE = re.compile(r"^\s*(\d+)[.)]\s*(.+)$")


async def _chat(system_prompt: str, user_prompt: str, temperature: float, max_tokens: int) -> str:
    if not DEEPSEEK_API_KEY:
        raise RuntimeError("DEEPSEEK_API_KEY not set")

    payload = {
        "model": DEEPSEEK_MODEL,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
        resp = await client.post(
            DEEPSEEK_API_URL,
            json=payload,
            headers={"Authorization": f"Bearer {DEEPSEEK_API_KEY}"},
        )
        resp.raise_for_status()
        data = resp.json()

    choices = data.get("choices") or []
    content = ((choices[0].get("message") or {}).get("content") if choices else None) or ""
    if not content.strip():
        raise UnparseableResponseError("DeepSeek returned no content")
    return content.strip()


def parse_numbered_scenes(content: str, expected: int) -> list[str]:
    """Pull `1. ...` / `2) ...` lines out of a completion, in order."""
    scenes = []
    for line in content.splitlines():
        match = _NUMBERED_LINE.match(line)
        if match:
            scenes.append(match.group(2).strip().strip('"'))
    if len(scenes) < expected:
        raise UnparseableResponseError(f"Expected {expected} scenes, got {len(scenes)}", content)
    return scenes[:expected]


STORYBOARD_PROMPT = """You are a professional video director creating scene descriptions for a brand video.

BRAND CONTEXT:
- Mood: {mood}
- Colors: {colors}
- Visual style: {keywords}
- Composition: {composition}

STYLE PRESET: {style_name}
- {style_description}
- Template: {style_template}

INVARIANT VISUAL IDENTITY:
{invariant_token}
{context_block}
Create {count} distinct scene descriptions that keep the invariant identity and show progression
(close-up → medium → wide, or intro → detail → finale). Each is 1-2 specific, actionable sentences.

Return ONLY {count} lines, numbered 1-{count}."""


async def write_storyboard(
    raw: RawAnalysis,
    style: StylePreset,
    invariant_token: str,
    context: Optional[str] = None,
    scene_count: int = DEFAULT_SCENE_COUNT,
) -> list[str]:
    system_prompt = STORYBOARD_PROMPT.format(
        mood=raw.mood or "neutral",
        colors=", ".join(raw.primary_colors) or "unspecified",
        keywords=", ".join(raw.style_keywords) or "unspecified",
        composition=raw.composition or "unspecified",
        style_name=style.name,
        style_description=style.description,
        style_template=style.prompt_template,
        invariant_token=invariant_token,
        context_block=f"\nPRODUCER NOTES: {context}\n" if context else "",
        count=scene_count,
    )
    content = await _chat(system_prompt, f"Generate {scene_count} scene descriptions for this brand.", 0.8, 500)
    return parse_numbered_scenes(content, scene_count)


TWEAK_PROMPT = """You are a professional video director. Refine this scene description based on user feedback.

CURRENT SCENE:
{action}

USER FEEDBACK:
{feedback}

Keep the core concept and this visual identity: {invariant_token}
Return ONLY the refined scene description (1-2 sentences)."""

REGENERATE_PROMPT = """You are a professional video director. Write a completely new scene description
that is DIFFERENT from the original but fills the same position (scene {index}) in the sequence.

ORIGINAL SCENE (do not repeat):
{action}

Keep this visual identity: {invariant_token}
Use a different angle, composition or focus. Return ONLY the new description (1-2 sentences)."""


async def refine_scene(
    scene: Scene,
    feedback: Optional[str],
    is_full_regen: bool,
    invariant_token: str = "",
) -> str:
    """Return a new action description for one scene."""
    if is_full_regen:
        system_prompt = REGENERATE_PROMPT.format(
            index=scene.sequence_index, action=scene.action, invariant_token=invariant_token or "n/a"
        )
        return await _chat(system_prompt, f"Generate a completely new scene {scene.sequence_index}.", 0.9, 150)

    system_prompt = TWEAK_PROMPT.format(
        action=scene.action, feedback=feedback or "", invariant_token=invariant_token or "n/a"
    )
    return await _chat(system_prompt, "Refine the scene based on the feedback.", 0.7, 150)
