"""
Fan-out — every registered persona interprets one cached analysis, concurrently.

Each persona's pitch is independent: a persona whose interpretation fails
gets a fallback pitch (neutral timeline, scores from its bias alone), so the
result always holds exactly one pitch per persona.
"""

import asyncio
import logging
from typing import Optional

from .. import metrics
from ..generative import FailurePolicy, invoke
from .models import (
    FanOutResult,
    PersonaPitch,
    PersonaPitchDraft,
    PersonaProfile,
    PitchNarrative,
    PitchTimeline,
    RawAnalysis,
    TimelineFrame,
)
from .personas import all_personas
from .routing import apply_bias, recommend_persona, route_engine

logger = logging.getLogger(__name__)


def fallback_draft(persona: PersonaProfile) -> PersonaPitchDraft:
    return PersonaPitchDraft(
        narrative=PitchNarrative(
            vision="Analysis unavailable for this director.",
            safety="Keep the subject, colors and any text exactly as uploaded.",
            magic="Retry for a full pitch from this director.",
        ),
        timeline=PitchTimeline(
            start=TimelineFrame(time="0s", visual="Establish the subject", camera="Static wide"),
            middle=TimelineFrame(time="2s", visual="Reveal key detail", camera="Slow push in"),
            end=TimelineFrame(time="5s", visual="Hold on the hero frame", camera="Static close"),
        ),
    )


def build_pitch(
    raw: RawAnalysis,
    persona: PersonaProfile,
    draft: Optional[PersonaPitchDraft],
) -> PersonaPitch:
    """Combine a draft with the persona's biased scores and routed engine."""
    adjusted = apply_bias(raw.scores, persona)
    content = draft or fallback_draft(persona)
    return PersonaPitch(
        persona_id=persona.id,
        persona_name=persona.name,
        narrative=content.narrative,
        timeline=content.timeline,
        adjusted_scores=adjusted,
        engine=route_engine(adjusted, persona),
        risk_label=persona.risk_label,
        is_fallback=draft is None,
    )


class FanOutOrchestrator:
    def __init__(self, cache, interpret, personas: Optional[list[PersonaProfile]] = None):
        self.cache = cache
        self.interpret = interpret
        self.personas = personas

    async def _pitch_for(self, job_id: str, raw: RawAnalysis, persona: PersonaProfile, context: Optional[str]) -> PersonaPitch:
        draft = await invoke(
            self.interpret,
            raw,
            persona,
            context,
            policy=FailurePolicy.FALLBACK,
            fallback=None,
            label=f"interpret[{persona.id}]",
        )
        if draft is None:
            metrics.inc_counter("fanout.fallback")
            logger.warning(f"[{job_id}] Persona {persona.id} fell back to a neutral pitch")
        return build_pitch(raw, persona, draft)

    async def analyze_all(self, job_id: str, image_url: str, context: Optional[str] = None) -> FanOutResult:
        raw = await self.cache.get_or_analyze(job_id, image_url)
        personas = self.personas if self.personas is not None else all_personas()

        pitches = await asyncio.gather(*[
            self._pitch_for(job_id, raw, persona, context) for persona in personas
        ])

        recommended = recommend_persona(raw.scores)
        logger.info(
            f"[{job_id}] Fan-out complete: {len(pitches)} pitches, "
            f"{sum(p.is_fallback for p in pitches)} fallback, recommended={recommended}"
        )
        return FanOutResult(
            job_id=job_id,
            raw_analysis=raw,
            pitches={p.persona_id: p for p in pitches},
            recommended_persona_id=recommended,
        )
