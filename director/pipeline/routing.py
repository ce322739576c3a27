"""
Bias & routing — pure functions, no I/O.

  apply_bias:          raw scores × persona multipliers, clamped to [0, 10]
  route_engine:        declared engine lock, else motion vs. emotion
  recommend_persona:   ordered rule list over RAW scores, first match wins
  objective_winner:    highest raw dimension (ties favour motion, then emotion)

Recommendation reads raw scores; routing reads biased ones.
"""

from typing import Callable, Optional

from .models import DimensionScores, Engine, PersonaProfile

SCORE_MIN = 0.0
SCORE_MAX = 10.0

# Declared engine names that collapse onto a physical engine
ENGINE_ALIASES: dict[str, Engine] = {
    "kling": Engine.KLING,
    "kling-pro": Engine.KLING,
    "kling-2.6-pro": Engine.KLING,
    "luma": Engine.LUMA,
    "dream-machine": Engine.LUMA,
    "luma-ray-2": Engine.LUMA,
}


def clamp(value: float, low: float = SCORE_MIN, high: float = SCORE_MAX) -> float:
    return max(low, min(high, value))


def apply_bias(raw: DimensionScores, persona: PersonaProfile) -> DimensionScores:
    b = persona.biases
    return DimensionScores(
        motion=clamp(raw.motion * b.motion),
        emotion=clamp(raw.emotion * b.emotion),
        narrative=clamp(raw.narrative * b.narrative),
    )


def resolve_engine_alias(name: Optional[str]) -> Optional[Engine]:
    """Map a declared engine name to a physical engine; None if it names nothing we run."""
    if not name:
        return None
    return ENGINE_ALIASES.get(name.strip().lower())


def route_engine(adjusted: DimensionScores, persona: PersonaProfile) -> Engine:
    """
    Hard-locked engine when the persona declares a known one; otherwise
    engine A (kling) if adjusted motion strictly beats emotion, else engine B (luma).
    """
    locked = resolve_engine_alias(persona.preferred_engine)
    if locked is not None:
        return locked
    return Engine.KLING if adjusted.motion > adjusted.emotion else Engine.LUMA


# ── Recommendation ───────────────────────────────────────────────────────────

Rule = tuple[str, Callable[[DimensionScores], bool], str]

RECOMMENDATION_RULES: list[Rule] = [
    ("high_energy", lambda s: s.emotion > 8 and s.motion > 6, "provocateur"),
    (
        "narrative_led",
        lambda s: s.narrative > 7 and s.narrative >= s.motion and s.narrative >= s.emotion,
        "minimalist",
    ),
    ("motion_led", lambda s: s.motion >= s.emotion and s.motion >= s.narrative, "newtonian"),
    ("emotion_over_narrative", lambda s: s.emotion > s.narrative, "visionary"),
    ("solid_narrative", lambda s: s.narrative >= 6, "minimalist"),
    ("default", lambda s: True, "visionary"),
]


def recommend_persona(raw: DimensionScores) -> str:
    return matching_rule(raw)[2]


def matching_rule(raw: DimensionScores) -> Rule:
    for rule in RECOMMENDATION_RULES:
        if rule[1](raw):
            return rule
    return RECOMMENDATION_RULES[-1]


def objective_winner(raw: DimensionScores) -> str:
    if raw.motion >= raw.emotion and raw.motion >= raw.narrative:
        return "motion"
    if raw.emotion >= raw.motion and raw.emotion >= raw.narrative:
        return "emotion"
    return "narrative"
