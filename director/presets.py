"""
Style preset library — the visual layer applied to every scene of a job.
Selection reads the raw analysis; the invariant token keeps scenes coherent.
"""

from typing import Optional

from .pipeline.models import RawAnalysis, StylePreset

DEFAULT_STYLE_ID = "luxury-gold"

PRESETS: dict[str, StylePreset] = {
    "luxury-gold": StylePreset(
        id="luxury-gold",
        name="Luxury Gold",
        description="Elegant, high-end aesthetic with warm golden tones and sophisticated movements",
        category="luxury",
        prompt_template="cinematic, luxury, elegant, golden hour lighting, premium quality, sophisticated",
        negative_prompt="cheap, low quality, amateur, harsh lighting",
    ),
    "tech-modern": StylePreset(
        id="tech-modern",
        name="Modern Tech",
        description="Clean, futuristic look with cool tones and smooth transitions",
        category="tech",
        prompt_template="modern, technological, sleek, minimal, professional, high-tech, clean lines",
        negative_prompt="cluttered, dated, messy",
    ),
    "nature-organic": StylePreset(
        id="nature-organic",
        name="Organic Nature",
        description="Natural, earthy aesthetic with soft movements and organic textures",
        category="nature",
        prompt_template="natural, organic, earthy, soft lighting, authentic, wholesome, peaceful",
        negative_prompt="artificial, synthetic, harsh",
    ),
    "dramatic-cinematic": StylePreset(
        id="dramatic-cinematic",
        name="Cinematic Drama",
        description="Bold, high-contrast visuals with dynamic camera movements",
        category="dramatic",
        prompt_template="cinematic, dramatic, high contrast, dynamic, bold, professional film quality",
        negative_prompt="flat, boring, static",
        is_premium=True,
    ),
    "minimal-zen": StylePreset(
        id="minimal-zen",
        name="Minimal Zen",
        description="Minimalist design with calm, centered compositions",
        category="minimal",
        prompt_template="minimal, zen, calm, centered, simple, clean, serene, balanced",
        negative_prompt="busy, chaotic, cluttered",
        is_premium=True,
    ),
    "luxury-noir": StylePreset(
        id="luxury-noir",
        name="Luxury Noir",
        description="Dark, mysterious luxury aesthetic with high-end production",
        category="luxury",
        prompt_template="noir, dark luxury, mysterious, sophisticated, moody lighting, high-end",
        negative_prompt="bright, cheerful, low quality",
        is_premium=True,
    ),
}

# Mood words that pull toward a preset category
CATEGORY_MOODS = {
    "luxury": ["elegant", "sophisticated", "premium", "luxurious", "high-end"],
    "tech": ["modern", "futuristic", "technological", "sleek", "innovative"],
    "nature": ["natural", "organic", "earthy", "authentic", "peaceful"],
    "dramatic": ["bold", "dynamic", "powerful", "intense", "striking"],
    "minimal": ["minimal", "clean", "simple", "understated", "refined"],
}

INDUSTRY_CATEGORIES = [
    (("tech", "software"), "tech"),
    (("fashion", "luxury"), "luxury"),
    (("wellness", "health"), "nature"),
]


def get_preset(style_id: str) -> StylePreset:
    preset = PRESETS.get(style_id)
    if not preset:
        raise ValueError(f"Unknown style preset: {style_id}. Available: {list(PRESETS.keys())}")
    return preset


def list_presets(include_premium: bool = True) -> list[StylePreset]:
    return [p for p in PRESETS.values() if include_premium or not p.is_premium]


def _score_preset(preset: StylePreset, keywords: list[str], mood: str, industry: str) -> int:
    score = 0
    template_words = {w.strip() for w in preset.prompt_template.lower().replace(",", " ").split()}
    for keyword in keywords:
        if keyword in template_words:
            score += 3
    for mood_word in CATEGORY_MOODS.get(preset.category, []):
        if mood_word in mood or mood_word in keywords:
            score += 2
    for industry_words, category in INDUSTRY_CATEGORIES:
        if preset.category == category and any(w in industry for w in industry_words):
            score += 2
    return score


def select_style(analysis: RawAnalysis, preferred_id: Optional[str] = None) -> StylePreset:
    """
    Pick the style for a job: the caller's preference when it exists,
    otherwise the best keyword / mood / industry match. Ties keep registry order.
    """
    if preferred_id and preferred_id in PRESETS:
        return PRESETS[preferred_id]

    keywords = [k.lower() for k in analysis.style_keywords]
    mood = analysis.mood.lower()
    industry = analysis.industry.lower()

    best, best_score = PRESETS[DEFAULT_STYLE_ID], 0
    for preset in PRESETS.values():
        score = _score_preset(preset, keywords, mood, industry)
        if score > best_score:
            best, best_score = preset, score
    return best


def build_invariant_token(analysis: RawAnalysis) -> str:
    """Visual identity that must persist across every scene of the job."""
    colors = f"{', '.join(analysis.primary_colors)} color palette" if analysis.primary_colors else ""
    keywords = ", ".join(analysis.style_keywords[:3])
    parts = [analysis.mood, colors, keywords, analysis.composition]
    return ", ".join(p for p in parts if p)
