"""
Pydantic models and enums for the director pipeline.
"""

from enum import Enum
from typing import Optional
from datetime import datetime, timezone

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Stages & Statuses ────────────────────────────────────────────────────────

class Stage(str, Enum):
    IDLE = "IDLE"
    QUALITY_CHECK = "QUALITY_CHECK"
    QUALITY_FAILED = "QUALITY_FAILED"
    REMASTERING = "REMASTERING"
    STORYBOARD_REVIEW = "STORYBOARD_REVIEW"
    RENDERING = "RENDERING"
    COMPLETED = "COMPLETED"


TERMINAL_STAGES = {Stage.QUALITY_FAILED, Stage.COMPLETED}


class SceneStatus(str, Enum):
    PENDING = "PENDING"
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class RenderJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RenderJobStatus.COMPLETED, RenderJobStatus.FAILED)


class Engine(str, Enum):
    KLING = "kling"   # realistic motion
    LUMA = "luma"     # aesthetic / emotional


class RiskLabel(str, Enum):
    SAFE = "Safe"
    BALANCED = "Balanced"
    EXPERIMENTAL = "Experimental"


# ── Raw Analysis ─────────────────────────────────────────────────────────────

class DimensionScores(BaseModel):
    motion: float = Field(5.0, ge=0, le=10)
    emotion: float = Field(5.0, ge=0, le=10)
    narrative: float = Field(5.0, ge=0, le=10)


class RawAnalysis(BaseModel):
    """Objective, persona-independent facts about the uploaded image."""
    model_config = {"frozen": True}

    primary_colors: list[str] = Field(default_factory=list)
    mood: str = ""
    industry: str = ""
    typography: str = ""
    composition: str = ""
    focal_points: list[str] = Field(default_factory=list)
    style_keywords: list[str] = Field(default_factory=list)
    quality_score: float = Field(7.0, ge=0, le=10)
    integrity_score: float = Field(0.8, ge=0, le=1)
    scores: DimensionScores = Field(default_factory=DimensionScores)
    rationale: dict[str, str] = Field(default_factory=dict)
    detected_objects: list[str] = Field(default_factory=list)
    detected_text: list[str] = Field(default_factory=list)
    analyzed_at: datetime = Field(default_factory=utcnow)


# ── Personas ─────────────────────────────────────────────────────────────────

class BiasMultipliers(BaseModel):
    motion: float = 1.0
    emotion: float = 1.0
    narrative: float = 1.0


class PersonaVoice(BaseModel):
    tone: str
    vocabulary: list[str] = Field(default_factory=list)
    forbidden: list[str] = Field(default_factory=list)


class PersonaProfile(BaseModel):
    model_config = {"frozen": True}

    id: str
    name: str
    avatar: str = ""
    archetype: str = ""
    quote: str = ""
    version: int = 1
    biases: BiasMultipliers
    risk_label: RiskLabel
    hallucination_tolerance: float = Field(..., ge=0, le=1)
    voice: PersonaVoice
    # None means "derive the engine from adjusted scores"
    preferred_engine: Optional[str] = None
    prompt_modifier: str = ""


class PitchNarrative(BaseModel):
    vision: str
    safety: str
    magic: str


class TimelineFrame(BaseModel):
    time: str
    visual: str
    camera: str


class PitchTimeline(BaseModel):
    start: TimelineFrame
    middle: TimelineFrame
    end: TimelineFrame


class PersonaPitchDraft(BaseModel):
    """What the interpretation collaborator returns before bias and routing are applied."""
    narrative: PitchNarrative
    timeline: PitchTimeline


class PersonaPitch(BaseModel):
    persona_id: str
    persona_name: str
    narrative: PitchNarrative
    timeline: PitchTimeline
    adjusted_scores: DimensionScores
    engine: Engine
    risk_label: RiskLabel
    is_fallback: bool = False
    generated_at: datetime = Field(default_factory=utcnow)


class FanOutResult(BaseModel):
    job_id: str
    raw_analysis: RawAnalysis
    pitches: dict[str, PersonaPitch]
    recommended_persona_id: str


class PersonaSelection(BaseModel):
    """Learning event: which persona the caller picked versus the objective winner."""
    job_id: str
    user_id: str
    persona_id: str
    raw_scores: DimensionScores
    objective_winner: str
    subjective_choice: str
    was_override: bool
    created_at: datetime = Field(default_factory=utcnow)


# ── Scenes & Jobs ────────────────────────────────────────────────────────────

MAX_SCENES = 10
MAX_ATTEMPTS = 5


class Scene(BaseModel):
    id: str
    sequence_index: int = Field(..., ge=1, le=MAX_SCENES)
    action: str
    status: SceneStatus = SceneStatus.PENDING
    preview_url: Optional[str] = None
    video_url: Optional[str] = None
    feedback: Optional[str] = None
    attempt_count: int = Field(0, ge=0, le=MAX_ATTEMPTS)
    render_job_id: Optional[str] = None


class JobState(BaseModel):
    job_id: str
    user_id: str
    stage: Stage = Stage.IDLE
    source_image_url: str
    working_image_url: Optional[str] = None
    quality_score: Optional[float] = None
    is_remastered: bool = False
    persona_id: Optional[str] = None
    engine: Optional[Engine] = None
    style_id: Optional[str] = None
    invariant_token: Optional[str] = None
    scenes: list[Scene] = Field(default_factory=list)
    cost_estimate: int = 0
    error_message: Optional[str] = None
    render_job_ids: list[str] = Field(default_factory=list)
    render_progress: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    def scene(self, scene_id: str) -> Optional[Scene]:
        for scene in self.scenes:
            if scene.id == scene_id:
                return scene
        return None


class RenderJob(BaseModel):
    job_id: str
    owner_job_id: Optional[str] = None  # director job that started the render
    user_id: Optional[str] = None
    external_job_id: Optional[str] = None
    scene_id: str = ""
    engine: Optional[Engine] = None
    status: RenderJobStatus = RenderJobStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    video_url: Optional[str] = None
    error: Optional[str] = None
    polls: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class RenderUpdate(BaseModel):
    """Normalized upstream status for one render job."""
    status: RenderJobStatus
    progress: int = 0
    video_url: Optional[str] = None
    error: Optional[str] = None


class StylePreset(BaseModel):
    id: str
    name: str
    description: str
    category: str
    prompt_template: str
    negative_prompt: str
    is_premium: bool = False


class RenderContext(BaseModel):
    """The job-wide visual layer every scene render is submitted with."""
    style: StylePreset
    invariant_token: str = ""
    image_url: Optional[str] = None
    aspect_ratio: str = "16:9"
    duration_seconds: int = 5


# ── API Request Models ───────────────────────────────────────────────────────

class RefinementItem(BaseModel):
    scene_id: str
    status: SceneStatus = Field(..., description="YELLOW (tweak with feedback) or RED (regenerate)")
    feedback: Optional[str] = None


class RefineRequest(BaseModel):
    refinements: list[RefinementItem] = Field(..., min_length=1)


class InitJobRequest(BaseModel):
    force_remaster: bool = False
    preferred_style_id: Optional[str] = None
    scene_count: int = Field(3, ge=1, le=MAX_SCENES)
    context: Optional[str] = None


class SelectPersonaRequest(BaseModel):
    persona_id: str


class ApproveProductionRequest(BaseModel):
    scene_ids: list[str] = Field(..., min_length=1)


class AnalyzeRequest(BaseModel):
    context: Optional[str] = Field(None, description="Optional brief from the user")


class UploadResponse(BaseModel):
    job: JobState
    raw_analysis: RawAnalysis
