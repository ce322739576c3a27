"""
DirectorService — the per-job state machine.

  IDLE → QUALITY_CHECK → QUALITY_FAILED (terminal)
                       → REMASTERING → STORYBOARD_REVIEW
                       → STORYBOARD_REVIEW
  STORYBOARD_REVIEW → RENDERING → COMPLETED (terminal)

Every mutating operation holds the job's asyncio.Lock, validates everything
before changing anything, and commits once through the store's
compare-and-set. A failed operation leaves the stored job untouched.
"""

import asyncio
import logging
import weakref
from typing import Optional
from uuid import uuid4

from .. import metrics
from ..generative import FailurePolicy, invoke, sanitize_prompt_text
from ..presets import build_invariant_token, get_preset, list_presets, select_style
from ..errors import (
    AttemptLimitError,
    InvalidRefinementError,
    InvalidUploadError,
    JobConflictError,
    JobNotFoundError,
    PolicyViolation,
    SceneNotApprovedError,
    StageTransitionError,
    StoryboardGenerationError,
    UpstreamUnavailableError,
)
from .analysis_cache import RawAnalysisCache
from .collaborators import Collaborators
from .fanout import FanOutOrchestrator
from .models import (
    MAX_ATTEMPTS,
    MAX_SCENES,
    FanOutResult,
    JobState,
    PersonaProfile,
    PersonaSelection,
    RefinementItem,
    RenderContext,
    RenderJob,
    RenderJobStatus,
    Scene,
    SceneStatus,
    Stage,
    StylePreset,
    UploadResponse,
    utcnow,
)
from .personas import PERSONA_DOMINANCE, all_personas, get_persona, is_known_persona
from .poller import RenderJobPoller, new_render_job_id
from .routing import apply_bias, objective_winner, route_engine

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

QUALITY_THRESHOLD = 7.0
DEFAULT_SCENE_COUNT = 3
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp"}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024

ALLOWED_TRANSITIONS: dict[Stage, set[Stage]] = {
    Stage.IDLE: {Stage.QUALITY_CHECK},
    Stage.QUALITY_CHECK: {Stage.QUALITY_FAILED, Stage.REMASTERING, Stage.STORYBOARD_REVIEW},
    Stage.REMASTERING: {Stage.STORYBOARD_REVIEW},
    Stage.STORYBOARD_REVIEW: {Stage.RENDERING},
    Stage.RENDERING: {Stage.COMPLETED},
    Stage.QUALITY_FAILED: set(),
    Stage.COMPLETED: set(),
}

# Persona choice is only meaningful before production starts
PERSONA_SELECTABLE_STAGES = {Stage.IDLE, Stage.STORYBOARD_REVIEW}


def advance(job: JobState, target: Stage) -> JobState:
    """Return a copy of job at `target`, or raise if the transition is not allowed."""
    if target not in ALLOWED_TRANSITIONS[job.stage]:
        raise StageTransitionError(
            f"Cannot move job {job.job_id} from {job.stage.value} to {target.value}",
            {"from": job.stage.value, "to": target.value},
        )
    return job.model_copy(update={"stage": target})


def require_stage(job: JobState, *stages: Stage):
    if job.stage not in stages:
        raise StageTransitionError(
            f"Job {job.job_id} is in {job.stage.value}; expected {' or '.join(s.value for s in stages)}",
            {"stage": job.stage.value, "expected": [s.value for s in stages]},
        )


class DirectorService:
    """
    Usage:
        service = DirectorService(job_store, analysis_store, selection_store, poller)

        upload = await service.upload_and_analyze(user_id, filename, data, content_type)
        pitches = await service.analyze_all_personas(upload.job.job_id, user_id)
        job = await service.init_job(upload.job.job_id, user_id)
        job = await service.refine_storyboard(job.job_id, user_id, refinements)
        job = await service.approve_production(job.job_id, user_id, scene_ids)
    """

    def __init__(
        self,
        job_store,
        analysis_store,
        selection_store,
        poller: RenderJobPoller,
        collaborators: Optional[Collaborators] = None,
        personas: Optional[list[PersonaProfile]] = None,
        quality_threshold: float = QUALITY_THRESHOLD,
    ):
        self.jobs = job_store
        self.selections = selection_store
        self.poller = poller
        self.collaborators = collaborators or Collaborators()
        self.quality_threshold = quality_threshold
        self.cache = RawAnalysisCache(analysis_store, self.collaborators.analyze_image)
        self.fanout = FanOutOrchestrator(self.cache, self.collaborators.interpret, personas)
        # entries vanish once no coroutine holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ── Helpers ──────────────────────────────────────────────────────────

    def _lock(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    async def _load(self, job_id: str, user_id: str) -> JobState:
        job = await self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.user_id != user_id:
            raise PermissionError("You don't own this job")
        return job

    async def _commit(self, job: JobState, read_version: int) -> JobState:
        committed = await self.jobs.commit(job, read_version)
        logger.info(f"[{job.job_id}] {committed.stage.value} (v{committed.version})")
        return committed

    async def _preview(self, job_id: str, description: str, style: Optional[StylePreset]) -> Optional[str]:
        prompt = f"{description}, {style.prompt_template}" if style else description
        url = await invoke(
            self.collaborators.render_preview,
            prompt,
            policy=FailurePolicy.FALLBACK,
            fallback=None,
            label="render_preview",
        )
        if url is None:
            logger.warning(f"[{job_id}] Preview unavailable for: {description[:60]}")
        return url

    @staticmethod
    def _style_of(job: JobState) -> Optional[StylePreset]:
        if not job.style_id:
            return None
        try:
            return get_preset(job.style_id)
        except ValueError:
            return None

    # ── Upload & Analysis ────────────────────────────────────────────────

    async def upload_and_analyze(
        self,
        user_id: str,
        filename: str,
        data: bytes,
        content_type: str,
    ) -> UploadResponse:
        """Store the source image, open an IDLE job and run the raw analysis once."""
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise InvalidUploadError(
                f"Unsupported image type {content_type}",
                {"allowed": sorted(ALLOWED_CONTENT_TYPES)},
            )
        if not data:
            raise InvalidUploadError("Empty upload")
        if len(data) > MAX_UPLOAD_BYTES:
            raise InvalidUploadError(
                f"Image exceeds {MAX_UPLOAD_BYTES // (1024 * 1024)} MB",
                {"max_bytes": MAX_UPLOAD_BYTES},
            )

        image_url = await self.collaborators.upload_image(user_id, filename, data, content_type)
        job = JobState(
            job_id=str(uuid4()),
            user_id=user_id,
            source_image_url=image_url,
            working_image_url=image_url,
        )
        await self.jobs.create(job)
        logger.info(f"[{job.job_id}] Created for user {user_id}")

        analysis = await self.cache.get_or_analyze(job.job_id, image_url)
        return UploadResponse(job=job, raw_analysis=analysis)

    async def analyze_all_personas(
        self,
        job_id: str,
        user_id: str,
        context: Optional[str] = None,
    ) -> FanOutResult:
        job = await self._load(job_id, user_id)
        brief = sanitize_prompt_text(context) if context else None
        return await self.fanout.analyze_all(job.job_id, job.source_image_url, brief or None)

    async def record_persona_selection(self, job_id: str, user_id: str, persona_id: str) -> JobState:
        """Attach a persona (and its routed engine) to the job and log the learning event."""
        if not is_known_persona(persona_id):
            raise PolicyViolation(f"Unknown persona: {persona_id}", {"persona_id": persona_id})

        async with self._lock(job_id):
            job = await self._load(job_id, user_id)
            require_stage(job, *PERSONA_SELECTABLE_STAGES)
            raw = await self.cache.get_or_analyze(job_id, job.source_image_url)

            persona = get_persona(persona_id)
            engine = route_engine(apply_bias(raw.scores, persona), persona)
            winner = objective_winner(raw.scores)
            choice = PERSONA_DOMINANCE.get(persona_id, "motion")

            updated = await self._commit(
                job.model_copy(update={"persona_id": persona_id, "engine": engine}),
                job.version,
            )

        await self.selections.record(PersonaSelection(
            job_id=job_id,
            user_id=user_id,
            persona_id=persona_id,
            raw_scores=raw.scores,
            objective_winner=winner,
            subjective_choice=choice,
            was_override=winner != choice,
        ))
        logger.info(f"[{job_id}] Persona {persona_id} selected → {engine.value} (override={winner != choice})")
        return updated

    # ── Init: quality gate → storyboard ──────────────────────────────────

    async def init_job(
        self,
        job_id: str,
        user_id: str,
        force_remaster: bool = False,
        preferred_style_id: Optional[str] = None,
        scene_count: int = DEFAULT_SCENE_COUNT,
        context: Optional[str] = None,
    ) -> JobState:
        """
        Run the quality gate and build the initial storyboard.

        Below-threshold images stop at QUALITY_FAILED unless forced. A forced
        job is enhanced once before storyboarding. If the storyboard
        collaborator fails, only error_message is recorded and the job stays
        IDLE so it can be retried.
        """
        if not 1 <= scene_count <= MAX_SCENES:
            raise PolicyViolation(
                f"scene_count must be between 1 and {MAX_SCENES}, got {scene_count}",
                {"scene_count": scene_count, "max_scenes": MAX_SCENES},
            )

        async with self._lock(job_id):
            job = await self._load(job_id, user_id)
            read_version = job.version
            require_stage(job, Stage.IDLE)

            raw = await self.cache.get_or_analyze(job_id, job.source_image_url)
            working = advance(job, Stage.QUALITY_CHECK).model_copy(update={
                "quality_score": raw.quality_score,
                "started_at": job.started_at or utcnow(),
            })

            if raw.quality_score < self.quality_threshold and not force_remaster:
                failed = advance(working, Stage.QUALITY_FAILED).model_copy(update={
                    "error_message": (
                        f"Image quality {raw.quality_score:.1f} is below {self.quality_threshold:.1f}; "
                        "retry with force_remaster to enhance it"
                    ),
                    "completed_at": utcnow(),
                })
                logger.warning(f"[{job_id}] Quality gate failed ({raw.quality_score})")
                return await self._commit(failed, read_version)

            if force_remaster:
                working = advance(working, Stage.REMASTERING)
                hint = raw.focal_points[0] if raw.focal_points else raw.composition or None
                enhanced_url = await invoke(
                    self.collaborators.enhance_image,
                    working.working_image_url or working.source_image_url,
                    hint,
                    policy=FailurePolicy.RAISE,
                    label="enhance_image",
                )
                working = working.model_copy(update={"working_image_url": enhanced_url, "is_remastered": True})
                logger.info(f"[{job_id}] Remastered → {enhanced_url}")

            style = select_style(raw, preferred_style_id)
            invariant_token = build_invariant_token(raw)
            brief = sanitize_prompt_text(context) if context else None

            try:
                actions = await invoke(
                    self.collaborators.write_storyboard,
                    raw,
                    style,
                    invariant_token,
                    brief or None,
                    scene_count,
                    policy=FailurePolicy.RAISE,
                    label="write_storyboard",
                )
                if not actions:
                    raise StoryboardGenerationError("Storyboard collaborator returned no scenes")
            except Exception as e:
                message = f"Storyboard generation failed: {e}"
                logger.error(f"[{job_id}] {message}")
                await self._commit(job.model_copy(update={"error_message": message}), read_version)
                if isinstance(e, (StoryboardGenerationError, UpstreamUnavailableError)):
                    raise
                raise StoryboardGenerationError(message) from e

            actions = actions[:scene_count]
            previews = await asyncio.gather(*[self._preview(job_id, a, style) for a in actions])
            scenes = [
                Scene(id=f"scene-{i}", sequence_index=i, action=action, preview_url=preview)
                for i, (action, preview) in enumerate(zip(actions, previews), start=1)
            ]

            ready = advance(working, Stage.STORYBOARD_REVIEW).model_copy(update={
                "style_id": style.id,
                "invariant_token": invariant_token,
                "scenes": scenes,
                "cost_estimate": len(scenes),
                "error_message": None,
            })
            return await self._commit(ready, read_version)

    # ── Refinement ───────────────────────────────────────────────────────

    def _validate_refinements(self, job: JobState, refinements: list[RefinementItem]) -> list[tuple[Scene, RefinementItem, Optional[str]]]:
        if not refinements:
            raise InvalidRefinementError("No refinements submitted")

        seen = set()
        plan = []
        for item in refinements:
            if item.scene_id in seen:
                raise InvalidRefinementError(
                    f"Scene {item.scene_id} appears more than once", {"scene_id": item.scene_id}
                )
            seen.add(item.scene_id)

            scene = job.scene(item.scene_id)
            if scene is None:
                raise InvalidRefinementError(f"Unknown scene {item.scene_id}", {"scene_id": item.scene_id})
            if item.status not in (SceneStatus.YELLOW, SceneStatus.RED):
                raise InvalidRefinementError(
                    f"Refinement status must be YELLOW or RED, got {item.status.value}",
                    {"scene_id": item.scene_id},
                )
            feedback = sanitize_prompt_text(item.feedback or "")
            if item.status == SceneStatus.YELLOW and not feedback:
                raise InvalidRefinementError(
                    f"Scene {item.scene_id} needs feedback for a YELLOW tweak", {"scene_id": item.scene_id}
                )
            if scene.attempt_count >= MAX_ATTEMPTS:
                raise AttemptLimitError(scene.id, MAX_ATTEMPTS)
            plan.append((scene, item, feedback or None))
        return plan

    async def _refine_one(self, job: JobState, scene: Scene, item: RefinementItem, feedback: Optional[str]) -> Scene:
        is_full_regen = item.status == SceneStatus.RED
        action = await invoke(
            self.collaborators.refine_scene,
            scene,
            feedback,
            is_full_regen,
            job.invariant_token or "",
            policy=FailurePolicy.RAISE,
            label="refine_scene",
        )
        preview = await self._preview(job.job_id, action, self._style_of(job))
        return scene.model_copy(update={
            "action": action,
            "preview_url": preview,
            "status": SceneStatus.PENDING,
            "feedback": None if is_full_regen else feedback,
            "attempt_count": scene.attempt_count + 1,
        })

    async def refine_storyboard(self, job_id: str, user_id: str, refinements: list[RefinementItem]) -> JobState:
        """
        Apply a batch of YELLOW / RED refinements.

        The whole batch is validated first; any problem rejects it with no
        scene changed. Valid scenes are refined concurrently and return to PENDING.
        """
        async with self._lock(job_id):
            job = await self._load(job_id, user_id)
            require_stage(job, Stage.STORYBOARD_REVIEW)
            plan = self._validate_refinements(job, refinements)

            refined = await asyncio.gather(*[
                self._refine_one(job, scene, item, feedback) for scene, item, feedback in plan
            ])
            by_id = {s.id: s for s in refined}
            scenes = [by_id.get(s.id, s) for s in job.scenes]

            logger.info(f"[{job_id}] Refined {len(refined)} scene(s)")
            return await self._commit(job.model_copy(update={"scenes": scenes}), job.version)

    async def approve_scene(self, job_id: str, user_id: str, scene_id: str) -> JobState:
        async with self._lock(job_id):
            job = await self._load(job_id, user_id)
            require_stage(job, Stage.STORYBOARD_REVIEW)
            if job.scene(scene_id) is None:
                raise InvalidRefinementError(f"Unknown scene {scene_id}", {"scene_id": scene_id})

            scenes = [
                s.model_copy(update={"status": SceneStatus.GREEN}) if s.id == scene_id else s
                for s in job.scenes
            ]
            return await self._commit(job.model_copy(update={"scenes": scenes}), job.version)

    # ── Production ───────────────────────────────────────────────────────

    async def _engine_for(self, job: JobState):
        if job.engine is not None:
            return job.engine
        raw = await self.cache.get_or_analyze(job.job_id, job.source_image_url)
        persona = get_persona(job.persona_id)
        return route_engine(apply_bias(raw.scores, persona), persona)

    async def approve_production(self, job_id: str, user_id: str, scene_ids: list[str]) -> JobState:
        """
        Hand confirmed scenes to the render poller.

        Every named scene must exist and be GREEN, otherwise nothing changes.
        The job is committed as RENDERING before submission starts. A render
        that could not be queued shows up later as a failed render, so the
        caller always gets the committed job back.
        """
        async with self._lock(job_id):
            job = await self._load(job_id, user_id)
            require_stage(job, Stage.STORYBOARD_REVIEW)

            confirmed = list(dict.fromkeys(scene_ids))
            if not confirmed:
                raise SceneNotApprovedError([])
            not_ready = [
                sid for sid in confirmed
                if job.scene(sid) is None or job.scene(sid).status != SceneStatus.GREEN
            ]
            if not_ready:
                raise SceneNotApprovedError(not_ready)

            engine = await self._engine_for(job)
            render_ids = {sid: new_render_job_id() for sid in confirmed}
            scenes = [
                s.model_copy(update={"render_job_id": render_ids[s.id]}) if s.id in render_ids else s
                for s in job.scenes
            ]
            rendering = advance(job, Stage.RENDERING).model_copy(update={
                "scenes": scenes,
                "engine": engine,
                "render_job_ids": [render_ids[sid] for sid in confirmed],
                "render_progress": 0,
                "cost_estimate": len(confirmed),
            })
            committed = await self._commit(rendering, job.version)

        style = self._style_of(committed) or select_style(await self.cache.get_or_analyze(job_id, job.source_image_url))
        context = RenderContext(
            style=style,
            invariant_token=committed.invariant_token or "",
            image_url=committed.working_image_url,
        )
        to_render = [committed.scene(sid) for sid in confirmed]
        try:
            await self.poller.submit_batch(
                to_render,
                context,
                engine,
                job_ids=[render_ids[sid] for sid in confirmed],
                owner_job_id=job_id,
                user_id=user_id,
            )
        except Exception as e:
            # unqueued ids resolve to failed / not found in get_job_state
            logger.error(f"[{job_id}] Render submission interrupted: {e}", exc_info=True)
            metrics.record_error("approve_production", type(e).__name__, str(e), job_id)
            return committed
        logger.info(f"[{job_id}] Production started: {len(confirmed)} scene(s) on {engine.value}")
        return committed

    async def cancel_render(self, job_id: str, user_id: str, render_job_id: str) -> RenderJob:
        """Cancel one of the job's renders. Ownership is checked before anything changes."""
        job = await self._load(job_id, user_id)
        if render_job_id not in job.render_job_ids:
            raise JobNotFoundError(f"Render job {render_job_id} not found for job {job_id}")
        record = await self.poller.get(render_job_id)
        if record is not None and record.owner_job_id not in (None, job_id):
            raise PermissionError("Render job belongs to another job")
        return await self.poller.cancel(render_job_id)

    # ── Query ────────────────────────────────────────────────────────────

    async def get_job_state(self, job_id: str, user_id: str) -> JobState:
        """
        Current job state. While RENDERING, progress and completion are
        re-derived from the render records and persisted.
        """
        job = await self._load(job_id, user_id)
        if job.stage != Stage.RENDERING or not job.render_job_ids:
            return job

        records = {r.job_id: r for r in await self.poller.get_batch(job.render_job_ids)}
        scenes = [
            s.model_copy(update={"video_url": records[s.render_job_id].video_url})
            if s.render_job_id in records and records[s.render_job_id].status == RenderJobStatus.COMPLETED
            else s
            for s in job.scenes
        ]
        update = {
            "scenes": scenes,
            "render_progress": self.poller.progress_of(list(records.values())),
        }
        derived = job.model_copy(update=update)

        if all(r.status.is_terminal for r in records.values()):
            failed = [r for r in records.values() if r.status == RenderJobStatus.FAILED]
            derived = advance(derived, Stage.COMPLETED).model_copy(update={
                "completed_at": utcnow(),
                "error_message": f"{len(failed)} of {len(records)} renders failed" if failed else None,
            })

        if derived == job:
            return job

        async with self._lock(job_id):
            try:
                return await self._commit(derived, job.version)
            except JobConflictError:
                logger.info(f"[{job_id}] State changed while deriving progress; returning latest")
                return await self._load(job_id, user_id)

    # ── Catalog ──────────────────────────────────────────────────────────

    @staticmethod
    def list_personas() -> list[PersonaProfile]:
        return all_personas()

    @staticmethod
    def list_style_presets(include_premium: bool = True) -> list[StylePreset]:
        return list_presets(include_premium)
