"""Tests for DirectorService: the job state machine end to end with fake collaborators."""

import asyncio
import gc

import pytest

from director.errors import (
    AttemptLimitError,
    InvalidRefinementError,
    InvalidUploadError,
    JobNotFoundError,
    PolicyViolation,
    SceneNotApprovedError,
    StageTransitionError,
    StoryboardGenerationError,
    UnparseableResponseError,
)
from director.pipeline.models import (
    MAX_ATTEMPTS,
    Engine,
    RefinementItem,
    RenderJobStatus,
    RenderUpdate,
    SceneStatus,
    Stage,
)
from director.pipeline.orchestrator import ALLOWED_TRANSITIONS, advance

from conftest import make_analysis

USER = "user-1"
PNG = b"\x89PNG\r\n\x1a\n" + b"0" * 64


async def upload(service, user=USER):
    response = await service.upload_and_analyze(user, "ring.png", PNG, "image/png")
    return response.job.job_id


async def storyboard(service, **kwargs):
    job_id = await upload(service)
    return await service.init_job(job_id, USER, **kwargs)


async def approve_all(service, job):
    for scene in job.scenes:
        job = await service.approve_scene(job.job_id, USER, scene.id)
    return job


async def wait_for_renders(service, job):
    for render_id in job.render_job_ids:
        await service.poller.wait(render_id)


# ── Upload ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_upload_creates_idle_job_and_caches_analysis(service, fakes):
    response = await service.upload_and_analyze(USER, "ring.png", PNG, "image/png")

    assert response.job.stage == Stage.IDLE
    assert response.job.source_image_url == "https://cdn/user-1/ring.png"
    assert response.raw_analysis == fakes.analysis

    await service.analyze_all_personas(response.job.job_id, USER)
    await service.init_job(response.job.job_id, USER)
    assert fakes.analyze_calls == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data, content_type",
    [(PNG, "image/gif"), (b"", "image/png"), (b"0" * (10 * 1024 * 1024 + 1), "image/jpeg")],
)
async def test_upload_rejects_bad_images(service, data, content_type):
    with pytest.raises(InvalidUploadError):
        await service.upload_and_analyze(USER, "x", data, content_type)


# ── Fan-out & persona selection ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_analyze_all_personas_returns_every_pitch(service):
    job_id = await upload(service)
    result = await service.analyze_all_personas(job_id, USER, context="## Launch <b>spring</b> line")
    assert len(result.pitches) == len(service.list_personas())


@pytest.mark.asyncio
async def test_persona_selection_sets_engine_and_records_event(service):
    job_id = await upload(service)
    job = await service.record_persona_selection(job_id, USER, "visionary")

    assert job.persona_id == "visionary"
    assert job.engine == Engine.LUMA
    [event] = service.selections.events
    assert event.persona_id == "visionary"
    assert event.objective_winner == "motion"
    assert event.subjective_choice == "emotion"
    assert event.was_override


@pytest.mark.asyncio
async def test_unknown_persona_is_rejected(service):
    job_id = await upload(service)
    with pytest.raises(PolicyViolation):
        await service.record_persona_selection(job_id, USER, "nobody")


# ── Quality gate ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_low_quality_image_fails_the_gate(service, fakes):
    fakes.analysis = make_analysis(quality=5.5)
    job = await storyboard(service)

    assert job.stage == Stage.QUALITY_FAILED
    assert job.quality_score == 5.5
    assert "force_remaster" in job.error_message
    assert fakes.enhance_calls == []

    with pytest.raises(StageTransitionError):
        await service.init_job(job.job_id, USER)


@pytest.mark.asyncio
async def test_forced_remaster_enhances_then_storyboards(service, fakes):
    fakes.analysis = make_analysis(quality=5.5)
    job = await storyboard(service, force_remaster=True)

    assert job.stage == Stage.STORYBOARD_REVIEW
    assert job.is_remastered
    assert job.working_image_url == "https://cdn/enhanced.png"
    assert fakes.enhance_calls == [("https://cdn/user-1/ring.png", "gold ring")]


@pytest.mark.asyncio
async def test_good_image_goes_straight_to_review(service, fakes):
    job = await storyboard(service, scene_count=2)

    assert job.stage == Stage.STORYBOARD_REVIEW
    assert not job.is_remastered
    assert fakes.enhance_calls == []
    assert [s.id for s in job.scenes] == ["scene-1", "scene-2"]
    assert all(s.status == SceneStatus.PENDING and s.attempt_count == 0 for s in job.scenes)
    assert all(s.preview_url for s in job.scenes)
    assert job.style_id == "luxury-gold"
    assert "luxurious" in job.invariant_token
    assert job.cost_estimate == 2


@pytest.mark.asyncio
async def test_storyboard_failure_leaves_job_idle(service, fakes):
    job_id = await upload(service)
    fakes.storyboard_error = UnparseableResponseError("no scenes")

    with pytest.raises(StoryboardGenerationError):
        await service.init_job(job_id, USER)

    job = await service.get_job_state(job_id, USER)
    assert job.stage == Stage.IDLE
    assert "Storyboard generation failed" in job.error_message
    assert job.scenes == []

    fakes.storyboard_error = None
    retried = await service.init_job(job_id, USER)
    assert retried.stage == Stage.STORYBOARD_REVIEW
    assert retried.error_message is None


@pytest.mark.asyncio
async def test_missing_previews_do_not_block_storyboard(service, fakes):
    fakes.preview_fails = True
    job = await storyboard(service)
    assert job.stage == Stage.STORYBOARD_REVIEW
    assert all(s.preview_url is None for s in job.scenes)


@pytest.mark.asyncio
@pytest.mark.parametrize("scene_count", [0, 11])
async def test_scene_count_is_checked_before_any_work(service, fakes, scene_count):
    job_id = await upload(service)
    with pytest.raises(PolicyViolation):
        await service.init_job(job_id, USER, force_remaster=True, scene_count=scene_count)

    assert fakes.enhance_calls == []
    job = await service.get_job_state(job_id, USER)
    assert job.stage == Stage.IDLE
    assert job.version == 0


# ── Refinement ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_refinement_batch_updates_scenes(service, fakes):
    job = await storyboard(service)
    refined = await service.refine_storyboard(job.job_id, USER, [
        RefinementItem(scene_id="scene-1", status=SceneStatus.YELLOW, feedback="slower <i>turn</i>"),
        RefinementItem(scene_id="scene-2", status=SceneStatus.RED),
    ])

    first, second, third = refined.scenes
    assert first.action.startswith("tweaked")
    assert first.feedback == "slower turn"
    assert first.attempt_count == 1
    assert second.action.startswith("new")
    assert second.feedback is None
    assert second.attempt_count == 1
    assert first.status == second.status == SceneStatus.PENDING
    assert third == job.scenes[2]
    assert refined.version == job.version + 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "items",
    [
        [RefinementItem(scene_id="scene-1", status=SceneStatus.YELLOW, feedback="   ")],
        [RefinementItem(scene_id="scene-9", status=SceneStatus.RED)],
        [RefinementItem(scene_id="scene-1", status=SceneStatus.GREEN)],
        [
            RefinementItem(scene_id="scene-1", status=SceneStatus.RED),
            RefinementItem(scene_id="scene-1", status=SceneStatus.RED),
        ],
        [
            RefinementItem(scene_id="scene-1", status=SceneStatus.RED),
            RefinementItem(scene_id="scene-2", status=SceneStatus.YELLOW),
        ],
    ],
)
async def test_invalid_batch_changes_nothing(service, fakes, items):
    job = await storyboard(service)
    with pytest.raises(InvalidRefinementError):
        await service.refine_storyboard(job.job_id, USER, items)

    assert fakes.refine_calls == []
    assert await service.get_job_state(job.job_id, USER) == job


@pytest.mark.asyncio
async def test_attempt_limit(service, fakes):
    job = await storyboard(service)
    red = [RefinementItem(scene_id="scene-1", status=SceneStatus.RED)]
    for _ in range(MAX_ATTEMPTS):
        job = await service.refine_storyboard(job.job_id, USER, red)
    assert job.scene("scene-1").attempt_count == MAX_ATTEMPTS
    refine_calls = len(fakes.refine_calls)

    with pytest.raises(AttemptLimitError) as info:
        await service.refine_storyboard(job.job_id, USER, red)
    assert info.value.scene_id == "scene-1"

    after = await service.get_job_state(job.job_id, USER)
    assert after.version == job.version
    assert after.scene("scene-1").action == job.scene("scene-1").action
    assert after.scene("scene-1").attempt_count == MAX_ATTEMPTS
    assert len(fakes.refine_calls) == refine_calls


@pytest.mark.asyncio
async def test_concurrent_refinements_serialize(service):
    job = await storyboard(service)
    red = [RefinementItem(scene_id="scene-1", status=SceneStatus.RED)]
    await asyncio.gather(
        service.refine_storyboard(job.job_id, USER, red),
        service.refine_storyboard(job.job_id, USER, red),
    )
    latest = await service.get_job_state(job.job_id, USER)
    assert latest.scene("scene-1").attempt_count == 2
    assert latest.version == job.version + 2


@pytest.mark.asyncio
async def test_refine_requires_storyboard_review(service):
    job_id = await upload(service)
    with pytest.raises(StageTransitionError):
        await service.refine_storyboard(job_id, USER, [RefinementItem(scene_id="scene-1", status=SceneStatus.RED)])


# ── Production ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_production_requires_green_scenes(service):
    job = await storyboard(service)
    job = await service.approve_scene(job.job_id, USER, "scene-1")

    with pytest.raises(SceneNotApprovedError) as info:
        await service.approve_production(job.job_id, USER, ["scene-1", "scene-2", "scene-7"])
    assert info.value.scene_ids == ["scene-2", "scene-7"]
    assert (await service.get_job_state(job.job_id, USER)).stage == Stage.STORYBOARD_REVIEW


@pytest.mark.asyncio
async def test_production_renders_and_completes(service, fakes):
    job = await approve_all(service, await storyboard(service))
    job = await service.record_persona_selection(job.job_id, USER, "newtonian")

    rendering = await service.approve_production(job.job_id, USER, [s.id for s in job.scenes])
    assert rendering.stage == Stage.RENDERING
    assert rendering.started_at is not None
    assert len(rendering.render_job_ids) == 3
    assert all(s.render_job_id for s in rendering.scenes)

    await wait_for_renders(service, rendering)
    done = await service.get_job_state(job.job_id, USER)

    assert done.stage == Stage.COMPLETED
    assert done.render_progress == 100
    assert done.completed_at is not None
    assert done.error_message is None
    assert all(s.video_url == "https://cdn/v.mp4" for s in done.scenes)
    assert [engine for _, engine, _ in fakes.render_client.submitted] == [Engine.KLING] * 3


@pytest.mark.asyncio
async def test_failed_renders_still_complete_the_job(service, fakes):
    fakes.render_client.script = [RenderUpdate(status=RenderJobStatus.FAILED, error="policy")]
    job = await approve_all(service, await storyboard(service, scene_count=1))

    rendering = await service.approve_production(job.job_id, USER, ["scene-1"])
    await wait_for_renders(service, rendering)
    done = await service.get_job_state(job.job_id, USER)

    assert done.stage == Stage.COMPLETED
    assert done.error_message == "1 of 1 renders failed"
    assert done.scenes[0].video_url is None


@pytest.mark.asyncio
async def test_production_returns_committed_job_when_queueing_breaks(service, render_store, monkeypatch):
    job = await approve_all(service, await storyboard(service, scene_count=2))
    put = render_store.put

    async def flaky_put(record):
        if record.scene_id == "scene-2":
            raise ConnectionError("render store down")
        await put(record)

    monkeypatch.setattr(render_store, "put", flaky_put)
    rendering = await service.approve_production(job.job_id, USER, ["scene-1", "scene-2"])
    assert rendering.stage == Stage.RENDERING
    assert len(rendering.render_job_ids) == 2

    await wait_for_renders(service, rendering)
    done = await service.get_job_state(job.job_id, USER)
    assert done.stage == Stage.COMPLETED
    assert done.error_message == "1 of 2 renders failed"
    assert done.scene("scene-1").video_url == "https://cdn/v.mp4"


@pytest.mark.asyncio
async def test_render_cancel_is_scoped_to_the_owning_job(service, fakes):
    fakes.render_client.script = [RenderUpdate(status=RenderJobStatus.PROCESSING, progress=10)]
    service.poller.max_polls = 100_000
    job = await approve_all(service, await storyboard(service, scene_count=1))
    rendering = await service.approve_production(job.job_id, USER, ["scene-1"])
    render_id = rendering.render_job_ids[0]

    record = await service.poller.get(render_id)
    assert record.owner_job_id == job.job_id
    assert record.user_id == USER

    with pytest.raises(PermissionError):
        await service.cancel_render(job.job_id, "intruder", render_id)
    other = await storyboard(service)
    with pytest.raises(JobNotFoundError):
        await service.cancel_render(other.job_id, USER, render_id)
    assert not (await service.poller.get(render_id)).status.is_terminal

    cancelled = await service.cancel_render(job.job_id, USER, render_id)
    assert cancelled.status == RenderJobStatus.FAILED
    assert cancelled.error == "cancelled"

    await wait_for_renders(service, rendering)
    done = await service.get_job_state(job.job_id, USER)
    assert done.stage == Stage.COMPLETED
    assert done.error_message == "1 of 1 renders failed"


@pytest.mark.asyncio
async def test_persona_cannot_change_once_rendering(service):
    job = await approve_all(service, await storyboard(service, scene_count=1))
    rendering = await service.approve_production(job.job_id, USER, ["scene-1"])
    with pytest.raises(StageTransitionError):
        await service.record_persona_selection(job.job_id, USER, "visionary")
    await wait_for_renders(service, rendering)


# ── Access & transitions ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_other_users_cannot_touch_a_job(service):
    job = await storyboard(service)
    with pytest.raises(PermissionError):
        await service.get_job_state(job.job_id, "intruder")
    with pytest.raises(PermissionError):
        await service.approve_scene(job.job_id, "intruder", "scene-1")


@pytest.mark.asyncio
async def test_unknown_job(service):
    with pytest.raises(JobNotFoundError):
        await service.get_job_state("missing", USER)


def test_transition_table_rejects_skips_and_terminal_exits():
    from director.pipeline.models import JobState

    job = JobState(job_id="j", user_id=USER, source_image_url="https://cdn/a.png")
    with pytest.raises(StageTransitionError):
        advance(job, Stage.RENDERING)

    for terminal in (Stage.QUALITY_FAILED, Stage.COMPLETED):
        assert ALLOWED_TRANSITIONS[terminal] == set()
        with pytest.raises(StageTransitionError):
            advance(job.model_copy(update={"stage": terminal}), Stage.IDLE)

    assert advance(job, Stage.QUALITY_CHECK).stage == Stage.QUALITY_CHECK


def test_catalog(service):
    assert {p.id for p in service.list_personas()} == {"newtonian", "visionary", "minimalist", "provocateur"}
    assert all(not s.is_premium for s in service.list_style_presets(include_premium=False))
    assert len(service.list_style_presets()) == 6


@pytest.mark.asyncio
async def test_job_locks_do_not_accumulate(service):
    for _ in range(20):
        job = await storyboard(service)
        await service.approve_scene(job.job_id, USER, "scene-1")
    gc.collect()

    assert len(service._locks) == 0
    assert len(service.cache._locks) == 0
