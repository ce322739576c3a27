"""Tests for the raw analysis cache and the persona fan-out."""

import asyncio

import pytest

from director import metrics
from director.errors import UnparseableResponseError
from director.pipeline.analysis_cache import RawAnalysisCache
from director.pipeline.fanout import FanOutOrchestrator
from director.pipeline.models import Engine
from director.pipeline.personas import PERSONAS
from director.pipeline.store import InMemoryAnalysisStore

from conftest import FakeDirectorCollaborators, make_analysis


@pytest.fixture
def collaborators():
    return FakeDirectorCollaborators(make_analysis(motion=7, emotion=9, narrative=5))


@pytest.fixture
def cache(collaborators):
    return RawAnalysisCache(InMemoryAnalysisStore(), collaborators.analyze_image)


# ── Cache ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_concurrent_requests_share_one_analysis(cache, collaborators):
    results = await asyncio.gather(*[cache.get_or_analyze("job-1", "https://cdn/a.png") for _ in range(5)])
    assert collaborators.analyze_calls == 1
    assert all(r == results[0] for r in results)


@pytest.mark.asyncio
async def test_cached_analysis_is_reused_across_calls(cache, collaborators):
    first = await cache.get_or_analyze("job-1", "https://cdn/a.png")
    second = await cache.get_or_analyze("job-1", "https://cdn/a.png")
    assert first == second
    assert collaborators.analyze_calls == 1
    assert await cache.get("job-2") is None


@pytest.mark.asyncio
async def test_failed_analysis_is_not_cached(collaborators):
    calls = {"n": 0}

    async def flaky(url):
        calls["n"] += 1
        if calls["n"] == 1:
            raise UnparseableResponseError("no json")
        return collaborators.analysis

    cache = RawAnalysisCache(InMemoryAnalysisStore(), flaky)
    with pytest.raises(UnparseableResponseError):
        await cache.get_or_analyze("job-1", "https://cdn/a.png")
    assert await cache.get_or_analyze("job-1", "https://cdn/a.png") == collaborators.analysis


# ── Fan-out ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_one_pitch_per_persona(cache, collaborators):
    fanout = FanOutOrchestrator(cache, collaborators.interpret)
    result = await fanout.analyze_all("job-1", "https://cdn/a.png")

    assert set(result.pitches) == set(PERSONAS)
    assert not any(p.is_fallback for p in result.pitches.values())
    assert result.recommended_persona_id == "provocateur"
    assert result.pitches["newtonian"].engine == Engine.KLING
    assert result.pitches["visionary"].engine == Engine.LUMA
    assert result.pitches["newtonian"].adjusted_scores.motion == pytest.approx(10.0)


@pytest.mark.asyncio
async def test_failing_persona_gets_fallback_without_affecting_others(cache, collaborators):
    collaborators.interpret_failures = {"visionary"}
    fanout = FanOutOrchestrator(cache, collaborators.interpret)
    result = await fanout.analyze_all("job-1", "https://cdn/a.png")

    assert len(result.pitches) == len(PERSONAS)
    fallback = result.pitches["visionary"]
    assert fallback.is_fallback
    assert fallback.engine == Engine.LUMA
    assert fallback.adjusted_scores.emotion == pytest.approx(10.0)
    assert not result.pitches["newtonian"].is_fallback
    assert metrics.get_counter("fanout.fallback") == 1


@pytest.mark.asyncio
async def test_fan_out_runs_analysis_once(cache, collaborators):
    fanout = FanOutOrchestrator(cache, collaborators.interpret)
    await asyncio.gather(
        fanout.analyze_all("job-1", "https://cdn/a.png"),
        fanout.analyze_all("job-1", "https://cdn/a.png"),
    )
    assert collaborators.analyze_calls == 1


@pytest.mark.asyncio
async def test_registry_override(cache, collaborators):
    only = [PERSONAS["minimalist"]]
    result = await FanOutOrchestrator(cache, collaborators.interpret, only).analyze_all("job-1", "https://cdn/a.png")
    assert list(result.pitches) == ["minimalist"]


@pytest.mark.asyncio
async def test_motion_heavy_image_recommends_newtonian_while_visionary_keeps_its_engine():
    collaborators = FakeDirectorCollaborators(make_analysis(motion=8, emotion=3, narrative=5))
    cache = RawAnalysisCache(InMemoryAnalysisStore(), collaborators.analyze_image)
    result = await FanOutOrchestrator(cache, collaborators.interpret).analyze_all("job-1", "https://cdn/a.png")

    assert result.recommended_persona_id == "newtonian"
    assert result.pitches["newtonian"].engine == Engine.KLING

    visionary = result.pitches["visionary"]
    assert visionary.adjusted_scores.emotion == pytest.approx(4.5)
    # biased motion still beats emotion; the declared engine wins
    assert visionary.adjusted_scores.motion > visionary.adjusted_scores.emotion
    assert visionary.engine == Engine.LUMA
