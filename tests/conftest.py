"""Shared fakes: an in-test async Redis, scripted collaborators and a render client."""

from __future__ import annotations

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from director import fallback_limiter, metrics
from director.pipeline.collaborators import Collaborators
from director.pipeline.models import (
    DimensionScores,
    PersonaPitchDraft,
    PitchNarrative,
    PitchTimeline,
    RawAnalysis,
    RenderJobStatus,
    RenderUpdate,
    TimelineFrame,
)
from director.pipeline.orchestrator import DirectorService
from director.pipeline.poller import RenderJobPoller
from director.pipeline.store import (
    InMemoryAnalysisStore,
    InMemoryJobStore,
    InMemoryRenderJobStore,
    InMemorySelectionStore,
)


# ── Redis ────────────────────────────────────────────────────────────────────

def _b(value) -> bytes:
    return value if isinstance(value, bytes) else str(value).encode()


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self._watched: dict[str, int] = {}
        self._queued: list = []
        self._buffering = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.reset()
        return False

    async def watch(self, *keys):
        self.redis._check_available()
        for key in keys:
            self._watched[key] = self.redis._versions.get(key, 0)

    async def hgetall(self, key):
        return await self.redis.hgetall(key)

    def multi(self):
        self._buffering = True

    def hset(self, key, mapping):
        self._queued.append(("hset", key, mapping))

    def expire(self, key, seconds):
        self._queued.append(("expire", key, seconds))

    async def execute(self):
        self.redis._check_available()
        if self.redis.before_execute is not None:
            hook, self.redis.before_execute = self.redis.before_execute, None
            await hook()
        try:
            for key, version in self._watched.items():
                if self.redis._versions.get(key, 0) != version:
                    raise WatchError("watched key changed")
            for op, key, arg in self._queued:
                if op == "hset":
                    await self.redis.hset(key, mapping=arg)
                else:
                    self.redis.expirations[key] = arg
        finally:
            self._queued = []
            self._watched = {}
            self._buffering = False
        return [True]

    async def reset(self):
        self._queued = []
        self._watched = {}
        self._buffering = False


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the rate limiter and render store."""

    def __init__(self):
        self.hashes: dict[str, dict[bytes, bytes]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.expirations: dict[str, int] = {}
        self._versions: dict[str, int] = {}
        self.available = True
        self.before_execute = None

    def _check_available(self):
        if not self.available:
            raise RedisConnectionError("redis down")

    def _touch(self, key):
        self._versions[key] = self._versions.get(key, 0) + 1

    def pipeline(self, transaction=True):
        self._check_available()
        return FakePipeline(self)

    async def hgetall(self, key):
        self._check_available()
        return dict(self.hashes.get(key, {}))

    async def hget(self, key, field):
        self._check_available()
        return self.hashes.get(key, {}).get(_b(field))

    async def hset(self, key, mapping):
        self._check_available()
        self.hashes.setdefault(key, {}).update({_b(k): _b(v) for k, v in mapping.items()})
        self._touch(key)

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)

    async def zrangebyscore(self, key, low, high):
        exclusive = isinstance(high, str) and high.startswith("(")
        limit = float(high[1:]) if exclusive else float(high)
        return [
            member.encode()
            for member, score in self.zsets.get(key, {}).items()
            if (score < limit if exclusive else score <= limit)
        ]

    async def delete(self, *keys):
        for key in keys:
            self.hashes.pop(key, None)
            self._touch(key)

    async def zrem(self, key, *members):
        for member in members:
            self.zsets.get(key, {}).pop(member, None)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture(autouse=True)
def _reset_process_state():
    metrics.reset()
    fallback_limiter.reset()
    yield
    fallback_limiter.reset()


# ── Collaborators ────────────────────────────────────────────────────────────

def make_analysis(motion=5.0, emotion=5.0, narrative=5.0, quality=8.0, **extra) -> RawAnalysis:
    fields = {
        "primary_colors": ["#C9A227", "black"],
        "mood": "luxurious",
        "industry": "jewelry",
        "composition": "centered product shot",
        "focal_points": ["gold ring"],
        "style_keywords": ["gold", "premium", "elegant", "warm"],
        "quality_score": quality,
        "scores": DimensionScores(motion=motion, emotion=emotion, narrative=narrative),
    }
    fields.update(extra)
    return RawAnalysis(**fields)


def make_draft(label: str = "pitch") -> PersonaPitchDraft:
    return PersonaPitchDraft(
        narrative=PitchNarrative(vision=f"{label} vision", safety="keep logo", magic="light sweep"),
        timeline=PitchTimeline(
            start=TimelineFrame(time="0s", visual="open", camera="wide"),
            middle=TimelineFrame(time="2s", visual="turn", camera="orbit"),
            end=TimelineFrame(time="5s", visual="hold", camera="close"),
        ),
    )


class FakeRenderClient:
    """Scripted upstream: each query pops the next update for that external id."""

    def __init__(self, script=None, fail_submit=False):
        self.script = list(script or [RenderUpdate(status=RenderJobStatus.COMPLETED, progress=100, video_url="https://cdn/v.mp4")])
        self.fail_submit = fail_submit
        self.submitted = []
        self.queries = 0
        self._cursor: dict[str, int] = {}

    async def submit(self, scene, context, engine):
        if self.fail_submit:
            raise RuntimeError("upstream rejected")
        external_id = f"task-{len(self.submitted) + 1}"
        self.submitted.append((scene.id, engine, context))
        return external_id

    async def query(self, external_id, engine):
        self.queries += 1
        index = self._cursor.get(external_id, 0)
        self._cursor[external_id] = index + 1
        step = self.script[min(index, len(self.script) - 1)]
        if isinstance(step, Exception):
            raise step
        return step


class FakeDirectorCollaborators:
    def __init__(self, analysis: RawAnalysis | None = None):
        self.analysis = analysis or make_analysis()
        self.analyze_calls = 0
        self.interpret_failures: set[str] = set()
        self.storyboard_error: Exception | None = None
        self.storyboard = ["Ring rises from velvet", "Light sweeps the band", "Logo lockup on black"]
        self.preview_fails = False
        self.refine_calls: list[tuple] = []
        self.enhance_calls: list[tuple] = []
        self.render_client = FakeRenderClient()

    async def analyze_image(self, image_url):
        self.analyze_calls += 1
        await asyncio.sleep(0)
        return self.analysis

    async def interpret(self, raw, persona, context=None):
        if persona.id in self.interpret_failures:
            raise ValueError(f"{persona.id} returned garbage")
        return make_draft(persona.id)

    async def write_storyboard(self, raw, style, invariant_token, context=None, scene_count=3):
        if self.storyboard_error is not None:
            raise self.storyboard_error
        return self.storyboard[:scene_count]

    async def refine_scene(self, scene, feedback, is_full_regen, invariant_token=""):
        self.refine_calls.append((scene.id, feedback, is_full_regen))
        return f"{'new' if is_full_regen else 'tweaked'}: {scene.action}"

    async def render_preview(self, description):
        if self.preview_fails:
            raise ValueError("no image")
        return f"https://cdn/preview/{abs(hash(description))}.png"

    async def enhance_image(self, image_url, hint=None):
        self.enhance_calls.append((image_url, hint))
        return "https://cdn/enhanced.png"

    async def upload_image(self, user_id, filename, data, content_type):
        return f"https://cdn/{user_id}/{filename}"

    def bundle(self) -> Collaborators:
        return Collaborators(
            analyze_image=self.analyze_image,
            interpret=self.interpret,
            write_storyboard=self.write_storyboard,
            refine_scene=self.refine_scene,
            render_preview=self.render_preview,
            enhance_image=self.enhance_image,
            upload_image=self.upload_image,
            render_client=self.render_client,
        )


async def no_sleep(_seconds):
    await asyncio.sleep(0)


@pytest.fixture
def fakes():
    return FakeDirectorCollaborators()


@pytest.fixture
def render_store():
    return InMemoryRenderJobStore()


@pytest.fixture
def service(fakes, render_store):
    poller = RenderJobPoller(
        fakes.render_client,
        render_store,
        poll_interval=0,
        submit_spacing=0,
        sleep=no_sleep,
    )
    return DirectorService(
        InMemoryJobStore(),
        InMemoryAnalysisStore(),
        InMemorySelectionStore(),
        poller,
        fakes.bundle(),
    )
