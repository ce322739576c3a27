"""
Exception types shared across the director worker.

Upstream failures:
  - TransientUpstreamError   → retried by generative.call_with_retry
  - UpstreamUnavailableError → retries exhausted (HTTP 503)
  - UnparseableResponseError → model returned text with no usable JSON

Policy violations subclass ValueError so route handlers can map the whole
family to 4xx responses. Each carries a machine-readable `code`.
Authorization failures use the builtin PermissionError.
"""

from typing import Optional


# ── Upstream ─────────────────────────────────────────────────────────────────

class TransientUpstreamError(Exception):
    """A provider signalled a temporary failure that is worth retrying."""


class UpstreamUnavailableError(RuntimeError):
    """A generative provider stayed unavailable after all retries."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class UnparseableResponseError(ValueError):
    """No well-formed JSON object could be recovered from a model response."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text[:500]


class StoryboardGenerationError(RuntimeError):
    """The storyboard collaborator failed hard; the job keeps its prior stage."""


# ── Policy ───────────────────────────────────────────────────────────────────

class PolicyViolation(ValueError):
    code = "policy_violation"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self), **self.details}


class StageTransitionError(PolicyViolation):
    code = "invalid_stage"


class AttemptLimitError(PolicyViolation):
    code = "attempt_limit_reached"

    def __init__(self, scene_id: str, max_attempts: int):
        super().__init__(
            f"Scene {scene_id} has reached the maximum of {max_attempts} refinement attempts",
            {"scene_id": scene_id, "max_attempts": max_attempts},
        )
        self.scene_id = scene_id


class SceneNotApprovedError(PolicyViolation):
    code = "scenes_not_approved"

    def __init__(self, scene_ids: list[str]):
        super().__init__(
            f"Scenes not approved for production: {', '.join(scene_ids)}",
            {"scene_ids": scene_ids},
        )
        self.scene_ids = scene_ids


class InvalidRefinementError(PolicyViolation):
    code = "invalid_refinement"


class InvalidUploadError(PolicyViolation):
    code = "invalid_upload"


class RenderJobNotCancellableError(PolicyViolation):
    code = "not_cancellable"


class RateLimitExceeded(PolicyViolation):
    code = "rate_limited"

    def __init__(self, endpoint: str, retry_after: int):
        super().__init__(
            f"Rate limit exceeded for {endpoint}; retry in {retry_after}s",
            {"retry_after": retry_after},
        )
        self.retry_after = retry_after


# ── Persistence ──────────────────────────────────────────────────────────────

class JobNotFoundError(LookupError):
    pass


class JobConflictError(RuntimeError):
    """A concurrent writer committed a newer version of the job first."""

    def __init__(self, job_id: str, expected_version: int):
        super().__init__(f"Job {job_id} was modified concurrently (expected version {expected_version})")
        self.job_id = job_id
        self.expected_version = expected_version
