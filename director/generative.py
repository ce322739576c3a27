"""
Retry / sanitize adapter for every generative-model call.

- call_with_retry:      exponential backoff on transient upstream failures
- invoke:               explicit failure policy (RAISE or FALLBACK)
- extract_json_object:  recover one JSON object from free-form model text
- sanitize_prompt_text: strip markup from user text before it reaches a prompt
"""

import re
import json
import random
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from . import metrics
from .errors import (
    TransientUpstreamError,
    UpstreamUnavailableError,
    UnparseableResponseError,
)

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 1.0        # seconds, doubling each retry: 1, 2, 4
JITTER_MAX = 0.5        # random jitter 0–0.5s added to each delay
RETRYABLE_STATUS_CODES = {429, 503}

MAX_PROMPT_TEXT_LENGTH = 500

_CONNECTION_ERRORS = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.RemoteProtocolError,
    ConnectionResetError,
)


class FailurePolicy(str, Enum):
    RAISE = "raise"
    FALLBACK = "fallback"


def is_transient(exc: BaseException) -> bool:
    """True for failures worth another attempt: 429/503, timeouts, dropped connections."""
    if isinstance(exc, TransientUpstreamError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return True
    return isinstance(exc, _CONNECTION_ERRORS)


def backoff_delay(attempt: int) -> float:
    return BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)


async def call_with_retry(
    fn: Callable[..., Awaitable[Any]],
    *args,
    max_retries: int = MAX_RETRIES,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "",
    **kwargs,
) -> Any:
    """
    Await fn(*args, **kwargs), retrying transient failures with backoff.

    Non-transient errors propagate immediately. When every attempt fails
    transiently, raises UpstreamUnavailableError chained to the last error.
    """
    name = label or getattr(fn, "__name__", "call")
    last_exception: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            return await fn(*args, **kwargs)
        except Exception as e:
            if not is_transient(e):
                raise
            last_exception = e
            if attempt >= max_retries:
                break
            delay = backoff_delay(attempt)
            metrics.inc_counter("generative.retry")
            logger.warning(
                f"{name}: transient failure on attempt {attempt + 1}/{max_retries + 1}: {e} "
                f"— retrying in {delay:.1f}s"
            )
            await sleep(delay)

    raise UpstreamUnavailableError(
        f"{name} unavailable after {max_retries + 1} attempts: {last_exception}",
        attempts=max_retries + 1,
    ) from last_exception


async def invoke(
    fn: Callable[..., Awaitable[Any]],
    *args,
    policy: FailurePolicy = FailurePolicy.RAISE,
    fallback: Any = None,
    label: str = "",
    **kwargs,
) -> Any:
    """
    Run a generative call through call_with_retry under an explicit failure policy.

    RAISE propagates whatever call_with_retry raises. FALLBACK logs the failure
    and returns `fallback` (called with no arguments first if it is callable).
    """
    try:
        return await call_with_retry(fn, *args, label=label, **kwargs)
    except Exception as e:
        if policy is FailurePolicy.RAISE:
            raise
        logger.warning(f"{label or getattr(fn, '__name__', 'call')} failed, using fallback: {e}")
        return fallback() if callable(fallback) else fallback


# ── JSON recovery ────────────────────────────────────────────────────────────

_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def _find_balanced_object(text: str) -> Optional[str]:
    """Return the first {...} span whose braces balance, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def _escape_newlines_in_strings(candidate: str) -> str:
    """Escape raw CR/LF that appear inside JSON string values."""
    out = []
    in_string = False
    escaped = False
    for ch in candidate:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch == "\n":
                out.append("\\n")
                continue
            elif ch == "\r":
                out.append("\\r")
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


def extract_json_object(text: str) -> dict:
    """
    Recover the first well-formed JSON object from a model response.

    Handles markdown fences, leading/trailing prose and unescaped newlines
    inside string values. Raises UnparseableResponseError otherwise.
    """
    if not text or not text.strip():
        raise UnparseableResponseError("Empty model response", text or "")

    candidates = []
    for block in _FENCED_BLOCK.findall(text):
        found = _find_balanced_object(block)
        if found:
            candidates.append(found)
    found = _find_balanced_object(text)
    if found:
        candidates.append(found)

    if not candidates:
        raise UnparseableResponseError(f"No JSON object in model response: {text[:200]}", text)

    last_error: Optional[Exception] = None
    for candidate in candidates:
        try:
            parsed = json.loads(_escape_newlines_in_strings(candidate))
        except json.JSONDecodeError as e:
            last_error = e
            continue
        if isinstance(parsed, dict):
            return parsed

    raise UnparseableResponseError(f"Model returned invalid JSON: {last_error}", text)


# ── Prompt sanitization ──────────────────────────────────────────────────────

_CODE_FENCE = re.compile(r"```[a-zA-Z]*")
_MARKDOWN_HEADER = re.compile(r"^\s*#{1,6}\s*", re.MULTILINE)
_MARKUP_TAG = re.compile(r"<[^>]*>")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_prompt_text(text: str, max_length: int = MAX_PROMPT_TEXT_LENGTH) -> str:
    """Strip fences, headers, tags and control characters; collapse whitespace; cap length."""
    if not text:
        return ""
    cleaned = _CODE_FENCE.sub(" ", text)
    cleaned = _MARKDOWN_HEADER.sub("", cleaned)
    cleaned = _MARKUP_TAG.sub(" ", cleaned)
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned[:max_length].rstrip()
