"""Retry policy for calls to remote model backends."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import openai
import requests

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
INITIAL_DELAY_MS = 2000

_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
    openai.APIConnectionError,
    ConnectionError,
    TimeoutError,
)


class UpstreamError(Exception):
    """Raised when a backend call fails for good; carries the upstream status and body."""

    def __init__(self, message: str, status: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


def _status_of(err: BaseException) -> int | None:
    if isinstance(err, requests.HTTPError) and err.response is not None:
        return err.response.status_code
    if isinstance(err, openai.APIStatusError):
        return err.status_code
    return None


def _headers_of(err: BaseException) -> Mapping[str, str]:
    if isinstance(err, requests.HTTPError) and err.response is not None:
        return err.response.headers
    if isinstance(err, openai.APIStatusError):
        return err.response.headers
    return {}


def _body_of(err: BaseException) -> str:
    if isinstance(err, requests.HTTPError) and err.response is not None:
        return err.response.text[:500]
    if isinstance(err, openai.APIStatusError):
        return err.response.text[:500]
    return str(err)


def is_upstream_error(err: BaseException) -> bool:
    return _status_of(err) is not None or isinstance(err, _TRANSPORT_ERRORS)


def is_retryable(err: BaseException) -> bool:
    """True for transport failures, HTTP 5xx and HTTP 429."""
    if isinstance(err, _TRANSPORT_ERRORS):
        return True
    status = _status_of(err)
    if status is None:
        return False
    return status >= 500 or status == 429


def _retry_after_ms(value: str, now: datetime) -> int | None:
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds) or seconds <= 0:
            return None
        return int(seconds * 1000)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    delta_ms = int((when - now).total_seconds() * 1000)
    return delta_ms if delta_ms > 0 else None


def delay_for(err: BaseException, attempt: int, now: datetime | None = None) -> int:
    """Milliseconds to wait before retry number *attempt* (1-based)."""
    if _status_of(err) == 429:
        retry_after = _headers_of(err).get("retry-after")
        if retry_after:
            delay = _retry_after_ms(retry_after.strip(), now or datetime.now(UTC))
            if delay is not None:
                return delay
    return INITIAL_DELAY_MS * 2 ** (attempt - 1)


def describe(err: BaseException, label: str) -> UpstreamError:
    """Wrap an upstream failure into an :class:`UpstreamError` with status and body."""
    status = _status_of(err)
    if status is not None:
        body = _body_of(err)
        return UpstreamError(f"{label} {status}: {body}", status=status, body=body)
    return UpstreamError(f"{label} connection error ({type(err).__name__}): {err}")


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    label: str,
    max_attempts: int = MAX_ATTEMPTS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_attempt: Callable[[int], None] | None = None,
) -> T:
    """Await ``fn()`` under the retry policy.

    Transient failures are retried up to *max_attempts* in total, sleeping
    :func:`delay_for` in between. The final failure, or any non-retryable
    upstream error, is raised as :class:`UpstreamError`. Anything that is not
    an upstream error propagates unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    for attempt in range(1, max_attempts + 1):
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return await fn()
        except Exception as err:
            if not is_upstream_error(err):
                raise
            if not is_retryable(err) or attempt >= max_attempts:
                logger.error(
                    "%s failed (attempt %d/%d): %s", label, attempt, max_attempts, err
                )
                raise describe(err, label) from err
            delay_ms = delay_for(err, attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %dms",
                label,
                attempt,
                max_attempts,
                err,
                delay_ms,
            )
            await sleep(delay_ms / 1000)
    raise AssertionError("retry loop exited without returning")
