"""Error hierarchy for the imagegen SDK.

Every error carries a machine readable ``code``, a ``details`` mapping and an
optional ``cause`` so callers can serialize failures with ``to_dict()``.
"""

import json
import re
from typing import Any, Optional

import httpx


class SDKError(Exception):
    """Base class for all SDK errors."""

    default_code = "SDK_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# Transport / HTTP


class TransportError(SDKError):
    """Network or connection failure. Always retryable."""

    default_code = "TRANSPORT_ERROR"

    def __init__(
        self,
        message: str = "Failed to reach upstream",
        *,
        url: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        details = {"url": url} if url else {}
        super().__init__(message, details=details, cause=cause)


class APIError(SDKError):
    """Upstream answered with an HTTP error status."""

    default_code = "API_ERROR"

    def __init__(self, status_code: int, response_body: Optional[Any] = None) -> None:
        self.status_code = status_code
        super().__init__(
            f"Upstream returned HTTP {status_code}",
            details={"status_code": status_code, "response": response_body or {}},
        )


class RateLimitError(SDKError):
    """Upstream asked us to slow down (HTTP 429)."""

    default_code = "RATE_LIMITED"

    def __init__(self, message: str = "Rate limited", retry_after: Optional[int] = None) -> None:
        details = {"retry_after": retry_after} if retry_after is not None else {}
        super().__init__(message, details=details)
        self.retry_after = retry_after


class NotFoundTransient(SDKError):
    """Job record not visible yet (HTTP 404 early in a job's life)."""

    default_code = "NOT_FOUND"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found", details={"job_id": job_id})
        self.job_id = job_id


class MalformedPayloadError(SDKError):
    """A response body could not be interpreted."""

    default_code = "MALFORMED_PAYLOAD"


# Streaming / normalization


class MalformedEventError(SDKError):
    """A single stream line that is not valid JSON."""

    default_code = "MALFORMED_EVENT"

    def __init__(self, raw: str) -> None:
        super().__init__("Malformed stream event", details={"raw": redact(raw, limit=200)})
        self.raw = raw


class NoImageFound(SDKError):
    """No recognizable image in an upstream payload."""

    default_code = "NO_IMAGE_FOUND"

    def __init__(self, payload: Any = None, *, fragments: int = 0) -> None:
        preview = preview_payload(payload)
        super().__init__(
            f"No image found in response ({fragments} fragment(s) examined): {preview}",
            details={"payload_preview": preview, "fragments": fragments},
        )


class UpstreamFailure(SDKError):
    """The job or stream explicitly reported failure.

    The message is the server-supplied text, surfaced verbatim.
    """

    default_code = "UPSTREAM_FAILURE"


# Polling


class PollTimeoutError(SDKError):
    """Attempt or time budget exhausted without a terminal status."""

    default_code = "POLL_TIMEOUT"

    def __init__(self, job_id: str, attempts: int, cause: Optional[BaseException] = None) -> None:
        super().__init__(
            f"Gave up polling job {job_id} after {attempts} attempts",
            details={"job_id": job_id, "attempts": attempts},
            cause=cause,
        )


class PollExhaustedError(SDKError):
    """Job stayed invisible past the not-found tolerance.

    This is not a failure of the job: it may have finished and been
    garbage-collected upstream.
    """

    default_code = "POLL_EXHAUSTED"

    def __init__(self, job_id: str, not_found_streak: int) -> None:
        super().__init__(
            f"Job {job_id} not visible after {not_found_streak} consecutive lookups",
            details={"job_id": job_id, "not_found_streak": not_found_streak},
        )


class PollCancelled(SDKError):
    """Polling stopped cooperatively."""

    default_code = "CANCELLED"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Polling of job {job_id} was cancelled", details={"job_id": job_id})


# Queue / config


class QueueClosedError(SDKError):
    """Task enqueued after the owning session closed its queue."""

    default_code = "QUEUE_CLOSED"


class ConfigError(SDKError):
    """Invalid or incomplete configuration."""

    default_code = "CONFIG_ERROR"


def is_transient(exc: BaseException) -> bool:
    """Whether ``exc`` is worth retrying."""
    if isinstance(exc, (TransportError, RateLimitError, httpx.TransportError)):
        return True
    if isinstance(exc, APIError):
        return exc.status_code >= 500 or exc.status_code == 429
    return False


_SECRET_PATTERNS = [
    (
        re.compile(
            r'("(?:api[_-]?key|apikey|authorization|access[_-]?token|token|secret)"\s*:\s*")[^"]*(")',
            re.IGNORECASE,
        ),
        r"\1***\2",
    ),
    (re.compile(r"(Bearer\s+)[A-Za-z0-9._\-+/=]+", re.IGNORECASE), r"\1***"),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"), "sk-***"),
    (re.compile(r"([?&](?:key|api_key|token)=)[^&\s\"]+", re.IGNORECASE), r"\1***"),
    # long base64 runs say nothing useful in a log line
    (re.compile(r"([A-Za-z0-9+/]{48})[A-Za-z0-9+/=]{16,}"), r"\1..."),
]


def redact(text: str, limit: Optional[int] = 500) -> str:
    """Mask secrets and shorten ``text`` for errors and logs."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    if limit is not None and len(text) > limit:
        text = text[:limit] + f"... ({len(text) - limit} more chars)"
    return text


def preview_payload(payload: Any, limit: int = 500) -> str:
    if payload is None:
        return "<empty>"
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if not isinstance(payload, str):
        try:
            payload = json.dumps(payload, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            payload = repr(payload)
    return redact(payload, limit=limit)
