"""Data models shared by the decoder, normalizer, poller and client."""

import base64
import binascii
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from imagegen.sdk.errors import MalformedPayloadError

DEFAULT_MIME_TYPE = "image/png"

_DATA_URL_RE = re.compile(r"^data:([^;,]+)?(?:;[^,]*)?;base64,(.*)$", re.DOTALL)


def split_data_url(value: str) -> tuple[Optional[str], str]:
    """Split ``data:<mime>;base64,<data>`` into ``(mime, data)``.

    Values that are not data URLs come back as ``(None, value)``.
    """
    match = _DATA_URL_RE.match(value.strip())
    if not match:
        return None, value
    return match.group(1), match.group(2).strip()


@dataclass(frozen=True)
class ImageArtifact:
    """One resolved, directly usable image."""

    encoding: Literal["url", "base64"]
    payload: str
    mime_type: str = DEFAULT_MIME_TYPE

    def __post_init__(self) -> None:
        if self.encoding not in ("url", "base64"):
            raise ValueError(f"Unknown artifact encoding: {self.encoding!r}")
        if not self.payload:
            raise ValueError("ImageArtifact payload must not be empty")
        if not self.mime_type or "/" not in self.mime_type:
            object.__setattr__(self, "mime_type", DEFAULT_MIME_TYPE)

    @classmethod
    def from_bytes(cls, content: bytes, mime_type: Optional[str] = None) -> "ImageArtifact":
        return cls(
            encoding="base64",
            payload=base64.b64encode(content).decode("ascii"),
            mime_type=mime_type or DEFAULT_MIME_TYPE,
        )

    def to_data_url(self) -> str:
        if self.encoding == "url":
            return self.payload
        return f"data:{self.mime_type};base64,{self.payload}"

    def to_response(self) -> dict[str, Any]:
        """Caller-facing shape: ``{"url": ...}`` or ``{"b64_json": ...}``."""
        if self.encoding == "url":
            return {"url": self.payload}
        return {"b64_json": self.payload}

    def decode(self) -> bytes:
        if self.encoding != "base64":
            raise ValueError("Only base64 artifacts carry inline bytes")
        try:
            return base64.b64decode(self.payload, validate=False)
        except binascii.Error as e:
            raise ValueError(f"Artifact payload is not valid base64: {e}") from e


@dataclass(frozen=True)
class PartialArtifact:
    """Image reference seen in a stream event, not yet resolved."""

    url: Optional[str] = None
    b64: Optional[str] = None
    mime_type: Optional[str] = None

    def __post_init__(self) -> None:
        if self.b64 and self.b64.startswith("data:"):
            mime, data = split_data_url(self.b64)
            object.__setattr__(self, "b64", data)
            if mime and not self.mime_type:
                object.__setattr__(self, "mime_type", mime)

    @property
    def is_empty(self) -> bool:
        return not (self.url or self.b64)


@dataclass(frozen=True)
class FetchedImage:
    """Bytes returned by an image fetch, with the upstream Content-Type."""

    content: bytes
    content_type: Optional[str] = None


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)

    @property
    def rank(self) -> int:
        return {"queued": 0, "running": 1, "succeeded": 2, "failed": 2}[self.value]


class JobRecord(BaseModel):
    """Server-owned job snapshot, as returned by ``GET /jobs/{id}``."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    status: JobStatus
    progress: int = Field(default=0)
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @field_validator("progress", mode="before")
    @classmethod
    def clamp_progress(cls, v: Any) -> int:
        if v is None:
            return 0
        try:
            value = int(round(float(v)))
        except (TypeError, ValueError):
            return 0
        return max(0, min(100, value))

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_payload(cls, payload: Any) -> "JobRecord":
        """Build from a bare job object or the ``{ok, job}`` envelope."""
        if isinstance(payload, JobRecord):
            return payload
        if not isinstance(payload, Mapping):
            raise MalformedPayloadError(
                "Job payload is not an object",
                details={"type": type(payload).__name__},
            )
        if "ok" in payload or "job" in payload:
            job = payload.get("job")
            if not payload.get("ok", True) or not isinstance(job, Mapping):
                message = payload.get("error") or "Job lookup returned no job"
                raise MalformedPayloadError(str(message), details={"ok": payload.get("ok")})
            payload = job
        try:
            return cls.model_validate(dict(payload))
        except ValueError as e:
            raise MalformedPayloadError(f"Invalid job record: {e}", cause=e) from e
