"""Runtime configuration (imagegen.yaml + IMAGEGEN_* environment)."""

import os
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from imagegen.sdk.client import DEFAULT_MAX_IMAGE_BYTES, GenerationClient
from imagegen.sdk.errors import ConfigError
from imagegen.sdk.normalizer import ResponseNormalizer
from imagegen.sdk.poller import PollOptions

ENV_PREFIX = "IMAGEGEN_"

# env suffix -> (section, field)
_ENV_FIELDS = {
    "BASE_URL": (None, "base_url"),
    "API_KEY": (None, "api_key"),
    "TIMEOUT": (None, "timeout"),
    "MAX_RETRIES": (None, "max_retries"),
    "JOBS_PATH": (None, "jobs_path"),
    "MAX_IMAGE_BYTES": (None, "max_image_bytes"),
    "FETCH_RETRIES": (None, "fetch_retries"),
    "POLL_INTERVAL": ("poll", "interval"),
    "POLL_INITIAL_DELAY": ("poll", "initial_delay"),
    "POLL_MAX_ATTEMPTS": ("poll", "max_attempts"),
    "POLL_NOT_FOUND_TOLERANCE": ("poll", "not_found_tolerance"),
    "POLL_BACKOFF_FACTOR": ("poll", "backoff_factor"),
    "POLL_MAX_ELAPSED": ("poll", "max_elapsed"),
}


class Settings(BaseModel):
    """Client, normalizer and polling settings."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = Field(default="http://localhost:3000", description="Backend base URL")
    api_key: Optional[SecretStr] = Field(default=None, description="Bearer token for the backend")
    timeout: float = Field(default=60.0, gt=0, description="Request timeout in seconds")
    max_retries: int = Field(default=3, ge=1)
    jobs_path: str = Field(default="/api/jobs")
    max_image_bytes: int = Field(default=DEFAULT_MAX_IMAGE_BYTES, gt=0)
    fetch_retries: int = Field(default=1, ge=0, le=5)
    poll: PollOptions = Field(default_factory=PollOptions)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "Settings":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}", cause=e) from e

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "Settings":
        return cls.from_mapping(_read_yaml(Path(path)))

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, environ: Optional[dict[str, str]] = None) -> "Settings":
        return cls.from_mapping(_env_overrides(prefix, os.environ if environ is None else environ))

    @classmethod
    def load(
        cls,
        path: Optional[Union[str, Path]] = None,
        *,
        prefix: str = ENV_PREFIX,
        environ: Optional[dict[str, str]] = None,
    ) -> "Settings":
        """YAML file (if any) with environment variables layered on top."""
        data = _read_yaml(Path(path)) if path else {}
        overrides = _env_overrides(prefix, os.environ if environ is None else environ)
        poll = {**data.get("poll", {}), **overrides.pop("poll", {})}
        data.update(overrides)
        if poll:
            data["poll"] = poll
        return cls.from_mapping(data)

    def create_client(self) -> GenerationClient:
        return GenerationClient(
            self.base_url,
            self.api_key.get_secret_value() if self.api_key else None,
            timeout=self.timeout,
            max_retries=self.max_retries,
            jobs_path=self.jobs_path,
            max_image_bytes=self.max_image_bytes,
        )

    def create_normalizer(self, client: Optional[GenerationClient] = None) -> ResponseNormalizer:
        return ResponseNormalizer(
            fetch=client.fetch_image if client is not None else None,
            fetch_retries=self.fetch_retries,
        )


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}", details={"path": str(path)})
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}", cause=e) from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    if data.get("poll") is None:
        data.pop("poll", None)
    elif not isinstance(data["poll"], dict):
        raise ConfigError(f"Config file {path}: poll must be a mapping", details={"path": str(path)})
    return data


def _env_overrides(prefix: str, environ: Any) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for suffix, (section, name) in _ENV_FIELDS.items():
        value = environ.get(f"{prefix}{suffix}")
        if value is None or value == "":
            continue
        if section is None:
            data[name] = value
        else:
            data.setdefault(section, {})[name] = value
    return data
