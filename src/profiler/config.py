from __future__ import annotations

import json
import os
import re
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from common.backoff import DEFAULT_MAX_ENVELOPE_S, DEFAULT_MIN_ENVELOPE_S, DEFAULT_MULTIPLIER
from common.cloud_profiler import DEFAULT_API_BASE, DEFAULT_PROFILE_TYPES
from common.sampler import MAX_SAMPLING_RATE


DEFAULT_SAMPLING_RATE = 100
DEFAULT_IDLE_INTERVAL_S = 60.0

# Environment variable names
ENV_PROJECT_ID = "PROFILER_PROJECT_ID"
ENV_SERVICE = "PROFILER_SERVICE"
ENV_VERSION = "PROFILER_SERVICE_VERSION"
ENV_LABELS = "PROFILER_LABELS"
ENV_SAMPLING_RATE = "PROFILER_SAMPLING_RATE"
ENV_API_BASE = "PROFILER_API_BASE"
ENV_BACKOFF_MIN_S = "PROFILER_BACKOFF_MIN_S"
ENV_BACKOFF_MAX_S = "PROFILER_BACKOFF_MAX_S"
ENV_BACKOFF_MULTIPLIER = "PROFILER_BACKOFF_MULTIPLIER"
ENV_IDLE_INTERVAL_S = "PROFILER_IDLE_INTERVAL_S"
ENV_CREATE_TIMEOUT_S = "PROFILER_CREATE_TIMEOUT_S"
ENV_UPLOAD_TIMEOUT_S = "PROFILER_UPLOAD_TIMEOUT_S"

# Platform-provided fallbacks (Cloud Run / App Engine style)
FALLBACK_ENV_PROJECT_ID = "GOOGLE_CLOUD_PROJECT"
FALLBACK_ENV_SERVICE = "K_SERVICE"
FALLBACK_ENV_VERSION = "K_REVISION"

_SERVICE_RE = re.compile(r"^[a-z0-9]([-a-z0-9_.]{0,253}[a-z0-9])?$")


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def parse_labels(raw: Optional[str]) -> Dict[str, str]:
    """Parse deployment labels from a JSON object or `k=v` pairs.

    Accepts either:
    - JSON object: '{"env": "prod", "team": "core"}'
    - Pairs separated by commas/newlines: "env=prod, team=core"

    Empty input yields an empty dict. Malformed pairs raise ValueError.
    """
    if not raw or not raw.strip():
        return {}

    text = raw.strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid labels JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("Labels JSON must be an object")
        return {str(k): str(v) for k, v in data.items()}

    out: Dict[str, str] = {}
    for tok in text.replace("\n", ",").split(","):
        tok = tok.strip()
        if not tok:
            continue
        key, sep, value = tok.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid label {tok!r}; expected key=value")
        out[key.strip()] = value.strip()
    return out


class ProfilerConfiguration(BaseModel):
    """Live-tunable settings, re-read by the loop before every capture."""

    model_config = ConfigDict(frozen=True)

    sampling_rate: int = Field(default=DEFAULT_SAMPLING_RATE, gt=0, le=MAX_SAMPLING_RATE)


class AgentSettings(BaseModel):
    """
    Startup settings: deployment identity plus loop tuning.

    Identity (project, service, version, labels) is fixed for the agent's
    lifetime. `project_id` may be left unset to discover it from the metadata
    server at start.
    """

    model_config = ConfigDict(frozen=True)

    project_id: Optional[str] = None
    service: str
    version: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)

    sampling_rate: int = Field(default=DEFAULT_SAMPLING_RATE, gt=0, le=MAX_SAMPLING_RATE)
    profile_types: Tuple[str, ...] = DEFAULT_PROFILE_TYPES
    api_base: str = DEFAULT_API_BASE

    backoff_min_s: float = Field(default=DEFAULT_MIN_ENVELOPE_S, ge=0)
    backoff_max_s: float = Field(default=DEFAULT_MAX_ENVELOPE_S, ge=0)
    backoff_multiplier: float = Field(default=DEFAULT_MULTIPLIER, gt=1)
    idle_interval_s: float = Field(default=DEFAULT_IDLE_INTERVAL_S, gt=0)
    create_timeout_s: float = Field(default=3900.0, gt=0)
    upload_timeout_s: float = Field(default=60.0, gt=0)

    @field_validator("service")
    @classmethod
    def _check_service(cls, v: str) -> str:
        if not _SERVICE_RE.match(v):
            raise ValueError(
                "service must be lowercase letters, digits, '-', '_' or '.', "
                "starting and ending with a letter or digit"
            )
        return v

    @field_validator("profile_types")
    @classmethod
    def _check_profile_types(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if not v:
            raise ValueError("at least one profile type is required")
        return tuple(t.upper() for t in v)

    @model_validator(mode="after")
    def _check_backoff(self) -> "AgentSettings":
        if self.backoff_max_s < self.backoff_min_s:
            raise ValueError("backoff_max_s must be >= backoff_min_s")
        return self

    def initial_configuration(self) -> ProfilerConfiguration:
        return ProfilerConfiguration(sampling_rate=self.sampling_rate)

    @classmethod
    def from_env(cls) -> "AgentSettings":
        service = _getenv(ENV_SERVICE) or _getenv(FALLBACK_ENV_SERVICE)
        service = _require(service, ENV_SERVICE)

        values: Dict[str, object] = {
            "project_id": _getenv(ENV_PROJECT_ID) or _getenv(FALLBACK_ENV_PROJECT_ID),
            "service": service,
            "version": _getenv(ENV_VERSION) or _getenv(FALLBACK_ENV_VERSION, ""),
            "labels": parse_labels(_getenv(ENV_LABELS)),
        }
        # Optional tuning; pydantic coerces and validates the strings
        optional = {
            "sampling_rate": ENV_SAMPLING_RATE,
            "api_base": ENV_API_BASE,
            "backoff_min_s": ENV_BACKOFF_MIN_S,
            "backoff_max_s": ENV_BACKOFF_MAX_S,
            "backoff_multiplier": ENV_BACKOFF_MULTIPLIER,
            "idle_interval_s": ENV_IDLE_INTERVAL_S,
            "create_timeout_s": ENV_CREATE_TIMEOUT_S,
            "upload_timeout_s": ENV_UPLOAD_TIMEOUT_S,
        }
        for field_name, env_name in optional.items():
            raw = _getenv(env_name)
            if raw is not None:
                values[field_name] = raw.strip()
        return cls.model_validate(values)


__all__ = [
    "AgentSettings",
    "DEFAULT_IDLE_INTERVAL_S",
    "DEFAULT_SAMPLING_RATE",
    "ProfilerConfiguration",
    "parse_labels",
]
