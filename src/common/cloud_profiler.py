from __future__ import annotations

import base64
import re
from typing import Any, Callable, Dict, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError


DEFAULT_API_BASE = "https://cloudprofiler.googleapis.com/v2"
DEFAULT_PROFILE_TYPES = ("WALL",)

_DURATION_RE = re.compile(r"^(\d+)(?:\.(\d{1,9}))?s$")


class CloudProfilerError(RuntimeError):
    """Base error for the Cloud Profiler client."""


class CloudProfilerApiError(CloudProfilerError):
    """API returned an error status or an unexpected body."""


class Deployment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId")
    target: str = Field(..., description="Service name")
    labels: Dict[str, str] = Field(default_factory=dict)


class Profile(BaseModel):
    """
    A profile session as issued by `projects.profiles.create`.

    The server fills `name` and `duration`; the agent fills `profile_bytes`
    (base64 of the gzipped pprof payload) before patching it back.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: Optional[str] = None
    profile_type: Optional[str] = Field(default=None, alias="profileType")
    deployment: Optional[Deployment] = None
    duration: Optional[str] = None
    profile_bytes: Optional[str] = Field(default=None, alias="profileBytes")
    labels: Dict[str, str] = Field(default_factory=dict)

    def duration_seconds(self) -> Optional[float]:
        """Requested sampling duration, or None when the server omitted it."""
        if self.duration is None:
            return None
        return parse_duration(self.duration)

    def with_profile_bytes(self, blob: bytes) -> "Profile":
        encoded = base64.b64encode(blob).decode("ascii")
        return self.model_copy(update={"profile_bytes": encoded})


def parse_duration(value: str) -> float:
    """Parse a protobuf JSON duration such as "10s" or "0.500s" into seconds."""
    m = _DURATION_RE.match(value.strip()) if isinstance(value, str) else None
    if not m:
        raise ValueError(f"Invalid duration: {value!r}")
    seconds = int(m.group(1))
    frac = m.group(2)
    if frac:
        return seconds + int(frac.ljust(9, "0")) / 1e9
    return float(seconds)


class CloudProfilerClient:
    """
    Minimal Cloud Profiler v2 REST client (agent side).

    Notes
    - `create_profile` is a long poll: the server answers only when it wants a
      profile from this deployment. Its read timeout is therefore long but bounded.
    - Each call makes exactly one request. Network errors raise
      `CloudProfilerError`, non-200 statuses `CloudProfilerApiError`; retrying
      is left to the caller's backoff.
    - The bearer token is requested from `token_source` on every call. Errors
      raised by the token source propagate unchanged. On a 401 the source's
      `invalidate()` is called, if it has one, so the next call refetches.
    """

    def __init__(
        self,
        token_source: Callable[[], str],
        *,
        api_base: str = DEFAULT_API_BASE,
        create_timeout: float = 3900.0,
        upload_timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._token_source = token_source
        self._api_base = api_base.rstrip("/")
        self._create_timeout = httpx.Timeout(create_timeout, connect=10.0)
        self._upload_timeout = httpx.Timeout(upload_timeout, connect=10.0)
        self._owns_client = client is None
        self._client = client or httpx.Client()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "CloudProfilerClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def create_profile(
        self,
        deployment: Deployment,
        profile_types: Sequence[str] = DEFAULT_PROFILE_TYPES,
    ) -> Profile:
        """Ask the server for the next profile to collect for `deployment`."""
        body = {
            "deployment": deployment.model_dump(by_alias=True),
            "profileType": list(profile_types),
        }
        url = f"{self._api_base}/projects/{deployment.project_id}/profiles"
        data = self._request("POST", url, body, timeout=self._create_timeout)
        try:
            return Profile.model_validate(data)
        except ValidationError as ve:
            raise CloudProfilerApiError(f"Failed to parse profile: {ve}") from ve

    def update_profile(self, profile: Profile) -> Profile:
        """Upload the collected payload attached to `profile`."""
        if not profile.name:
            raise CloudProfilerApiError("Profile has no name")
        body = profile.model_dump(by_alias=True, exclude_none=True)
        url = f"{self._api_base}/{profile.name}"
        data = self._request("PATCH", url, body, timeout=self._upload_timeout)
        try:
            return Profile.model_validate(data)
        except ValidationError as ve:
            raise CloudProfilerApiError(f"Failed to parse profile: {ve}") from ve

    # --------------- Internal ---------------
    def _request(
        self,
        method: str,
        url: str,
        json_body: Dict[str, Any],
        *,
        timeout: httpx.Timeout,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._token_source()}"}
        try:
            resp = self._client.request(method, url, json=json_body, headers=headers, timeout=timeout)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise CloudProfilerError(f"{method} {url} failed: {exc}") from exc

        if resp.status_code == 401:
            invalidate = getattr(self._token_source, "invalidate", None)
            if invalidate is not None:
                invalidate()
        if resp.status_code != 200:
            raise CloudProfilerApiError(
                f"HTTP {resp.status_code} from Cloud Profiler: {resp.text[:200]}"
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise CloudProfilerApiError("Failed to parse JSON from Cloud Profiler") from exc
        if not isinstance(payload, dict):
            raise CloudProfilerApiError("Malformed response from Cloud Profiler")
        return payload


__all__ = [
    "CloudProfilerClient",
    "CloudProfilerError",
    "CloudProfilerApiError",
    "DEFAULT_API_BASE",
    "DEFAULT_PROFILE_TYPES",
    "Deployment",
    "Profile",
    "parse_duration",
]
