from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

import httpx


DEFAULT_METADATA_HOST = "metadata.google.internal"
ENV_METADATA_HOST = "GCE_METADATA_HOST"
METADATA_FLAVOR = "Google"

SCOPES = (
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/monitoring",
    "https://www.googleapis.com/auth/monitoring.write",
)


class MetadataError(RuntimeError):
    """Base error for the metadata server client."""


class AuthError(MetadataError):
    """No bearer token could be obtained."""


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: float  # monotonic seconds


class MetadataClient:
    """
    Minimal GCE metadata server client.

    Notes
    - All requests carry `Metadata-Flavor: Google`; responses without that header
      are rejected, which guards against captive proxies answering for the host.
    - `GCE_METADATA_HOST` overrides the host (useful for emulators and tests).
    - Timeouts are short; the metadata server is link-local.
    """

    def __init__(
        self,
        *,
        host: Optional[str] = None,
        timeout: float = 3.0,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._host = host or os.environ.get(ENV_METADATA_HOST) or DEFAULT_METADATA_HOST
        self._base_url = f"http://{self._host}"
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=self._timeout,
            headers={"Metadata-Flavor": METADATA_FLAVOR},
        )
        self._clock = clock

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "MetadataClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def on_gce(self) -> bool:
        """Return True when the metadata server answers as Google's."""
        try:
            resp = self._client.get(
                f"{self._base_url}/", headers={"Metadata-Flavor": METADATA_FLAVOR}
            )
        except httpx.HTTPError:
            return False
        return resp.headers.get("Metadata-Flavor") == METADATA_FLAVOR

    def project_id(self) -> str:
        return self._get_text("project/project-id")

    def zone(self) -> str:
        # Returned as "projects/<number>/zones/<zone>"
        raw = self._get_text("instance/zone")
        return raw.rsplit("/", 1)[-1]

    def fetch_token(self, scopes: Sequence[str] = SCOPES) -> AccessToken:
        """Fetch an access token for the default service account."""
        params = {"scopes": ",".join(scopes)} if scopes else None
        try:
            resp = self._get("instance/service-accounts/default/token", params=params)
            payload: Dict[str, Any] = resp.json()
        except (MetadataError, ValueError) as exc:
            raise AuthError(f"Failed to get access token from metadata server: {exc}") from exc

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise AuthError("Metadata server token response missing access_token")
        expires_in = payload.get("expires_in")
        ttl = float(expires_in) if isinstance(expires_in, (int, float)) else 0.0
        return AccessToken(token=token, expires_at=self._clock() + ttl)

    # --------------- Internal ---------------
    def _get(self, path: str, *, params: Optional[Dict[str, str]] = None) -> httpx.Response:
        url = f"{self._base_url}/computeMetadata/v1/{path}"
        try:
            resp = self._client.get(
                url, params=params, headers={"Metadata-Flavor": METADATA_FLAVOR}
            )
        except httpx.HTTPError as exc:
            raise MetadataError(f"Metadata request failed for {path}") from exc
        if resp.status_code != 200:
            raise MetadataError(f"HTTP {resp.status_code} from metadata server for {path}")
        if resp.headers.get("Metadata-Flavor") != METADATA_FLAVOR:
            raise MetadataError("Response is not from the metadata server")
        return resp

    def _get_text(self, path: str) -> str:
        text = self._get(path).text.strip()
        if not text:
            raise MetadataError(f"Empty metadata value for {path}")
        return text


class MetadataTokenSource:
    """
    Callable that returns a bearer token, caching it until shortly before expiry.

    Thread-safe. Raises `AuthError` when a fresh token cannot be fetched.
    """

    def __init__(
        self,
        metadata: MetadataClient,
        *,
        scopes: Sequence[str] = SCOPES,
        refresh_margin_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._metadata = metadata
        self._scopes = tuple(scopes)
        self._margin = refresh_margin_s
        self._clock = clock
        self._cached: Optional[AccessToken] = None
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            cached = self._cached
            if cached is not None and self._clock() < cached.expires_at - self._margin:
                return cached.token
            fresh = self._metadata.fetch_token(self._scopes)
            self._cached = fresh
            return fresh.token

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None


__all__ = [
    "AccessToken",
    "AuthError",
    "MetadataClient",
    "MetadataError",
    "MetadataTokenSource",
    "SCOPES",
]
