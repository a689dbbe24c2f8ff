from __future__ import annotations

from typing import List

import httpx
import pytest

from common.metadata import (
    AuthError,
    MetadataClient,
    MetadataError,
    MetadataTokenSource,
    SCOPES,
)


GOOGLE = {"Metadata-Flavor": "Google"}


class FakeClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t

    def __call__(self) -> float:  # acts like time.monotonic
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


def _metadata(handler, **kwargs) -> MetadataClient:
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return MetadataClient(host="metadata.test", client=http, **kwargs)


def test_on_gce_true_when_flavor_header_present():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Metadata-Flavor"] == "Google"
        return httpx.Response(200, headers=GOOGLE, text="computeMetadata/")

    assert _metadata(handler).on_gce() is True


def test_on_gce_false_without_flavor_header():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>captive portal</html>")

    assert _metadata(handler).on_gce() is False


def test_on_gce_false_on_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route to host", request=request)

    assert _metadata(handler).on_gce() is False


def test_project_id_and_zone():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/computeMetadata/v1/project/project-id":
            return httpx.Response(200, headers=GOOGLE, text="my-project\n")
        if request.url.path == "/computeMetadata/v1/instance/zone":
            return httpx.Response(200, headers=GOOGLE, text="projects/1234/zones/us-central1-a")
        return httpx.Response(404, headers=GOOGLE)

    md = _metadata(handler)
    assert md.project_id() == "my-project"
    assert md.zone() == "us-central1-a"


def test_non_200_raises_metadata_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(404, headers=GOOGLE)

    with pytest.raises(MetadataError):
        _metadata(handler).project_id()


def test_fetch_token_passes_scopes_and_sets_expiry():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            headers=GOOGLE,
            json={"access_token": "ya29.token", "expires_in": 3599, "token_type": "Bearer"},
        )

    clock = FakeClock(100.0)
    token = _metadata(handler, clock=clock).fetch_token()

    assert token.token == "ya29.token"
    assert token.expires_at == 100.0 + 3599
    req = seen[0]
    assert req.url.path == "/computeMetadata/v1/instance/service-accounts/default/token"
    assert req.url.params["scopes"] == ",".join(SCOPES)


def test_fetch_token_failure_is_auth_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(500, headers=GOOGLE)

    with pytest.raises(AuthError):
        _metadata(handler).fetch_token()


def test_fetch_token_missing_field_is_auth_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers=GOOGLE, json={"expires_in": 10})

    with pytest.raises(AuthError):
        _metadata(handler).fetch_token()


def test_token_source_caches_until_refresh_margin():
    state = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        state["n"] += 1
        return httpx.Response(
            200, headers=GOOGLE, json={"access_token": f"tok-{state['n']}", "expires_in": 600}
        )

    clock = FakeClock()
    source = MetadataTokenSource(_metadata(handler, clock=clock), clock=clock, refresh_margin_s=60.0)

    assert source() == "tok-1"
    clock.advance(500.0)
    assert source() == "tok-1"
    assert state["n"] == 1

    clock.advance(41.0)  # within the refresh margin
    assert source() == "tok-2"
    assert state["n"] == 2

    source.invalidate()
    assert source() == "tok-3"
