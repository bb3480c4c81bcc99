"""Tests for HTTP readiness verification."""

import httpx
import pytest

from pushdeploy.core.exceptions import HealthCheckTimeout
from pushdeploy.deploy.health import HealthVerifier
from pushdeploy.deploy.models import HealthProbe, TargetState

from conftest import make_target


def probe_target(**probe):
    fields = {"url": "http://{host}:8000/health", "interval": 0.01, "timeout": 0.5, "request_timeout": 0.1}
    fields.update(probe)
    return make_target(health=HealthProbe(**fields))


@pytest.mark.asyncio
async def test_no_probe_is_ready():
    verifier = HealthVerifier(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    assert await verifier.verify(make_target()) == TargetState.RUNNING


@pytest.mark.asyncio
async def test_polls_until_ready():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(503 if len(seen) < 3 else 200)

    verifier = HealthVerifier(transport=httpx.MockTransport(handler))

    assert await verifier.verify(probe_target()) == TargetState.RUNNING
    assert len(seen) == 3
    assert seen[0] == "http://t1.internal:8000/health"


@pytest.mark.asyncio
async def test_connection_errors_count_as_not_ready():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(204)

    verifier = HealthVerifier(transport=httpx.MockTransport(handler))

    assert await verifier.verify(probe_target()) == TargetState.RUNNING
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_deadline_raises_timeout():
    verifier = HealthVerifier(transport=httpx.MockTransport(lambda request: httpx.Response(500)))

    with pytest.raises(HealthCheckTimeout) as exc_info:
        await verifier.verify(probe_target(timeout=0.05))

    assert exc_info.value.code == "health_timeout"
    assert "500" in str(exc_info.value)


@pytest.mark.asyncio
async def test_expected_status_range():
    verifier = HealthVerifier(transport=httpx.MockTransport(lambda request: httpx.Response(302)))

    assert await verifier.verify(probe_target()) == TargetState.RUNNING
    with pytest.raises(HealthCheckTimeout):
        await verifier.verify(probe_target(expected_status=(200, 299), timeout=0.05))


def test_inverted_status_range_rejected():
    with pytest.raises(ValueError):
        HealthProbe(url="http://x/health", expected_status=(500, 200))


def test_unknown_url_placeholder_rejected():
    with pytest.raises(ValueError, match="hostname"):
        HealthProbe(url="http://{hostname}:8000/health")


def test_render_url():
    probe = HealthProbe(url="http://{host}:8000/health")
    assert probe.render_url("10.0.0.5") == "http://10.0.0.5:8000/health"
