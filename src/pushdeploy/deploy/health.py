"""Readiness verification for deployed processes."""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx
import structlog

from pushdeploy.core.exceptions import HealthCheckTimeout
from pushdeploy.deploy.models import HealthProbe, Target, TargetState


logger = structlog.get_logger()


class HealthVerifier:
    """Polls a target's probe URL at a fixed interval until ready or deadline."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def _poll_once(self, client: httpx.AsyncClient, url: str, probe: HealthProbe) -> Optional[int]:
        try:
            resp = await client.get(url, timeout=probe.request_timeout)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.debug("Health probe not reachable", url=url, error=str(exc))
            return None
        except httpx.HTTPError as exc:
            logger.debug("Health probe error", url=url, error=str(exc))
            return None
        return resp.status_code

    async def verify(self, target: Target) -> TargetState:
        """Return ``TargetState.RUNNING`` once the probe passes.

        Raises:
            HealthCheckTimeout: no passing probe before ``probe.timeout``.
        """
        probe = target.health
        if probe is None:
            logger.info("No health probe configured, assuming ready", target=target.id)
            return TargetState.RUNNING

        url = probe.render_url(target.host)
        low, high = probe.expected_status
        loop = asyncio.get_event_loop()
        deadline = loop.time() + probe.timeout
        polls = 0
        last_status: Optional[int] = None

        async with httpx.AsyncClient(transport=self._transport, follow_redirects=False) as client:
            while True:
                polls += 1
                last_status = await self._poll_once(client, url, probe)
                if last_status is not None and low <= last_status <= high:
                    logger.info("Health check passed", target=target.id, url=url, status=last_status, polls=polls)
                    return TargetState.RUNNING

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(probe.interval, remaining))

        logger.warning(
            "Health check timed out",
            target=target.id,
            url=url,
            polls=polls,
            last_status=last_status,
            timeout=probe.timeout,
        )
        raise HealthCheckTimeout(
            f"{target.id} not ready after {probe.timeout:.0f}s (last status: {last_status})",
            code="health_timeout",
        )
