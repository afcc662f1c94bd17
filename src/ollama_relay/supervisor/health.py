"""Health probing for the stages of the tunnel chain."""

import shlex
from typing import Awaitable, Callable, Optional

import httpx
import structlog

from ollama_relay.supervisor.cancellation import CancellationToken
from ollama_relay.supervisor.remote import RemoteExecutor

logger = structlog.get_logger()

HealthCheck = Callable[[], Awaitable[bool]]


class HealthProber:
    """Polls a check until it passes or the attempt budget runs out."""

    def __init__(self, token: Optional[CancellationToken] = None):
        self.token = token or CancellationToken()

    async def probe(self, check: HealthCheck, max_attempts: int = 1, interval: float = 1.0, name: str = "check") -> bool:
        """Run ``check`` up to ``max_attempts`` times.

        A check that raises counts as a failed attempt. The wait between
        attempts is interrupted by cancellation.
        """
        for attempt in range(1, max_attempts + 1):
            try:
                if await check():
                    logger.info("Health check passed", check=name, attempt=attempt)
                    return True
            except Exception as e:
                logger.debug("Health check exception", check=name, attempt=attempt, error=str(e))

            if attempt < max_attempts:
                await self.token.sleep(interval)

        logger.warning("Health check failed", check=name, attempts=max_attempts)
        return False


def http_endpoint_check(
    url: str,
    timeout: float = 5.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> HealthCheck:
    """Check that ``url`` answers with a 2xx status within ``timeout`` seconds."""

    async def check() -> bool:
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport) as client:
            try:
                resp = await client.get(url)
            except (httpx.ConnectError, httpx.TimeoutException):
                return False
            return resp.is_success

    return check


def remote_endpoint_check(remote: RemoteExecutor, url: str, timeout: float = 5.0) -> HealthCheck:
    """Check that ``url`` is reachable from the remote host itself."""

    async def check() -> bool:
        result = await remote.execute(f"curl -s --max-time {int(max(timeout, 1))} {shlex.quote(url)}")
        return result.ok

    return check
