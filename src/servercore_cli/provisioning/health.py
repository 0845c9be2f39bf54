"""Health verification for deployed services.

Polls each service's probe until every service reports healthy or the
timeout elapses. The wait is always bounded: on timeout every service is
returned instead of raising, and those not healthy by the deadline are
reported unhealthy with their last probe result in the detail.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import threading
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

import httpx

from ..shared.logging import get_logger

logger = get_logger(__name__)


class HealthState(Enum):
    """Health of a service as reported by its probe."""

    UNKNOWN = "unknown"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthStatus:
    """Latest known health of a service."""

    state: HealthState = HealthState.UNKNOWN
    last_checked_at: datetime | None = None
    detail: str | None = None

    @property
    def healthy(self) -> bool:
        return self.state == HealthState.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "detail": self.detail,
        }


Probe = Callable[[str], Union[HealthState, Awaitable[HealthState]]]


def _is_async(probe: Probe) -> bool:
    return inspect.iscoroutinefunction(probe) or inspect.iscoroutinefunction(
        getattr(probe, "__call__", None)
    )


def _accepts_timeout(probe: Probe) -> bool:
    try:
        return "timeout" in inspect.signature(probe).parameters
    except (TypeError, ValueError):
        return False


def _in_daemon_thread(func: Callable[[], HealthState]) -> asyncio.Future:
    """Run a blocking probe on a daemon thread and return a future for it.

    A call abandoned at its timeout keeps neither asyncio.run nor the
    interpreter waiting for the thread to finish.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def settle(result: HealthState | None, error: Exception | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def target() -> None:
        result, error = None, None
        try:
            result = func()
        except Exception as e:
            error = e
        try:
            loop.call_soon_threadsafe(settle, result, error)
        except RuntimeError:
            # Event loop already closed: the wait ended without this result.
            logger.debug("health.probe_abandoned")

    threading.Thread(target=target, name="health-probe", daemon=True).start()
    return future


class HttpProbe:
    """Probe an HTTP endpoint. Redirects count as healthy (HTTP -> HTTPS)."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        healthy_statuses: tuple[int, ...] = (200, 301, 302),
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.healthy_statuses = healthy_statuses

    async def __call__(self, name: str) -> HealthState:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, verify=False) as client:
                response = await client.get(self.url)
        except httpx.ConnectError:
            return HealthState.STARTING
        except httpx.TimeoutException:
            return HealthState.UNHEALTHY
        except httpx.HTTPError as e:
            logger.debug("health.http_error", service=name, url=self.url, error=str(e))
            return HealthState.UNHEALTHY

        if response.status_code in self.healthy_statuses:
            return HealthState.HEALTHY
        if response.status_code == 503:
            return HealthState.STARTING
        return HealthState.UNHEALTHY


class HealthVerifier:
    """Poll service probes until all are healthy or a deadline passes."""

    def __init__(
        self,
        probe: Probe,
        probes: dict[str, Probe] | None = None,
        probe_timeout: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """Initialize health verifier.

        Args:
            probe: Default probe, called with the service name.
            probes: Per-service probes overriding the default.
            probe_timeout: Upper bound for a single probe call, in seconds.
            clock: Monotonic clock (injectable for tests).
            sleep: Async sleep (injectable for tests).
            now: Wall clock used for last_checked_at.
        """
        self.probe = probe
        self.probes = dict(probes or {})
        self.probe_timeout = probe_timeout
        self.clock = clock
        self.sleep = sleep
        self.now = now

    async def _probe_once(self, name: str, budget: float) -> HealthState:
        bound = max(min(budget, self.probe_timeout), 0.001)
        probe = self.probes.get(name, self.probe)
        # Probes that take a timeout bound their own commands as well.
        kwargs = {"timeout": bound} if _accepts_timeout(probe) else {}
        if _is_async(probe):
            call = probe(name, **kwargs)
        else:
            call = _in_daemon_thread(functools.partial(probe, name, **kwargs))
        return await asyncio.wait_for(call, timeout=bound)

    async def wait_until_ready(
        self,
        services: Iterable[str],
        timeout: float,
        poll_interval: float,
        on_poll: Callable[[int, dict[str, HealthStatus]], None] | None = None,
    ) -> dict[str, HealthStatus]:
        """Poll until every service is healthy or timeout elapses.

        Args:
            services: Service names to verify.
            timeout: Overall deadline in seconds.
            poll_interval: Seconds between polling rounds.
            on_poll: Optional callback called with (round, statuses) for
                progress reporting.

        Returns:
            Service name -> HealthStatus, for every requested service.
        """
        statuses = {name: HealthStatus() for name in services}
        deadline = self.clock() + timeout
        poll_round = 0

        while True:
            poll_round += 1
            for name, status in statuses.items():
                if status.healthy:
                    continue
                budget = deadline - self.clock()
                try:
                    state = await self._probe_once(name, budget)
                    statuses[name] = HealthStatus(state, self.now())
                except asyncio.TimeoutError:
                    statuses[name] = HealthStatus(status.state, self.now(), "probe timed out")
                except Exception as e:
                    statuses[name] = HealthStatus(HealthState.UNKNOWN, self.now(), str(e))

            logger.debug(
                "health.polled",
                round=poll_round,
                states={name: s.state.value for name, s in statuses.items()},
            )
            if on_poll:
                on_poll(poll_round, statuses)

            if all(s.healthy for s in statuses.values()):
                logger.info("health.ready", services=list(statuses), rounds=poll_round)
                return statuses

            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            await self.sleep(min(poll_interval, remaining))
            if self.clock() >= deadline:
                break

        for name, status in statuses.items():
            if status.state in (HealthState.STARTING, HealthState.UNKNOWN):
                detail = f"still {status.state.value} at deadline"
                if status.detail:
                    detail = f"{detail}: {status.detail}"
                statuses[name] = HealthStatus(HealthState.UNHEALTHY, status.last_checked_at, detail)

        logger.warning(
            "health.timeout",
            timeout=timeout,
            not_ready=[name for name, s in statuses.items() if not s.healthy],
        )
        return statuses

    def wait_until_ready_sync(
        self,
        services: Iterable[str],
        timeout: float,
        poll_interval: float,
        on_poll: Callable[[int, dict[str, HealthStatus]], None] | None = None,
    ) -> dict[str, HealthStatus]:
        """Synchronous wrapper for wait_until_ready."""
        return asyncio.run(self.wait_until_ready(services, timeout, poll_interval, on_poll))
