"""Dependency health tracking and circuit breakers."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from .config import config
from .errors import CircuitOpenError, sanitize_error_message
from .models import utc_now_iso

logger = config.get_logger(__name__)

EMBEDDING = "embedding"
COMPLETION = "completion"
VECTOR_STORE = "vector_store"
SESSION_STORE = "session_store"
COMPONENTS = (EMBEDDING, COMPLETION, VECTOR_STORE, SESSION_STORE)

Probe = Callable[[], Awaitable[Any]]
Clock = Callable[[], float]


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class CircuitBreaker:
    """Stops calling a failing dependency for a cool-down period.

    After ``failure_threshold`` consecutive failures the breaker opens and
    every call is short-circuited with ``CircuitOpenError``. Once
    ``reset_timeout`` seconds have elapsed the next call is let through in the
    half-open state: success closes the breaker, failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int | None = None,
        reset_timeout: float | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(
            1,
            failure_threshold
            if failure_threshold is not None
            else config.CIRCUIT_FAILURE_THRESHOLD,
        )
        self.reset_timeout = (
            reset_timeout
            if reset_timeout is not None
            else config.CIRCUIT_RESET_TIMEOUT_SECONDS
        )
        self._clock = clock
        self._state = BreakerState.CLOSED
        self.failures = 0
        self.last_failure_at: str | None = None
        self.last_error: str | None = None
        self._opened_at: float | None = None

    @property
    def state(self) -> BreakerState:
        if (
            self._state is BreakerState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._set_state(BreakerState.HALF_OPEN)
        return self._state

    def _set_state(self, state: BreakerState) -> None:
        if state is not self._state:
            logger.info(
                "Circuit breaker '%s' %s -> %s",
                self.name,
                self._state.value,
                state.value,
            )
            self._state = state

    def before_call(self) -> None:
        """Raise if calls to the dependency are currently short-circuited.

        Raises:
            CircuitOpenError: If the breaker is open.
        """
        if self.state is BreakerState.OPEN:
            raise CircuitOpenError(self.name)

    def record_success(self) -> None:
        self.failures = 0
        self._opened_at = None
        self._set_state(BreakerState.CLOSED)

    def record_failure(self, error: BaseException | None = None) -> None:
        self.failures += 1
        self.last_failure_at = utc_now_iso()
        if error is not None:
            self.last_error = sanitize_error_message(
                str(error) or type(error).__name__
            )
        if (
            self.state is BreakerState.HALF_OPEN
            or self.failures >= self.failure_threshold
        ):
            self._opened_at = self._clock()
            self._set_state(BreakerState.OPEN)
            logger.warning(
                "Circuit breaker '%s' opened after %d failures",
                self.name,
                self.failures,
            )

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "last_failure_at": self.last_failure_at,
        }


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus
    latency_ms: float | None = None
    error: str | None = None
    breaker_state: BreakerState = BreakerState.CLOSED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["breaker_state"] = self.breaker_state.value
        return data


@dataclass
class SystemHealth:
    status: HealthStatus
    components: dict[str, ComponentHealth]
    checked_at: str
    circuit_breakers: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "checked_at": self.checked_at,
            "components": {
                name: component.to_dict()
                for name, component in self.components.items()
            },
            "circuit_breakers": self.circuit_breakers,
        }


@dataclass
class AvailabilityStatus:
    available: bool
    services: list[str] = field(default_factory=list)
    degraded_services: list[str] = field(default_factory=list)
    unavailable_services: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def overall_status(statuses: list[HealthStatus]) -> HealthStatus:
    """Aggregate component statuses into one system status.

    Unhealthy if at least half of the components are unhealthy, degraded if
    any is unhealthy or degraded, otherwise healthy.

    Returns:
        The aggregated HealthStatus.
    """
    if not statuses:
        return HealthStatus.HEALTHY
    unhealthy = sum(1 for status in statuses if status is HealthStatus.UNHEALTHY)
    if unhealthy * 2 >= len(statuses) and unhealthy > 0:
        return HealthStatus.UNHEALTHY
    if unhealthy or any(status is HealthStatus.DEGRADED for status in statuses):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class HealthMonitor:
    """Tracks dependency availability and caches the aggregated system health."""

    def __init__(
        self,
        probes: dict[str, Probe] | None = None,
        *,
        cache_ttl: float | None = None,
        probe_timeout: float | None = None,
        failure_threshold: int | None = None,
        reset_timeout: float | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._probes: dict[str, Probe] = dict(probes or {})
        self.cache_ttl = (
            cache_ttl if cache_ttl is not None else config.HEALTH_CACHE_TTL_SECONDS
        )
        self.probe_timeout = (
            probe_timeout
            if probe_timeout is not None
            else config.HEALTH_PROBE_TIMEOUT_SECONDS
        )
        self._clock = clock
        self.breakers: dict[str, CircuitBreaker] = {
            name: CircuitBreaker(
                name,
                failure_threshold=failure_threshold,
                reset_timeout=reset_timeout,
                clock=clock,
            )
            for name in COMPONENTS
        }
        self._reported_errors: dict[str, str] = {}
        self._cached: SystemHealth | None = None
        self._cached_at: float | None = None
        self._lock = asyncio.Lock()

    def breaker(self, name: str) -> CircuitBreaker:
        return self.breakers[name]

    def register_probe(self, name: str, probe: Probe) -> None:
        if name not in self.breakers:
            msg = f"Unknown health component: {name}"
            raise ValueError(msg)
        self._probes[name] = probe

    def report_failure(self, name: str, error: BaseException) -> None:
        """Record a failure observed outside a probe and drop the cached health."""
        message = sanitize_error_message(str(error) or type(error).__name__)
        self._reported_errors[name] = message
        self._cached = None
        logger.warning("Dependency '%s' reported failure: %s", name, message)

    def invalidate(self) -> None:
        self._cached = None

    async def get_system_health(self, *, force_refresh: bool = False) -> SystemHealth:
        """Return the aggregated health, probing dependencies when the cache is stale.

        Probe failures are captured per component; this method never raises
        because of a failing dependency.

        Returns:
            The current SystemHealth.
        """
        if not force_refresh and self._is_cache_fresh():
            return self._cached  # type: ignore[return-value]

        async with self._lock:
            if not force_refresh and self._is_cache_fresh():
                return self._cached  # type: ignore[return-value]

            names = list(self.breakers)
            results = await asyncio.gather(
                *(self._check_component(name) for name in names)
            )
            components = dict(zip(names, results, strict=True))
            health = SystemHealth(
                status=overall_status([c.status for c in components.values()]),
                components=components,
                checked_at=utc_now_iso(),
                circuit_breakers={
                    name: breaker.snapshot() for name, breaker in self.breakers.items()
                },
            )
            self._cached = health
            self._cached_at = self._clock()

        if health.status is not HealthStatus.HEALTHY:
            logger.warning("System health is %s", health.status.value)
        return health

    async def get_availability_status(self) -> AvailabilityStatus:
        """Summarize which services are usable right now.

        Returns:
            AvailabilityStatus; ``available`` is False only when the system is
            unhealthy.
        """
        health = await self.get_system_health()
        return AvailabilityStatus(
            available=health.status is not HealthStatus.UNHEALTHY,
            services=[
                name
                for name, c in health.components.items()
                if c.status is HealthStatus.HEALTHY
            ],
            degraded_services=[
                name
                for name, c in health.components.items()
                if c.status is HealthStatus.DEGRADED
            ],
            unavailable_services=[
                name
                for name, c in health.components.items()
                if c.status is HealthStatus.UNHEALTHY
            ],
        )

    def _is_cache_fresh(self) -> bool:
        return (
            self._cached is not None
            and self._cached_at is not None
            and self._clock() - self._cached_at < self.cache_ttl
        )

    async def _check_component(self, name: str) -> ComponentHealth:
        breaker = self.breakers[name]
        state = breaker.state

        if state is BreakerState.OPEN:
            return ComponentHealth(
                name=name,
                status=HealthStatus.UNHEALTHY,
                error=breaker.last_error or "circuit breaker open",
                breaker_state=state,
            )

        probe = self._probes.get(name)
        if probe is None:
            status = (
                HealthStatus.DEGRADED
                if state is BreakerState.HALF_OPEN or breaker.failures
                else HealthStatus.HEALTHY
            )
            return ComponentHealth(
                name=name,
                status=status,
                error=self._reported_errors.get(name),
                breaker_state=state,
            )

        started = time.perf_counter()
        try:
            await asyncio.wait_for(probe(), timeout=self.probe_timeout)
        except Exception as exc:  # noqa: BLE001
            error = sanitize_error_message(str(exc) or type(exc).__name__)
            logger.warning("Health probe for '%s' failed: %s", name, error)
            return ComponentHealth(
                name=name,
                status=HealthStatus.UNHEALTHY,
                latency_ms=(time.perf_counter() - started) * 1000,
                error=error,
                breaker_state=state,
            )

        latency_ms = (time.perf_counter() - started) * 1000
        self._reported_errors.pop(name, None)
        degraded = state is BreakerState.HALF_OPEN or breaker.failures > 0
        return ComponentHealth(
            name=name,
            status=HealthStatus.DEGRADED if degraded else HealthStatus.HEALTHY,
            latency_ms=latency_ms,
            error=breaker.last_error if degraded else None,
            breaker_state=state,
        )
