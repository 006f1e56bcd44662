"""
Health probing for stack services.

Handles:
- One-shot probes over HTTP, commands and engine health state
- Bounded polling until a service is ready
- Cancellation between poll attempts
- Parallel stack-wide health reports
"""

import time
import threading
import logging
from typing import Optional, Dict, List, Any, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime
import requests
from concurrent.futures import ThreadPoolExecutor, as_completed

from .config import ServiceDefinition, ProbeKind, DEFAULT_POLL_INTERVAL, DEFAULT_HEALTH_TIMEOUT
from .runner import ProcessRunner

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Per-service readiness, re-evaluated on every poll."""
    UNKNOWN = "unknown"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"


# HEALTHY and UNHEALTHY share a rank: a poll cycle may settle on either
_RANK = {
    HealthStatus.UNKNOWN: 0,
    HealthStatus.STARTING: 1,
    HealthStatus.HEALTHY: 2,
    HealthStatus.UNHEALTHY: 2,
    HealthStatus.TIMED_OUT: 3,
}

# engine states that count as ready for container probes
_READY_STATES = {"healthy", "running"}


def advance(current: HealthStatus, new: HealthStatus) -> HealthStatus:
    """Move forward only: a later poll never returns a service to an earlier state."""
    return new if _RANK[new] >= _RANK[current] else current


@dataclass
class HealthCheckResult:
    """Result of a single probe."""
    service: str
    healthy: bool
    message: str = ""
    response_time_ms: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.now)


class HealthProber:
    """
    Polls services until they report ready.

    await_healthy never raises and never blocks longer than the timeout plus
    one poll interval, provided each probe honours its cap of one interval.
    Command and container probes are killed at the cap; for HTTP the cap is
    the requests timeout, which bounds connect and each read separately, so
    an endpoint trickling bytes can stretch a single probe past it.

    A TIMED_OUT result is an ordinary outcome; calling await_healthy again
    simply starts a fresh polling budget.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        interval: float = DEFAULT_POLL_INTERVAL,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner
        self.interval = interval
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock
        self._lock = threading.Lock()
        self._last: Dict[str, HealthCheckResult] = {}
        self._status: Dict[str, HealthStatus] = {}

    def cancel(self):
        """Stop every in-flight poll loop at its next wait."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def last_signal(self, service_name: str) -> str:
        result = self._last.get(service_name)
        return result.message if result else ""

    def status(self, service_name: str) -> HealthStatus:
        return self._status.get(service_name, HealthStatus.UNKNOWN)

    def probe(self, service: ServiceDefinition, timeout: Optional[float] = None) -> HealthCheckResult:
        """Perform one health check on a service."""
        check = service.healthcheck
        if check is None:
            result = HealthCheckResult(service.name, True, "No health check configured")
            self._record(result)
            return result

        timeout = check.timeout_seconds if timeout is None else min(timeout, check.timeout_seconds)
        start_time = time.time()
        try:
            if check.kind == ProbeKind.HTTP:
                result = self._check_http(service.name, check.endpoint, timeout)
            elif check.kind == ProbeKind.COMMAND:
                result = self._check_command(service.name, list(check.command), timeout)
            else:
                result = self._check_container(service.name, service.container, timeout)
        except Exception as e:
            result = HealthCheckResult(
                service=service.name,
                healthy=False,
                message=f"Check failed with exception: {e}",
            )
        result.response_time_ms = (time.time() - start_time) * 1000
        self._record(result)
        return result

    def _record(self, result: HealthCheckResult):
        with self._lock:
            self._last[result.service] = result

    def _check_http(self, name: str, endpoint: str, timeout: float) -> HealthCheckResult:
        try:
            response = requests.get(endpoint, timeout=max(timeout, 0.1))
        except requests.Timeout:
            return HealthCheckResult(name, False, "Request timed out")
        except requests.ConnectionError:
            return HealthCheckResult(name, False, "Connection refused")
        except requests.RequestException as e:
            return HealthCheckResult(name, False, f"Request failed: {e}")
        return HealthCheckResult(name, 200 <= response.status_code < 300, f"HTTP {response.status_code}")

    def _check_command(self, name: str, command: List[str], timeout: float) -> HealthCheckResult:
        result = self.runner.execute(command, timeout=max(timeout, 0.1))
        if result.success:
            return HealthCheckResult(name, True, "exit 0")
        return HealthCheckResult(name, False, f"exit {result.returncode}: {result.output[:200]}")

    def _check_container(self, name: str, container: str, timeout: float) -> HealthCheckResult:
        state = self.runner.container_health(container, timeout=max(timeout, 0.1))
        if state is None:
            return HealthCheckResult(name, False, "Container not found")
        return HealthCheckResult(name, state in _READY_STATES, f"Container {state}")

    def await_healthy(
        self,
        service: ServiceDefinition,
        timeout: float = DEFAULT_HEALTH_TIMEOUT,
        interval: Optional[float] = None,
    ) -> HealthStatus:
        """
        Poll a service until it is healthy or the timeout elapses.

        Returns HEALTHY or TIMED_OUT. If cancelled, returns the status reached
        so far without waiting further.
        """
        interval = self.interval if interval is None else interval
        status = HealthStatus.UNKNOWN
        start = self.clock()
        start_period = service.healthcheck.start_period_seconds if service.healthcheck else 0.0

        while True:
            result = self.probe(service, timeout=interval)
            elapsed = self.clock() - start
            if result.healthy:
                status = advance(status, HealthStatus.HEALTHY)
                break
            status = advance(
                status,
                HealthStatus.STARTING if elapsed < start_period else HealthStatus.UNHEALTHY,
            )
            if elapsed >= timeout:
                status = advance(status, HealthStatus.TIMED_OUT)
                logger.warning(
                    f"{service.name} not healthy after {elapsed:.0f}s: {result.message}"
                )
                break
            if self.cancel_event.wait(min(interval, timeout - elapsed)):
                logger.info(f"Stopped waiting for {service.name}: cancelled")
                break
            logger.debug(f"Waiting for {service.name} ({status.value}): {result.message}")

        with self._lock:
            self._status[service.name] = status
        return status

    def check_all(self, services: Iterable[ServiceDefinition]) -> Dict[str, HealthCheckResult]:
        """Probe every service once, in parallel."""
        services = list(services)
        results: Dict[str, HealthCheckResult] = {}
        if not services:
            return results

        with ThreadPoolExecutor(max_workers=min(10, len(services))) as executor:
            future_to_service = {
                executor.submit(self.probe, svc): svc.name for svc in services
            }
            for future in as_completed(future_to_service):
                results[future_to_service[future]] = future.result()
        return results

    def get_health_report(self, services: Iterable[ServiceDefinition]) -> Dict[str, Any]:
        """Generate a health report for the given services."""
        results = self.check_all(services)
        healthy = sum(1 for r in results.values() if r.healthy)
        return {
            "timestamp": datetime.now().isoformat(),
            "services": {
                name: {
                    "healthy": r.healthy,
                    "message": r.message,
                    "response_time_ms": r.response_time_ms,
                }
                for name, r in sorted(results.items())
            },
            "summary": {
                "total": len(results),
                "healthy": healthy,
                "unhealthy": len(results) - healthy,
            },
        }
