"""
Phase scheduler: brings the stack up one phase at a time.

Phases run strictly in order. Inside a phase every group is started
concurrently, then every service with a health check is polled concurrently
and the phase waits for all of them. A critical service that never becomes
healthy stops the deployment; anything else is a warning. Nothing already
started is rolled back.
"""

import time
import logging
from typing import Optional, Dict, List, Any, Callable, Tuple
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor

from .config import DeploymentPhase, ServiceGroup, ServiceDefinition, DEFAULT_HEALTH_TIMEOUT
from .errors import PhaseFailed, DeploymentCancelled
from .health import HealthProber, HealthStatus
from .runner import ProcessRunner, Operation, RunResult

logger = logging.getLogger(__name__)


@dataclass
class ServiceOutcome:
    """Health verdict for one service in a phase."""
    name: str
    status: HealthStatus
    critical: bool = False
    signal: str = ""


@dataclass
class PhaseOutcome:
    """What happened in a single phase."""
    phase: str
    groups_started: List[str] = field(default_factory=list)
    groups_failed: Dict[str, str] = field(default_factory=dict)
    services: Dict[str, ServiceOutcome] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "completed": self.completed,
            "groups_started": self.groups_started,
            "groups_failed": self.groups_failed,
            "services": {
                name: {
                    "status": o.status.value,
                    "critical": o.critical,
                    "signal": o.signal,
                }
                for name, o in self.services.items()
            },
            "warnings": self.warnings,
        }


@dataclass
class DeploymentReport:
    """Result of a scheduler run."""
    phases: List[PhaseOutcome] = field(default_factory=list)
    success: bool = False
    failed_phase: Optional[str] = None
    failed_service: Optional[str] = None
    failed_signal: str = ""
    duration_seconds: float = 0.0

    @property
    def warnings(self) -> List[str]:
        return [w for outcome in self.phases for w in outcome.warnings]

    @property
    def groups_started(self) -> List[str]:
        return [g for outcome in self.phases for g in outcome.groups_started]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "failed_phase": self.failed_phase,
            "failed_service": self.failed_service,
            "failed_signal": self.failed_signal,
            "duration_seconds": round(self.duration_seconds, 2),
            "phases": [outcome.to_dict() for outcome in self.phases],
        }


class PhaseScheduler:
    """
    Drives the process runner phase by phase, gated by the health prober.

    Safe to re-run against a partially deployed stack: starting a running
    group is a no-op for the engine.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        prober: HealthProber,
        timeout: float = DEFAULT_HEALTH_TIMEOUT,
        interval: Optional[float] = None,
        max_workers: int = 8,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.runner = runner
        self.prober = prober
        self.timeout = timeout
        self.interval = interval
        self.max_workers = max_workers
        self.progress_callback = progress_callback

    def _progress(self, msg: str):
        logger.info(msg)
        if self.progress_callback:
            self.progress_callback(msg)

    def run(self, phases: List[DeploymentPhase]) -> DeploymentReport:
        """
        Deploy every phase in order.

        Raises PhaseFailed (carrying the partial report) when a critical
        service fails, and DeploymentCancelled if the prober is cancelled.
        """
        report = DeploymentReport()
        start_time = time.time()
        try:
            for phase in phases:
                self._run_phase(phase, report)
            report.success = True
        finally:
            report.duration_seconds = time.time() - start_time
        return report

    def _fail(self, report: DeploymentReport, phase: DeploymentPhase, service: str, signal: str):
        report.failed_phase = phase.name
        report.failed_service = service
        report.failed_signal = signal
        logger.error(f"Phase {phase.name} failed: critical service {service} ({signal})")
        raise PhaseFailed(phase.name, service, signal, report)

    def _check_cancelled(self, report: DeploymentReport, phase: DeploymentPhase):
        if self.prober.cancelled:
            report.failed_phase = phase.name
            raise DeploymentCancelled(phase.name, report)

    def _run_phase(self, phase: DeploymentPhase, report: DeploymentReport):
        outcome = PhaseOutcome(phase=phase.name)
        report.phases.append(outcome)
        self._check_cancelled(report, phase)

        self._progress(f"Phase {phase.name}: starting {', '.join(g.name for g in phase.groups)}")
        results = self._start_groups(phase.groups)

        started = set()
        for group in phase.groups:
            result = results[group.name]
            if result.success:
                outcome.groups_started.append(group.name)
                started.add(group.name)
                continue
            outcome.groups_failed[group.name] = result.output
            critical = [s.name for s in group.services if phase.is_critical(s.name)]
            if critical:
                signal = f"group {group.name} failed to start: {result.output[-200:]}"
                for name in critical:
                    outcome.services[name] = ServiceOutcome(name, HealthStatus.UNKNOWN, True, signal)
                self._fail(report, phase, critical[0], signal)
            outcome.warnings.append(f"Group {group.name} failed to start: {result.output[-200:]}")

        to_probe = [
            svc for svc in phase.services
            if svc.healthcheck is not None and phase.group_of(svc.name).name in started
        ]
        if to_probe:
            self._progress(
                f"Phase {phase.name}: waiting for {', '.join(s.name for s in to_probe)}"
            )
        statuses = self._await_all(to_probe)
        self._check_cancelled(report, phase)

        failed_critical = None
        for svc in to_probe:
            status = statuses[svc.name]
            critical = phase.is_critical(svc.name)
            signal = self.prober.last_signal(svc.name)
            outcome.services[svc.name] = ServiceOutcome(svc.name, status, critical, signal)
            if status == HealthStatus.HEALTHY:
                continue
            if critical:
                failed_critical = failed_critical or svc.name
            else:
                outcome.warnings.append(f"{svc.name} is {status.value}: {signal}")
                logger.warning(f"{svc.name} did not become healthy ({signal}); continuing")

        if failed_critical:
            self._fail(report, phase, failed_critical, outcome.services[failed_critical].signal)

        outcome.completed = True
        self._progress(f"Phase {phase.name}: complete")

    def _start_groups(self, groups: Tuple[ServiceGroup, ...]) -> Dict[str, RunResult]:
        """Start every group of a phase; no ordering between them."""
        if len(groups) == 1:
            return {groups[0].name: self.runner.run(groups[0], Operation.UP)}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(groups))) as executor:
            futures = {
                group.name: executor.submit(self.runner.run, group, Operation.UP)
                for group in groups
            }
            return {name: future.result() for name, future in futures.items()}

    def _await_all(self, services: List[ServiceDefinition]) -> Dict[str, HealthStatus]:
        """Poll all services concurrently and wait for every verdict."""
        if not services:
            return {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(services))) as executor:
            futures = {
                svc.name: executor.submit(
                    self.prober.await_healthy, svc, self.timeout, self.interval
                )
                for svc in services
            }
            return {name: future.result() for name, future in futures.items()}
