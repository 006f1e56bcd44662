"""
Core deployment functionality for the stack.

Wires the secret provider, process runner, health prober, phase scheduler
and teardown controller together behind one object used by the CLI.
"""

import threading
import logging
from dataclasses import dataclass
from typing import Optional, Dict, List, Callable

from .config import StackConfig, ServiceDefinition
from .certs import CertificateRotator, RotationResult
from .errors import ConfigError
from .health import HealthProber
from .lock import DeploymentLock
from .models import ModelManager, ModelPullProgress
from .runner import ProcessRunner, Operation, RunResult
from .scheduler import PhaseScheduler, DeploymentReport
from .secret_store import SecretProvider, split_key
from .teardown import TeardownController, TeardownReport

logger = logging.getLogger(__name__)


@dataclass
class AccessPoint:
    """A user-facing URL reported after a successful deployment."""
    service: str
    url: str


class StackDeployer:
    """
    Main deployment orchestrator for the stack.

    Handles the complete lifecycle:
    - Secret provisioning
    - Phased, health-gated deployment
    - Reverse-order teardown with optional volume purge
    - Certificate rotation
    - Status and health reporting
    """

    def __init__(
        self,
        config: Optional[StackConfig] = None,
        runner: Optional[ProcessRunner] = None,
        prober: Optional[HealthProber] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config or StackConfig()
        self.runner = runner or ProcessRunner(self.config)
        self.prober = prober or HealthProber(
            self.runner,
            interval=self.config.poll_interval_seconds,
            cancel_event=cancel_event,
        )
        self.secrets = SecretProvider.from_config(self.config)

    @property
    def services(self) -> List[ServiceDefinition]:
        return [svc for phase in self.config.phases for svc in phase.services]

    def init_secrets(self, regenerate: Optional[List[str]] = None) -> Dict[str, str]:
        """Create missing credentials and refresh the env file."""
        regenerate = regenerate or []
        for key in regenerate:
            split_key(key)
        self.secrets.initialize()
        for key in regenerate:
            self.secrets.regenerate(key)
        values = self.secrets.provision()
        logger.info(f"Resolved {len(values)} secrets")
        return values

    def deploy(self, progress_callback: Optional[Callable[[str], None]] = None) -> DeploymentReport:
        """
        Deploy the whole stack under the deployment lock.

        Raises DeploymentInProgress, StoreUnavailable, WriteError, PhaseFailed
        or DeploymentCancelled.
        """
        with DeploymentLock(self.config.lock_file):
            self.init_secrets()
            scheduler = PhaseScheduler(
                self.runner,
                self.prober,
                timeout=self.config.health_timeout_seconds,
                interval=self.config.poll_interval_seconds,
                progress_callback=progress_callback,
            )
            return scheduler.run(self.config.phases)

    def teardown(self, purge_volumes: bool = False) -> TeardownReport:
        """Stop everything in reverse order; purge only when explicitly asked."""
        with DeploymentLock(self.config.lock_file):
            controller = TeardownController(self.config, self.runner)
            return controller.run(self.config.phases, purge_volumes=purge_volumes)

    def restart(self, group_name: str) -> RunResult:
        group = self.config.group(group_name)
        if group is None:
            raise ConfigError(f"Unknown group: {group_name}")
        with DeploymentLock(self.config.lock_file):
            return self.runner.run(group, Operation.RESTART)

    def rotate_certs(self, force: bool = False) -> RotationResult:
        return CertificateRotator.from_config(self.config).rotate(force=force)

    def ensure_models(
        self,
        progress_callback: Optional[Callable[[ModelPullProgress], None]] = None,
    ) -> Dict[str, bool]:
        return ModelManager(self.config).ensure_models(progress_callback=progress_callback)

    def access_points(self) -> List[AccessPoint]:
        """URLs of every service that declares one, in deployment order."""
        return [
            AccessPoint(svc.name, svc.url.format(domain=self.config.domain))
            for svc in self.services
            if svc.url
        ]

    def status(self) -> Dict[str, Optional[str]]:
        """Engine state of every service container (None if absent)."""
        return {svc.name: self.runner.container_health(svc.container) for svc in self.services}

    def health_report(self) -> Dict:
        return self.prober.get_health_report(
            svc for svc in self.services if svc.healthcheck is not None
        )
