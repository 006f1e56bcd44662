"""
Self-Hosted Stack Deployer
==========================

Phased, health-gated deployment of a docker compose based self-hosted stack
(Traefik, Authelia, PostgreSQL, Qdrant, OpenSearch, Memgraph, RabbitMQ,
Prometheus, Grafana, Loki, ntfy, Portainer, FileBrowser, Watchtower, Ollama).

Features:
- Dependency-ordered phases validated at load time
- Health gating on critical services with bounded polling
- Secret generation with owner-only secret store and env file
- Reverse-order teardown with opt-in volume purge
- Atomic self-signed certificate rotation
- Exclusive lock against overlapping deployments

License: MIT
"""

__version__ = "1.0.0"

from .core import StackDeployer
from .config import StackConfig, ServiceGroup, ServiceDefinition, DeploymentPhase
from .health import HealthProber, HealthStatus
from .scheduler import PhaseScheduler, DeploymentReport
from .secret_store import SecretProvider
from .teardown import TeardownController, TeardownReport
from .certs import CertificateRotator

__all__ = [
    "StackDeployer",
    "StackConfig",
    "ServiceGroup",
    "ServiceDefinition",
    "DeploymentPhase",
    "HealthProber",
    "HealthStatus",
    "PhaseScheduler",
    "DeploymentReport",
    "SecretProvider",
    "TeardownController",
    "TeardownReport",
    "CertificateRotator",
]
