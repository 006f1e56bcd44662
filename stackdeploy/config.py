"""
Configuration management for the stack deployer.

Handles:
- Service, group and phase definitions
- Load-time validation of phase ordering
- Deriving phases from group dependencies
- Secret key to environment variable mapping
- Loading and saving the stack definition as YAML
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, Tuple, FrozenSet, Iterable
from enum import Enum
import yaml

from .errors import ConfigError


DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_HEALTH_TIMEOUT = 60.0


class ProbeKind(Enum):
    """How a service reports readiness."""
    HTTP = "http"            # endpoint must answer 2xx
    COMMAND = "command"      # argv must exit 0
    CONTAINER = "container"  # engine healthcheck state must be "healthy"


@dataclass(frozen=True)
class HealthCheck:
    """Declared health signal for a service."""
    kind: ProbeKind
    endpoint: str = ""
    command: Tuple[str, ...] = ()
    timeout_seconds: float = 5.0
    start_period_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.kind.value}
        if self.endpoint:
            result["endpoint"] = self.endpoint
        if self.command:
            result["command"] = list(self.command)
        result["timeout"] = self.timeout_seconds
        if self.start_period_seconds:
            result["start_period"] = self.start_period_seconds
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthCheck":
        try:
            kind = ProbeKind(data.get("type", "http"))
        except ValueError:
            raise ConfigError(f"Unknown health check type: {data.get('type')}")
        check = cls(
            kind=kind,
            endpoint=data.get("endpoint", ""),
            command=tuple(data.get("command", ())),
            timeout_seconds=float(data.get("timeout", 5.0)),
            start_period_seconds=float(data.get("start_period", 0.0)),
        )
        if kind == ProbeKind.HTTP and not check.endpoint:
            raise ConfigError("HTTP health check requires an endpoint")
        if kind == ProbeKind.COMMAND and not check.command:
            raise ConfigError("Command health check requires a command")
        return check


@dataclass(frozen=True)
class ServiceDefinition:
    """A single containerized service inside a group."""
    name: str
    networks: Tuple[str, ...] = ("stack",)
    healthcheck: Optional[HealthCheck] = None
    volumes: Tuple[str, ...] = ()
    url: Optional[str] = None
    critical: bool = False
    container_name: Optional[str] = None

    @property
    def container(self) -> str:
        return self.container_name or self.name

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"networks": list(self.networks)}
        if self.healthcheck:
            result["healthcheck"] = self.healthcheck.to_dict()
        if self.volumes:
            result["volumes"] = list(self.volumes)
        if self.url:
            result["url"] = self.url
        if self.critical:
            result["critical"] = True
        if self.container_name:
            result["container_name"] = self.container_name
        return result

    @classmethod
    def from_dict(cls, name: str, data: Optional[Dict[str, Any]]) -> "ServiceDefinition":
        data = data or {}
        healthcheck = data.get("healthcheck")
        return cls(
            name=name,
            networks=tuple(data.get("networks", ("stack",))),
            healthcheck=HealthCheck.from_dict(healthcheck) if healthcheck else None,
            volumes=tuple(data.get("volumes", ())),
            url=data.get("url"),
            critical=bool(data.get("critical", False)),
            container_name=data.get("container_name"),
        )


@dataclass(frozen=True)
class ServiceGroup:
    """Services sharing a compose file and a lifecycle phase."""
    name: str
    compose_file: str
    services: Tuple[ServiceDefinition, ...] = ()
    depends_on: Tuple[str, ...] = ()

    def service(self, name: str) -> Optional[ServiceDefinition]:
        return next((s for s in self.services if s.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "compose_file": self.compose_file,
            "depends_on": list(self.depends_on),
            "services": {s.name: s.to_dict() for s in self.services},
        }

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "ServiceGroup":
        services = data.get("services") or {}
        return cls(
            name=name,
            compose_file=data.get("compose_file", f"{name}/docker-compose.yml"),
            services=tuple(
                ServiceDefinition.from_dict(svc_name, svc)
                for svc_name, svc in services.items()
            ),
            depends_on=tuple(data.get("depends_on", ())),
        )


@dataclass(frozen=True)
class DeploymentPhase:
    """Ordered deployment step; its critical services gate the next phase."""
    name: str
    groups: Tuple[ServiceGroup, ...]
    critical: FrozenSet[str] = frozenset()

    @property
    def services(self) -> List[ServiceDefinition]:
        return [svc for group in self.groups for svc in group.services]

    def is_critical(self, service_name: str) -> bool:
        return service_name in self.critical

    def group_of(self, service_name: str) -> Optional[ServiceGroup]:
        return next((g for g in self.groups if g.service(service_name)), None)


def derive_phases(groups: Iterable[ServiceGroup]) -> List[DeploymentPhase]:
    """
    Layer groups into phases so each group runs after all of its dependencies.

    Groups with no unmet dependencies form the next phase, in declaration
    order. A phase's critical set is every service flagged ``critical``.
    """
    remaining = {g.name: g for g in groups}
    for g in remaining.values():
        for dep in g.depends_on:
            if dep not in remaining:
                raise ConfigError(f"Group '{g.name}' depends on unknown group '{dep}'")
    placed: set = set()
    phases = []
    while remaining:
        ready = [g for g in remaining.values() if set(g.depends_on) <= placed]
        if not ready:
            cycle = _find_cycle(remaining)
            raise ConfigError(f"Dependency cycle between groups: {' -> '.join(cycle)}")
        for g in ready:
            del remaining[g.name]
        placed.update(g.name for g in ready)
        phases.append(DeploymentPhase(
            name=f"phase-{len(phases) + 1}",
            groups=tuple(ready),
            critical=frozenset(s.name for g in ready for s in g.services if s.critical),
        ))
    return phases


def _find_cycle(groups: Dict[str, ServiceGroup]) -> List[str]:
    visiting: List[str] = []
    done: set = set()

    def visit(name: str) -> Optional[List[str]]:
        if name in visiting:
            return visiting[visiting.index(name):] + [name]
        if name in done or name not in groups:
            return None
        visiting.append(name)
        for dep in groups[name].depends_on:
            found = visit(dep)
            if found:
                return found
        visiting.pop()
        done.add(name)
        return None

    for name in groups:
        found = visit(name)
        if found:
            return found
    return sorted(groups)


def validate_phases(phases: List[DeploymentPhase]):
    """
    Enforce the ordering invariants; raises ConfigError on the first violation.

    Every group appears once, every dependency is a known group scheduled in
    a strictly earlier phase, and every critical service exists in its phase
    and declares a health check.
    """
    known = {g.name for phase in phases for g in phase.groups}
    scheduled: set = set()
    seen_services: Dict[str, str] = {}
    for phase in phases:
        if not phase.groups:
            raise ConfigError(f"Phase '{phase.name}' has no groups")
        for group in phase.groups:
            if group.name in scheduled:
                raise ConfigError(f"Group '{group.name}' is scheduled more than once")
            for dep in group.depends_on:
                if dep not in known:
                    raise ConfigError(f"Group '{group.name}' depends on unknown group '{dep}'")
                if dep not in scheduled:
                    raise ConfigError(
                        f"Group '{group.name}' in phase '{phase.name}' depends on "
                        f"'{dep}', which is not scheduled in an earlier phase"
                    )
            for svc in group.services:
                if svc.name in seen_services:
                    raise ConfigError(
                        f"Service '{svc.name}' defined in both '{seen_services[svc.name]}' "
                        f"and '{group.name}'"
                    )
                seen_services[svc.name] = group.name
        for name in phase.critical:
            svc = next((s for s in phase.services if s.name == name), None)
            if svc is None:
                raise ConfigError(f"Critical service '{name}' is not part of phase '{phase.name}'")
            if svc.healthcheck is None:
                raise ConfigError(f"Critical service '{name}' declares no health check")
        scheduled.update(g.name for g in phase.groups)


def is_secret_key(key: str) -> bool:
    """True for "service.credential" keys with both parts non-empty."""
    service, sep, name = key.partition(".")
    return bool(sep and service and name)


def env_name_for(key: str) -> str:
    """Default env var name for a dotted secret key: postgres.password -> POSTGRES_PASSWORD."""
    return key.replace(".", "_").replace("-", "_").upper()


def _default_base_dir() -> Path:
    return Path(os.environ.get("STACK_BASE_DIR", str(Path.home() / "selfhosted-stack")))


@dataclass
class StackConfig:
    """Main configuration for the whole stack."""

    project_name: str = "selfhosted"
    domain: str = "localhost"
    base_dir: Path = field(default_factory=_default_base_dir)

    phases: List[DeploymentPhase] = field(default_factory=list)

    # secret key ("service.credential") -> exported env var name
    secrets: Dict[str, str] = field(default_factory=dict)

    # Ollama models ensured after deploy
    ollama_url: str = "http://localhost:11434"
    models: List[str] = field(default_factory=lambda: ["granite-embedding:278m"])

    health_timeout_seconds: float = DEFAULT_HEALTH_TIMEOUT
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL
    cert_renew_before_days: int = 30
    cert_validity_days: int = 365

    def __post_init__(self):
        self.base_dir = Path(self.base_dir)
        if not self.phases:
            self.phases = derive_phases(default_groups())
        if not self.secrets:
            self.secrets = dict(DEFAULT_SECRETS)
        for key in self.secrets:
            if not is_secret_key(key):
                raise ConfigError(f"Secret key must look like service.credential, got {key!r}")
        validate_phases(self.phases)

    @property
    def secrets_file(self) -> Path:
        return self.base_dir / "secrets" / "secrets.yaml"

    @property
    def env_file(self) -> Path:
        return self.base_dir / ".env"

    @property
    def certs_dir(self) -> Path:
        return self.base_dir / "certs"

    @property
    def lock_file(self) -> Path:
        return self.base_dir / ".stackdeploy.lock"

    @property
    def groups(self) -> List[ServiceGroup]:
        return [g for phase in self.phases for g in phase.groups]

    def group(self, name: str) -> Optional[ServiceGroup]:
        return next((g for g in self.groups if g.name == name), None)

    def compose_path(self, group: ServiceGroup) -> Path:
        path = Path(group.compose_file)
        return path if path.is_absolute() else self.base_dir / path

    def project_for(self, group: ServiceGroup) -> str:
        """Compose project name; each group runs as its own project."""
        return f"{self.project_name}-{group.name}"

    def volume_names(self, phases: Optional[List[DeploymentPhase]] = None) -> List[str]:
        """Engine-level names of every named volume bound by a configured service."""
        names = []
        for phase in phases if phases is not None else self.phases:
            for group in phase.groups:
                for svc in group.services:
                    for vol in svc.volumes:
                        name = f"{self.project_for(group)}_{vol}"
                        if name not in names:
                            names.append(name)
        return names

    def env_name(self, key: str) -> str:
        return self.secrets.get(key) or env_name_for(key)

    def validate(self) -> List[str]:
        """Return non-fatal configuration warnings."""
        issues = []
        for phase in self.phases:
            if not phase.critical:
                issues.append(f"Phase '{phase.name}' has no critical services; it never blocks")
            for svc in phase.services:
                if svc.healthcheck is None:
                    issues.append(f"Service {svc.name} has no health check")
        env_names = list(self.secrets.values())
        for name in set(env_names):
            if env_names.count(name) > 1:
                issues.append(f"Env variable {name} is mapped from more than one secret")
        return issues

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "project_name": self.project_name,
            "domain": self.domain,
            "base_dir": str(self.base_dir),
            "ollama_url": self.ollama_url,
            "models": list(self.models),
            "health_timeout_seconds": self.health_timeout_seconds,
            "poll_interval_seconds": self.poll_interval_seconds,
            "cert_renew_before_days": self.cert_renew_before_days,
            "cert_validity_days": self.cert_validity_days,
            "secrets": dict(self.secrets),
            "groups": {g.name: g.to_dict() for g in self.groups},
            "phases": [
                {
                    "name": phase.name,
                    "groups": [g.name for g in phase.groups],
                    "critical": sorted(phase.critical),
                }
                for phase in self.phases
            ],
        }

    def save(self, path: Optional[Path] = None):
        """Save configuration to YAML file."""
        if path is None:
            path = self.base_dir / "stack.yaml"
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls, path: Path) -> "StackConfig":
        """Load and validate configuration from a YAML file."""
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"Cannot read stack file {path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in stack file {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Stack file {path} must contain a mapping")

        groups = {
            name: ServiceGroup.from_dict(name, body or {})
            for name, body in (data.get("groups") or {}).items()
        }
        if not groups:
            raise ConfigError(f"Stack file {path} defines no groups")

        if data.get("phases"):
            phases = []
            for i, entry in enumerate(data["phases"], start=1):
                try:
                    members = tuple(groups[name] for name in entry.get("groups", ()))
                except KeyError as e:
                    raise ConfigError(f"Phase {i} references unknown group {e}")
                flagged = {s.name for g in members for s in g.services if s.critical}
                declared = entry.get("critical") or ()
                if isinstance(declared, str):
                    declared = [declared]
                phases.append(DeploymentPhase(
                    name=entry.get("name", f"phase-{i}"),
                    groups=members,
                    critical=frozenset(declared) | flagged,
                ))
            unscheduled = set(groups) - {g.name for p in phases for g in p.groups}
            if unscheduled:
                raise ConfigError(f"Groups not scheduled in any phase: {', '.join(sorted(unscheduled))}")
        else:
            phases = derive_phases(groups.values())

        base_dir = data.get("base_dir")
        return cls(
            project_name=data.get("project_name", "selfhosted"),
            domain=data.get("domain", "localhost"),
            base_dir=Path(base_dir) if base_dir else Path(path).resolve().parent,
            phases=phases,
            secrets=dict(data.get("secrets") or DEFAULT_SECRETS),
            ollama_url=data.get("ollama_url", "http://localhost:11434"),
            models=list(data.get("models", ["granite-embedding:278m"])),
            health_timeout_seconds=float(data.get("health_timeout_seconds", DEFAULT_HEALTH_TIMEOUT)),
            poll_interval_seconds=float(data.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL)),
            cert_renew_before_days=int(data.get("cert_renew_before_days", 30)),
            cert_validity_days=int(data.get("cert_validity_days", 365)),
        )


DEFAULT_SECRETS: Dict[str, str] = {
    "postgres.postgres_password": "POSTGRES_PASSWORD",
    "authelia.jwt_secret": "AUTHELIA_JWT_SECRET",
    "authelia.session_secret": "AUTHELIA_SESSION_SECRET",
    "authelia.storage_encryption_key": "AUTHELIA_STORAGE_ENCRYPTION_KEY",
    "qdrant.api_key": "QDRANT__SERVICE__API_KEY",
    "opensearch.admin_password": "OPENSEARCH_INITIAL_ADMIN_PASSWORD",
    "memgraph.password": "MEMGRAPH_PASSWORD",
    "rabbitmq.default_pass": "RABBITMQ_DEFAULT_PASS",
    "rabbitmq.erlang_cookie": "RABBITMQ_ERLANG_COOKIE",
    "grafana.admin_password": "GF_SECURITY_ADMIN_PASSWORD",
}


def _http(endpoint: str, start_period: float = 0.0) -> HealthCheck:
    return HealthCheck(ProbeKind.HTTP, endpoint=endpoint, start_period_seconds=start_period)


def _exec(container: str, *argv: str, start_period: float = 0.0) -> HealthCheck:
    return HealthCheck(
        ProbeKind.COMMAND,
        command=("docker", "exec", container) + argv,
        start_period_seconds=start_period,
    )


def default_groups() -> List[ServiceGroup]:
    """Built-in stack: proxy, storage, messaging, inference, observability, management."""
    container = HealthCheck(ProbeKind.CONTAINER)
    return [
        # === EDGE - reverse proxy and SSO ===
        ServiceGroup(
            name="proxy",
            compose_file="proxy/docker-compose.yml",
            services=(
                ServiceDefinition(
                    name="traefik",
                    networks=("proxy",),
                    healthcheck=_http("http://localhost:8082/ping"),
                    url="https://traefik.{domain}",
                    critical=True,
                ),
                ServiceDefinition(
                    name="authelia",
                    networks=("proxy",),
                    healthcheck=container,
                    volumes=("authelia-data",),
                    url="https://auth.{domain}",
                ),
            ),
        ),
        # === STORAGE - relational, vector, search, graph ===
        ServiceGroup(
            name="storage",
            compose_file="storage/docker-compose.yml",
            depends_on=("proxy",),
            services=(
                ServiceDefinition(
                    name="postgres",
                    networks=("backend",),
                    healthcheck=_exec("postgres", "pg_isready", "-U", "postgres", start_period=10),
                    volumes=("postgres-data",),
                    critical=True,
                ),
                ServiceDefinition(
                    name="qdrant",
                    networks=("backend",),
                    healthcheck=_http("http://localhost:6333/readyz"),
                    volumes=("qdrant-data",),
                ),
                ServiceDefinition(
                    name="opensearch",
                    networks=("backend",),
                    healthcheck=_http("http://localhost:9200/_cluster/health", start_period=30),
                    volumes=("opensearch-data",),
                ),
                ServiceDefinition(
                    name="memgraph",
                    networks=("backend",),
                    healthcheck=container,
                    volumes=("memgraph-data",),
                ),
            ),
        ),
        # === MESSAGING - broker and push notifications ===
        ServiceGroup(
            name="messaging",
            compose_file="messaging/docker-compose.yml",
            depends_on=("storage",),
            services=(
                ServiceDefinition(
                    name="rabbitmq",
                    networks=("backend",),
                    healthcheck=_exec("rabbitmq", "rabbitmq-diagnostics", "-q", "ping", start_period=15),
                    volumes=("rabbitmq-data",),
                    url="https://rabbitmq.{domain}",
                    critical=True,
                ),
                ServiceDefinition(
                    name="ntfy",
                    networks=("proxy", "backend"),
                    healthcheck=_http("http://localhost:8090/v1/health"),
                    volumes=("ntfy-cache",),
                    url="https://ntfy.{domain}",
                ),
            ),
        ),
        # === INFERENCE - local models ===
        ServiceGroup(
            name="inference",
            compose_file="inference/docker-compose.yml",
            depends_on=("storage",),
            services=(
                ServiceDefinition(
                    name="ollama",
                    networks=("backend",),
                    healthcheck=_http("http://localhost:11434/api/tags", start_period=20),
                    volumes=("ollama-models",),
                ),
            ),
        ),
        # === OBSERVABILITY - metrics, logs, dashboards ===
        ServiceGroup(
            name="observability",
            compose_file="observability/docker-compose.yml",
            depends_on=("messaging", "inference"),
            services=(
                ServiceDefinition(
                    name="prometheus",
                    networks=("backend",),
                    healthcheck=_http("http://localhost:9090/-/ready"),
                    volumes=("prometheus-data",),
                ),
                ServiceDefinition(
                    name="loki",
                    networks=("backend",),
                    healthcheck=_http("http://localhost:3100/ready", start_period=15),
                    volumes=("loki-data",),
                ),
                ServiceDefinition(
                    name="grafana",
                    networks=("proxy", "backend"),
                    healthcheck=_http("http://localhost:3000/api/health"),
                    volumes=("grafana-data",),
                    url="https://grafana.{domain}",
                ),
            ),
        ),
        # === MANAGEMENT - container admin and file access ===
        ServiceGroup(
            name="management",
            compose_file="management/docker-compose.yml",
            depends_on=("observability",),
            services=(
                ServiceDefinition(
                    name="portainer",
                    networks=("proxy",),
                    healthcheck=container,
                    volumes=("portainer-data",),
                    url="https://portainer.{domain}",
                ),
                ServiceDefinition(
                    name="filebrowser",
                    networks=("proxy",),
                    healthcheck=container,
                    volumes=("filebrowser-data",),
                    url="https://files.{domain}",
                ),
                ServiceDefinition(name="watchtower", networks=("backend",)),
            ),
        ),
    ]
