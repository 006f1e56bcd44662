"""
Shared fixtures and fakes for the stack deployer tests.
"""
import threading

import pytest

from stackdeploy.config import (
    DeploymentPhase,
    HealthCheck,
    ProbeKind,
    ServiceDefinition,
    ServiceGroup,
    StackConfig,
)
from stackdeploy.health import HealthStatus
from stackdeploy.runner import Operation, RunResult


class FakeRunner:
    """Records engine calls in a shared event list and tracks running groups."""

    def __init__(self, events=None, fail=(), volumes=(), health=None, exec_results=None):
        self.events = events if events is not None else []
        self.fail = set(fail)
        self.volumes = list(volumes)
        self.removed = []
        self.running = set()
        self.health = {k: list(v) for k, v in (health or {}).items()}
        self.exec_results = list(exec_results or [])
        self.executed = []
        self._lock = threading.Lock()

    def run(self, group, operation):
        with self._lock:
            self.events.append((operation.value, group.name))
        if (operation.value, group.name) in self.fail:
            return RunResult(False, f"{operation.value} {group.name} failed", 1)
        if operation == Operation.UP:
            self.running.add(group.name)
        elif operation == Operation.DOWN:
            self.running.discard(group.name)
        return RunResult(True, "", 0)

    def list_volumes(self):
        return list(self.volumes)

    def remove_volume(self, name):
        self.removed.append(name)
        self.volumes.remove(name)
        return RunResult(True, "", 0)

    def container_health(self, container, timeout=30):
        states = self.health.get(container)
        if not states:
            return "running"
        return states.pop(0) if len(states) > 1 else states[0]

    def execute(self, argv, timeout):
        self.executed.append(list(argv))
        if not self.exec_results:
            return RunResult(True, "", 0)
        return self.exec_results.pop(0) if len(self.exec_results) > 1 else self.exec_results[0]


class FakeProber:
    """Returns canned statuses and records when each probe resolved."""

    def __init__(self, events=None, outcomes=None):
        self.events = events if events is not None else []
        self.outcomes = outcomes or {}
        self.cancel_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def cancelled(self):
        return self.cancel_event.is_set()

    def await_healthy(self, service, timeout=60, interval=None):
        status = self.outcomes.get(service.name, HealthStatus.HEALTHY)
        with self._lock:
            self.events.append(("probed", service.name))
        return status

    def last_signal(self, name):
        if self.outcomes.get(name, HealthStatus.HEALTHY) == HealthStatus.HEALTHY:
            return "HTTP 200"
        return "HTTP 503"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class ClockEvent(threading.Event):
    """Event whose wait advances a fake clock instead of sleeping."""

    def __init__(self, clock):
        super().__init__()
        self.clock = clock
        self.waits = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        self.clock.now += timeout or 0
        return self.is_set()


def svc(name, critical=False, volumes=(), check=True):
    healthcheck = HealthCheck(ProbeKind.HTTP, endpoint=f"http://localhost/{name}") if check else None
    return ServiceDefinition(name=name, healthcheck=healthcheck, volumes=tuple(volumes), critical=critical)


def group(name, *services, depends_on=()):
    return ServiceGroup(
        name=name,
        compose_file=f"{name}/docker-compose.yml",
        services=tuple(services),
        depends_on=tuple(depends_on),
    )


def phase(name, *groups, critical=()):
    return DeploymentPhase(name=name, groups=tuple(groups), critical=frozenset(critical))


@pytest.fixture
def events():
    return []


@pytest.fixture
def config(tmp_path):
    return StackConfig(base_dir=tmp_path)


@pytest.fixture
def abc_phases():
    """[A], [B depends on A], [C depends on B]; a-db is critical."""
    a = group("A", svc("a-db", critical=True), svc("a-web"))
    b = group("B", svc("b-app"), depends_on=("A",))
    c = group("C", svc("c-app"), depends_on=("B",))
    return [
        phase("pA", a, critical=("a-db",)),
        phase("pB", b),
        phase("pC", c),
    ]
