"""
Unit tests for the health prober.
"""
import pytest
import requests

from conftest import ClockEvent, FakeClock, FakeRunner
from stackdeploy import health as health_module
from stackdeploy.config import HealthCheck, ProbeKind, ServiceDefinition
from stackdeploy.health import HealthProber, HealthStatus, advance
from stackdeploy.runner import RunResult


def container_service(name="db", start_period=0.0):
    return ServiceDefinition(
        name=name,
        healthcheck=HealthCheck(ProbeKind.CONTAINER, start_period_seconds=start_period),
    )


def make_prober(runner, interval=2.0):
    clock = FakeClock()
    event = ClockEvent(clock)
    return HealthProber(runner, interval=interval, cancel_event=event, clock=clock), clock, event


class SlowRunner(FakeRunner):
    """Every container probe takes its full time cap on the fake clock."""

    def __init__(self, clock, **kwargs):
        super().__init__(**kwargs)
        self.clock = clock
        self.caps = []

    def container_health(self, container, timeout=30):
        self.caps.append(timeout)
        self.clock.now += timeout
        return super().container_health(container, timeout)


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


class TestAwaitHealthy:
    """Tests for the bounded polling loop."""

    def test_becomes_healthy(self):
        runner = FakeRunner(health={"db": ["starting", "starting", "healthy"]})
        prober, clock, _ = make_prober(runner)
        assert prober.await_healthy(container_service(), timeout=60) == HealthStatus.HEALTHY
        assert clock.now == 4
        assert prober.status("db") == HealthStatus.HEALTHY
        assert prober.last_signal("db") == "Container healthy"

    def test_times_out(self):
        runner = FakeRunner(health={"db": ["unhealthy"]})
        prober, clock, _ = make_prober(runner)
        assert prober.await_healthy(container_service(), timeout=10) == HealthStatus.TIMED_OUT
        assert clock.now >= 10

    @pytest.mark.parametrize("timeout,interval", [(5, 2), (10, 3), (1, 2), (0, 2)])
    def test_never_exceeds_timeout_plus_interval(self, timeout, interval):
        runner = FakeRunner(health={"db": ["starting"]})
        prober, clock, _ = make_prober(runner, interval=interval)
        assert prober.await_healthy(container_service(), timeout=timeout) == HealthStatus.TIMED_OUT
        assert clock.now <= timeout + interval

    @pytest.mark.parametrize("timeout,interval", [(5, 2), (10, 3), (1, 2), (0, 2)])
    def test_bound_holds_when_probes_use_their_whole_cap(self, timeout, interval):
        clock = FakeClock()
        runner = SlowRunner(clock, health={"db": ["starting"]})
        prober = HealthProber(runner, interval=interval, cancel_event=ClockEvent(clock), clock=clock)
        assert prober.await_healthy(container_service(), timeout=timeout) == HealthStatus.TIMED_OUT
        assert all(cap <= interval for cap in runner.caps)
        assert clock.now <= timeout + interval

    def test_resumes_after_timeout(self):
        runner = FakeRunner(health={"db": ["starting", "starting", "starting", "healthy"]})
        prober, _, _ = make_prober(runner)
        assert prober.await_healthy(container_service(), timeout=2) == HealthStatus.TIMED_OUT
        assert prober.await_healthy(container_service(), timeout=2) == HealthStatus.HEALTHY

    def test_cancel_stops_between_polls(self):
        runner = FakeRunner(health={"db": ["starting"]})
        prober, clock, event = make_prober(runner)
        prober.cancel()
        status = prober.await_healthy(container_service(), timeout=60)
        assert status not in (HealthStatus.HEALTHY, HealthStatus.TIMED_OUT)
        assert len(event.waits) == 1
        assert prober.cancelled

    def test_starting_within_start_period(self):
        runner = FakeRunner(health={"db": ["starting"]})
        prober, _, _ = make_prober(runner)
        prober.cancel()
        assert prober.await_healthy(container_service(start_period=30), timeout=60) == HealthStatus.STARTING

    def test_unhealthy_after_start_period(self):
        runner = FakeRunner(health={"db": ["unhealthy"]})
        prober, _, _ = make_prober(runner)
        prober.cancel()
        assert prober.await_healthy(container_service(), timeout=60) == HealthStatus.UNHEALTHY

    def test_missing_container(self):
        runner = FakeRunner()
        runner.container_health = lambda name, timeout=None: None
        prober, _, _ = make_prober(runner)
        assert prober.await_healthy(container_service(), timeout=4) == HealthStatus.TIMED_OUT
        assert prober.last_signal("db") == "Container not found"


class TestProbe:
    """Tests for individual probes."""

    def test_http_2xx_is_healthy(self, monkeypatch):
        monkeypatch.setattr(health_module.requests, "get", lambda url, timeout: FakeResponse(204))
        service = ServiceDefinition("web", healthcheck=HealthCheck(ProbeKind.HTTP, endpoint="http://x/health"))
        result = HealthProber(FakeRunner()).probe(service)
        assert result.healthy is True
        assert result.message == "HTTP 204"
        assert result.response_time_ms is not None

    def test_http_redirect_is_not_healthy(self, monkeypatch):
        monkeypatch.setattr(health_module.requests, "get", lambda url, timeout: FakeResponse(302))
        service = ServiceDefinition("web", healthcheck=HealthCheck(ProbeKind.HTTP, endpoint="http://x/health"))
        assert HealthProber(FakeRunner()).probe(service).healthy is False

    def test_http_connection_refused(self, monkeypatch):
        def refuse(url, timeout):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(health_module.requests, "get", refuse)
        service = ServiceDefinition("web", healthcheck=HealthCheck(ProbeKind.HTTP, endpoint="http://x/health"))
        result = HealthProber(FakeRunner()).probe(service)
        assert result.healthy is False
        assert result.message == "Connection refused"

    def test_command_exit_code(self):
        runner = FakeRunner(exec_results=[RunResult(False, "no response", 2), RunResult(True, "", 0)])
        service = ServiceDefinition(
            "db", healthcheck=HealthCheck(ProbeKind.COMMAND, command=("pg_isready",))
        )
        prober = HealthProber(runner)
        first = prober.probe(service)
        assert first.healthy is False
        assert first.message.startswith("exit 2")
        assert prober.probe(service).healthy is True
        assert runner.executed[0] == ["pg_isready"]

    def test_probe_never_raises(self):
        runner = FakeRunner()

        def explode(name, timeout=None):
            raise RuntimeError("engine gone")

        runner.container_health = explode
        result = HealthProber(runner).probe(container_service())
        assert result.healthy is False
        assert "engine gone" in result.message

    def test_no_healthcheck_counts_as_healthy(self):
        result = HealthProber(FakeRunner()).probe(ServiceDefinition("watchtower"))
        assert result.healthy is True

    def test_health_report(self):
        runner = FakeRunner(health={"db": ["healthy"], "cache": ["unhealthy"]})
        report = HealthProber(runner).get_health_report(
            [container_service("db"), container_service("cache")]
        )
        assert report["summary"] == {"total": 2, "healthy": 1, "unhealthy": 1}
        assert report["services"]["cache"]["healthy"] is False


def test_advance_is_forward_only():
    assert advance(HealthStatus.UNKNOWN, HealthStatus.STARTING) == HealthStatus.STARTING
    assert advance(HealthStatus.UNHEALTHY, HealthStatus.STARTING) == HealthStatus.UNHEALTHY
    assert advance(HealthStatus.STARTING, HealthStatus.HEALTHY) == HealthStatus.HEALTHY
    assert advance(HealthStatus.UNHEALTHY, HealthStatus.TIMED_OUT) == HealthStatus.TIMED_OUT
    assert advance(HealthStatus.TIMED_OUT, HealthStatus.STARTING) == HealthStatus.TIMED_OUT
