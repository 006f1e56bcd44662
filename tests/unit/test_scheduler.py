"""
Unit tests for the phase scheduler.
"""
import pytest

from conftest import ClockEvent, FakeClock, FakeProber, FakeRunner, group, phase, svc
from stackdeploy import health as health_module
from stackdeploy.errors import DeploymentCancelled, PhaseFailed
from stackdeploy.health import HealthProber, HealthStatus
from stackdeploy.scheduler import PhaseScheduler


class ServiceUnavailable:
    status_code = 503


class CancelOnFirstWait(ClockEvent):
    """Behaves as if Ctrl-C arrived while the first health wait was sleeping."""

    def wait(self, timeout=None):
        self.set()
        return super().wait(timeout)


def make_scheduler(events, outcomes=None, fail=()):
    runner = FakeRunner(events=events, fail=fail)
    prober = FakeProber(events=events, outcomes=outcomes)
    return PhaseScheduler(runner, prober, timeout=1, interval=0.1), runner, prober


class TestPhaseScheduler:
    """Tests for PhaseScheduler."""

    def test_all_healthy(self, events, abc_phases):
        scheduler, runner, _ = make_scheduler(events)
        report = scheduler.run(abc_phases)
        assert report.success is True
        assert report.groups_started == ["A", "B", "C"]
        assert all(outcome.completed for outcome in report.phases)
        assert report.phases[0].services["a-db"].status == HealthStatus.HEALTHY
        assert report.phases[0].services["a-db"].critical is True

    def test_next_phase_waits_for_probes(self, events, abc_phases):
        scheduler, _, _ = make_scheduler(events)
        scheduler.run(abc_phases)

        position = {event: i for i, event in enumerate(events)}
        assert position[("up", "B")] > position[("probed", "a-db")]
        assert position[("up", "B")] > position[("probed", "a-web")]
        assert position[("up", "C")] > position[("probed", "b-app")]

    def test_critical_timeout_aborts_remaining_phases(self, events, abc_phases):
        scheduler, runner, _ = make_scheduler(events, outcomes={"a-db": HealthStatus.TIMED_OUT})

        with pytest.raises(PhaseFailed) as exc_info:
            scheduler.run(abc_phases)

        err = exc_info.value
        assert err.service == "a-db"
        assert err.phase == "pA"
        assert err.last_signal == "HTTP 503"
        assert ("up", "B") not in events
        assert ("up", "C") not in events
        # no rollback
        assert runner.running == {"A"}
        assert err.report.success is False
        assert err.report.failed_service == "a-db"
        assert len(err.report.phases) == 1

    def test_non_critical_timeout_warns_and_continues(self, events, abc_phases):
        scheduler, _, _ = make_scheduler(events, outcomes={"a-web": HealthStatus.TIMED_OUT})
        report = scheduler.run(abc_phases)
        assert report.success is True
        assert report.groups_started == ["A", "B", "C"]
        assert any("a-web" in w for w in report.warnings)
        assert report.phases[0].services["a-web"].status == HealthStatus.TIMED_OUT

    def test_all_probes_resolve_before_failure(self, events):
        # both critical services are probed even though the first one fails
        g = group("A", svc("db1", critical=True), svc("db2", critical=True))
        scheduler, _, _ = make_scheduler(events, outcomes={"db1": HealthStatus.TIMED_OUT})
        with pytest.raises(PhaseFailed):
            scheduler.run([phase("p1", g, critical=("db1", "db2"))])
        assert ("probed", "db1") in events
        assert ("probed", "db2") in events

    def test_critical_group_start_failure(self, events, abc_phases):
        scheduler, _, _ = make_scheduler(events, fail={("up", "A")})
        with pytest.raises(PhaseFailed) as exc_info:
            scheduler.run(abc_phases)
        assert exc_info.value.service == "a-db"
        assert "failed to start" in exc_info.value.last_signal
        assert not any(e[0] == "probed" for e in events)

    def test_non_critical_group_start_failure(self, events):
        core = group("core", svc("db", critical=True))
        extra = group("extra", svc("dashboard"))
        scheduler, _, _ = make_scheduler(events, fail={("up", "extra")})
        report = scheduler.run([phase("p1", core, extra, critical=("db",))])
        assert report.success is True
        assert report.phases[0].groups_failed == {"extra": "up extra failed"}
        assert ("probed", "dashboard") not in events
        assert any("extra" in w for w in report.warnings)

    def test_groups_in_phase_all_started(self, events):
        p = phase("p1", group("x", svc("x1")), group("y", svc("y1")), group("z", svc("z1")))
        scheduler, runner, _ = make_scheduler(events)
        scheduler.run([p])
        assert runner.running == {"x", "y", "z"}

    def test_services_without_healthcheck_not_probed(self, events):
        p = phase("p1", group("x", svc("x1", check=False)))
        scheduler, _, _ = make_scheduler(events)
        report = scheduler.run([p])
        assert report.success is True
        assert not any(e[0] == "probed" for e in events)

    def test_rerun_is_safe(self, events, abc_phases):
        scheduler, runner, _ = make_scheduler(events)
        scheduler.run(abc_phases)
        report = scheduler.run(abc_phases)
        assert report.success is True
        assert runner.running == {"A", "B", "C"}

    def test_cancelled_before_start(self, events, abc_phases):
        scheduler, _, prober = make_scheduler(events)
        prober.cancel_event.set()
        with pytest.raises(DeploymentCancelled) as exc_info:
            scheduler.run(abc_phases)
        assert exc_info.value.phase == "pA"
        assert events == []

    def test_progress_callback(self, events, abc_phases):
        messages = []
        scheduler, _, _ = make_scheduler(events)
        scheduler.progress_callback = messages.append
        scheduler.run(abc_phases)
        assert any("pA" in m and "complete" in m for m in messages)

    def test_report_to_dict(self, events, abc_phases):
        scheduler, _, _ = make_scheduler(events, outcomes={"a-web": HealthStatus.TIMED_OUT})
        data = scheduler.run(abc_phases).to_dict()
        assert data["success"] is True
        assert data["phases"][0]["services"]["a-web"]["status"] == "timed_out"

    def test_cancel_during_health_wait(self, events, abc_phases, monkeypatch):
        monkeypatch.setattr(health_module.requests, "get", lambda url, timeout: ServiceUnavailable())
        clock = FakeClock()
        runner = FakeRunner(events=events)
        prober = HealthProber(runner, interval=2, cancel_event=CancelOnFirstWait(clock), clock=clock)
        scheduler = PhaseScheduler(runner, prober, timeout=60, interval=2)

        with pytest.raises(DeploymentCancelled) as exc_info:
            scheduler.run(abc_phases)

        err = exc_info.value
        assert err.phase == "pA"
        # started groups keep running, later phases never start
        assert runner.running == {"A"}
        assert ("up", "B") not in events
        assert ("up", "C") not in events
        assert err.report.phases[0].completed is False
        assert err.report.success is False
        assert clock.now < 60
