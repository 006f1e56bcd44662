"""
Unit tests for the StackDeployer facade.
"""
import pytest
import yaml

from conftest import FakeProber, FakeRunner
from stackdeploy.config import StackConfig
from stackdeploy.core import StackDeployer
from stackdeploy.errors import ConfigError, DeploymentInProgress, PhaseFailed
from stackdeploy.health import HealthStatus
from stackdeploy.lock import DeploymentLock

ALL_GROUPS = {"proxy", "storage", "messaging", "inference", "observability", "management"}


@pytest.fixture
def runner(events):
    return FakeRunner(events=events)


@pytest.fixture
def deployer(config, runner, events):
    return StackDeployer(config, runner=runner, prober=FakeProber(events=events))


class TestDeploy:
    """Tests for deploy and teardown through the facade."""

    def test_deploy_provisions_secrets_then_starts_groups(self, deployer, config, runner):
        report = deployer.deploy()
        assert report.success is True
        assert runner.running == ALL_GROUPS

        stored = yaml.safe_load(config.secrets_file.read_text())
        assert set(stored) >= {"postgres", "rabbitmq", "authelia"}
        assert "POSTGRES_PASSWORD=" in config.env_file.read_text()

    def test_lock_released_after_deploy(self, deployer, config):
        deployer.deploy()
        with DeploymentLock(config.lock_file) as lock:
            assert lock.held

    def test_concurrent_deploy_rejected_without_side_effects(self, deployer, config, events):
        with DeploymentLock(config.lock_file):
            with pytest.raises(DeploymentInProgress):
                deployer.deploy()
        assert events == []
        assert not config.secrets_file.exists()

    def test_secrets_stable_across_deploys(self, deployer, config):
        deployer.deploy()
        first = config.secrets_file.read_text()
        deployer.deploy()
        assert config.secrets_file.read_text() == first

    def test_teardown_then_deploy_restores_running_set(self, deployer, runner):
        deployer.deploy()
        before = set(runner.running)
        deployer.teardown()
        assert runner.running == set()
        deployer.deploy()
        assert runner.running == before

    def test_critical_failure_propagates(self, config, runner, events):
        prober = FakeProber(events=events, outcomes={"postgres": HealthStatus.TIMED_OUT})
        deployer = StackDeployer(config, runner=runner, prober=prober)
        with pytest.raises(PhaseFailed) as exc_info:
            deployer.deploy()
        assert exc_info.value.service == "postgres"
        assert runner.running == {"proxy", "storage"}

    def test_restart_unknown_group(self, deployer):
        with pytest.raises(ConfigError):
            deployer.restart("nope")

    def test_restart_group(self, deployer, events):
        assert deployer.restart("storage").success is True
        assert events == [("restart", "storage")]


class TestQueries:
    def test_access_points_use_domain(self, tmp_path, runner, events):
        config = StackConfig(base_dir=tmp_path, domain="home.example")
        deployer = StackDeployer(config, runner=runner, prober=FakeProber(events=events))
        points = {p.service: p.url for p in deployer.access_points()}
        assert points["grafana"] == "https://grafana.home.example"
        assert "postgres" not in points

    def test_status(self, deployer):
        states = deployer.status()
        assert states["postgres"] == "running"
        assert len(states) == len(deployer.services)

    def test_init_secrets_regenerate(self, deployer):
        first = deployer.init_secrets()
        second = deployer.init_secrets(regenerate=["grafana.admin_password"])
        assert second["grafana.admin_password"] != first["grafana.admin_password"]
        assert second["postgres.postgres_password"] == first["postgres.postgres_password"]
