"""
Process runner: the boundary to the container engine.

Handles:
- Group lifecycle through docker compose (up, down, restart)
- Volume enumeration and removal
- Container health state inspection
"""

import subprocess
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List, Dict, Any

from .config import StackConfig, ServiceGroup

logger = logging.getLogger(__name__)


class Operation(Enum):
    """Lifecycle operations accepted by the runner."""
    UP = "up"
    DOWN = "down"
    RESTART = "restart"


@dataclass
class RunResult:
    """Outcome of one engine invocation."""
    success: bool
    output: str = ""
    returncode: int = 0


# compose arguments per operation; "up" is detached so the call returns
_OPERATION_ARGS = {
    Operation.UP: ["up", "-d"],
    Operation.DOWN: ["down"],
    Operation.RESTART: ["restart"],
}


class ProcessRunner:
    """
    Runs docker compose against one service group at a time.

    Starting a running group and stopping a stopped one are both no-ops at
    the engine level, which keeps deploy and teardown restartable.
    """

    def __init__(self, config: StackConfig, docker: str = "docker", timeout: float = 600):
        self.config = config
        self.docker = docker
        self.timeout = timeout

    def _run(self, cmd: List[str], timeout: Optional[float] = None) -> RunResult:
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError:
            return RunResult(False, f"{cmd[0]}: command not found", 127)
        except subprocess.TimeoutExpired:
            return RunResult(False, f"Timed out after {timeout or self.timeout}s: {' '.join(cmd)}", -1)
        output = (result.stdout + result.stderr).strip()
        return RunResult(result.returncode == 0, output, result.returncode)

    def compose_command(self, group: ServiceGroup, operation: Operation) -> List[str]:
        """Build the compose invocation for a group."""
        cmd = [
            self.docker, "compose",
            "--project-name", self.config.project_for(group),
            "-f", str(self.config.compose_path(group)),
        ]
        if self.config.env_file.exists():
            cmd.extend(["--env-file", str(self.config.env_file)])
        return cmd + _OPERATION_ARGS[operation]

    def run(self, group: ServiceGroup, operation: Operation) -> RunResult:
        """Apply a lifecycle operation to a whole group."""
        result = self._run(self.compose_command(group, operation))
        if result.success:
            logger.info(f"{operation.value}: group {group.name}")
        else:
            logger.error(f"Failed to {operation.value} group {group.name}: {result.output}")
        return result

    def list_volumes(self) -> List[str]:
        """Names of every volume known to the engine."""
        result = self._run([self.docker, "volume", "ls", "--format", "{{.Name}}"], timeout=60)
        if not result.success:
            logger.error(f"Failed to list volumes: {result.output}")
            return []
        return [line.strip() for line in result.output.splitlines() if line.strip()]

    def remove_volume(self, name: str) -> RunResult:
        result = self._run([self.docker, "volume", "rm", name], timeout=120)
        if result.success:
            logger.info(f"Removed volume: {name}")
        else:
            logger.error(f"Failed to remove volume {name}: {result.output}")
        return result

    def container_health(self, container: str, timeout: float = 30) -> Optional[str]:
        """
        Engine-reported health of a container.

        Returns the healthcheck state ("starting", "healthy", "unhealthy"),
        the plain run state when the image has no healthcheck, or None when
        the container does not exist.
        """
        result = self._run([self.docker, "inspect", container], timeout=timeout)
        if not result.success:
            return None
        try:
            state: Dict[str, Any] = json.loads(result.output)[0].get("State", {})
        except (json.JSONDecodeError, KeyError, IndexError) as e:
            logger.warning(f"Error parsing container info for {container}: {e}")
            return None
        health = state.get("Health")
        if health:
            return health.get("Status")
        return state.get("Status")

    def execute(self, argv: List[str], timeout: float) -> RunResult:
        """Run an arbitrary probe command."""
        return self._run(list(argv), timeout=timeout)
