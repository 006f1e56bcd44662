"""
Error taxonomy for the stack deployer.

Every failure the CLI turns into a non-zero exit derives from StackError.
A health check timing out is not an error: it is HealthStatus.TIMED_OUT,
and the phase scheduler decides whether it is fatal.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .scheduler import DeploymentReport


class StackError(Exception):
    """Base class for deployer failures."""


class ConfigError(StackError):
    """The stack definition is invalid (unknown group, cycle, bad ordering)."""


class StoreUnavailable(StackError):
    """The secret store cannot be opened or parsed."""

    def __init__(self, path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Secret store unavailable at {path}: {reason}")


class WriteError(StackError):
    """Persisting a secret or the env file failed."""

    def __init__(self, path, reason: str, key: Optional[str] = None):
        self.path = path
        self.reason = reason
        self.key = key
        target = f" (secret {key})" if key else ""
        super().__init__(f"Failed to write {path}{target}: {reason}")


class PhaseFailed(StackError):
    """A critical service did not become healthy; remaining phases were skipped."""

    def __init__(
        self,
        phase: str,
        service: str,
        last_signal: str = "",
        report: Optional["DeploymentReport"] = None,
    ):
        self.phase = phase
        self.service = service
        self.last_signal = last_signal
        self.report = report
        detail = f" (last signal: {last_signal})" if last_signal else ""
        super().__init__(f"Phase '{phase}' failed on critical service '{service}'{detail}")


class DeploymentInProgress(StackError):
    """Another deployer process holds the deployment lock."""

    def __init__(self, lock_file, pid: Optional[int] = None):
        self.lock_file = lock_file
        self.pid = pid
        holder = f" by PID {pid}" if pid else ""
        super().__init__(f"Deployment already in progress (lock {lock_file} held{holder})")


class DeploymentCancelled(StackError):
    """Deployment was aborted between health polls. Started services keep running."""

    def __init__(self, phase: str, report: Optional["DeploymentReport"] = None):
        self.phase = phase
        self.report = report
        super().__init__(f"Deployment cancelled during phase '{phase}'")
