"""
Teardown: stop the stack in reverse deployment order.

Volume purging is irreversible and this tool keeps no backups, so it only
happens when the caller passes purge_volumes=True. The CLI asks the
operator first.
"""

import logging
from typing import Dict, List, Any
from dataclasses import dataclass, field

from .config import StackConfig, DeploymentPhase
from .runner import ProcessRunner, Operation

logger = logging.getLogger(__name__)


@dataclass
class TeardownReport:
    """Result of a teardown run."""
    groups_stopped: List[str] = field(default_factory=list)
    groups_failed: Dict[str, str] = field(default_factory=dict)
    volumes_removed: List[str] = field(default_factory=list)
    volumes_failed: Dict[str, str] = field(default_factory=dict)
    volumes_missing: List[str] = field(default_factory=list)
    purge_skipped: bool = False

    @property
    def success(self) -> bool:
        return not self.groups_failed and not self.volumes_failed and not self.purge_skipped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "groups_stopped": self.groups_stopped,
            "groups_failed": self.groups_failed,
            "volumes_removed": self.volumes_removed,
            "volumes_failed": self.volumes_failed,
            "volumes_missing": self.volumes_missing,
            "purge_skipped": self.purge_skipped,
        }


class TeardownController:
    """Stops groups last-deployed-first and optionally purges their volumes."""

    def __init__(self, config: StackConfig, runner: ProcessRunner):
        self.config = config
        self.runner = runner

    def run(self, phases: List[DeploymentPhase], purge_volumes: bool = False) -> TeardownReport:
        report = TeardownReport()

        for phase in reversed(phases):
            for group in reversed(phase.groups):
                result = self.runner.run(group, Operation.DOWN)
                if result.success:
                    report.groups_stopped.append(group.name)
                else:
                    # keep going: later groups can still be stopped
                    report.groups_failed[group.name] = result.output

        if purge_volumes:
            if report.groups_failed:
                report.purge_skipped = True
                logger.error(
                    "Skipping volume purge: failed to stop "
                    f"{', '.join(report.groups_failed)}"
                )
            else:
                self._purge(phases, report)

        return report

    def _purge(self, phases: List[DeploymentPhase], report: TeardownReport):
        """Remove every configured volume that exists, and nothing else."""
        existing = set(self.runner.list_volumes())
        for name in self.config.volume_names(phases):
            if name not in existing:
                report.volumes_missing.append(name)
                continue
            result = self.runner.remove_volume(name)
            if result.success:
                report.volumes_removed.append(name)
            else:
                report.volumes_failed[name] = result.output
        logger.warning(f"Purged {len(report.volumes_removed)} volumes")
