# deploykit/recovery.py
"""
Explicit recovery for interrupted deployments.

A failed deployment leaves its file lock behind, and sometimes an
infrastructure state lock too. Nothing clears either automatically; this
module is the one place that does, and only when asked.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog
from opentelemetry import trace

from deploykit.locks.manager import DeploymentLock, DeploymentLockManager, validate_stage

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)


@dataclass
class RecoveryReport:
    """Lock situation for a stage and what recovery did about it"""
    stage: str
    file_lock: Optional[DeploymentLock]
    stale: bool
    minutes_remaining: Optional[int]
    external_locked: bool
    actions: List[str] = field(default_factory=list)

    @property
    def clear(self) -> bool:
        """True when nothing blocks a new deployment"""
        return (self.file_lock is None or self.stale) and not self.external_locked

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "file_lock": self.file_lock.to_dict() if self.file_lock else None,
            "stale": self.stale,
            "minutes_remaining": self.minutes_remaining,
            "external_locked": self.external_locked,
            "actions": list(self.actions),
        }


class RecoveryService:
    """Inspect and clear deployment locks on request"""

    def __init__(self, lock_manager: DeploymentLockManager):
        self.lock_manager = lock_manager

    def inspect(self, stage: str) -> RecoveryReport:
        validate_stage(stage)
        lock = self.lock_manager.get_lock(stage)
        stale = lock is not None and self.lock_manager.is_stale(lock)
        minutes_remaining = None
        if lock is not None and not stale:
            minutes_remaining = self.lock_manager.minutes_remaining(lock)

        return RecoveryReport(
            stage=stage,
            file_lock=lock,
            stale=stale,
            minutes_remaining=minutes_remaining,
            external_locked=self.lock_manager.is_external_state_locked(stage),
        )

    @tracer.start_as_current_span("recover_stage")
    def recover(self, stage: str, force: bool = False,
                clear_external: bool = False) -> RecoveryReport:
        """
        Clear locks left by an interrupted deployment.

        Args:
            stage: Deployment stage
            force: Also release a file lock that has not expired yet
            clear_external: Clear the infrastructure tool's state lock if present

        Returns:
            The inspection report with ``actions`` filled in; ``external_locked``
            is re-checked after a successful clear
        """
        report = self.inspect(stage)

        if report.file_lock is None:
            report.actions.append("No deployment lock present")
        elif report.stale:
            self.lock_manager.release_lock(report.file_lock)
            report.actions.append("Released stale deployment lock")
        elif force:
            self.lock_manager.release_lock(report.file_lock)
            report.actions.append(
                f"Force-released active deployment lock ({report.minutes_remaining} min remaining)"
            )
        else:
            report.actions.append(
                f"Deployment lock still active ({report.minutes_remaining} min remaining); "
                f"wait or recover with force"
            )

        if report.external_locked:
            if not clear_external:
                report.actions.append("Infrastructure state lock present; not cleared")
            elif self.lock_manager.clear_pulumi_lock(stage):
                report.external_locked = self.lock_manager.is_external_state_locked(stage)
                report.actions.append("Cleared infrastructure state lock")
            else:
                report.actions.append("Infrastructure state lock could not be cleared")

        logger.info("Recovery finished", stage=stage, actions=report.actions)
        return report
