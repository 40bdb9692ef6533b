# deploykit/locks/manager.py
"""
Deployment Lock Manager

Single-writer mutual exclusion per (project, stage), durable across process
crashes. Two locks are consulted:

1. A file lease (``.deployment-lock-<stage>`` in the project root) that this
   tool writes and removes.
2. The infrastructure tool's own state lock, queried through a
   ``StateLockProbe``.

Acquisition is check-then-act with no waiting or retrying. Two orchestrators
racing between the check and the write can both succeed; deployments are
human-paced, so that window is accepted.
"""
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

import structlog
from opentelemetry import trace

from deploykit.errors import (
    ExternalStateLockedError,
    LockHeldError,
    ValidationError,
    validate_number,
)
from deploykit.locks.probe import NullStateLockProbe, StateLockProbe
from deploykit.observability import metrics
from deploykit.storage import JsonFileStateStore, StateStore
from deploykit.timestamps import parse_timestamp, utcnow

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

LOCK_FILE_TEMPLATE = ".deployment-lock-{key}"
DEFAULT_TTL_MINUTES = 120

_STAGE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


@dataclass(frozen=True)
class DeploymentLock:
    """Persisted lease for a deployment stage"""
    stage: str
    created_at: datetime
    expires_at: datetime
    reason: str = "Deployment in progress"

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def minutes_remaining(self, now: datetime) -> int:
        remaining = (self.expires_at - now).total_seconds()
        return max(0, round(remaining / 60))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeploymentLock':
        return cls(
            stage=data["stage"],
            created_at=parse_timestamp(data["created_at"]),
            expires_at=parse_timestamp(data["expires_at"]),
            reason=data.get("reason", "Deployment in progress"),
        )


def validate_stage(stage: Any) -> str:
    if not isinstance(stage, str) or not _STAGE_PATTERN.match(stage):
        raise ValidationError(
            f"Invalid deployment stage: {stage!r}",
            details={"stage": stage}
        )
    return stage


class DeploymentLockManager:
    """
    Acquire, release and inspect deployment locks for one project.

    A lock whose ``expires_at`` has passed is stale. Stale locks are never
    deleted in the background: ``find_stale_locks`` reports them, recovery
    releases them, and a new ``acquire_lock`` supersedes them.
    """

    def __init__(self,
                 project_root: Union[str, Path],
                 ttl_minutes: int = DEFAULT_TTL_MINUTES,
                 state_probe: Optional[StateLockProbe] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 store: Optional[StateStore[DeploymentLock]] = None):
        validate_number(ttl_minutes, "ttl_minutes", minimum=1, integer=True)

        self.project_root = Path(project_root)
        self.ttl = timedelta(minutes=ttl_minutes)
        self.state_probe = state_probe or NullStateLockProbe()
        self._clock = clock or utcnow
        self._store = store or JsonFileStateStore(
            self.project_root,
            serializer=DeploymentLock.to_dict,
            deserializer=DeploymentLock.from_dict,
            filename_template=LOCK_FILE_TEMPLATE,
        )

    def lock_path(self, stage: str) -> Path:
        """Path of the lock file for a stage"""
        return self.project_root / LOCK_FILE_TEMPLATE.format(key=validate_stage(stage))

    def get_lock(self, stage: str) -> Optional[DeploymentLock]:
        """
        Read the persisted lock for a stage.

        Returns None when no lock exists or the record cannot be parsed.
        Expired locks are returned as-is; use ``is_stale`` to classify them.
        """
        return self._store.get(validate_stage(stage))

    def is_stale(self, lock: DeploymentLock) -> bool:
        return lock.is_expired(self._clock())

    def minutes_remaining(self, lock: DeploymentLock) -> int:
        return lock.minutes_remaining(self._clock())

    def list_locks(self) -> List[DeploymentLock]:
        return [lock for _, lock in self._store.items()]

    def find_stale_locks(self) -> List[DeploymentLock]:
        now = self._clock()
        return [lock for lock in self.list_locks() if lock.is_expired(now)]

    @tracer.start_as_current_span("acquire_deployment_lock")
    def acquire_lock(self, stage: str, reason: str = "Deployment in progress") -> DeploymentLock:
        """
        Acquire the deployment lock for a stage.

        Raises:
            LockHeldError: an unexpired lock exists for the stage
            ExternalStateLockedError: the infrastructure tool holds a state lock
        """
        validate_stage(stage)
        span = trace.get_current_span()
        span.set_attribute("deployment.stage", stage)

        now = self._clock()
        existing = self._store.get(stage)

        if existing is not None:
            if not existing.is_expired(now):
                minutes_left = existing.minutes_remaining(now)
                metrics.record_lock_operation(stage, "held")
                logger.warning("Deployment lock already held", stage=stage,
                               minutes_remaining=minutes_left)
                raise LockHeldError(stage, minutes_left)

            logger.info("Superseding stale deployment lock", stage=stage,
                        expired_at=existing.expires_at.isoformat())

        if self.is_external_state_locked(stage):
            metrics.record_lock_operation(stage, "external_locked")
            logger.warning("Infrastructure state lock detected", stage=stage)
            raise ExternalStateLockedError(stage)

        lock = DeploymentLock(
            stage=stage,
            created_at=now,
            expires_at=now + self.ttl,
            reason=reason,
        )
        self._store.put(stage, lock)

        metrics.record_lock_operation(stage, "acquired")
        logger.info("Deployment lock acquired", stage=stage,
                    expires_at=lock.expires_at.isoformat())
        return lock

    @tracer.start_as_current_span("release_deployment_lock")
    def release_lock(self, lock: Union[DeploymentLock, str]) -> bool:
        """
        Release a lock. Safe to call when the lock is already gone.

        Returns True if a lock record was removed.
        """
        stage = lock.stage if isinstance(lock, DeploymentLock) else lock
        removed = self._store.delete(validate_stage(stage))

        metrics.record_lock_operation(stage, "released" if removed else "release_noop")
        logger.info("Deployment lock released", stage=stage, removed=removed)
        return removed

    @contextmanager
    def held(self, stage: str, reason: str = "Deployment in progress") -> Iterator[DeploymentLock]:
        """
        Hold the stage lock for the duration of a ``with`` block.

        The lock is released only when the block exits normally. If the block
        raises, the lock stays on disk as evidence of an interrupted
        deployment and must be cleared through recovery.
        """
        lock = self.acquire_lock(stage, reason=reason)
        try:
            yield lock
        except Exception:
            logger.error("Deployment interrupted; lock left in place", stage=stage,
                         expires_at=lock.expires_at.isoformat())
            raise
        self.release_lock(lock)

    def is_external_state_locked(self, stage: str) -> bool:
        """
        Ask the infrastructure tool whether it holds its own state lock.

        Never raises. A failing probe counts as "not locked": a monitoring
        outage must not block deployments, and the infrastructure tool still
        rejects conflicting operations on its own.
        """
        try:
            return bool(self.state_probe.is_locked(stage))
        except Exception as e:
            logger.warning("State lock probe failed; treating as unlocked",
                           stage=stage, error=str(e))
            return False

    @tracer.start_as_current_span("clear_pulumi_lock")
    def clear_pulumi_lock(self, stage: str) -> bool:
        """
        Forcibly clear the infrastructure tool's state lock.

        Recovery only. Clearing a lock that a live deployment holds can
        corrupt infrastructure state, so nothing in the acquisition path
        calls this.

        Returns True if the infrastructure tool reported the lock cleared.
        """
        validate_stage(stage)
        if not self.state_probe.unlock(stage):
            metrics.record_lock_operation(stage, "external_clear_failed")
            logger.error("Infrastructure state lock could not be cleared", stage=stage)
            return False

        metrics.record_lock_operation(stage, "external_cleared")
        logger.warning("Infrastructure state lock cleared", stage=stage)
        return True
