# deploykit/__init__.py
"""Deployment safety core: stage locks, pipeline progress and canary rollouts."""
from .errors import (
    DeployKitError,
    ErrorCode,
    ExternalStateLockedError,
    LockHeldError,
    NotFoundError,
    ValidationError,
)
from .locks import DeploymentLock, DeploymentLockManager, SstStateLockProbe, StateLockProbe
from .progress import DeploymentProgress, StageStatus
from .rollout import (
    CanaryConfig,
    CanaryManager,
    HealthMetrics,
    HealthThresholds,
    TrafficShiftConfig,
    TrafficShifter,
)
from .recovery import RecoveryReport, RecoveryService

__version__ = "0.1.0"

__all__ = [
    'DeployKitError',
    'ErrorCode',
    'ExternalStateLockedError',
    'LockHeldError',
    'NotFoundError',
    'ValidationError',
    'DeploymentLock',
    'DeploymentLockManager',
    'SstStateLockProbe',
    'StateLockProbe',
    'DeploymentProgress',
    'StageStatus',
    'CanaryConfig',
    'CanaryManager',
    'HealthMetrics',
    'HealthThresholds',
    'TrafficShiftConfig',
    'TrafficShifter',
    'RecoveryReport',
    'RecoveryService'
]
