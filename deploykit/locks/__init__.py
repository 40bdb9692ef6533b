# deploykit/locks/__init__.py
"""Deployment lock module: per-stage mutual exclusion and state-lock probes."""
from .manager import DeploymentLock, DeploymentLockManager, validate_stage
from .probe import StateLockProbe, NullStateLockProbe, SstStateLockProbe

__all__ = [
    'DeploymentLock',
    'DeploymentLockManager',
    'validate_stage',
    'StateLockProbe',
    'NullStateLockProbe',
    'SstStateLockProbe'
]
