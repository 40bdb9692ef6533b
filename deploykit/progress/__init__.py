# deploykit/progress/__init__.py
"""Stage progress module for pipeline reporting and failure attribution."""
from .tracker import DeploymentProgress, StageProgress, StageStatus, DEFAULT_STAGES

__all__ = [
    'DeploymentProgress',
    'StageProgress',
    'StageStatus',
    'DEFAULT_STAGES'
]
