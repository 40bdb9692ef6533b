# deploykit/rollout/__init__.py
"""Rollout module: blue/green traffic shifting and health-gated canaries."""
from .traffic_shifter import (
    ShiftStatus,
    TrafficShiftConfig,
    TrafficShiftEvent,
    TrafficShiftState,
    TrafficShiftSummary,
    TrafficShifter,
    TrafficSplit,
)
from .canary_manager import (
    CanaryConfig,
    CanaryHealth,
    CanaryManager,
    CanaryState,
    CanarySummary,
    HealthCheck,
    HealthMetrics,
    HealthThresholds,
    evaluate_thresholds,
)

__all__ = [
    'ShiftStatus',
    'TrafficShiftConfig',
    'TrafficShiftEvent',
    'TrafficShiftState',
    'TrafficShiftSummary',
    'TrafficShifter',
    'TrafficSplit',
    'CanaryConfig',
    'CanaryHealth',
    'CanaryManager',
    'CanaryState',
    'CanarySummary',
    'HealthCheck',
    'HealthMetrics',
    'HealthThresholds',
    'evaluate_thresholds'
]
