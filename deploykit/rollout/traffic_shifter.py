# deploykit/rollout/traffic_shifter.py
"""
Traffic Shifting for Blue-Green Deployments

Bookkeeping for the share of traffic routed to the new (green) version while
the old (blue) version keeps the rest. The shifter decides percentages and
keeps an audit trail; pushing weights to a CDN or load balancer is done by
whoever consumes ``traffic_split``.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog
from opentelemetry import trace

from deploykit.errors import (
    NotFoundError,
    ValidationError,
    validate_number,
    validate_percentage,
)
from deploykit.observability import metrics
from deploykit.storage import InMemoryStateStore, StateStore
from deploykit.timestamps import parse_timestamp, utcnow

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

DEFAULT_INCREMENT_PERCENTAGE = 25
DEFAULT_INCREMENT_INTERVAL = 5 * 60.0  # seconds
DEFAULT_FINAL_PERCENTAGE = 100


class ShiftStatus(Enum):
    STARTING = "starting"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled-back"


@dataclass
class TrafficShiftConfig:
    """Traffic shift configuration; percentages are green's share"""
    initial_percentage: int
    increment_percentage: int = DEFAULT_INCREMENT_PERCENTAGE
    increment_interval: float = DEFAULT_INCREMENT_INTERVAL  # seconds between steps
    final_percentage: int = DEFAULT_FINAL_PERCENTAGE

    def validate(self) -> None:
        validate_percentage(self.initial_percentage, "initial_percentage")
        validate_percentage(self.final_percentage, "final_percentage")
        validate_percentage(self.increment_percentage, "increment_percentage")

        if self.increment_percentage == 0:
            raise ValidationError("increment_percentage must be greater than 0",
                                  details={"field": "increment_percentage"})
        if self.initial_percentage > self.final_percentage:
            raise ValidationError(
                f"initial_percentage {self.initial_percentage} exceeds "
                f"final_percentage {self.final_percentage}",
                details={"initial_percentage": self.initial_percentage,
                         "final_percentage": self.final_percentage}
            )
        validate_number(self.increment_interval, "increment_interval", minimum=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initial_percentage": self.initial_percentage,
            "increment_percentage": self.increment_percentage,
            "increment_interval": self.increment_interval,
            "final_percentage": self.final_percentage,
        }


@dataclass(frozen=True)
class TrafficShiftEvent:
    """Audit record for one change of the traffic split"""
    timestamp: datetime
    from_percentage: int
    to_percentage: int
    reason: str
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "from_percentage": self.from_percentage,
            "to_percentage": self.to_percentage,
            "reason": self.reason,
            "success": self.success,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrafficShiftEvent':
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            from_percentage=data["from_percentage"],
            to_percentage=data["to_percentage"],
            reason=data["reason"],
            success=data.get("success", True),
        )


@dataclass
class TrafficShiftState:
    """Traffic shift state and history for one deployment"""
    deployment_id: str
    blue_version: str
    green_version: str
    current_percentage: int
    status: ShiftStatus
    start_time: datetime
    last_update_time: datetime
    history: List[TrafficShiftEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "blue_version": self.blue_version,
            "green_version": self.green_version,
            "current_percentage": self.current_percentage,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "last_update_time": self.last_update_time.isoformat(),
            "history": [event.to_dict() for event in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrafficShiftState':
        return cls(
            deployment_id=data["deployment_id"],
            blue_version=data["blue_version"],
            green_version=data["green_version"],
            current_percentage=data["current_percentage"],
            status=ShiftStatus(data["status"]),
            start_time=parse_timestamp(data["start_time"]),
            last_update_time=parse_timestamp(data["last_update_time"]),
            history=[TrafficShiftEvent.from_dict(e) for e in data.get("history", [])],
        )


@dataclass(frozen=True)
class TrafficSplit:
    """Weights handed to the external traffic applier"""
    blue_weight: int
    green_weight: int

    @classmethod
    def from_green_percentage(cls, green_percentage: int) -> 'TrafficSplit':
        validate_percentage(green_percentage, "green_percentage")
        return cls(blue_weight=100 - green_percentage, green_weight=green_percentage)


@dataclass(frozen=True)
class TrafficShiftSummary:
    current_percentage: int
    status: str
    duration: float  # seconds since the shift started
    events_count: int
    success_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_percentage": self.current_percentage,
            "status": self.status,
            "duration": self.duration,
            "events_count": self.events_count,
            "success_count": self.success_count,
        }


class TrafficShifter:
    """
    State machine for blue/green traffic distribution.

    ``current_percentage`` never decreases except through ``rollback``, which
    is terminal for the shift: a rolled-back deployment must be cleared and
    started again before traffic can move forward.
    """

    def __init__(self,
                 store: Optional[StateStore[TrafficShiftState]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self._store = store if store is not None else InMemoryStateStore()
        self._clock = clock or utcnow

    def _require(self, deployment_id: str) -> TrafficShiftState:
        state = self._store.get(deployment_id)
        if state is None:
            raise NotFoundError("Traffic shift", deployment_id)
        return state

    @tracer.start_as_current_span("start_traffic_shift")
    def start_shift(self,
                    deployment_id: str,
                    blue_version: str,
                    green_version: str,
                    config: TrafficShiftConfig) -> TrafficShiftState:
        """
        Start a new traffic shift from blue to green.

        Raises:
            ValidationError: invalid config, or a shift already exists for the id
        """
        config.validate()
        if self._store.get(deployment_id) is not None:
            raise ValidationError(
                f"Traffic shift '{deployment_id}' already exists; clear it first",
                details={"deployment_id": deployment_id}
            )

        now = self._clock()
        state = TrafficShiftState(
            deployment_id=deployment_id,
            blue_version=blue_version,
            green_version=green_version,
            current_percentage=config.initial_percentage,
            status=ShiftStatus.STARTING,
            start_time=now,
            last_update_time=now,
            history=[
                TrafficShiftEvent(
                    timestamp=now,
                    from_percentage=0,
                    to_percentage=config.initial_percentage,
                    reason="Initial canary traffic shift",
                )
            ],
        )
        self._store.put(deployment_id, state)

        metrics.record_traffic_shift(deployment_id, state.status.value, state.current_percentage)
        logger.info("Traffic shift started", deployment_id=deployment_id,
                    blue=blue_version, green=green_version,
                    percentage=config.initial_percentage)
        return state

    def get_next_target(self, deployment_id: str,
                        config: TrafficShiftConfig) -> Optional[int]:
        """
        Next percentage to shift to, or None once the final percentage is
        reached (or the shift was rolled back).
        """
        state = self._require(deployment_id)
        if state.status == ShiftStatus.ROLLED_BACK:
            return None

        final_percentage = config.final_percentage
        if state.current_percentage >= final_percentage:
            return None

        return min(state.current_percentage + config.increment_percentage, final_percentage)

    @tracer.start_as_current_span("update_traffic")
    def update_traffic(self, deployment_id: str, target_percentage: int,
                       reason: str) -> TrafficShiftState:
        """
        Move green's share to ``target_percentage``.

        Raises:
            NotFoundError: unknown deployment id
            ValidationError: target outside [0, 100], a decrease, or the shift
                was rolled back
        """
        state = self._require(deployment_id)
        validate_percentage(target_percentage, "target_percentage")

        if state.status == ShiftStatus.ROLLED_BACK:
            raise ValidationError(
                f"Traffic shift '{deployment_id}' was rolled back; start a new shift",
                details={"deployment_id": deployment_id}
            )
        if target_percentage < state.current_percentage:
            raise ValidationError(
                f"Cannot decrease traffic from {state.current_percentage}% to "
                f"{target_percentage}% (use rollback)",
                details={"deployment_id": deployment_id,
                         "current_percentage": state.current_percentage,
                         "target_percentage": target_percentage}
            )

        now = self._clock()
        from_percentage = state.current_percentage
        state.current_percentage = target_percentage
        state.last_update_time = now
        state.status = ShiftStatus.COMPLETED if target_percentage == 100 else ShiftStatus.IN_PROGRESS
        state.history.append(TrafficShiftEvent(
            timestamp=now,
            from_percentage=from_percentage,
            to_percentage=target_percentage,
            reason=reason,
        ))
        self._store.put(deployment_id, state)

        metrics.record_traffic_shift(deployment_id, state.status.value, target_percentage)
        logger.info("Traffic updated", deployment_id=deployment_id,
                    from_percentage=from_percentage, to_percentage=target_percentage,
                    status=state.status.value, reason=reason)
        return state

    @tracer.start_as_current_span("rollback_traffic")
    def rollback(self, deployment_id: str, reason: str) -> TrafficShiftState:
        """Send all traffic back to blue. Legal from any state."""
        state = self._require(deployment_id)

        now = self._clock()
        from_percentage = state.current_percentage
        state.current_percentage = 0
        state.status = ShiftStatus.ROLLED_BACK
        state.last_update_time = now
        state.history.append(TrafficShiftEvent(
            timestamp=now,
            from_percentage=from_percentage,
            to_percentage=0,
            reason=reason,
        ))
        self._store.put(deployment_id, state)

        metrics.record_traffic_shift(deployment_id, state.status.value, 0)
        logger.warning("Traffic rolled back", deployment_id=deployment_id,
                       from_percentage=from_percentage, reason=reason)
        return state

    def get_state(self, deployment_id: str) -> Optional[TrafficShiftState]:
        return self._store.get(deployment_id)

    def get_time_since_last_update(self, deployment_id: str) -> float:
        """Seconds since the last traffic change"""
        state = self._require(deployment_id)
        return (self._clock() - state.last_update_time).total_seconds()

    def is_ready_for_next_increment(self, deployment_id: str, interval: float) -> bool:
        """True once ``interval`` seconds have passed since the last change"""
        return self.get_time_since_last_update(deployment_id) >= interval

    def traffic_split(self, deployment_id: str) -> TrafficSplit:
        state = self._require(deployment_id)
        return TrafficSplit.from_green_percentage(state.current_percentage)

    def get_summary(self, deployment_id: str) -> TrafficShiftSummary:
        state = self._require(deployment_id)
        return TrafficShiftSummary(
            current_percentage=state.current_percentage,
            status=state.status.value,
            duration=(self._clock() - state.start_time).total_seconds(),
            events_count=len(state.history),
            success_count=sum(1 for e in state.history if e.success),
        )

    def clear(self, deployment_id: str) -> None:
        """Forget a shift. Clearing an unknown id is a no-op."""
        if self._store.delete(deployment_id):
            metrics.forget_deployment(deployment_id)
            logger.info("Traffic shift cleared", deployment_id=deployment_id)
