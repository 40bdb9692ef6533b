# deploykit/rollout/canary_manager.py
"""
Canary Deployment Manager

Drives a blue-green rollout from a stream of health snapshots. Each snapshot
is checked against the configured thresholds; a run of consecutive violations
flags the deployment for rollback. Rolling back is a separate, explicit call,
so a deployment flagged unhealthy can still recover if later snapshots are
clean.

Nothing here waits or schedules: the caller polls ``is_ready_for_progression``
on its own timer and calls ``update_metrics`` then ``advance_traffic`` or
``rollback``.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from opentelemetry import trace

from deploykit.errors import NotFoundError, ValidationError, validate_number
from deploykit.observability import metrics
from deploykit.rollout.traffic_shifter import (
    TrafficShiftConfig,
    TrafficShifter,
    TrafficShiftState,
)
from deploykit.storage import InMemoryStateStore, StateStore
from deploykit.timestamps import parse_timestamp, utcnow

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

DEFAULT_FAILURE_THRESHOLD_COUNT = 3


class CanaryHealth(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    ROLLED_BACK = "rolled-back"


@dataclass
class HealthThresholds:
    """
    Limits that count as a health violation when crossed.

    Error rate and latencies are ceilings, success rate is a floor. A
    threshold left as None is not checked.
    """
    error_rate: Optional[float] = None  # percent
    latency_p95: Optional[float] = None  # ms
    latency_p99: Optional[float] = None  # ms
    success_rate: Optional[float] = None  # percent

    @classmethod
    def defaults(cls) -> 'HealthThresholds':
        return cls(error_rate=5.0, latency_p95=3000.0, latency_p99=5000.0, success_rate=95.0)

    def validate(self) -> None:
        """Rates are percentages in [0, 100]; latencies are non-negative ms"""
        for name in ("error_rate", "success_rate"):
            value = getattr(self, name)
            if value is not None:
                validate_number(value, f"rollback_on.{name}", minimum=0, maximum=100)
        for name in ("latency_p95", "latency_p99"):
            value = getattr(self, name)
            if value is not None:
                validate_number(value, f"rollback_on.{name}", minimum=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_rate": self.error_rate,
            "latency_p95": self.latency_p95,
            "latency_p99": self.latency_p99,
            "success_rate": self.success_rate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HealthThresholds':
        return cls(**{key: data.get(key) for key in cls().to_dict()})


@dataclass
class HealthCheck:
    """Endpoint the external prober checks; carried in config, not executed here"""
    url: str
    expected_status: int = 200
    timeout: float = 5.0
    search_text: Optional[str] = None

    def validate(self) -> None:
        if not isinstance(self.url, str) or not self.url:
            raise ValidationError(f"health_checks.url must be a non-empty string, got {self.url!r}",
                                  details={"field": "health_checks.url"})
        validate_number(self.expected_status, "health_checks.expected_status",
                        minimum=100, maximum=599, integer=True)
        validate_number(self.timeout, "health_checks.timeout", minimum=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "expected_status": self.expected_status,
            "timeout": self.timeout,
            "search_text": self.search_text,
        }


@dataclass(frozen=True)
class HealthMetrics:
    """Health snapshot supplied by the monitoring collaborator"""
    timestamp: datetime
    error_rate: float  # percent
    latency_p95: float  # ms
    latency_p99: float  # ms
    latency_avg: float  # ms
    success_rate: float  # percent
    request_count: int
    error_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "error_rate": self.error_rate,
            "latency_p95": self.latency_p95,
            "latency_p99": self.latency_p99,
            "latency_avg": self.latency_avg,
            "success_rate": self.success_rate,
            "request_count": self.request_count,
            "error_count": self.error_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HealthMetrics':
        data = dict(data)
        data["timestamp"] = parse_timestamp(data["timestamp"])
        return cls(**data)


@dataclass
class CanaryConfig(TrafficShiftConfig):
    """Traffic shift parameters plus health gating policy"""
    rollback_on: HealthThresholds = field(default_factory=HealthThresholds)
    health_checks: List[HealthCheck] = field(default_factory=list)
    failure_threshold_count: int = DEFAULT_FAILURE_THRESHOLD_COUNT

    def validate(self) -> None:
        super().validate()
        validate_number(self.failure_threshold_count, "failure_threshold_count",
                        minimum=1, integer=True)
        if not isinstance(self.rollback_on, HealthThresholds):
            raise ValidationError("rollback_on must be HealthThresholds",
                                  details={"field": "rollback_on"})
        self.rollback_on.validate()
        for check in self.health_checks:
            check.validate()

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["rollback_on"] = self.rollback_on.to_dict()
        d["health_checks"] = [check.to_dict() for check in self.health_checks]
        d["failure_threshold_count"] = self.failure_threshold_count
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CanaryConfig':
        data = dict(data)
        data["rollback_on"] = HealthThresholds.from_dict(data.get("rollback_on") or {})
        data["health_checks"] = [HealthCheck(**c) for c in data.get("health_checks", [])]
        return cls(**data)


@dataclass
class CanaryState:
    """Canary deployment state"""
    deployment_id: str
    config: CanaryConfig
    traffic_state: TrafficShiftState
    current_metrics: Optional[HealthMetrics] = None
    health_check_failures: int = 0
    should_rollback: bool = False
    rollback_reason: Optional[str] = None
    status: CanaryHealth = CanaryHealth.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "config": self.config.to_dict(),
            "traffic_state": self.traffic_state.to_dict(),
            "current_metrics": self.current_metrics.to_dict() if self.current_metrics else None,
            "health_check_failures": self.health_check_failures,
            "should_rollback": self.should_rollback,
            "rollback_reason": self.rollback_reason,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CanaryState':
        metrics_data = data.get("current_metrics")
        return cls(
            deployment_id=data["deployment_id"],
            config=CanaryConfig.from_dict(data["config"]),
            traffic_state=TrafficShiftState.from_dict(data["traffic_state"]),
            current_metrics=HealthMetrics.from_dict(metrics_data) if metrics_data else None,
            health_check_failures=data.get("health_check_failures", 0),
            should_rollback=data.get("should_rollback", False),
            rollback_reason=data.get("rollback_reason"),
            status=CanaryHealth(data["status"]),
        )


@dataclass(frozen=True)
class CanarySummary:
    status: str
    current_traffic: int
    health_status: str
    metrics: Optional[HealthMetrics]
    should_rollback: bool
    rollback_reason: Optional[str]
    health_check_failures: int
    duration: float  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "current_traffic": self.current_traffic,
            "health_status": self.health_status,
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "should_rollback": self.should_rollback,
            "rollback_reason": self.rollback_reason,
            "health_check_failures": self.health_check_failures,
            "duration": self.duration,
        }


def evaluate_thresholds(metrics_snapshot: HealthMetrics,
                        thresholds: HealthThresholds) -> List[Tuple[str, str]]:
    """
    Compare a snapshot against thresholds.

    Returns (signal, description) pairs, one per violated threshold.
    """
    violations = []

    if thresholds.error_rate is not None and metrics_snapshot.error_rate > thresholds.error_rate:
        violations.append((
            "error_rate",
            f"Error rate {metrics_snapshot.error_rate:.1f}% exceeds threshold {thresholds.error_rate}%"
        ))

    if thresholds.latency_p95 is not None and metrics_snapshot.latency_p95 > thresholds.latency_p95:
        violations.append((
            "latency_p95",
            f"P95 latency {metrics_snapshot.latency_p95}ms exceeds threshold {thresholds.latency_p95}ms"
        ))

    if thresholds.latency_p99 is not None and metrics_snapshot.latency_p99 > thresholds.latency_p99:
        violations.append((
            "latency_p99",
            f"P99 latency {metrics_snapshot.latency_p99}ms exceeds threshold {thresholds.latency_p99}ms"
        ))

    # success rate is a floor
    if thresholds.success_rate is not None and metrics_snapshot.success_rate < thresholds.success_rate:
        violations.append((
            "success_rate",
            f"Success rate {metrics_snapshot.success_rate:.1f}% below threshold {thresholds.success_rate}%"
        ))

    return violations


class CanaryManager:
    """
    Canary deployment manager.

    Owns one ``CanaryState`` per deployment id and reaches the traffic state
    only through the ``TrafficShifter`` API.
    """

    def __init__(self,
                 shifter: Optional[TrafficShifter] = None,
                 store: Optional[StateStore[CanaryState]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utcnow
        self.shifter = shifter or TrafficShifter(clock=self._clock)
        self._store = store if store is not None else InMemoryStateStore()

    def _require(self, deployment_id: str) -> CanaryState:
        state = self._store.get(deployment_id)
        if state is None:
            raise NotFoundError("Canary", deployment_id)
        return state

    def _refresh_traffic(self, state: CanaryState) -> None:
        traffic_state = self.shifter.get_state(state.deployment_id)
        if traffic_state is None:
            raise NotFoundError("Traffic shift", state.deployment_id)
        state.traffic_state = traffic_state

    @tracer.start_as_current_span("start_canary")
    def start_canary(self,
                     deployment_id: str,
                     blue_version: str,
                     green_version: str,
                     config: CanaryConfig) -> CanaryState:
        """Start a canary deployment at the config's initial percentage"""
        config.validate()
        if self._store.get(deployment_id) is not None:
            raise ValidationError(
                f"Canary '{deployment_id}' already exists; clear it first",
                details={"deployment_id": deployment_id}
            )

        traffic_state = self.shifter.start_shift(deployment_id, blue_version,
                                                 green_version, config)
        state = CanaryState(
            deployment_id=deployment_id,
            config=config,
            traffic_state=traffic_state,
        )
        self._store.put(deployment_id, state)

        logger.info("Canary started", deployment_id=deployment_id,
                    failure_threshold_count=config.failure_threshold_count)
        return state

    @tracer.start_as_current_span("update_canary_metrics")
    def update_metrics(self, deployment_id: str,
                       metrics_snapshot: HealthMetrics) -> CanaryState:
        """
        Record a health snapshot and update the rollback recommendation.

        Once rolled back, snapshots are still recorded but no longer change
        the health status or failure count.
        """
        state = self._require(deployment_id)
        state.current_metrics = metrics_snapshot

        if state.status == CanaryHealth.ROLLED_BACK:
            self._store.put(deployment_id, state)
            return state

        violations = evaluate_thresholds(metrics_snapshot, state.config.rollback_on)
        span = trace.get_current_span()
        span.set_attribute("canary.violations", len(violations))

        if violations:
            state.health_check_failures += 1
            for signal, _ in violations:
                metrics.record_health_violation(signal)

            descriptions = "; ".join(description for _, description in violations)
            if state.health_check_failures >= state.config.failure_threshold_count:
                state.should_rollback = True
                state.rollback_reason = f"Health threshold violations: {descriptions}"
                state.status = CanaryHealth.UNHEALTHY
                logger.error("Canary unhealthy; rollback recommended",
                             deployment_id=deployment_id,
                             failures=state.health_check_failures,
                             violations=descriptions)
            else:
                state.status = CanaryHealth.DEGRADED
                logger.warning("Canary degraded", deployment_id=deployment_id,
                               failures=state.health_check_failures,
                               violations=descriptions)
        else:
            state.health_check_failures = 0
            state.status = CanaryHealth.HEALTHY

        self._store.put(deployment_id, state)
        return state

    @tracer.start_as_current_span("advance_canary_traffic")
    def advance_traffic(self, deployment_id: str,
                        reason: str = "Canary progression") -> CanaryState:
        """
        Move to the next traffic step. A no-op once the final percentage is
        reached; call ``complete`` instead.
        """
        state = self._require(deployment_id)

        next_target = self.shifter.get_next_target(deployment_id, state.config)
        if next_target is not None:
            self.shifter.update_traffic(deployment_id, next_target, reason)
            self._refresh_traffic(state)
            self._store.put(deployment_id, state)

        return state

    @tracer.start_as_current_span("rollback_canary")
    def rollback(self, deployment_id: str, reason: str = "Manual rollback") -> CanaryState:
        """Return all traffic to blue. Legal at any point, including after a rollback."""
        state = self._require(deployment_id)

        self.shifter.rollback(deployment_id, reason)
        self._refresh_traffic(state)
        state.should_rollback = False
        state.rollback_reason = reason
        state.status = CanaryHealth.ROLLED_BACK
        self._store.put(deployment_id, state)

        metrics.record_rollback()
        logger.warning("Canary rolled back", deployment_id=deployment_id, reason=reason)
        return state

    @tracer.start_as_current_span("complete_canary")
    def complete(self, deployment_id: str) -> CanaryState:
        """Finish the rollout with 100% of traffic on green"""
        state = self._require(deployment_id)

        self.shifter.update_traffic(deployment_id, 100, "Canary deployment completed")
        self._refresh_traffic(state)
        state.status = CanaryHealth.HEALTHY
        self._store.put(deployment_id, state)

        logger.info("Canary completed", deployment_id=deployment_id)
        return state

    def get_state(self, deployment_id: str) -> Optional[CanaryState]:
        return self._store.get(deployment_id)

    def is_ready_for_progression(self, deployment_id: str) -> bool:
        state = self._require(deployment_id)
        return self.shifter.is_ready_for_next_increment(
            deployment_id, state.config.increment_interval
        )

    def get_summary(self, deployment_id: str) -> CanarySummary:
        state = self._require(deployment_id)
        self._refresh_traffic(state)
        traffic = state.traffic_state

        return CanarySummary(
            status=traffic.status.value,
            current_traffic=traffic.current_percentage,
            health_status=state.status.value,
            metrics=state.current_metrics,
            should_rollback=state.should_rollback,
            rollback_reason=state.rollback_reason,
            health_check_failures=state.health_check_failures,
            duration=(self._clock() - traffic.start_time).total_seconds(),
        )

    def clear(self, deployment_id: str) -> None:
        """Forget a canary and its traffic shift. Clearing an unknown id is a no-op."""
        self.shifter.clear(deployment_id)
        if self._store.delete(deployment_id):
            logger.info("Canary cleared", deployment_id=deployment_id)

