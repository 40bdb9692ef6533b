# deploykit/observability/metrics.py
"""
Prometheus metrics for deployment locks and canary rollouts.

Metrics are registered once at import on the default registry; managers
record through the helpers below so label sets stay consistent.
"""

from prometheus_client import Counter, Gauge

LOCK_OPERATIONS = Counter(
    'deploykit_lock_operations_total',
    'Deployment lock operations by stage and result',
    ['stage', 'result']
)

TRAFFIC_SHIFTS = Counter(
    'deploykit_traffic_shifts_total',
    'Traffic shift transitions by resulting status',
    ['status']
)

HEALTH_VIOLATIONS = Counter(
    'deploykit_canary_health_violations_total',
    'Canary health threshold violations by signal',
    ['signal']
)

CANARY_ROLLBACKS = Counter(
    'deploykit_canary_rollbacks_total',
    'Canary deployments rolled back'
)

CANARY_TRAFFIC = Gauge(
    'deploykit_canary_traffic_percentage',
    'Percentage of traffic routed to the green version',
    ['deployment_id']
)


def record_lock_operation(stage: str, result: str) -> None:
    LOCK_OPERATIONS.labels(stage=stage, result=result).inc()


def record_traffic_shift(deployment_id: str, status: str, percentage: int) -> None:
    TRAFFIC_SHIFTS.labels(status=status).inc()
    CANARY_TRAFFIC.labels(deployment_id=deployment_id).set(percentage)


def record_health_violation(signal: str) -> None:
    HEALTH_VIOLATIONS.labels(signal=signal).inc()


def record_rollback() -> None:
    CANARY_ROLLBACKS.inc()


def forget_deployment(deployment_id: str) -> None:
    """Drop the per-deployment traffic gauge once its state is cleared"""
    try:
        CANARY_TRAFFIC.remove(deployment_id)
    except KeyError:
        pass
