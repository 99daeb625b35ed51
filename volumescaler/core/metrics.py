"""
Prometheus Metrics для VolumeScaler Controller.

Custom метрики для мониторинга reconciliation loop:
- Reconciliation outcomes и latency
- Scale operations
- Work Queue depth и retries
- Change Feed events
- Leader Election state
- Utilization probe failures
"""

from prometheus_client import Counter, Gauge, Histogram
import logging

logger = logging.getLogger(__name__)

# ============================================================================
# RECONCILIATION METRICS
# ============================================================================

reconcile_total = Counter(
    "volumescaler_reconcile_total",
    "Total reconciliation attempts",
    ["result"]  # success | error
)
"""
Общее количество вызовов sync.

PromQL:
    # Error rate
    rate(volumescaler_reconcile_total{result="error"}[5m])
    /
    rate(volumescaler_reconcile_total[5m])
"""

reconcile_duration = Histogram(
    "volumescaler_reconcile_duration_seconds",
    "Duration of a single reconciliation",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

reconcile_actions_total = Counter(
    "volumescaler_reconcile_actions_total",
    "Reconciliation decisions by action",
    ["action"]  # scaled | below_threshold | cooldown | max_size_reached | ...
)

scale_operations_total = Counter(
    "volumescaler_scale_operations_total",
    "Total PVC size increase requests",
    ["status"]  # success | failed
)
"""
Количество size-increase requests.

PromQL:
    # Scale operations per hour
    increase(volumescaler_scale_operations_total{status="success"}[1h])
"""

volume_utilization_percent = Gauge(
    "volumescaler_volume_utilization_percent",
    "Last observed utilization of a managed volume",
    ["namespace", "pvc"]
)


# ============================================================================
# WORK QUEUE METRICS
# ============================================================================

workqueue_depth = Gauge(
    "volumescaler_workqueue_depth",
    "Current number of keys waiting in the work queue"
)

workqueue_adds_total = Counter(
    "volumescaler_workqueue_adds_total",
    "Total keys accepted by the work queue"
)

workqueue_retries_total = Counter(
    "volumescaler_workqueue_retries_total",
    "Total rate limited requeues"
)


# ============================================================================
# CHANGE FEED METRICS
# ============================================================================

change_feed_events_total = Counter(
    "volumescaler_change_feed_events_total",
    "Watch events observed for VolumeScaler objects",
    ["event_type"]  # ADDED | MODIFIED | DELETED | BOOKMARK | ERROR
)

change_feed_relists_total = Counter(
    "volumescaler_change_feed_relists_total",
    "Total full list operations",
    ["status"]  # success | failed
)

change_feed_known_objects = Gauge(
    "volumescaler_change_feed_known_objects",
    "Number of VolumeScaler objects known to the change feed"
)


# ============================================================================
# LEADER ELECTION METRICS
# ============================================================================

leader_state = Gauge(
    "volumescaler_leader_is_leader",
    "Whether this instance currently holds the lease (1) or not (0)",
    ["instance_id"]
)

leader_transitions_total = Counter(
    "volumescaler_leader_transitions_total",
    "Leader election transitions",
    ["instance_id", "transition"]  # acquired | renewed | lost | released
)

lease_operations_total = Counter(
    "volumescaler_lease_operations_total",
    "Lease acquire/renew attempts",
    ["result"]  # success | failed | error | timeout
)


# ============================================================================
# PROBE METRICS
# ============================================================================

probe_failures_total = Counter(
    "volumescaler_probe_failures_total",
    "Utilization probe failures",
    ["reason"]  # mount_not_found | query_failed
)


# ============================================================================
# HELPERS
# ============================================================================

def record_reconcile(success: bool, duration: float) -> None:
    """Записать результат reconciliation."""
    reconcile_total.labels(result="success" if success else "error").inc()
    reconcile_duration.observe(duration)


def record_reconcile_action(action: str) -> None:
    """Записать решение sync algorithm."""
    reconcile_actions_total.labels(action=action).inc()


def record_scale_operation(success: bool) -> None:
    """Записать size-increase request."""
    scale_operations_total.labels(status="success" if success else "failed").inc()


def record_volume_utilization(namespace: str, pvc: str, percent: float) -> None:
    """Записать observed utilization."""
    volume_utilization_percent.labels(namespace=namespace, pvc=pvc).set(percent)


def record_leader_state(instance_id: str, is_leader: bool) -> None:
    """Обновить gauge лидерства."""
    leader_state.labels(instance_id=instance_id).set(1 if is_leader else 0)


def record_leader_transition(instance_id: str, transition: str) -> None:
    """Записать переход Leader Election."""
    leader_transitions_total.labels(instance_id=instance_id, transition=transition).inc()


def record_lease_operation(result: str) -> None:
    """Записать попытку acquire/renew."""
    lease_operations_total.labels(result=result).inc()


def record_change_feed_event(event_type: str) -> None:
    """Записать watch event."""
    change_feed_events_total.labels(event_type=event_type).inc()


def record_relist(success: bool) -> None:
    """Записать list операцию Change Feed."""
    change_feed_relists_total.labels(status="success" if success else "failed").inc()


def record_probe_failure(reason: str) -> None:
    """Записать ошибку probe."""
    probe_failures_total.labels(reason=reason).inc()
