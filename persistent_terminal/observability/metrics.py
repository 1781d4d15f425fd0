"""
Observability Module - Prometheus Metrics.

Metrics Collected:
- Session lifecycle (created, terminated, reactivated, deleted, by status)
- Backing holder spawns, spawn failures and kill-step outcomes
- WebSocket connections, inbound messages, auth and protocol failures
- Scrollback replays on attach

Author: Backend Lead Developer
"""

from prometheus_client import Counter, Gauge, Info

# Session Metrics
sessions_created_total = Counter(
    'pwt_sessions_created_total',
    'Total number of terminal sessions created'
)

sessions_terminated_total = Counter(
    'pwt_sessions_terminated_total',
    'Total number of terminal sessions terminated',
    ['reason']
)

sessions_reactivated_total = Counter(
    'pwt_sessions_reactivated_total',
    'Total number of terminated sessions reactivated'
)

sessions_deleted_total = Counter(
    'pwt_sessions_deleted_total',
    'Total number of terminal sessions deleted'
)

sessions_by_status = Gauge(
    'pwt_sessions',
    'Number of known sessions by status',
    ['status']
)

# Backing holder metrics
holder_spawns_total = Counter(
    'pwt_holder_spawns_total',
    'Total number of dtach holders spawned'
)

holder_spawn_failures_total = Counter(
    'pwt_holder_spawn_failures_total',
    'Total number of dtach holder spawn failures'
)

holder_kill_steps_total = Counter(
    'pwt_holder_kill_steps_total',
    'Outcomes of kill fallback steps',
    ['step', 'outcome']
)

# WebSocket Metrics
websocket_connections_total = Counter(
    'pwt_websocket_connections_total',
    'Total number of WebSocket connections'
)

websocket_active_connections = Gauge(
    'pwt_websocket_active_connections',
    'Number of active WebSocket connections'
)

websocket_messages_received_total = Counter(
    'pwt_websocket_messages_received_total',
    'Total number of WebSocket messages received',
    ['message_type']
)

auth_failures_total = Counter(
    'pwt_auth_failures_total',
    'Total number of failed PIN attempts'
)

protocol_errors_total = Counter(
    'pwt_protocol_errors_total',
    'Total number of malformed client messages'
)

stale_connections_reaped_total = Counter(
    'pwt_stale_connections_reaped_total',
    'Total number of connections closed by the heartbeat reaper'
)

history_replays_total = Counter(
    'pwt_history_replays_total',
    'Total scrollback replays sent on attach'
)

# Service Info
service_info = Info(
    'pwt_service',
    'Persistent terminal service information'
)

service_info.info({
    'version': '1.0.0',
    'holder': 'dtach',
})


# Helper Functions

def record_session_created():
    """Record session creation."""
    sessions_created_total.inc()
    holder_spawns_total.inc()


def record_spawn_failure():
    """Record a failed holder launch."""
    holder_spawn_failures_total.inc()


def record_session_terminated(reason: str = "explicit"):
    """Record session termination (explicit, reconciled, or shutdown)."""
    sessions_terminated_total.labels(reason=reason).inc()


def record_session_reactivated():
    sessions_reactivated_total.inc()
    holder_spawns_total.inc()


def record_session_deleted():
    sessions_deleted_total.inc()


def update_session_counts(counts: dict):
    """Set the per-status session gauge from {status: count}."""
    for status, count in counts.items():
        sessions_by_status.labels(status=status).set(count)


def record_kill_report(report):
    """Record outcomes of a KillReport."""
    holder_kill_steps_total.labels(step='fuser', outcome=report.fuser.value).inc()
    holder_kill_steps_total.labels(step='lsof', outcome=report.lsof.value).inc()


def record_websocket_connection():
    """Record WebSocket connection."""
    websocket_connections_total.inc()
    websocket_active_connections.inc()


def record_websocket_disconnection():
    """Record WebSocket disconnection."""
    websocket_active_connections.dec()


def record_message_received(message_type: str):
    websocket_messages_received_total.labels(message_type=message_type).inc()


def record_auth_failure():
    auth_failures_total.inc()


def record_protocol_error():
    protocol_errors_total.inc()


def record_stale_connection():
    stale_connections_reaped_total.inc()


def record_history_replay():
    history_replays_total.inc()


__all__ = [
    'sessions_created_total',
    'sessions_by_status',
    'websocket_active_connections',
    'record_session_created',
    'record_spawn_failure',
    'record_session_terminated',
    'record_session_reactivated',
    'record_session_deleted',
    'update_session_counts',
    'record_kill_report',
    'record_websocket_connection',
    'record_websocket_disconnection',
    'record_message_received',
    'record_auth_failure',
    'record_protocol_error',
    'record_stale_connection',
    'record_history_replay',
]
