"""Observability package initialization."""

from .metrics import (
    record_session_created,
    record_spawn_failure,
    record_session_terminated,
    record_session_reactivated,
    record_session_deleted,
    update_session_counts,
    record_kill_report,
    record_websocket_connection,
    record_websocket_disconnection,
    record_message_received,
    record_auth_failure,
    record_protocol_error,
    record_stale_connection,
    record_history_replay,
)

__all__ = [
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
