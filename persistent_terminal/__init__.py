"""
Persistent Web Terminal Service.

Multiplexes long-lived shell sessions behind one FastAPI process:
- dtach-backed shells that survive server restarts
- Many WebSocket clients per session, with scrollback replay on attach
- Optional PIN authentication
- JSON session records, reconciled against live sockets at startup
- Prometheus metrics
"""

__version__ = "1.0.0"
__author__ = "Backend Lead Developer"
