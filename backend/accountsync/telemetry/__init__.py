"""
Telemetry Module
================

Observability for the account lifecycle service.

Components:
- sentry.py: Error tracking for handled failures and guard rejections

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from accountsync.telemetry import init_sentry, capture_exception

    init_sentry()  # once, on process startup
"""

from accountsync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
