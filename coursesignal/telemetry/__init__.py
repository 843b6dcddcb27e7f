"""
Telemetry Module
================

Observability for the CourseSignal API and worker.

Components:
- sentry.py: Error tracking

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from coursesignal.telemetry import init_sentry, capture_exception

    init_sentry()  # once, at startup
"""

from coursesignal.telemetry.sentry import (
    init_sentry,
    set_workspace_context,
    capture_exception,
)

__all__ = [
    "init_sentry",
    "set_workspace_context",
    "capture_exception",
]
