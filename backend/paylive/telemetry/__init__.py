"""
Telemetry Module
================

Observability for the checkout backend.

Components:
- sentry.py: Error tracking (webhook failures, saga reconciliation failures)

Environment Variables:
- SENTRY_DSN: Sentry project DSN
- ENVIRONMENT: deployment name reported with each event

Usage:
    from paylive.telemetry import init_sentry, capture_exception

    init_sentry()  # once, on app or worker startup
"""

from paylive.telemetry.sentry import (
    init_sentry,
    set_customer_context,
    capture_exception,
    capture_message,
)


__all__ = [
    "init_sentry",
    "set_customer_context",
    "capture_exception",
    "capture_message",
]
