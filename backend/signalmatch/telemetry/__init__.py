"""
Telemetry Module
================

Error tracking for the attribution service.

Components:
- sentry.py: Error tracking and performance monitoring

Usage:
    from signalmatch.telemetry import init_sentry, capture_exception

    init_sentry()  # once, in create_app() / worker startup
"""

from signalmatch.telemetry.sentry import (
    init_sentry,
    capture_exception,
)


__all__ = [
    "init_sentry",
    "capture_exception",
]
