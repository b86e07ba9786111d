"""Structured event recording for archive runs."""

from .audit import AuditEvent, AuditLogger, EventRecorder

__all__ = ["AuditEvent", "AuditLogger", "EventRecorder"]
