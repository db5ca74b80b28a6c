"""Telemetry utilities: audit trail, event sinks and metrics."""

from .audit import AuditSink, canonical_bytes, load_signing_key, verify_audit_record
from .event_sink import ClickHouseEventSink, EventSink, FileEventSink, NullEventSink, sink_from_settings
from .metrics import (
    collect_prometheus_metrics,
    configure_metrics,
    record_decision,
    record_reruns,
    record_wait,
    shutdown_metrics,
)

__all__ = [
    "AuditSink",
    "canonical_bytes",
    "load_signing_key",
    "verify_audit_record",
    "ClickHouseEventSink",
    "EventSink",
    "FileEventSink",
    "NullEventSink",
    "sink_from_settings",
    "collect_prometheus_metrics",
    "configure_metrics",
    "record_decision",
    "record_reruns",
    "record_wait",
    "shutdown_metrics",
]
