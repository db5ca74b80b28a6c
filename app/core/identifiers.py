"""Utilities for generating identifiers used across the service."""

from __future__ import annotations

import uuid


def new_request_id() -> str:
    return f"rq_{uuid.uuid4().hex}"


def new_audit_event_id() -> str:
    return f"au_{uuid.uuid4().hex}"


def new_registry_id() -> str:
    return f"rg_{uuid.uuid4().hex}"
