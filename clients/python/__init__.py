"""Python clients for the CI remediation control loop API."""

from .client import RemediationClient
from .async_client import AsyncRemediationClient
from .loop import CycleResult, run_remediation_cycle

__all__ = ["RemediationClient", "AsyncRemediationClient", "CycleResult", "run_remediation_cycle"]
