"""
Error taxonomy for the delivery pipeline.

Only InsufficientCreditsError is meant to reach a tenant. Gateway errors are
retried by the queue, QueueUnavailableError is absorbed by fallback routing,
and ClaimConflict is an expected race outcome that callers skip silently.
"""
from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base exception for all pipeline operations."""


class TenantNotFoundError(PipelineError):
    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant {tenant_id} not found")


class InsufficientCreditsError(PipelineError):
    """Balance does not cover the requested debit. Requires a top-up, never retried."""

    def __init__(self, tenant_id: str, requested: int, available: int):
        self.tenant_id = tenant_id
        self.requested = requested
        self.available = available
        self.missing = max(requested - available, 0)
        super().__init__(
            f"You need {self.missing} more credits to send this message. "
            f"You currently have {available} credits."
        )


class GatewayError(PipelineError):
    """Failure talking to the SMS gateway."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class TransientGatewayError(GatewayError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code, retryable=True)


class PermanentGatewayError(GatewayError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code, retryable=False)


class QueueUnavailableError(PipelineError):
    """A queue backend could not accept or serve a job."""

    def __init__(self, backend: str, reason: str = ""):
        self.backend = backend
        super().__init__(f"Queue backend {backend} unavailable: {reason}")


class CampaignStateError(PipelineError):
    """The requested operation is not allowed in the campaign's current status."""

    def __init__(self, campaign_id: str, status: Optional[str], operation: str):
        self.campaign_id = campaign_id
        self.status = status
        self.operation = operation
        if status is None:
            message = f"Campaign {campaign_id} not found"
        else:
            message = f"Cannot {operation} campaign {campaign_id} in status {status}"
        super().__init__(message)


class ClaimConflict(PipelineError):
    """Another process instance already claimed the work item."""

    def __init__(self, entity: str, entity_id: str, current_status: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        self.current_status = current_status
        super().__init__(f"{entity} {entity_id} already claimed (status={current_status})")
