"""
Core data types for the SMS delivery pipeline.
These are the value objects shared across the ledger, queue, workers and pollers.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (CampaignStatus.SENT, CampaignStatus.FAILED, CampaignStatus.CANCELLED)


class RecipientStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class DeliveryState(str, Enum):
    """Internal tri-state a raw gateway status is normalized to."""
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class LedgerReason(str, Enum):
    PURCHASE = "purchase"
    GRANT = "grant"
    DEBIT = "debit"
    REFUND = "refund"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class AutomationType(str, Enum):
    WELCOME = "welcome"
    ORDER_PLACED = "order_placed"
    ORDER_FULFILLED = "order_fulfilled"


# ──────────────────────────────────────────────────────────────
#  Credit Ledger results
# ──────────────────────────────────────────────────────────────

class LedgerResult(BaseModel):
    """Outcome of a balance mutation."""
    tenant_id: str
    remaining: int
    delta: int


class CreditCheck(BaseModel):
    """Non-authoritative preview: may be stale by the time a send happens."""
    tenant_id: str
    can_send: bool
    available: int
    missing: int = 0


# ──────────────────────────────────────────────────────────────
#  Gateway
# ──────────────────────────────────────────────────────────────

class SendResult(BaseModel):
    message_id: str
    status: str = "Queued"              # raw provider status at submission


class GatewayMessageStatus(BaseModel):
    message_id: str
    delivery_status: Optional[str] = None   # raw provider vocabulary
    updated_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Event feed
# ──────────────────────────────────────────────────────────────

class FeedEvent(BaseModel):
    """A single entry of the e-commerce platform's event feed."""
    id: str
    subject_type: str                       # CUSTOMER | ORDER | FULFILLMENT
    subject_id: str = ""
    action: str = ""
    occurred_at: datetime
    message: str = ""


class EventPage(BaseModel):
    events: list[FeedEvent] = []
    has_next_page: bool = False
    end_cursor: Optional[str] = None


class PollStats(BaseModel):
    tenant_id: str
    events_seen: int = 0
    automations_queued: int = 0
    skipped: int = 0
    errors: int = 0
    details: list[dict[str, Any]] = Field(default_factory=list)
