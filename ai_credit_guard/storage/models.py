"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class TransactionType(Enum):
    """Kinds of credit movements recorded in the audit trail."""
    ALLOCATION = "allocation"
    CONSUMPTION = "consumption"
    RELEASE = "release"
    REFUND = "refund"
    SUBSCRIPTION_ALLOCATION = "subscription_allocation"


class SubscriptionStatus(Enum):
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    INCOMPLETE = "INCOMPLETE"
    INCOMPLETE_EXPIRED = "INCOMPLETE_EXPIRED"
    PAST_DUE = "PAST_DUE"
    TRIALING = "TRIALING"
    UNPAID = "UNPAID"


class InvoiceStatus(Enum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    PAID = "PAID"
    VOID = "VOID"
    UNCOLLECTIBLE = "UNCOLLECTIBLE"


@dataclass(frozen=True)
class Workspace:
    """Credit state of a workspace.

    ``allocated_credits`` are reserved for in-flight operations and never
    exceed ``credit_count``.
    """
    id: str
    name: str
    credit_count: int
    allocated_credits: int
    is_trialed: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def available_credits(self) -> int:
        """Credits that can still be reserved."""
        return self.credit_count - self.allocated_credits

    def has_available_credits(self, amount: int) -> bool:
        return self.available_credits >= amount


@dataclass(frozen=True)
class CreditTransaction:
    """Immutable audit record of a single credit movement.

    ``balance_before`` and ``balance_after`` always describe ``credit_count``.
    """
    workspace_id: str
    amount: int
    type: TransactionType
    balance_before: int
    balance_after: int
    created_at: datetime
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class Plan:
    """Billing plan with a monthly or yearly price in cents."""
    id: str
    name: str
    price_cents: int
    interval: str
    credit_count: Optional[int] = None
    is_active: bool = True
    stripe_price_id: Optional[str] = None


@dataclass(frozen=True)
class Subscription:
    """Local mirror of a payment provider subscription."""
    id: str
    workspace_id: str
    plan_id: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    stripe_subscription_id: Optional[str] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class Invoice:
    """Local mirror of a payment provider invoice."""
    id: str
    workspace_id: str
    status: str
    amount_due_cents: int
    amount_paid_cents: int
    currency: str = "usd"
    subscription_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one AI generation attempt.

    Append-only events that create an auditable ledger of AI usage and the
    credits charged for it. Once written, these records must never be modified.
    """
    timestamp: datetime
    workspace_id: str
    provider: str
    model: str
    operation: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    credits_charged: int
    status: str = "succeeded"
    request_id: Optional[str] = None
