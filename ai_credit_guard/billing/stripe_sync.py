"""
Stripe webhook synchronisation.

Mirrors Stripe subscriptions and invoices into the local billing tables and
grants plan credits when a subscription invoice is paid.

Webhook Events:
- customer.subscription.created / updated / deleted -> upsert subscription
- invoice.paid / invoice.payment_succeeded -> upsert invoice, allocate plan credits
- invoice.payment_failed -> upsert invoice, mark subscription past due
- invoice.finalized / voided / marked_uncollectible -> upsert invoice
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

import stripe

from ..core.ledger import CreditLedger
from ..storage.models import Invoice, InvoiceStatus, Subscription, SubscriptionStatus
from ..storage.repository import BillingRepository, WorkspaceRepository

logger = logging.getLogger(__name__)

_SUBSCRIPTION_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "trialing": SubscriptionStatus.TRIALING,
    "unpaid": SubscriptionStatus.UNPAID,
    # Paused subscriptions keep their plan and resume without a new checkout
    "paused": SubscriptionStatus.ACTIVE,
}

_INVOICE_STATUSES = {
    "draft": InvoiceStatus.DRAFT,
    "open": InvoiceStatus.OPEN,
    "paid": InvoiceStatus.PAID,
    "void": InvoiceStatus.VOID,
    "uncollectible": InvoiceStatus.UNCOLLECTIBLE,
}

SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}
INVOICE_PAID_EVENTS = {"invoice.paid", "invoice.payment_succeeded"}
INVOICE_EVENTS = {
    "invoice.payment_failed",
    "invoice.finalized",
    "invoice.voided",
    "invoice.marked_uncollectible",
}


def map_subscription_status(status: Optional[str]) -> SubscriptionStatus:
    """Map a Stripe subscription status; anything unknown counts as canceled."""
    return _SUBSCRIPTION_STATUSES.get(status or "", SubscriptionStatus.CANCELED)


def map_invoice_status(status: Optional[str]) -> InvoiceStatus:
    """Map a Stripe invoice status; missing or unknown statuses become draft."""
    return _INVOICE_STATUSES.get(status or "", InvoiceStatus.DRAFT)


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def _object_id(value: Union[str, Mapping[str, Any], None]) -> Optional[str]:
    """Stripe references are either an id or an expanded object."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value


def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


class StripeWebhookHandler:
    """Applies verified Stripe webhook events to the local database.

    Handlers raise on storage errors so the webhook endpoint answers with an
    error and Stripe redelivers the event. Redelivery is safe: every write is
    an upsert and credit grants are idempotent per invoice.
    """

    def __init__(
        self,
        billing: BillingRepository,
        workspaces: WorkspaceRepository,
        ledger: CreditLedger,
    ):
        self.billing = billing
        self.workspaces = workspaces
        self.ledger = ledger

    @staticmethod
    def verify_event(payload: Union[bytes, str], signature: str, secret: str) -> stripe.Event:
        """Verify the Stripe-Signature header and parse the event body.

        Raises:
            stripe.SignatureVerificationError: If the signature does not match
            ValueError: If the payload is not valid JSON
        """
        return stripe.Webhook.construct_event(payload, signature, secret)

    def handle_event(self, event: Mapping[str, Any]) -> Dict[str, Any]:
        event_type = event.get("type", "")
        data = (event.get("data") or {}).get("object") or {}

        logger.info(f"Processing Stripe webhook: {event_type} ({event.get('id')})")

        if event_type in SUBSCRIPTION_EVENTS:
            result = self._sync_subscription(data, deleted=event_type.endswith(".deleted"))
        elif event_type in INVOICE_PAID_EVENTS:
            result = self._sync_paid_invoice(data)
        elif event_type in INVOICE_EVENTS:
            result = self._sync_invoice_event(data, event_type)
        else:
            logger.debug(f"Unhandled event type: {event_type}")
            result = {"handled": False, "reason": "unhandled_event_type"}

        return {"event_type": event_type, **result}

    def _sync_subscription(self, data: Mapping[str, Any], deleted: bool) -> Dict[str, Any]:
        stripe_id = data.get("id")
        metadata = data.get("metadata") or {}
        existing = self.billing.get_subscription_by_stripe_id(stripe_id) if stripe_id else None

        workspace_id = metadata.get("workspace_id") or (existing.workspace_id if existing else None)
        plan_id = self._resolve_plan_id(data, metadata, existing)
        if not workspace_id or not plan_id:
            logger.warning(f"Missing workspace_id or plan_id for subscription {stripe_id}")
            return {"handled": False, "reason": "missing_metadata"}

        item = _first_item(data)
        period_start = data.get("current_period_start") or item.get("current_period_start")
        period_end = data.get("current_period_end") or item.get("current_period_end")
        if not period_start or not period_end:
            logger.warning(f"Subscription {stripe_id} has no billing period")
            return {"handled": False, "reason": "missing_period"}

        status = SubscriptionStatus.CANCELED if deleted else map_subscription_status(data.get("status"))
        trial_end = _timestamp(data.get("trial_end"))

        self.billing.upsert_subscription(Subscription(
            id=existing.id if existing else str(uuid.uuid4()),
            workspace_id=workspace_id,
            plan_id=plan_id,
            status=status.value,
            current_period_start=_timestamp(period_start),
            current_period_end=_timestamp(period_end),
            stripe_subscription_id=stripe_id,
            trial_end=trial_end,
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        ))

        if status == SubscriptionStatus.TRIALING or trial_end:
            self.workspaces.mark_trialed(workspace_id)

        logger.info(f"Synced subscription {stripe_id} for {workspace_id}: {status.value}")
        return {
            "handled": True,
            "workspace_id": workspace_id,
            "subscription_id": stripe_id,
            "status": status.value,
        }

    def _resolve_plan_id(
        self,
        data: Mapping[str, Any],
        metadata: Mapping[str, Any],
        existing: Optional[Subscription],
    ) -> Optional[str]:
        if metadata.get("plan_id"):
            return metadata["plan_id"]
        price_id = _object_id(_first_item(data).get("price"))
        if price_id:
            plan = self.billing.get_plan_by_stripe_price(price_id)
            if plan:
                return plan.id
        return existing.plan_id if existing else None

    def _sync_paid_invoice(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        subscription, result = self._upsert_invoice(data)
        if subscription is None:
            return result

        plan = self.billing.get_plan(subscription.plan_id)
        if plan is None or plan.credit_count is None:
            return {**result, "credits_allocated": 0}

        allocation = self.ledger.allocate_subscription_credits(
            subscription.workspace_id, plan.credit_count, data["id"], "invoice"
        )
        if allocation is None:
            return {**result, "duplicate": True, "credits_allocated": 0}
        return {**result, "credits_allocated": plan.credit_count}

    def _sync_invoice_event(self, data: Mapping[str, Any], event_type: str) -> Dict[str, Any]:
        subscription, result = self._upsert_invoice(data)
        if subscription is not None and event_type == "invoice.payment_failed":
            self.billing.upsert_subscription(
                replace(subscription, status=SubscriptionStatus.PAST_DUE.value)
            )
            logger.warning(f"Invoice payment failed for subscription {subscription.stripe_subscription_id}")
        return result

    def _upsert_invoice(self, data: Mapping[str, Any]):
        """Mirror an invoice; returns its local subscription and a result dict."""
        stripe_subscription_id = _object_id(data.get("subscription")) or _object_id(
            ((data.get("parent") or {}).get("subscription_details") or {}).get("subscription")
        )
        if not stripe_subscription_id:
            logger.info(f"Invoice {data.get('id')} not associated with a subscription")
            return None, {"handled": False, "reason": "no_subscription"}

        subscription = self.billing.get_subscription_by_stripe_id(stripe_subscription_id)
        if subscription is None:
            logger.warning(f"Subscription not found: {stripe_subscription_id}")
            return None, {"handled": False, "reason": "subscription_not_found"}

        status = map_invoice_status(data.get("status"))
        self.billing.upsert_invoice(Invoice(
            id=str(uuid.uuid4()),
            workspace_id=subscription.workspace_id,
            status=status.value,
            amount_due_cents=data.get("amount_due") or 0,
            amount_paid_cents=data.get("amount_paid") or 0,
            currency=data.get("currency") or "usd",
            subscription_id=subscription.id,
            stripe_invoice_id=data["id"],
        ))
        return subscription, {
            "handled": True,
            "workspace_id": subscription.workspace_id,
            "invoice_id": data["id"],
            "status": status.value,
        }
