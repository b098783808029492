"""
Daily-rate proration for mid-period plan changes.

All amounts are integer cents. Intermediate values are computed with Decimal
and rounded half-up once, so an upgrade charge and the matching downgrade
credit are always the same number of cents.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from ..storage.models import Plan
from ..storage.repository import BillingRepository

ONE_DAY = timedelta(days=1)


class ProrationError(Exception):
    """Raised when a plan change cannot be prorated.

    Attributes:
        code: One of SUBSCRIPTION_NOT_FOUND, PLAN_NOT_FOUND, PLAN_INACTIVE,
            INTERVAL_MISMATCH, CALCULATION_FAILED
    """

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ProrationCalculation:
    current_plan_price: int
    new_plan_price: int
    days_remaining: int
    total_days_in_period: int
    prorated_amount: int  # charge for the rest of the period, cents
    credit_amount: int    # credit for the rest of the period, cents


@dataclass(frozen=True)
class ProrationDetails:
    is_upgrade: bool
    current_plan: Plan
    new_plan: Plan
    calculation: ProrationCalculation
    immediate_charge: int
    next_billing_amount: int
    effective_date: datetime


@dataclass(frozen=True)
class LineItem:
    label: str
    amount: int
    description: str


@dataclass(frozen=True)
class ProrationBreakdown:
    summary: str
    items: List[LineItem]


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _share(price_cents: int, days_remaining: int, total_days: int) -> int:
    """Cents of ``price_cents`` attributable to the remaining days."""
    return _round_cents(Decimal(price_cents) * days_remaining / total_days)


def prorate_days(
    current_price_cents: int,
    new_price_cents: int,
    days_remaining: int,
    total_days: int,
) -> ProrationCalculation:
    """Prorate a price change over whole days.

    Raises:
        ValueError: If total_days is not positive, days_remaining is negative
            or a price is negative
    """
    if total_days <= 0:
        raise ValueError("total_days must be > 0")
    if days_remaining < 0:
        raise ValueError("days_remaining cannot be negative")
    if current_price_cents < 0 or new_price_cents < 0:
        raise ValueError("prices cannot be negative")

    difference = Decimal(new_price_cents - current_price_cents) * days_remaining / total_days
    return ProrationCalculation(
        current_plan_price=current_price_cents,
        new_plan_price=new_price_cents,
        days_remaining=days_remaining,
        total_days_in_period=total_days,
        prorated_amount=max(0, _round_cents(difference)),
        credit_amount=max(0, _round_cents(-difference)),
    )


def calculate_daily_proration(
    current_price_cents: int,
    new_price_cents: int,
    period_start: datetime,
    period_end: datetime,
    change_date: datetime,
) -> ProrationCalculation:
    """Prorate a plan change made at ``change_date`` within a billing period.

    Partial days count as whole days. The remaining days are clamped to
    ``[0, total_days]``.
    """
    total_days = math.ceil((period_end - period_start) / ONE_DAY)
    if total_days <= 0:
        raise ValueError("period_end must be after period_start")
    days_remaining = math.ceil((period_end - change_date) / ONE_DAY)
    days_remaining = min(total_days, max(0, days_remaining))
    return prorate_days(current_price_cents, new_price_cents, days_remaining, total_days)


class ProrationService:
    """Previews the cost of moving a subscription to another plan."""

    def __init__(self, repository: BillingRepository):
        self.repository = repository

    def calculate_proration(
        self,
        subscription_id: str,
        new_plan_id: str,
        now: Optional[datetime] = None,
    ) -> ProrationDetails:
        """Compute the charge or credit of a plan change.

        Upgrades are charged immediately and take effect now. Downgrades take
        effect at the end of the period and their credit reduces the next bill.

        Raises:
            ProrationError: With the code describing why the change is invalid
        """
        now = now or datetime.now(timezone.utc)

        subscription = self.repository.get_subscription(subscription_id)
        if subscription is None:
            raise ProrationError("Subscription not found", "SUBSCRIPTION_NOT_FOUND")

        current_plan = self.repository.get_plan(subscription.plan_id)
        new_plan = self.repository.get_plan(new_plan_id)
        if current_plan is None or new_plan is None:
            raise ProrationError("Plan not found", "PLAN_NOT_FOUND")
        if not new_plan.is_active:
            raise ProrationError("Plan is not active", "PLAN_INACTIVE")
        if current_plan.interval != new_plan.interval:
            raise ProrationError(
                "Cannot change between different billing intervals", "INTERVAL_MISMATCH"
            )

        try:
            calculation = calculate_daily_proration(
                current_plan.price_cents,
                new_plan.price_cents,
                subscription.current_period_start,
                subscription.current_period_end,
                now,
            )
        except (ValueError, TypeError) as e:
            raise ProrationError(
                f"Failed to calculate proration: {e}", "CALCULATION_FAILED"
            ) from e

        is_upgrade = new_plan.price_cents > current_plan.price_cents
        return ProrationDetails(
            is_upgrade=is_upgrade,
            current_plan=current_plan,
            new_plan=new_plan,
            calculation=calculation,
            immediate_charge=calculation.prorated_amount if is_upgrade else 0,
            next_billing_amount=(
                new_plan.price_cents if is_upgrade
                else new_plan.price_cents - calculation.credit_amount
            ),
            effective_date=now if is_upgrade else subscription.current_period_end,
        )


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) / 100:.2f}"


def format_proration_breakdown(details: ProrationDetails) -> ProrationBreakdown:
    """Human-readable summary and line items of a proration preview."""
    calc = details.calculation
    unused = _share(calc.current_plan_price, calc.days_remaining, calc.total_days_in_period)
    effective = details.effective_date.date().isoformat()

    if details.is_upgrade:
        items = [
            LineItem(
                "Current Plan (Unused)", -unused,
                f"Credit for {calc.days_remaining} unused days",
            ),
            LineItem(
                "New Plan (Prorated)",
                _share(calc.new_plan_price, calc.days_remaining, calc.total_days_in_period),
                f"Charge for {calc.days_remaining} days at new rate",
            ),
            LineItem("Immediate Charge", details.immediate_charge, "Due today"),
        ]
        summary = (
            f"Upgrading to {details.new_plan.name}. You'll be charged "
            f"{format_cents(details.immediate_charge)} today for the remaining "
            f"{calc.days_remaining} days."
        )
    else:
        items = [
            LineItem(
                "Current Plan (Unused)", unused,
                f"Credit for {calc.days_remaining} unused days",
            ),
            LineItem("Credit Applied", -calc.credit_amount, "Applied to next billing cycle"),
            LineItem("Next Billing Amount", details.next_billing_amount, f"Effective {effective}"),
        ]
        summary = (
            f"Downgrading to {details.new_plan.name}. Your plan will change on "
            f"{effective} and you'll receive a {format_cents(calc.credit_amount)} credit."
        )

    return ProrationBreakdown(summary=summary, items=items)
