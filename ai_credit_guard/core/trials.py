"""
Trial eligibility and status.

A workspace gets one trial in its lifetime. ``is_trialed`` is sticky: once set
it is never cleared, whatever happens to later subscriptions.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ..storage.models import SubscriptionStatus
from ..storage.repository import BillingRepository, WorkspaceRepository

ONE_DAY_SECONDS = 24 * 60 * 60

_BLOCKING_STATUSES = {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}


class TrialError(Exception):
    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class TrialEligibility:
    is_eligible: bool
    has_used_trial: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class TrialStatus:
    is_active: bool
    days_remaining: Optional[int] = None
    trial_end: Optional[datetime] = None


def calculate_days_remaining(trial_end: datetime, now: Optional[datetime] = None) -> int:
    """Whole days left until ``trial_end``, partial days rounded up, never negative."""
    now = now or datetime.now(timezone.utc)
    days = math.ceil((trial_end - now).total_seconds() / ONE_DAY_SECONDS)
    return max(0, days)


class TrialService:
    def __init__(self, workspaces: WorkspaceRepository, billing: BillingRepository):
        self.workspaces = workspaces
        self.billing = billing

    def check_trial_eligibility(self, workspace_id: str) -> TrialEligibility:
        """Decide whether a workspace may start a trial.

        Raises:
            TrialError: If the workspace does not exist
        """
        workspace = self.workspaces.get_workspace(workspace_id)
        if workspace is None:
            raise TrialError("Workspace not found", "WORKSPACE_NOT_FOUND")

        if workspace.is_trialed:
            return TrialEligibility(
                is_eligible=False,
                has_used_trial=True,
                reason="Workspace has already used trial period",
            )

        subscription = self.billing.get_subscription_by_workspace(workspace_id)
        if subscription and subscription.status in _BLOCKING_STATUSES:
            return TrialEligibility(
                is_eligible=False,
                has_used_trial=False,
                reason="Workspace already has an active subscription",
            )

        return TrialEligibility(is_eligible=True, has_used_trial=False)

    def mark_trial_as_used(self, workspace_id: str) -> None:
        if not self.workspaces.mark_trialed(workspace_id):
            raise TrialError("Workspace not found", "WORKSPACE_NOT_FOUND")

    def get_trial_status(self, workspace_id: str, now: Optional[datetime] = None) -> TrialStatus:
        subscription = self.billing.get_subscription_by_workspace(workspace_id)
        if (
            subscription is None
            or subscription.status != SubscriptionStatus.TRIALING.value
            or subscription.trial_end is None
        ):
            return TrialStatus(is_active=False)

        return TrialStatus(
            is_active=True,
            days_remaining=calculate_days_remaining(subscription.trial_end, now),
            trial_end=subscription.trial_end,
        )
