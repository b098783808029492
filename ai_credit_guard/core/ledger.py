"""
Credit ledger with two-phase reserve-then-settle accounting.

A workspace owns ``credit_count`` credits of which ``allocated_credits`` are
reserved for in-flight operations. The cost of an operation is reserved with
``allocate_credits`` before it runs and settled afterwards with
``consume_credits`` (actual cost) and ``release_credits`` (unused remainder).

Every mutation runs inside a single SQLite transaction opened with
``BEGIN IMMEDIATE``. The reserved lock serialises concurrent writers, so two
allocations can never both observe the same available balance. Any failure
rolls the transaction back, leaving the ledger untouched.

Invariant after every operation: ``0 <= allocated_credits <= credit_count``.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple, TypeVar

from ai_credit_guard.storage.db import DEFAULT_DB_PATH, get_connection
from ai_credit_guard.storage.models import CreditTransaction, TransactionType, Workspace
from ai_credit_guard.storage.repository import (
    WorkspaceRepository,
    fetch_workspace,
    has_transaction_reference,
    insert_credit_transaction,
    update_workspace_credits,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CreditLedgerError(Exception):
    """Base class for credit ledger failures."""


class InvalidAmountError(CreditLedgerError, ValueError):
    """Raised when a credit amount is not a positive integer."""


class WorkspaceNotFoundError(CreditLedgerError, LookupError):
    """Raised when the workspace row does not exist."""

    def __init__(self, workspace_id: str):
        super().__init__(f"Workspace not found: {workspace_id}")
        self.workspace_id = workspace_id


class InsufficientCreditsError(CreditLedgerError):
    """Raised when the available balance cannot cover an allocation."""

    def __init__(self, workspace_id: str, required: int, available: int):
        super().__init__(
            f"Insufficient credits: required {required}, available {available}"
        )
        self.workspace_id = workspace_id
        self.required = required
        self.available = available


class AllocationExceededError(CreditLedgerError):
    """Raised when settling more credits than are currently reserved."""

    def __init__(self, workspace_id: str, requested: int, allocated: int, action: str):
        super().__init__(
            f"Cannot {action} more than allocated: requested {requested}, "
            f"allocated {allocated}"
        )
        self.workspace_id = workspace_id
        self.requested = requested
        self.allocated = allocated


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of a reservation."""
    allocation_id: str
    workspace_id: str
    amount: int
    remaining_credits: int  # available after the operation


@dataclass(frozen=True)
class CreditResult:
    """Outcome of a consume, release or refund."""
    workspace_id: str
    amount: int
    remaining_credits: int


@dataclass(frozen=True)
class CreditBalance:
    total: int
    allocated: int
    available: int


def validate_amount(amount: int) -> None:
    """Reject anything but a positive integer credit amount.

    Raises:
        InvalidAmountError: If amount is not an int or is <= 0
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError("Credit amount must be an integer")
    if amount <= 0:
        raise InvalidAmountError("Credit amount must be positive")


def _new_allocation_id() -> str:
    return f"alloc_{uuid.uuid4().hex}"


class CreditLedger:
    """Credit accounting for workspaces backed by SQLite.

    Usage:
        ledger = CreditLedger(db_path)

        allocation = ledger.allocate_credits(workspace_id, estimate)
        try:
            actual = run_generation()
        except Exception:
            ledger.release_credits(workspace_id, estimate)
            raise
        ledger.settle_credits(workspace_id, estimate, actual)
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self.workspaces = WorkspaceRepository(db_path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _require_workspace(self, workspace_id: str) -> Workspace:
        workspace = self.workspaces.get_workspace(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(workspace_id)
        return workspace

    def validate_credits(self, workspace_id: str, amount: int) -> bool:
        """Check whether the workspace can currently reserve ``amount``."""
        validate_amount(amount)
        return self._require_workspace(workspace_id).has_available_credits(amount)

    def get_credit_balance(self, workspace_id: str) -> CreditBalance:
        workspace = self._require_workspace(workspace_id)
        return CreditBalance(
            total=workspace.credit_count,
            allocated=workspace.allocated_credits,
            available=workspace.available_credits,
        )

    def list_transactions(self, workspace_id: str, limit: int = 100) -> List[CreditTransaction]:
        self._require_workspace(workspace_id)
        return self.workspaces.list_transactions(workspace_id, limit)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def allocate_credits(
        self,
        workspace_id: str,
        amount: int,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> AllocationResult:
        """Reserve credits for an upcoming operation.

        Raises:
            InvalidAmountError: If amount is not a positive integer
            WorkspaceNotFoundError: If the workspace does not exist
            InsufficientCreditsError: If available credits are below amount
        """
        validate_amount(amount)

        def apply(conn: sqlite3.Connection, workspace: Workspace) -> AllocationResult:
            workspace, allocation_id = self._allocate(
                conn, workspace, amount, reference_id, reference_type
            )
            return AllocationResult(
                allocation_id=allocation_id,
                workspace_id=workspace_id,
                amount=amount,
                remaining_credits=workspace.available_credits,
            )

        result = self._mutate(workspace_id, apply)
        logger.info(
            f"Allocated {amount} credits for {workspace_id} "
            f"({result.allocation_id}), {result.remaining_credits} available"
        )
        return result

    def consume_credits(
        self,
        workspace_id: str,
        amount: int,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> CreditResult:
        """Settle a reservation at its actual cost.

        Removes ``amount`` from both the allocated and the total credits.

        Raises:
            AllocationExceededError: If amount exceeds allocated credits
        """
        validate_amount(amount)

        def apply(conn: sqlite3.Connection, workspace: Workspace) -> CreditResult:
            workspace = self._consume(conn, workspace, amount, reference_id, reference_type)
            return CreditResult(workspace_id, amount, workspace.credit_count)

        result = self._mutate(workspace_id, apply)
        logger.info(
            f"Consumed {amount} credits for {workspace_id}, "
            f"{result.remaining_credits} remaining"
        )
        return result

    def release_credits(
        self,
        workspace_id: str,
        amount: int,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> CreditResult:
        """Return reserved credits to the available pool without charging them.

        Raises:
            AllocationExceededError: If amount exceeds allocated credits
        """
        validate_amount(amount)

        def apply(conn: sqlite3.Connection, workspace: Workspace) -> CreditResult:
            workspace = self._release(conn, workspace, amount, reference_id, reference_type)
            return CreditResult(workspace_id, amount, workspace.available_credits)

        result = self._mutate(workspace_id, apply)
        logger.info(
            f"Released {amount} credits for {workspace_id}, "
            f"{result.remaining_credits} available"
        )
        return result

    def settle_credits(
        self,
        workspace_id: str,
        reserved: int,
        actual: int,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> CreditResult:
        """Settle a reservation in one transaction.

        Consumes ``actual`` and releases the rest of ``reserved``. When the
        actual cost is higher, the shortfall is reserved first; if the
        available balance cannot cover it the charge is capped at
        ``reserved``. Either the whole settlement is applied or none of it.

        Returns:
            CreditResult whose amount is the number of credits charged

        Raises:
            InvalidAmountError: If reserved is not positive or actual is negative
            AllocationExceededError: If reserved exceeds allocated credits
        """
        validate_amount(reserved)
        if isinstance(actual, bool) or not isinstance(actual, int) or actual < 0:
            raise InvalidAmountError("Actual cost must be a non-negative integer")

        def apply(conn: sqlite3.Connection, workspace: Workspace) -> CreditResult:
            held, charged = reserved, actual
            if charged > held:
                shortfall = charged - held
                if workspace.has_available_credits(shortfall):
                    workspace, _ = self._allocate(
                        conn, workspace, shortfall, reference_id, reference_type
                    )
                    held = charged
                else:
                    logger.warning(
                        f"Actual cost {charged} exceeds reservation {held} for "
                        f"{workspace_id} and cannot be covered, capping charge"
                    )
                    charged = held

            if charged > 0:
                workspace = self._consume(conn, workspace, charged, reference_id, reference_type)
            if held > charged:
                workspace = self._release(
                    conn, workspace, held - charged, reference_id, reference_type
                )
            return CreditResult(workspace_id, charged, workspace.credit_count)

        result = self._mutate(workspace_id, apply)
        logger.info(
            f"Settled {workspace_id} reservation of {reserved} at {result.amount} credits, "
            f"{result.remaining_credits} remaining"
        )
        return result

    def deduct_credits(
        self,
        workspace_id: str,
        amount: int,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> AllocationResult:
        """Allocate and immediately consume credits for a known cost.

        Both steps share one transaction, so a failed deduction leaves neither
        an allocation nor a consumption behind.
        """
        validate_amount(amount)

        def apply(conn: sqlite3.Connection, workspace: Workspace) -> AllocationResult:
            workspace, allocation_id = self._allocate(
                conn, workspace, amount, reference_id, reference_type
            )
            workspace = self._consume(
                conn, workspace, amount,
                reference_id or allocation_id, reference_type,
            )
            return AllocationResult(
                allocation_id=allocation_id,
                workspace_id=workspace_id,
                amount=amount,
                remaining_credits=workspace.credit_count,
            )

        result = self._mutate(workspace_id, apply)
        logger.info(
            f"Deducted {amount} credits for {workspace_id}, "
            f"{result.remaining_credits} remaining"
        )
        return result

    def refund_credits(
        self,
        workspace_id: str,
        amount: int,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> CreditResult:
        """Add credits back after a consumed operation turned out to fail."""
        validate_amount(amount)

        def apply(conn: sqlite3.Connection, workspace: Workspace) -> CreditResult:
            updated = replace(workspace, credit_count=workspace.credit_count + amount)
            update_workspace_credits(
                conn, workspace.id, updated.credit_count, updated.allocated_credits,
                adjusted=True,
            )
            self._record(
                conn, workspace, updated, amount, TransactionType.REFUND,
                reference_id, reference_type,
            )
            return CreditResult(workspace_id, amount, updated.credit_count)

        result = self._mutate(workspace_id, apply)
        logger.info(
            f"Refunded {amount} credits to {workspace_id}, "
            f"{result.remaining_credits} total"
        )
        return result

    def allocate_subscription_credits(
        self,
        workspace_id: str,
        plan_credits: int,
        reference_id: str,
        reference_type: str = "invoice",
    ) -> Optional[CreditResult]:
        """Reset the available balance to a plan's credit allowance.

        Outstanding reservations are kept, so the new total is
        ``allocated_credits + plan_credits``. Applying the same reference twice
        is a no-op.

        Returns:
            None if this reference was already applied
        """
        if isinstance(plan_credits, bool) or not isinstance(plan_credits, int) or plan_credits < 0:
            raise InvalidAmountError("Plan credits must be a non-negative integer")

        def apply(conn: sqlite3.Connection, workspace: Workspace) -> Optional[CreditResult]:
            if has_transaction_reference(
                conn, workspace.id, TransactionType.SUBSCRIPTION_ALLOCATION,
                reference_id, reference_type,
            ):
                return None
            updated = replace(
                workspace, credit_count=workspace.allocated_credits + plan_credits
            )
            update_workspace_credits(
                conn, workspace.id, updated.credit_count, updated.allocated_credits,
                adjusted=True,
            )
            self._record(
                conn, workspace, updated,
                updated.credit_count - workspace.credit_count,
                TransactionType.SUBSCRIPTION_ALLOCATION,
                reference_id, reference_type,
            )
            return CreditResult(workspace_id, plan_credits, updated.credit_count)

        result = self._mutate(workspace_id, apply)
        if result is None:
            logger.info(f"Subscription credits for {reference_id} already applied to {workspace_id}")
        else:
            logger.info(
                f"Subscription allocation for {workspace_id}: "
                f"{plan_credits} credits available ({reference_id})"
            )
        return result

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    def _mutate(
        self,
        workspace_id: str,
        apply: Callable[[sqlite3.Connection, Workspace], T],
    ) -> T:
        """Run ``apply`` against the locked workspace row and commit."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            workspace = fetch_workspace(conn, workspace_id)
            if workspace is None:
                raise WorkspaceNotFoundError(workspace_id)
            result = apply(conn, workspace)
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _allocate(
        self,
        conn: sqlite3.Connection,
        workspace: Workspace,
        amount: int,
        reference_id: Optional[str],
        reference_type: Optional[str],
    ) -> Tuple[Workspace, str]:
        if not workspace.has_available_credits(amount):
            logger.warning(
                f"Insufficient credits for {workspace.id}: "
                f"required {amount}, available {workspace.available_credits}"
            )
            raise InsufficientCreditsError(
                workspace.id, amount, workspace.available_credits
            )

        allocation_id = _new_allocation_id()
        updated = replace(
            workspace, allocated_credits=workspace.allocated_credits + amount
        )
        update_workspace_credits(
            conn, workspace.id, updated.credit_count, updated.allocated_credits
        )
        if reference_id is None:
            reference_id, reference_type = allocation_id, "allocation"
        self._record(
            conn, workspace, updated, -amount, TransactionType.ALLOCATION,
            reference_id, reference_type,
        )
        return updated, allocation_id

    def _consume(
        self,
        conn: sqlite3.Connection,
        workspace: Workspace,
        amount: int,
        reference_id: Optional[str],
        reference_type: Optional[str],
    ) -> Workspace:
        if amount > workspace.allocated_credits:
            raise AllocationExceededError(
                workspace.id, amount, workspace.allocated_credits, "consume"
            )
        updated = replace(
            workspace,
            credit_count=workspace.credit_count - amount,
            allocated_credits=workspace.allocated_credits - amount,
        )
        update_workspace_credits(
            conn, workspace.id, updated.credit_count, updated.allocated_credits,
            adjusted=True,
        )
        self._record(
            conn, workspace, updated, -amount, TransactionType.CONSUMPTION,
            reference_id, reference_type,
        )
        return updated

    def _release(
        self,
        conn: sqlite3.Connection,
        workspace: Workspace,
        amount: int,
        reference_id: Optional[str],
        reference_type: Optional[str],
    ) -> Workspace:
        if amount > workspace.allocated_credits:
            raise AllocationExceededError(
                workspace.id, amount, workspace.allocated_credits, "release"
            )
        updated = replace(
            workspace, allocated_credits=workspace.allocated_credits - amount
        )
        update_workspace_credits(
            conn, workspace.id, updated.credit_count, updated.allocated_credits
        )
        self._record(
            conn, workspace, updated, amount, TransactionType.RELEASE,
            reference_id, reference_type,
        )
        return updated

    @staticmethod
    def _record(
        conn: sqlite3.Connection,
        before: Workspace,
        after: Workspace,
        amount: int,
        tx_type: TransactionType,
        reference_id: Optional[str],
        reference_type: Optional[str],
    ) -> None:
        insert_credit_transaction(conn, CreditTransaction(
            workspace_id=before.id,
            amount=amount,
            type=tx_type,
            balance_before=before.credit_count,
            balance_after=after.credit_count,
            reference_id=reference_id,
            reference_type=reference_type,
            created_at=datetime.now(timezone.utc),
        ))
