"""
Repository pattern for data access.

Handles database operations and data persistence logic for workspaces, the
credit audit trail, billing mirrors and usage events.
"""

import sqlite3
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    CreditTransaction,
    Invoice,
    Plan,
    Subscription,
    TransactionType,
    UsageEvent,
    Workspace,
)


SCHEMA = """
    CREATE TABLE IF NOT EXISTS workspace (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        credit_count INTEGER NOT NULL DEFAULT 0 CHECK (credit_count >= 0),
        allocated_credits INTEGER NOT NULL DEFAULT 0
            CHECK (allocated_credits >= 0 AND allocated_credits <= credit_count),
        is_trialed INTEGER NOT NULL DEFAULT 0,
        credits_adjusted_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS credit_transaction (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workspace_id TEXT NOT NULL REFERENCES workspace(id),
        amount INTEGER NOT NULL,
        type TEXT NOT NULL,
        balance_before INTEGER NOT NULL,
        balance_after INTEGER NOT NULL,
        reference_id TEXT,
        reference_type TEXT,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_credit_transaction_workspace
        ON credit_transaction (workspace_id, id);

    CREATE TABLE IF NOT EXISTS plan (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        price_cents INTEGER NOT NULL,
        interval TEXT NOT NULL,
        credit_count INTEGER,
        is_active INTEGER NOT NULL DEFAULT 1,
        stripe_price_id TEXT UNIQUE
    );

    CREATE TABLE IF NOT EXISTS subscription (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL UNIQUE REFERENCES workspace(id),
        plan_id TEXT NOT NULL REFERENCES plan(id),
        stripe_subscription_id TEXT UNIQUE,
        status TEXT NOT NULL,
        current_period_start TEXT NOT NULL,
        current_period_end TEXT NOT NULL,
        trial_end TEXT,
        cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS invoice (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL REFERENCES workspace(id),
        subscription_id TEXT REFERENCES subscription(id),
        stripe_invoice_id TEXT UNIQUE,
        status TEXT NOT NULL,
        amount_due_cents INTEGER NOT NULL,
        amount_paid_cents INTEGER NOT NULL,
        currency TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS usage_event (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        workspace_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        operation TEXT NOT NULL,
        prompt_tokens INTEGER NOT NULL,
        completion_tokens INTEGER NOT NULL,
        total_tokens INTEGER NOT NULL,
        credits_charged INTEGER NOT NULL,
        status TEXT NOT NULL,
        request_id TEXT
    );
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    The ``credit_transaction`` and ``usage_event`` tables are append-only
    ledgers. No UPDATE or DELETE operations should ever be performed on them.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Connection-scoped helpers used inside ledger transactions
# ---------------------------------------------------------------------------

def _row_to_workspace(row: sqlite3.Row) -> Workspace:
    return Workspace(
        id=row["id"],
        name=row["name"],
        credit_count=row["credit_count"],
        allocated_credits=row["allocated_credits"],
        is_trialed=bool(row["is_trialed"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def fetch_workspace(conn: sqlite3.Connection, workspace_id: str) -> Optional[Workspace]:
    """Read a workspace row on an open connection."""
    row = conn.execute(
        "SELECT * FROM workspace WHERE id = ?", (workspace_id,)
    ).fetchone()
    return _row_to_workspace(row) if row else None


def update_workspace_credits(
    conn: sqlite3.Connection,
    workspace_id: str,
    credit_count: int,
    allocated_credits: int,
    adjusted: bool = False,
) -> None:
    """Write both credit counters of a workspace on an open connection.

    Args:
        conn: Connection holding the write lock
        workspace_id: Workspace to update
        credit_count: New total credit count
        allocated_credits: New reserved credit count
        adjusted: Whether ``credit_count`` changed, which stamps
            ``credits_adjusted_at``
    """
    now = _now().isoformat()
    if adjusted:
        conn.execute(
            """
            UPDATE workspace
            SET credit_count = ?, allocated_credits = ?,
                credits_adjusted_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (credit_count, allocated_credits, now, now, workspace_id),
        )
    else:
        conn.execute(
            """
            UPDATE workspace
            SET credit_count = ?, allocated_credits = ?, updated_at = ?
            WHERE id = ?
            """,
            (credit_count, allocated_credits, now, workspace_id),
        )


def insert_credit_transaction(conn: sqlite3.Connection, tx: CreditTransaction) -> None:
    """Append one row to the credit audit trail on an open connection."""
    conn.execute(
        """
        INSERT INTO credit_transaction
        (workspace_id, amount, type, balance_before, balance_after,
         reference_id, reference_type, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            tx.workspace_id,
            tx.amount,
            tx.type.value,
            tx.balance_before,
            tx.balance_after,
            tx.reference_id,
            tx.reference_type,
            tx.created_at.isoformat(),
        ),
    )


def has_transaction_reference(
    conn: sqlite3.Connection,
    workspace_id: str,
    tx_type: TransactionType,
    reference_id: str,
    reference_type: Optional[str],
) -> bool:
    """Check whether a transaction with this reference was already recorded."""
    row = conn.execute(
        """
        SELECT 1 FROM credit_transaction
        WHERE workspace_id = ? AND type = ? AND reference_id = ?
              AND COALESCE(reference_type, '') = COALESCE(?, '')
        LIMIT 1
        """,
        (workspace_id, tx_type.value, reference_id, reference_type),
    ).fetchone()
    return row is not None


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

class WorkspaceRepository:
    """Repository for workspaces and their credit audit trail.

    Credit counters are only changed through the ledger; this class provisions
    workspaces and serves read-only views.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create_workspace(
        self,
        name: str,
        credit_count: int = 0,
        workspace_id: Optional[str] = None,
    ) -> Workspace:
        """Provision a workspace with an optional seeded credit balance.

        Args:
            name: Display name
            credit_count: Initial credits (plan-seeded amount or 0)
            workspace_id: Explicit id; a UUID is generated when omitted

        Returns:
            The created workspace

        Raises:
            ValueError: If the id already exists or credit_count is negative
        """
        if credit_count < 0:
            raise ValueError("credit_count cannot be negative")

        workspace_id = workspace_id or str(uuid.uuid4())
        now = _now()
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO workspace
                (id, name, credit_count, allocated_credits, is_trialed,
                 created_at, updated_at)
                VALUES (?, ?, ?, 0, 0, ?, ?)
                """,
                (workspace_id, name, credit_count, now.isoformat(), now.isoformat()),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ValueError(f"Workspace already exists: {workspace_id}") from e
        finally:
            conn.close()

        return Workspace(
            id=workspace_id,
            name=name,
            credit_count=credit_count,
            allocated_credits=0,
            created_at=now,
            updated_at=now,
        )

    def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        conn = get_connection(self.db_path)
        try:
            return fetch_workspace(conn, workspace_id)
        finally:
            conn.close()

    def mark_trialed(self, workspace_id: str) -> bool:
        """Set the sticky ``is_trialed`` flag.

        Returns:
            False if the workspace does not exist
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE workspace SET is_trialed = 1, updated_at = ? WHERE id = ?",
                (_now().isoformat(), workspace_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def list_transactions(
        self, workspace_id: str, limit: int = 100
    ) -> List[CreditTransaction]:
        """Get the audit trail of a workspace, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT id, workspace_id, amount, type, balance_before,
                       balance_after, reference_id, reference_type, created_at
                FROM credit_transaction
                WHERE workspace_id = ?
                ORDER BY id DESC LIMIT ?
                """,
                (workspace_id, limit),
            )
            return [
                CreditTransaction(
                    id=row["id"],
                    workspace_id=row["workspace_id"],
                    amount=row["amount"],
                    type=TransactionType(row["type"]),
                    balance_before=row["balance_before"],
                    balance_after=row["balance_after"],
                    reference_id=row["reference_id"],
                    reference_type=row["reference_type"],
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()


class BillingRepository:
    """Repository for plans, subscriptions and invoices."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def upsert_plan(self, plan: Plan) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO plan
                (id, name, price_cents, interval, credit_count, is_active, stripe_price_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    price_cents = excluded.price_cents,
                    interval = excluded.interval,
                    credit_count = excluded.credit_count,
                    is_active = excluded.is_active,
                    stripe_price_id = excluded.stripe_price_id
                """,
                (
                    plan.id,
                    plan.name,
                    plan.price_cents,
                    plan.interval,
                    plan.credit_count,
                    int(plan.is_active),
                    plan.stripe_price_id,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self._fetch_plan("SELECT * FROM plan WHERE id = ?", plan_id)

    def get_plan_by_stripe_price(self, stripe_price_id: str) -> Optional[Plan]:
        return self._fetch_plan(
            "SELECT * FROM plan WHERE stripe_price_id = ?", stripe_price_id
        )

    def _fetch_plan(self, query: str, key: str) -> Optional[Plan]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(query, (key,)).fetchone()
            if not row:
                return None
            return Plan(
                id=row["id"],
                name=row["name"],
                price_cents=row["price_cents"],
                interval=row["interval"],
                credit_count=row["credit_count"],
                is_active=bool(row["is_active"]),
                stripe_price_id=row["stripe_price_id"],
            )
        finally:
            conn.close()

    def upsert_subscription(self, subscription: Subscription) -> None:
        """Insert or update the subscription of a workspace.

        A workspace holds at most one subscription; the row is keyed by
        ``workspace_id``.
        """
        now = _now().isoformat()
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO subscription
                (id, workspace_id, plan_id, stripe_subscription_id, status,
                 current_period_start, current_period_end, trial_end,
                 cancel_at_period_end, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(workspace_id) DO UPDATE SET
                    plan_id = excluded.plan_id,
                    stripe_subscription_id = excluded.stripe_subscription_id,
                    status = excluded.status,
                    current_period_start = excluded.current_period_start,
                    current_period_end = excluded.current_period_end,
                    trial_end = excluded.trial_end,
                    cancel_at_period_end = excluded.cancel_at_period_end,
                    updated_at = excluded.updated_at
                """,
                (
                    subscription.id,
                    subscription.workspace_id,
                    subscription.plan_id,
                    subscription.stripe_subscription_id,
                    subscription.status,
                    subscription.current_period_start.isoformat(),
                    subscription.current_period_end.isoformat(),
                    subscription.trial_end.isoformat() if subscription.trial_end else None,
                    int(subscription.cancel_at_period_end),
                    now,
                    now,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self._fetch_subscription(
            "SELECT * FROM subscription WHERE id = ?", subscription_id
        )

    def get_subscription_by_workspace(self, workspace_id: str) -> Optional[Subscription]:
        return self._fetch_subscription(
            "SELECT * FROM subscription WHERE workspace_id = ?", workspace_id
        )

    def get_subscription_by_stripe_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        return self._fetch_subscription(
            "SELECT * FROM subscription WHERE stripe_subscription_id = ?",
            stripe_subscription_id,
        )

    def _fetch_subscription(self, query: str, key: str) -> Optional[Subscription]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(query, (key,)).fetchone()
            if not row:
                return None
            return Subscription(
                id=row["id"],
                workspace_id=row["workspace_id"],
                plan_id=row["plan_id"],
                status=row["status"],
                current_period_start=datetime.fromisoformat(row["current_period_start"]),
                current_period_end=datetime.fromisoformat(row["current_period_end"]),
                stripe_subscription_id=row["stripe_subscription_id"],
                trial_end=_parse_ts(row["trial_end"]),
                cancel_at_period_end=bool(row["cancel_at_period_end"]),
            )
        finally:
            conn.close()

    def upsert_invoice(self, invoice: Invoice) -> None:
        """Insert or update an invoice keyed by its Stripe id."""
        now = _now().isoformat()
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO invoice
                (id, workspace_id, subscription_id, stripe_invoice_id, status,
                 amount_due_cents, amount_paid_cents, currency, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(stripe_invoice_id) DO UPDATE SET
                    status = excluded.status,
                    amount_due_cents = excluded.amount_due_cents,
                    amount_paid_cents = excluded.amount_paid_cents,
                    updated_at = excluded.updated_at
                """,
                (
                    invoice.id,
                    invoice.workspace_id,
                    invoice.subscription_id,
                    invoice.stripe_invoice_id,
                    invoice.status,
                    invoice.amount_due_cents,
                    invoice.amount_paid_cents,
                    invoice.currency,
                    now,
                    now,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_invoice_by_stripe_id(self, stripe_invoice_id: str) -> Optional[Invoice]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM invoice WHERE stripe_invoice_id = ?",
                (stripe_invoice_id,),
            ).fetchone()
            if not row:
                return None
            return Invoice(
                id=row["id"],
                workspace_id=row["workspace_id"],
                status=row["status"],
                amount_due_cents=row["amount_due_cents"],
                amount_paid_cents=row["amount_paid_cents"],
                currency=row["currency"],
                subscription_id=row["subscription_id"],
                stripe_invoice_id=row["stripe_invoice_id"],
            )
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# Usage events
# ---------------------------------------------------------------------------

def insert_usage_event(event: UsageEvent, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single usage event into the append-only ledger.

    Args:
        event: The usage event to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO usage_event
            (timestamp, workspace_id, provider, model, operation, prompt_tokens,
             completion_tokens, total_tokens, credits_charged, status, request_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.timestamp.isoformat(),
            event.workspace_id,
            event.provider,
            event.model,
            event.operation,
            event.prompt_tokens,
            event.completion_tokens,
            event.total_tokens,
            event.credits_charged,
            event.status,
            event.request_id,
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_recent_usage_events(
    workspace_id: Optional[str] = None,
    provider: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[UsageEvent]:
    """Fetch recent usage events, optionally filtered by workspace and provider.

    Returns events in reverse chronological order (newest first).

    Args:
        workspace_id: Optional filter for a specific workspace
        provider: Optional filter for a specific provider
        limit: Maximum number of events to return
        db_path: Path to SQLite database file

    Returns:
        List of usage events ordered newest first
    """
    conn = get_connection(db_path)
    try:
        query = "SELECT * FROM usage_event"
        params = []
        conditions = []

        if workspace_id:
            conditions.append("workspace_id = ?")
            params.append(workspace_id)
        if provider:
            conditions.append("provider = ?")
            params.append(provider)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        events = []
        for row in cursor.fetchall():
            events.append(UsageEvent(
                timestamp=datetime.fromisoformat(row["timestamp"]),
                workspace_id=row["workspace_id"],
                provider=row["provider"],
                model=row["model"],
                operation=row["operation"],
                prompt_tokens=row["prompt_tokens"],
                completion_tokens=row["completion_tokens"],
                total_tokens=row["total_tokens"],
                credits_charged=row["credits_charged"],
                status=row["status"],
                request_id=row["request_id"],
            ))
        return events
    finally:
        conn.close()
