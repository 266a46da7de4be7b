"""
Repository functions for data access.

Every function takes an open connection so that callers can compose several
reads and writes into a single ``transaction``. Status-changing writes are
conditional: they only apply when the row still has the expected status and
version, and report whether they did.
"""

import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    Bounty,
    BountyStatus,
    DispatchOperation,
    EscrowRecord,
    EscrowStatus,
    OutboxEntry,
    OutboxState,
    PaymentStatus,
    PayoutEligibility,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS escrow_record (
    id TEXT PRIMARY KEY,
    parent_id TEXT REFERENCES escrow_record(id),
    bounty_id TEXT,
    business_id TEXT NOT NULL,
    business_email TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    currency TEXT NOT NULL,
    status TEXT NOT NULL,
    per_creator_amount INTEGER NOT NULL CHECK (per_creator_amount > 0),
    creator_count INTEGER NOT NULL CHECK (creator_count >= 1),
    gateway_customer_id TEXT,
    gateway_session_id TEXT,
    gateway_payment_reference_id TEXT,
    gateway_transfer_id TEXT,
    gateway_refund_id TEXT,
    creator_id TEXT,
    creator_earnings INTEGER,
    pending_bounty_payload TEXT,
    created_at TEXT NOT NULL,
    held_at TEXT,
    held_until TEXT,
    released_at TEXT,
    refunded_at TEXT,
    failure_reason TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    CHECK (pending_bounty_payload IS NULL OR bounty_id IS NULL)
);
CREATE INDEX IF NOT EXISTS idx_escrow_session ON escrow_record(gateway_session_id);
CREATE INDEX IF NOT EXISTS idx_escrow_bounty ON escrow_record(bounty_id);
CREATE INDEX IF NOT EXISTS idx_escrow_parent ON escrow_record(parent_id);

CREATE TABLE IF NOT EXISTS bounty (
    id TEXT PRIMARY KEY,
    business_id TEXT NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL,
    payment_status TEXT NOT NULL,
    escrow_payment_id TEXT,
    per_creator_amount INTEGER NOT NULL,
    max_creators INTEGER NOT NULL CHECK (max_creators >= 1),
    paid_creators_count INTEGER NOT NULL DEFAULT 0,
    total_paid_amount INTEGER NOT NULL DEFAULT 0,
    remaining_budget INTEGER NOT NULL,
    details TEXT,
    created_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    CHECK (paid_creators_count <= max_creators)
);

CREATE TABLE IF NOT EXISTS subscription_usage (
    user_id TEXT NOT NULL,
    period TEXT NOT NULL,
    applications_used INTEGER NOT NULL DEFAULT 0,
    bounties_created INTEGER NOT NULL DEFAULT 0,
    total_earnings INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (user_id, period)
);

CREATE TABLE IF NOT EXISTS payout_eligibility (
    creator_id TEXT PRIMARY KEY,
    account_reference TEXT NOT NULL,
    email TEXT,
    country TEXT,
    payouts_enabled INTEGER NOT NULL DEFAULT 0,
    charges_enabled INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS escrow_outbox (
    escrow_id TEXT PRIMARY KEY REFERENCES escrow_record(id),
    operation TEXT NOT NULL,
    idempotency_key TEXT NOT NULL UNIQUE,
    amount INTEGER NOT NULL,
    reason TEXT,
    state TEXT NOT NULL,
    gateway_reference TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    last_error TEXT
);
"""

USAGE_COLUMNS = ("applications_used", "bounties_created", "total_earnings")


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the engine tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _encode(value: Any) -> Any:
    """Convert a model value into its column representation."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (EscrowStatus, BountyStatus, PaymentStatus, OutboxState, DispatchOperation)):
        return value.value
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return value


def _set_clause(changes: Dict[str, Any], allowed: set) -> tuple:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Cannot update columns: {sorted(unknown)}")
    columns = sorted(changes)
    clause = ", ".join(f"{column} = ?" for column in columns)
    return clause, [_encode(changes[column]) for column in columns]


# ---------------------------------------------------------------------------
# Escrow records
# ---------------------------------------------------------------------------

ESCROW_MUTABLE_COLUMNS = {
    "bounty_id", "status", "gateway_customer_id", "gateway_session_id",
    "gateway_payment_reference_id", "gateway_transfer_id", "gateway_refund_id",
    "creator_id", "creator_earnings", "pending_bounty_payload", "held_at",
    "held_until", "released_at", "refunded_at", "failure_reason",
}


def _row_to_escrow(row: sqlite3.Row) -> EscrowRecord:
    payload = row["pending_bounty_payload"]
    return EscrowRecord(
        id=row["id"],
        parent_id=row["parent_id"],
        bounty_id=row["bounty_id"],
        business_id=row["business_id"],
        business_email=row["business_email"],
        amount=row["amount"],
        currency=row["currency"],
        status=EscrowStatus(row["status"]),
        per_creator_amount=row["per_creator_amount"],
        creator_count=row["creator_count"],
        gateway_customer_id=row["gateway_customer_id"],
        gateway_session_id=row["gateway_session_id"],
        gateway_payment_reference_id=row["gateway_payment_reference_id"],
        gateway_transfer_id=row["gateway_transfer_id"],
        gateway_refund_id=row["gateway_refund_id"],
        creator_id=row["creator_id"],
        creator_earnings=row["creator_earnings"],
        pending_bounty_payload=json.loads(payload) if payload is not None else None,
        created_at=_parse_ts(row["created_at"]),
        held_at=_parse_ts(row["held_at"]),
        held_until=_parse_ts(row["held_until"]),
        released_at=_parse_ts(row["released_at"]),
        refunded_at=_parse_ts(row["refunded_at"]),
        failure_reason=row["failure_reason"],
        version=row["version"],
    )


def insert_escrow(conn: sqlite3.Connection, record: EscrowRecord) -> None:
    """Persist a new escrow record."""
    conn.execute("""
        INSERT INTO escrow_record
        (id, parent_id, bounty_id, business_id, business_email, amount, currency,
         status, per_creator_amount, creator_count, gateway_customer_id,
         gateway_session_id, gateway_payment_reference_id, creator_id,
         creator_earnings, pending_bounty_payload, created_at, held_at,
         held_until, version)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        record.id,
        record.parent_id,
        record.bounty_id,
        record.business_id,
        record.business_email,
        record.amount,
        record.currency,
        record.status.value,
        record.per_creator_amount,
        record.creator_count,
        record.gateway_customer_id,
        record.gateway_session_id,
        record.gateway_payment_reference_id,
        record.creator_id,
        record.creator_earnings,
        _encode(record.pending_bounty_payload),
        _ts(record.created_at),
        _ts(record.held_at),
        _ts(record.held_until),
        record.version,
    ))


def get_escrow(conn: sqlite3.Connection, escrow_id: str) -> Optional[EscrowRecord]:
    row = conn.execute("SELECT * FROM escrow_record WHERE id = ?", (escrow_id,)).fetchone()
    return _row_to_escrow(row) if row else None


def get_escrow_by_session(conn: sqlite3.Connection, session_id: str) -> Optional[EscrowRecord]:
    """Find the funding record created for a checkout session."""
    row = conn.execute("""
        SELECT * FROM escrow_record
        WHERE gateway_session_id = ? AND parent_id IS NULL
    """, (session_id,)).fetchone()
    return _row_to_escrow(row) if row else None


def list_escrows(
    conn: sqlite3.Connection,
    business_id: Optional[str] = None,
    bounty_id: Optional[str] = None,
    parent_id: Optional[str] = None,
    status: Optional[EscrowStatus] = None,
) -> List[EscrowRecord]:
    """List escrow records with optional filtering, oldest first."""
    query = "SELECT * FROM escrow_record"
    params = []
    conditions = []

    if business_id:
        conditions.append("business_id = ?")
        params.append(business_id)
    if bounty_id:
        conditions.append("bounty_id = ?")
        params.append(bounty_id)
    if parent_id:
        conditions.append("parent_id = ?")
        params.append(parent_id)
    if status:
        conditions.append("status = ?")
        params.append(status.value)

    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY created_at, id"

    return [_row_to_escrow(row) for row in conn.execute(query, params).fetchall()]


def update_escrow(
    conn: sqlite3.Connection,
    escrow_id: str,
    expected_status: EscrowStatus,
    expected_version: int,
    **changes: Any,
) -> bool:
    """Apply changes only if the record is still in the expected state.

    Returns:
        True if the row was updated, False if another writer got there first
    """
    clause, params = _set_clause(changes, ESCROW_MUTABLE_COLUMNS)
    cursor = conn.execute(
        f"UPDATE escrow_record SET {clause}, version = version + 1 "
        "WHERE id = ? AND status = ? AND version = ?",
        params + [escrow_id, expected_status.value, expected_version],
    )
    return cursor.rowcount == 1


def count_open_tranches(conn: sqlite3.Connection, funding_id: str) -> int:
    """Payout records split from a funding record and not yet released."""
    row = conn.execute("""
        SELECT COUNT(*) FROM escrow_record
        WHERE parent_id = ? AND status = ?
    """, (funding_id, EscrowStatus.READY_FOR_RELEASE.value)).fetchone()
    return row[0]


def released_totals(conn: sqlite3.Connection, bounty_id: str) -> tuple:
    """Count and sum of creator earnings over released records of a bounty."""
    row = conn.execute("""
        SELECT COUNT(*), COALESCE(SUM(creator_earnings), 0)
        FROM escrow_record
        WHERE bounty_id = ? AND status = ? AND creator_id IS NOT NULL
    """, (bounty_id, EscrowStatus.RELEASED.value)).fetchone()
    return row[0], row[1]


# ---------------------------------------------------------------------------
# Bounties
# ---------------------------------------------------------------------------

BOUNTY_MUTABLE_COLUMNS = {
    "status", "payment_status", "escrow_payment_id", "per_creator_amount",
    "max_creators", "paid_creators_count", "total_paid_amount", "remaining_budget",
}


def _row_to_bounty(row: sqlite3.Row) -> Bounty:
    details = row["details"]
    return Bounty(
        id=row["id"],
        business_id=row["business_id"],
        title=row["title"],
        status=BountyStatus(row["status"]),
        payment_status=PaymentStatus(row["payment_status"]),
        escrow_payment_id=row["escrow_payment_id"],
        per_creator_amount=row["per_creator_amount"],
        max_creators=row["max_creators"],
        paid_creators_count=row["paid_creators_count"],
        total_paid_amount=row["total_paid_amount"],
        remaining_budget=row["remaining_budget"],
        details=json.loads(details) if details is not None else None,
        created_at=_parse_ts(row["created_at"]),
        version=row["version"],
    )


def insert_bounty(conn: sqlite3.Connection, bounty: Bounty) -> None:
    conn.execute("""
        INSERT INTO bounty
        (id, business_id, title, status, payment_status, escrow_payment_id,
         per_creator_amount, max_creators, paid_creators_count, total_paid_amount,
         remaining_budget, details, created_at, version)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        bounty.id,
        bounty.business_id,
        bounty.title,
        bounty.status.value,
        bounty.payment_status.value,
        bounty.escrow_payment_id,
        bounty.per_creator_amount,
        bounty.max_creators,
        bounty.paid_creators_count,
        bounty.total_paid_amount,
        bounty.remaining_budget,
        _encode(bounty.details),
        _ts(bounty.created_at),
        bounty.version,
    ))


def get_bounty(conn: sqlite3.Connection, bounty_id: str) -> Optional[Bounty]:
    row = conn.execute("SELECT * FROM bounty WHERE id = ?", (bounty_id,)).fetchone()
    return _row_to_bounty(row) if row else None


def list_bounties(conn: sqlite3.Connection, business_id: Optional[str] = None) -> List[Bounty]:
    if business_id:
        rows = conn.execute(
            "SELECT * FROM bounty WHERE business_id = ? ORDER BY created_at, id", (business_id,)
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM bounty ORDER BY created_at, id").fetchall()
    return [_row_to_bounty(row) for row in rows]


def update_bounty(
    conn: sqlite3.Connection,
    bounty_id: str,
    expected_version: int,
    **changes: Any,
) -> bool:
    """Apply changes only if the bounty has not been modified since it was read."""
    clause, params = _set_clause(changes, BOUNTY_MUTABLE_COLUMNS)
    cursor = conn.execute(
        f"UPDATE bounty SET {clause}, version = version + 1 WHERE id = ? AND version = ?",
        params + [bounty_id, expected_version],
    )
    return cursor.rowcount == 1


# ---------------------------------------------------------------------------
# Subscription usage
# ---------------------------------------------------------------------------

def get_usage_counters(conn: sqlite3.Connection, user_id: str, period: str) -> Dict[str, int]:
    """Counters for a user and period; zeros when the period has no record yet."""
    row = conn.execute("""
        SELECT applications_used, bounties_created, total_earnings
        FROM subscription_usage WHERE user_id = ? AND period = ?
    """, (user_id, period)).fetchone()
    if row is None:
        return {column: 0 for column in USAGE_COLUMNS}
    return {column: row[column] for column in USAGE_COLUMNS}


def increment_usage(
    conn: sqlite3.Connection,
    user_id: str,
    period: str,
    column: str,
    amount: int = 1,
    limit: Optional[int] = None,
) -> bool:
    """Increment one usage counter, creating the period record on first use.

    When ``limit`` is given (and not -1) the increment only applies while the
    counter is below it, so check and increment happen in one statement.

    Returns:
        True if the counter was incremented
    """
    if column not in USAGE_COLUMNS:
        raise ValueError(f"Unknown usage counter: {column}")
    if amount < 0:
        raise ValueError("Usage counters never decrease")

    conn.execute("""
        INSERT OR IGNORE INTO subscription_usage (user_id, period) VALUES (?, ?)
    """, (user_id, period))

    query = (
        f"UPDATE subscription_usage SET {column} = {column} + ?, version = version + 1 "
        "WHERE user_id = ? AND period = ?"
    )
    params = [amount, user_id, period]
    if limit is not None and limit != -1:
        query += f" AND {column} < ?"
        params.append(limit)
    return conn.execute(query, params).rowcount == 1


# ---------------------------------------------------------------------------
# Payout eligibility
# ---------------------------------------------------------------------------

def _row_to_eligibility(row: sqlite3.Row) -> PayoutEligibility:
    return PayoutEligibility(
        creator_id=row["creator_id"],
        has_payout_account=True,
        payouts_enabled=bool(row["payouts_enabled"]),
        charges_enabled=bool(row["charges_enabled"]),
        account_reference=row["account_reference"],
        updated_at=_parse_ts(row["updated_at"]),
    )


def get_eligibility(conn: sqlite3.Connection, creator_id: str) -> Optional[PayoutEligibility]:
    row = conn.execute(
        "SELECT * FROM payout_eligibility WHERE creator_id = ?", (creator_id,)
    ).fetchone()
    return _row_to_eligibility(row) if row else None


def get_eligibility_by_account(conn: sqlite3.Connection, account_reference: str) -> Optional[PayoutEligibility]:
    row = conn.execute(
        "SELECT * FROM payout_eligibility WHERE account_reference = ?", (account_reference,)
    ).fetchone()
    return _row_to_eligibility(row) if row else None


def insert_eligibility(
    conn: sqlite3.Connection,
    eligibility: PayoutEligibility,
    email: str,
    country: str,
) -> bool:
    """Store a creator's first payout account.

    Returns:
        False if the creator already had one (the existing row is kept)
    """
    cursor = conn.execute("""
        INSERT OR IGNORE INTO payout_eligibility
        (creator_id, account_reference, email, country, payouts_enabled,
         charges_enabled, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        eligibility.creator_id,
        eligibility.account_reference,
        email,
        country,
        int(eligibility.payouts_enabled),
        int(eligibility.charges_enabled),
        _ts(eligibility.updated_at),
    ))
    return cursor.rowcount == 1


def update_eligibility(
    conn: sqlite3.Connection,
    creator_id: str,
    payouts_enabled: bool,
    charges_enabled: bool,
    updated_at: datetime,
) -> None:
    conn.execute("""
        UPDATE payout_eligibility
        SET payouts_enabled = ?, charges_enabled = ?, updated_at = ?
        WHERE creator_id = ?
    """, (int(payouts_enabled), int(charges_enabled), _ts(updated_at), creator_id))


# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------

def _row_to_outbox(row: sqlite3.Row) -> OutboxEntry:
    return OutboxEntry(
        escrow_id=row["escrow_id"],
        operation=DispatchOperation(row["operation"]),
        idempotency_key=row["idempotency_key"],
        amount=row["amount"],
        reason=row["reason"],
        state=OutboxState(row["state"]),
        gateway_reference=row["gateway_reference"],
        created_at=_parse_ts(row["created_at"]),
        completed_at=_parse_ts(row["completed_at"]),
        last_error=row["last_error"],
    )


def insert_outbox(conn: sqlite3.Connection, entry: OutboxEntry) -> None:
    """Claim the single outbound call of an escrow record.

    Raises:
        sqlite3.IntegrityError: If the record already has a claimed call
    """
    conn.execute("""
        INSERT INTO escrow_outbox
        (escrow_id, operation, idempotency_key, amount, reason, state, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        entry.escrow_id,
        entry.operation.value,
        entry.idempotency_key,
        entry.amount,
        entry.reason,
        entry.state.value,
        _ts(entry.created_at),
    ))


def get_outbox(conn: sqlite3.Connection, escrow_id: str) -> Optional[OutboxEntry]:
    row = conn.execute("SELECT * FROM escrow_outbox WHERE escrow_id = ?", (escrow_id,)).fetchone()
    return _row_to_outbox(row) if row else None


def list_outbox(conn: sqlite3.Connection, state: Optional[OutboxState] = None) -> List[OutboxEntry]:
    if state is None:
        rows = conn.execute("SELECT * FROM escrow_outbox ORDER BY created_at").fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM escrow_outbox WHERE state = ? ORDER BY created_at", (state.value,)
        ).fetchall()
    return [_row_to_outbox(row) for row in rows]


def complete_outbox(
    conn: sqlite3.Connection,
    escrow_id: str,
    gateway_reference: str,
    completed_at: datetime,
) -> bool:
    cursor = conn.execute("""
        UPDATE escrow_outbox
        SET state = ?, gateway_reference = ?, completed_at = ?, last_error = NULL
        WHERE escrow_id = ? AND state = ?
    """, (
        OutboxState.COMPLETED.value,
        gateway_reference,
        _ts(completed_at),
        escrow_id,
        OutboxState.DISPATCHING.value,
    ))
    return cursor.rowcount == 1


def record_outbox_error(conn: sqlite3.Connection, escrow_id: str, error: str) -> None:
    conn.execute(
        "UPDATE escrow_outbox SET last_error = ? WHERE escrow_id = ?", (error, escrow_id)
    )


def delete_outbox(conn: sqlite3.Connection, escrow_id: str) -> None:
    """Drop a claim whose call was never dispatched."""
    conn.execute("""
        DELETE FROM escrow_outbox WHERE escrow_id = ? AND state = ?
    """, (escrow_id, OutboxState.DISPATCHING.value))
