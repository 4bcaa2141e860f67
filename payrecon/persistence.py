from __future__ import annotations

import sqlite3
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from payrecon.config import DEFAULT_POLICY, MatchingPolicy
from payrecon.errors import (
    AllocationNotFoundError,
    AllocationWriteError,
    InvoiceNotFoundError,
    InvoiceUpdateError,
    LedgerUnavailableError,
)
from payrecon.models import (
    Allocation,
    Invoice,
    InvoiceStatus,
    Payment,
    to_decimal,
)


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


def get_conn(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: Path) -> None:
    with get_conn(db_path) as conn:
        # Amounts are TEXT so Decimal values survive the round trip exactly.
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS payments (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                customer_id TEXT NOT NULL,
                payment_number TEXT,
                amount TEXT NOT NULL,
                payment_date TEXT NOT NULL,
                payment_method TEXT,
                reference TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS invoices (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                customer_id TEXT NOT NULL,
                invoice_number TEXT,
                invoice_date TEXT NOT NULL,
                due_date TEXT,
                total_amount TEXT NOT NULL,
                paid_amount TEXT NOT NULL DEFAULT '0',
                balance_due TEXT NOT NULL DEFAULT '0',
                status TEXT NOT NULL DEFAULT 'draft'
                    CHECK (status IN ('draft', 'partial', 'paid')),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS payment_allocations (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                payment_id TEXT NOT NULL,
                invoice_id TEXT NOT NULL,
                amount_allocated TEXT NOT NULL
                    CHECK (CAST(amount_allocated AS REAL) > 0),
                created_at TEXT NOT NULL,
                FOREIGN KEY (payment_id) REFERENCES payments(id),
                FOREIGN KEY (invoice_id) REFERENCES invoices(id)
            );

            CREATE INDEX IF NOT EXISTS idx_payments_company ON payments(company_id);
            CREATE INDEX IF NOT EXISTS idx_invoices_company ON invoices(company_id);
            CREATE INDEX IF NOT EXISTS idx_allocations_invoice ON payment_allocations(invoice_id);
            CREATE INDEX IF NOT EXISTS idx_allocations_payment ON payment_allocations(payment_id);

            CREATE TABLE IF NOT EXISTS matching_policies (
                company_id TEXT PRIMARY KEY,
                lookback_days INTEGER NOT NULL,
                amount_tolerance TEXT NOT NULL,
                max_candidates INTEGER,
                note TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                company_id TEXT,
                event_type TEXT NOT NULL,
                action TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                actor TEXT NOT NULL,
                detail TEXT,
                old_value TEXT,
                new_value TEXT,
                created_at TEXT NOT NULL
            );
            """
        )


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

def _parse_date(value: str | None) -> date | None:
    return None if not value else date.fromisoformat(value)


def _payment_from_row(row: sqlite3.Row) -> Payment:
    return Payment(
        id=row["id"],
        customer_id=row["customer_id"],
        amount=to_decimal(row["amount"]),
        payment_date=date.fromisoformat(row["payment_date"]),
        reference=row["reference"],
        payment_number=row["payment_number"],
        payment_method=row["payment_method"],
    )


def _invoice_from_row(row: sqlite3.Row) -> Invoice:
    return Invoice(
        id=row["id"],
        customer_id=row["customer_id"],
        invoice_number=row["invoice_number"],
        invoice_date=date.fromisoformat(row["invoice_date"]),
        due_date=_parse_date(row["due_date"]),
        total_amount=to_decimal(row["total_amount"]),
        paid_amount=to_decimal(row["paid_amount"]),
        balance_due=to_decimal(row["balance_due"]),
        status=InvoiceStatus(row["status"]),
    )


def _allocation_from_row(row: sqlite3.Row) -> Allocation:
    return Allocation(
        id=row["id"],
        payment_id=row["payment_id"],
        invoice_id=row["invoice_id"],
        amount_allocated=to_decimal(row["amount_allocated"]),
        created_at=row["created_at"],
    )


# ---------------------------------------------------------------------------
# Source records (written by the surrounding application; used here for seeding)
# ---------------------------------------------------------------------------

def insert_payment(db_path: Path, scope: str, payment: Payment) -> None:
    with get_conn(db_path) as conn:
        conn.execute(
            """
            INSERT INTO payments(
                id, company_id, customer_id, payment_number, amount,
                payment_date, payment_method, reference, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                payment.id,
                scope,
                payment.customer_id,
                payment.payment_number,
                str(payment.amount),
                payment.payment_date.isoformat(),
                payment.payment_method,
                payment.reference,
                utc_now(),
            ),
        )


def insert_invoice(db_path: Path, scope: str, invoice: Invoice) -> None:
    now = utc_now()
    with get_conn(db_path) as conn:
        conn.execute(
            """
            INSERT INTO invoices(
                id, company_id, customer_id, invoice_number, invoice_date, due_date,
                total_amount, paid_amount, balance_due, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                invoice.id,
                scope,
                invoice.customer_id,
                invoice.invoice_number,
                invoice.invoice_date.isoformat(),
                invoice.due_date.isoformat() if invoice.due_date else None,
                str(invoice.total_amount),
                str(invoice.paid_amount),
                str(invoice.balance_due),
                invoice.status.value,
                now,
                now,
            ),
        )


# ---------------------------------------------------------------------------
# Ledger reads
# ---------------------------------------------------------------------------

def load_payments(db_path: Path, scope: str) -> list[Payment]:
    try:
        with get_conn(db_path) as conn:
            rows = conn.execute(
                """
                SELECT id, customer_id, payment_number, amount, payment_date,
                       payment_method, reference
                FROM payments
                WHERE company_id = ?
                ORDER BY payment_date ASC, id ASC
                """,
                (scope,),
            ).fetchall()
    except sqlite3.Error as exc:
        raise LedgerUnavailableError(f"cannot load payments for {scope}: {exc}") from exc
    return [_payment_from_row(r) for r in rows]


def load_invoices(db_path: Path, scope: str) -> list[Invoice]:
    try:
        with get_conn(db_path) as conn:
            rows = conn.execute(
                """
                SELECT id, customer_id, invoice_number, invoice_date, due_date,
                       total_amount, paid_amount, balance_due, status
                FROM invoices
                WHERE company_id = ?
                ORDER BY invoice_date ASC, id ASC
                """,
                (scope,),
            ).fetchall()
    except sqlite3.Error as exc:
        raise LedgerUnavailableError(f"cannot load invoices for {scope}: {exc}") from exc
    return [_invoice_from_row(r) for r in rows]


def load_allocations(db_path: Path, scope: str) -> list[Allocation]:
    try:
        with get_conn(db_path) as conn:
            rows = conn.execute(
                """
                SELECT id, payment_id, invoice_id, amount_allocated, created_at
                FROM payment_allocations
                WHERE company_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (scope,),
            ).fetchall()
    except sqlite3.Error as exc:
        raise LedgerUnavailableError(f"cannot load allocations for {scope}: {exc}") from exc
    return [_allocation_from_row(r) for r in rows]


def load_invoice(db_path: Path, scope: str, invoice_id: str) -> Invoice:
    try:
        with get_conn(db_path) as conn:
            row = conn.execute(
                """
                SELECT id, customer_id, invoice_number, invoice_date, due_date,
                       total_amount, paid_amount, balance_due, status
                FROM invoices
                WHERE company_id = ? AND id = ?
                """,
                (scope, invoice_id),
            ).fetchone()
    except sqlite3.Error as exc:
        raise LedgerUnavailableError(f"cannot load invoice {invoice_id}: {exc}") from exc
    if row is None:
        raise InvoiceNotFoundError(scope, invoice_id)
    return _invoice_from_row(row)


def load_invoice_allocations(db_path: Path, scope: str, invoice_id: str) -> list[Allocation]:
    try:
        with get_conn(db_path) as conn:
            rows = conn.execute(
                """
                SELECT id, payment_id, invoice_id, amount_allocated, created_at
                FROM payment_allocations
                WHERE company_id = ? AND invoice_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (scope, invoice_id),
            ).fetchall()
    except sqlite3.Error as exc:
        raise LedgerUnavailableError(f"cannot load allocations for invoice {invoice_id}: {exc}") from exc
    return [_allocation_from_row(r) for r in rows]


# ---------------------------------------------------------------------------
# Ledger writes
# ---------------------------------------------------------------------------

def _insert_audit(
    conn: sqlite3.Connection,
    scope: str | None,
    event_type: str,
    action: str,
    entity_type: str,
    entity_id: str,
    actor: str = "system",
    detail: str | None = None,
    old_value: str | None = None,
    new_value: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO audit_events(
            company_id, event_type, action, entity_type, entity_id,
            actor, detail, old_value, new_value, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (scope, event_type, action, entity_type, entity_id, actor, detail, old_value, new_value, utc_now()),
    )


def create_allocation(
    db_path: Path, scope: str, payment_id: str, invoice_id: str, amount: Decimal
) -> Allocation:
    if amount <= 0:
        raise AllocationWriteError(f"allocation amount must be positive, got {amount}")
    allocation = Allocation(
        id=uuid.uuid4().hex,
        payment_id=payment_id,
        invoice_id=invoice_id,
        amount_allocated=amount,
        created_at=utc_now(),
    )
    try:
        with get_conn(db_path) as conn:
            owners = conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM payments WHERE id = ? AND company_id = ?) AS payments,
                    (SELECT COUNT(*) FROM invoices WHERE id = ? AND company_id = ?) AS invoices
                """,
                (payment_id, scope, invoice_id, scope),
            ).fetchone()
            if not owners["payments"] or not owners["invoices"]:
                raise AllocationWriteError(
                    f"payment {payment_id} or invoice {invoice_id} is not part of scope {scope}"
                )
            conn.execute(
                """
                INSERT INTO payment_allocations(
                    id, company_id, payment_id, invoice_id, amount_allocated, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    allocation.id,
                    scope,
                    payment_id,
                    invoice_id,
                    str(amount),
                    allocation.created_at,
                ),
            )
            _insert_audit(
                conn, scope, event_type="allocation", action="created",
                entity_type="allocation", entity_id=allocation.id,
                detail=f"payment {payment_id} -> invoice {invoice_id}",
                new_value=str(amount),
            )
    except sqlite3.Error as exc:
        raise AllocationWriteError(
            f"cannot allocate payment {payment_id} to invoice {invoice_id}: {exc}"
        ) from exc
    return allocation


def delete_allocation(db_path: Path, scope: str, allocation_id: str) -> Allocation:
    try:
        with get_conn(db_path) as conn:
            row = conn.execute(
                """
                SELECT id, payment_id, invoice_id, amount_allocated, created_at
                FROM payment_allocations
                WHERE company_id = ? AND id = ?
                """,
                (scope, allocation_id),
            ).fetchone()
            if row is None:
                raise AllocationNotFoundError(scope, allocation_id)
            conn.execute(
                "DELETE FROM payment_allocations WHERE company_id = ? AND id = ?",
                (scope, allocation_id),
            )
            _insert_audit(
                conn, scope, event_type="allocation", action="removed",
                entity_type="allocation", entity_id=allocation_id,
                detail=f"payment {row['payment_id']} -> invoice {row['invoice_id']}",
                old_value=row["amount_allocated"],
            )
    except sqlite3.Error as exc:
        raise AllocationWriteError(f"cannot remove allocation {allocation_id}: {exc}") from exc
    return _allocation_from_row(row)


def update_invoice_derived_fields(
    db_path: Path,
    scope: str,
    invoice_id: str,
    paid_amount: Decimal,
    balance_due: Decimal,
    status: InvoiceStatus,
) -> None:
    try:
        with get_conn(db_path) as conn:
            previous = conn.execute(
                "SELECT paid_amount, status FROM invoices WHERE company_id = ? AND id = ?",
                (scope, invoice_id),
            ).fetchone()
            if previous is None:
                raise InvoiceUpdateError(f"invoice {invoice_id} not found in scope {scope}")
            conn.execute(
                """
                UPDATE invoices
                SET paid_amount = ?,
                    balance_due = ?,
                    status = ?,
                    updated_at = ?
                WHERE company_id = ? AND id = ?
                """,
                (str(paid_amount), str(balance_due), status.value, utc_now(), scope, invoice_id),
            )
            _insert_audit(
                conn, scope, event_type="invoice_balance", action="recalculated",
                entity_type="invoice", entity_id=invoice_id,
                detail=f"balance_due={balance_due}",
                old_value=f"{previous['paid_amount']}/{previous['status']}",
                new_value=f"{paid_amount}/{status.value}",
            )
    except sqlite3.Error as exc:
        raise InvoiceUpdateError(f"cannot update invoice {invoice_id}: {exc}") from exc


# ---------------------------------------------------------------------------
# Matching policies and audit events
# ---------------------------------------------------------------------------

def upsert_matching_policy(
    db_path: Path, scope: str, policy: MatchingPolicy, note: str | None = None
) -> dict[str, Any]:
    with get_conn(db_path) as conn:
        conn.execute(
            """
            INSERT INTO matching_policies(
                company_id, lookback_days, amount_tolerance, max_candidates, note, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(company_id) DO UPDATE SET
                lookback_days=excluded.lookback_days,
                amount_tolerance=excluded.amount_tolerance,
                max_candidates=excluded.max_candidates,
                note=excluded.note,
                updated_at=excluded.updated_at
            """,
            (
                scope,
                policy.lookback_days,
                str(policy.amount_tolerance),
                policy.max_candidates,
                note,
                utc_now(),
            ),
        )
        row = conn.execute(
            """
            SELECT company_id, lookback_days, amount_tolerance, max_candidates, note, updated_at
            FROM matching_policies
            WHERE company_id = ?
            """,
            (scope,),
        ).fetchone()
        return {} if row is None else dict(row)


def load_matching_policy(db_path: Path, scope: str) -> MatchingPolicy:
    with get_conn(db_path) as conn:
        row = conn.execute(
            """
            SELECT lookback_days, amount_tolerance, max_candidates
            FROM matching_policies
            WHERE company_id = ?
            """,
            (scope,),
        ).fetchone()
    if row is None:
        return DEFAULT_POLICY
    return MatchingPolicy(
        lookback_days=int(row["lookback_days"]),
        amount_tolerance=to_decimal(row["amount_tolerance"]),
        max_candidates=None if row["max_candidates"] is None else int(row["max_candidates"]),
    )


def log_audit_event(
    db_path: Path,
    event_type: str,
    action: str,
    entity_type: str,
    entity_id: str,
    scope: str | None = None,
    actor: str = "system",
    detail: str | None = None,
    old_value: str | None = None,
    new_value: str | None = None,
) -> None:
    with get_conn(db_path) as conn:
        _insert_audit(
            conn, scope, event_type=event_type, action=action,
            entity_type=entity_type, entity_id=entity_id, actor=actor,
            detail=detail, old_value=old_value, new_value=new_value,
        )


def list_audit_events(
    db_path: Path,
    scope: str | None = None,
    event_type: str | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if scope:
        clauses.append("company_id = ?")
        params.append(scope)
    if event_type:
        clauses.append("event_type = ?")
        params.append(event_type)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with get_conn(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT id, company_id, event_type, action, entity_type, entity_id,
                   actor, detail, old_value, new_value, created_at
            FROM audit_events
            {where}
            ORDER BY id DESC
            LIMIT ?
            """,
            (*params, limit),
        ).fetchall()
        return [dict(row) for row in rows]


class SqliteLedger:
    """LedgerReader, AllocationStore and InvoiceStore over one sqlite database."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def load_payments(self, scope: str) -> list[Payment]:
        return load_payments(self.db_path, scope)

    def load_invoices(self, scope: str) -> list[Invoice]:
        return load_invoices(self.db_path, scope)

    def load_allocations(self, scope: str) -> list[Allocation]:
        return load_allocations(self.db_path, scope)

    def load_invoice(self, scope: str, invoice_id: str) -> Invoice:
        return load_invoice(self.db_path, scope, invoice_id)

    def load_invoice_allocations(self, scope: str, invoice_id: str) -> list[Allocation]:
        return load_invoice_allocations(self.db_path, scope, invoice_id)

    def create(self, scope: str, payment_id: str, invoice_id: str, amount: Decimal) -> Allocation:
        return create_allocation(self.db_path, scope, payment_id, invoice_id, amount)

    def delete(self, scope: str, allocation_id: str) -> Allocation:
        return delete_allocation(self.db_path, scope, allocation_id)

    def update_derived_fields(
        self,
        scope: str,
        invoice_id: str,
        paid_amount: Decimal,
        balance_due: Decimal,
        status: InvoiceStatus,
    ) -> None:
        update_invoice_derived_fields(self.db_path, scope, invoice_id, paid_amount, balance_due, status)
