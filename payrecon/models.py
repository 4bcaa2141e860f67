from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

ZERO = Decimal("0")
CENT = Decimal("0.01")


class Confidence(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK = {Confidence.HIGH: 3, Confidence.MEDIUM: 2, Confidence.LOW: 1}


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    PARTIAL = "partial"
    PAID = "paid"


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    # str() first so floats arriving from upstream keep their printed value.
    return Decimal(str(value))


@dataclass(frozen=True)
class Payment:
    id: str
    customer_id: str
    amount: Decimal
    payment_date: date
    reference: str | None = None
    payment_number: str | None = None
    payment_method: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "amount": str(self.amount),
            "payment_date": self.payment_date.isoformat(),
            "reference": self.reference,
            "payment_number": self.payment_number,
            "payment_method": self.payment_method,
        }


@dataclass(frozen=True)
class Invoice:
    id: str
    customer_id: str
    invoice_date: date
    due_date: date | None
    total_amount: Decimal
    paid_amount: Decimal = ZERO
    balance_due: Decimal = ZERO
    status: InvoiceStatus = InvoiceStatus.DRAFT
    invoice_number: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "invoice_number": self.invoice_number,
            "invoice_date": self.invoice_date.isoformat(),
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "total_amount": str(self.total_amount),
            "paid_amount": str(self.paid_amount),
            "balance_due": str(self.balance_due),
            "status": self.status.value,
        }


@dataclass(frozen=True)
class Allocation:
    id: str
    payment_id: str
    invoice_id: str
    amount_allocated: Decimal
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "invoice_id": self.invoice_id,
            "amount_allocated": str(self.amount_allocated),
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class CandidateMatch:
    payment: Payment
    invoice: Invoice
    confidence: Confidence
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment.id,
            "invoice_id": self.invoice.id,
            "customer_id": self.payment.customer_id,
            "payment_amount": str(self.payment.amount),
            "invoice_total": str(self.invoice.total_amount),
            "invoice_balance": str(self.invoice.balance_due),
            "confidence": self.confidence.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class MatchRequest:
    """An operator-approved (payment, invoice) pair handed to apply_matches."""

    payment_id: str
    invoice_id: str

    @classmethod
    def from_candidate(cls, candidate: CandidateMatch) -> MatchRequest:
        return cls(payment_id=candidate.payment.id, invoice_id=candidate.invoice.id)


@dataclass
class InvoiceCheck:
    invoice_id: str
    invoice_number: str | None
    total_amount: Decimal
    calculated_paid_amount: Decimal
    stored_paid_amount: Decimal
    calculated_balance: Decimal
    stored_balance: Decimal
    discrepancy: Decimal
    expected_status: InvoiceStatus
    actual_status: InvoiceStatus
    tolerance: Decimal = CENT
    fixed: bool = False
    error: str | None = None

    @property
    def status(self) -> str:
        return "mismatched" if self.is_mismatched else "matched"

    @property
    def is_mismatched(self) -> bool:
        return self.discrepancy > self.tolerance or self.expected_status != self.actual_status

    def to_dict(self) -> dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "total_amount": str(self.total_amount),
            "calculated_paid_amount": str(self.calculated_paid_amount),
            "stored_paid_amount": str(self.stored_paid_amount),
            "calculated_balance": str(self.calculated_balance),
            "stored_balance": str(self.stored_balance),
            "discrepancy": str(self.discrepancy),
            "status": self.status,
            "expected_status": self.expected_status.value,
            "actual_status": self.actual_status.value,
            "fixed": self.fixed,
            "error": self.error,
        }


@dataclass(frozen=True)
class AuditTrailEntry:
    allocation_id: str
    payment_id: str
    payment_number: str | None
    payment_amount: Decimal
    allocated_amount: Decimal
    payment_method: str | None
    payment_date: date
    reference: str | None
    created_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allocation_id": self.allocation_id,
            "payment_id": self.payment_id,
            "payment_number": self.payment_number,
            "payment_amount": str(self.payment_amount),
            "allocated_amount": str(self.allocated_amount),
            "payment_method": self.payment_method,
            "payment_date": self.payment_date.isoformat(),
            "reference": self.reference,
            "created_at": self.created_at,
        }
