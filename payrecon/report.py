from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from payrecon.models import Allocation, CandidateMatch, Invoice, Payment


@dataclass(frozen=True)
class ItemError:
    context: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"context": self.context, "message": self.message}


@dataclass(frozen=True)
class SkippedMatch:
    payment_id: str
    invoice_id: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"payment_id": self.payment_id, "invoice_id": self.invoice_id, "reason": self.reason}


@dataclass
class RecalcSummary:
    examined: int = 0
    updated: int = 0
    updated_invoice_ids: list[str] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "examined": self.examined,
            "updated": self.updated,
            "updated_invoice_ids": list(self.updated_invoice_ids),
            "errors": [e.to_dict() for e in self.errors],
            "cancelled": self.cancelled,
        }


@dataclass
class RunReport:
    """Everything a reconciliation run has to tell its caller.

    Advisory runs fill the payment counts, unallocated payments and
    candidates. Apply runs fill created_allocations, invoices_updated and
    skipped. Both may carry per-item errors; fatal_error is set only when the
    ledgers could not be loaded, in which case nothing was written.
    """

    scope: str
    mode: str
    total_payments: int = 0
    allocated_payments: int = 0
    unallocated_payments: list[Payment] = field(default_factory=list)
    candidates: list[CandidateMatch] = field(default_factory=list)
    total_candidates: int = 0
    invoices_needing_recalculation: list[Invoice] = field(default_factory=list)
    created_allocations: list[Allocation] = field(default_factory=list)
    invoices_updated: int = 0
    updated_invoice_ids: list[str] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)
    skipped: list[SkippedMatch] = field(default_factory=list)
    fatal_error: str | None = None
    cancelled: bool = False

    @property
    def allocations_created(self) -> int:
        return len(self.created_allocations)

    @property
    def unallocated_payments_count(self) -> int:
        return len(self.unallocated_payments)

    @property
    def ok(self) -> bool:
        return self.fatal_error is None and not self.errors

    def add_error(self, context: str, message: str) -> None:
        self.errors.append(ItemError(context=context, message=message))

    def add_skipped(self, payment_id: str, invoice_id: str, reason: str) -> None:
        self.skipped.append(SkippedMatch(payment_id=payment_id, invoice_id=invoice_id, reason=reason))

    def mark_invoice_updated(self, invoice_id: str) -> None:
        if invoice_id not in self.updated_invoice_ids:
            self.updated_invoice_ids.append(invoice_id)
        self.invoices_updated = len(self.updated_invoice_ids)

    def merge_recalc(self, summary: RecalcSummary) -> None:
        for invoice_id in summary.updated_invoice_ids:
            self.mark_invoice_updated(invoice_id)
        self.errors.extend(summary.errors)
        self.cancelled = self.cancelled or summary.cancelled

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "mode": self.mode,
            "ok": self.ok,
            "totals": {
                "payments": self.total_payments,
                "allocated": self.allocated_payments,
                "unallocated": self.unallocated_payments_count,
                "candidates": self.total_candidates,
                "allocations_created": self.allocations_created,
                "invoices_updated": self.invoices_updated,
                "errors": len(self.errors),
                "skipped": len(self.skipped),
            },
            "unallocated_payments": [p.to_dict() for p in self.unallocated_payments],
            "candidates": [c.to_dict() for c in self.candidates],
            "created_allocations": [a.to_dict() for a in self.created_allocations],
            "invoices_needing_recalculation": [i.to_dict() for i in self.invoices_needing_recalculation],
            "updated_invoice_ids": list(self.updated_invoice_ids),
            "errors": [e.to_dict() for e in self.errors],
            "skipped": [s.to_dict() for s in self.skipped],
            "fatal_error": self.fatal_error,
            "cancelled": self.cancelled,
        }
