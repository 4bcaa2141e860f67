from __future__ import annotations

import logging
import threading
from dataclasses import replace
from decimal import Decimal
from typing import Iterable

from payrecon.config import DEFAULT_AMOUNT_TOLERANCE
from payrecon.errors import InvoiceUpdateError, LedgerUnavailableError, ReconciliationError
from payrecon.ledger import InvoiceStore, LedgerReader
from payrecon.models import ZERO, Allocation, AuditTrailEntry, Invoice, InvoiceCheck, InvoiceStatus
from payrecon.report import ItemError, RecalcSummary

logger = logging.getLogger(__name__)


def derive_status(paid_amount: Decimal, balance_due: Decimal) -> InvoiceStatus:
    if paid_amount == ZERO:
        return InvoiceStatus.DRAFT
    if balance_due <= ZERO:
        return InvoiceStatus.PAID
    return InvoiceStatus.PARTIAL


def derive_balances(
    total_amount: Decimal, allocations: Iterable[Allocation]
) -> tuple[Decimal, Decimal, InvoiceStatus]:
    """Paid amount, balance due and status implied by an invoice's full allocation set."""
    paid = sum((a.amount_allocated for a in allocations), ZERO)
    balance = total_amount - paid
    return paid, balance, derive_status(paid, balance)


def recalculate(invoice: Invoice, allocations: Iterable[Allocation]) -> Invoice:
    allocations = [a for a in allocations if a.invoice_id == invoice.id]
    paid, balance, status = derive_balances(invoice.total_amount, allocations)
    return replace(invoice, paid_amount=paid, balance_due=balance, status=status)


def check_invoice(
    invoice: Invoice,
    allocations: Iterable[Allocation],
    tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE,
) -> InvoiceCheck:
    expected = recalculate(invoice, allocations)
    paid_gap = abs(invoice.paid_amount - expected.paid_amount)
    balance_gap = abs(invoice.balance_due - expected.balance_due)
    return InvoiceCheck(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        total_amount=invoice.total_amount,
        calculated_paid_amount=expected.paid_amount,
        stored_paid_amount=invoice.paid_amount,
        calculated_balance=expected.balance_due,
        stored_balance=invoice.balance_due,
        discrepancy=max(paid_gap, balance_gap),
        expected_status=expected.status,
        actual_status=invoice.status,
        tolerance=tolerance,
    )


class BalanceRecalculator:
    """Sole writer of an invoice's paid_amount, balance_due and status."""

    def __init__(
        self,
        reader: LedgerReader,
        invoices: InvoiceStore,
        tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE,
    ) -> None:
        self.reader = reader
        self.invoices = invoices
        self.tolerance = tolerance

    def recalculate(self, scope: str, invoice_id: str) -> Invoice:
        invoice = self.reader.load_invoice(scope, invoice_id)
        allocations = self.reader.load_invoice_allocations(scope, invoice_id)
        return self._write(scope, recalculate(invoice, allocations))

    def _write(self, scope: str, invoice: Invoice) -> Invoice:
        self.invoices.update_derived_fields(
            scope, invoice.id, invoice.paid_amount, invoice.balance_due, invoice.status
        )
        return invoice

    def recalculate_all(self, scope: str, cancel: threading.Event | None = None) -> RecalcSummary:
        """Heal drift across every invoice in scope, writing only the ones that differ."""
        summary = RecalcSummary()
        try:
            invoices = self.reader.load_invoices(scope)
            allocations = self.reader.load_allocations(scope)
        except ReconciliationError as exc:
            logger.warning("recalculate_all(%s) could not load ledger: %s", scope, exc)
            summary.errors.append(ItemError(context=f"scope {scope}", message=str(exc)))
            return summary

        by_invoice: dict[str, list[Allocation]] = {}
        for allocation in allocations:
            by_invoice.setdefault(allocation.invoice_id, []).append(allocation)

        for invoice in invoices:
            if cancel is not None and cancel.is_set():
                summary.cancelled = True
                break
            summary.examined += 1
            check = check_invoice(invoice, by_invoice.get(invoice.id, []), self.tolerance)
            if not check.is_mismatched:
                continue
            try:
                self._write(scope, recalculate(invoice, by_invoice.get(invoice.id, [])))
            except ReconciliationError as exc:
                logger.warning("invoice %s recalculation failed: %s", invoice.id, exc)
                summary.errors.append(ItemError(context=f"invoice {invoice.id}", message=str(exc)))
                continue
            summary.updated += 1
            summary.updated_invoice_ids.append(invoice.id)

        logger.info(
            "recalculate_all(%s): examined=%d updated=%d errors=%d",
            scope, summary.examined, summary.updated, len(summary.errors),
        )
        return summary

    def reconcile_invoice(self, scope: str, invoice_id: str, fix: bool = False) -> InvoiceCheck:
        invoice = self.reader.load_invoice(scope, invoice_id)
        allocations = self.reader.load_invoice_allocations(scope, invoice_id)
        check = check_invoice(invoice, allocations, self.tolerance)
        if fix and check.is_mismatched:
            try:
                self._write(scope, recalculate(invoice, allocations))
            except InvoiceUpdateError as exc:
                check.error = str(exc)
            else:
                check.fixed = True
        return check

    def has_discrepancy(self, scope: str, invoice_id: str) -> bool:
        return self.reconcile_invoice(scope, invoice_id).is_mismatched

    def audit_trail(self, scope: str, invoice_id: str) -> list[AuditTrailEntry]:
        """Allocations of one invoice with the paying payment's details, newest first."""
        # Raises InvoiceNotFoundError for invoices outside the scope.
        self.reader.load_invoice(scope, invoice_id)
        payments = {p.id: p for p in self.reader.load_payments(scope)}
        allocations = self.reader.load_invoice_allocations(scope, invoice_id)
        trail = []
        for allocation in reversed(allocations):
            payment = payments.get(allocation.payment_id)
            if payment is None:
                raise LedgerUnavailableError(
                    f"allocation {allocation.id} references unknown payment {allocation.payment_id}"
                )
            trail.append(
                AuditTrailEntry(
                    allocation_id=allocation.id,
                    payment_id=payment.id,
                    payment_number=payment.payment_number,
                    payment_amount=payment.amount,
                    allocated_amount=allocation.amount_allocated,
                    payment_method=payment.payment_method,
                    payment_date=payment.payment_date,
                    reference=payment.reference,
                    created_at=allocation.created_at,
                )
            )
        return trail
