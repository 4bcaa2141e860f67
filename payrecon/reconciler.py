from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator

from payrecon.balances import BalanceRecalculator, check_invoice
from payrecon.config import DEFAULT_POLICY, MatchingPolicy
from payrecon.errors import LedgerUnavailableError, ReconciliationError
from payrecon.ledger import AllocationStore, InvoiceStore, LedgerReader, LedgerSnapshot
from payrecon.matching import find_candidates, rank_candidates
from payrecon.models import ZERO, CandidateMatch, InvoiceCheck, MatchRequest
from payrecon.report import RecalcSummary, RunReport

logger = logging.getLogger(__name__)

MODE_ADVISORY = "advisory"
MODE_APPLY = "apply"
MODE_CORRECTION = "correction"


class ScopeLocks:
    """One lock per scope: runs over the same scope queue, different scopes do not."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, scope: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(scope, threading.Lock())
        with lock:
            yield


_DEFAULT_LOCKS = ScopeLocks()


def _as_request(match: MatchRequest | CandidateMatch) -> MatchRequest:
    if isinstance(match, CandidateMatch):
        return MatchRequest.from_candidate(match)
    return match


class Reconciler:
    def __init__(
        self,
        reader: LedgerReader,
        allocations: AllocationStore,
        invoices: InvoiceStore,
        policy: MatchingPolicy = DEFAULT_POLICY,
        locks: ScopeLocks | None = None,
    ) -> None:
        self.reader = reader
        self.allocations = allocations
        self.policy = policy
        self.locks = locks or _DEFAULT_LOCKS
        self.recalculator = BalanceRecalculator(reader, invoices, tolerance=policy.amount_tolerance)

    def _load(self, scope: str, report: RunReport) -> LedgerSnapshot | None:
        try:
            return LedgerSnapshot.load(self.reader, scope)
        except LedgerUnavailableError as exc:
            logger.error("%s run for %s aborted: %s", report.mode, scope, exc)
            report.fatal_error = str(exc)
            return None

    def _count_payments(self, snapshot: LedgerSnapshot, report: RunReport) -> None:
        report.total_payments = len(snapshot.payments)
        report.allocated_payments = 0
        report.unallocated_payments = []
        for payment in snapshot.payments.values():
            if snapshot.payment_remaining(payment.id) > ZERO:
                report.unallocated_payments.append(payment)
            else:
                report.allocated_payments += 1

    def run(self, scope: str) -> RunReport:
        """Advisory pass: propose matches for every payment with money left, write nothing."""
        report = RunReport(scope=scope, mode=MODE_ADVISORY)
        with self.locks.hold(scope):
            snapshot = self._load(scope, report)
            if snapshot is None:
                return report

            self._count_payments(snapshot, report)
            candidates: list[CandidateMatch] = []
            for payment in report.unallocated_payments:
                # Balances come from the allocation rows so stored drift cannot skew scoring.
                invoices = [
                    snapshot.current_invoice(i.id)
                    for i in snapshot.invoices_for_customer(payment.customer_id)
                ]
                candidates.extend(
                    find_candidates(
                        payment, invoices, self.policy, snapshot.payment_remaining(payment.id)
                    )
                )

            ranked = rank_candidates(candidates)
            report.total_candidates = len(ranked)
            limit = self.policy.max_candidates
            report.candidates = ranked if limit is None else ranked[:limit]

            for invoice in snapshot.invoices.values():
                check = check_invoice(
                    invoice, snapshot.allocations_for_invoice(invoice.id), self.policy.amount_tolerance
                )
                if check.is_mismatched:
                    report.invoices_needing_recalculation.append(invoice)

        logger.info(
            "advisory run %s: payments=%d unallocated=%d candidates=%d drifted=%d",
            scope,
            report.total_payments,
            report.unallocated_payments_count,
            report.total_candidates,
            len(report.invoices_needing_recalculation),
        )
        return report

    def apply_matches(
        self,
        scope: str,
        matches: Iterable[MatchRequest | CandidateMatch],
        recalc_all: bool = False,
        cancel: threading.Event | None = None,
    ) -> RunReport:
        """Allocate each approved (payment, invoice) pair in order, re-validated against current state."""
        report = RunReport(scope=scope, mode=MODE_APPLY)
        with self.locks.hold(scope):
            snapshot = self._load(scope, report)
            if snapshot is None:
                return report

            for match in matches:
                if cancel is not None and cancel.is_set():
                    report.cancelled = True
                    break
                self._apply_one(scope, snapshot, _as_request(match), report)

            if recalc_all and not report.cancelled:
                report.merge_recalc(self.recalculator.recalculate_all(scope, cancel))

            self._count_payments(snapshot, report)

        logger.info(
            "apply run %s: created=%d updated=%d skipped=%d errors=%d cancelled=%s",
            scope,
            report.allocations_created,
            report.invoices_updated,
            len(report.skipped),
            len(report.errors),
            report.cancelled,
        )
        return report

    def _apply_one(
        self, scope: str, snapshot: LedgerSnapshot, request: MatchRequest, report: RunReport
    ) -> None:
        payment = snapshot.payments.get(request.payment_id)
        invoice = snapshot.invoices.get(request.invoice_id)
        if payment is None:
            report.add_skipped(request.payment_id, request.invoice_id, "payment not found in scope")
            return
        if invoice is None:
            report.add_skipped(request.payment_id, request.invoice_id, "invoice not found in scope")
            return
        if payment.customer_id != invoice.customer_id:
            report.add_skipped(
                payment.id, invoice.id, "payment and invoice belong to different customers"
            )
            return

        payment_left = snapshot.payment_remaining(payment.id)
        if payment_left <= ZERO:
            report.add_skipped(payment.id, invoice.id, "payment has no remaining amount")
            return
        invoice_left = snapshot.invoice_remaining(invoice.id)
        if invoice_left <= ZERO:
            report.add_skipped(payment.id, invoice.id, "invoice has no remaining balance")
            return

        amount = min(payment_left, invoice_left)
        try:
            allocation = self.allocations.create(scope, payment.id, invoice.id, amount)
        except ReconciliationError as exc:
            logger.warning("allocation %s -> %s failed: %s", payment.id, invoice.id, exc)
            report.add_error(f"allocation payment {payment.id} -> invoice {invoice.id}", str(exc))
            return
        snapshot.record_allocation(allocation)
        report.created_allocations.append(allocation)

        # Recalculate now so later matches in this batch see the new balance.
        self._recalculate(scope, snapshot, invoice.id, report)

    def _recalculate(
        self, scope: str, snapshot: LedgerSnapshot, invoice_id: str, report: RunReport
    ) -> None:
        try:
            updated = self.recalculator.recalculate(scope, invoice_id)
        except ReconciliationError as exc:
            logger.warning("invoice %s recalculation failed: %s", invoice_id, exc)
            report.add_error(f"invoice {invoice_id}", str(exc))
            return
        snapshot.replace_invoice(updated)
        report.mark_invoice_updated(invoice_id)

    def recalculate_all(self, scope: str, cancel: threading.Event | None = None) -> RecalcSummary:
        """Drift repair for a whole scope, serialised with apply and correction runs."""
        with self.locks.hold(scope):
            return self.recalculator.recalculate_all(scope, cancel)

    def reconcile_invoice(self, scope: str, invoice_id: str, fix: bool = False) -> InvoiceCheck:
        with self.locks.hold(scope):
            return self.recalculator.reconcile_invoice(scope, invoice_id, fix=fix)

    def remove_allocation(self, scope: str, allocation_id: str) -> RunReport:
        """Correct the ledger by deleting one allocation row; its invoice is recalculated."""
        report = RunReport(scope=scope, mode=MODE_CORRECTION)
        with self.locks.hold(scope):
            snapshot = self._load(scope, report)
            if snapshot is None:
                return report
            removed = self.allocations.delete(scope, allocation_id)
            snapshot.forget_allocation(removed)
            self._recalculate(scope, snapshot, removed.invoice_id, report)
            self._count_payments(snapshot, report)
        logger.info("allocation %s removed from invoice %s", allocation_id, removed.invoice_id)
        return report
