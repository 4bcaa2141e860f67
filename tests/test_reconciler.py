from __future__ import annotations

import threading
import unittest
from datetime import date, timedelta
from decimal import Decimal

from fakes import InMemoryLedger, invoice, payment

from payrecon.config import MatchingPolicy
from payrecon.errors import AllocationNotFoundError
from payrecon.models import Allocation, Confidence, InvoiceStatus, MatchRequest
from payrecon.reconciler import MODE_ADVISORY, MODE_APPLY, MODE_CORRECTION, Reconciler, ScopeLocks

D = Decimal
JAN = date(2026, 1, 10)


def reconciler_for(ledger: InMemoryLedger, **kwargs) -> Reconciler:
    return Reconciler(ledger, ledger, ledger, locks=ScopeLocks(), **kwargs)


class ScenarioTests(unittest.TestCase):
    def test_exact_payment_settles_invoice(self) -> None:
        ledger = InMemoryLedger().add(
            invoice("I-1", "1000.00", JAN),
            payment("P-1", "1000.00", JAN + timedelta(days=7)),
        )
        rec = reconciler_for(ledger)

        advisory = rec.run("acme")
        self.assertEqual(advisory.mode, MODE_ADVISORY)
        self.assertEqual(len(advisory.candidates), 1)
        self.assertEqual(advisory.candidates[0].confidence, Confidence.HIGH)

        applied = rec.apply_matches("acme", advisory.candidates)
        self.assertEqual(applied.mode, MODE_APPLY)
        self.assertEqual(applied.allocations_created, 1)
        self.assertEqual(applied.updated_invoice_ids, ["I-1"])
        self.assertEqual(ledger.invoices["I-1"].balance_due, D("0.00"))
        self.assertEqual(ledger.invoices["I-1"].status, InvoiceStatus.PAID)
        self.assertEqual(applied.unallocated_payments_count, 0)
        self.assertEqual(applied.allocated_payments, 1)

    def test_payment_outside_lookback_stays_unallocated(self) -> None:
        ledger = InMemoryLedger().add(
            invoice("I-1", "1000.00", JAN),
            payment("P-1", "1000.00", date(2026, 9, 10)),
        )
        report = reconciler_for(ledger).run("acme")
        self.assertEqual(report.candidates, [])
        self.assertEqual([p.id for p in report.unallocated_payments], ["P-1"])

    def test_partial_payment_leaves_partial_invoice(self) -> None:
        ledger = InMemoryLedger().add(
            invoice("I-1", "1000.00", JAN),
            payment("P-1", "400.00", JAN + timedelta(days=3)),
        )
        rec = reconciler_for(ledger)
        advisory = rec.run("acme")
        self.assertEqual([c.confidence for c in advisory.candidates], [Confidence.LOW])
        self.assertEqual(advisory.candidates[0].reason, "Partial payment amount")

        rec.apply_matches("acme", advisory.candidates)
        self.assertEqual(ledger.invoices["I-1"].balance_due, D("600.00"))
        self.assertEqual(ledger.invoices["I-1"].status, InvoiceStatus.PARTIAL)

    def test_applying_high_match_leaves_other_candidate_untouched(self) -> None:
        ledger = InMemoryLedger().add(
            invoice("I-A", "800.00", JAN, paid="300.00", status=InvoiceStatus.PARTIAL),
            invoice("I-B", "500.00", JAN, paid="200.00", status=InvoiceStatus.PARTIAL),
            payment("P-OLD-A", "300.00", JAN),
            payment("P-OLD-B", "200.00", JAN),
            payment("P-1", "500.00", JAN + timedelta(days=20)),
        )
        ledger.allocations = [
            Allocation(id="X-1", payment_id="P-OLD-A", invoice_id="I-A", amount_allocated=D("300.00")),
            Allocation(id="X-2", payment_id="P-OLD-B", invoice_id="I-B", amount_allocated=D("200.00")),
        ]
        rec = reconciler_for(ledger)

        advisory = rec.run("acme")
        tiers = {c.invoice.id: c.confidence for c in advisory.candidates}
        self.assertEqual(tiers, {"I-A": Confidence.HIGH, "I-B": Confidence.MEDIUM})

        high = [c for c in advisory.candidates if c.confidence is Confidence.HIGH]
        applied = rec.apply_matches("acme", high, recalc_all=True)
        self.assertEqual(applied.allocations_created, 1)
        self.assertEqual(ledger.invoices["I-A"].status, InvoiceStatus.PAID)
        self.assertEqual(ledger.invoices["I-B"].paid_amount, D("200.00"))
        self.assertEqual(ledger.invoices["I-B"].status, InvoiceStatus.PARTIAL)
        self.assertNotIn("I-B", applied.updated_invoice_ids)
        self.assertEqual(ledger.allocated_from("P-1"), D("500.00"))


class AdvisoryRunTests(unittest.TestCase):
    def test_run_writes_nothing(self) -> None:
        ledger = InMemoryLedger().add(
            invoice("I-1", "100.00", JAN, paid="100.00", status=InvoiceStatus.PAID),
            invoice("I-2", "250.00", JAN),
            payment("P-1", "250.00", JAN + timedelta(days=2)),
        )
        report = reconciler_for(ledger).run("acme")
        self.assertEqual(ledger.writes, 0)
        self.assertEqual(ledger.invoices["I-1"].status, InvoiceStatus.PAID)
        self.assertEqual(report.total_payments, 1)

    def test_drifted_invoices_are_listed(self) -> None:
        ledger = InMemoryLedger().add(
            invoice("I-1", "100.00", JAN, paid="100.00", status=InvoiceStatus.PAID),
            invoice("I-2", "250.00", JAN),
        )
        report = reconciler_for(ledger).run("acme")
        self.assertEqual([i.id for i in report.invoices_needing_recalculation], ["I-1"])

    def test_stored_drift_does_not_skew_scoring(self) -> None:
        # Stored as paid, yet nothing is allocated: the matcher must still see 400 open.
        ledger = InMemoryLedger().add(
            invoice("I-1", "400.00", JAN, paid="400.00", status=InvoiceStatus.PAID),
            payment("P-1", "400.00", JAN + timedelta(days=2)),
        )
        report = reconciler_for(ledger).run("acme")
        self.assertEqual([c.confidence for c in report.candidates], [Confidence.HIGH])

    def test_partly_allocated_payment_is_matched_on_its_remainder(self) -> None:
        ledger = InMemoryLedger().add(
            invoice("I-1", "600.00", JAN, paid="600.00", status=InvoiceStatus.PAID),
            invoice("I-2", "400.00", JAN),
            payment("P-1", "1000.00", JAN + timedelta(days=2)),
        )
        ledger.allocations = [
            Allocation(id="X-1", payment_id="P-1", invoice_id="I-1", amount_allocated=D("600.00"))
        ]
        report = reconciler_for(ledger).run("acme")
        self.assertEqual(report.unallocated_payments_count, 1)
        self.assertEqual([(c.invoice.id, c.confidence) for c in report.candidates], [("I-2", Confidence.HIGH)])

    def test_candidate_list_is_capped_but_counted(self) -> None:
        ledger = InMemoryLedger().add(
            invoice("I-1", "250.00", JAN),
            invoice("I-2", "250.00", JAN + timedelta(days=1)),
            invoice("I-3", "900.00", JAN),
            payment("P-1", "250.00", JAN + timedelta(days=5)),
        )
        report = reconciler_for(ledger, policy=MatchingPolicy(max_candidates=2)).run("acme")
        self.assertEqual(report.total_candidates, 3)
        self.assertEqual(len(report.candidates), 2)
        self.assertTrue(all(c.confidence is Confidence.HIGH for c in report.candidates))
        self.assertEqual(report.to_dict()["totals"]["candidates"], 3)

    def test_other_scopes_are_invisible(self) -> None:
        ledger = InMemoryLedger(scope="acme").add(
            invoice("I-1", "100.00", JAN),
            payment("P-1", "100.00", JAN + timedelta(days=1)),
        )
        report = reconciler_for(ledger).run("northwind")
        self.assertEqual(report.total_payments, 0)
        self.assertEqual(report.candidates, [])

    def test_unreadable_ledger_is_fatal(self) -> None:
        ledger = InMemoryLedger().add(payment("P-1", "100.00", JAN))
        ledger.fail_loads = True
        report = reconciler_for(ledger).run("acme")
        self.assertEqual(report.fatal_error, "ledger offline")
        self.assertFalse(report.ok)
        self.assertEqual(report.total_payments, 0)


class ApplyMatchesTests(unittest.TestCase):
    def _ledger(self) -> InMemoryLedger:
        return InMemoryLedger().add(
            invoice("I-1", "400.00", JAN),
            invoice("I-2", "700.00", JAN),
            invoice("I-9", "100.00", JAN, customer="C-9"),
            payment("P-1", "1000.00", JAN + timedelta(days=3)),
            payment("P-2", "400.00", JAN + timedelta(days=3)),
        )

    def test_reapplying_a_match_is_a_no_op(self) -> None:
        ledger = self._ledger()
        rec = reconciler_for(ledger)
        match = [MatchRequest(payment_id="P-2", invoice_id="I-1")]
        rec.apply_matches("acme", match)
        writes = ledger.writes

        again = rec.apply_matches("acme", match)
        self.assertEqual(again.allocations_created, 0)
        self.assertEqual(again.skipped[0].reason, "payment has no remaining amount")
        self.assertEqual(ledger.writes, writes)

    def test_allocations_never_exceed_payment_or_invoice(self) -> None:
        ledger = self._ledger()
        report = reconciler_for(ledger).apply_matches(
            "acme",
            [
                MatchRequest(payment_id="P-1", invoice_id="I-1"),
                MatchRequest(payment_id="P-1", invoice_id="I-2"),
                MatchRequest(payment_id="P-2", invoice_id="I-2"),
            ],
        )
        self.assertEqual(report.allocations_created, 3)
        self.assertEqual(ledger.allocated_from("P-1"), D("1000.00"))
        self.assertEqual(ledger.allocated_from("P-2"), D("100.00"))
        self.assertEqual(
            [(a.payment_id, a.invoice_id, a.amount_allocated) for a in report.created_allocations],
            [("P-1", "I-1", D("400.00")), ("P-1", "I-2", D("600.00")), ("P-2", "I-2", D("100.00"))],
        )
        self.assertEqual(
            [a["amount_allocated"] for a in report.to_dict()["created_allocations"]],
            ["400.00", "600.00", "100.00"],
        )
        self.assertEqual(ledger.invoices["I-2"].balance_due, D("0.00"))
        self.assertEqual(ledger.invoices["I-2"].status, InvoiceStatus.PAID)
        for inv in ledger.invoices.values():
            self.assertGreaterEqual(inv.balance_due, D("0"))

    def test_independent_matches_commute(self) -> None:
        forward = [MatchRequest(payment_id="P-2", invoice_id="I-1"), MatchRequest(payment_id="P-1", invoice_id="I-2")]
        results = []
        for order in (forward, list(reversed(forward))):
            ledger = self._ledger()
            reconciler_for(ledger).apply_matches("acme", order)
            results.append({i.id: (i.paid_amount, i.balance_due, i.status) for i in ledger.invoices.values()})
        self.assertEqual(results[0], results[1])

    def test_invalid_matches_are_skipped_with_reasons(self) -> None:
        ledger = self._ledger()
        ledger.invoices["I-3"] = invoice("I-3", "50.00", JAN)
        ledger.allocations = [
            Allocation(id="X-1", payment_id="P-2", invoice_id="I-3", amount_allocated=D("50.00"))
        ]
        report = reconciler_for(ledger).apply_matches(
            "acme",
            [
                MatchRequest(payment_id="P-404", invoice_id="I-1"),
                MatchRequest(payment_id="P-1", invoice_id="I-404"),
                MatchRequest(payment_id="P-1", invoice_id="I-9"),
                MatchRequest(payment_id="P-1", invoice_id="I-3"),
            ],
        )
        self.assertEqual(
            [s.reason for s in report.skipped],
            [
                "payment not found in scope",
                "invoice not found in scope",
                "payment and invoice belong to different customers",
                "invoice has no remaining balance",
            ],
        )
        self.assertEqual(report.allocations_created, 0)
        self.assertTrue(report.ok)

    def test_failed_allocation_does_not_stop_the_batch(self) -> None:
        ledger = self._ledger()
        ledger.fail_allocations_for = {"I-1"}
        report = reconciler_for(ledger).apply_matches(
            "acme",
            [MatchRequest(payment_id="P-2", invoice_id="I-1"), MatchRequest(payment_id="P-1", invoice_id="I-2")],
        )
        self.assertEqual(report.allocations_created, 1)
        self.assertEqual([e.context for e in report.errors], ["allocation payment P-2 -> invoice I-1"])
        self.assertEqual(ledger.invoices["I-2"].status, InvoiceStatus.PAID)
        self.assertFalse(report.ok)

    def test_failed_recalculation_is_reported_per_invoice(self) -> None:
        ledger = self._ledger()
        ledger.fail_updates_for = {"I-1"}
        report = reconciler_for(ledger).apply_matches(
            "acme", [MatchRequest(payment_id="P-2", invoice_id="I-1")]
        )
        self.assertEqual(report.allocations_created, 1)
        self.assertEqual([e.context for e in report.errors], ["invoice I-1"])
        self.assertEqual(report.invoices_updated, 0)

    def test_unreadable_ledger_aborts_before_writing(self) -> None:
        ledger = self._ledger()
        ledger.fail_loads = True
        report = reconciler_for(ledger).apply_matches(
            "acme", [MatchRequest(payment_id="P-2", invoice_id="I-1")]
        )
        self.assertIsNotNone(report.fatal_error)
        self.assertEqual(ledger.writes, 0)

    def test_cancel_stops_between_matches(self) -> None:
        ledger = self._ledger()
        cancel = threading.Event()

        def matches():
            yield MatchRequest(payment_id="P-2", invoice_id="I-1")
            cancel.set()
            yield MatchRequest(payment_id="P-1", invoice_id="I-2")

        report = reconciler_for(ledger).apply_matches("acme", matches(), recalc_all=True, cancel=cancel)
        self.assertTrue(report.cancelled)
        self.assertEqual(report.allocations_created, 1)
        self.assertEqual(ledger.allocated_from("P-1"), D("0"))

    def test_recalc_all_repairs_drift_alongside_matches(self) -> None:
        ledger = self._ledger()
        ledger.invoices["I-2"] = invoice("I-2", "700.00", JAN, paid="700.00", status=InvoiceStatus.PAID)
        report = reconciler_for(ledger).apply_matches(
            "acme", [MatchRequest(payment_id="P-2", invoice_id="I-1")], recalc_all=True
        )
        self.assertEqual(report.updated_invoice_ids, ["I-1", "I-2"])
        self.assertEqual(report.invoices_updated, 2)
        self.assertEqual(ledger.invoices["I-2"].status, InvoiceStatus.DRAFT)

    def test_recalc_only_run(self) -> None:
        ledger = self._ledger()
        ledger.invoices["I-2"] = invoice("I-2", "700.00", JAN, paid="700.00", status=InvoiceStatus.PAID)
        report = reconciler_for(ledger).apply_matches("acme", [], recalc_all=True)
        self.assertEqual(report.allocations_created, 0)
        self.assertEqual(report.updated_invoice_ids, ["I-2"])


class RemoveAllocationTests(unittest.TestCase):
    def test_removal_reopens_invoice_and_payment(self) -> None:
        ledger = InMemoryLedger().add(
            invoice("I-1", "250.00", JAN),
            payment("P-1", "250.00", JAN + timedelta(days=1)),
        )
        rec = reconciler_for(ledger)
        rec.apply_matches("acme", [MatchRequest(payment_id="P-1", invoice_id="I-1")])
        self.assertEqual(ledger.invoices["I-1"].status, InvoiceStatus.PAID)

        report = rec.remove_allocation("acme", "A-1")
        self.assertEqual(report.mode, MODE_CORRECTION)
        self.assertEqual(report.updated_invoice_ids, ["I-1"])
        self.assertEqual(ledger.invoices["I-1"].status, InvoiceStatus.DRAFT)
        self.assertEqual(ledger.invoices["I-1"].balance_due, D("250.00"))
        self.assertEqual(report.unallocated_payments_count, 1)

    def test_unknown_allocation_raises(self) -> None:
        ledger = InMemoryLedger().add(invoice("I-1", "250.00", JAN))
        with self.assertRaises(AllocationNotFoundError):
            reconciler_for(ledger).remove_allocation("acme", "A-404")


class ApplyDuringRecalculation(InMemoryLedger):
    """Starts an apply run on another thread while drift repair is reading allocations."""

    def __init__(self) -> None:
        super().__init__()
        self.reconciler: Reconciler | None = None
        self.apply_thread: threading.Thread | None = None
        self.armed = False

    def load_allocations(self, scope: str) -> list[Allocation]:
        allocations = super().load_allocations(scope)
        if self.armed:
            self.armed = False
            self.apply_thread = threading.Thread(
                target=self.reconciler.apply_matches,
                args=(scope, [MatchRequest(payment_id="P-1", invoice_id="I-1")]),
            )
            self.apply_thread.start()
            # Gives an unserialised apply time to finish before the stale write.
            self.apply_thread.join(timeout=0.3)
        return allocations


class RecalculationLockTests(unittest.TestCase):
    def _ledger(self) -> ApplyDuringRecalculation:
        ledger = ApplyDuringRecalculation()
        ledger.add(
            invoice("I-1", "250.00", JAN, paid="100.00", status=InvoiceStatus.PARTIAL),
            payment("P-1", "250.00", JAN + timedelta(days=2)),
        )
        ledger.reconciler = reconciler_for(ledger)
        return ledger

    def test_concurrent_apply_waits_for_drift_repair(self) -> None:
        ledger = self._ledger()
        ledger.armed = True
        summary = ledger.reconciler.recalculate_all("acme")
        ledger.apply_thread.join(timeout=2)

        self.assertFalse(ledger.apply_thread.is_alive())
        self.assertEqual(summary.updated_invoice_ids, ["I-1"])
        self.assertEqual(ledger.allocated_from("P-1"), D("250.00"))
        stored = ledger.invoices["I-1"]
        self.assertEqual(stored.paid_amount, D("250.00"))
        self.assertEqual(stored.balance_due, D("0.00"))
        self.assertEqual(stored.status, InvoiceStatus.PAID)

    def test_reconcile_invoice_fix_holds_the_scope_lock(self) -> None:
        ledger = self._ledger()
        locks = ledger.reconciler.locks
        entered = threading.Event()

        def fix() -> None:
            ledger.reconciler.reconcile_invoice("acme", "I-1", fix=True)
            entered.set()

        with locks.hold("acme"):
            worker = threading.Thread(target=fix)
            worker.start()
            self.assertFalse(entered.wait(timeout=0.2))
            self.assertEqual(ledger.writes, 0)
        worker.join(timeout=2)
        self.assertTrue(entered.is_set())
        self.assertEqual(ledger.invoices["I-1"].status, InvoiceStatus.DRAFT)


class ScopeLockTests(unittest.TestCase):
    def test_same_scope_waits_other_scope_does_not(self) -> None:
        locks = ScopeLocks()
        entered = threading.Event()
        other_scope_ran = threading.Event()

        def contender(scope: str, flag: threading.Event) -> None:
            with locks.hold(scope):
                flag.set()

        with locks.hold("acme"):
            same = threading.Thread(target=contender, args=("acme", entered))
            other = threading.Thread(target=contender, args=("northwind", other_scope_ran))
            same.start()
            other.start()
            self.assertTrue(other_scope_ran.wait(timeout=2))
            self.assertFalse(entered.wait(timeout=0.2))
        same.join(timeout=2)
        other.join(timeout=2)
        self.assertTrue(entered.is_set())


if __name__ == "__main__":
    unittest.main()
