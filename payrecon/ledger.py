from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Iterable, Protocol

from payrecon.errors import LedgerUnavailableError, ReconciliationError
from payrecon.models import ZERO, Allocation, Invoice, InvoiceStatus, Payment


class LedgerReader(Protocol):
    def load_payments(self, scope: str) -> list[Payment]: ...

    def load_invoices(self, scope: str) -> list[Invoice]: ...

    def load_allocations(self, scope: str) -> list[Allocation]: ...

    def load_invoice(self, scope: str, invoice_id: str) -> Invoice: ...

    def load_invoice_allocations(self, scope: str, invoice_id: str) -> list[Allocation]: ...


class AllocationStore(Protocol):
    def create(self, scope: str, payment_id: str, invoice_id: str, amount: Decimal) -> Allocation: ...

    def delete(self, scope: str, allocation_id: str) -> Allocation: ...


class InvoiceStore(Protocol):
    def update_derived_fields(
        self,
        scope: str,
        invoice_id: str,
        paid_amount: Decimal,
        balance_due: Decimal,
        status: InvoiceStatus,
    ) -> None: ...


@dataclass
class LedgerSnapshot:
    """Payments, invoices and allocations of one scope, read at one point in time.

    Remaining amounts are always derived from the allocation rows held here;
    record_allocation keeps them current while an apply run writes.
    """

    scope: str
    payments: dict[str, Payment] = field(default_factory=dict)
    invoices: dict[str, Invoice] = field(default_factory=dict)
    _by_payment: dict[str, list[Allocation]] = field(default_factory=lambda: defaultdict(list))
    _by_invoice: dict[str, list[Allocation]] = field(default_factory=lambda: defaultdict(list))

    @classmethod
    def build(
        cls,
        scope: str,
        payments: Iterable[Payment],
        invoices: Iterable[Invoice],
        allocations: Iterable[Allocation],
    ) -> LedgerSnapshot:
        snapshot = cls(
            scope=scope,
            payments={p.id: p for p in payments},
            invoices={i.id: i for i in invoices},
        )
        for allocation in allocations:
            snapshot.record_allocation(allocation)
        return snapshot

    @classmethod
    def load(cls, reader: LedgerReader, scope: str) -> LedgerSnapshot:
        try:
            payments = reader.load_payments(scope)
            invoices = reader.load_invoices(scope)
            allocations = reader.load_allocations(scope)
        except LedgerUnavailableError:
            raise
        except ReconciliationError as exc:
            raise LedgerUnavailableError(str(exc)) from exc
        return cls.build(scope, payments, invoices, allocations)

    def record_allocation(self, allocation: Allocation) -> None:
        self._by_payment[allocation.payment_id].append(allocation)
        self._by_invoice[allocation.invoice_id].append(allocation)

    def forget_allocation(self, allocation: Allocation) -> None:
        self._by_payment[allocation.payment_id] = [
            a for a in self._by_payment[allocation.payment_id] if a.id != allocation.id
        ]
        self._by_invoice[allocation.invoice_id] = [
            a for a in self._by_invoice[allocation.invoice_id] if a.id != allocation.id
        ]

    def replace_invoice(self, invoice: Invoice) -> None:
        self.invoices[invoice.id] = invoice

    def allocations_for_invoice(self, invoice_id: str) -> list[Allocation]:
        return list(self._by_invoice.get(invoice_id, []))

    def allocations_for_payment(self, payment_id: str) -> list[Allocation]:
        return list(self._by_payment.get(payment_id, []))

    def allocated_from_payment(self, payment_id: str) -> Decimal:
        return sum((a.amount_allocated for a in self._by_payment.get(payment_id, [])), ZERO)

    def allocated_to_invoice(self, invoice_id: str) -> Decimal:
        return sum((a.amount_allocated for a in self._by_invoice.get(invoice_id, [])), ZERO)

    def payment_remaining(self, payment_id: str) -> Decimal:
        return self.payments[payment_id].amount - self.allocated_from_payment(payment_id)

    def invoice_remaining(self, invoice_id: str) -> Decimal:
        return self.invoices[invoice_id].total_amount - self.allocated_to_invoice(invoice_id)

    def invoices_for_customer(self, customer_id: str) -> list[Invoice]:
        return [i for i in self.invoices.values() if i.customer_id == customer_id]

    def current_invoice(self, invoice_id: str) -> Invoice:
        """The invoice with paid amount and balance taken from its allocations, not from storage."""
        invoice = self.invoices[invoice_id]
        paid = self.allocated_to_invoice(invoice_id)
        return replace(invoice, paid_amount=paid, balance_due=invoice.total_amount - paid)
