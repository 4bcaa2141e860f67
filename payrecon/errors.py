from __future__ import annotations


class ReconciliationError(Exception):
    pass


class LedgerUnavailableError(ReconciliationError):
    """Payments, invoices or allocations for a scope could not be loaded at all."""


class AllocationWriteError(ReconciliationError):
    pass


class InvoiceUpdateError(ReconciliationError):
    pass


class InvoiceNotFoundError(ReconciliationError):
    def __init__(self, scope: str, invoice_id: str) -> None:
        super().__init__(f"invoice {invoice_id} not found in scope {scope}")
        self.scope = scope
        self.invoice_id = invoice_id


class AllocationNotFoundError(ReconciliationError):
    def __init__(self, scope: str, allocation_id: str) -> None:
        super().__init__(f"allocation {allocation_id} not found in scope {scope}")
        self.scope = scope
        self.allocation_id = allocation_id
