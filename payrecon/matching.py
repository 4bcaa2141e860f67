from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Iterable

from payrecon.config import DEFAULT_POLICY, MatchingPolicy
from payrecon.models import ZERO, CandidateMatch, Confidence, Invoice, Payment

REASON_BALANCE = "Exact amount match with invoice balance"
REASON_TOTAL = "Exact amount match with invoice total"
REASON_PARTIAL = "Partial payment amount"


def _is_eligible(payment: Payment, invoice: Invoice, lookback: timedelta) -> bool:
    if invoice.customer_id != payment.customer_id:
        return False
    # A payment cannot settle an invoice issued after it.
    if invoice.invoice_date > payment.payment_date:
        return False
    return payment.payment_date - invoice.invoice_date <= lookback


def _score(remaining: Decimal, invoice: Invoice, tolerance: Decimal) -> tuple[Confidence, str] | None:
    if abs(remaining - invoice.balance_due) < tolerance:
        return Confidence.HIGH, REASON_BALANCE
    if abs(remaining - invoice.total_amount) < tolerance:
        return Confidence.MEDIUM, REASON_TOTAL
    if ZERO < remaining <= invoice.balance_due:
        return Confidence.LOW, REASON_PARTIAL
    return None


def find_candidates(
    payment: Payment,
    invoices: Iterable[Invoice],
    policy: MatchingPolicy = DEFAULT_POLICY,
    remaining: Decimal | None = None,
) -> list[CandidateMatch]:
    """Propose invoices that the payment's unallocated amount could settle.

    invoices should already be narrowed to the payment's customer and carry
    balance_due net of existing allocations. remaining defaults to the full
    payment amount. The result is unordered; see rank_candidates.
    """
    if remaining is None:
        remaining = payment.amount
    if remaining <= ZERO:
        return []

    lookback = timedelta(days=policy.lookback_days)
    candidates: list[CandidateMatch] = []
    for invoice in invoices:
        if not _is_eligible(payment, invoice, lookback):
            continue
        scored = _score(remaining, invoice, policy.amount_tolerance)
        if scored is None:
            continue
        confidence, reason = scored
        candidates.append(
            CandidateMatch(payment=payment, invoice=invoice, confidence=confidence, reason=reason)
        )
    return candidates


def rank_candidates(candidates: Iterable[CandidateMatch]) -> list[CandidateMatch]:
    # sorted() is stable, so equal tiers keep the order they were found in.
    return sorted(candidates, key=lambda c: c.confidence.rank, reverse=True)
