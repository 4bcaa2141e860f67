#!/usr/bin/env python3
"""Seed a demo ledger database for reconciliation runs.

Creates, per company scope:
- customers with a handful of invoices each
- payments that exercise every matcher tier: exact balance, exact total,
  partial amounts, payments outside the lookback window
- a few pre-existing allocations, some with deliberately drifted invoice
  fields so the recalculation path has something to repair
"""

from __future__ import annotations

import argparse
import random
import sys
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from payrecon.models import Invoice, InvoiceStatus, Payment
from payrecon.persistence import create_allocation, init_db, insert_invoice, insert_payment

COMPANIES = ["acme-ltd", "northwind"]
PAYMENT_METHODS = ["bank_transfer", "cheque", "mpesa", "cash"]

# Chance that an invoice gets a payment of each kind; "orphan" invoices get none.
SCENARIO_WEIGHTS = {
    "exact_balance": 0.45,
    "exact_total": 0.10,
    "partial": 0.25,
    "stale": 0.10,
    "orphan": 0.10,
}


def money(rng: random.Random, low: float, high: float) -> Decimal:
    return Decimal(f"{rng.uniform(low, high):.2f}")


def pick_scenario(rng: random.Random) -> str:
    roll = rng.random()
    acc = 0.0
    for name, weight in SCENARIO_WEIGHTS.items():
        acc += weight
        if roll < acc:
            return name
    return "orphan"


def generate(args: argparse.Namespace) -> None:
    rng = random.Random(args.seed)
    today = date.today()
    init_db(args.db)

    counts = {"invoices": 0, "payments": 0, "allocations": 0, "drifted": 0}
    for company in COMPANIES:
        for c in range(1, args.customers + 1):
            customer_id = f"{company}-CUST-{c:03d}"
            for n in range(1, args.invoices_per_customer + 1):
                invoice_id = f"{customer_id}-INV-{n:03d}"
                invoice_date = today - timedelta(days=rng.randint(10, 400))
                total = money(rng, 150.0, 12000.0)
                invoice = Invoice(
                    id=invoice_id,
                    customer_id=customer_id,
                    invoice_number=f"INV-{c:03d}{n:03d}",
                    invoice_date=invoice_date,
                    due_date=invoice_date + timedelta(days=30),
                    total_amount=total,
                    balance_due=total,
                )
                insert_invoice(args.db, company, invoice)
                counts["invoices"] += 1

                scenario = pick_scenario(rng)
                if scenario == "orphan":
                    continue
                if scenario == "stale":
                    paid_on = invoice_date + timedelta(days=rng.randint(200, 300))
                    amount = total
                else:
                    paid_on = invoice_date + timedelta(days=rng.randint(1, 90))
                    amount = total
                    if scenario == "partial":
                        share = Decimal(rng.choice(["0.25", "0.4", "0.5"]))
                        amount = (total * share).quantize(Decimal("0.01"))
                payment = Payment(
                    id=f"{invoice_id}-PAY",
                    customer_id=customer_id,
                    amount=amount,
                    payment_date=min(paid_on, today),
                    reference=f"REF-{rng.randint(100000, 999999)}",
                    payment_number=f"PAY-{c:03d}{n:03d}",
                    payment_method=rng.choice(PAYMENT_METHODS),
                )
                insert_payment(args.db, company, payment)
                counts["payments"] += 1

                if scenario == "exact_total" and rng.random() < 0.5:
                    # Already linked by hand, but the invoice row was never updated.
                    create_allocation(args.db, company, payment.id, invoice.id, amount)
                    counts["allocations"] += 1
                    counts["drifted"] += 1

            # Stored as paid although nothing was ever allocated to it.
            if rng.random() < args.drift_rate:
                drift_id = f"{customer_id}-INV-DRIFT"
                total = money(rng, 100.0, 900.0)
                insert_invoice(
                    args.db,
                    company,
                    Invoice(
                        id=drift_id,
                        customer_id=customer_id,
                        invoice_number=f"INV-{c:03d}999",
                        invoice_date=today - timedelta(days=rng.randint(10, 60)),
                        due_date=None,
                        total_amount=total,
                        paid_amount=total,
                        balance_due=Decimal("0"),
                        status=InvoiceStatus.PAID,
                    ),
                )
                counts["invoices"] += 1
                counts["drifted"] += 1

    print(f"Seeded {args.db}")
    for key, value in counts.items():
        print(f"  {key}: {value}")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Seed a demo ledger database.")
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--customers", type=int, default=12)
    p.add_argument("--invoices-per-customer", type=int, default=4)
    p.add_argument("--drift-rate", type=float, default=0.2, help="0-1 fraction of customers")
    p.add_argument("--db", type=Path, default=Path("data/ledger.db"))
    return p.parse_args()


if __name__ == "__main__":
    generate(parse_args())
