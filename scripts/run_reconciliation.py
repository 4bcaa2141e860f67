#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from payrecon.config import DB_PATH
from payrecon.models import Confidence, MatchRequest
from payrecon.persistence import SqliteLedger, init_db, load_matching_policy
from payrecon.reconciler import Reconciler


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Reconcile recorded payments against invoices.")
    p.add_argument("--db", type=Path, default=DB_PATH)
    p.add_argument("--scope", required=True, help="Company identifier the run is limited to")
    p.add_argument("--output", type=Path, default=None, help="Optional path to write JSON output")
    p.add_argument("--verbose", action="store_true")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("advise", help="Report unallocated payments and candidate matches; writes nothing")

    apply_p = sub.add_parser("apply", help="Apply approved matches")
    apply_p.add_argument(
        "--match",
        action="append",
        default=[],
        metavar="PAYMENT_ID:INVOICE_ID",
        help="Approved pair; repeatable",
    )
    apply_p.add_argument(
        "--accept",
        choices=[c.value for c in Confidence],
        default=None,
        help="Also apply every candidate of this tier or better from a fresh advisory run",
    )
    apply_p.add_argument("--recalc-all", action="store_true")

    sub.add_parser("recalc", help="Recompute every invoice's paid amount, balance and status")
    return p.parse_args()


def parse_match(raw: str) -> MatchRequest:
    payment_id, sep, invoice_id = raw.partition(":")
    if not sep or not payment_id or not invoice_id:
        raise SystemExit(f"invalid --match value {raw!r}, expected PAYMENT_ID:INVOICE_ID")
    return MatchRequest(payment_id=payment_id, invoice_id=invoice_id)


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db(args.db)
    ledger = SqliteLedger(args.db)
    reconciler = Reconciler(ledger, ledger, ledger, policy=load_matching_policy(args.db, args.scope))

    if args.command == "advise":
        result = reconciler.run(args.scope).to_dict()
    elif args.command == "apply":
        matches = [parse_match(raw) for raw in args.match]
        if args.accept:
            floor = Confidence(args.accept).rank
            advisory = reconciler.run(args.scope)
            if advisory.fatal_error:
                result = advisory.to_dict()
                matches = None
            else:
                matches.extend(
                    MatchRequest.from_candidate(c) for c in advisory.candidates if c.confidence.rank >= floor
                )
        if matches is not None:
            result = reconciler.apply_matches(args.scope, matches, recalc_all=args.recalc_all).to_dict()
    else:
        result = {"scope": args.scope, **reconciler.recalculate_all(args.scope).to_dict()}

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(result, indent=2), encoding="utf-8")
    else:
        print(json.dumps(result, indent=2))
    return 1 if result.get("fatal_error") or result.get("errors") else 0


if __name__ == "__main__":
    sys.exit(main())
