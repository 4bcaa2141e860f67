from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from payrecon.config import (
    CORS_ORIGINS,
    DB_PATH,
    DEFAULT_AMOUNT_TOLERANCE,
    DEFAULT_LOOKBACK_DAYS,
    DEFAULT_MAX_CANDIDATES,
    MatchingPolicy,
)
from payrecon.errors import (
    AllocationNotFoundError,
    AllocationWriteError,
    InvoiceNotFoundError,
    LedgerUnavailableError,
)
from payrecon.models import MatchRequest
from payrecon.persistence import (
    SqliteLedger,
    init_db,
    list_audit_events,
    load_matching_policy,
    log_audit_event,
    upsert_matching_policy,
)
from payrecon.reconciler import Reconciler
from payrecon.report import RunReport

logger = logging.getLogger(__name__)

app = FastAPI(title="Payment Reconciliation", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


class MatchItem(BaseModel):
    payment_id: str
    invoice_id: str


class ApplyMatchesRequest(BaseModel):
    matches: list[MatchItem] = Field(default_factory=list)
    recalc_all: bool = False
    actor: str = "operator"


class UpsertPolicyRequest(BaseModel):
    lookback_days: int = DEFAULT_LOOKBACK_DAYS
    amount_tolerance: str = str(DEFAULT_AMOUNT_TOLERANCE)
    max_candidates: int | None = DEFAULT_MAX_CANDIDATES
    note: str | None = None


def _reconciler(scope: str) -> Reconciler:
    ledger = SqliteLedger(DB_PATH)
    return Reconciler(ledger, ledger, ledger, policy=load_matching_policy(DB_PATH, scope))


def _report_response(report: RunReport) -> JSONResponse:
    # A fatal load error means nothing was read or written.
    status_code = 503 if report.fatal_error else 200
    return JSONResponse(report.to_dict(), status_code=status_code)


@app.get("/health")
def health() -> JSONResponse:
    return JSONResponse({"ok": True, "service": "payrecon"})


@app.get("/api/v1/health")
def api_health() -> JSONResponse:
    return JSONResponse({"ok": True})


@app.post("/api/v1/scopes/{scope}/runs")
def api_advisory_run(scope: str) -> JSONResponse:
    report = _reconciler(scope).run(scope)
    return _report_response(report)


@app.post("/api/v1/scopes/{scope}/apply")
def api_apply_matches(scope: str, payload: ApplyMatchesRequest) -> JSONResponse:
    if not payload.matches and not payload.recalc_all:
        raise HTTPException(status_code=400, detail="matches must not be empty unless recalc_all is set")
    requests = [MatchRequest(payment_id=m.payment_id, invoice_id=m.invoice_id) for m in payload.matches]
    report = _reconciler(scope).apply_matches(scope, requests, recalc_all=payload.recalc_all)
    if report.fatal_error is None:
        log_audit_event(
            DB_PATH, event_type="apply_run", action="completed",
            entity_type="scope", entity_id=scope, scope=scope, actor=payload.actor,
            detail=(
                f"requested={len(requests)} created={report.allocations_created} "
                f"updated={report.invoices_updated} skipped={len(report.skipped)} errors={len(report.errors)}"
            ),
        )
    return _report_response(report)


@app.post("/api/v1/scopes/{scope}/recalculate")
def api_recalculate_all(scope: str) -> JSONResponse:
    summary = _reconciler(scope).recalculate_all(scope)
    return JSONResponse({"scope": scope, **summary.to_dict()})


@app.get("/api/v1/scopes/{scope}/invoices/{invoice_id}/reconciliation")
def api_invoice_reconciliation(scope: str, invoice_id: str, fix: bool = False) -> JSONResponse:
    try:
        check = _reconciler(scope).reconcile_invoice(scope, invoice_id, fix=fix)
    except InvoiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except LedgerUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return JSONResponse(check.to_dict())


@app.get("/api/v1/scopes/{scope}/invoices/{invoice_id}/audit-trail")
def api_invoice_audit_trail(scope: str, invoice_id: str) -> JSONResponse:
    try:
        trail = _reconciler(scope).recalculator.audit_trail(scope, invoice_id)
    except InvoiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except LedgerUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    rows = [entry.to_dict() for entry in trail]
    return JSONResponse({"rows": rows, "count": len(rows)})


@app.delete("/api/v1/scopes/{scope}/allocations/{allocation_id}")
def api_remove_allocation(scope: str, allocation_id: str) -> JSONResponse:
    try:
        report = _reconciler(scope).remove_allocation(scope, allocation_id)
    except AllocationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except AllocationWriteError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _report_response(report)


@app.get("/api/v1/scopes/{scope}/policy")
def api_get_policy(scope: str) -> JSONResponse:
    return JSONResponse({"scope": scope, **load_matching_policy(DB_PATH, scope).to_dict()})


@app.post("/api/v1/scopes/{scope}/policy")
def api_upsert_policy(scope: str, payload: UpsertPolicyRequest) -> JSONResponse:
    try:
        tolerance = Decimal(payload.amount_tolerance)
    except InvalidOperation as exc:
        raise HTTPException(status_code=400, detail="amount_tolerance must be a decimal") from exc
    if payload.lookback_days < 0 or not tolerance.is_finite() or tolerance < 0:
        raise HTTPException(status_code=400, detail="lookback_days and amount_tolerance must not be negative")
    if payload.max_candidates is not None and payload.max_candidates < 1:
        raise HTTPException(status_code=400, detail="max_candidates must be positive")
    policy = MatchingPolicy(
        lookback_days=payload.lookback_days,
        amount_tolerance=tolerance,
        max_candidates=payload.max_candidates,
    )
    row = upsert_matching_policy(DB_PATH, scope, policy, payload.note)
    log_audit_event(
        DB_PATH, event_type="policy_updated", action="upsert",
        entity_type="matching_policy", entity_id=scope, scope=scope, actor="operator",
        detail=payload.note, new_value=f"lookback={policy.lookback_days} tol={policy.amount_tolerance}",
    )
    return JSONResponse({"ok": True, "policy": row})


@app.get("/api/v1/audit")
def api_audit_events(scope: str | None = None, event_type: str | None = None, limit: int = 200) -> JSONResponse:
    rows = list_audit_events(DB_PATH, scope=scope, event_type=event_type, limit=limit)
    return JSONResponse({"rows": rows, "count": len(rows)})


@app.on_event("startup")
def on_startup() -> None:
    init_db(DB_PATH)
    logger.info("ledger database ready at %s", DB_PATH)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
