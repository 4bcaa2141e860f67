from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.environ.get("PAYRECON_DATA_DIR", BASE_DIR / "data"))
DB_PATH = Path(os.environ.get("PAYRECON_DB_PATH", DATA_DIR / "ledger.db"))
CORS_ORIGINS = os.environ.get("PAYRECON_CORS_ORIGINS", "http://localhost:8001").split(",")

DEFAULT_LOOKBACK_DAYS = 180
DEFAULT_AMOUNT_TOLERANCE = Decimal("0.01")
DEFAULT_MAX_CANDIDATES = 50


@dataclass(frozen=True)
class MatchingPolicy:
    """Per-scope matching knobs.

    lookback_days bounds how old an invoice may be relative to the payment
    date. amount_tolerance is the epsilon used for every amount equality and
    drift comparison. max_candidates caps the candidate list in an advisory
    report (None keeps all of them).
    """

    lookback_days: int = DEFAULT_LOOKBACK_DAYS
    amount_tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE
    max_candidates: int | None = DEFAULT_MAX_CANDIDATES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["amount_tolerance"] = str(self.amount_tolerance)
        return data


DEFAULT_POLICY = MatchingPolicy()
