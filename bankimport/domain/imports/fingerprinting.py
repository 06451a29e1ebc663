"""
Duplicate detection for imported transactions.

Two tiers: an exact SHA-256 fingerprint looked up in the per-user
``transaction_fingerprints`` index, and a weighted fuzzy score against the
user's transactions booked within a small window around the candidate.
The user id is always passed in explicitly.
"""
import hashlib
import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence

from rapidfuzz.distance import Levenshtein
from sqlalchemy import and_, select
from sqlalchemy.engine import Engine

from bankimport.db.tables import transaction_fingerprints, transactions

logger = logging.getLogger(__name__)

DATE_WEIGHT = Decimal("0.50")
AMOUNT_WEIGHT = Decimal("0.30")
DESCRIPTION_WEIGHT = Decimal("0.15")
REFERENCE_WEIGHT = Decimal("0.05")

DESCRIPTION_SIMILARITY_THRESHOLD = 0.90
DUPLICATE_SCORE_THRESHOLD = Decimal("0.80")

# Canonical field -> alternative keys consulted when the canonical key is absent.
DEFAULT_FIELD_ALIASES: Dict[str, List[str]] = {
    "description": ["partner", "details", "purpose"],
    "booked_date": ["date", "booking_date", "transaction_date"],
    "processed_date": ["value_date", "valuta"],
    "amount": ["value", "sum"],
    "reference_id": ["transaction_id", "reference"],
}

NORMALIZED_FIELDS = ("description", "booked_date", "processed_date", "amount", "reference_id")


def _present(value: Any) -> bool:
    return value is not None and not (isinstance(value, str) and value.strip() == "")


def normalize_record(record: Mapping[str, Any], aliases: Optional[Mapping[str, Sequence[str]]] = None) -> Dict[str, Any]:
    """Reduce a record to the canonical fingerprint shape, consulting aliases for missing fields."""
    alias_table = DEFAULT_FIELD_ALIASES if aliases is None else aliases
    normalized: Dict[str, Any] = {}
    for name in NORMALIZED_FIELDS:
        value = record.get(name)
        if not _present(value):
            for alias in alias_table.get(name, []):
                if _present(record.get(alias)):
                    value = record.get(alias)
                    break
        normalized[name] = value if _present(value) else None
    return normalized


def to_date(value: Any) -> Optional[date]:
    """Calendar date of a datetime, date or ISO-like string; None when it cannot be read."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            pass
        try:
            return datetime.strptime(text[:10], "%Y-%m-%d").date()
        except ValueError:
            return None
    return None


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def fingerprint_description(description: Any) -> str:
    """Lowercase, alphanumeric-only form of a description."""
    if not description:
        return ""
    collapsed = re.sub(r"\s+", " ", str(description)).strip().lower()
    return re.sub(r"[^a-z0-9]", "", collapsed)


def compute_fingerprint(normalized: Mapping[str, Any]) -> str:
    """
    SHA-256 over ``date|abs(amount)|description|reference``.

    The date is the booked date, else the processed date, as ``YYYY-MM-DD``;
    an unreadable date contributes an empty string.
    """
    day = to_date(normalized.get("booked_date")) or to_date(normalized.get("processed_date"))
    amount = to_decimal(normalized.get("amount"))
    parts = [
        day.isoformat() if day else "",
        f"{abs(amount):.2f}" if amount is not None else "",
        fingerprint_description(normalized.get("description")),
        str(normalized.get("reference_id") or "").strip(),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def similarity_text(value: Any) -> str:
    """Case-folded text with accents and punctuation removed, whitespace collapsed."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", str(value))
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    stripped = re.sub(r"[^\w\s]", " ", stripped.casefold())
    return re.sub(r"\s+", " ", stripped.replace("_", " ")).strip()


def description_similarity(first: Any, second: Any) -> float:
    """1 - (Levenshtein distance / longer length); two empty texts are identical."""
    left = similarity_text(first)
    right = similarity_text(second)
    longest = max(len(left), len(right))
    if longest == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(left, right) / longest


def duplicate_score(candidate: Mapping[str, Any], existing: Mapping[str, Any]) -> Decimal:
    """
    Weighted similarity between a candidate and an existing transaction.

    Both arguments use the canonical shape of ``normalize_record``.
    """
    score = Decimal("0")

    candidate_day = to_date(candidate.get("booked_date"))
    if candidate_day is not None and candidate_day == to_date(existing.get("booked_date")):
        score += DATE_WEIGHT

    candidate_amount = to_decimal(candidate.get("amount"))
    existing_amount = to_decimal(existing.get("amount"))
    if candidate_amount is not None and existing_amount is not None and abs(candidate_amount) == abs(existing_amount):
        score += AMOUNT_WEIGHT

    if description_similarity(candidate.get("description"), existing.get("description")) >= DESCRIPTION_SIMILARITY_THRESHOLD:
        score += DESCRIPTION_WEIGHT

    candidate_reference = str(candidate.get("reference_id") or "").strip()
    existing_reference = str(existing.get("reference_id") or "").strip()
    if candidate_reference and candidate_reference == existing_reference:
        score += REFERENCE_WEIGHT

    return score


def is_duplicate_score(score: Decimal) -> bool:
    return score >= DUPLICATE_SCORE_THRESHOLD


@dataclass
class DuplicateCheck:
    is_duplicate: bool
    fingerprint: str
    reason: Optional[str] = None  # "fingerprint" or "fuzzy"
    score: Optional[Decimal] = None
    matched_transaction_id: Optional[str] = None


class DuplicateDetector:
    """
    Classify candidate transactions as new or duplicate for one user.

    Args:
        engine: Database engine holding ``transactions`` and the fingerprint index
        window_days: Days either side of the booked date searched by the fuzzy pass
        aliases: Alias table for ``normalize``; defaults to ``DEFAULT_FIELD_ALIASES``
    """

    def __init__(self, engine: Engine, window_days: int = 1, aliases: Optional[Mapping[str, Sequence[str]]] = None):
        self.engine = engine
        self.window_days = window_days
        self.aliases = aliases

    def normalize(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        return normalize_record(record, self.aliases)

    def fingerprint(self, record: Mapping[str, Any]) -> str:
        return compute_fingerprint(self.normalize(record))

    def lookup_fingerprint(self, user_id: str, fingerprint: str) -> Optional[str]:
        """Return the transaction id indexed under ``fingerprint`` for the user, if any."""
        stmt = select(transaction_fingerprints.c.transaction_id).where(
            and_(
                transaction_fingerprints.c.user_id == user_id,
                transaction_fingerprints.c.fingerprint == fingerprint,
            )
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar()

    def find_candidates(self, user_id: str, booked_date: Any, currency: Optional[str] = None) -> List[Dict[str, Any]]:
        """The user's transactions booked within the window around ``booked_date``."""
        day = to_date(booked_date)
        if day is None:
            return []

        start = datetime.combine(day - timedelta(days=self.window_days), time.min)
        end = datetime.combine(day + timedelta(days=self.window_days + 1), time.min)
        conditions = [
            transactions.c.user_id == user_id,
            transactions.c.booked_date >= start,
            transactions.c.booked_date < end,
        ]
        if currency:
            conditions.append(transactions.c.currency == currency)

        stmt = select(
            transactions.c.id,
            transactions.c.booked_date,
            transactions.c.amount,
            transactions.c.description,
            transactions.c.transaction_id,
        ).where(and_(*conditions))
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()

        return [
            {
                "id": row["id"],
                "booked_date": row["booked_date"],
                "amount": row["amount"],
                "description": row["description"],
                "reference_id": row["transaction_id"],
            }
            for row in rows
        ]

    def check(self, user_id: str, record: Mapping[str, Any]) -> DuplicateCheck:
        """
        Run the exact fingerprint lookup, then the fuzzy pass if it misses.

        ``record`` is a transaction field mapping (``CandidateTransaction.fields()``).
        """
        normalized = self.normalize(record)
        fingerprint = compute_fingerprint(normalized)

        existing_id = self.lookup_fingerprint(user_id, fingerprint)
        if existing_id is not None:
            logger.debug(f"Exact duplicate (fingerprint: {fingerprint[:8]}) of transaction {existing_id}")
            return DuplicateCheck(True, fingerprint, reason="fingerprint", matched_transaction_id=existing_id)

        best: Optional[DuplicateCheck] = None
        for existing in self.find_candidates(user_id, normalized.get("booked_date"), record.get("currency")):
            score = duplicate_score(normalized, existing)
            if is_duplicate_score(score) and (best is None or score > best.score):
                best = DuplicateCheck(True, fingerprint, reason="fuzzy", score=score, matched_transaction_id=existing["id"])

        if best is not None:
            logger.debug(f"Fuzzy duplicate (score {best.score}) of transaction {best.matched_transaction_id}")
            return best
        return DuplicateCheck(False, fingerprint)

    def check_pending(self, record: Mapping[str, Any], pending: Sequence[Mapping[str, Any]]) -> Optional[DuplicateCheck]:
        """
        Fuzzy pass against accepted rows of the same import that are not stored yet.

        Applies the same currency and date window as ``find_candidates`` so a
        row is classified the same way whether its twin was flushed or not.
        """
        normalized = self.normalize(record)
        day = to_date(normalized.get("booked_date"))
        if day is None:
            return None

        best: Optional[DuplicateCheck] = None
        for other in pending:
            if record.get("currency") and other.get("currency") != record.get("currency"):
                continue
            other_normalized = self.normalize(other)
            other_day = to_date(other_normalized.get("booked_date"))
            if other_day is None or abs((other_day - day).days) > self.window_days:
                continue
            score = duplicate_score(normalized, other_normalized)
            if is_duplicate_score(score) and (best is None or score > best.score):
                best = DuplicateCheck(True, compute_fingerprint(normalized), reason="in_file", score=score)
        return best
