"""
Failed and skipped rows: batched capture during processing and the
manual review lifecycle afterwards.

Review statuses move ``pending -> reviewed | resolved | ignored`` through an
explicit action; ``unmark`` returns any status to ``pending``. Promotion
turns corrected values into a real transaction and resolves the failure in
the same database transaction.

Failure records are never deleted. Each processing run of an import writes
its rows under a new ``attempt`` number, so reviews of an earlier run stay
where they were.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd
from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from bankimport.db.tables import import_failures, transactions
from bankimport.domain.imports.errors import (
    FailureNotFound,
    FingerprintConflict,
    ImportFailureType,
    InvalidFailureTransition,
    InvalidTransactionValues,
    RowParseError,
)
from bankimport.domain.imports.fingerprinting import DuplicateDetector
from bankimport.domain.imports.jobs import require_import_job
from bankimport.domain.imports.mapping import TRANSACTION_FIELDS, FieldKind
from bankimport.domain.imports.parser import parse_amount, parse_date
from bankimport.domain.imports.persistence import build_transaction_row, write_fingerprints
from bankimport.domain.imports.validators import RowValidator, parse_accepted_date
from bankimport.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)

PROMOTION_NOTE = "Transaction created from review"


class FailureStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    RESOLVED = "resolved"
    IGNORED = "ignored"


# Review action -> target status.
REVIEW_ACTIONS = {
    "review": FailureStatus.REVIEWED,
    "resolve": FailureStatus.RESOLVED,
    "ignore": FailureStatus.IGNORED,
    "unmark": FailureStatus.PENDING,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def check_transition(current: str, target: FailureStatus) -> None:
    """
    Raises:
        InvalidFailureTransition: Unless ``target`` is pending, or ``current`` is pending.
    """
    if target is FailureStatus.PENDING:
        return
    if current != FailureStatus.PENDING.value:
        raise InvalidFailureTransition(current, target.value)


@dataclass
class FailureEntry:
    row_number: Optional[int]
    error_type: ImportFailureType
    error_message: str
    raw_data: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    parsed_data: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class FailureRecorder:
    """
    Buffer failed and skipped rows for one import and bulk-insert them.

    Uses the same chunked bulk insert with row-by-row fallback as the
    transaction batcher. Rows that cannot be stored even individually are
    logged and reported by ``flush``.
    """

    def __init__(self, engine: Engine, import_id: str, batch_size: int = 100, attempt: int = 1):
        self.engine = engine
        self.import_id = import_id
        self.attempt = attempt
        self.batch_size = max(1, batch_size)
        self.recorded = 0
        self.lost_rows: List[Optional[int]] = []
        self._pending: List[Dict[str, Any]] = []

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def record(self, entry: FailureEntry) -> None:
        now = _utcnow()
        self._pending.append({
            "id": str(uuid.uuid4()),
            "import_id": self.import_id,
            "row_number": entry.row_number,
            "attempt": self.attempt,
            "raw_data": make_json_safe(entry.raw_data),
            "error_type": entry.error_type.value,
            "error_message": entry.error_message,
            "error_details": make_json_safe(entry.errors),
            "parsed_data": make_json_safe(entry.parsed_data) if entry.parsed_data is not None else None,
            "metadata": make_json_safe(entry.metadata),
            "status": FailureStatus.PENDING.value,
            "created_at": now,
            "updated_at": now,
        })
        if len(self._pending) >= self.batch_size:
            self.flush()

    def flush(self) -> int:
        """Persist buffered failures; returns how many were stored."""
        if not self._pending:
            return 0

        batch = self._pending
        self._pending = []
        try:
            with self.engine.begin() as conn:
                for start in range(0, len(batch), self.batch_size):
                    conn.execute(insert(import_failures), batch[start:start + self.batch_size])
            stored = len(batch)
        except Exception as e:
            logger.error(f"Bulk insert of {len(batch)} import failures failed for import {self.import_id}, retrying row-by-row: {e}")
            stored = 0
            for row in batch:
                try:
                    with self.engine.begin() as conn:
                        conn.execute(insert(import_failures), [row])
                    stored += 1
                except Exception as row_error:
                    logger.error(f"Could not record failure for row {row['row_number']} of import {self.import_id}: {row_error}")
                    self.lost_rows.append(row["row_number"])

        self.recorded += stored
        return stored


def _row_to_failure(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "import_id": row["import_id"],
        "row_number": row["row_number"],
        "attempt": row["attempt"],
        "raw_data": row["raw_data"] or {},
        "error_type": row["error_type"],
        "error_message": row["error_message"],
        "error_details": row["error_details"] or [],
        "parsed_data": row["parsed_data"],
        "metadata": row["metadata"] or {},
        "status": row["status"],
        "review_notes": row["review_notes"],
        "reviewed_by": row["reviewed_by"],
        "reviewed_at": row["reviewed_at"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def next_failure_attempt(engine: Engine, import_id: str) -> int:
    """Attempt number for the next processing run of an import."""
    with engine.connect() as conn:
        latest = conn.execute(
            select(func.max(import_failures.c.attempt)).where(import_failures.c.import_id == import_id)
        ).scalar()
    return (latest or 0) + 1


def _filters(
    import_id: str,
    status: Optional[str],
    error_type: Optional[str],
    search: Optional[str],
    attempt: Optional[int] = None,
) -> List[Any]:
    conditions = [import_failures.c.import_id == import_id]
    if attempt is not None:
        conditions.append(import_failures.c.attempt == attempt)
    if status:
        conditions.append(import_failures.c.status == status)
    if error_type:
        conditions.append(import_failures.c.error_type == error_type)
    if search:
        conditions.append(func.lower(import_failures.c.error_message).contains(search.lower()))
    return conditions


def list_failures(
    engine: Engine,
    import_id: str,
    *,
    status: Optional[str] = None,
    error_type: Optional[str] = None,
    search: Optional[str] = None,
    attempt: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    """
    List an import's failures by attempt, then row order. All attempts are
    listed unless ``attempt`` picks one.

    Returns:
        Tuple of (failures, total_count)
    """
    conditions = and_(*_filters(import_id, status, error_type, search, attempt))
    with engine.connect() as conn:
        total = conn.execute(select(func.count()).select_from(import_failures).where(conditions)).scalar() or 0
        rows = conn.execute(
            select(import_failures)
            .where(conditions)
            .order_by(import_failures.c.attempt, import_failures.c.row_number, import_failures.c.created_at)
            .limit(limit)
            .offset(offset)
        ).mappings().all()
    return [_row_to_failure(row) for row in rows], total


def get_failure(engine: Engine, import_id: str, failure_id: str) -> Dict[str, Any]:
    with engine.connect() as conn:
        row = conn.execute(
            select(import_failures).where(
                and_(import_failures.c.import_id == import_id, import_failures.c.id == failure_id)
            )
        ).mappings().first()
    if row is None:
        raise FailureNotFound(f"Import failure {failure_id} not found")
    return _row_to_failure(row)


def apply_review_action(
    engine: Engine,
    import_id: str,
    failure_id: str,
    action: str,
    *,
    actor_id: str,
    note: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Apply ``review``, ``resolve``, ``ignore`` or ``unmark`` to one failure.

    Raises:
        ValueError: For an unknown action.
        FailureNotFound: If the failure does not belong to the import.
        InvalidFailureTransition: If the action is not allowed from the current status.
    """
    if action not in REVIEW_ACTIONS:
        raise ValueError(f"Unknown review action: {action}")
    target = REVIEW_ACTIONS[action]

    failure = get_failure(engine, import_id, failure_id)
    check_transition(failure["status"], target)

    now = _utcnow()
    if target is FailureStatus.PENDING:
        values = {"status": target.value, "reviewed_by": None, "reviewed_at": None, "updated_at": now}
        if note is not None:
            values["review_notes"] = note
    else:
        values = {"status": target.value, "reviewed_by": actor_id, "reviewed_at": now, "updated_at": now}
        if note is not None:
            values["review_notes"] = note

    with engine.begin() as conn:
        conn.execute(update(import_failures).where(import_failures.c.id == failure_id).values(**values))

    logger.info(f"Import failure {failure_id} moved from {failure['status']} to {target.value} by {actor_id}")
    return get_failure(engine, import_id, failure_id)


def bulk_review_action(
    engine: Engine,
    import_id: str,
    failure_ids: Sequence[str],
    action: str,
    *,
    actor_id: str,
    note: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Apply one action to many failures; each id succeeds or fails on its own."""
    results = []
    for failure_id in failure_ids:
        try:
            failure = apply_review_action(engine, import_id, failure_id, action, actor_id=actor_id, note=note)
            results.append({"id": failure_id, "success": True, "status": failure["status"], "error": None})
        except (FailureNotFound, InvalidFailureTransition, ValueError) as e:
            results.append({"id": failure_id, "success": False, "status": None, "error": str(e)})
    return results


def failure_stats(engine: Engine, import_id: str, *, attempt: Optional[int] = None) -> Dict[str, Any]:
    """Counts of an import's failures by review status and by error type."""
    conditions = and_(*_filters(import_id, None, None, None, attempt))
    with engine.connect() as conn:
        by_status_rows = conn.execute(
            select(import_failures.c.status, func.count())
            .where(conditions)
            .group_by(import_failures.c.status)
        ).all()
        by_type_rows = conn.execute(
            select(import_failures.c.error_type, func.count())
            .where(conditions)
            .group_by(import_failures.c.error_type)
        ).all()

    by_status = {status.value: 0 for status in FailureStatus}
    by_status.update({status: count for status, count in by_status_rows})
    by_error_type = {error_type: count for error_type, count in by_type_rows}
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_error_type": by_error_type,
    }


EXPORT_COLUMNS = ["attempt", "row_number", "status", "error_type", "error_message", "errors", "review_notes", "reviewed_by"]


def export_failures_csv(
    engine: Engine, import_id: str, *, status: Optional[str] = None, attempt: Optional[int] = None
) -> str:
    """
    Render an import's failures as CSV.

    Raw cells are flattened into ``raw:<header>`` columns after the fixed ones.
    """
    failures, _ = list_failures(engine, import_id, status=status, attempt=attempt, limit=1_000_000)
    records = []
    raw_columns: List[str] = []
    for failure in failures:
        record = {
            "attempt": failure["attempt"],
            "row_number": failure["row_number"],
            "status": failure["status"],
            "error_type": failure["error_type"],
            "error_message": failure["error_message"],
            "errors": "; ".join(str(error) for error in failure["error_details"]),
            "review_notes": failure["review_notes"],
            "reviewed_by": failure["reviewed_by"],
        }
        for header, value in failure["raw_data"].items():
            column = f"raw:{header}"
            if column not in raw_columns:
                raw_columns.append(column)
            record[column] = value
        records.append(record)

    df = pd.DataFrame(records, columns=EXPORT_COLUMNS + raw_columns)
    return df.to_csv(index=False)


def _coerce_values(values: Mapping[str, Any], date_format: Optional[str], amount_format: Optional[str]) -> Dict[str, Any]:
    """
    Turn validated reviewer values into column values.

    Raises:
        InvalidTransactionValues: If a value cannot be converted or a required
            field ends up empty.
    """
    coerced: Dict[str, Any] = {}
    errors: List[str] = []
    unreadable = set()
    for name, value in values.items():
        spec = TRANSACTION_FIELDS.get(name)
        if spec is None or value is None or (isinstance(value, str) and value.strip() == ""):
            continue
        if spec.kind is FieldKind.DATE:
            parsed = parse_accepted_date(value) or parse_date(str(value), date_format)
            if parsed is None:
                unreadable.add(name)
                errors.append(f"Invalid date format for {name}: '{value}'")
            coerced[name] = parsed
        elif spec.kind is FieldKind.AMOUNT:
            try:
                coerced[name] = parse_amount(str(value), "1,234.56")
            except RowParseError as e:
                unreadable.add(name)
                errors.append(str(e))
        else:
            coerced[name] = str(value).strip()
    if "currency" in values and values["currency"]:
        coerced["currency"] = str(values["currency"]).strip().upper()

    for name in ("booked_date", "amount"):
        if coerced.get(name) is None and name not in unreadable:
            errors.append(f"Missing required field: {name}")
    if errors:
        raise InvalidTransactionValues(errors)
    return coerced


def promote_failure(
    engine: Engine,
    import_id: str,
    failure_id: str,
    values: Mapping[str, Any],
    *,
    actor_id: str,
    detector: Optional[DuplicateDetector] = None,
    note: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a transaction from corrected values and resolve the failure.

    Missing values are taken from the failure's partially parsed data; the
    currency defaults to the import's currency.

    Returns:
        Dict with the resolved ``failure`` and the new ``transaction_id``

    Raises:
        InvalidFailureTransition: If the failure is not pending.
        InvalidTransactionValues: If the merged values fail validation.
        FingerprintConflict: If an identical transaction already exists for the user.
    """
    job = require_import_job(engine, import_id)
    failure = get_failure(engine, import_id, failure_id)
    check_transition(failure["status"], FailureStatus.RESOLVED)

    merged: Dict[str, Any] = {}
    for name, value in (failure["parsed_data"] or {}).items():
        if (name in TRANSACTION_FIELDS or name == "currency") and value not in (None, ""):
            merged[name] = value
    merged.update({name: value for name, value in values.items() if name in TRANSACTION_FIELDS or name == "currency"})
    merged.setdefault("currency", job["currency"] or "EUR")
    if not merged.get("description"):
        merged["description"] = merged.get("partner")

    validation = RowValidator().validate(merged)
    if not validation.valid:
        raise InvalidTransactionValues(validation.errors)

    coerced = _coerce_values(merged, job["date_format"], job["amount_format"])
    coerced.setdefault("processed_date", coerced.get("booked_date"))
    coerced.setdefault("type", "Imported")

    detector = detector or DuplicateDetector(engine)
    fingerprint = detector.fingerprint(coerced)
    existing_id = detector.lookup_fingerprint(job["user_id"], fingerprint)
    if existing_id is not None:
        raise FingerprintConflict(fingerprint, existing_id)

    row = build_transaction_row(
        coerced,
        user_id=job["user_id"],
        import_id=import_id,
        account_id=job["account_id"],
        import_data=failure["raw_data"],
    )
    now = _utcnow()
    metadata = dict(failure["metadata"])
    metadata["promoted_transaction_id"] = row["id"]
    stage = "transaction"
    try:
        with engine.begin() as conn:
            conn.execute(insert(transactions), [row])
            stage = "fingerprint"
            write_fingerprints(conn, detector, job["user_id"], [row["id"]])
            conn.execute(
                update(import_failures)
                .where(import_failures.c.id == failure_id)
                .values(
                    status=FailureStatus.RESOLVED.value,
                    reviewed_by=actor_id,
                    reviewed_at=now,
                    review_notes=note or PROMOTION_NOTE,
                    metadata=metadata,
                    updated_at=now,
                )
            )
    except IntegrityError as e:
        if stage == "fingerprint":
            logger.warning(f"Promotion of failure {failure_id} hit a fingerprint collision: {e.orig}")
            raise FingerprintConflict(fingerprint) from e
        logger.warning(f"Promotion of failure {failure_id} rejected by the database: {e.orig}")
        raise InvalidTransactionValues([str(e.orig)]) from e

    logger.info(f"Promoted import failure {failure_id} to transaction {row['id']}")
    return {"failure": get_failure(engine, import_id, failure_id), "transaction_id": row["id"]}
