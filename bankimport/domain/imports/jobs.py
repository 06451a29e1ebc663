"""
Import job lifecycle: creation at upload, configuration, status derivation
and revert.
"""
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.engine import Engine

from bankimport.db.tables import import_jobs, transaction_fingerprints, transactions
from bankimport.domain.imports.errors import ImportNotFound, ImportStateError, InvalidMappingError
from bankimport.domain.imports.mapping import (
    ColumnMapping,
    IndexColumnMapping,
    column_mapping_from_dict,
    to_index_mapping,
    validate_mapping,
)
from bankimport.domain.imports.parser import AmountSignStrategy, FormatConfig, resolve_amount_format

logger = logging.getLogger(__name__)

SKIP_RATIO_THRESHOLD = 0.10


class ImportStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_SKIPPED_DUPLICATES = "completed_skipped_duplicates"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    REVERTED = "reverted"


CONFIGURABLE_STATUSES = (ImportStatus.PENDING.value, ImportStatus.FAILED.value)
PROCESSABLE_STATUSES = (ImportStatus.PENDING.value, ImportStatus.PROCESSING.value, ImportStatus.FAILED.value)
REVERTIBLE_STATUSES = (
    ImportStatus.COMPLETED.value,
    ImportStatus.COMPLETED_SKIPPED_DUPLICATES.value,
    ImportStatus.PARTIALLY_FAILED.value,
    ImportStatus.FAILED.value,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def derive_import_status(total: int, processed: int, failed: int, skipped: int) -> ImportStatus:
    """
    Final status from row outcome counts, most severe rule first.

    A run where more than 10% as many rows were skipped as were imported is
    reported as partially failed even without hard failures.
    """
    if total > 0 and failed == total:
        return ImportStatus.FAILED
    if failed > 0 or skipped > SKIP_RATIO_THRESHOLD * processed:
        return ImportStatus.PARTIALLY_FAILED
    if skipped > 0:
        return ImportStatus.COMPLETED_SKIPPED_DUPLICATES
    return ImportStatus.COMPLETED


def _row_to_job(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "account_id": row["account_id"],
        "status": row["status"],
        "file_path": row["file_path"],
        "original_filename": row["original_filename"],
        "file_hash": row["file_hash"],
        "delimiter": row["delimiter"],
        "quote_char": row["quote_char"],
        "headers": row["headers"] or [],
        "column_mapping": row["column_mapping"],
        "date_format": row["date_format"],
        "amount_format": row["amount_format"],
        "amount_sign_strategy": row["amount_sign_strategy"],
        "currency": row["currency"],
        "total_rows": row["total_rows"],
        "processed_rows": row["processed_rows"],
        "failed_rows": row["failed_rows"],
        "skipped_rows": row["skipped_rows"],
        "error_message": row["error_message"],
        "metadata": row["metadata"] or {},
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "processed_at": row["processed_at"],
    }


def create_import_job(
    engine: Engine,
    *,
    user_id: str,
    file_path: str,
    original_filename: Optional[str] = None,
    file_hash: Optional[str] = None,
    delimiter: str = ",",
    quote_char: str = '"',
    headers: Optional[List[str]] = None,
    column_mapping: Optional[Dict[str, Optional[int]]] = None,
    date_format: Optional[str] = None,
    amount_format: Optional[str] = None,
    amount_sign_strategy: Optional[str] = None,
    currency: Optional[str] = None,
    account_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create and persist a new pending import job."""
    job_id = str(uuid.uuid4())
    now = _utcnow()
    values = {
        "id": job_id,
        "user_id": user_id,
        "account_id": account_id,
        "status": ImportStatus.PENDING.value,
        "file_path": file_path,
        "original_filename": original_filename,
        "file_hash": file_hash,
        "delimiter": delimiter,
        "quote_char": quote_char,
        "headers": headers or [],
        "column_mapping": column_mapping,
        "date_format": date_format,
        "amount_format": amount_format,
        "amount_sign_strategy": amount_sign_strategy,
        "currency": currency,
        "total_rows": 0,
        "processed_rows": 0,
        "failed_rows": 0,
        "skipped_rows": 0,
        "metadata": metadata or {},
        "created_at": now,
        "updated_at": now,
    }
    with engine.begin() as conn:
        conn.execute(insert(import_jobs).values(**values))

    logger.info(f"Created import job {job_id} for user {user_id} ({original_filename or file_path})")
    return get_import_job(engine, job_id)


def get_import_job(engine: Engine, job_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Fetch one job; with ``user_id`` only the owner's job is returned."""
    stmt = select(import_jobs).where(import_jobs.c.id == job_id)
    if user_id is not None:
        stmt = stmt.where(import_jobs.c.user_id == user_id)
    with engine.connect() as conn:
        row = conn.execute(stmt).mappings().first()
    return _row_to_job(row) if row else None


def require_import_job(engine: Engine, job_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    job = get_import_job(engine, job_id, user_id)
    if job is None:
        raise ImportNotFound(f"Import {job_id} not found")
    return job


def list_import_jobs(
    engine: Engine,
    user_id: str,
    *,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    """
    List a user's jobs, newest first.

    Returns:
        Tuple of (jobs, total_count)
    """
    conditions = [import_jobs.c.user_id == user_id]
    if status:
        conditions.append(import_jobs.c.status == status)

    with engine.connect() as conn:
        total = conn.execute(select(func.count()).select_from(import_jobs).where(and_(*conditions))).scalar() or 0
        rows = conn.execute(
            select(import_jobs)
            .where(and_(*conditions))
            .order_by(import_jobs.c.created_at.desc(), import_jobs.c.id)
            .limit(limit)
            .offset(offset)
        ).mappings().all()
    return [_row_to_job(row) for row in rows], total


def update_import_job(engine: Engine, job_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
    """Update the given columns of a job and return the refreshed job."""
    unknown = [name for name in fields if name not in import_jobs.c]
    if unknown:
        raise ValueError(f"Unknown import job fields: {', '.join(unknown)}")

    fields["updated_at"] = _utcnow()
    with engine.begin() as conn:
        conn.execute(update(import_jobs).where(import_jobs.c.id == job_id).values(**fields))
    return get_import_job(engine, job_id)


def format_config_for(job: Dict[str, Any], defaults: Any) -> FormatConfig:
    """Format settings for a job, falling back to the configured defaults."""
    return FormatConfig(
        date_format=job.get("date_format") or defaults.default_date_format,
        amount_format=job.get("amount_format") or defaults.default_amount_format,
        amount_sign_strategy=job.get("amount_sign_strategy") or defaults.default_amount_sign_strategy,
        currency=(job.get("currency") or defaults.default_currency).upper(),
    )


def _validate_formats(amount_format: Optional[str], sign_strategy: Optional[str], currency: Optional[str]) -> List[str]:
    errors = []
    if amount_format:
        try:
            resolve_amount_format(amount_format)
        except ValueError:
            errors.append(f"Unknown amount format: {amount_format}")
    if sign_strategy and sign_strategy not in [strategy.value for strategy in AmountSignStrategy]:
        errors.append(f"Unknown amount sign strategy: {sign_strategy}")
    if currency and (len(currency) != 3 or not currency.isalpha()):
        errors.append(f"Currency must be a 3-letter code, got '{currency}'")
    return errors


def configure_import_job(
    engine: Engine,
    job: Dict[str, Any],
    *,
    column_mapping: ColumnMapping,
    date_format: Optional[str] = None,
    amount_format: Optional[str] = None,
    amount_sign_strategy: Optional[str] = None,
    currency: Optional[str] = None,
    account_id: Optional[str] = None,
) -> Tuple[Dict[str, Any], List[str]]:
    """
    Resolve a mapping against the job's headers and store it with the formats.

    Returns:
        Tuple of (updated_job, mapping_warnings)

    Raises:
        ImportStateError: If the job can no longer be configured.
        InvalidMappingError: If the resolved mapping or a format selector is invalid.
    """
    if job["status"] not in CONFIGURABLE_STATUSES:
        raise ImportStateError(f"Import {job['id']} cannot be configured while {job['status']}")

    if isinstance(column_mapping, dict):
        column_mapping = column_mapping_from_dict(column_mapping)

    headers = job["headers"]
    resolved: IndexColumnMapping = to_index_mapping(column_mapping, headers)
    validation = validate_mapping(resolved, headers)
    errors = validation.errors + _validate_formats(amount_format, amount_sign_strategy, currency)
    if errors:
        raise InvalidMappingError(errors, validation.warnings)

    changes: Dict[str, Any] = {"column_mapping": resolved.to_dict()}
    if date_format:
        changes["date_format"] = date_format
    if amount_format:
        changes["amount_format"] = resolve_amount_format(amount_format).value
    if amount_sign_strategy:
        changes["amount_sign_strategy"] = amount_sign_strategy
    if currency:
        changes["currency"] = currency.upper()
    if account_id is not None:
        changes["account_id"] = account_id

    updated = update_import_job(engine, job["id"], **changes)
    logger.info(f"Configured import {job['id']} with {sum(1 for v in resolved.fields.values() if v is not None)} mapped fields")
    return updated, validation.warnings


def revert_import_job(engine: Engine, job: Dict[str, Any]) -> Dict[str, Any]:
    """
    Delete the transactions an import created, with their fingerprint entries.

    Reverting an already reverted job is a no-op.
    """
    if job["status"] == ImportStatus.REVERTED.value:
        return job
    if job["status"] not in REVERTIBLE_STATUSES:
        raise ImportStateError(f"Import {job['id']} cannot be reverted while {job['status']}")

    transaction_ids = select(transactions.c.id).where(transactions.c.import_id == job["id"])
    with engine.begin() as conn:
        conn.execute(
            delete(transaction_fingerprints).where(transaction_fingerprints.c.transaction_id.in_(transaction_ids))
        )
        deleted = conn.execute(delete(transactions).where(transactions.c.import_id == job["id"])).rowcount
        conn.execute(
            update(import_jobs)
            .where(import_jobs.c.id == job["id"])
            .values(
                status=ImportStatus.REVERTED.value,
                processed_rows=0,
                failed_rows=0,
                skipped_rows=0,
                updated_at=_utcnow(),
            )
        )

    logger.info(f"Reverted import {job['id']}: deleted {deleted} transactions")
    return get_import_job(engine, job["id"])
