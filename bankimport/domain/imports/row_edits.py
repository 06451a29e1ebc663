"""Per-row manual corrections applied on top of parsed cells during processing."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.engine import Engine

from bankimport.db.tables import import_row_edits
from bankimport.domain.imports.errors import InvalidTransactionValues
from bankimport.domain.imports.mapping import TRANSACTION_FIELDS

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _clean_edit(data: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = sorted(name for name in data if name not in TRANSACTION_FIELDS)
    if unknown:
        raise InvalidTransactionValues([f"Unknown transaction field: {name}" for name in unknown])
    return {name: (None if value is None else str(value)) for name, value in data.items()}


def save_row_edit(engine: Engine, import_id: str, row_number: int, data: Mapping[str, Any]) -> Dict[str, Any]:
    """Create or replace the override for one row."""
    if row_number < 1:
        raise InvalidTransactionValues([f"Row number must be positive, got {row_number}"])
    values = _clean_edit(data)
    now = _utcnow()
    where = and_(import_row_edits.c.import_id == import_id, import_row_edits.c.row_number == row_number)

    with engine.begin() as conn:
        existing = conn.execute(select(import_row_edits.c.id).where(where)).scalar()
        if existing:
            conn.execute(update(import_row_edits).where(where).values(data=values, updated_at=now))
        else:
            conn.execute(
                insert(import_row_edits).values(
                    id=str(uuid.uuid4()),
                    import_id=import_id,
                    row_number=row_number,
                    data=values,
                    created_at=now,
                    updated_at=now,
                )
            )

    logger.info(f"Saved edit for row {row_number} of import {import_id}: {sorted(values)}")
    return {"row_number": row_number, "data": values}


def delete_row_edit(engine: Engine, import_id: str, row_number: int) -> bool:
    with engine.begin() as conn:
        result = conn.execute(
            delete(import_row_edits).where(
                and_(import_row_edits.c.import_id == import_id, import_row_edits.c.row_number == row_number)
            )
        )
    return result.rowcount > 0


def list_row_edits(engine: Engine, import_id: str) -> List[Dict[str, Any]]:
    with engine.connect() as conn:
        rows = conn.execute(
            select(import_row_edits.c.row_number, import_row_edits.c.data, import_row_edits.c.updated_at)
            .where(import_row_edits.c.import_id == import_id)
            .order_by(import_row_edits.c.row_number)
        ).mappings().all()
    return [dict(row) for row in rows]


def load_overrides(engine: Engine, import_id: str) -> Dict[int, Dict[str, Any]]:
    """All overrides of an import keyed by row number, loaded once before processing."""
    return {edit["row_number"]: edit["data"] or {} for edit in list_row_edits(engine, import_id)}
