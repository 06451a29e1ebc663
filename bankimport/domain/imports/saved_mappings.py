"""
Named, reusable column mappings.

Mappings are stored in header form so they survive re-uploads with reordered
or renamed columns. Listing for a header set ranks them by how much of the
mapping still resolves, then by recency.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.engine import Engine

from bankimport.db.tables import import_mappings
from bankimport.domain.imports.errors import MappingNotFound
from bankimport.domain.imports.mapping import (
    ColumnMapping,
    HeaderColumnMapping,
    IndexColumnMapping,
    column_mapping_from_dict,
    compatibility_score,
    to_header_mapping,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _row_to_mapping(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "name": row["name"],
        "bank_name": row["bank_name"],
        "column_mapping": row["column_mapping"] or {},
        "date_format": row["date_format"],
        "amount_format": row["amount_format"],
        "amount_sign_strategy": row["amount_sign_strategy"],
        "currency": row["currency"],
        "delimiter": row["delimiter"],
        "quote_char": row["quote_char"],
        "last_used_at": row["last_used_at"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def save_mapping(
    engine: Engine,
    *,
    user_id: str,
    name: str,
    column_mapping: ColumnMapping,
    headers: Optional[Sequence[str]] = None,
    bank_name: Optional[str] = None,
    date_format: Optional[str] = None,
    amount_format: Optional[str] = None,
    amount_sign_strategy: Optional[str] = None,
    currency: Optional[str] = None,
    delimiter: Optional[str] = None,
    quote_char: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Store a mapping in header form.

    An index mapping needs the ``headers`` it refers to so it can be
    converted.
    """
    if isinstance(column_mapping, dict):
        column_mapping = column_mapping_from_dict(column_mapping)
    if isinstance(column_mapping, IndexColumnMapping):
        if headers is None:
            raise ValueError("Headers are required to save an index based mapping")
        column_mapping = to_header_mapping(column_mapping, headers)

    mapping_id = str(uuid.uuid4())
    now = _utcnow()
    with engine.begin() as conn:
        conn.execute(
            insert(import_mappings).values(
                id=mapping_id,
                user_id=user_id,
                name=name,
                bank_name=bank_name,
                column_mapping=column_mapping.to_dict(),
                date_format=date_format,
                amount_format=amount_format,
                amount_sign_strategy=amount_sign_strategy,
                currency=currency.upper() if currency else None,
                delimiter=delimiter,
                quote_char=quote_char,
                created_at=now,
                updated_at=now,
            )
        )
    logger.info(f"Saved import mapping '{name}' ({mapping_id}) for user {user_id}")
    return get_mapping(engine, mapping_id, user_id)


def get_mapping(engine: Engine, mapping_id: str, user_id: str) -> Dict[str, Any]:
    with engine.connect() as conn:
        row = conn.execute(
            select(import_mappings).where(
                and_(import_mappings.c.id == mapping_id, import_mappings.c.user_id == user_id)
            )
        ).mappings().first()
    if row is None:
        raise MappingNotFound(f"Import mapping {mapping_id} not found")
    return _row_to_mapping(row)


def find_mapping_by_name(engine: Engine, user_id: str, name: str) -> Dict[str, Any]:
    with engine.connect() as conn:
        row = conn.execute(
            select(import_mappings)
            .where(and_(import_mappings.c.user_id == user_id, import_mappings.c.name == name))
            .order_by(import_mappings.c.updated_at.desc())
        ).mappings().first()
    if row is None:
        raise MappingNotFound(f"Import mapping '{name}' not found")
    return _row_to_mapping(row)


def saved_column_mapping(saved: Dict[str, Any]) -> HeaderColumnMapping:
    return HeaderColumnMapping(dict(saved["column_mapping"]))


def list_mappings(engine: Engine, user_id: str, headers: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
    """
    List a user's mappings.

    With ``headers`` each mapping gets a ``compatibility`` score and the list
    is ordered by it, most recently used first among equals.
    """
    with engine.connect() as conn:
        rows = conn.execute(
            select(import_mappings).where(import_mappings.c.user_id == user_id)
        ).mappings().all()
    mappings = [_row_to_mapping(row) for row in rows]

    def recency(item: Dict[str, Any]) -> datetime:
        return item["last_used_at"] or item["created_at"] or datetime.min

    if headers is None:
        return sorted(mappings, key=recency, reverse=True)

    for item in mappings:
        item["compatibility"] = compatibility_score(saved_column_mapping(item), headers)
    return sorted(mappings, key=lambda item: (item["compatibility"], recency(item)), reverse=True)


def mark_mapping_used(engine: Engine, mapping_id: str, user_id: str) -> Dict[str, Any]:
    get_mapping(engine, mapping_id, user_id)
    now = _utcnow()
    with engine.begin() as conn:
        conn.execute(
            update(import_mappings)
            .where(import_mappings.c.id == mapping_id)
            .values(last_used_at=now, updated_at=now)
        )
    return get_mapping(engine, mapping_id, user_id)


def delete_mapping(engine: Engine, mapping_id: str, user_id: str) -> None:
    with engine.begin() as conn:
        result = conn.execute(
            delete(import_mappings).where(
                and_(import_mappings.c.id == mapping_id, import_mappings.c.user_id == user_id)
            )
        )
    if result.rowcount == 0:
        raise MappingNotFound(f"Import mapping {mapping_id} not found")
    logger.info(f"Deleted import mapping {mapping_id}")
