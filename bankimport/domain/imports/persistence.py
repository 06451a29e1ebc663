"""
Batched persistence of accepted transactions.

Accepted candidates are buffered and written with one bulk insert per batch,
chunked to bound statement size, inside a single short transaction. When the
bulk path fails the whole batch is retried one row at a time so each row
gets its own outcome. Fingerprints are computed from the values read back
after the insert and written to the per-user fingerprint index.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from sqlalchemy import bindparam, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from bankimport.db.tables import transaction_fingerprints, transactions
from bankimport.domain.imports.errors import ColumnSetMismatch, PersistenceErrorKind
from bankimport.domain.imports.fingerprinting import DuplicateDetector
from bankimport.domain.imports.parser import CandidateTransaction

logger = logging.getLogger(__name__)

TRANSACTION_VALUE_COLUMNS = (
    "transaction_id",
    "booked_date",
    "processed_date",
    "amount",
    "currency",
    "description",
    "partner",
    "type",
    "source_iban",
    "target_iban",
    "balance_after_transaction",
    "notes",
)


@dataclass
class PersistOutcome:
    """Result of persisting one accepted candidate."""
    candidate: CandidateTransaction
    success: bool
    transaction_id: Optional[str] = None
    fingerprint: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[PersistenceErrorKind] = None

    @property
    def row_number(self) -> int:
        return self.candidate.row_number


def build_transaction_row(
    values: Mapping[str, Any],
    *,
    user_id: str,
    import_id: Optional[str],
    account_id: Optional[str] = None,
    import_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Insert parameters for one transaction, with a fresh id."""
    row = {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "account_id": account_id,
        "import_id": import_id,
        "import_data": import_data or {},
    }
    for column in TRANSACTION_VALUE_COLUMNS:
        row[column] = values.get(column)
    return row


def check_column_set(rows: Sequence[Mapping[str, Any]]) -> None:
    """
    Every row of a bulk insert must carry the same columns.

    Raises:
        ColumnSetMismatch: On the first row whose keys differ from the first row's.
    """
    if not rows:
        return
    expected = sorted(rows[0].keys())
    for row in rows[1:]:
        actual = sorted(row.keys())
        if actual != expected:
            raise ColumnSetMismatch(expected, actual)


def write_fingerprints(conn: Connection, detector: DuplicateDetector, user_id: str, ids: Sequence[str]) -> Dict[str, str]:
    """
    Compute fingerprints from persisted values and index them.

    Returns:
        Mapping of transaction id -> fingerprint
    """
    if not ids:
        return {}

    persisted = conn.execute(
        select(
            transactions.c.id,
            transactions.c.booked_date,
            transactions.c.processed_date,
            transactions.c.amount,
            transactions.c.description,
            transactions.c.partner,
            transactions.c.transaction_id,
        ).where(transactions.c.id.in_(list(ids)))
    ).mappings().all()

    fingerprints = {row["id"]: detector.fingerprint(dict(row)) for row in persisted}

    conn.execute(
        update(transactions)
        .where(transactions.c.id == bindparam("b_id"))
        .values(fingerprint=bindparam("b_fingerprint")),
        [{"b_id": tid, "b_fingerprint": fp} for tid, fp in fingerprints.items()],
    )
    conn.execute(
        insert(transaction_fingerprints),
        [
            {"id": str(uuid.uuid4()), "user_id": user_id, "fingerprint": fp, "transaction_id": tid}
            for tid, fp in fingerprints.items()
        ],
    )
    return fingerprints


def _chunks(items: List[Any], size: int) -> Iterable[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class PersistenceBatcher:
    """
    Buffer accepted candidates and flush them in bulk.

    ``add`` and ``flush`` return the outcomes of any rows written by that call;
    they never raise for row-level database errors.
    """

    def __init__(
        self,
        engine: Engine,
        detector: DuplicateDetector,
        *,
        user_id: str,
        import_id: Optional[str],
        account_id: Optional[str] = None,
        batch_size: int = 500,
        chunk_size: int = 100,
    ):
        self.engine = engine
        self.detector = detector
        self.user_id = user_id
        self.import_id = import_id
        self.account_id = account_id
        self.batch_size = max(1, batch_size)
        self.chunk_size = max(1, chunk_size)
        self._pending: List[CandidateTransaction] = []
        self._pending_fingerprints: Set[str] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def has_pending_fingerprint(self, fingerprint: Optional[str]) -> bool:
        return fingerprint is not None and fingerprint in self._pending_fingerprints

    def pending_records(self) -> List[Dict[str, Any]]:
        """Field mappings of the candidates waiting for the next flush."""
        return [candidate.fields() for candidate in self._pending]

    def add(self, candidate: CandidateTransaction) -> List[PersistOutcome]:
        self._pending.append(candidate)
        if candidate.fingerprint:
            self._pending_fingerprints.add(candidate.fingerprint)
        if len(self._pending) >= self.batch_size:
            return self.flush()
        return []

    def flush(self) -> List[PersistOutcome]:
        """Write every buffered candidate and return one outcome per candidate."""
        if not self._pending:
            return []

        batch = self._pending
        self._pending = []
        self._pending_fingerprints = set()

        rows = [self._row_for(candidate) for candidate in batch]
        try:
            outcomes = self._insert_bulk(batch, rows)
            logger.info(f"Persisted batch of {len(rows)} transactions for import {self.import_id}")
            return outcomes
        except ColumnSetMismatch as e:
            logger.critical(f"Column set mismatch in batch for import {self.import_id}: {e}")
        except Exception as e:
            logger.error(f"Bulk insert failed for import {self.import_id}, falling back to row-by-row: {e}")

        return [self._insert_single(candidate, row) for candidate, row in zip(batch, rows)]

    def _row_for(self, candidate: CandidateTransaction) -> Dict[str, Any]:
        return build_transaction_row(
            candidate.fields(),
            user_id=self.user_id,
            import_id=self.import_id,
            account_id=self.account_id,
            import_data=candidate.import_data,
        )

    def _insert_bulk(self, batch: List[CandidateTransaction], rows: List[Dict[str, Any]]) -> List[PersistOutcome]:
        fingerprints: Dict[str, str] = {}
        with self.engine.begin() as conn:
            for chunk in _chunks(rows, self.chunk_size):
                check_column_set(chunk)
                conn.execute(insert(transactions), chunk)
                fingerprints.update(write_fingerprints(conn, self.detector, self.user_id, [row["id"] for row in chunk]))

        return [
            PersistOutcome(candidate, True, transaction_id=row["id"], fingerprint=fingerprints.get(row["id"]))
            for candidate, row in zip(batch, rows)
        ]

    def _insert_single(self, candidate: CandidateTransaction, row: Dict[str, Any]) -> PersistOutcome:
        stage = "transaction"
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(transactions), [row])
                stage = "fingerprint"
                fingerprints = write_fingerprints(conn, self.detector, self.user_id, [row["id"]])
            return PersistOutcome(candidate, True, transaction_id=row["id"], fingerprint=fingerprints.get(row["id"]))
        except IntegrityError as e:
            kind = (
                PersistenceErrorKind.FINGERPRINT_CONFLICT
                if stage == "fingerprint"
                else PersistenceErrorKind.CONSTRAINT_VIOLATION
            )
            logger.warning(f"Row {candidate.row_number} rejected by the database ({kind.value}): {e.orig}")
            return PersistOutcome(candidate, False, error=str(e.orig), error_kind=kind, fingerprint=candidate.fingerprint)
        except Exception as e:
            logger.error(f"Row {candidate.row_number} could not be persisted: {e}")
            return PersistOutcome(
                candidate, False, error=str(e), error_kind=PersistenceErrorKind.UNKNOWN, fingerprint=candidate.fingerprint
            )
