"""
Row-by-row import processing.

Every data row of the stored file passes through one state machine::

    received -> (empty: skipped) -> parsed -> validated -> (invalid: failed)
             -> duplicate-checked -> (duplicate: skipped) -> accepted

Accepted rows go to the ``PersistenceBatcher``; failed and skipped rows go to
the ``FailureRecorder``. Row-level exceptions are turned into failed outcomes
here and never reach the caller. Counts are only taken from terminal
outcomes, so a persistence failure is counted as failed, not processed.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy.engine import Engine

from bankimport.core.config import Settings, settings as default_settings
from bankimport.domain.imports.errors import ImportFailureType, ImportStateError, RowParseError
from bankimport.domain.imports.failures import FailureEntry, FailureRecorder, next_failure_attempt
from bankimport.domain.imports.fingerprinting import DuplicateDetector
from bankimport.domain.imports.jobs import (
    PROCESSABLE_STATUSES,
    ImportStatus,
    derive_import_status,
    format_config_for,
    require_import_job,
    update_import_job,
)
from bankimport.domain.imports.mapping import IndexColumnMapping, resolve_mapped_fields
from bankimport.domain.imports.parser import CandidateTransaction, RowParser
from bankimport.domain.imports.persistence import PersistenceBatcher, PersistOutcome
from bankimport.domain.imports.processors.csv_processor import RawRecordReader, RawRow
from bankimport.domain.imports.row_edits import load_overrides
from bankimport.domain.imports.validators import RowValidator

logger = logging.getLogger(__name__)


class RowStatus(str, Enum):
    ACCEPTED = "accepted"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RowOutcome:
    row_number: int
    status: RowStatus
    raw_data: Dict[str, Any] = field(default_factory=dict)
    candidate: Optional[CandidateTransaction] = None
    failure_type: Optional[ImportFailureType] = None
    message: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_preview(self) -> Dict[str, Any]:
        return {
            "row_number": self.row_number,
            "status": self.status.value,
            "data": self.candidate.to_json() if self.candidate is not None else None,
            "error_type": self.failure_type.value if self.failure_type else None,
            "error": self.message,
            "errors": list(self.errors),
        }


@dataclass
class ImportTally:
    rows_seen: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0

    def count(self, status: RowStatus) -> None:
        if status is RowStatus.SUCCESS:
            self.processed += 1
        elif status is RowStatus.SKIPPED:
            self.skipped += 1
        elif status is RowStatus.FAILED:
            self.failed += 1


@dataclass
class ImportSummary:
    import_id: str
    status: ImportStatus
    total_rows: int
    processed_rows: int
    failed_rows: int
    skipped_rows: int
    unreadable_line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "import_id": self.import_id,
            "status": self.status.value,
            "total_rows": self.total_rows,
            "processed_rows": self.processed_rows,
            "failed_rows": self.failed_rows,
            "skipped_rows": self.skipped_rows,
            "unreadable_line": self.unreadable_line,
        }


ProgressCallback = Callable[[ImportTally], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BatchOrchestrator:
    """
    Drive one configured import job through the row pipeline.

    Args:
        engine: Database engine
        job: Job dict as returned by ``get_import_job``; must carry a column mapping
        user_id: Owner of the import; scopes duplicate search and fingerprints
        overrides: Row number -> {field: value} corrections merged over parsed cells
        progress: Called with the running tally every ``progress_every_rows`` rows
    """

    def __init__(
        self,
        engine: Engine,
        job: Dict[str, Any],
        *,
        user_id: str,
        overrides: Optional[Mapping[int, Mapping[str, Any]]] = None,
        progress: Optional[ProgressCallback] = None,
        detector: Optional[DuplicateDetector] = None,
        config: Optional[Settings] = None,
    ):
        if not job.get("column_mapping"):
            raise ImportStateError(f"Import {job['id']} has no column mapping; configure it first")

        self.engine = engine
        self.job = job
        self.user_id = user_id
        self.config = config or default_settings
        self.overrides = dict(overrides or {})
        self.progress = progress or self._store_progress
        self.detector = detector or DuplicateDetector(engine, window_days=self.config.duplicate_window_days)
        self.validator = RowValidator()
        self.headers = list(job["headers"] or [])

        mapping = IndexColumnMapping(dict(job["column_mapping"]))
        self.parser = RowParser(resolve_mapped_fields(mapping), self.headers, format_config_for(job, self.config))
        self.tally = ImportTally()
        self._batcher: Optional[PersistenceBatcher] = None

    def _reader(self) -> RawRecordReader:
        return RawRecordReader(self.job["file_path"], self.job["delimiter"], self.job["quote_char"])

    def classify(self, row: RawRow, check_duplicates: bool = True) -> RowOutcome:
        """Run one row up to the accepted/failed/skipped decision."""
        raw_data = self.parser.provenance(row)
        override = self.overrides.get(row.number)

        if row.is_empty() and not override:
            return RowOutcome(
                row.number,
                RowStatus.SKIPPED,
                raw_data,
                failure_type=ImportFailureType.EMPTY_ROW,
                message="Empty row",
            )

        candidate = None
        try:
            candidate = self.parser.parse(row, override)

            validation = self.validator.validate(candidate)
            if not validation.valid:
                return RowOutcome(
                    row.number,
                    RowStatus.FAILED,
                    raw_data,
                    candidate=candidate,
                    failure_type=ImportFailureType.VALIDATION_FAILED,
                    message="; ".join(validation.errors),
                    errors=validation.errors,
                )

            candidate.fingerprint = self.detector.fingerprint(candidate.fields())
            if check_duplicates:
                duplicate = self._duplicate_of(candidate)
                if duplicate is not None:
                    return RowOutcome(
                        row.number,
                        RowStatus.SKIPPED,
                        raw_data,
                        candidate=candidate,
                        failure_type=ImportFailureType.DUPLICATE,
                        message="Duplicate transaction",
                        metadata=duplicate,
                    )
        except RowParseError as e:
            return RowOutcome(
                row.number,
                RowStatus.FAILED,
                raw_data,
                candidate=candidate or e.partial,
                failure_type=ImportFailureType.PARSING_ERROR,
                message=str(e),
                errors=[str(e)],
                metadata={"field": e.field} if e.field else {},
            )
        except Exception as e:
            logger.warning(f"Unexpected error processing row {row.number}: {e}")
            return RowOutcome(
                row.number,
                RowStatus.FAILED,
                raw_data,
                candidate=candidate,
                failure_type=ImportFailureType.PROCESSING_ERROR,
                message=str(e),
                errors=[str(e)],
            )

        return RowOutcome(row.number, RowStatus.ACCEPTED, raw_data, candidate=candidate)

    def _duplicate_of(self, candidate: CandidateTransaction) -> Optional[Dict[str, Any]]:
        """Duplicate details, or None for a new transaction."""
        if self._batcher is not None and self._batcher.has_pending_fingerprint(candidate.fingerprint):
            return {"fingerprint": candidate.fingerprint, "reason": "in_file"}

        check = self.detector.check(self.user_id, candidate.fields())
        if not check.is_duplicate and self._batcher is not None and self._batcher.pending_count:
            check = self.detector.check_pending(candidate.fields(), self._batcher.pending_records()) or check
        if not check.is_duplicate:
            return None
        details: Dict[str, Any] = {
            "fingerprint": check.fingerprint,
            "reason": check.reason,
            "matched_transaction_id": check.matched_transaction_id,
        }
        if check.score is not None:
            details["score"] = str(check.score)
        return details

    def _record(self, recorder: FailureRecorder, outcome: RowOutcome) -> None:
        if outcome.status is RowStatus.FAILED:
            logger.warning(f"Row {outcome.row_number} failed ({outcome.failure_type.value}): {outcome.message}")
        metadata = dict(outcome.metadata)
        if outcome.candidate is not None and outcome.candidate.fingerprint and "fingerprint" not in metadata:
            metadata["fingerprint"] = outcome.candidate.fingerprint
        recorder.record(
            FailureEntry(
                row_number=outcome.row_number,
                error_type=outcome.failure_type,
                error_message=outcome.message or "",
                raw_data=outcome.raw_data,
                errors=outcome.errors,
                parsed_data=outcome.candidate.to_json() if outcome.candidate is not None else None,
                metadata=metadata,
            )
        )
        self.tally.count(outcome.status)

    def _absorb(self, recorder: FailureRecorder, persisted: List[PersistOutcome]) -> None:
        for result in persisted:
            if result.success:
                self.tally.count(RowStatus.SUCCESS)
                continue
            self._record(
                recorder,
                RowOutcome(
                    result.row_number,
                    RowStatus.FAILED,
                    result.candidate.import_data,
                    candidate=result.candidate,
                    failure_type=ImportFailureType.PERSISTENCE_ERROR,
                    message=result.error,
                    errors=[result.error or "Unknown persistence error"],
                    metadata={"persistence_error": result.error_kind.value if result.error_kind else None},
                ),
            )

    def _store_progress(self, tally: ImportTally) -> None:
        update_import_job(
            self.engine,
            self.job["id"],
            total_rows=tally.rows_seen,
            processed_rows=tally.processed,
            failed_rows=tally.failed,
            skipped_rows=tally.skipped,
        )

    def run(self) -> ImportSummary:
        """
        Process the whole file and store the final counts and status.

        Raises:
            ImportFileError: If the stored file cannot be read; the job is marked failed.
        """
        job_id = self.job["id"]
        previous = (self.job.get("metadata") or {}).get("failure_attempt") or 0
        attempt = max(next_failure_attempt(self.engine, job_id), previous + 1)
        update_import_job(self.engine, job_id, status=ImportStatus.PROCESSING.value, error_message=None)

        self.tally = ImportTally()
        recorder = FailureRecorder(self.engine, job_id, batch_size=self.config.failure_batch_size, attempt=attempt)
        self._batcher = PersistenceBatcher(
            self.engine,
            self.detector,
            user_id=self.user_id,
            import_id=job_id,
            account_id=self.job.get("account_id"),
            batch_size=self.config.persistence_batch_size,
            chunk_size=self.config.persistence_chunk_size,
        )
        reader = self._reader()
        logger.info(f"Processing import {job_id} (attempt {attempt}) from {self.job['file_path']}")

        try:
            with reader:
                reader.read_headers()
                for row in reader:
                    self.tally.rows_seen += 1
                    outcome = self.classify(row)
                    if outcome.status is RowStatus.ACCEPTED:
                        self._absorb(recorder, self._batcher.add(outcome.candidate))
                    else:
                        self._record(recorder, outcome)

                    if self.tally.rows_seen % self.config.progress_every_rows == 0:
                        logger.info(
                            f"Import {job_id}: {self.tally.rows_seen} rows read, {self.tally.processed} imported, "
                            f"{self.tally.failed} failed, {self.tally.skipped} skipped"
                        )
                        self.progress(self.tally)

            self._absorb(recorder, self._batcher.flush())
            recorder.flush()
        except Exception as e:
            logger.error(f"Import {job_id} aborted after {self.tally.rows_seen} rows: {e}")
            self._absorb(recorder, self._batcher.flush())
            recorder.flush()
            update_import_job(
                self.engine,
                job_id,
                status=ImportStatus.FAILED.value,
                error_message=str(e),
                total_rows=self.tally.rows_seen,
                processed_rows=self.tally.processed,
                failed_rows=self.tally.failed,
                skipped_rows=self.tally.skipped,
            )
            raise

        status = derive_import_status(self.tally.rows_seen, self.tally.processed, self.tally.failed, self.tally.skipped)
        metadata = dict(self.job.get("metadata") or {})
        metadata.update({
            "unreadable_line": reader.unreadable_line,
            "recovered_rows": reader.recovered_rows,
            "unrecorded_failure_rows": recorder.lost_rows,
            "failure_attempt": attempt,
        })
        error_message = None
        if reader.unreadable_line is not None:
            error_message = f"Stopped at unreadable line {reader.unreadable_line}"

        update_import_job(
            self.engine,
            job_id,
            status=status.value,
            total_rows=self.tally.rows_seen,
            processed_rows=self.tally.processed,
            failed_rows=self.tally.failed,
            skipped_rows=self.tally.skipped,
            error_message=error_message,
            metadata=metadata,
            processed_at=_utcnow(),
        )
        logger.info(
            f"Import {job_id} finished with status {status.value}: {self.tally.processed} imported, "
            f"{self.tally.failed} failed, {self.tally.skipped} skipped of {self.tally.rows_seen}"
        )
        return ImportSummary(
            import_id=job_id,
            status=status,
            total_rows=self.tally.rows_seen,
            processed_rows=self.tally.processed,
            failed_rows=self.tally.failed,
            skipped_rows=self.tally.skipped,
            unreadable_line=reader.unreadable_line,
        )

    def preview(self, limit: int) -> List[Dict[str, Any]]:
        """Dry run over the first ``limit`` rows: no persistence, no duplicate check."""
        results = []
        with self._reader() as reader:
            reader.read_headers()
            for row in reader:
                outcome = self.classify(row, check_duplicates=False)
                if outcome.status is RowStatus.ACCEPTED:
                    outcome.status = RowStatus.SUCCESS
                results.append(outcome.to_preview())
                if len(results) >= limit:
                    break
        return results


def process_import(
    engine: Engine,
    import_id: str,
    user_id: str,
    *,
    progress: Optional[ProgressCallback] = None,
    config: Optional[Settings] = None,
) -> ImportSummary:
    """Load a configured job with its row edits and process it."""
    job = require_import_job(engine, import_id, user_id)
    if job["status"] not in PROCESSABLE_STATUSES:
        raise ImportStateError(f"Import {import_id} cannot be processed while {job['status']}")

    orchestrator = BatchOrchestrator(
        engine,
        job,
        user_id=user_id,
        overrides=load_overrides(engine, import_id),
        progress=progress,
        config=config,
    )
    return orchestrator.run()


def preview_import(
    engine: Engine,
    import_id: str,
    user_id: str,
    *,
    rows: Optional[int] = None,
    config: Optional[Settings] = None,
) -> List[Dict[str, Any]]:
    config = config or default_settings
    job = require_import_job(engine, import_id, user_id)
    orchestrator = BatchOrchestrator(
        engine,
        job,
        user_id=user_id,
        overrides=load_overrides(engine, import_id),
        config=config,
    )
    limit = min(rows or config.preview_rows, config.preview_rows)
    return orchestrator.preview(max(1, limit))
