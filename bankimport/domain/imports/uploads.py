"""Upload step: store the normalised file, sample its headers and create the job."""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine

from bankimport.core.config import Settings, settings as default_settings
from bankimport.domain.imports.errors import ImportFileError, UploadTooLarge
from bankimport.domain.imports.jobs import create_import_job
from bankimport.domain.imports.profiling import detect_mapping
from bankimport.domain.imports.parser import suggest_amount_format, suggest_date_format
from bankimport.domain.imports.processors.csv_processor import (
    RawRow,
    detect_delimiter,
    normalize_upload_bytes,
    read_sample,
)
from bankimport.integrations.storage import upload_file

logger = logging.getLogger(__name__)


def _column_values(rows: List[RawRow], index: Optional[int]) -> List[str]:
    if index is None:
        return []
    return [row.cells[index] for row in rows if index < len(row.cells)]


def start_import(
    engine: Engine,
    *,
    user_id: str,
    content: bytes,
    filename: str,
    delimiter: Optional[str] = None,
    quote_char: Optional[str] = None,
    account_id: Optional[str] = None,
    config: Optional[Settings] = None,
) -> Dict[str, Any]:
    """
    Store an uploaded statement and create a pending import job for it.

    The detected mapping, the per-column profiles with their confidence
    and the suggested formats are stored in the job metadata; nothing is
    applied until the job is configured.

    Raises:
        UploadTooLarge: If the upload exceeds the configured size limit.
        ImportFileError: If the file has no header line.
    """
    config = config or default_settings
    limit = config.upload_max_file_size_mb * 1024 * 1024
    if len(content) > limit:
        raise UploadTooLarge(len(content), limit)

    normalized, encoding = normalize_upload_bytes(content)
    text = normalized.decode("utf-8")
    if not delimiter:
        delimiter = detect_delimiter(text)
        logger.info(f"Detected delimiter {delimiter!r} for {filename}")
    if quote_char is None:
        quote_char = config.default_quote_char

    stored = upload_file(normalized, filename, folder=config.upload_dir)
    headers, sample_rows = read_sample(stored["file_path"], delimiter, quote_char, config.header_sample_rows)
    if not headers or not any(headers):
        raise ImportFileError(stored["file_path"], f"{filename} has no header line")

    detection = detect_mapping(headers, sample_rows)
    detected = detection.mapping
    metadata = {
        "encoding": encoding,
        "size": stored["size"],
        "detected_mapping": detected.to_dict(),
        "detection": detection.to_dict(),
        "suggested_date_format": suggest_date_format(_column_values(sample_rows, detected.fields.get("booked_date"))),
        "suggested_amount_format": suggest_amount_format(_column_values(sample_rows, detected.fields.get("amount"))),
        "sample_rows": [row.cells for row in sample_rows],
    }

    return create_import_job(
        engine,
        user_id=user_id,
        account_id=account_id,
        file_path=stored["file_path"],
        original_filename=filename,
        file_hash=stored["file_hash"],
        delimiter=delimiter,
        quote_char=quote_char,
        headers=headers,
        metadata=metadata,
    )
