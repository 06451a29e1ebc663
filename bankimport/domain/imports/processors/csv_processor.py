import csv
import logging
import re
from dataclasses import dataclass, field
from typing import IO, Iterator, List, Optional, Tuple

from bankimport.domain.imports.errors import ImportFileError

logger = logging.getLogger(__name__)

# Stands in for an empty quote character. It is removed from every physical
# line before tokenizing, so it can never open a quoted field.
QUOTE_SENTINEL = "\ufdd0"

DELIMITER_CANDIDATES = (",", ";", "\t", "|")

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")


@dataclass
class RawRow:
    """One data line of an import file: cleaned cells plus its 1-based row number."""
    number: int
    cells: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not any(cell for cell in self.cells)


def clean_cell(value: Optional[str]) -> str:
    """Remove NUL bytes and control characters, then trim whitespace."""
    if value is None:
        return ""
    return _CONTROL_CHARS.sub("", value.replace("\x00", "")).strip()


def effective_quote_char(quote_char: Optional[str]) -> str:
    return quote_char if quote_char else QUOTE_SENTINEL


def detect_encoding(content: bytes) -> str:
    """
    Detect the text encoding of uploaded bytes.

    A BOM decides outright; otherwise strict UTF-8 is tried before the two
    single-byte encodings banks commonly export in.
    """
    if content.startswith(b"\xef\xbb\xbf"):
        return "utf-8-sig"
    if content.startswith(b"\xff\xfe"):
        return "utf-16-le"
    if content.startswith(b"\xfe\xff"):
        return "utf-16-be"
    for encoding in ("utf-8", "cp1252"):
        try:
            content.decode(encoding)
            return encoding
        except UnicodeDecodeError:
            continue
    return "latin-1"


def normalize_upload_bytes(content: bytes) -> Tuple[bytes, str]:
    """
    Convert uploaded bytes to clean UTF-8 once, at upload time.

    Returns:
        Tuple of (utf8_bytes, detected_encoding)
    """
    encoding = detect_encoding(content)
    text = content.decode(encoding, errors="replace")
    if text.startswith("\ufeff"):
        text = text[1:]
    text = text.replace("\x00", "")
    if encoding not in ("utf-8", "utf-8-sig"):
        logger.info(f"Converted upload from {encoding} to UTF-8")
    return text.encode("utf-8"), encoding


def detect_delimiter(text: str, sample_lines: int = 10) -> str:
    """
    Pick the delimiter that splits the first lines into a constant, non-zero
    number of columns. Falls back to a comma.
    """
    lines = [line for line in re.split(r"\r\n|\r|\n", text) if line][:sample_lines]
    if not lines:
        return ","

    scores = {}
    for delimiter in DELIMITER_CANDIDATES:
        counts = [line.count(delimiter) for line in lines]
        consistent = min(counts) == max(counts) and counts[0] > 0
        scores[delimiter] = sum(counts) if consistent else 0

    winner = max(DELIMITER_CANDIDATES, key=lambda candidate: scores[candidate])
    return winner if scores[winner] > 0 else ","


def recover_line(line: str, delimiter: str, quote_char: Optional[str]) -> Optional[List[str]]:
    """
    Split one physical line leniently after the strict tokenizer rejected it.

    Returns the cleaned cells, or None when nothing usable comes out.
    """
    quote = effective_quote_char(quote_char)
    text = line.replace("\x00", "").replace(QUOTE_SENTINEL, "")
    try:
        parsed = next(csv.reader([text.rstrip("\r\n")], delimiter=delimiter, quotechar=quote, strict=False), [])
    except csv.Error as exc:
        logger.error(f"Manual split of unreadable line failed: {exc}")
        return None
    cells = [clean_cell(value) for value in parsed]
    if not any(cells):
        return None
    return cells


class _PhysicalLines:
    """
    Line iterator that remembers the physical lines consumed by the current
    record. Lines handed back through ``push_back`` are read again first.
    """

    def __init__(self, handle: IO[str]):
        self._handle = handle
        self._replay: List[str] = []
        self.consumed: List[str] = []

    def __iter__(self) -> "_PhysicalLines":
        return self

    def push_back(self, lines: List[str]) -> None:
        self._replay = list(lines) + self._replay

    def __next__(self) -> str:
        if self._replay:
            line = self._replay.pop(0)
        else:
            line = self._handle.readline()
        if line == "":
            raise StopIteration
        self.consumed.append(line)
        return line.replace("\x00", "").replace(QUOTE_SENTINEL, "")


class RawRecordReader:
    """
    Stream rows out of a stored delimited file.

    Rows come back one at a time from ``read_row``; ``None`` signals the end
    of input. A line the tokenizer rejects is split once more by hand; if
    that yields nothing usable the reader stops and records the line number
    in ``unreadable_line``.
    """

    def __init__(
        self,
        path: str,
        delimiter: str = ",",
        quote_char: Optional[str] = '"',
        encoding: str = "utf-8",
    ):
        self.path = path
        self.delimiter = delimiter or ","
        self.quote_char = quote_char
        self.encoding = encoding
        self.unreadable_line: Optional[int] = None
        self.recovered_rows: List[int] = []
        self._handle: Optional[IO[str]] = None
        self._lines: Optional[_PhysicalLines] = None
        self._reader = None
        self._row_number = 0
        self._finished = False

    def open(self) -> "RawRecordReader":
        try:
            self._handle = open(self.path, "r", encoding=self.encoding, errors="replace", newline="")
        except OSError as exc:
            logger.error(f"CSV file could not be opened: path={self.path} error={exc}")
            raise ImportFileError(self.path, f"Unable to open import file: {exc}") from exc

        self._lines = _PhysicalLines(self._handle)
        self._reader = csv.reader(
            self._lines,
            delimiter=self.delimiter,
            quotechar=effective_quote_char(self.quote_char),
            strict=True,
        )
        logger.debug(
            f"Reading CSV data: path={self.path} delimiter={self.delimiter!r} quote_char={self.quote_char!r}"
        )
        return self

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "RawRecordReader":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _next_cells(self) -> Optional[List[str]]:
        if self._finished:
            return None
        if self._reader is None:
            self.open()

        self._lines.consumed = []
        try:
            values = next(self._reader)
        except StopIteration:
            self._finished = True
            return None
        except csv.Error as exc:
            consumed = self._lines.consumed
            physical_line = consumed[0] if consumed else ""
            logger.error(f"Error reading CSV line after row {self._row_number}: {exc}")
            if len(consumed) > 1:
                # An unclosed quote swallows the following lines; they are rows of their own.
                logger.warning(f"Re-reading {len(consumed) - 1} lines consumed by the rejected record")
                self._lines.push_back(consumed[1:])
            cells = recover_line(physical_line, self.delimiter, self.quote_char)
            if cells is None:
                self.unreadable_line = self._row_number + 1
                self._finished = True
                logger.error(f"Stopping at unreadable line (row {self.unreadable_line}); no usable values recovered")
                return None
            logger.debug(f"Recovered with manual parsing: values_count={len(cells)}")
            self.recovered_rows.append(self._row_number + 1)
            return cells
        except UnicodeError as exc:
            raise ImportFileError(self.path, f"Unable to decode import file: {exc}") from exc

        return [clean_cell(value) for value in values]

    def read_headers(self) -> List[str]:
        """Read the header line. An empty file has no headers."""
        headers = self._next_cells()
        if headers is None:
            return []
        logger.debug(f"Read headers: count={len(headers)}")
        return headers

    def read_row(self) -> Optional[RawRow]:
        """Return the next data row, or None once the input is exhausted."""
        cells = self._next_cells()
        if cells is None:
            return None
        self._row_number += 1
        return RawRow(number=self._row_number, cells=cells)

    def __iter__(self) -> Iterator[RawRow]:
        while True:
            row = self.read_row()
            if row is None:
                return
            yield row


def read_sample(
    path: str,
    delimiter: str,
    quote_char: Optional[str],
    num_rows: int = 20,
) -> Tuple[List[str], List[RawRow]]:
    """
    Read the header line and up to ``num_rows`` data rows of a stored file.

    Returns:
        Tuple of (headers, rows)
    """
    rows: List[RawRow] = []
    with RawRecordReader(path, delimiter, quote_char) as reader:
        headers = reader.read_headers()
        for row in reader:
            rows.append(row)
            if len(rows) >= num_rows:
                break
    logger.info(f"Extracted {len(rows)} sample rows and {len(headers)} headers from {path}")
    return headers, rows
