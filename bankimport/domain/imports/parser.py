"""
Row parsing: raw cells + resolved mapping + format settings -> candidate transaction.

Dates use PHP-style format tokens (``d.m.Y``, ``Y-m-d H:i:s``) because
that is how bank export profiles are usually described to users; plain
``strptime`` patterns containing ``%`` are accepted as well.
"""
import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from bankimport.domain.imports.errors import RowParseError
from bankimport.domain.imports.mapping import TRANSACTION_FIELDS, FieldKind, MappedField
from bankimport.domain.imports.processors.csv_processor import RawRow, clean_cell

logger = logging.getLogger(__name__)

DEFAULT_TYPE = "Imported"
DEFAULT_DESCRIPTION = "Imported transaction"


class AmountFormat(str, Enum):
    US = "1,234.56"
    EU = "1.234,56"
    PLAIN = "1234,56"


class AmountSignStrategy(str, Enum):
    SIGNED_AMOUNT = "signed_amount"
    INCOME_POSITIVE = "income_positive"
    EXPENSE_POSITIVE = "expense_positive"


AMOUNT_FORMAT_ALIASES = {
    "us": AmountFormat.US,
    "eu": AmountFormat.EU,
    "plain": AmountFormat.PLAIN,
    "simple": AmountFormat.PLAIN,
}

_DATE_TOKENS = {
    "d": "%d",
    "j": "%d",
    "m": "%m",
    "n": "%m",
    "Y": "%Y",
    "y": "%y",
    "H": "%H",
    "G": "%H",
    "i": "%M",
    "s": "%S",
}

# Tried, in order, after the configured format.
DATE_FALLBACK_FORMATS = (
    "Y-m-d",
    "Y-m-d H:i:s",
    "Y-m-d\\TH:i:s",
    "Y-m-d H:i",
    "d.m.Y",
    "d.m.Y H:i:s",
    "d.m.Y H:i",
    "d/m/Y",
    "d/m/Y H:i:s",
    "m/d/Y",
    "m/d/Y H:i:s",
    "Y.m.d",
    "Y.m.d H:i:s",
    "Y/m/d",
    "d-m-Y",
    "d-m-Y H:i:s",
    "d.m.y",
    "d/m/y",
)


def to_strptime_format(date_format: str) -> str:
    """Translate a PHP-style date format token string into a strptime pattern."""
    if "%" in date_format:
        return date_format

    result = []
    escaped = False
    for char in date_format:
        if escaped:
            result.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        else:
            result.append(_DATE_TOKENS.get(char, char))
    return "".join(result)


def _try_format(value: str, date_format: str) -> Optional[datetime]:
    try:
        return datetime.strptime(value, to_strptime_format(date_format))
    except ValueError:
        return None


def parse_date(value: Optional[str], date_format: Optional[str] = None) -> Optional[datetime]:
    """
    Parse a date cell with the configured format, then the fallback list.

    Returns None for empty or unparseable input.
    """
    text = clean_cell(value)
    if not text:
        return None

    formats: List[str] = [date_format] if date_format else []
    formats.extend(fmt for fmt in DATE_FALLBACK_FORMATS if fmt != date_format)
    for fmt in formats:
        parsed = _try_format(text, fmt)
        if parsed is not None:
            return parsed

    logger.debug(f"Failed to parse date value '{text}' with format '{date_format}'")
    return None


def resolve_amount_format(amount_format: Optional[str]) -> AmountFormat:
    """Map a stored amount profile (or one of its aliases) to ``AmountFormat``."""
    if not amount_format:
        return AmountFormat.US
    if amount_format in AMOUNT_FORMAT_ALIASES:
        return AMOUNT_FORMAT_ALIASES[amount_format]
    return AmountFormat(amount_format)


def parse_amount(
    value: Optional[str],
    amount_format: Optional[str] = AmountFormat.US.value,
    sign_strategy: Optional[str] = None,
) -> Decimal:
    """
    Parse an amount cell under a separator profile and apply the sign strategy.

    Everything except digits, comma, period and minus is stripped first.
    Parenthesised values and a trailing minus are read as negative.

    Raises:
        RowParseError: If the cell is empty or not numeric after cleaning.
    """
    text = clean_cell(value)
    parenthesised = text.startswith("(") and text.endswith(")")
    cleaned = re.sub(r"[^0-9,.\-]", "", text)
    if not cleaned or not re.search(r"\d", cleaned):
        raise RowParseError(f"Amount '{text}' is empty or not numeric", field="amount")

    trailing_minus = cleaned.endswith("-") and not cleaned.startswith("-")
    if trailing_minus:
        cleaned = cleaned.rstrip("-")

    profile = resolve_amount_format(amount_format)
    if profile is AmountFormat.US:
        cleaned = cleaned.replace(",", "")
    elif profile is AmountFormat.EU:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", ".")

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise RowParseError(f"Amount '{text}' could not be parsed as {profile.value}", field="amount")
    if not amount.is_finite():
        raise RowParseError(f"Amount '{text}' is not a finite number", field="amount")

    if parenthesised or trailing_minus:
        amount = -abs(amount)
    if sign_strategy == AmountSignStrategy.EXPENSE_POSITIVE.value and amount > 0:
        amount = -amount
    return amount


def suggest_date_format(values: Iterable[str]) -> str:
    """
    Suggest a date format from sample cells.

    ISO dates win immediately; otherwise a first part above 12 votes for
    day-first and a second part above 12 for month-first.
    """
    day_first = 0
    month_first = 0
    separator = "/"
    for raw in values:
        value = clean_cell(raw)
        if not value:
            continue
        if re.match(r"^\d{4}-\d{2}-\d{2}", value):
            return "Y-m-d"
        match = re.match(r"^(\d{1,2})([/.\-])(\d{1,2})[/.\-](\d{4})", value)
        if not match:
            continue
        separator = match.group(2)
        first, second = int(match.group(1)), int(match.group(3))
        if first > 12:
            day_first += 1
        elif second > 12:
            month_first += 1

    if month_first > day_first:
        return f"m{separator}d{separator}Y"
    return f"d{separator}m{separator}Y"


def detect_amount_format(value: str) -> AmountFormat:
    """The last separator in a value is the decimal separator."""
    text = clean_cell(value)
    comma = text.rfind(",")
    dot = text.rfind(".")
    if comma != -1 and dot != -1:
        return AmountFormat.EU if comma > dot else AmountFormat.US
    if comma != -1:
        return AmountFormat.PLAIN
    return AmountFormat.US


def suggest_amount_format(values: Iterable[str]) -> str:
    """Majority vote of ``detect_amount_format`` over non-empty samples."""
    votes = Counter(detect_amount_format(value) for value in values if clean_cell(value))
    if not votes:
        return AmountFormat.US.value
    return votes.most_common(1)[0][0].value


@dataclass
class FormatConfig:
    date_format: str = "d.m.Y"
    amount_format: str = AmountFormat.US.value
    amount_sign_strategy: str = AmountSignStrategy.SIGNED_AMOUNT.value
    currency: str = "EUR"


@dataclass
class CandidateTransaction:
    """A parsed, not yet persisted row."""
    row_number: int
    booked_date: Optional[datetime] = None
    processed_date: Optional[datetime] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    partner: Optional[str] = None
    type: Optional[str] = None
    transaction_id: Optional[str] = None
    source_iban: Optional[str] = None
    target_iban: Optional[str] = None
    balance_after_transaction: Optional[Decimal] = None
    notes: Optional[str] = None
    import_data: Dict[str, str] = field(default_factory=dict)
    fingerprint: Optional[str] = None

    def fields(self) -> Dict[str, Any]:
        """Transaction fields without row bookkeeping."""
        data = asdict(self)
        data.pop("row_number")
        data.pop("fingerprint")
        data.pop("import_data")
        return data

    def to_json(self) -> Dict[str, Any]:
        """JSON-safe rendering used in previews and failure records."""
        data = {}
        for key, value in asdict(self).items():
            if isinstance(value, datetime):
                data[key] = value.isoformat(sep=" ")
            elif isinstance(value, Decimal):
                data[key] = str(value)
            else:
                data[key] = value
        return data


def _normalize_iban(value: str) -> str:
    return value.replace(" ", "").upper()


class RowParser:
    """
    Convert raw rows into ``CandidateTransaction`` objects.

    The mapped fields are resolved once (with their kinds) when the parser
    is built, so each cell is dispatched on its kind rather than its name.
    """

    def __init__(self, mapped_fields: Sequence[MappedField], headers: Sequence[str], config: FormatConfig):
        self.mapped_fields = list(mapped_fields)
        self.headers = list(headers)
        self.config = config

    def _convert(self, name: str, kind: FieldKind, signed: bool, value: str) -> Any:
        if kind is FieldKind.DATE:
            parsed = parse_date(value, self.config.date_format)
            if parsed is None and name == "booked_date":
                raise RowParseError(f"Could not parse booked date '{value}'", field=name)
            return parsed

        if kind is FieldKind.AMOUNT:
            if signed:
                return parse_amount(value, self.config.amount_format, self.config.amount_sign_strategy)
            try:
                return parse_amount(value, self.config.amount_format)
            except RowParseError:
                logger.debug(f"Ignoring unparseable optional amount for {name}: '{value}'")
                return None

        if name in ("source_iban", "target_iban"):
            return _normalize_iban(value)
        return value

    def provenance(self, row: RawRow) -> Dict[str, str]:
        """Original header -> raw cell; unnamed columns become ``col_<index>``."""
        data = {}
        for index, value in enumerate(row.cells):
            header = self.headers[index] if index < len(self.headers) and self.headers[index] else f"col_{index}"
            data[header] = value
        return data

    def parse(self, row: RawRow, overrides: Optional[Mapping[str, Any]] = None) -> CandidateTransaction:
        """
        Parse one row; ``overrides`` (field -> corrected value) win over cells.

        Raises:
            RowParseError: When no mapped cell has a value, the booked date is
                unparseable or the amount is missing or unparseable. Apart
                from the empty case, the error's ``partial`` holds every field
                that did convert.
        """
        values: Dict[str, str] = {}
        for mapped in self.mapped_fields:
            if mapped.index < len(row.cells) and row.cells[mapped.index] != "":
                values[mapped.name] = row.cells[mapped.index]
        for name, value in (overrides or {}).items():
            if name in TRANSACTION_FIELDS and value is not None and str(value).strip() != "":
                values[name] = clean_cell(str(value))

        if not values:
            raise RowParseError("Row has no values in any mapped column")

        candidate = CandidateTransaction(row_number=row.number, currency=self.config.currency)
        candidate.import_data = self.provenance(row)
        first_error: Optional[RowParseError] = None
        for name, value in values.items():
            spec = TRANSACTION_FIELDS[name]
            try:
                setattr(candidate, name, self._convert(name, spec.kind, spec.signed, value))
            except RowParseError as e:
                first_error = first_error or e

        if first_error is None and candidate.amount is None:
            first_error = RowParseError("Missing required field: amount", field="amount")
        if first_error is not None:
            first_error.partial = candidate
            raise first_error

        if candidate.processed_date is None:
            candidate.processed_date = candidate.booked_date
        if not candidate.description:
            candidate.description = candidate.partner or candidate.type or DEFAULT_DESCRIPTION
        if not candidate.type:
            candidate.type = DEFAULT_TYPE
        return candidate
