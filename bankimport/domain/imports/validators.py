"""
Structural validation of candidate transactions.

The checks here never touch storage and never raise: every problem is
reported as a message so the caller can record it against the row.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from bankimport.domain.imports.parser import CandidateTransaction


REQUIRED_FIELDS = ("booked_date", "amount", "partner", "description", "currency")
DATE_FIELDS = ("booked_date", "processed_date")
IBAN_FIELDS = ("source_iban", "target_iban")

MAX_DESCRIPTION_LENGTH = 1000
MAX_PARTNER_LENGTH = 255

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
IBAN_PATTERN = re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]{1,30}$")

# Accepted textual date shapes (strptime patterns) for values that arrive as strings.
ACCEPTED_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d.%m.%Y",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%d/%m/%Y",
    "%d/%m/%Y %H:%M:%S",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M:%S",
    "%Y.%m.%d",
    "%Y/%m/%d",
    "%d-%m-%Y",
    "%d.%m.%y",
    "%d/%m/%y",
)


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[str] = field(default_factory=list)

    def add(self, message: str) -> None:
        self.valid = False
        self.errors.append(message)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _as_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None
    return None


def parse_accepted_date(value: Any) -> Optional[datetime]:
    """
    Read a date value the way ``is_valid_date_value`` accepts it.

    Returns None when the value is not a date object or a string in one of
    ``ACCEPTED_DATE_FORMATS``.
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    if not isinstance(value, str):
        return None
    text = value.strip()
    for fmt in ACCEPTED_DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        # Strict: reject values strptime accepts but that do not print back identically.
        if parsed.strftime(fmt) == text:
            return parsed
    return None


def is_valid_date_value(value: Any) -> bool:
    """True for date/datetime objects and for strings in an accepted date format."""
    return parse_accepted_date(value) is not None


def validate_iban(value: str) -> Tuple[bool, Optional[str]]:
    """
    Validate an IBAN shape after removing spaces and uppercasing.

    Returns:
        Tuple of (is_valid, error_message)
    """
    normalized = value.replace(" ", "").upper()
    if IBAN_PATTERN.match(normalized):
        return True, None
    return False, f"Value '{value}' is not a valid IBAN"


def _record_fields(record: Union[CandidateTransaction, Mapping[str, Any]]) -> Dict[str, Any]:
    if isinstance(record, CandidateTransaction):
        return record.fields()
    return dict(record)


class RowValidator:
    """Pure structural checks for one candidate transaction."""

    def validate(self, record: Union[CandidateTransaction, Mapping[str, Any]]) -> ValidationResult:
        values = _record_fields(record)
        result = ValidationResult()

        for name in REQUIRED_FIELDS:
            if _is_blank(values.get(name)):
                result.add(f"Missing required field: {name}")

        amount = values.get("amount")
        if not _is_blank(amount):
            number = _as_decimal(amount)
            if number is None:
                result.add(f"Amount must be numeric, got '{amount}'")
            elif number == 0:
                result.add("Amount must not be zero")

        for name in DATE_FIELDS:
            value = values.get(name)
            if not _is_blank(value) and not is_valid_date_value(value):
                result.add(f"Invalid date format for {name}: '{value}'")

        currency = values.get("currency")
        if not _is_blank(currency) and not CURRENCY_PATTERN.match(str(currency)):
            result.add(f"Currency must be a 3-letter uppercase code, got '{currency}'")

        for name in IBAN_FIELDS:
            value = values.get(name)
            if not _is_blank(value):
                ok, error = validate_iban(str(value))
                if not ok:
                    result.add(f"Invalid {name}: {error}")

        description = values.get("description")
        if isinstance(description, str) and len(description) > MAX_DESCRIPTION_LENGTH:
            result.add(f"Description exceeds {MAX_DESCRIPTION_LENGTH} characters")

        partner = values.get("partner")
        if isinstance(partner, str) and len(partner) > MAX_PARTNER_LENGTH:
            result.add(f"Partner exceeds {MAX_PARTNER_LENGTH} characters")

        return result
