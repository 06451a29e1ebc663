"""
Value profiling of sampled rows for mapping detection.

Header names decide most mappings. The sampled cells then confirm them and
fill fields whose headers say nothing useful (``When``, ``How much``). Each
column gets a profile of value shapes plus a confidence built from the
header signal, the share of values with the expected shape and how many
cells are filled.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from bankimport.domain.imports.mapping import (
    TRANSACTION_FIELDS,
    FieldKind,
    IndexColumnMapping,
    detect_header_matches,
)
from bankimport.domain.imports.processors.csv_processor import RawRow, clean_cell

logger = logging.getLogger(__name__)

HEADER_WEIGHT = 0.4
PATTERN_WEIGHT = 0.35
FILL_WEIGHT = 0.2
AGREEMENT_BONUS = 0.1

HEADER_MATCH_SCORES = {"exact": 1.0, "pattern": 0.8}

# Share of sampled values that must have a shape before a column is mapped on values alone.
VALUE_MATCH_THRESHOLD = 0.8

# Ties go to the earlier kind; "31.01.2024" is a date before it is an amount.
VALUE_KINDS = ("date", "iban", "amount", "currency", "text")

# Fields filled from value shapes, in order, when no header claimed them.
VALUE_KIND_FIELDS = {
    "date": ("booked_date", "processed_date"),
    "amount": ("amount", "balance_after_transaction"),
    "iban": ("target_iban", "source_iban"),
    "text": ("partner", "description"),
}

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_SHORT_DATE = re.compile(r"^\d{1,2}[/.\-]\d{1,2}[/.\-]\d{2,4}$")
_AMOUNT = re.compile(r"^-?[\d,.]+$")
_IBAN = re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]{4,30}$")
_CURRENCY = re.compile(r"^[A-Z]{3}$")


def looks_like_date(value: str) -> bool:
    return bool(_ISO_DATE.match(value) or _SHORT_DATE.match(value))


def looks_like_amount(value: str) -> bool:
    compact = value.replace(" ", "")
    return bool(_AMOUNT.match(compact)) and ("," in compact or "." in compact)


def looks_like_iban(value: str) -> bool:
    return bool(_IBAN.match(value.replace(" ", "").upper()))


def looks_like_currency(value: str) -> bool:
    return bool(_CURRENCY.match(value))


_SHAPE_CHECKS = {
    "date": looks_like_date,
    "iban": looks_like_iban,
    "amount": looks_like_amount,
    "currency": looks_like_currency,
}


def value_kind_for(field_name: str) -> str:
    """The value shape expected in a column mapped to ``field_name``."""
    if field_name in ("source_iban", "target_iban"):
        return "iban"
    kind = TRANSACTION_FIELDS[field_name].kind
    if kind is FieldKind.DATE:
        return "date"
    if kind is FieldKind.AMOUNT:
        return "amount"
    return "text"


@dataclass
class ColumnProfile:
    index: int
    header: str
    sampled: int
    null_ratio: float
    unique_ratio: float
    kind_scores: Dict[str, float]
    field: Optional[str] = None
    source: Optional[str] = None  # "exact" or "pattern" header match, or "values"
    confidence: float = 0.0

    @property
    def value_kind(self) -> Optional[str]:
        """Best scoring shape, or None when the column had no values."""
        if self.sampled == 0 or self.null_ratio == 1.0:
            return None
        return max(VALUE_KINDS, key=lambda kind: (self.kind_scores[kind], -VALUE_KINDS.index(kind)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "header": self.header,
            "field": self.field,
            "source": self.source,
            "confidence": self.confidence,
            "value_kind": self.value_kind,
            "null_ratio": round(self.null_ratio, 4),
            "unique_ratio": round(self.unique_ratio, 4),
            "kind_scores": {kind: round(score, 4) for kind, score in self.kind_scores.items()},
        }


def profile_column(index: int, header: str, values: Sequence[Optional[str]]) -> ColumnProfile:
    """Null and unique ratios plus the share of values having each shape."""
    cells = [clean_cell(value) if value is not None else "" for value in values]
    filled = [cell for cell in cells if cell]
    null_ratio = (len(cells) - len(filled)) / len(cells) if cells else 1.0
    unique_ratio = len(set(filled)) / len(filled) if filled else 0.0

    scores = {kind: 0.0 for kind in VALUE_KINDS}
    if filled:
        for kind, check in _SHAPE_CHECKS.items():
            scores[kind] = sum(1 for cell in filled if check(cell)) / len(filled)
        scores["text"] = 1.0 - max(scores[kind] for kind in _SHAPE_CHECKS)

    return ColumnProfile(index, header, len(cells), null_ratio, unique_ratio, scores)


def column_confidence(profile: ColumnProfile, field_name: str, source: Optional[str]) -> float:
    """
    Confidence (0.0 - 1.0) that ``profile``'s column holds ``field_name``.

    Header match, value shape share and fill ratio are weighted 0.4, 0.35
    and 0.2. A header match backed by at least half of the values earns a
    0.1 bonus.
    """
    header_score = HEADER_MATCH_SCORES.get(source, 0.0)
    pattern_score = profile.kind_scores[value_kind_for(field_name)]
    confidence = (
        header_score * HEADER_WEIGHT
        + pattern_score * PATTERN_WEIGHT
        + (1.0 - profile.null_ratio) * FILL_WEIGHT
    )
    if header_score and pattern_score >= 0.5:
        confidence += AGREEMENT_BONUS
    return round(min(1.0, confidence), 4)


@dataclass
class DetectionResult:
    mapping: IndexColumnMapping
    columns: List[ColumnProfile] = field(default_factory=list)
    overall_confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "columns": [column.to_dict() for column in self.columns],
            "overall_confidence": self.overall_confidence,
        }


def _column_cells(rows: Sequence[RawRow], index: int) -> List[Optional[str]]:
    return [row.cells[index] if index < len(row.cells) else None for row in rows]


def detect_mapping(headers: Sequence[str], rows: Sequence[RawRow]) -> DetectionResult:
    """
    Detect a mapping from headers and sampled rows.

    Header matches are kept as found. Columns left unclaimed are then mapped
    on their values when at least ``VALUE_MATCH_THRESHOLD`` of the sampled
    cells share one shape, filling the fields in ``VALUE_KIND_FIELDS`` order.
    The overall confidence is the mean over mapped columns.
    """
    profiles = [profile_column(index, header, _column_cells(rows, index)) for index, header in enumerate(headers)]

    for field_name, (index, source) in detect_header_matches(headers).items():
        profiles[index].field = field_name
        profiles[index].source = source

    assigned = {profile.field for profile in profiles if profile.field}
    for profile in profiles:
        kind = profile.value_kind
        if profile.field or kind not in VALUE_KIND_FIELDS or profile.kind_scores[kind] < VALUE_MATCH_THRESHOLD:
            continue
        for field_name in VALUE_KIND_FIELDS[kind]:
            if field_name not in assigned:
                profile.field = field_name
                profile.source = "values"
                assigned.add(field_name)
                logger.info(f"Mapped column '{profile.header}' to {field_name} from its values ({kind})")
                break

    mapping: Dict[str, Optional[int]] = {name: None for name in TRANSACTION_FIELDS}
    confidences = []
    for profile in profiles:
        if not profile.field:
            continue
        profile.confidence = column_confidence(profile, profile.field, profile.source)
        mapping[profile.field] = profile.index
        confidences.append(profile.confidence)

    overall = round(sum(confidences) / len(confidences), 4) if confidences else 0.0
    logger.info(f"Detected mapping for {len(confidences)} columns with overall confidence {overall}")
    return DetectionResult(IndexColumnMapping(mapping), profiles, overall)
