"""
Column mapping resolution for bank statement files.

A mapping associates canonical transaction fields with source columns. It
comes in two shapes: index based (tied to one file's column order) and
header based (portable across re-uploads whose columns were reordered or
renamed). Both normalize to an ``IndexColumnMapping`` through
``to_index_mapping`` before any row is parsed, and the index mapping is
resolved once into ``MappedField`` entries carrying the field kind.
"""
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from rapidfuzz.distance import Levenshtein

from bankimport.domain.imports.errors import InvalidMappingError

logger = logging.getLogger(__name__)


class FieldKind(str, Enum):
    DATE = "date"
    AMOUNT = "amount"
    TEXT = "text"


@dataclass(frozen=True)
class FieldSpec:
    kind: FieldKind
    required: bool = False
    signed: bool = False  # Amount sign strategy applies


TRANSACTION_FIELDS: Dict[str, FieldSpec] = {
    "transaction_id": FieldSpec(FieldKind.TEXT),
    "booked_date": FieldSpec(FieldKind.DATE, required=True),
    "processed_date": FieldSpec(FieldKind.DATE),
    "amount": FieldSpec(FieldKind.AMOUNT, required=True, signed=True),
    "description": FieldSpec(FieldKind.TEXT),
    "partner": FieldSpec(FieldKind.TEXT, required=True),
    "type": FieldSpec(FieldKind.TEXT),
    "target_iban": FieldSpec(FieldKind.TEXT),
    "source_iban": FieldSpec(FieldKind.TEXT),
    "balance_after_transaction": FieldSpec(FieldKind.AMOUNT),
    "notes": FieldSpec(FieldKind.TEXT),
}

REQUIRED_MAPPED_FIELDS = ("booked_date", "amount", "partner")

EXACT_MATCH_SCORE = 1.0
FUZZY_MATCH_SCORE = 0.7
FUZZY_ACCEPT_THRESHOLD = 0.5


# Keyword groups used by auto detection. "exact" entries are compared to the
# whole normalized header, "patterns" are substring matches. IBAN fields
# additionally need a directional qualifier somewhere in the header.
DETECTION_RULES: Dict[str, Dict[str, List[str]]] = {
    "booked_date": {
        "exact": [
            "date", "booking date", "booked date", "transaction date", "posting date",
            "buchungstag", "buchungsdatum", "datum", "dátum", "fecha", "date opération",
            "datum zaúčtování", "dátum zaúčtovania",
        ],
        "patterns": ["date", "datum", "dátum", "fecha", "time", "data"],
    },
    "processed_date": {
        "exact": [
            "value date", "valuta", "valutadatum", "wertstellung", "processed date",
            "datum valuty", "dátum valuty", "fecha valor",
        ],
        "patterns": ["valuta", "wertstellung", "value date", "processed"],
    },
    "amount": {
        "exact": [
            "amount", "betrag", "suma", "monto", "montant", "transaction amount",
            "debit amount", "credit amount", "umsatz", "částka", "čiastka",
        ],
        "patterns": ["amount", "betrag", "sum", "monto", "montant", "value", "částka", "čiastka"],
    },
    "description": {
        "exact": [
            "description", "details", "verwendungszweck", "buchungstext", "popis",
            "memo", "concepto", "libellé", "payment details", "transaction description",
        ],
        "patterns": ["description", "detail", "text", "popis", "memo", "zweck", "concepto", "libell"],
    },
    "partner": {
        "exact": [
            "partner", "payee", "counterparty", "beneficiary", "beneficiary name",
            "empfänger", "auftraggeber", "name", "protistrana", "transaction partner",
        ],
        "patterns": [
            "partner", "payee", "recipient", "merchant", "counterparty", "beneficiary",
            "empfänger", "empfaenger", "auftraggeber", "name",
        ],
    },
    "type": {
        "exact": ["type", "transaction type", "umsatzart", "buchungsart", "typ"],
        "patterns": ["type", "umsatzart", "buchungsart", "typ"],
    },
    "transaction_id": {
        "exact": ["transaction id", "reference number", "reference", "referenz", "id"],
        "patterns": ["transaction_id", "transaction id", "reference", "referenz", "ref"],
    },
    "target_iban": {
        "exact": ["target iban", "recipient iban", "counterparty iban"],
        "patterns": ["iban", "account", "konto", "účet"],
        "qualifiers": ["target", "to", "destination", "recipient", "counterparty", "beneficiary", "empfänger", "gegenkonto", "partner"],
    },
    "source_iban": {
        "exact": ["source iban", "own iban", "sender iban"],
        "patterns": ["iban", "account", "konto", "účet"],
        "qualifiers": ["source", "from", "sender", "own", "auftragskonto", "eigenes"],
    },
    "balance_after_transaction": {
        "exact": [
            "balance", "account balance", "running balance", "new balance", "ending balance",
            "closing balance", "saldo", "kontostand", "zostatok", "zůstatek",
        ],
        "patterns": ["balance", "saldo", "kontostand", "zostatok", "zůstatek", "running"],
    },
    "notes": {
        "exact": ["notes", "note", "comment", "comments", "poznámka", "notiz"],
        "patterns": [],
    },
}

# Pattern pass order; earlier fields win contested headers.
DETECTION_ORDER = (
    "booked_date",
    "processed_date",
    "amount",
    "balance_after_transaction",
    "target_iban",
    "source_iban",
    "transaction_id",
    "description",
    "partner",
    "type",
    "notes",
)


@dataclass(frozen=True)
class IndexColumnMapping:
    """Canonical field -> zero-based column index (or None when unmapped)."""
    fields: Dict[str, Optional[int]]

    def to_dict(self) -> Dict[str, Optional[int]]:
        return dict(self.fields)


@dataclass(frozen=True)
class HeaderColumnMapping:
    """Canonical field -> source header name (or None when unmapped)."""
    fields: Dict[str, Optional[str]]

    def to_dict(self) -> Dict[str, Optional[str]]:
        return dict(self.fields)


ColumnMapping = Union[IndexColumnMapping, HeaderColumnMapping]


@dataclass(frozen=True)
class MappedField:
    name: str
    index: int
    spec: FieldSpec

    @property
    def kind(self) -> FieldKind:
        return self.spec.kind


@dataclass
class MappingValidation:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def column_mapping_from_dict(raw: Mapping[str, Any]) -> ColumnMapping:
    """
    Build the right mapping variant from a stored or submitted dictionary.

    Integer values produce an index mapping and string values a header
    mapping. Mixing both in one mapping is rejected.
    """
    values = [value for value in raw.values() if value is not None and value != ""]
    if all(isinstance(value, int) and not isinstance(value, bool) for value in values):
        return IndexColumnMapping({name: raw.get(name) for name in raw})
    if all(isinstance(value, str) for value in values):
        return HeaderColumnMapping({name: (raw.get(name) or None) for name in raw})
    raise InvalidMappingError(["Column mapping mixes column indices and header names"])


def normalize_header(header: Any) -> str:
    """Lowercase, trim and collapse whitespace in a header cell."""
    if header is None:
        return ""
    return re.sub(r"\s+", " ", str(header).strip().lower())


def _header_tokens(header_lower: str) -> List[str]:
    return [token for token in re.split(r"[^\w]+", header_lower) if token]


def _has_qualifier(header_lower: str, qualifiers: Sequence[str]) -> bool:
    tokens = _header_tokens(header_lower)
    for qualifier in qualifiers:
        if qualifier in tokens:
            return True
        if len(qualifier) >= 4 and any(token.startswith(qualifier) for token in tokens):
            return True
    return False


def detect_header_matches(headers: Sequence[str]) -> Dict[str, Tuple[int, str]]:
    """
    Match headers to fields by name alone.

    Exact synonyms are tried for every field first, then substring patterns.
    The first header satisfying a field wins and a header is never assigned
    to two fields.

    Returns:
        Mapping of field -> (column index, "exact" or "pattern") for matched fields
    """
    matches: Dict[str, Tuple[int, str]] = {}
    normalized = [normalize_header(header) for header in headers]
    claimed: set = set()

    for field_name in DETECTION_ORDER:
        rules = DETECTION_RULES[field_name]
        for index, header_lower in enumerate(normalized):
            if index in claimed or not header_lower:
                continue
            if header_lower in rules["exact"]:
                matches[field_name] = (index, "exact")
                claimed.add(index)
                break

    for field_name in DETECTION_ORDER:
        if field_name in matches:
            continue
        rules = DETECTION_RULES[field_name]
        qualifiers = rules.get("qualifiers")
        for index, header_lower in enumerate(normalized):
            if index in claimed or not header_lower:
                continue
            if not any(pattern in header_lower for pattern in rules["patterns"]):
                continue
            if qualifiers and not _has_qualifier(header_lower, qualifiers):
                continue
            matches[field_name] = (index, "pattern")
            claimed.add(index)
            break

    return matches


def auto_detect_mapping(headers: Sequence[str]) -> IndexColumnMapping:
    """Guess a mapping from header names; fields without a match stay None."""
    mapping: Dict[str, Optional[int]] = {name: None for name in TRANSACTION_FIELDS}
    for field_name, (index, _) in detect_header_matches(headers).items():
        mapping[field_name] = index

    detected = {name: headers[index] for name, index in mapping.items() if index is not None}
    logger.info(f"Auto-detected column mapping for {len(detected)} fields: {detected}")
    return IndexColumnMapping(mapping)


def header_match_score(target: str, candidate: str) -> float:
    """
    Score how well a saved header matches a current header (0.0 - 1.0).

    Combines substring containment (0.8), word overlap ratio (scaled by 0.9)
    and length-normalized edit distance, which only counts when the distance
    is within 30% of the longer string and that string is longer than 3.
    """
    target_lower = normalize_header(target)
    candidate_lower = normalize_header(candidate)
    if not target_lower or not candidate_lower:
        return 0.0
    if target_lower == candidate_lower:
        return 1.0

    score = 0.0
    if target_lower in candidate_lower or candidate_lower in target_lower:
        score = 0.8
    else:
        target_words = target_lower.split(" ")
        candidate_words = candidate_lower.split(" ")
        total_words = max(len(target_words), len(candidate_words))
        word_matches = 0
        for target_word in target_words:
            for candidate_word in candidate_words:
                if target_word in candidate_word or candidate_word in target_word:
                    word_matches += 1
                    break
        if word_matches:
            score = max(score, (word_matches / total_words) * 0.9)

    if len(target_lower) <= 50 and len(candidate_lower) <= 50:
        distance = Levenshtein.distance(target_lower, candidate_lower)
        max_length = max(len(target_lower), len(candidate_lower))
        if max_length > 3 and distance <= max_length * 0.3:
            score = max(score, 1 - distance / max_length)

    return score


def find_best_header_match(target: str, headers: Sequence[str]) -> Optional[int]:
    """Return the index of the best fuzzy match for ``target`` or None below 0.5."""
    best_index: Optional[int] = None
    best_score = 0.0
    for index, header in enumerate(headers):
        score = header_match_score(target, header)
        if score == 1.0:
            return index
        if score >= FUZZY_ACCEPT_THRESHOLD and score > best_score:
            best_score = score
            best_index = index
    return best_index


def _resolve_header(header_name: str, headers: Sequence[str]) -> Tuple[Optional[int], Optional[str]]:
    """Return (index, match_type) where match_type is 'exact', 'fuzzy' or None."""
    for index, header in enumerate(headers):
        if header == header_name:
            return index, "exact"
    index = find_best_header_match(header_name, headers)
    if index is not None:
        return index, "fuzzy"
    return None, None


def _valid_index(value: Any, headers: Sequence[str]) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < len(headers)


def to_index_mapping(mapping: ColumnMapping, headers: Sequence[str]) -> IndexColumnMapping:
    """
    Normalize either mapping variant to column indices for ``headers``.

    Out-of-range indices and headers that cannot be found, exactly or
    fuzzily, degrade to None.
    """
    resolved: Dict[str, Optional[int]] = {}

    if isinstance(mapping, IndexColumnMapping):
        for field_name, index in mapping.fields.items():
            if index is None:
                resolved[field_name] = None
            elif _valid_index(index, headers):
                resolved[field_name] = index
            else:
                logger.warning(
                    f"Invalid index in saved mapping: field={field_name} index={index} "
                    f"available_headers={len(headers)}"
                )
                resolved[field_name] = None
        return IndexColumnMapping(resolved)

    for field_name, header_name in mapping.fields.items():
        if not header_name:
            resolved[field_name] = None
            continue
        index, match_type = _resolve_header(header_name, headers)
        resolved[field_name] = index
        if match_type == "fuzzy":
            logger.info(
                f"Mapping fallback used: field={field_name} original_header='{header_name}' "
                f"matched_header='{headers[index]}' index={index}"
            )
    return IndexColumnMapping(resolved)


def to_header_mapping(mapping: IndexColumnMapping, headers: Sequence[str]) -> HeaderColumnMapping:
    """Convert an index mapping into the portable header form for saving."""
    return HeaderColumnMapping({
        field_name: (headers[index] if _valid_index(index, headers) else None)
        for field_name, index in mapping.fields.items()
    })


def validate_mapping(mapping: IndexColumnMapping, headers: Sequence[str]) -> MappingValidation:
    """Check required fields and index ranges; warn when a column is reused."""
    validation = MappingValidation()

    for field_name in REQUIRED_MAPPED_FIELDS:
        if mapping.fields.get(field_name) is None:
            validation.valid = False
            validation.errors.append(f"Missing required field mapping: {field_name}")

    for field_name, index in mapping.fields.items():
        if index is not None and not _valid_index(index, headers):
            validation.valid = False
            validation.errors.append(f"Invalid column index for field {field_name}: {index}")

    used = [index for index in mapping.fields.values() if index is not None]
    if len(used) != len(set(used)):
        validation.warnings.append("Multiple fields mapped to the same column")

    return validation


def compatibility_score(saved: ColumnMapping, headers: Sequence[str]) -> float:
    """
    Fraction of previously mapped fields that still resolve against ``headers``.

    Exact header matches count 1.0 and fuzzy ones 0.7. Used to rank saved
    mappings; it never decides whether a mapping may be used.
    """
    mapped = {name: value for name, value in saved.fields.items() if value is not None and value != ""}
    if not mapped:
        return 0.0

    total = 0.0
    for value in mapped.values():
        if isinstance(saved, IndexColumnMapping):
            total += EXACT_MATCH_SCORE if _valid_index(value, headers) else 0.0
            continue
        _, match_type = _resolve_header(value, headers)
        if match_type == "exact":
            total += EXACT_MATCH_SCORE
        elif match_type == "fuzzy":
            total += FUZZY_MATCH_SCORE
    return round(total / len(mapped), 4)


def resolve_mapped_fields(mapping: IndexColumnMapping) -> List[MappedField]:
    """Turn an index mapping into field entries with their kind resolved once."""
    resolved: List[MappedField] = []
    for field_name, index in mapping.fields.items():
        if index is None:
            continue
        spec = TRANSACTION_FIELDS.get(field_name)
        if spec is None:
            logger.debug(f"Ignoring unknown mapped field '{field_name}'")
            continue
        resolved.append(MappedField(name=field_name, index=index, spec=spec))
    return resolved
