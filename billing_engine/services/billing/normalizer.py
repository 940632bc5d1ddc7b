"""
Usage Record Normalizer.

Turns one raw input unit into a typed ``UsageCandidate``:
- Positional spreadsheet rows, mapped through ``TABULAR_LAYOUT_V1``
- Structured JSON-like records, mapped through ``STRUCTURED_LAYOUT_V1``

Normalization is lenient and never raises. Blank cells become ``0`` (quantities)
or ``""`` (text), numeric-looking strings become numbers, and anything that
cannot be read as a number is coerced to ``0`` with a ``FieldIssue`` attached so
the validator can reject the record with a precise reason.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from .layout import TABULAR_LAYOUT_V1, STRUCTURED_LAYOUT_V1, TabularLayout, StructuredLayout
from .models import TIERS, ZERO


# Persian and Arabic-Indic digits show up in locally edited spreadsheets
_DIGIT_TRANSLATION = str.maketrans("۰۱۲۳۴۵۶۷۸۹٠١٢٣٤٥٦٧٨٩", "01234567890123456789")
_SEPARATORS = (",", "٬", "،", " ")

# Largest volume, count or price a cell may carry
MAX_CELL_VALUE = Decimal("1000000000000")


class IssueKind(str, Enum):
    """Why a field could not be taken at face value"""
    MISSING = "missing"
    NOT_A_NUMBER = "not_a_number"
    NEGATIVE = "negative"
    NOT_WHOLE = "not_whole"
    NOT_AN_OBJECT = "not_an_object"
    OUT_OF_RANGE = "out_of_range"


@dataclass(frozen=True)
class FieldIssue:
    """Problem found with one field of one raw unit"""
    field: str
    kind: IssueKind
    raw_value: Optional[str] = None


@dataclass(frozen=True)
class UsageCandidate:
    """Normalized but not yet validated usage record"""
    position: int
    admin_username: str
    limited_volumes: Tuple[Decimal, ...]
    unlimited_counts: Tuple[int, ...]
    full_name: str = ""
    phone: str = ""
    telegram_id: str = ""
    store_name: str = ""
    price_per_gb_override: Optional[Decimal] = None
    unlimited_price_override: Optional[Decimal] = None
    issues: Tuple[FieldIssue, ...] = ()
    blank: bool = False


def is_blank_cell(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return False


def is_blank_row(row: Optional[Sequence[Any]]) -> bool:
    """True when every cell of the row is empty or null"""
    if not row:
        return True
    return all(is_blank_cell(cell) for cell in row)


def normalize_text(value: Any) -> str:
    """Trimmed string form of a cell; spreadsheet floats like 9123456789.0 lose the .0"""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def parse_number(value: Any) -> Tuple[Decimal, Optional[IssueKind]]:
    """
    Coerce a cell to a Decimal.

    Returns:
        Tuple of (value, issue). Blank cells are ``(0, None)``; unreadable cells
        are ``(0, NOT_A_NUMBER)``; values above ``MAX_CELL_VALUE`` are
        ``(0, OUT_OF_RANGE)``; negatives keep their value and report NEGATIVE.
    """
    if is_blank_cell(value):
        return ZERO, None
    if isinstance(value, bool):
        return ZERO, IssueKind.NOT_A_NUMBER

    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, (int, float)):
        number = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip().translate(_DIGIT_TRANSLATION)
        for separator in _SEPARATORS:
            text = text.replace(separator, "")
        try:
            number = Decimal(text)
        except InvalidOperation:
            return ZERO, IssueKind.NOT_A_NUMBER
    else:
        return ZERO, IssueKind.NOT_A_NUMBER

    if not number.is_finite():
        return ZERO, IssueKind.NOT_A_NUMBER
    if abs(number) > MAX_CELL_VALUE:
        return ZERO, IssueKind.OUT_OF_RANGE
    if number < 0:
        return number, IssueKind.NEGATIVE
    return number, None


def parse_count(value: Any) -> Tuple[int, Optional[IssueKind]]:
    """Coerce a cell to a whole subscription count"""
    number, issue = parse_number(value)
    if issue in (IssueKind.NOT_A_NUMBER, IssueKind.OUT_OF_RANGE):
        return 0, issue
    if number != number.to_integral_value():
        return 0, IssueKind.NOT_WHOLE
    return int(number), issue


def parse_price(value: Any) -> Optional[Decimal]:
    """Price overrides are optional; anything unusable means "no override" """
    number, issue = parse_number(value)
    if issue is not None or number <= 0:
        return None
    return number


def _raw(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class UsageNormalizer:
    """Maps raw units onto ``UsageCandidate`` through a layout contract"""

    def __init__(
        self,
        tabular_layout: TabularLayout = TABULAR_LAYOUT_V1,
        structured_layout: StructuredLayout = STRUCTURED_LAYOUT_V1,
    ):
        self.tabular_layout = tabular_layout
        self.structured_layout = structured_layout

    def normalize_row(self, row: Optional[Sequence[Any]], position: int) -> UsageCandidate:
        """
        Normalize one positional spreadsheet row.

        Args:
            row: Cell values; short rows are padded with blanks
            position: 1-based data row number

        Returns:
            UsageCandidate (``blank`` set when every cell is empty)
        """
        layout = self.tabular_layout
        cells: List[Any] = list(row or [])
        if len(cells) < layout.width:
            cells.extend([None] * (layout.width - len(cells)))

        if is_blank_row(cells):
            return UsageCandidate(
                position=position,
                admin_username="",
                limited_volumes=(ZERO,) * len(TIERS),
                unlimited_counts=(0,) * len(TIERS),
                blank=True,
            )

        issues: List[FieldIssue] = []
        volumes = []
        for tier, column in zip(TIERS, layout.limited_volume_columns):
            volume, issue = parse_number(cells[column])
            if issue:
                issues.append(FieldIssue(layout.limited_label(tier), issue, _raw(cells[column])))
            volumes.append(volume)

        counts = []
        for tier, column in zip(TIERS, layout.unlimited_count_columns):
            count, issue = parse_count(cells[column])
            if issue:
                issues.append(FieldIssue(layout.unlimited_label(tier), issue, _raw(cells[column])))
            counts.append(count)

        return UsageCandidate(
            position=position,
            admin_username=normalize_text(cells[layout.admin_username]),
            full_name=normalize_text(cells[layout.full_name]),
            phone=normalize_text(cells[layout.phone]),
            telegram_id=normalize_text(cells[layout.telegram_id]),
            store_name=normalize_text(cells[layout.store_name]),
            price_per_gb_override=parse_price(cells[layout.price_per_gb_override]),
            unlimited_price_override=parse_price(cells[layout.unlimited_price_override]),
            limited_volumes=tuple(volumes),
            unlimited_counts=tuple(counts),
            issues=tuple(issues),
        )

    def normalize_record(self, record: Any, position: int) -> UsageCandidate:
        """
        Normalize one structured record.

        Missing keys are reported as ``MISSING`` issues, distinct from keys that
        are present with an empty value.
        """
        layout = self.structured_layout
        if not isinstance(record, Mapping):
            return UsageCandidate(
                position=position,
                admin_username="",
                limited_volumes=(ZERO,) * len(TIERS),
                unlimited_counts=(0,) * len(TIERS),
                issues=(FieldIssue("record", IssueKind.NOT_AN_OBJECT, _raw(record)),),
            )

        issues = [
            FieldIssue(name, IssueKind.MISSING)
            for name in layout.required_fields
            if name not in record
        ]

        volumes = []
        for name in layout.limited_volume_fields:
            volume, issue = parse_number(record.get(name))
            if issue:
                issues.append(FieldIssue(name, issue, _raw(record.get(name))))
            volumes.append(volume)

        counts = []
        for name in layout.unlimited_count_fields:
            count, issue = parse_count(record.get(name))
            if issue:
                issues.append(FieldIssue(name, issue, _raw(record.get(name))))
            counts.append(count)

        return UsageCandidate(
            position=position,
            admin_username=normalize_text(record.get(layout.admin_username)),
            limited_volumes=tuple(volumes),
            unlimited_counts=tuple(counts),
            issues=tuple(issues),
        )
