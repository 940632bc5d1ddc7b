"""
Input layout contracts.

The spreadsheet export from the usage-reporting system is positional; the
column offsets below are a wire contract with that system. Changing the
export layout means adding a new ``TabularLayout`` version, never editing
index literals elsewhere.
"""

from dataclasses import dataclass
from typing import Tuple

from .models import TIERS


@dataclass(frozen=True)
class TabularLayout:
    """Named column offsets of one spreadsheet export version"""
    version: str
    admin_username: int
    full_name: int
    phone: int
    telegram_id: int
    store_name: int
    price_per_gb_override: int
    unlimited_price_override: int
    limited_volume_columns: Tuple[int, ...]
    unlimited_count_columns: Tuple[int, ...]
    header_rows: int = 1

    @property
    def width(self) -> int:
        """Number of cells a complete row carries"""
        return max(self.limited_volume_columns + self.unlimited_count_columns) + 1

    def limited_label(self, tier: int) -> str:
        return f"column {self.limited_volume_columns[tier - 1] + 1} (limited {tier}-month volume)"

    def unlimited_label(self, tier: int) -> str:
        return f"column {self.unlimited_count_columns[tier - 1] + 1} (unlimited {tier}-month count)"


# Columns 13-18 are reserved in this version
TABULAR_LAYOUT_V1 = TabularLayout(
    version="v1",
    admin_username=0,
    full_name=1,
    phone=2,
    telegram_id=3,
    store_name=4,
    price_per_gb_override=5,
    unlimited_price_override=6,
    limited_volume_columns=(7, 8, 9, 10, 11, 12),
    unlimited_count_columns=(19, 20, 21, 22, 23, 24),
)


@dataclass(frozen=True)
class StructuredLayout:
    """Field vocabulary of structured (JSON) batches"""
    version: str
    admin_username: str
    limited_volume_fields: Tuple[str, ...]
    unlimited_count_fields: Tuple[str, ...]

    @property
    def required_fields(self) -> Tuple[str, ...]:
        return (self.admin_username,) + self.limited_volume_fields + self.unlimited_count_fields


STRUCTURED_LAYOUT_V1 = StructuredLayout(
    version="v1",
    admin_username="admin_username",
    limited_volume_fields=tuple(f"limited_{tier}_month_volume" for tier in TIERS),
    unlimited_count_fields=tuple(f"unlimited_{tier}_month" for tier in TIERS),
)
