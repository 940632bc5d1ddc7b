"""Builders for usage rows, records and invoices used across the test suite."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from billing_engine.services.billing.layout import TABULAR_LAYOUT_V1
from billing_engine.services.billing.models import (
    TIERS, Invoice, InvoiceLineItem, InvoiceStatus, SubscriptionType,
)

ISSUED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

HEADER = ["admin_username", "full_name", "phone", "telegram_id", "store_name",
          "price_per_gb", "unlimited_monthly_price"] + [f"col_{i}" for i in range(7, TABULAR_LAYOUT_V1.width)]


def make_row(
    username: Any,
    limited: Optional[Dict[int, Any]] = None,
    unlimited: Optional[Dict[int, Any]] = None,
    price_per_gb: Any = None,
    unlimited_price: Any = None,
    full_name: str = "",
) -> List[Any]:
    """A full-width spreadsheet row; unspecified cells are blank"""
    row: List[Any] = [None] * TABULAR_LAYOUT_V1.width
    row[TABULAR_LAYOUT_V1.admin_username] = username
    row[TABULAR_LAYOUT_V1.full_name] = full_name
    row[TABULAR_LAYOUT_V1.price_per_gb_override] = price_per_gb
    row[TABULAR_LAYOUT_V1.unlimited_price_override] = unlimited_price
    for tier, value in (limited or {}).items():
        row[TABULAR_LAYOUT_V1.limited_volume_columns[tier - 1]] = value
    for tier, value in (unlimited or {}).items():
        row[TABULAR_LAYOUT_V1.unlimited_count_columns[tier - 1]] = value
    return row


def blank_row() -> List[Any]:
    return [None] * TABULAR_LAYOUT_V1.width


def make_record(username: Any, **fields: Any) -> Dict[str, Any]:
    """A structured record with all 13 fields present, quantities defaulting to 0"""
    record: Dict[str, Any] = {"admin_username": username}
    for tier in TIERS:
        record[f"limited_{tier}_month_volume"] = 0
        record[f"unlimited_{tier}_month"] = 0
    record.update(fields)
    return record


def make_invoice(
    representative_id: str,
    invoice_number: str,
    total: str,
    issue_date: datetime = ISSUED_AT,
) -> Invoice:
    amount = Decimal(total)
    return Invoice(
        invoice_number=invoice_number,
        representative_id=representative_id,
        admin_username="rep",
        items=(InvoiceLineItem(
            description="Limited 1-month subscription (1 GB)",
            quantity=Decimal("1"),
            unit_price=amount,
            total_price=amount,
            subscription_type=SubscriptionType.LIMITED,
            duration_months=1,
        ),),
        total_amount=amount,
        issue_date=issue_date,
        status=InvoiceStatus.PENDING,
    )
