"""
Billing data model.

Value types shared by every stage of the usage-to-invoice pipeline. Money and
GB volumes are ``Decimal``; unlimited subscription counts are ``int``.
Ledger entries are frozen: once built they cannot be altered.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

TIER_COUNT = 6
TIERS = tuple(range(1, TIER_COUNT + 1))
ZERO = Decimal("0")


class SubscriptionType(str, Enum):
    """Billing model of a line item"""
    LIMITED = "limited"
    UNLIMITED = "unlimited"


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# pending is the only status the assembler creates; the rest are external transitions
INVOICE_STATUS_TRANSITIONS: Dict[InvoiceStatus, Tuple[InvoiceStatus, ...]] = {
    InvoiceStatus.PENDING: (InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED),
    InvoiceStatus.OVERDUE: (InvoiceStatus.PAID, InvoiceStatus.CANCELLED),
    InvoiceStatus.PAID: (),
    InvoiceStatus.CANCELLED: (),
}


class TransactionType(str, Enum):
    """Ledger transaction kind"""
    INVOICE = "invoice"
    PAYMENT = "payment"


class BalanceStatus(str, Enum):
    """Derived classification of a representative's balance"""
    DEBTOR = "debtor"
    CREDITOR = "creditor"
    SETTLED = "settled"


class BatchSource(str, Enum):
    """Shape of the raw input"""
    TABULAR = "tabular"
    STRUCTURED = "structured"


def _positive(value: Optional[Decimal]) -> Optional[Decimal]:
    return value if value is not None and value > 0 else None


@dataclass(frozen=True)
class PricingProfile:
    """Representative pricing; owned by representative management"""
    price_per_gb: Optional[Decimal] = None
    limited_tier_rates: Tuple[Optional[Decimal], ...] = (None,) * TIER_COUNT
    unlimited_monthly_price: Optional[Decimal] = None

    def __post_init__(self):
        if len(self.limited_tier_rates) != TIER_COUNT:
            raise ValueError(f"limited_tier_rates must have {TIER_COUNT} slots")

    def limited_rate(self, tier: int) -> Optional[Decimal]:
        """Effective per-GB rate of a limited tier, or None when the tier is unpriced"""
        return _positive(self.limited_tier_rates[tier - 1]) or _positive(self.price_per_gb)

    def unlimited_rate(self) -> Optional[Decimal]:
        return _positive(self.unlimited_monthly_price)

    @property
    def is_priced(self) -> bool:
        return self.unlimited_rate() is not None or any(self.limited_rate(t) for t in TIERS)

    def with_overrides(
        self,
        price_per_gb: Optional[Decimal] = None,
        unlimited_monthly_price: Optional[Decimal] = None,
    ) -> "PricingProfile":
        """Apply tabular row price overrides; a per-GB override prices all six limited tiers"""
        profile = self
        if _positive(price_per_gb):
            profile = replace(profile, price_per_gb=price_per_gb, limited_tier_rates=(price_per_gb,) * TIER_COUNT)
        if _positive(unlimited_monthly_price):
            profile = replace(profile, unlimited_monthly_price=unlimited_monthly_price)
        return profile


@dataclass
class Representative:
    """Reseller account as seen by the engine"""
    representative_id: str
    admin_username: str
    full_name: str = ""
    phone: str = ""
    telegram_id: str = ""
    store_name: str = ""
    pricing: PricingProfile = field(default_factory=PricingProfile)


@dataclass(frozen=True)
class UsageRecord:
    """One validated usage report line for one representative"""
    admin_username: str
    position: int
    limited_volumes: Tuple[Decimal, ...]
    unlimited_counts: Tuple[int, ...]
    full_name: str = ""
    phone: str = ""
    telegram_id: str = ""
    store_name: str = ""
    price_per_gb_override: Optional[Decimal] = None
    unlimited_price_override: Optional[Decimal] = None

    @property
    def has_usage(self) -> bool:
        return any(v > 0 for v in self.limited_volumes) or any(c > 0 for c in self.unlimited_counts)


@dataclass(frozen=True)
class InvoiceLineItem:
    """One priced tier of a usage record"""
    description: str
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    subscription_type: SubscriptionType
    duration_months: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "total_price": str(self.total_price),
            "subscription_type": self.subscription_type.value,
            "duration_months": self.duration_months,
        }


@dataclass(frozen=True)
class Invoice:
    """Invoice emitted by the assembler; status changes are recorded by storage, not here"""
    invoice_number: str
    representative_id: str
    admin_username: str
    items: Tuple[InvoiceLineItem, ...]
    total_amount: Decimal
    issue_date: datetime
    due_date: Optional[datetime] = None
    status: InvoiceStatus = InvoiceStatus.PENDING
    batch_id: Optional[str] = None
    source_position: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice_number": self.invoice_number,
            "representative_id": self.representative_id,
            "admin_username": self.admin_username,
            "items": [item.to_dict() for item in self.items],
            "total_amount": str(self.total_amount),
            "issue_date": self.issue_date.isoformat(),
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "status": self.status.value,
            "batch_id": self.batch_id,
            "source_position": self.source_position,
        }


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable ledger line; amount is signed (debits positive, credits negative)"""
    representative_id: str
    sequence: int
    transaction_date: datetime
    transaction_type: TransactionType
    amount: Decimal
    running_balance: Decimal
    reference_number: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "representative_id": self.representative_id,
            "sequence": self.sequence,
            "transaction_date": self.transaction_date.isoformat(),
            "transaction_type": self.transaction_type.value,
            "amount": str(self.amount),
            "running_balance": str(self.running_balance),
            "reference_number": self.reference_number,
            "description": self.description,
        }


@dataclass(frozen=True)
class RowIssue:
    """A reported row: a rejection, an assembly failure or a skip notice"""
    position: int
    reason: str

    def __str__(self) -> str:
        return f"row {self.position}: {self.reason}"


@dataclass(frozen=True)
class ImportResult:
    """Operator-facing outcome of one import"""
    processed_rows: int
    skipped_rows: int
    total_rows: int
    no_charge_rows: int
    errors: Tuple[str, ...]
    notices: Tuple[str, ...]
    invoices: Tuple[Invoice, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed_rows": self.processed_rows,
            "skipped_rows": self.skipped_rows,
            "total_rows": self.total_rows,
            "no_charge_rows": self.no_charge_rows,
            "errors": list(self.errors),
            "notices": list(self.notices),
            "invoices": [invoice.to_dict() for invoice in self.invoices],
        }


@dataclass(frozen=True)
class ImportBatch:
    """Everything one import produced, persisted atomically or not at all"""
    batch_id: str
    source: BatchSource
    processed_at: datetime
    total_rows: int
    processed_rows: int
    skipped_rows: int
    no_charge_rows: int
    errors: Tuple[RowIssue, ...]
    notices: Tuple[RowIssue, ...]
    invoices: Tuple[Invoice, ...]
    file_name: Optional[str] = None

    @property
    def total_amount(self) -> Decimal:
        return sum((invoice.total_amount for invoice in self.invoices), ZERO)

    def to_result(self) -> ImportResult:
        return ImportResult(
            processed_rows=self.processed_rows,
            skipped_rows=self.skipped_rows,
            total_rows=self.total_rows,
            no_charge_rows=self.no_charge_rows,
            errors=tuple(str(issue) for issue in self.errors),
            notices=tuple(str(issue) for issue in self.notices),
            invoices=self.invoices,
        )


@dataclass(frozen=True)
class LedgerSnapshot:
    """Current balance plus the full transaction history of one representative"""
    representative_id: str
    current_balance: Decimal
    balance_status: BalanceStatus
    transactions: Tuple[LedgerEntry, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "representative_id": self.representative_id,
            "current_balance": str(self.current_balance),
            "balance_status": self.balance_status.value,
            "transactions": [entry.to_dict() for entry in self.transactions],
        }
