"""
Usage-to-Invoice Reconciliation Service.

Turns periodic usage reports from resellers ("representatives") into invoices
and keeps an append-only ledger with a running balance per representative.

Main Components:
- UsageNormalizer: Raw rows/records to typed usage candidates
- BatchValidator: Accepted records plus positioned rejections
- PricingCalculator: Deterministic line items and totals
- InvoiceAssembler: Pending invoices with unique invoice numbers
- LedgerReconciler: Debits, credits, balances and audits
- ImportService: Atomic end-to-end import of one batch

Key Features:
- Two-blank-row end-of-data marker for spreadsheet exports
- Zero-priced records counted separately, never reported as errors
- Whole-batch atomicity for invoices, batch report and ledger debits
- Per-representative serialization of invoice numbering and ledger posting
"""

from .assembler import InvoiceAssembler, InvoiceNumberGenerator
from .errors import (
    BatchFormatError,
    BillingEngineError,
    ImportPersistenceError,
    InvalidPaymentError,
    InvalidStatusTransition,
    InvoiceNotFoundError,
    InvoiceNumberCollision,
    LedgerIntegrityError,
    RepresentativeNotFoundError,
)
from .importer import ImportService
from .ledger import LedgerReconciler, RepresentativeLocks, classify_balance
from .models import (
    BalanceStatus,
    ImportResult,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    LedgerEntry,
    LedgerSnapshot,
    PricingProfile,
    Representative,
    UsageRecord,
)
from .normalizer import UsageNormalizer
from .pricing import PricingCalculator
from .storage import BillingStorage, InMemoryBillingStorage, PostgresBillingStorage
from .validator import BatchValidator

__all__ = [
    "BalanceStatus",
    "BatchFormatError",
    "BatchValidator",
    "BillingEngineError",
    "BillingStorage",
    "ImportPersistenceError",
    "ImportResult",
    "ImportService",
    "InMemoryBillingStorage",
    "InvalidPaymentError",
    "InvalidStatusTransition",
    "Invoice",
    "InvoiceAssembler",
    "InvoiceLineItem",
    "InvoiceNotFoundError",
    "InvoiceNumberCollision",
    "InvoiceNumberGenerator",
    "InvoiceStatus",
    "LedgerEntry",
    "LedgerIntegrityError",
    "LedgerReconciler",
    "LedgerSnapshot",
    "PostgresBillingStorage",
    "PricingCalculator",
    "PricingProfile",
    "Representative",
    "RepresentativeLocks",
    "RepresentativeNotFoundError",
    "UsageNormalizer",
    "UsageRecord",
    "classify_balance",
]
