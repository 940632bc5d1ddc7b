"""
Invoice Assembler.

Turns priced usage records into ``pending`` invoices. Per record it resolves
the representative, applies row price overrides to the pricing profile,
prices the record and, when there is something to charge, reserves a unique
invoice number through storage before creating the invoice.

Records that price to zero are counted as "no chargeable data", never as
errors. A number reservation that fails is fatal for that record only.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

import structlog

from .errors import InvoiceNumberCollision, RepresentativeNotFoundError
from .models import Invoice, InvoiceStatus, PricingProfile, Representative, RowIssue, UsageRecord
from .pricing import PricingCalculator
from .storage import BillingStorage

logger = structlog.get_logger(__name__)

REASON_NO_CHARGEABLE_DATA = "skipped, no chargeable data"
REASON_AMOUNT_OUT_OF_RANGE = "invoice amount is out of the supported range"


class InvoiceNumberGenerator:
    """
    Issues ``<PREFIX>-<YYYY>-<epoch ms><3-digit sequence>`` numbers.

    Numbers are strictly increasing within a process, including for invoices
    issued in the same millisecond. Uniqueness across processes is enforced by
    the storage reservation, not here.
    """

    def __init__(self, prefix: str = "INV"):
        if not prefix.isalnum():
            raise ValueError("invoice number prefix must contain only letters and digits")
        self.prefix = prefix.upper()
        self._lock = threading.Lock()
        self._last_ms = 0
        self._sequence = 0

    def next_number(self, issued_at: datetime) -> str:
        millis = int(issued_at.timestamp() * 1000)
        with self._lock:
            # The clock may repeat or step backwards; keep counting from the last slot
            if millis <= self._last_ms:
                millis = self._last_ms
                self._sequence += 1
                if self._sequence > 999:
                    millis += 1
                    self._sequence = 0
            else:
                self._sequence = 0
            self._last_ms = millis
            sequence = self._sequence
        return f"{self.prefix}-{issued_at.year:04d}-{millis}{sequence:03d}"


@dataclass
class AssemblyResult:
    """Invoices created for a batch plus the records that produced none"""
    invoices: List[Invoice] = field(default_factory=list)
    errors: List[RowIssue] = field(default_factory=list)
    notices: List[RowIssue] = field(default_factory=list)
    no_charge_rows: int = 0


class InvoiceAssembler:
    """Builds invoices for validated usage records"""

    def __init__(
        self,
        storage: BillingStorage,
        calculator: Optional[PricingCalculator] = None,
        number_generator: Optional[InvoiceNumberGenerator] = None,
        due_days: int = 30,
        auto_register: bool = False,
    ):
        self.storage = storage
        self.calculator = calculator or PricingCalculator()
        self.number_generator = number_generator or InvoiceNumberGenerator()
        self.due_days = due_days
        self.auto_register = auto_register
        self._logger = logger.bind(component="invoice_assembler")

    def resolve_representative(self, record: UsageRecord) -> Representative:
        """
        Find the representative owning a usage record.

        Raises:
            RepresentativeNotFoundError: If unknown and auto-registration is off
        """
        representative = self.storage.get_representative(record.admin_username)
        if representative is not None:
            return representative
        if not self.auto_register:
            raise RepresentativeNotFoundError(f"representative '{record.admin_username}' not found")

        representative = self.storage.register_representative(
            record.admin_username,
            full_name=record.full_name,
            phone=record.phone,
            telegram_id=record.telegram_id,
            store_name=record.store_name,
            pricing=PricingProfile(
                price_per_gb=record.price_per_gb_override,
                unlimited_monthly_price=record.unlimited_price_override,
            ),
        )
        self._logger.info(
            "representative_registered",
            admin_username=record.admin_username,
            representative_id=representative.representative_id,
        )
        return representative

    def assemble_one(self, record: UsageRecord, issued_at: datetime, batch_id: Optional[str] = None) -> Optional[Invoice]:
        """
        Assemble the invoice for one record.

        Returns:
            The pending invoice, or None when the record has nothing chargeable

        Raises:
            RepresentativeNotFoundError: Unknown representative
            InvoiceNumberCollision: The generated number is already taken
        """
        representative = self.resolve_representative(record)
        profile = self.storage.get_pricing_profile(representative.representative_id).with_overrides(
            price_per_gb=record.price_per_gb_override,
            unlimited_monthly_price=record.unlimited_price_override,
        )

        priced = self.calculator.calculate(record, profile)
        if not priced.is_chargeable:
            return None

        number = self.number_generator.next_number(issued_at)
        if not self.storage.reserve_invoice_number(number):
            raise InvoiceNumberCollision(number)

        return Invoice(
            invoice_number=number,
            representative_id=representative.representative_id,
            admin_username=record.admin_username,
            items=priced.items,
            total_amount=priced.total_amount,
            issue_date=issued_at,
            due_date=issued_at + timedelta(days=self.due_days),
            status=InvoiceStatus.PENDING,
            batch_id=batch_id,
            source_position=record.position,
        )

    def assemble(self, records: Sequence[UsageRecord], issued_at: datetime, batch_id: Optional[str] = None) -> AssemblyResult:
        """Assemble invoices for a batch; one failing record never stops the rest"""
        result = AssemblyResult()

        for record in records:
            try:
                invoice = self.assemble_one(record, issued_at, batch_id)
            except (RepresentativeNotFoundError, InvoiceNumberCollision) as e:
                self._logger.warning("invoice_assembly_failed", position=record.position, error=str(e))
                result.errors.append(RowIssue(record.position, str(e)))
                continue
            except ArithmeticError as e:
                self._logger.warning("invoice_pricing_failed", position=record.position, error=repr(e))
                result.errors.append(RowIssue(record.position, REASON_AMOUNT_OUT_OF_RANGE))
                continue

            if invoice is None:
                result.no_charge_rows += 1
                result.notices.append(RowIssue(record.position, REASON_NO_CHARGEABLE_DATA))
                self._logger.info(
                    "no_chargeable_data",
                    position=record.position,
                    admin_username=record.admin_username,
                )
                continue

            result.invoices.append(invoice)
            self._logger.debug(
                "invoice_assembled",
                invoice_number=invoice.invoice_number,
                representative_id=invoice.representative_id,
                total_amount=str(invoice.total_amount),
            )

        return result
