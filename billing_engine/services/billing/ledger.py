"""
Ledger Reconciler.

Append-only, per-representative ledger with a running balance.

Sign convention: invoices are debits and carry a positive amount; payments
are credits and carry a negative amount. A positive balance means the
representative owes the operator (debtor), a negative one means the operator
owes the representative (creditor).

Appends read only the immediately preceding entry; ``reconcile`` is the one
place that walks the full history, for audits.
"""

import threading
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Iterator, Optional, Union

import structlog

from .errors import InvalidPaymentError, InvalidStatusTransition, LedgerIntegrityError, RepresentativeNotFoundError
from .models import (
    INVOICE_STATUS_TRANSITIONS, ZERO, BalanceStatus, Invoice, InvoiceStatus, LedgerEntry,
    LedgerSnapshot, TransactionType,
)
from .storage import BillingStorage

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def classify_balance(balance: Decimal) -> BalanceStatus:
    """Debtor above zero, creditor below, settled at exactly zero"""
    if balance > 0:
        return BalanceStatus.DEBTOR
    if balance < 0:
        return BalanceStatus.CREDITOR
    return BalanceStatus.SETTLED


class RepresentativeLocks:
    """Registry of reentrant locks keyed by representative id"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = defaultdict(threading.RLock)

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            return self._locks[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """Hold the locks of several representatives, acquired in sorted order"""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._lock_for(key))
            yield


class LedgerReconciler:
    """Posts invoices and payments and reports balances"""

    def __init__(
        self,
        storage: BillingStorage,
        locks: Optional[RepresentativeLocks] = None,
        clock: Callable[[], datetime] = utc_now,
        currency_minor_unit: Decimal = Decimal("1"),
    ):
        self.storage = storage
        self.locks = locks or RepresentativeLocks()
        self.clock = clock
        self.currency_minor_unit = currency_minor_unit
        self._logger = logger.bind(component="ledger_reconciler")

    def _append(
        self,
        representative_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        transaction_date: datetime,
        reference_number: Optional[str],
        description: Optional[str],
    ) -> Decimal:
        """Append one signed entry chained to the previous one; caller holds the lock and transaction"""
        self.storage.lock_representative(representative_id)
        previous = self.storage.get_last_ledger_entry(representative_id)
        transaction_date = _as_utc(transaction_date)

        if previous is not None and transaction_date < _as_utc(previous.transaction_date):
            raise LedgerIntegrityError(
                f"entry dated {transaction_date.isoformat()} would precede entry {previous.sequence} "
                f"of {representative_id} ({previous.transaction_date.isoformat()})"
            )

        running_balance = (previous.running_balance if previous else ZERO) + amount
        entry = LedgerEntry(
            representative_id=representative_id,
            sequence=(previous.sequence if previous else 0) + 1,
            transaction_date=transaction_date,
            transaction_type=transaction_type,
            amount=amount,
            running_balance=running_balance,
            reference_number=reference_number,
            description=description,
        )
        self.storage.append_ledger_entry(representative_id, entry)

        self._logger.info(
            "ledger_entry_posted",
            representative_id=representative_id,
            sequence=entry.sequence,
            transaction_type=transaction_type.value,
            amount=str(amount),
            running_balance=str(running_balance),
        )
        return running_balance

    def post_invoice(self, representative_id: str, invoice: Invoice) -> Decimal:
        """
        Debit an invoice total.

        Returns:
            The new running balance

        Raises:
            LedgerIntegrityError: Invoice already posted, owned by another
                representative, or dated before the last entry
        """
        if invoice.representative_id != representative_id:
            raise LedgerIntegrityError(
                f"invoice {invoice.invoice_number} belongs to {invoice.representative_id}, not {representative_id}"
            )

        with self.locks.hold(representative_id), self.storage.transaction():
            if self.storage.ledger_reference_exists(representative_id, TransactionType.INVOICE, invoice.invoice_number):
                raise LedgerIntegrityError(f"invoice {invoice.invoice_number} is already posted")
            return self._append(
                representative_id,
                TransactionType.INVOICE,
                invoice.total_amount,
                invoice.issue_date,
                invoice.invoice_number,
                f"Invoice {invoice.invoice_number}",
            )

    def post_payment(
        self,
        representative_id: str,
        amount: Union[Decimal, int, str],
        reference: Optional[str] = None,
        description: Optional[str] = None,
        transaction_date: Optional[datetime] = None,
    ) -> Decimal:
        """
        Credit a payment.

        Returns:
            The new running balance

        Raises:
            InvalidPaymentError: Amount is not a positive number of currency units,
                or the payment is dated in the future
            RepresentativeNotFoundError: Unknown representative
        """
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise InvalidPaymentError(f"payment amount {amount!r} is not a number")
        if not amount.is_finite() or amount <= 0:
            raise InvalidPaymentError(f"payment amount must be positive, got {amount}")
        try:
            whole_units = amount == amount.quantize(self.currency_minor_unit)
        except InvalidOperation:
            raise InvalidPaymentError(f"payment amount {amount} is out of range")
        if not whole_units:
            raise InvalidPaymentError(
                f"payment amount {amount} is finer than the currency unit {self.currency_minor_unit}"
            )
        if transaction_date is not None and _as_utc(transaction_date) > _as_utc(self.clock()):
            raise InvalidPaymentError(f"payment date {transaction_date.isoformat()} is in the future")

        if self.storage.get_representative_by_id(representative_id) is None:
            raise RepresentativeNotFoundError(f"representative {representative_id} not found")

        with self.locks.hold(representative_id), self.storage.transaction():
            return self._append(
                representative_id,
                TransactionType.PAYMENT,
                -amount,
                transaction_date or self.clock(),
                reference,
                description or "Payment received",
            )

    def get_current_balance(self, representative_id: str) -> Decimal:
        last = self.storage.get_last_ledger_entry(representative_id)
        return last.running_balance if last else ZERO

    def get_snapshot(self, representative_id: str) -> LedgerSnapshot:
        entries = tuple(self.storage.get_ledger_entries(representative_id))
        balance = entries[-1].running_balance if entries else ZERO
        return LedgerSnapshot(
            representative_id=representative_id,
            current_balance=balance,
            balance_status=classify_balance(balance),
            transactions=entries,
        )

    def reconcile(self, representative_id: str) -> LedgerSnapshot:
        """
        Recompute the whole running-balance chain of a representative.

        Raises:
            LedgerIntegrityError: On a sequence gap, a stored balance that does
                not match the recomputed one, or entries out of date order
        """
        entries = self.storage.get_ledger_entries(representative_id)
        balance = ZERO
        previous: Optional[LedgerEntry] = None

        for index, entry in enumerate(entries, start=1):
            if entry.sequence != index:
                raise LedgerIntegrityError(
                    f"ledger of {representative_id} has entry {entry.sequence} at slot {index}"
                )
            if previous is not None and _as_utc(entry.transaction_date) < _as_utc(previous.transaction_date):
                raise LedgerIntegrityError(
                    f"ledger entry {entry.sequence} of {representative_id} is dated before entry {previous.sequence}"
                )
            balance += entry.amount
            if entry.running_balance != balance:
                raise LedgerIntegrityError(
                    f"ledger entry {entry.sequence} of {representative_id} records balance "
                    f"{entry.running_balance}, expected {balance}"
                )
            previous = entry

        self._logger.info(
            "ledger_reconciled",
            representative_id=representative_id,
            entries=len(entries),
            balance=str(balance),
        )
        return LedgerSnapshot(
            representative_id=representative_id,
            current_balance=balance,
            balance_status=classify_balance(balance),
            transactions=tuple(entries),
        )

    def apply_status_change(self, invoice_number: str, status: Union[InvoiceStatus, str]) -> Invoice:
        """
        Record an external invoice status change.

        Repeating the current status is a no-op. Status changes never touch
        the ledger; payments are posted separately.

        Raises:
            InvoiceNotFoundError: Unknown invoice number
            InvalidStatusTransition: The move is not allowed from the current status
        """
        status = InvoiceStatus(status)
        invoice = self.storage.get_invoice(invoice_number)

        with self.locks.hold(invoice.representative_id), self.storage.transaction():
            invoice = self.storage.get_invoice(invoice_number)
            if invoice.status == status:
                return invoice
            if status not in INVOICE_STATUS_TRANSITIONS[invoice.status]:
                raise InvalidStatusTransition(invoice_number, invoice.status.value, status.value)

            updated = self.storage.update_invoice_status(invoice_number, status)

        self._logger.info(
            "invoice_status_changed",
            invoice_number=invoice_number,
            previous=invoice.status.value,
            status=status.value,
        )
        return updated
