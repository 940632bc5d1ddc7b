"""
Storage collaborators for the billing engine.

``BillingStorage`` is the contract the assembler, ledger and importer depend
on. Two implementations are provided:

- ``InMemoryBillingStorage``: thread-safe store used by tests and dry runs
- ``PostgresBillingStorage``: psycopg2 store on top of ``DatabaseManager``

Both support nested ``transaction()`` scopes; only the outermost scope commits
or rolls back.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import psycopg2
import psycopg2.extras
import structlog

from billing_engine.core.database import DatabaseManager, get_database_manager

from .errors import InvoiceNotFoundError, InvoiceNumberCollision, LedgerIntegrityError, RepresentativeNotFoundError
from .models import (
    TIER_COUNT, TIERS, ImportBatch, Invoice, InvoiceLineItem, InvoiceStatus, LedgerEntry,
    PricingProfile, Representative, SubscriptionType, TransactionType,
)

logger = structlog.get_logger(__name__)


class BillingStorage(ABC):
    """Persistence contract of the billing engine"""

    @abstractmethod
    def transaction(self):
        """Context manager making every write inside it atomic"""

    def lock_representative(self, representative_id: str) -> None:
        """Serialize ledger writers of one representative across processes (no-op by default)"""

    @abstractmethod
    def get_representative(self, admin_username: str) -> Optional[Representative]:
        pass

    @abstractmethod
    def get_representative_by_id(self, representative_id: str) -> Optional[Representative]:
        pass

    @abstractmethod
    def register_representative(
        self,
        admin_username: str,
        full_name: str = "",
        phone: str = "",
        telegram_id: str = "",
        store_name: str = "",
        pricing: Optional[PricingProfile] = None,
    ) -> Representative:
        pass

    def get_pricing_profile(self, representative_id: str) -> PricingProfile:
        representative = self.get_representative_by_id(representative_id)
        if representative is None:
            raise RepresentativeNotFoundError(f"representative {representative_id} not found")
        return representative.pricing

    @abstractmethod
    def invoice_number_exists(self, invoice_number: str) -> bool:
        pass

    @abstractmethod
    def reserve_invoice_number(self, invoice_number: str) -> bool:
        """Claim an invoice number; False when it is already taken"""

    @abstractmethod
    def persist_import_result(self, batch: ImportBatch) -> None:
        pass

    @abstractmethod
    def get_invoice(self, invoice_number: str) -> Invoice:
        pass

    @abstractmethod
    def update_invoice_status(self, invoice_number: str, status: InvoiceStatus) -> Invoice:
        pass

    @abstractmethod
    def append_ledger_entry(self, representative_id: str, entry: LedgerEntry) -> None:
        """Append one entry; an occupied sequence slot raises LedgerIntegrityError"""

    @abstractmethod
    def get_last_ledger_entry(self, representative_id: str) -> Optional[LedgerEntry]:
        pass

    @abstractmethod
    def get_ledger_entries(self, representative_id: str) -> List[LedgerEntry]:
        pass

    @abstractmethod
    def ledger_reference_exists(self, representative_id: str, transaction_type: TransactionType, reference_number: str) -> bool:
        pass


class InMemoryBillingStorage(BillingStorage):
    """Process-local storage; ``transaction()`` restores the previous state on error"""

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._representatives: Dict[str, Representative] = {}
        self._usernames: Dict[str, str] = {}
        self._reserved_numbers: Set[str] = set()
        self._invoices: Dict[str, Invoice] = {}
        self._batches: Dict[str, ImportBatch] = {}
        self._ledger: Dict[str, List[LedgerEntry]] = {}
        self._ledger_references: Set[Tuple[str, TransactionType, str]] = set()

    def _state(self) -> Dict[str, Any]:
        return {
            "_representatives": {k: replace(v) for k, v in self._representatives.items()},
            "_usernames": dict(self._usernames),
            "_reserved_numbers": set(self._reserved_numbers),
            "_invoices": dict(self._invoices),
            "_batches": dict(self._batches),
            "_ledger": {k: list(v) for k, v in self._ledger.items()},
            "_ledger_references": set(self._ledger_references),
        }

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            snapshot = self._state()
            self._depth = 1
            try:
                yield
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                logger.info("in_memory_transaction_rolled_back")
                raise
            finally:
                self._depth = 0

    def get_representative(self, admin_username: str) -> Optional[Representative]:
        with self._lock:
            representative_id = self._usernames.get(admin_username)
            return self._representatives.get(representative_id) if representative_id else None

    def get_representative_by_id(self, representative_id: str) -> Optional[Representative]:
        with self._lock:
            return self._representatives.get(representative_id)

    def register_representative(
        self,
        admin_username: str,
        full_name: str = "",
        phone: str = "",
        telegram_id: str = "",
        store_name: str = "",
        pricing: Optional[PricingProfile] = None,
    ) -> Representative:
        with self._lock:
            if admin_username in self._usernames:
                raise ValueError(f"representative '{admin_username}' is already registered")
            representative = Representative(
                representative_id=str(uuid.uuid4()),
                admin_username=admin_username,
                full_name=full_name,
                phone=phone,
                telegram_id=telegram_id,
                store_name=store_name,
                pricing=pricing or PricingProfile(),
            )
            self._representatives[representative.representative_id] = representative
            self._usernames[admin_username] = representative.representative_id
            return representative

    def invoice_number_exists(self, invoice_number: str) -> bool:
        with self._lock:
            return invoice_number in self._reserved_numbers or invoice_number in self._invoices

    def reserve_invoice_number(self, invoice_number: str) -> bool:
        with self._lock:
            if self.invoice_number_exists(invoice_number):
                return False
            self._reserved_numbers.add(invoice_number)
            return True

    def persist_import_result(self, batch: ImportBatch) -> None:
        with self.transaction():
            for invoice in batch.invoices:
                if invoice.invoice_number in self._invoices:
                    raise InvoiceNumberCollision(invoice.invoice_number)
                self._invoices[invoice.invoice_number] = invoice
            self._batches[batch.batch_id] = batch

    def get_batch(self, batch_id: str) -> Optional[ImportBatch]:
        with self._lock:
            return self._batches.get(batch_id)

    def get_invoice(self, invoice_number: str) -> Invoice:
        with self._lock:
            invoice = self._invoices.get(invoice_number)
        if invoice is None:
            raise InvoiceNotFoundError(f"invoice {invoice_number} not found")
        return invoice

    def list_invoices(self, representative_id: Optional[str] = None) -> List[Invoice]:
        with self._lock:
            return [
                invoice for invoice in self._invoices.values()
                if representative_id is None or invoice.representative_id == representative_id
            ]

    def update_invoice_status(self, invoice_number: str, status: InvoiceStatus) -> Invoice:
        with self._lock:
            invoice = replace(self.get_invoice(invoice_number), status=status)
            self._invoices[invoice_number] = invoice
            return invoice

    def append_ledger_entry(self, representative_id: str, entry: LedgerEntry) -> None:
        with self._lock:
            if entry.representative_id != representative_id:
                raise LedgerIntegrityError(
                    f"entry belongs to {entry.representative_id}, not {representative_id}"
                )
            entries = self._ledger.setdefault(representative_id, [])
            if entry.sequence <= len(entries):
                raise LedgerIntegrityError(
                    f"ledger slot {entry.sequence} of {representative_id} is already posted"
                )
            if entry.sequence != len(entries) + 1:
                raise LedgerIntegrityError(
                    f"ledger entry {entry.sequence} of {representative_id} skips slot {len(entries) + 1}"
                )
            entries.append(entry)
            if entry.reference_number is not None:
                self._ledger_references.add((representative_id, entry.transaction_type, entry.reference_number))

    def get_last_ledger_entry(self, representative_id: str) -> Optional[LedgerEntry]:
        with self._lock:
            entries = self._ledger.get(representative_id)
            return entries[-1] if entries else None

    def get_ledger_entries(self, representative_id: str) -> List[LedgerEntry]:
        with self._lock:
            return list(self._ledger.get(representative_id, ()))

    def ledger_reference_exists(self, representative_id: str, transaction_type: TransactionType, reference_number: str) -> bool:
        with self._lock:
            return (representative_id, transaction_type, reference_number) in self._ledger_references


_REPRESENTATIVE_COLUMNS = (
    "representative_id, admin_username, full_name, phone, telegram_id, store_name, "
    "price_per_gb, " + ", ".join(f"limited_price_{tier}_month" for tier in TIERS) + ", unlimited_monthly_price"
)


def _representative_from_row(row: Dict[str, Any]) -> Representative:
    return Representative(
        representative_id=row["representative_id"],
        admin_username=row["admin_username"],
        full_name=row.get("full_name") or "",
        phone=row.get("phone") or "",
        telegram_id=row.get("telegram_id") or "",
        store_name=row.get("store_name") or "",
        pricing=PricingProfile(
            price_per_gb=row.get("price_per_gb"),
            limited_tier_rates=tuple(row.get(f"limited_price_{tier}_month") for tier in TIERS),
            unlimited_monthly_price=row.get("unlimited_monthly_price"),
        ),
    )


def _ledger_entry_from_row(row: Dict[str, Any]) -> LedgerEntry:
    return LedgerEntry(
        representative_id=row["representative_id"],
        sequence=row["sequence"],
        transaction_date=row["transaction_date"],
        transaction_type=TransactionType(row["transaction_type"]),
        amount=Decimal(row["amount"]),
        running_balance=Decimal(row["running_balance"]),
        reference_number=row.get("reference_number"),
        description=row.get("description"),
    )


class PostgresBillingStorage(BillingStorage):
    """
    PostgreSQL storage in the ``billing`` schema.

    A ``transaction()`` pins one pooled connection to the calling thread; every
    statement issued by that thread inside the scope runs on it. Ledger writers
    of one representative are serialized with ``pg_advisory_xact_lock`` and
    the ``(representative_id, sequence)`` primary key rejects a second write
    to the same ledger slot.
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None, schema: str = "billing"):
        self.db = db_manager or get_database_manager()
        self.schema = schema
        self._local = threading.local()
        self._logger = logger.bind(component="postgres_billing_storage")

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "connection", None) is not None:
            yield
            return

        with self.db.transaction() as conn:
            self._local.connection = conn
            try:
                yield
            finally:
                self._local.connection = None

    def _execute(self, query: str, params: Optional[tuple] = None, fetch: str = "none") -> Optional[Any]:
        conn = getattr(self._local, "connection", None)
        if conn is None:
            return self.db.execute_query(query, params, fetch)

        with conn.cursor() as cursor:
            cursor.execute(query, params)
            if fetch == "all":
                return cursor.fetchall()
            if fetch == "one":
                return cursor.fetchone()
            return None

    def lock_representative(self, representative_id: str) -> None:
        if getattr(self._local, "connection", None) is None:
            raise RuntimeError("lock_representative requires an open transaction")
        self._execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (representative_id,))

    def get_representative(self, admin_username: str) -> Optional[Representative]:
        row = self._execute(
            f"SELECT {_REPRESENTATIVE_COLUMNS} FROM {self.schema}.representatives WHERE admin_username = %s",
            (admin_username,),
            fetch="one",
        )
        return _representative_from_row(row) if row else None

    def get_representative_by_id(self, representative_id: str) -> Optional[Representative]:
        row = self._execute(
            f"SELECT {_REPRESENTATIVE_COLUMNS} FROM {self.schema}.representatives WHERE representative_id = %s",
            (representative_id,),
            fetch="one",
        )
        return _representative_from_row(row) if row else None

    def register_representative(
        self,
        admin_username: str,
        full_name: str = "",
        phone: str = "",
        telegram_id: str = "",
        store_name: str = "",
        pricing: Optional[PricingProfile] = None,
    ) -> Representative:
        pricing = pricing or PricingProfile()
        representative_id = str(uuid.uuid4())
        placeholders = ", ".join(["%s"] * (8 + TIER_COUNT))
        with self.transaction():
            self._execute(
                f"INSERT INTO {self.schema}.representatives ({_REPRESENTATIVE_COLUMNS}) VALUES ({placeholders})",
                (
                    representative_id, admin_username, full_name, phone, telegram_id, store_name,
                    pricing.price_per_gb, *pricing.limited_tier_rates, pricing.unlimited_monthly_price,
                ),
            )
        return Representative(
            representative_id=representative_id,
            admin_username=admin_username,
            full_name=full_name,
            phone=phone,
            telegram_id=telegram_id,
            store_name=store_name,
            pricing=pricing,
        )

    def invoice_number_exists(self, invoice_number: str) -> bool:
        row = self._execute(
            f"""
            SELECT EXISTS (
                SELECT 1 FROM {self.schema}.invoice_number_reservations WHERE invoice_number = %s
            ) AS taken
            """,
            (invoice_number,),
            fetch="one",
        )
        return bool(row and row["taken"])

    def reserve_invoice_number(self, invoice_number: str) -> bool:
        with self.transaction():
            row = self._execute(
                f"""
                INSERT INTO {self.schema}.invoice_number_reservations (invoice_number)
                VALUES (%s)
                ON CONFLICT (invoice_number) DO NOTHING
                RETURNING invoice_number
                """,
                (invoice_number,),
                fetch="one",
            )
        return row is not None

    def persist_import_result(self, batch: ImportBatch) -> None:
        with self.transaction():
            self._execute(
                f"""
                INSERT INTO {self.schema}.invoice_batches (
                    batch_id, source, file_name, processed_at, total_rows, processed_rows,
                    skipped_rows, no_charge_rows, total_amount, errors, notices
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    batch.batch_id, batch.source.value, batch.file_name, batch.processed_at,
                    batch.total_rows, batch.processed_rows, batch.skipped_rows, batch.no_charge_rows,
                    batch.total_amount,
                    psycopg2.extras.Json([str(issue) for issue in batch.errors]),
                    psycopg2.extras.Json([str(issue) for issue in batch.notices]),
                ),
            )

            for invoice in batch.invoices:
                self._execute(
                    f"""
                    INSERT INTO {self.schema}.invoices (
                        invoice_number, representative_id, admin_username, batch_id, source_position,
                        total_amount, issue_date, due_date, status
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        invoice.invoice_number, invoice.representative_id, invoice.admin_username,
                        batch.batch_id, invoice.source_position, invoice.total_amount,
                        invoice.issue_date, invoice.due_date, invoice.status.value,
                    ),
                )
                for line_no, item in enumerate(invoice.items, start=1):
                    self._execute(
                        f"""
                        INSERT INTO {self.schema}.invoice_items (
                            invoice_number, line_no, description, quantity, unit_price, total_price,
                            subscription_type, duration_months
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            invoice.invoice_number, line_no, item.description, item.quantity,
                            item.unit_price, item.total_price, item.subscription_type.value,
                            item.duration_months,
                        ),
                    )

        self._logger.info("import_batch_persisted", batch_id=batch.batch_id, invoices=len(batch.invoices))

    def get_invoice(self, invoice_number: str) -> Invoice:
        row = self._execute(
            f"""
            SELECT invoice_number, representative_id, admin_username, batch_id, source_position,
                   total_amount, issue_date, due_date, status
            FROM {self.schema}.invoices WHERE invoice_number = %s
            """,
            (invoice_number,),
            fetch="one",
        )
        if not row:
            raise InvoiceNotFoundError(f"invoice {invoice_number} not found")

        item_rows = self._execute(
            f"""
            SELECT description, quantity, unit_price, total_price, subscription_type, duration_months
            FROM {self.schema}.invoice_items WHERE invoice_number = %s ORDER BY line_no
            """,
            (invoice_number,),
            fetch="all",
        ) or []

        return Invoice(
            invoice_number=row["invoice_number"],
            representative_id=row["representative_id"],
            admin_username=row["admin_username"],
            items=tuple(
                InvoiceLineItem(
                    description=item["description"],
                    quantity=Decimal(item["quantity"]),
                    unit_price=Decimal(item["unit_price"]),
                    total_price=Decimal(item["total_price"]),
                    subscription_type=SubscriptionType(item["subscription_type"]),
                    duration_months=item["duration_months"],
                )
                for item in item_rows
            ),
            total_amount=Decimal(row["total_amount"]),
            issue_date=row["issue_date"],
            due_date=row.get("due_date"),
            status=InvoiceStatus(row["status"]),
            batch_id=row.get("batch_id"),
            source_position=row.get("source_position"),
        )

    def update_invoice_status(self, invoice_number: str, status: InvoiceStatus) -> Invoice:
        with self.transaction():
            row = self._execute(
                f"""
                UPDATE {self.schema}.invoices
                SET status = %s, status_updated_at = CURRENT_TIMESTAMP
                WHERE invoice_number = %s
                RETURNING invoice_number
                """,
                (status.value, invoice_number),
                fetch="one",
            )
            if not row:
                raise InvoiceNotFoundError(f"invoice {invoice_number} not found")
            return self.get_invoice(invoice_number)

    def append_ledger_entry(self, representative_id: str, entry: LedgerEntry) -> None:
        if entry.representative_id != representative_id:
            raise LedgerIntegrityError(f"entry belongs to {entry.representative_id}, not {representative_id}")
        try:
            with self.transaction():
                self._execute(
                    f"""
                    INSERT INTO {self.schema}.financial_ledger (
                        representative_id, sequence, transaction_date, transaction_type, amount,
                        running_balance, reference_number, description
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        representative_id, entry.sequence, entry.transaction_date,
                        entry.transaction_type.value, entry.amount, entry.running_balance,
                        entry.reference_number, entry.description,
                    ),
                )
        except psycopg2.IntegrityError as e:
            self._logger.error("ledger_append_rejected", representative_id=representative_id, error=str(e))
            raise LedgerIntegrityError(
                f"ledger slot {entry.sequence} of {representative_id} is already posted"
            ) from e

    def get_last_ledger_entry(self, representative_id: str) -> Optional[LedgerEntry]:
        row = self._execute(
            f"""
            SELECT * FROM {self.schema}.financial_ledger
            WHERE representative_id = %s
            ORDER BY sequence DESC LIMIT 1
            """,
            (representative_id,),
            fetch="one",
        )
        return _ledger_entry_from_row(row) if row else None

    def get_ledger_entries(self, representative_id: str) -> List[LedgerEntry]:
        rows = self._execute(
            f"""
            SELECT * FROM {self.schema}.financial_ledger
            WHERE representative_id = %s
            ORDER BY sequence
            """,
            (representative_id,),
            fetch="all",
        ) or []
        return [_ledger_entry_from_row(row) for row in rows]

    def ledger_reference_exists(self, representative_id: str, transaction_type: TransactionType, reference_number: str) -> bool:
        row = self._execute(
            f"""
            SELECT EXISTS (
                SELECT 1 FROM {self.schema}.financial_ledger
                WHERE representative_id = %s AND transaction_type = %s AND reference_number = %s
            ) AS posted
            """,
            (representative_id, transaction_type.value, reference_number),
            fetch="one",
        )
        return bool(row and row["posted"])


def create_storage(settings) -> BillingStorage:
    """Build the storage backend selected by ``settings.billing.storage_backend``"""
    if settings.billing.storage_backend == "postgres":
        return PostgresBillingStorage(get_database_manager(settings))
    return InMemoryBillingStorage()
