"""
Import orchestration.

Runs one batch through Normalizer -> Validator -> Pricing -> Assembler and
persists the outcome atomically: the invoices, the batch report and the
invoice debits on the ledger are committed together or not at all.

Usage:
    python -m billing_engine.services.billing.importer usage.xlsx
    python -m billing_engine.services.billing.importer usage.json --structured --dry-run
"""

import argparse
import sys
import uuid
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence

import psycopg2
import structlog

from billing_engine.core.config import Settings, get_settings
from billing_engine.core.database import DatabaseConnectionError, DatabaseQueryError
from billing_engine.core.logging_config import bind_import_context, clear_import_context, configure_logging

from .assembler import InvoiceAssembler, InvoiceNumberGenerator
from .errors import BatchFormatError, BillingEngineError, ImportPersistenceError
from .ledger import LedgerReconciler, RepresentativeLocks, utc_now
from .loaders import load_structured_file, load_tabular_file
from .models import BatchSource, ImportBatch, ImportResult
from .pricing import PricingCalculator
from .storage import BillingStorage, create_storage
from .validator import BatchValidator, ValidationReport

logger = structlog.get_logger(__name__)


class _DryRunRollback(Exception):
    """Unwinds the storage transaction of an import that must not be committed"""

    def __init__(self, batch: ImportBatch):
        super().__init__(batch.batch_id)
        self.batch = batch


class ImportService:
    """Entry point for tabular and structured usage imports"""

    def __init__(
        self,
        storage: BillingStorage,
        settings: Optional[Settings] = None,
        locks: Optional[RepresentativeLocks] = None,
        validator: Optional[BatchValidator] = None,
        assembler: Optional[InvoiceAssembler] = None,
        ledger: Optional[LedgerReconciler] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        settings = settings or get_settings()
        self.storage = storage
        self.clock = clock
        self.locks = locks or RepresentativeLocks()
        self.validator = validator or BatchValidator()
        self.assembler = assembler or InvoiceAssembler(
            storage,
            calculator=PricingCalculator(settings.billing.currency_minor_unit),
            number_generator=InvoiceNumberGenerator(settings.billing.invoice_number_prefix),
            due_days=settings.billing.invoice_due_days,
            auto_register=settings.billing.auto_register_representatives,
        )
        self.ledger = ledger or LedgerReconciler(storage, self.locks, clock, settings.billing.currency_minor_unit)
        self._logger = logger.bind(component="import_service")

    def import_tabular(self, rows: Sequence[Any], file_name: Optional[str] = None, commit: bool = True) -> ImportResult:
        """Import a spreadsheet batch (header row first)"""
        return self.run(BatchSource.TABULAR, rows, file_name, commit).to_result()

    def import_structured(self, records: Any, file_name: Optional[str] = None, commit: bool = True) -> ImportResult:
        """Import a structured batch (list of JSON-like records)"""
        return self.run(BatchSource.STRUCTURED, records, file_name, commit).to_result()

    def run(self, source: BatchSource, payload: Any, file_name: Optional[str] = None, commit: bool = True) -> ImportBatch:
        """
        Import one batch.

        Args:
            source: Shape of the payload
            payload: Rows or records
            file_name: Original file name, kept on the batch report
            commit: When False everything is computed and then rolled back

        Returns:
            ImportBatch describing the outcome

        Raises:
            BatchFormatError: The batch as a whole is unreadable
            ImportPersistenceError: The batch could not be committed; nothing was kept
        """
        batch_id = str(uuid.uuid4())
        bind_import_context(batch_id, source.value, file_name)
        try:
            if source == BatchSource.TABULAR:
                report = self.validator.validate_tabular(payload)
            else:
                report = self.validator.validate_structured(payload)
            batch = self._persist(batch_id, source, report, file_name, commit)
        finally:
            clear_import_context()
        return batch

    def _representative_keys(self, report: ValidationReport) -> List[str]:
        keys = []
        for record in report.valid:
            representative = self.storage.get_representative(record.admin_username)
            if representative is not None:
                keys.append(representative.representative_id)
        return keys

    def _persist(
        self,
        batch_id: str,
        source: BatchSource,
        report: ValidationReport,
        file_name: Optional[str],
        commit: bool,
    ) -> ImportBatch:
        keys = sorted(set(self._representative_keys(report)))

        with self.locks.hold(*keys):
            try:
                with self.storage.transaction():
                    # Cross-process locks in one global order, before any ledger append
                    for key in keys:
                        self.storage.lock_representative(key)
                    processed_at = self.clock()
                    assembly = self.assembler.assemble(report.valid, processed_at, batch_id)

                    invoices = tuple(assembly.invoices)
                    errors = sorted(
                        [rejection.issue for rejection in report.rejected] + assembly.errors,
                        key=lambda issue: issue.position,
                    )
                    notices = sorted(report.notices + assembly.notices, key=lambda issue: issue.position)
                    batch = ImportBatch(
                        batch_id=batch_id,
                        source=source,
                        processed_at=processed_at,
                        total_rows=report.total_rows,
                        processed_rows=len(invoices),
                        skipped_rows=report.total_rows - len(invoices),
                        no_charge_rows=assembly.no_charge_rows,
                        errors=tuple(errors),
                        notices=tuple(notices),
                        invoices=invoices,
                        file_name=file_name,
                    )

                    self.storage.persist_import_result(batch)
                    for invoice in invoices:
                        self.ledger.post_invoice(invoice.representative_id, invoice)

                    if not commit:
                        raise _DryRunRollback(batch)

            except _DryRunRollback as dry_run:
                self._log_batch("import_dry_run_completed", dry_run.batch)
                return dry_run.batch
            except (BillingEngineError, DatabaseConnectionError, DatabaseQueryError, psycopg2.Error) as e:
                self._logger.error("import_rolled_back", batch_id=batch_id, error=str(e))
                raise ImportPersistenceError(f"import {batch_id} was rolled back: {e}") from e

        self._log_batch("import_completed", batch)
        return batch

    def _log_batch(self, event: str, batch: ImportBatch) -> None:
        self._logger.info(
            event,
            batch_id=batch.batch_id,
            total_rows=batch.total_rows,
            processed_rows=batch.processed_rows,
            skipped_rows=batch.skipped_rows,
            no_charge_rows=batch.no_charge_rows,
            errors=len(batch.errors),
            total_amount=str(batch.total_amount),
        )


def _print_summary(result: ImportResult, dry_run: bool) -> None:
    print("=" * 60)
    print(f"Usage import {'(dry run, nothing committed)' if dry_run else 'committed'}")
    print("=" * 60)
    print(f"Total rows:      {result.total_rows}")
    print(f"Invoices issued: {result.processed_rows}")
    print(f"Skipped rows:    {result.skipped_rows}")
    print(f"No charge rows:  {result.no_charge_rows}")

    if result.errors:
        print(f"\nErrors ({len(result.errors)}):")
        for error in result.errors:
            print(f"  - {error}")
    if result.notices:
        print(f"\nNotices ({len(result.notices)}):")
        for notice in result.notices:
            print(f"  - {notice}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Import a usage report and issue representative invoices")
    parser.add_argument("file", help="Usage report (.csv, .xlsx, .ods or .json)")
    parser.add_argument("--structured", action="store_true", help="Treat the file as a JSON array of records")
    parser.add_argument("--dry-run", action="store_true", help="Compute the import without committing it")
    parser.add_argument("--log-level", default=None, help="Override APP_LOG_LEVEL")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(args.log_level or settings.app.app_log_level, settings.app.app_json_logs)

    structured = args.structured or args.file.lower().endswith(".json")
    service = ImportService(create_storage(settings), settings)

    try:
        if structured:
            result = service.import_structured(load_structured_file(args.file), args.file, commit=not args.dry_run)
        else:
            result = service.import_tabular(load_tabular_file(args.file), args.file, commit=not args.dry_run)
    except (BatchFormatError, ImportPersistenceError) as e:
        print(f"Import failed: {e}", file=sys.stderr)
        return 1

    _print_summary(result, args.dry_run)
    return 0


if __name__ == "__main__":
    sys.exit(main())
