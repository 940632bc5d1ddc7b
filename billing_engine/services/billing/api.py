"""
HTTP API of the billing engine.

Routes (under the service prefix, ``/api/v1`` by default):
- POST /imports/tabular               spreadsheet rows, header first
- POST /imports/structured            list of usage records
- POST /representatives/{id}/payments credit a payment
- GET  /representatives/{id}/ledger   balance and transaction history
- GET  /invoices/{number}             one invoice
- POST /invoices/{number}/status      external status change (idempotent)
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Type

import structlog
from fastapi import APIRouter, FastAPI, Query, Request, status
from pydantic import BaseModel, Field

from billing_engine.core.base_service import BaseService, HealthCheckResponse, error_response
from billing_engine.core.config import Settings, get_settings
from billing_engine.core.database import close_database_manager

from .errors import (
    BatchFormatError, BillingEngineError, ImportPersistenceError, InvalidPaymentError,
    InvalidStatusTransition, InvoiceNotFoundError, InvoiceNumberCollision, LedgerIntegrityError,
    RepresentativeNotFoundError,
)
from .importer import ImportService
from .ledger import LedgerReconciler, classify_balance
from .models import InvoiceStatus
from .storage import BillingStorage, PostgresBillingStorage, create_storage

logger = structlog.get_logger(__name__)

# First match wins
ERROR_STATUS: Tuple[Tuple[Type[BillingEngineError], int, str], ...] = (
    (BatchFormatError, status.HTTP_400_BAD_REQUEST, "batch_format_error"),
    (RepresentativeNotFoundError, status.HTTP_404_NOT_FOUND, "representative_not_found"),
    (InvoiceNotFoundError, status.HTTP_404_NOT_FOUND, "invoice_not_found"),
    (InvalidPaymentError, status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_payment"),
    (InvalidStatusTransition, status.HTTP_409_CONFLICT, "invalid_status_transition"),
    (LedgerIntegrityError, status.HTTP_409_CONFLICT, "ledger_integrity_error"),
    (InvoiceNumberCollision, status.HTTP_409_CONFLICT, "invoice_number_collision"),
    (ImportPersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR, "import_persistence_error"),
)


class TabularImportRequest(BaseModel):
    """Spreadsheet rows, header row first"""
    rows: List[List[Any]] = Field(description="Rows of cell values")
    file_name: Optional[str] = Field(None, description="Original file name")


class StructuredImportRequest(BaseModel):
    """Structured usage records"""
    records: List[Any] = Field(description="Usage records with the 13-field vocabulary")
    file_name: Optional[str] = Field(None, description="Original file name")


class PaymentRequest(BaseModel):
    """Payment received from a representative"""
    amount: Decimal = Field(description="Positive payment amount")
    reference: Optional[str] = Field(None, description="External payment reference")
    description: Optional[str] = Field(None, description="Free-text description")
    transaction_date: Optional[datetime] = Field(None, description="Payment date, defaults to now")


class StatusChangeRequest(BaseModel):
    """External invoice status notification"""
    status: InvoiceStatus = Field(description="New invoice status")


def create_billing_router(import_service: ImportService, ledger: LedgerReconciler, storage: BillingStorage) -> APIRouter:
    """Build the billing routes around already wired engine components"""
    router = APIRouter()

    @router.post("/imports/tabular", tags=["Imports"], summary="Import a spreadsheet usage report")
    def import_tabular(request: TabularImportRequest, commit: bool = Query(True)) -> Dict[str, Any]:
        return import_service.import_tabular(request.rows, request.file_name, commit=commit).to_dict()

    @router.post("/imports/structured", tags=["Imports"], summary="Import structured usage records")
    def import_structured(request: StructuredImportRequest, commit: bool = Query(True)) -> Dict[str, Any]:
        return import_service.import_structured(request.records, request.file_name, commit=commit).to_dict()

    @router.post("/representatives/{representative_id}/payments", tags=["Ledger"], summary="Post a payment")
    def post_payment(representative_id: str, request: PaymentRequest) -> Dict[str, Any]:
        balance = ledger.post_payment(
            representative_id,
            request.amount,
            reference=request.reference,
            description=request.description,
            transaction_date=request.transaction_date,
        )
        return {
            "representative_id": representative_id,
            "current_balance": str(balance),
            "balance_status": classify_balance(balance).value,
        }

    @router.get("/representatives/{representative_id}/ledger", tags=["Ledger"], summary="Ledger snapshot")
    def get_ledger(representative_id: str) -> Dict[str, Any]:
        if storage.get_representative_by_id(representative_id) is None:
            raise RepresentativeNotFoundError(f"representative {representative_id} not found")
        return ledger.get_snapshot(representative_id).to_dict()

    @router.get("/invoices/{invoice_number}", tags=["Invoices"], summary="Get an invoice")
    def get_invoice(invoice_number: str) -> Dict[str, Any]:
        return storage.get_invoice(invoice_number).to_dict()

    @router.post("/invoices/{invoice_number}/status", tags=["Invoices"], summary="Change invoice status")
    def change_status(invoice_number: str, request: StatusChangeRequest) -> Dict[str, Any]:
        return ledger.apply_status_change(invoice_number, request.status).to_dict()

    return router


def register_error_handlers(app: FastAPI) -> None:
    """Map engine exceptions onto HTTP status codes"""

    @app.exception_handler(BillingEngineError)
    async def billing_error_handler(request: Request, exc: BillingEngineError):
        for error_type, status_code, error in ERROR_STATUS:
            if isinstance(exc, error_type):
                break
        else:
            status_code, error = status.HTTP_500_INTERNAL_SERVER_ERROR, "billing_error"

        logger.warning("billing_request_rejected", error=error, status_code=status_code, message=str(exc))
        return error_response(request, status_code, error, str(exc))


class BillingService(BaseService):
    """Billing HTTP service; reports pool usage on /health and closes the pool on shutdown"""

    def __init__(self, storage: BillingStorage, **kwargs):
        self.storage = storage
        super().__init__(**kwargs)

    def _uses_database(self) -> bool:
        return isinstance(self.storage, PostgresBillingStorage)

    async def get_health_status(self) -> HealthCheckResponse:
        health = await super().get_health_status()
        if self._uses_database():
            health.system_info["billing_db_pool"] = self.storage.db.get_pool_info()
        return health

    async def _shutdown(self):
        if self._uses_database():
            close_database_manager()
        await super()._shutdown()


def create_billing_service(settings: Optional[Settings] = None, storage: Optional[BillingStorage] = None) -> BillingService:
    """
    Build the billing HTTP service.

    Args:
        settings: Optional settings instance. If None, will load from get_settings()
        storage: Optional storage; defaults to the configured backend
    """
    settings = settings or get_settings()
    storage = storage or create_storage(settings)

    service = BillingService(
        storage,
        name="billing-service",
        description="Usage import, invoicing and representative ledger",
        settings=settings,
    )
    import_service = ImportService(storage, settings)
    service.include_router(
        create_billing_router(import_service, import_service.ledger, storage),
    )
    register_error_handlers(service.app)

    if isinstance(storage, PostgresBillingStorage):
        service.add_dependency_check("billing_database", lambda: storage.db.health_check()["billing"])

    return service


if __name__ == "__main__":
    create_billing_service().run()
