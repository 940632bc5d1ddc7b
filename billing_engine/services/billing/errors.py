"""Exceptions raised by the billing service."""


class BillingEngineError(Exception):
    """Base class for billing engine failures"""
    pass


class BatchFormatError(BillingEngineError):
    """Raised when a batch as a whole cannot be read (wrong container type, empty, unreadable file)"""
    pass


class RepresentativeNotFoundError(BillingEngineError):
    """Raised when a representative id or admin username is unknown to storage"""
    pass


class InvoiceNotFoundError(BillingEngineError):
    """Raised when an invoice number is unknown to storage"""
    pass


class InvoiceNumberCollision(BillingEngineError):
    """Raised when a generated invoice number is already taken"""

    def __init__(self, invoice_number: str):
        super().__init__(f"invoice number {invoice_number} is already in use")
        self.invoice_number = invoice_number


class InvalidStatusTransition(BillingEngineError):
    """Raised when an invoice status change is not allowed from its current status"""

    def __init__(self, invoice_number: str, current: str, requested: str):
        super().__init__(f"invoice {invoice_number} cannot move from '{current}' to '{requested}'")
        self.invoice_number = invoice_number
        self.current = current
        self.requested = requested


class InvalidPaymentError(BillingEngineError):
    """Raised when a payment amount is not a positive number"""
    pass


class LedgerIntegrityError(BillingEngineError):
    """Raised when a ledger append would alter, reorder or break the running-balance chain"""
    pass


class ImportPersistenceError(BillingEngineError):
    """Raised when an import could not be committed; nothing from the batch was persisted"""
    pass
