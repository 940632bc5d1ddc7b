"""Representative Billing Engine: usage imports, invoicing and representative ledgers."""

__version__ = "1.0.0"
