#!/usr/bin/env python3
"""
Create Billing Schema Tables
Representative Billing Engine - PostgreSQL storage

Creates the 6 tables used by PostgresBillingStorage:
1. representatives - Resellers and their pricing profiles
2. invoice_batches - One row per committed import, with its report
3. invoices - Invoices issued by imports
4. invoice_items - Priced line items of each invoice
5. invoice_number_reservations - Claimed invoice numbers (cross-process uniqueness)
6. financial_ledger - Append-only per-representative ledger with running balance

Usage:
    python scripts/create_billing_tables.py
"""

import logging
import sys

from billing_engine.core.config import get_settings
from billing_engine.core.database import DatabaseManager

SCHEMA = "billing"

TABLES = {
    "representatives": f"""
    CREATE TABLE IF NOT EXISTS {SCHEMA}.representatives (
        representative_id VARCHAR(36) PRIMARY KEY,
        admin_username VARCHAR(255) NOT NULL UNIQUE,
        full_name VARCHAR(255),
        phone VARCHAR(50),
        telegram_id VARCHAR(255),
        store_name VARCHAR(255),

        -- Pricing profile; a NULL or zero tier rate falls back to price_per_gb
        price_per_gb NUMERIC(18,4),
        limited_price_1_month NUMERIC(18,4),
        limited_price_2_month NUMERIC(18,4),
        limited_price_3_month NUMERIC(18,4),
        limited_price_4_month NUMERIC(18,4),
        limited_price_5_month NUMERIC(18,4),
        limited_price_6_month NUMERIC(18,4),
        unlimited_monthly_price NUMERIC(18,4),

        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    );
    """,
    "invoice_batches": f"""
    CREATE TABLE IF NOT EXISTS {SCHEMA}.invoice_batches (
        batch_id VARCHAR(36) PRIMARY KEY,
        source VARCHAR(20) NOT NULL CHECK (source IN ('tabular', 'structured')),
        file_name TEXT,
        processed_at TIMESTAMPTZ NOT NULL,
        total_rows INTEGER NOT NULL,
        processed_rows INTEGER NOT NULL,
        skipped_rows INTEGER NOT NULL,
        no_charge_rows INTEGER NOT NULL,
        total_amount NUMERIC(18,4) NOT NULL,
        errors JSONB NOT NULL DEFAULT '[]',
        notices JSONB NOT NULL DEFAULT '[]',
        CHECK (processed_rows + skipped_rows = total_rows)
    );
    """,
    "invoices": f"""
    CREATE TABLE IF NOT EXISTS {SCHEMA}.invoices (
        invoice_number VARCHAR(64) PRIMARY KEY,
        representative_id VARCHAR(36) NOT NULL REFERENCES {SCHEMA}.representatives(representative_id),
        admin_username VARCHAR(255) NOT NULL,
        batch_id VARCHAR(36) REFERENCES {SCHEMA}.invoice_batches(batch_id),
        source_position INTEGER,
        total_amount NUMERIC(18,4) NOT NULL,
        issue_date TIMESTAMPTZ NOT NULL,
        due_date TIMESTAMPTZ,
        status VARCHAR(20) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'paid', 'overdue', 'cancelled')),
        status_updated_at TIMESTAMPTZ
    );
    """,
    "invoice_items": f"""
    CREATE TABLE IF NOT EXISTS {SCHEMA}.invoice_items (
        invoice_number VARCHAR(64) NOT NULL REFERENCES {SCHEMA}.invoices(invoice_number),
        line_no INTEGER NOT NULL,
        description TEXT NOT NULL,
        quantity NUMERIC(18,4) NOT NULL,
        unit_price NUMERIC(18,4) NOT NULL,
        total_price NUMERIC(18,4) NOT NULL,
        subscription_type VARCHAR(20) NOT NULL CHECK (subscription_type IN ('limited', 'unlimited')),
        duration_months INTEGER NOT NULL CHECK (duration_months BETWEEN 1 AND 6),
        PRIMARY KEY (invoice_number, line_no)
    );
    """,
    "invoice_number_reservations": f"""
    CREATE TABLE IF NOT EXISTS {SCHEMA}.invoice_number_reservations (
        invoice_number VARCHAR(64) PRIMARY KEY,
        reserved_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    );
    """,
    "financial_ledger": f"""
    CREATE TABLE IF NOT EXISTS {SCHEMA}.financial_ledger (
        representative_id VARCHAR(36) NOT NULL REFERENCES {SCHEMA}.representatives(representative_id),
        sequence INTEGER NOT NULL CHECK (sequence > 0),
        transaction_date TIMESTAMPTZ NOT NULL,
        transaction_type VARCHAR(20) NOT NULL CHECK (transaction_type IN ('invoice', 'payment')),
        amount NUMERIC(18,4) NOT NULL,
        running_balance NUMERIC(18,4) NOT NULL,
        reference_number VARCHAR(255),
        description TEXT,
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (representative_id, sequence)
    );
    """,
}

INDEXES = [
    f"CREATE INDEX IF NOT EXISTS idx_invoices_representative ON {SCHEMA}.invoices(representative_id);",
    f"CREATE INDEX IF NOT EXISTS idx_invoices_batch ON {SCHEMA}.invoices(batch_id);",
    f"CREATE INDEX IF NOT EXISTS idx_invoices_status ON {SCHEMA}.invoices(status);",
    f"CREATE INDEX IF NOT EXISTS idx_invoice_batches_processed_at ON {SCHEMA}.invoice_batches(processed_at);",
    # An invoice can be debited only once
    f"""CREATE UNIQUE INDEX IF NOT EXISTS idx_financial_ledger_invoice_once
        ON {SCHEMA}.financial_ledger(representative_id, reference_number)
        WHERE transaction_type = 'invoice';""",
]

# Ledger rows are never updated or deleted
IMMUTABILITY_SQL = [
    f"""
    CREATE OR REPLACE FUNCTION {SCHEMA}.reject_ledger_mutation() RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION 'financial_ledger is append-only';
    END;
    $$ LANGUAGE plpgsql;
    """,
    f"DROP TRIGGER IF EXISTS financial_ledger_append_only ON {SCHEMA}.financial_ledger;",
    f"""
    CREATE TRIGGER financial_ledger_append_only
        BEFORE UPDATE OR DELETE ON {SCHEMA}.financial_ledger
        FOR EACH ROW EXECUTE FUNCTION {SCHEMA}.reject_ledger_mutation();
    """,
]


def setup_logging():
    """Configure logging for database schema creation"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )
    return logging.getLogger(__name__)


def main():
    """Create the billing schema, tables, indexes and ledger trigger"""
    logger = setup_logging()
    logger.info("Creating billing schema tables")

    db_manager = DatabaseManager(get_settings())
    try:
        with db_manager.transaction() as conn:
            with conn.cursor() as cursor:
                cursor.execute(f"CREATE SCHEMA IF NOT EXISTS {SCHEMA};")

                for table_name, create_sql in TABLES.items():
                    cursor.execute(create_sql)
                    logger.info(f"Created table {SCHEMA}.{table_name}")

                for index_sql in INDEXES:
                    cursor.execute(index_sql)
                logger.info(f"Created {len(INDEXES)} indexes")

                for statement in IMMUTABILITY_SQL:
                    cursor.execute(statement)
                logger.info("Installed append-only trigger on financial_ledger")

        existing = db_manager.execute_query(
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = %s
            ORDER BY table_name
            """,
            (SCHEMA,),
            fetch="all",
        ) or []
        existing_tables = {row["table_name"] for row in existing}
        missing = [name for name in TABLES if name not in existing_tables]

        logger.info("=" * 60)
        logger.info("BILLING TABLES CREATION SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Tables present: {len(TABLES) - len(missing)}/{len(TABLES)}")
        if missing:
            logger.error(f"Missing tables: {', '.join(missing)}")
            return False
        return True

    finally:
        db_manager.close_all()


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
