"""
Table definitions for the import subsystem.

Tables are declared with SQLAlchemy Core so the same statements run against
PostgreSQL in production and SQLite in the test suite. Identifiers are
client-generated UUID strings.
"""
import logging

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

metadata = MetaData()

import_jobs = Table(
    "import_jobs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(255), nullable=False),
    Column("account_id", String(255)),
    Column("status", String(50), nullable=False, default="pending"),
    Column("file_path", String(500), nullable=False),
    Column("original_filename", String(255)),
    Column("file_hash", String(64)),
    Column("delimiter", String(8), nullable=False, default=","),
    Column("quote_char", String(8), nullable=False, default='"'),
    Column("headers", JSON),
    Column("column_mapping", JSON),
    Column("date_format", String(50)),
    Column("amount_format", String(20)),
    Column("amount_sign_strategy", String(50)),
    Column("currency", String(3)),
    Column("total_rows", Integer, nullable=False, default=0),
    Column("processed_rows", Integer, nullable=False, default=0),
    Column("failed_rows", Integer, nullable=False, default=0),
    Column("skipped_rows", Integer, nullable=False, default=0),
    Column("error_message", Text),
    Column("metadata", JSON),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
    Column("processed_at", DateTime),
    Index("idx_import_jobs_user", "user_id"),
    Index("idx_import_jobs_status", "status"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(255), nullable=False),
    Column("account_id", String(255)),
    Column("import_id", String(36)),
    Column("transaction_id", String(255)),
    Column("booked_date", DateTime, nullable=False),
    Column("processed_date", DateTime),
    Column("amount", Numeric(18, 4), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("description", Text),
    Column("partner", String(255)),
    Column("type", String(100)),
    Column("source_iban", String(34)),
    Column("target_iban", String(34)),
    Column("balance_after_transaction", Numeric(18, 4)),
    Column("notes", Text),
    Column("import_data", JSON),
    Column("fingerprint", String(64)),
    Column("created_at", DateTime, server_default=func.now()),
    Index("idx_transactions_user_booked", "user_id", "booked_date"),
    Index("idx_transactions_import", "import_id"),
)

transaction_fingerprints = Table(
    "transaction_fingerprints",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(255), nullable=False),
    Column("fingerprint", String(64), nullable=False),
    Column("transaction_id", String(36), nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
    UniqueConstraint("user_id", "fingerprint", name="uq_transaction_fingerprints_user_hash"),
    Index("idx_transaction_fingerprints_transaction", "transaction_id"),
)

import_failures = Table(
    "import_failures",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("import_id", String(36), nullable=False),
    Column("row_number", Integer),
    Column("attempt", Integer, nullable=False, default=1),
    Column("raw_data", JSON),
    Column("error_type", String(50), nullable=False),
    Column("error_message", Text),
    Column("error_details", JSON),
    Column("parsed_data", JSON),
    Column("metadata", JSON),
    Column("status", String(20), nullable=False, default="pending"),
    Column("review_notes", Text),
    Column("reviewed_by", String(255)),
    Column("reviewed_at", DateTime),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
    Index("idx_import_failures_import", "import_id", "status"),
)

import_row_edits = Table(
    "import_row_edits",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("import_id", String(36), nullable=False),
    Column("row_number", Integer, nullable=False),
    Column("data", JSON, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
    UniqueConstraint("import_id", "row_number", name="uq_import_row_edits_row"),
)

import_mappings = Table(
    "import_mappings",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(255), nullable=False),
    Column("name", String(255), nullable=False),
    Column("bank_name", String(255)),
    Column("column_mapping", JSON, nullable=False),
    Column("date_format", String(50)),
    Column("amount_format", String(20)),
    Column("amount_sign_strategy", String(50)),
    Column("currency", String(3)),
    Column("delimiter", String(8)),
    Column("quote_char", String(8)),
    Column("last_used_at", DateTime),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
    Index("idx_import_mappings_user", "user_id"),
)


def create_tables(engine: Engine) -> None:
    """Create every import table that does not exist yet."""
    metadata.create_all(engine)
    logger.info("Import tables ready: %s", ", ".join(sorted(metadata.tables)))
