"""SQLite database schema and initialization for PO sync alerts.

Tables:
- emails: Mailbox messages as delivered by the mailbox-sync collaborator
- alerts: PO alert lifecycle records

Usage:
    from posync.db.models import init_database

    await init_database("data/posync.db")
"""

import stat
from pathlib import Path

import aiosqlite

from posync.core.errors import DatabaseError
from posync.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

-- Messages synced from the mailbox (never modified by alerting)
CREATE TABLE IF NOT EXISTS emails (
    id TEXT PRIMARY KEY,                    -- Sync-assigned key (e.g. 'INBOX:1234')
    message_id TEXT,                        -- Message-ID header
    in_reply_to TEXT,                       -- In-Reply-To header
    references_header TEXT,                 -- References header, space-separated ids
    subject TEXT,
    normalized_subject TEXT,                -- Subject without Re:/Fwd:/[tags], lowercased
    from_address TEXT,
    from_name TEXT,
    to_addresses TEXT,                      -- JSON array of recipient addresses
    date DATETIME,
    mailbox TEXT NOT NULL                   -- 'INBOX', 'Sent', 'Sent Items', ...
);

CREATE INDEX IF NOT EXISTS idx_emails_message_id ON emails(message_id);
CREATE INDEX IF NOT EXISTS idx_emails_in_reply_to ON emails(in_reply_to);
CREATE INDEX IF NOT EXISTS idx_emails_normalized_subject ON emails(normalized_subject);
CREATE INDEX IF NOT EXISTS idx_emails_date ON emails(date);
CREATE INDEX IF NOT EXISTS idx_emails_mailbox ON emails(mailbox);

-- PO alert lifecycle
CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    alert_type TEXT NOT NULL,               -- 'po_detected', 'po_detected_with_so', 'po_missing_so',
                                            -- 'no_qb_customer', 'suspicious_po_email', 'so_should_be_closed'
    thread_key TEXT NOT NULL,
    subject TEXT,
    contact_email TEXT,
    contact_name TEXT,
    qb_customer_id TEXT,
    qb_customer_name TEXT,
    match_confidence TEXT,                  -- 'exact', 'high', 'medium', 'low'
    po_number TEXT,
    po_total INTEGER,                       -- Cents
    sales_order_id TEXT,
    sales_order_ref TEXT,
    sales_order_total INTEGER,              -- Cents
    estimate_id TEXT,
    estimate_ref TEXT,
    invoice_id TEXT,
    invoice_ref TEXT,
    invoice_total INTEGER,                  -- Cents
    status TEXT NOT NULL DEFAULT 'open',    -- 'open', 'resolved', 'dismissed'
    detected_at DATETIME NOT NULL,
    escalated_at DATETIME,
    resolved_at DATETIME,
    resolved_by TEXT,                       -- 'auto', 'manual'
    last_notified_at DATETIME,
    notification_count INTEGER NOT NULL DEFAULT 0
);

-- At most one open alert per thread; insert conflicts mean "already exists"
CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_open_thread_key
    ON alerts(thread_key) WHERE status = 'open';

CREATE INDEX IF NOT EXISTS idx_alerts_thread_key ON alerts(thread_key);
CREATE INDEX IF NOT EXISTS idx_alerts_status_type ON alerts(status, alert_type);
CREATE INDEX IF NOT EXISTS idx_alerts_sales_order ON alerts(sales_order_id);
"""

REQUIRED_TABLES = ["emails", "alerts"]


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file and parent directory if needed.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            cursor = await db.execute("PRAGMA journal_mode")
            mode = await cursor.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

        # Contact addresses are PII: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info("Database initialized", db_path=str(db_path), schema_version=SCHEMA_VERSION)

    except aiosqlite.Error as e:
        logger.error("Database initialization failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that all required tables exist.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("Schema verification failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("Missing database tables", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
