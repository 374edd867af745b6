"""Database store with async CRUD operations for emails and alerts.

This module provides the DatabaseStore class that encapsulates all database
operations. It uses aiosqlite for async access and converts rows into
dataclasses.

Usage:
    from posync.db.store import DatabaseStore

    store = DatabaseStore("data/posync.db")
    await store.initialize()

    await store.save_emails_batch(records)
    alert = await store.create_alert(NewAlert(...))
    await store.resolve_alert(alert.id, resolved_by="auto")
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from posync.core.errors import DatabaseError
from posync.core.headers import SENT_MAILBOXES, normalize_subject, parse_recipients
from posync.core.logging import get_logger
from posync.db.models import init_database

logger = get_logger(__name__)

# SQLite's default host-parameter limit is 999; each id is bound up to twice per chunk
QUERY_CHUNK_SIZE = 200

AlertType = Literal[
    "po_detected",
    "po_detected_with_so",
    "po_missing_so",
    "no_qb_customer",
    "suspicious_po_email",
    "so_should_be_closed",
]
AlertStatus = Literal["open", "resolved", "dismissed"]
ResolvedBy = Literal["auto", "manual"]

ALERT_TYPES: tuple[AlertType, ...] = (
    "po_detected",
    "po_detected_with_so",
    "po_missing_so",
    "no_qb_customer",
    "suspicious_po_email",
    "so_should_be_closed",
)


@dataclass(frozen=True)
class EmailRecord:
    """A mailbox message as supplied by the mailbox-sync collaborator.

    Immutable: thread resolution and alerting only ever read these. Dates are
    normalized to UTC, with naive values taken as UTC.
    """

    id: str
    message_id: str | None = None
    in_reply_to: str | None = None
    references: str | None = None
    subject: str | None = None
    from_address: str | None = None
    from_name: str | None = None
    to_addresses: tuple[str, ...] = ()
    date: datetime | None = None
    mailbox: str = "INBOX"

    def __post_init__(self) -> None:
        if self.date is not None:
            object.__setattr__(self, "date", to_utc(self.date))

    @property
    def is_sent_folder(self) -> bool:
        return self.mailbox in SENT_MAILBOXES

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EmailRecord:
        """Build from exported JSON using either snake_case or camelCase keys."""

        def pick(*keys: str) -> Any:
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        raw_date = pick("date")
        return cls(
            id=str(data["id"]),
            message_id=pick("message_id", "messageId"),
            in_reply_to=pick("in_reply_to", "inReplyTo"),
            references=pick("references"),
            subject=pick("subject"),
            from_address=pick("from_address", "fromAddress"),
            from_name=pick("from_name", "fromName"),
            to_addresses=tuple(parse_recipients(pick("to_addresses", "toAddresses"))),
            date=datetime.fromisoformat(raw_date.replace("Z", "+00:00")) if raw_date else None,
            mailbox=pick("mailbox") or "INBOX",
        )


@dataclass
class NewAlert:
    """Fields supplied when an alert is first created."""

    alert_type: AlertType
    thread_key: str
    detected_at: datetime
    subject: str | None = None
    contact_email: str | None = None
    contact_name: str | None = None
    qb_customer_id: str | None = None
    qb_customer_name: str | None = None
    match_confidence: str | None = None
    po_number: str | None = None
    po_total: int | None = None
    sales_order_id: str | None = None
    sales_order_ref: str | None = None
    sales_order_total: int | None = None
    estimate_id: str | None = None
    estimate_ref: str | None = None
    invoice_id: str | None = None
    invoice_ref: str | None = None
    invoice_total: int | None = None


@dataclass
class Alert:
    """Alert record from the database. Monetary totals are in cents."""

    id: int
    alert_type: AlertType
    thread_key: str
    detected_at: datetime
    status: AlertStatus = "open"
    subject: str | None = None
    contact_email: str | None = None
    contact_name: str | None = None
    qb_customer_id: str | None = None
    qb_customer_name: str | None = None
    match_confidence: str | None = None
    po_number: str | None = None
    po_total: int | None = None
    sales_order_id: str | None = None
    sales_order_ref: str | None = None
    sales_order_total: int | None = None
    estimate_id: str | None = None
    estimate_ref: str | None = None
    invoice_id: str | None = None
    invoice_ref: str | None = None
    invoice_total: int | None = None
    escalated_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: ResolvedBy | None = None
    last_notified_at: datetime | None = None
    notification_count: int = 0


@dataclass
class AlertCounts:
    """Open alert counts per type."""

    total: int = 0
    by_type: dict[str, int] = field(default_factory=dict)


_NEW_ALERT_COLUMNS = (
    "alert_type",
    "thread_key",
    "detected_at",
    "subject",
    "contact_email",
    "contact_name",
    "qb_customer_id",
    "qb_customer_name",
    "match_confidence",
    "po_number",
    "po_total",
    "sales_order_id",
    "sales_order_ref",
    "sales_order_total",
    "estimate_id",
    "estimate_ref",
    "invoice_id",
    "invoice_ref",
    "invoice_total",
)


def to_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# Stored timestamps are always UTC, so ISO strings compare in time order
def _iso(value: datetime | None) -> str | None:
    return to_utc(value).isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return to_utc(datetime.fromisoformat(value)) if value else None


def _chunks(items: Sequence[str], size: int = QUERY_CHUNK_SIZE) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class DatabaseStore:
    """Database store for emails and alerts.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Usage:
            async with self._db() as db:
                await db.execute(...)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")
            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Email Operations
    # =========================================================================

    async def save_email(self, email: EmailRecord) -> None:
        """Save or replace a single email record.

        Raises:
            DatabaseError: If the operation fails
        """
        await self.save_emails_batch([email])

    async def save_emails_batch(self, emails: Sequence[EmailRecord]) -> int:
        """Save multiple emails in a single transaction.

        Args:
            emails: Records to upsert (keyed by id)

        Returns:
            Number of emails saved

        Raises:
            DatabaseError: If the operation fails
        """
        if not emails:
            return 0

        try:
            async with self._db() as db:
                await db.executemany(
                    """
                    INSERT INTO emails (
                        id, message_id, in_reply_to, references_header, subject,
                        normalized_subject, from_address, from_name, to_addresses,
                        date, mailbox
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        message_id = excluded.message_id,
                        in_reply_to = excluded.in_reply_to,
                        references_header = excluded.references_header,
                        subject = excluded.subject,
                        normalized_subject = excluded.normalized_subject,
                        from_address = excluded.from_address,
                        from_name = excluded.from_name,
                        to_addresses = excluded.to_addresses,
                        date = excluded.date,
                        mailbox = excluded.mailbox
                    """,
                    [
                        (
                            email.id,
                            email.message_id,
                            email.in_reply_to,
                            email.references,
                            email.subject,
                            normalize_subject(email.subject),
                            email.from_address,
                            email.from_name,
                            json.dumps(list(email.to_addresses)),
                            _iso(email.date),
                            email.mailbox,
                        )
                        for email in emails
                    ],
                )
                await db.commit()

            logger.debug("Batch saved emails", count=len(emails))
            return len(emails)

        except aiosqlite.Error as e:
            logger.error("Failed to batch save emails", count=len(emails), error=str(e))
            raise DatabaseError(f"Failed to batch save emails: {e}") from e

    async def get_email(self, email_id: str) -> EmailRecord | None:
        """Get an email by ID."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM emails WHERE id = ?", (email_id,))
                row = await cursor.fetchone()
                return self._row_to_email(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get email", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to get email {email_id}: {e}") from e

    async def get_emails_in_window(self, start: datetime, end: datetime) -> list[EmailRecord]:
        """Get all emails dated within [start, end], oldest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM emails
                    WHERE date >= ? AND date <= ?
                    ORDER BY date ASC, id ASC
                    """,
                    (_iso(start), _iso(end)),
                )
                rows = await cursor.fetchall()
                return [self._row_to_email(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get emails in window", error=str(e))
            raise DatabaseError(f"Failed to get emails in window: {e}") from e

    async def find_emails_by_header_ids(self, ids: Iterable[str]) -> list[EmailRecord]:
        """Find emails linked to any of the given message ids.

        An email matches when its Message-ID or In-Reply-To is one of the ids,
        or when its References header contains one of them.

        Args:
            ids: Message ids to look up

        Returns:
            Matching emails (deduplicated by primary key)
        """
        id_list = sorted({i for i in ids if i})
        if not id_list:
            return []

        found: dict[str, EmailRecord] = {}
        try:
            async with self._db() as db:
                for chunk in _chunks(id_list):
                    placeholders = ",".join("?" * len(chunk))
                    reference_clauses = " OR ".join(
                        "instr(references_header, ?) > 0" for _ in chunk
                    )
                    cursor = await db.execute(
                        f"""
                        SELECT * FROM emails
                        WHERE message_id IN ({placeholders})
                           OR in_reply_to IN ({placeholders})
                           OR (references_header IS NOT NULL AND ({reference_clauses}))
                        """,
                        [*chunk, *chunk, *chunk],
                    )
                    for row in await cursor.fetchall():
                        found[row["id"]] = self._row_to_email(row)

        except aiosqlite.Error as e:
            logger.error("Failed to find emails by header ids", count=len(id_list), error=str(e))
            raise DatabaseError(f"Failed to find emails by header ids: {e}") from e

        return list(found.values())

    async def find_emails_by_normalized_subjects(
        self, subjects: Iterable[str]
    ) -> list[EmailRecord]:
        """Find emails anywhere in the corpus whose normalized subject matches."""
        subject_list = sorted({s for s in subjects if s})
        if not subject_list:
            return []

        found: dict[str, EmailRecord] = {}
        try:
            async with self._db() as db:
                for chunk in _chunks(subject_list):
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await db.execute(
                        f"SELECT * FROM emails WHERE normalized_subject IN ({placeholders})",
                        list(chunk),
                    )
                    for row in await cursor.fetchall():
                        found[row["id"]] = self._row_to_email(row)

        except aiosqlite.Error as e:
            logger.error("Failed to find emails by subject", count=len(subject_list), error=str(e))
            raise DatabaseError(f"Failed to find emails by subject: {e}") from e

        return list(found.values())

    async def get_sent_recipient_lists(self) -> list[list[str]]:
        """Get the recipient list of every email in a sent folder."""
        try:
            async with self._db() as db:
                placeholders = ",".join("?" * len(SENT_MAILBOXES))
                cursor = await db.execute(
                    f"SELECT to_addresses FROM emails WHERE mailbox IN ({placeholders})",
                    sorted(SENT_MAILBOXES),
                )
                rows = await cursor.fetchall()
                return [parse_recipients(row["to_addresses"]) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get sent recipients", error=str(e))
            raise DatabaseError(f"Failed to get sent recipients: {e}") from e

    def _row_to_email(self, row: aiosqlite.Row) -> EmailRecord:
        """Convert a database row to an EmailRecord."""
        return EmailRecord(
            id=row["id"],
            message_id=row["message_id"],
            in_reply_to=row["in_reply_to"],
            references=row["references_header"],
            subject=row["subject"],
            from_address=row["from_address"],
            from_name=row["from_name"],
            to_addresses=tuple(parse_recipients(row["to_addresses"])),
            date=_parse_dt(row["date"]),
            mailbox=row["mailbox"],
        )

    # =========================================================================
    # Alert Operations
    # =========================================================================

    async def create_alert(self, alert: NewAlert) -> Alert | None:
        """Insert a new open alert.

        The partial unique index on open thread keys turns a concurrent
        duplicate insert into a no-op.

        Args:
            alert: Fields for the new alert

        Returns:
            The stored Alert, or None if an open alert already exists for the thread

        Raises:
            DatabaseError: If the insert fails for any other reason
        """
        values = [getattr(alert, column) for column in _NEW_ALERT_COLUMNS]
        values[2] = _iso(alert.detected_at)
        placeholders = ",".join("?" * len(_NEW_ALERT_COLUMNS))

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"INSERT INTO alerts ({', '.join(_NEW_ALERT_COLUMNS)}, status) "
                    f"VALUES ({placeholders}, 'open')",
                    values,
                )
                await db.commit()
                alert_id = cursor.lastrowid

        except aiosqlite.IntegrityError:
            logger.info(
                "alert_already_open",
                thread_key=alert.thread_key[:40],
                alert_type=alert.alert_type,
            )
            return None
        except aiosqlite.Error as e:
            logger.error("Failed to create alert", thread_key=alert.thread_key[:40], error=str(e))
            raise DatabaseError(f"Failed to create alert: {e}") from e

        return await self.get_alert(alert_id)

    async def get_alert(self, alert_id: int) -> Alert | None:
        """Get an alert by ID."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,))
                row = await cursor.fetchone()
                return self._row_to_alert(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get alert", alert_id=alert_id, error=str(e))
            raise DatabaseError(f"Failed to get alert {alert_id}: {e}") from e

    async def get_alerted_thread_keys(self, thread_keys: Iterable[str]) -> set[str]:
        """Return the subset of thread keys that already have an alert (any status)."""
        keys = sorted(set(thread_keys))
        if not keys:
            return set()

        existing: set[str] = set()
        try:
            async with self._db() as db:
                for chunk in _chunks(keys):
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await db.execute(
                        f"SELECT DISTINCT thread_key FROM alerts WHERE thread_key IN ({placeholders})",
                        list(chunk),
                    )
                    existing.update(row["thread_key"] for row in await cursor.fetchall())

        except aiosqlite.Error as e:
            logger.error("Failed to check existing alerts", count=len(keys), error=str(e))
            raise DatabaseError(f"Failed to check existing alerts: {e}") from e

        return existing

    async def get_alerts(
        self,
        status: AlertStatus | None = None,
        alert_types: Sequence[AlertType] | None = None,
    ) -> list[Alert]:
        """List alerts, optionally filtered by status and type, oldest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if alert_types:
            clauses.append(f"alert_type IN ({','.join('?' * len(alert_types))})")
            params.extend(alert_types)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"SELECT * FROM alerts {where} ORDER BY detected_at ASC, id ASC",
                    params,
                )
                rows = await cursor.fetchall()
                return [self._row_to_alert(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list alerts", status=status, error=str(e))
            raise DatabaseError(f"Failed to list alerts: {e}") from e

    async def get_open_alerts(self, alert_types: Sequence[AlertType] | None = None) -> list[Alert]:
        """List open alerts, optionally restricted to some types."""
        return await self.get_alerts(status="open", alert_types=alert_types)

    async def get_unescalated_po_alerts(self) -> list[Alert]:
        """Open po_detected alerts that have never been escalated."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM alerts
                    WHERE alert_type = 'po_detected'
                      AND status = 'open'
                      AND escalated_at IS NULL
                    ORDER BY detected_at ASC, id ASC
                    """
                )
                rows = await cursor.fetchall()
                return [self._row_to_alert(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get escalation candidates", error=str(e))
            raise DatabaseError(f"Failed to get escalation candidates: {e}") from e

    async def get_actionable_alerts(self) -> list[Alert]:
        """Open alerts that have never been included in a notification."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM alerts
                    WHERE status = 'open' AND last_notified_at IS NULL
                    ORDER BY detected_at ASC, id ASC
                    """
                )
                rows = await cursor.fetchall()
                return [self._row_to_alert(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get actionable alerts", error=str(e))
            raise DatabaseError(f"Failed to get actionable alerts: {e}") from e

    async def count_open_alerts(self) -> AlertCounts:
        """Count open alerts grouped by type."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT alert_type, COUNT(*) AS n FROM alerts
                    WHERE status = 'open'
                    GROUP BY alert_type
                    """
                )
                by_type = {row["alert_type"]: row["n"] for row in await cursor.fetchall()}

        except aiosqlite.Error as e:
            logger.error("Failed to count open alerts", error=str(e))
            raise DatabaseError(f"Failed to count open alerts: {e}") from e

        return AlertCounts(total=sum(by_type.values()), by_type=by_type)

    async def so_should_be_closed_exists(self, sales_order_id: str) -> bool:
        """Check whether a so_should_be_closed alert was ever raised for an order."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT 1 FROM alerts
                    WHERE alert_type = 'so_should_be_closed' AND sales_order_id = ?
                    LIMIT 1
                    """,
                    (sales_order_id,),
                )
                return await cursor.fetchone() is not None

        except aiosqlite.Error as e:
            logger.error("Failed to check SO alert", sales_order_id=sales_order_id, error=str(e))
            raise DatabaseError(f"Failed to check SO alert: {e}") from e

    async def escalate_alert(self, alert_id: int, escalated_at: datetime) -> Alert | None:
        """Escalate po_detected to po_missing_so (idempotent).

        Only an open, never-escalated po_detected alert is changed, so
        escalated_at is written at most once.

        Returns:
            The updated Alert, or None if the alert was not eligible
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE alerts
                    SET alert_type = 'po_missing_so',
                        escalated_at = ?
                    WHERE id = ?
                      AND status = 'open'
                      AND alert_type = 'po_detected'
                      AND escalated_at IS NULL
                    """,
                    (_iso(escalated_at), alert_id),
                )
                await db.commit()
                changed = cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to escalate alert", alert_id=alert_id, error=str(e))
            raise DatabaseError(f"Failed to escalate alert {alert_id}: {e}") from e

        return await self.get_alert(alert_id) if changed else None

    async def resolve_alert(
        self,
        alert_id: int,
        resolved_by: ResolvedBy,
        resolved_at: datetime | None = None,
    ) -> bool:
        """Resolve an open alert (idempotent).

        Returns:
            True if the alert was actually resolved, False if it was not open
        """
        return await self._close_alert(alert_id, "resolved", resolved_by, resolved_at)

    async def dismiss_alert(self, alert_id: int, dismissed_at: datetime | None = None) -> bool:
        """Dismiss an open alert by hand (idempotent).

        Returns:
            True if the alert was actually dismissed, False if it was not open
        """
        return await self._close_alert(alert_id, "dismissed", "manual", dismissed_at)

    async def _close_alert(
        self,
        alert_id: int,
        status: AlertStatus,
        resolved_by: ResolvedBy,
        closed_at: datetime | None,
    ) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE alerts
                    SET status = ?,
                        resolved_at = ?,
                        resolved_by = ?
                    WHERE id = ? AND status = 'open'
                    """,
                    (status, _iso(closed_at or datetime.now(UTC)), resolved_by, alert_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to close alert", alert_id=alert_id, status=status, error=str(e))
            raise DatabaseError(f"Failed to set alert {alert_id} to {status}: {e}") from e

    async def mark_alerts_notified(
        self, alert_ids: Sequence[int], notified_at: datetime | None = None
    ) -> int:
        """Record that alerts were included in a notification.

        Returns:
            Number of alerts updated
        """
        if not alert_ids:
            return 0

        try:
            async with self._db() as db:
                placeholders = ",".join("?" * len(alert_ids))
                cursor = await db.execute(
                    f"""
                    UPDATE alerts
                    SET last_notified_at = ?,
                        notification_count = notification_count + 1
                    WHERE id IN ({placeholders})
                    """,
                    [_iso(notified_at or datetime.now(UTC)), *alert_ids],
                )
                await db.commit()
                return cursor.rowcount

        except aiosqlite.Error as e:
            logger.error("Failed to mark alerts notified", count=len(alert_ids), error=str(e))
            raise DatabaseError(f"Failed to mark alerts notified: {e}") from e

    def _row_to_alert(self, row: aiosqlite.Row) -> Alert:
        """Convert a database row to an Alert dataclass."""
        return Alert(
            id=row["id"],
            alert_type=row["alert_type"],
            thread_key=row["thread_key"],
            detected_at=to_utc(datetime.fromisoformat(row["detected_at"])),
            status=row["status"],
            subject=row["subject"],
            contact_email=row["contact_email"],
            contact_name=row["contact_name"],
            qb_customer_id=row["qb_customer_id"],
            qb_customer_name=row["qb_customer_name"],
            match_confidence=row["match_confidence"],
            po_number=row["po_number"],
            po_total=row["po_total"],
            sales_order_id=row["sales_order_id"],
            sales_order_ref=row["sales_order_ref"],
            sales_order_total=row["sales_order_total"],
            estimate_id=row["estimate_id"],
            estimate_ref=row["estimate_ref"],
            invoice_id=row["invoice_id"],
            invoice_ref=row["invoice_ref"],
            invoice_total=row["invoice_total"],
            escalated_at=_parse_dt(row["escalated_at"]),
            resolved_at=_parse_dt(row["resolved_at"]),
            resolved_by=row["resolved_by"],
            last_notified_at=_parse_dt(row["last_notified_at"]),
            notification_count=row["notification_count"],
        )
