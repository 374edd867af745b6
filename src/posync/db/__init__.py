"""Database layer for PO sync alerts.

This module provides SQLite database access with async operations.

Usage:
    from posync.db import DatabaseStore, EmailRecord, NewAlert

    store = DatabaseStore("data/posync.db")
    await store.initialize()

    # Save synced emails
    await store.save_emails_batch([EmailRecord(id="INBOX:1", subject="PO 4521")])

    # Create an alert (None if one is already open for the thread)
    alert = await store.create_alert(
        NewAlert(alert_type="po_detected", thread_key="<m1@x>", detected_at=now)
    )
"""

from posync.db.models import SCHEMA_VERSION, init_database, verify_schema
from posync.db.store import (
    ALERT_TYPES,
    Alert,
    AlertCounts,
    AlertStatus,
    AlertType,
    DatabaseStore,
    EmailRecord,
    NewAlert,
    ResolvedBy,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    # Dataclasses
    "EmailRecord",
    "NewAlert",
    "Alert",
    "AlertCounts",
    # Literals
    "ALERT_TYPES",
    "AlertType",
    "AlertStatus",
    "ResolvedBy",
]
