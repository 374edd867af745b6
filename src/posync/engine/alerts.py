"""Alert lifecycle manager for received purchase orders.

Tracks whether every PO we receive has a matching Sales Order:

Stage 1 (every cycle): new PO threads become po_detected,
    po_detected_with_so, no_qb_customer or suspicious_po_email alerts.
Stage 2 (every cycle): po_detected alerts older than the escalation window
    are resolved if a Sales Order appeared, otherwise escalated to
    po_missing_so.
Auto-resolution: open PO alerts are resolved once a Sales Order exists and
    no_qb_customer alerts once the contact matches a customer.
Invoice/SO integrity: open Sales Orders that are already fully covered by
    invoices raise so_should_be_closed.

Status transitions are monotonic (open -> resolved | dismissed). Every
transition is a conditional update in the store, so re-running any phase is
harmless.

Usage:
    from posync.engine.alerts import AlertManager

    manager = AlertManager(store, gateway, config=config.alerts)
    result = await manager.run_full_alert_check(po_threads)
    print(len(result.new_alerts), len(result.escalated), len(result.resolved))
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from posync.accounting.customer_matcher import CustomerMatcher
from posync.accounting.job_documents import (
    find_closeable_sales_orders,
    find_matching_estimate,
    find_matching_sales_order,
)
from posync.accounting.models import JobDocuments, dollars_to_cents
from posync.config_schema import AlertsConfig
from posync.core.errors import AccountingAPIError
from posync.core.logging import get_logger, set_correlation_id, truncate_pii
from posync.db.store import ALERT_TYPES, Alert, AlertType, NewAlert, to_utc

if TYPE_CHECKING:
    from posync.accounting.gateway import AccountingGateway
    from posync.db.store import DatabaseStore

logger = get_logger(__name__)

Clock = Callable[[], datetime]

SO_THREAD_KEY_PREFIX = "so_"


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class PoDetails:
    """PO fields extracted upstream. ``total`` is in dollars as extracted."""

    po_number: str | None = None
    total: float | None = None

    @property
    def total_cents(self) -> int | None:
        return dollars_to_cents(self.total)


@dataclass(frozen=True)
class CategorizedThread:
    """A thread as delivered by the categorization collaborator."""

    thread_key: str
    subject: str | None = None
    category: str | None = None
    item_type: str | None = None
    contact_email: str | None = None
    contact_name: str | None = None
    po_details: PoDetails | None = None
    is_suspicious: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CategorizedThread:
        """Build from JSON using either snake_case or camelCase keys."""

        def pick(*keys: str) -> Any:
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        raw_po = pick("po_details", "poDetails")
        po_details = None
        if isinstance(raw_po, dict):
            po_details = PoDetails(
                po_number=raw_po.get("po_number") or raw_po.get("poNumber"),
                total=raw_po.get("total"),
            )

        thread_key = pick("thread_key", "threadKey")
        if not thread_key:
            raise ValueError("Thread is missing thread_key")

        return cls(
            thread_key=thread_key,
            subject=pick("subject"),
            category=pick("category"),
            item_type=pick("item_type", "itemType"),
            contact_email=pick("contact_email", "contactEmail"),
            contact_name=pick("contact_name", "contactName"),
            po_details=po_details,
            is_suspicious=bool(pick("is_suspicious", "isSuspicious")),
        )


@dataclass
class EscalationResult:
    """Outcome of a Stage 2 pass."""

    escalated: list[Alert] = field(default_factory=list)
    resolved: list[Alert] = field(default_factory=list)
    verified: bool = True


@dataclass
class AlertCycleResult:
    """Result of a full alert cycle.

    Phase errors are collected rather than raised so that partial progress
    is always reported.
    """

    cycle_id: str
    new_alerts: list[Alert] = field(default_factory=list)
    escalated: list[Alert] = field(default_factory=list)
    resolved: list[Alert] = field(default_factory=list)
    so_should_be_closed: list[Alert] = field(default_factory=list)
    open_alerts: list[Alert] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    degraded_mode: bool = False
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return not self.errors


class AlertManager:
    """Owns the alert lifecycle for one batch cycle.

    Attributes:
        _store: DatabaseStore for alert persistence
        _gateway: Accounting gateway (may be the unavailable null object)
        _matcher: Customer matcher owning the customer cache
        _config: Escalation and tolerance settings
        _clock: Returns the current time; injectable for tests
    """

    def __init__(
        self,
        store: DatabaseStore,
        gateway: AccountingGateway,
        matcher: CustomerMatcher | None = None,
        config: AlertsConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._matcher = matcher or CustomerMatcher(gateway)
        self._config = config or AlertsConfig()
        self._clock = clock or _utc_now

    @property
    def matcher(self) -> CustomerMatcher:
        return self._matcher

    def update_config(self, config: AlertsConfig) -> None:
        """Swap in reloaded settings between cycles."""
        self._config = config

    @property
    def escalation_window(self) -> timedelta:
        return timedelta(hours=self._config.escalation_hours)

    # =========================================================================
    # Stage 1
    # =========================================================================

    async def analyze_new_po_emails(self, threads: Sequence[CategorizedThread]) -> list[Alert]:
        """Create alerts for PO threads that have never been alerted on.

        A failure analyzing one thread is logged and does not stop the rest.

        Args:
            threads: PO-received threads, already trust-filtered

        Returns:
            Alerts created in this call
        """
        if not threads:
            return []

        existing = await self._store.get_alerted_thread_keys(t.thread_key for t in threads)
        created: list[Alert] = []

        for thread in threads:
            if thread.thread_key in existing:
                logger.debug("alert_exists_for_thread", thread_key=thread.thread_key[:40])
                continue

            try:
                alert = await self._analyze_thread(thread)
            except Exception as e:
                logger.warning(
                    "po_thread_analysis_failed",
                    thread_key=thread.thread_key[:40],
                    error=str(e),
                )
                continue

            existing.add(thread.thread_key)
            if alert is not None:
                created.append(alert)
                logger.info(
                    "alert_created",
                    alert_id=alert.id,
                    alert_type=alert.alert_type,
                    contact=truncate_pii(alert.contact_email),
                    sales_order_ref=alert.sales_order_ref,
                    estimate_ref=alert.estimate_ref,
                )

        return created

    async def _analyze_thread(self, thread: CategorizedThread) -> Alert | None:
        base = NewAlert(
            alert_type="po_detected",
            thread_key=thread.thread_key,
            detected_at=self._clock(),
            subject=thread.subject,
            contact_email=thread.contact_email,
            contact_name=thread.contact_name,
        )

        if thread.is_suspicious or not thread.contact_email:
            return await self._store.create_alert(replace(base, alert_type="suspicious_po_email"))

        po = thread.po_details or PoDetails()
        base = replace(base, po_number=po.po_number, po_total=po.total_cents)

        if not self._gateway.available:
            return await self._store.create_alert(base)

        try:
            match = await self._matcher.match(thread.contact_email, thread.contact_name)
        except AccountingAPIError as e:
            logger.warning("customer_match_unavailable", error=str(e))
            return await self._store.create_alert(base)

        if match is None:
            return await self._store.create_alert(replace(base, alert_type="no_qb_customer"))

        base = replace(
            base,
            qb_customer_id=match.customer_id,
            qb_customer_name=match.customer_name,
            match_confidence=match.confidence,
        )

        try:
            docs = await self._gateway.get_job_documents(match.customer_id)
        except AccountingAPIError as e:
            logger.warning(
                "job_documents_unavailable",
                customer_id=match.customer_id,
                error=str(e),
            )
            return await self._store.create_alert(base)

        sales_order = find_matching_sales_order(
            docs, po.po_number, po.total_cents, self._config.amount_tolerance
        )
        if sales_order is not None:
            return await self._store.create_alert(
                replace(
                    base,
                    alert_type="po_detected_with_so",
                    sales_order_id=sales_order.id,
                    sales_order_ref=sales_order.ref_number,
                    sales_order_total=sales_order.total,
                )
            )

        estimate = find_matching_estimate(
            docs, po.po_number, po.total_cents, self._config.amount_tolerance
        )
        if estimate is not None:
            base = replace(base, estimate_id=estimate.id, estimate_ref=estimate.ref_number)

        return await self._store.create_alert(base)

    # =========================================================================
    # Stage 2
    # =========================================================================

    def _is_due_for_escalation(self, alert: Alert, now: datetime) -> bool:
        return to_utc(now) - alert.detected_at >= self.escalation_window

    async def check_escalations(self) -> EscalationResult:
        """Escalate po_detected alerts that are past the escalation window.

        Documents are fetched once per distinct customer. If the accounting
        system cannot be reached, every due alert is escalated without
        re-checking for a Sales Order.
        """
        now = self._clock()
        candidates = [
            alert
            for alert in await self._store.get_unescalated_po_alerts()
            if self._is_due_for_escalation(alert, now)
        ]
        result = EscalationResult()
        if not candidates:
            return result

        logger.info("escalation_candidates", count=len(candidates))

        if not self._gateway.available:
            logger.warning("escalating_without_verification", count=len(candidates))
            result.verified = False
            docs_by_customer: dict[str, JobDocuments] = {}
        else:
            docs_by_customer = await self._fetch_documents(
                {a.qb_customer_id for a in candidates if a.qb_customer_id}
            )

        for alert in candidates:
            docs = docs_by_customer.get(alert.qb_customer_id) if alert.qb_customer_id else None
            if docs is not None and find_matching_sales_order(
                docs, alert.po_number, alert.po_total, self._config.amount_tolerance
            ):
                if await self._store.resolve_alert(alert.id, "auto", now):
                    result.resolved.append(_resolved_copy(alert, now))
                    logger.info("alert_resolved_before_escalation", alert_id=alert.id)
                continue

            escalated = await self._store.escalate_alert(alert.id, now)
            if escalated is not None:
                result.escalated.append(escalated)
                logger.info(
                    "alert_escalated",
                    alert_id=alert.id,
                    hours=self._config.escalation_hours,
                    verified=docs is not None,
                )

        return result

    # =========================================================================
    # Auto-resolution
    # =========================================================================

    async def check_and_resolve_alerts(self) -> list[Alert]:
        """Resolve open alerts whose condition has since been satisfied.

        po_detected / po_missing_so resolve once a matching Sales Order
        exists; no_qb_customer resolves once the contact matches a customer.
        """
        if not self._gateway.available:
            logger.info("auto_resolution_skipped", reason="accounting unavailable")
            return []

        now = self._clock()
        resolved: list[Alert] = []

        po_alerts = [
            a
            for a in await self._store.get_open_alerts(["po_detected", "po_missing_so"])
            if a.qb_customer_id
        ]
        if po_alerts:
            docs_by_customer = await self._fetch_documents({a.qb_customer_id for a in po_alerts})
            for alert in po_alerts:
                docs = docs_by_customer.get(alert.qb_customer_id)
                if docs is None:
                    continue
                sales_order = find_matching_sales_order(
                    docs, alert.po_number, alert.po_total, self._config.amount_tolerance
                )
                if sales_order and await self._store.resolve_alert(alert.id, "auto", now):
                    resolved.append(_resolved_copy(alert, now))
                    logger.info(
                        "alert_auto_resolved",
                        alert_id=alert.id,
                        sales_order_ref=sales_order.ref_number,
                    )

        no_customer_alerts = [
            a for a in await self._store.get_open_alerts(["no_qb_customer"]) if a.contact_email
        ]
        if no_customer_alerts:
            try:
                await self._matcher.refresh_cache()
            except AccountingAPIError as e:
                logger.warning("customer_cache_refresh_failed", error=str(e))
                return resolved

            for alert in no_customer_alerts:
                match = await self._matcher.match(alert.contact_email, alert.contact_name)
                if match and await self._store.resolve_alert(alert.id, "auto", now):
                    resolved.append(_resolved_copy(alert, now))
                    logger.info(
                        "alert_auto_resolved",
                        alert_id=alert.id,
                        customer_id=match.customer_id,
                    )

        return resolved

    # =========================================================================
    # Invoice / Sales Order integrity
    # =========================================================================

    async def check_invoice_so_mismatch(self) -> list[Alert]:
        """Raise so_should_be_closed for open orders already covered by invoices.

        Looks only at customers with an open po_detected_with_so alert. Each
        Sales Order is reported at most once, ever.
        """
        if not self._gateway.available:
            return []

        customer_ids = {
            a.qb_customer_id
            for a in await self._store.get_open_alerts(["po_detected_with_so"])
            if a.qb_customer_id
        }
        if not customer_ids:
            return []

        docs_by_customer = await self._fetch_documents(customer_ids, include_fully_invoiced=True)
        created: list[Alert] = []

        for customer_id in sorted(docs_by_customer):
            docs = docs_by_customer[customer_id]
            for closeable in find_closeable_sales_orders(docs, self._config.amount_tolerance):
                sales_order = closeable.sales_order
                if await self._store.so_should_be_closed_exists(sales_order.id):
                    continue

                invoice = closeable.invoice
                alert = await self._store.create_alert(
                    NewAlert(
                        alert_type="so_should_be_closed",
                        thread_key=f"{SO_THREAD_KEY_PREFIX}{sales_order.id}",
                        detected_at=self._clock(),
                        subject=f"SO {sales_order.ref_number or sales_order.id} should be closed",
                        qb_customer_id=customer_id,
                        qb_customer_name=docs.customer_name,
                        sales_order_id=sales_order.id,
                        sales_order_ref=sales_order.ref_number,
                        sales_order_total=sales_order.total,
                        invoice_id=invoice.id,
                        invoice_ref=invoice.ref_number,
                        invoice_total=closeable.invoiced_total,
                    )
                )
                if alert is not None:
                    created.append(alert)
                    logger.info(
                        "alert_created",
                        alert_id=alert.id,
                        alert_type=alert.alert_type,
                        sales_order_ref=sales_order.ref_number,
                        invoice_ref=invoice.ref_number,
                    )

        return created

    async def _fetch_documents(
        self,
        customer_ids: Iterable[str],
        include_fully_invoiced: bool = False,
    ) -> dict[str, JobDocuments]:
        """Fetch job documents for several customers concurrently.

        Customers whose fetch fails with an accounting error are left out of
        the result; callers treat them as unverifiable.
        """
        ids = sorted(set(customer_ids))
        if not ids:
            return {}

        results = await asyncio.gather(
            *(
                self._gateway.get_job_documents(
                    customer_id, include_fully_invoiced=include_fully_invoiced
                )
                for customer_id in ids
            ),
            return_exceptions=True,
        )

        documents: dict[str, JobDocuments] = {}
        for customer_id, result in zip(ids, results, strict=True):
            if isinstance(result, AccountingAPIError):
                logger.warning("job_documents_unavailable", customer_id=customer_id, error=str(result))
            elif isinstance(result, BaseException):
                raise result
            else:
                documents[customer_id] = result
        return documents

    # =========================================================================
    # Queries and manual operations
    # =========================================================================

    async def dismiss_alert(self, alert_id: int) -> bool:
        """Dismiss an open alert by hand.

        Returns:
            True if the alert was open and is now dismissed
        """
        dismissed = await self._store.dismiss_alert(alert_id, self._clock())
        if dismissed:
            logger.info("alert_dismissed", alert_id=alert_id)
        else:
            logger.info("alert_dismiss_ignored", alert_id=alert_id, reason="not open")
        return dismissed

    async def get_open_alerts(self) -> list[Alert]:
        return await self._store.get_open_alerts()

    async def get_open_alerts_summary(self) -> dict[AlertType, list[Alert]]:
        """Open alerts grouped by type (every type present, possibly empty)."""
        summary: dict[AlertType, list[Alert]] = {alert_type: [] for alert_type in ALERT_TYPES}
        for alert in await self._store.get_open_alerts():
            summary.setdefault(alert.alert_type, []).append(alert)
        return summary

    async def get_actionable_alerts(self) -> list[Alert]:
        """Open alerts never included in a notification."""
        return await self._store.get_actionable_alerts()

    async def mark_alerts_notified(self, alert_ids: Sequence[int]) -> int:
        return await self._store.mark_alerts_notified(alert_ids, self._clock())

    # =========================================================================
    # Full cycle
    # =========================================================================

    async def run_full_alert_check(
        self, po_threads: Sequence[CategorizedThread]
    ) -> AlertCycleResult:
        """Run every phase, tolerating failure of any single phase.

        Steps:
        1. Stage 1 analysis of new PO threads
        2. Stage 2 escalation
        3. Auto-resolution
        4. Invoice / Sales Order integrity check
        5. Collect all open alerts for notification

        Returns:
            AlertCycleResult with per-phase results and any phase errors
        """
        cycle_id = str(uuid.uuid4())
        set_correlation_id(cycle_id)
        start_time = time.monotonic()
        result = AlertCycleResult(cycle_id=cycle_id, degraded_mode=not self._gateway.available)

        logger.info(
            "alert_cycle_start",
            threads=len(po_threads),
            degraded_mode=result.degraded_mode,
        )

        try:
            try:
                result.new_alerts = await self.analyze_new_po_emails(po_threads)
            except Exception as e:
                logger.error("alert_phase_failed", phase="analyze", error=str(e))
                result.errors.append(f"analyze: {e}")

            try:
                escalation = await self.check_escalations()
                result.escalated = escalation.escalated
                result.resolved.extend(escalation.resolved)
            except Exception as e:
                logger.error("alert_phase_failed", phase="escalate", error=str(e))
                result.errors.append(f"escalate: {e}")

            try:
                result.resolved.extend(await self.check_and_resolve_alerts())
            except Exception as e:
                logger.error("alert_phase_failed", phase="resolve", error=str(e))
                result.errors.append(f"resolve: {e}")

            try:
                result.so_should_be_closed = await self.check_invoice_so_mismatch()
            except Exception as e:
                logger.error("alert_phase_failed", phase="invoice_so", error=str(e))
                result.errors.append(f"invoice_so: {e}")

            try:
                result.open_alerts = await self.get_open_alerts()
            except Exception as e:
                logger.error("alert_phase_failed", phase="open_alerts", error=str(e))
                result.errors.append(f"open_alerts: {e}")

            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "alert_cycle_complete",
                duration_ms=result.duration_ms,
                new_alerts=len(result.new_alerts),
                escalated=len(result.escalated),
                resolved=len(result.resolved),
                so_should_be_closed=len(result.so_should_be_closed),
                open_alerts=len(result.open_alerts),
                errors=len(result.errors),
            )
            return result
        finally:
            set_correlation_id(None)


def _resolved_copy(alert: Alert, resolved_at: datetime) -> Alert:
    return replace(alert, status="resolved", resolved_by="auto", resolved_at=resolved_at)
