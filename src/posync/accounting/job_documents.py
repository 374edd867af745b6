"""Document matching over a customer's job documents.

Traces the job lifecycle: PO received -> Sales Order exists? -> if not, a
matching Estimate? -> eventually invoiced?

Sales Orders are the primary confirmation record. Estimates are consulted
only when no Sales Order matches a PO and are never treated as confirmation.
All amounts are integer cents.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TypeVar

import regex

from posync.accounting.models import Estimate, Invoice, JobDocuments, SalesOrder
from posync.core.headers import REGEX_TIMEOUT
from posync.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_AMOUNT_TOLERANCE = 0.05

NON_ALNUM_PATTERN = regex.compile(r"[^a-z0-9]")

DocumentT = TypeVar("DocumentT", SalesOrder, Estimate)


def normalize_reference(value: str | None) -> str:
    """Lowercase alphanumeric form of a reference number or memo."""
    if not value:
        return ""
    return NON_ALNUM_PATTERN.sub("", value.lower(), timeout=REGEX_TIMEOUT)


def amounts_match(
    po_amount: int | None,
    document_amount: int | None,
    tolerance: float = DEFAULT_AMOUNT_TOLERANCE,
) -> bool:
    """Check whether a document total is within ``tolerance`` of a PO amount.

    The tolerance is relative to the PO amount. Missing or non-positive PO
    amounts never match.
    """
    if not po_amount or po_amount <= 0 or document_amount is None:
        return False
    return Decimal(abs(document_amount - po_amount)) <= Decimal(po_amount) * Decimal(
        str(tolerance)
    )


def reference_matches(po_number: str | None, *texts: str | None) -> bool:
    """Check whether the PO number appears in any of the texts (alphanumeric, case-insensitive)."""
    needle = normalize_reference(po_number)
    if not needle:
        return False
    return any(needle in normalize_reference(text) for text in texts)


def _find_matching(
    documents: Sequence[DocumentT],
    po_number: str | None,
    po_amount: int | None,
    tolerance: float,
) -> DocumentT | None:
    for document in documents:
        if reference_matches(po_number, document.ref_number, document.memo):
            return document
        if amounts_match(po_amount, document.total, tolerance):
            return document
    return None


def find_matching_sales_order(
    docs: JobDocuments,
    po_number: str | None = None,
    po_amount: int | None = None,
    tolerance: float = DEFAULT_AMOUNT_TOLERANCE,
) -> SalesOrder | None:
    """Find the first Sales Order matching a PO by reference or amount.

    Args:
        docs: Customer's job documents
        po_number: PO number from the email (e.g. "PO-4521")
        po_amount: PO total in cents
        tolerance: Relative amount tolerance

    Returns:
        The first qualifying order in document order, or None
    """
    return _find_matching(docs.sales_orders, po_number, po_amount, tolerance)


def find_matching_estimate(
    docs: JobDocuments,
    po_number: str | None = None,
    po_amount: int | None = None,
    tolerance: float = DEFAULT_AMOUNT_TOLERANCE,
) -> Estimate | None:
    """Fallback lookup used only when no Sales Order matches."""
    return _find_matching(docs.estimates, po_number, po_amount, tolerance)


def get_open_sales_orders(docs: JobDocuments) -> list[SalesOrder]:
    """Sales Orders that are neither fully invoiced nor manually closed."""
    return [so for so in docs.sales_orders if so.is_open]


def get_unpaid_invoices(docs: JobDocuments) -> list[Invoice]:
    return [inv for inv in docs.invoices if not inv.is_paid]


@dataclass
class JobDocumentsSummary:
    """Document counts for one customer."""

    total_sales_orders: int
    open_sales_orders: int
    total_invoices: int
    unpaid_invoices: int
    total_estimates: int


def get_job_documents_summary(docs: JobDocuments) -> JobDocumentsSummary:
    return JobDocumentsSummary(
        total_sales_orders=len(docs.sales_orders),
        open_sales_orders=len(get_open_sales_orders(docs)),
        total_invoices=len(docs.invoices),
        unpaid_invoices=len(get_unpaid_invoices(docs)),
        total_estimates=len(docs.estimates),
    )


@dataclass
class CloseableSalesOrder:
    """An open Sales Order whose invoices already cover its total."""

    sales_order: SalesOrder
    invoices: list[Invoice] = field(default_factory=list)
    invoiced_total: int = 0

    @property
    def invoice(self) -> Invoice:
        """The largest invoice against the order, reported in the alert."""
        return max(self.invoices, key=lambda inv: inv.total or 0)


def _invoices_for_order(
    sales_order: SalesOrder,
    invoices: Sequence[Invoice],
    tolerance: float,
) -> list[Invoice]:
    linked = [inv for inv in invoices if sales_order.id in inv.linked_sales_order_ids]
    if linked:
        return linked

    # Invoices created without a link: match on the order reference, then amount
    unlinked = [inv for inv in invoices if not inv.linked_sales_order_ids]
    by_reference = [
        inv
        for inv in unlinked
        if reference_matches(sales_order.ref_number, inv.ref_number, inv.memo)
    ]
    if by_reference:
        return by_reference
    return [inv for inv in unlinked if amounts_match(sales_order.total, inv.total, tolerance)][:1]


def find_closeable_sales_orders(
    docs: JobDocuments,
    tolerance: float = DEFAULT_AMOUNT_TOLERANCE,
) -> list[CloseableSalesOrder]:
    """Find open Sales Orders whose invoiced total meets or exceeds the order total.

    ``docs`` must be fetched with fully invoiced orders included so that
    invoices and orders can be paired.

    Args:
        docs: Customer's job documents
        tolerance: Relative tolerance for amount-based pairing of unlinked invoices

    Returns:
        One entry per closeable order, in document order
    """
    closeable: list[CloseableSalesOrder] = []
    for sales_order in get_open_sales_orders(docs):
        if not sales_order.total or sales_order.total <= 0:
            continue

        invoices = _invoices_for_order(sales_order, docs.invoices, tolerance)
        if not invoices:
            continue

        invoiced_total = sum(inv.total or 0 for inv in invoices)
        if invoiced_total >= sales_order.total:
            closeable.append(
                CloseableSalesOrder(
                    sales_order=sales_order,
                    invoices=invoices,
                    invoiced_total=invoiced_total,
                )
            )

    if closeable:
        logger.info(
            "closeable_sales_orders_found",
            customer_id=docs.customer_id,
            count=len(closeable),
        )
    return closeable
