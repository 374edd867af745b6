"""Accounting-system projections used by matching and alerting.

Conductor returns QuickBooks Desktop records as camelCase JSON with money
as decimal strings ("5050.00"). These dataclasses keep only what matching
needs and hold every amount as integer cents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any


def parse_cents(value: Any) -> int | None:
    """Convert an API money value to integer cents.

    Args:
        value: Decimal string, int, float, Decimal, or None

    Returns:
        Amount in cents, or None if the value is missing or unparsable
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def dollars_to_cents(value: float | int | str | None) -> int | None:
    """Convert a dollar amount from an extractor (e.g. 5000.0) to cents."""
    return parse_cents(value)


def format_cents(cents: int | None) -> str:
    """Render cents as a dollar string for CLI output."""
    if cents is None:
        return "-"
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) // 100:,}.{abs(cents) % 100:02d}"


def _ref_id(ref: Any) -> str | None:
    if isinstance(ref, dict):
        return ref.get("id")
    return None


def _ref_name(ref: Any) -> str | None:
    if isinstance(ref, dict):
        return ref.get("fullName") or ref.get("name")
    return None


@dataclass(frozen=True)
class CustomerMatchCandidate:
    """Customer projection used by the matcher."""

    id: str
    name: str
    full_name: str
    company_name: str | None = None
    email: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> CustomerMatchCandidate:
        name = data.get("name") or data.get("fullName") or ""
        return cls(
            id=data["id"],
            name=name,
            full_name=data.get("fullName") or name,
            company_name=data.get("companyName") or None,
            email=data.get("email") or None,
        )

    @property
    def display_name(self) -> str:
        return self.full_name or self.name


@dataclass(frozen=True)
class LinkedTransaction:
    """A transaction an invoice was created from (usually a Sales Order)."""

    id: str
    transaction_type: str
    ref_number: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> LinkedTransaction:
        return cls(
            id=data.get("id", ""),
            transaction_type=data.get("transactionType", ""),
            ref_number=data.get("refNumber"),
        )

    @property
    def is_sales_order(self) -> bool:
        return self.transaction_type.replace("_", "").lower() == "salesorder"


@dataclass(frozen=True)
class SalesOrder:
    """A QuickBooks Sales Order, the confirmation record for an accepted PO."""

    id: str
    ref_number: str | None = None
    memo: str | None = None
    total: int | None = None
    customer_id: str | None = None
    customer_name: str | None = None
    transaction_date: str | None = None
    is_fully_invoiced: bool = False
    is_manually_closed: bool = False

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> SalesOrder:
        return cls(
            id=data["id"],
            ref_number=data.get("refNumber"),
            memo=data.get("memo"),
            total=parse_cents(data.get("totalAmount")),
            customer_id=_ref_id(data.get("customer")),
            customer_name=_ref_name(data.get("customer")),
            transaction_date=data.get("transactionDate"),
            is_fully_invoiced=bool(data.get("isFullyInvoiced", False)),
            is_manually_closed=bool(data.get("isManuallyClosed", False)),
        )

    @property
    def is_open(self) -> bool:
        return not self.is_fully_invoiced and not self.is_manually_closed


@dataclass(frozen=True)
class Estimate:
    """A QuickBooks Estimate (pre-confirmation quote)."""

    id: str
    ref_number: str | None = None
    memo: str | None = None
    total: int | None = None
    customer_id: str | None = None
    transaction_date: str | None = None
    is_active: bool = True

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Estimate:
        return cls(
            id=data["id"],
            ref_number=data.get("refNumber"),
            memo=data.get("memo"),
            total=parse_cents(data.get("totalAmount")),
            customer_id=_ref_id(data.get("customer")),
            transaction_date=data.get("transactionDate"),
            is_active=bool(data.get("isActive", True)),
        )


@dataclass(frozen=True)
class Invoice:
    """A QuickBooks Invoice."""

    id: str
    ref_number: str | None = None
    memo: str | None = None
    total: int | None = None
    balance_remaining: int | None = None
    customer_id: str | None = None
    transaction_date: str | None = None
    is_paid: bool = False
    linked_transactions: tuple[LinkedTransaction, ...] = ()

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Invoice:
        return cls(
            id=data["id"],
            ref_number=data.get("refNumber"),
            memo=data.get("memo"),
            total=parse_cents(data.get("totalAmount")),
            balance_remaining=parse_cents(data.get("balanceRemaining")),
            customer_id=_ref_id(data.get("customer")),
            transaction_date=data.get("transactionDate"),
            is_paid=bool(data.get("isPaid", False)),
            linked_transactions=tuple(
                LinkedTransaction.from_api(link)
                for link in data.get("linkedTransactions") or []
                if isinstance(link, dict)
            ),
        )

    @property
    def linked_sales_order_ids(self) -> list[str]:
        return [link.id for link in self.linked_transactions if link.is_sales_order and link.id]


@dataclass
class JobDocuments:
    """A customer's job documents.

    Sales Orders are the primary confirmation record; estimates are only a
    fallback signal when no order matches a PO.
    """

    customer_id: str
    customer_name: str = ""
    sales_orders: list[SalesOrder] = field(default_factory=list)
    invoices: list[Invoice] = field(default_factory=list)
    estimates: list[Estimate] = field(default_factory=list)
