"""Async accounting capability used by the matcher and the alert manager.

Two implementations:
- ConductorGateway: wraps the synchronous ConductorClient, running each
  call in a worker thread and fetching a customer's document types together.
- UnavailableGateway: null object used when no credentials are configured.
  It reports ``available = False`` and raises AccountingUnavailableError
  from every call, so degraded behavior is an ordinary, testable branch.

Usage:
    from posync.accounting.gateway import build_gateway

    gateway = build_gateway(config.accounting)
    if gateway.available:
        docs = await gateway.get_job_documents(customer_id)
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Protocol, runtime_checkable

from posync.accounting.client import ConductorClient
from posync.accounting.models import CustomerMatchCandidate, JobDocuments
from posync.config_schema import AccountingConfig
from posync.core.errors import AccountingUnavailableError
from posync.core.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class AccountingGateway(Protocol):
    """What the core needs from the accounting system."""

    @property
    def available(self) -> bool: ...

    async def list_customers(self) -> list[CustomerMatchCandidate]: ...

    async def get_job_documents(
        self,
        customer_id: str,
        since: datetime | None = None,
        include_fully_invoiced: bool = False,
        include_paid_invoices: bool = True,
    ) -> JobDocuments: ...


class ConductorGateway:
    """Accounting gateway backed by Conductor."""

    def __init__(self, client: ConductorClient):
        self.client = client

    @property
    def available(self) -> bool:
        return True

    async def list_customers(self) -> list[CustomerMatchCandidate]:
        customers = await asyncio.to_thread(self.client.get_customer_list_for_matching)
        logger.info("customers_fetched", count=len(customers))
        return customers

    async def get_job_documents(
        self,
        customer_id: str,
        since: datetime | None = None,
        include_fully_invoiced: bool = False,
        include_paid_invoices: bool = True,
    ) -> JobDocuments:
        """Fetch a customer's sales orders, invoices and estimates together.

        Args:
            customer_id: QuickBooks customer ID
            since: Only documents updated after this time
            include_fully_invoiced: Keep fully invoiced sales orders
            include_paid_invoices: Keep paid invoices

        Raises:
            AccountingAPIError: If any of the fetches fails
        """
        updated_after = since.isoformat() if since else None

        sales_orders, invoices, estimates, customer = await asyncio.gather(
            asyncio.to_thread(
                self.client.get_sales_orders_for_customer,
                customer_id,
                updated_after,
                include_fully_invoiced,
            ),
            asyncio.to_thread(
                self.client.get_invoices_for_customer,
                customer_id,
                updated_after,
                not include_paid_invoices,
            ),
            asyncio.to_thread(self.client.get_estimates_for_customer, customer_id, updated_after),
            asyncio.to_thread(self.client.get_customer, customer_id),
        )

        logger.debug(
            "job_documents_fetched",
            customer_id=customer_id,
            sales_orders=len(sales_orders),
            invoices=len(invoices),
            estimates=len(estimates),
        )
        return JobDocuments(
            customer_id=customer_id,
            customer_name=customer.get("fullName") or customer.get("name") or "",
            sales_orders=sales_orders,
            invoices=invoices,
            estimates=estimates,
        )


class UnavailableGateway:
    """Null-object gateway for running without an accounting connection."""

    def __init__(self, reason: str = "Accounting system is not configured"):
        self.reason = reason

    @property
    def available(self) -> bool:
        return False

    async def list_customers(self) -> list[CustomerMatchCandidate]:
        raise AccountingUnavailableError(self.reason)

    async def get_job_documents(
        self,
        customer_id: str,
        since: datetime | None = None,
        include_fully_invoiced: bool = False,
        include_paid_invoices: bool = True,
    ) -> JobDocuments:
        raise AccountingUnavailableError(self.reason)


def build_gateway(config: AccountingConfig) -> AccountingGateway:
    """Create the gateway for the configured credentials.

    Returns:
        ConductorGateway when credentials are set, otherwise UnavailableGateway
    """
    if not config.is_configured:
        logger.warning(
            "accounting_not_configured",
            hint="Set CONDUCTOR_API_KEY and CONDUCTOR_END_USER_ID to enable matching",
        )
        return UnavailableGateway()

    client = ConductorClient(
        api_key=config.api_key,
        end_user_id=config.end_user_id,
        base_url=config.base_url,
        max_retries=config.max_retries,
        timeout=config.timeout_seconds,
        page_size=config.page_size,
        max_customer_pages=config.max_customer_pages,
        max_document_pages=config.max_document_pages,
        requests_per_second=config.requests_per_second,
    )
    return ConductorGateway(client)
