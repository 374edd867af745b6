"""Accounting-system (QuickBooks Desktop via Conductor) integration.

Provides:
- Conductor REST client with retry and pagination
- Async gateway with a null-object implementation for degraded mode
- Customer matching against the cached customer list
- Sales Order / Estimate / Invoice matching for POs

Usage:
    from posync.accounting import CustomerMatcher, build_gateway

    gateway = build_gateway(config.accounting)
    matcher = CustomerMatcher(gateway)
    best = await matcher.match("buyer@acme-tools.com", "Acme Tools")
"""

from posync.accounting.client import ConductorClient
from posync.accounting.customer_matcher import CustomerMatcher, MatchResult
from posync.accounting.gateway import (
    AccountingGateway,
    ConductorGateway,
    UnavailableGateway,
    build_gateway,
)
from posync.accounting.job_documents import (
    CloseableSalesOrder,
    find_closeable_sales_orders,
    find_matching_estimate,
    find_matching_sales_order,
)
from posync.accounting.models import (
    CustomerMatchCandidate,
    Estimate,
    Invoice,
    JobDocuments,
    SalesOrder,
)

__all__ = [
    # Client / gateway
    "ConductorClient",
    "AccountingGateway",
    "ConductorGateway",
    "UnavailableGateway",
    "build_gateway",
    # Matching
    "CustomerMatcher",
    "MatchResult",
    "CloseableSalesOrder",
    "find_closeable_sales_orders",
    "find_matching_estimate",
    "find_matching_sales_order",
    # Models
    "CustomerMatchCandidate",
    "Estimate",
    "Invoice",
    "JobDocuments",
    "SalesOrder",
]
