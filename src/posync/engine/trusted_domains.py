"""Trusted-domain filter.

Only mail from domains we already do business with is processed normally.
A domain is trusted when:
1. We have sent mail to it (recipients of sent-folder emails)
2. It is on the manual allow-list (trust.manual_domains / TRUSTED_DOMAINS)
3. It is the email domain of an accounting-system customer (optional)

PO threads from anywhere else are flagged suspicious before alerting so that
phishing attachments are never matched against customers.

Usage:
    from posync.engine.trusted_domains import get_trusted_domains, flag_untrusted_threads

    trusted = await get_trusted_domains(store, config.trust, matcher)
    threads = flag_untrusted_threads(threads, trusted)
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from posync.config_schema import TrustConfig
from posync.core.errors import AccountingAPIError
from posync.core.headers import extract_domain
from posync.core.logging import get_logger, truncate_pii

if TYPE_CHECKING:
    from posync.accounting.customer_matcher import CustomerMatcher
    from posync.db.store import DatabaseStore
    from posync.engine.alerts import CategorizedThread

logger = get_logger(__name__)


@dataclass
class TrustedDomainSet:
    """Trusted domains plus where each group came from."""

    sent_domains: set[str] = field(default_factory=set)
    manual_domains: set[str] = field(default_factory=set)
    customer_domains: set[str] = field(default_factory=set)

    @property
    def domains(self) -> set[str]:
        return self.sent_domains | self.manual_domains | self.customer_domains

    def __contains__(self, domain: object) -> bool:
        return isinstance(domain, str) and domain.lower() in self.domains

    def __len__(self) -> int:
        return len(self.domains)

    def stats(self) -> dict[str, int | list[str]]:
        """Counts per source, for logging and the CLI."""
        return {
            "total_trusted": len(self.domains),
            "from_sent_emails": len(self.sent_domains),
            "from_manual_allowlist": len(self.manual_domains),
            "from_customers": len(self.customer_domains),
            "domains": sorted(self.domains),
        }


def _domains_of(addresses: Iterable[str | None]) -> set[str]:
    return {domain for address in addresses if (domain := extract_domain(address))}


async def get_trusted_domains(
    store: DatabaseStore,
    trust: TrustConfig,
    matcher: CustomerMatcher | None = None,
) -> TrustedDomainSet:
    """Build the trusted-domain set.

    Customer domains are optional: if the accounting system cannot be
    reached the set is built from the other sources.

    Args:
        store: Store holding synced emails
        trust: Trust configuration
        matcher: Customer matcher whose cached list supplies customer emails

    Raises:
        DatabaseError: If sent-mail recipients cannot be read
    """
    sent_domains: set[str] = set()
    for recipients in await store.get_sent_recipient_lists():
        sent_domains |= _domains_of(recipients)

    customer_domains: set[str] = set()
    if trust.include_customer_domains and matcher is not None and matcher.gateway.available:
        try:
            customers = await matcher.ensure_cache()
            customer_domains = _domains_of(customer.email for customer in customers)
        except AccountingAPIError as e:
            logger.warning("customer_domains_unavailable", error=str(e))

    trusted = TrustedDomainSet(
        sent_domains=sent_domains,
        manual_domains=set(trust.manual_domains),
        customer_domains=customer_domains,
    )
    stats = trusted.stats()
    stats.pop("domains")
    logger.info("trusted_domains_loaded", **stats)
    return trusted


def is_domain_trusted(email: str | None, trusted: TrustedDomainSet | set[str]) -> bool:
    """Check if an email address belongs to a trusted domain."""
    domain = extract_domain(email)
    if not domain:
        return False
    return domain in trusted


def filter_trusted_emails(
    addresses: Iterable[str], trusted: TrustedDomainSet | set[str]
) -> list[str]:
    """Keep only addresses on trusted domains."""
    return [address for address in addresses if is_domain_trusted(address, trusted)]


def flag_untrusted_threads(
    threads: Sequence[CategorizedThread],
    trusted: TrustedDomainSet | set[str],
) -> list[CategorizedThread]:
    """Mark threads whose contact is missing or on an untrusted domain as suspicious.

    Returns:
        New thread objects; the inputs are not modified
    """
    flagged: list[CategorizedThread] = []
    for thread in threads:
        if not thread.is_suspicious and not is_domain_trusted(thread.contact_email, trusted):
            logger.info(
                "thread_flagged_untrusted",
                thread_key=thread.thread_key[:40],
                contact=truncate_pii(thread.contact_email),
            )
            thread = replace(thread, is_suspicious=True)
        flagged.append(thread)
    return flagged
