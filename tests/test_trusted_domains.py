"""Tests for the trusted-domain filter."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from posync.accounting.customer_matcher import CustomerMatcher
from posync.accounting.gateway import UnavailableGateway
from posync.accounting.models import CustomerMatchCandidate
from posync.config_schema import TrustConfig
from posync.core.errors import AccountingAPIError
from posync.db.store import DatabaseStore, EmailRecord
from posync.engine.alerts import CategorizedThread
from posync.engine.trusted_domains import (
    TrustedDomainSet,
    filter_trusted_emails,
    flag_untrusted_threads,
    get_trusted_domains,
    is_domain_trusted,
)


def _matcher(customers: list[CustomerMatchCandidate] | Exception) -> CustomerMatcher:
    gateway = MagicMock()
    gateway.available = True
    if isinstance(customers, Exception):
        gateway.list_customers = AsyncMock(side_effect=customers)
    else:
        gateway.list_customers = AsyncMock(return_value=customers)
    return CustomerMatcher(gateway)


@pytest.fixture
async def store_with_sent_mail(store: DatabaseStore) -> DatabaseStore:
    await store.save_emails_batch(
        [
            EmailRecord(id="s1", to_addresses=("Buyer@Acme.com",), mailbox="Sent Items"),
            EmailRecord(id="s2", to_addresses=("ap@bolt.com", "not-an-address"), mailbox="Sent"),
            EmailRecord(id="i1", from_address="spam@phish.biz", mailbox="INBOX"),
        ]
    )
    return store


class TestGetTrustedDomains:
    """Tests for building the trusted set."""

    @pytest.mark.asyncio
    async def test_sources_are_combined(self, store_with_sent_mail: DatabaseStore) -> None:
        matcher = _matcher(
            [
                CustomerMatchCandidate(
                    id="c1", name="Northwind", full_name="Northwind", email="orders@northwind.io"
                ),
                CustomerMatchCandidate(id="c2", name="No Email", full_name="No Email"),
            ]
        )
        trust = TrustConfig(manual_domains=["Partner.org"])

        trusted = await get_trusted_domains(store_with_sent_mail, trust, matcher)

        assert trusted.sent_domains == {"acme.com", "bolt.com"}
        assert trusted.manual_domains == {"partner.org"}
        assert trusted.customer_domains == {"northwind.io"}
        assert "phish.biz" not in trusted
        assert len(trusted) == 4

    @pytest.mark.asyncio
    async def test_customer_fetch_failure_is_tolerated(
        self, store_with_sent_mail: DatabaseStore
    ) -> None:
        matcher = _matcher(AccountingAPIError("offline"))

        trusted = await get_trusted_domains(store_with_sent_mail, TrustConfig(), matcher)

        assert trusted.customer_domains == set()
        assert trusted.domains == {"acme.com", "bolt.com"}

    @pytest.mark.asyncio
    async def test_unavailable_gateway_is_not_queried(
        self, store_with_sent_mail: DatabaseStore
    ) -> None:
        matcher = CustomerMatcher(UnavailableGateway())

        trusted = await get_trusted_domains(store_with_sent_mail, TrustConfig(), matcher)

        assert trusted.customer_domains == set()

    @pytest.mark.asyncio
    async def test_customer_domains_can_be_disabled(
        self, store_with_sent_mail: DatabaseStore
    ) -> None:
        matcher = _matcher([])
        trust = TrustConfig(include_customer_domains=False)

        await get_trusted_domains(store_with_sent_mail, trust, matcher)

        matcher.gateway.list_customers.assert_not_awaited()

    def test_stats(self) -> None:
        trusted = TrustedDomainSet(sent_domains={"a.com"}, manual_domains={"a.com", "b.com"})
        stats = trusted.stats()
        assert stats["total_trusted"] == 2
        assert stats["domains"] == ["a.com", "b.com"]


class TestFiltering:
    def test_is_domain_trusted(self) -> None:
        trusted = TrustedDomainSet(manual_domains={"acme.com"})
        assert is_domain_trusted("Buyer@ACME.com", trusted)
        assert not is_domain_trusted("buyer@acme.com.evil.net", trusted)
        assert not is_domain_trusted(None, trusted)

    def test_filter_trusted_emails(self) -> None:
        trusted = TrustedDomainSet(manual_domains={"acme.com"})
        assert filter_trusted_emails(["a@acme.com", "b@x.com"], trusted) == ["a@acme.com"]

    def test_flag_untrusted_threads(self) -> None:
        trusted = TrustedDomainSet(sent_domains={"acme.com"})
        threads = [
            CategorizedThread(thread_key="<ok>", contact_email="buyer@acme.com"),
            CategorizedThread(thread_key="<phish>", contact_email="billing@acme-payments.biz"),
            CategorizedThread(thread_key="<anon>", contact_email=None),
        ]

        flagged = flag_untrusted_threads(threads, trusted)

        assert [t.is_suspicious for t in flagged] == [False, True, True]
        assert not threads[1].is_suspicious
