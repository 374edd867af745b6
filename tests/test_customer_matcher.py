"""Tests for customer matching.

Covers normalization, the rule cascade, confidence ranking and the
customer cache owned by CustomerMatcher.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from posync.accounting.customer_matcher import (
    CustomerMatcher,
    are_variations_of_same,
    extract_company_from_email,
    match_customer,
    normalize_for_comparison,
    rank_matches,
    string_similarity,
)
from posync.accounting.models import CustomerMatchCandidate
from posync.core.errors import AccountingAPIError


def _customer(
    customer_id: str,
    name: str,
    company_name: str | None = None,
    email: str | None = None,
) -> CustomerMatchCandidate:
    return CustomerMatchCandidate(
        id=customer_id,
        name=name,
        full_name=name,
        company_name=company_name,
        email=email,
    )


def _gateway(customers: list[CustomerMatchCandidate]) -> MagicMock:
    gateway = MagicMock()
    gateway.available = True
    gateway.list_customers = AsyncMock(return_value=customers)
    return gateway


class TestNormalization:
    def test_strips_punctuation_and_legal_suffixes(self) -> None:
        assert normalize_for_comparison("Acme Tools, Inc.") == "acme tools"
        assert normalize_for_comparison("  O'Brien   Machining LLC ") == "obrien machining"

    def test_variations_of_same_entity(self) -> None:
        assert are_variations_of_same("TNT Tools", "T.N.T. TOOLS 2025 INC")
        assert are_variations_of_same("Acme Tools", "acme-tools")

    def test_short_names_are_not_contained_variations(self) -> None:
        assert not are_variations_of_same("Ace", "Ace Hardware Supply")

    def test_unrelated_names_are_not_variations(self) -> None:
        assert not are_variations_of_same("Acme Tools", "Bolt Fabrication")

    def test_names_that_normalize_to_nothing_are_not_variations(self) -> None:
        assert not are_variations_of_same("Co", "Inc.")


class TestStringSimilarity:
    def test_identical_after_normalization(self) -> None:
        assert string_similarity("Acme Tools Inc", "ACME TOOLS") == 1.0

    def test_containment_uses_length_ratio(self) -> None:
        assert string_similarity("acme", "acme tools") == pytest.approx(0.4)

    def test_levenshtein_ratio(self) -> None:
        # one substitution over eight characters
        assert string_similarity("precison", "precisin") == pytest.approx(1 - 1 / 8)

    def test_empty_side(self) -> None:
        assert string_similarity("", "Acme") == 0.0
        assert string_similarity("Co", "Inc.") == 0.0


class TestExtractCompanyFromEmail:
    def test_domain_label(self) -> None:
        assert extract_company_from_email("john@acme-tools.com") == "acme tools"

    def test_free_mail_provider(self) -> None:
        assert extract_company_from_email("john.smith@gmail.com") is None

    def test_not_an_address(self) -> None:
        assert extract_company_from_email("nobody") is None


class TestMatchCustomer:
    """Tests for the per-customer rule cascade."""

    def test_suffix_only_names_do_not_match(self) -> None:
        customer = _customer("c1", "Inc.")
        assert match_customer(customer, "someone@example.org", "Co") is None

    def test_exact_email_is_case_insensitive(self) -> None:
        customer = _customer("c1", "Acme Tools", email="Buyer@Acme.com")
        result = match_customer(customer, "buyer@acme.com")
        assert result is not None
        assert (result.confidence, result.match_type) == ("exact", "email")

    def test_name_variation_is_high(self) -> None:
        customer = _customer("c1", "T.N.T. Tools 2025 Inc")
        result = match_customer(customer, "x@tnt.com", "TNT Tools")
        assert result is not None
        assert (result.confidence, result.match_type) == ("high", "name")

    def test_company_variation_is_high(self) -> None:
        customer = _customer("c1", "Jones, Bob", company_name="Bolt Fabrication LLC")
        result = match_customer(customer, "x@bf.com", "Bolt Fabrication")
        assert result is not None
        assert (result.confidence, result.match_type) == ("high", "company")

    def test_fuzzy_name_medium(self) -> None:
        customer = _customer("c1", "Northwind Trading")
        result = match_customer(customer, "x@nw.com", "Nortwynd Tradng")
        assert result is not None
        assert result.confidence == "medium"

    def test_domain_against_company_name(self) -> None:
        customer = _customer("c1", "Smith, J", company_name="Acme Tools")
        result = match_customer(customer, "jsmith@acme-tools.com", None, "acme tools")
        assert result is not None
        assert (result.confidence, result.match_type) == ("medium", "company")

    def test_weak_domain_similarity_is_low(self) -> None:
        customer = _customer("c1", "Acme Toolworks")
        result = match_customer(customer, "x@acme-tool.com", None, "acme tool")
        assert result is not None
        assert result.confidence == "low"

    def test_no_match(self) -> None:
        customer = _customer("c1", "Bolt Fabrication", email="ap@bolt.com")
        assert match_customer(customer, "x@gmail.com", "Jane Smith") is None


class TestRankMatches:
    def test_exact_email_ranks_first_regardless_of_list_order(self) -> None:
        customers = [
            _customer("c1", "Acme Tools"),
            _customer("c2", "Acme Tools East", email="buyer@acme-tools.com"),
        ]
        results = rank_matches(customers, "buyer@acme-tools.com", "Acme Tools")
        assert [r.customer_id for r in results] == ["c2", "c1"]
        assert results[0].confidence == "exact"

    def test_ranking_is_monotonic_and_stable(self) -> None:
        customers = [
            _customer("low", "Acme Toolworks"),
            _customer("medium-1", "Acme Tool"),
            _customer("medium-2", "ACME TOOL INC"),
        ]
        results = rank_matches(customers, "x@acme-tool.com")
        ranks = [r.rank for r in results]
        assert ranks == sorted(ranks)
        assert [r.customer_id for r in results] == ["medium-1", "medium-2", "low"]
        assert results[-1].confidence == "low"

    def test_no_candidates(self) -> None:
        assert rank_matches([], "buyer@acme.com", "Acme") == []


class TestCustomerMatcher:
    """Tests for the cached matcher."""

    @pytest.mark.asyncio
    async def test_cache_filled_once(self) -> None:
        gateway = _gateway([_customer("c1", "Acme Tools", email="buyer@acme.com")])
        matcher = CustomerMatcher(gateway)

        first = await matcher.match("buyer@acme.com")
        second = await matcher.match("buyer@acme.com")

        assert first is not None and second is not None
        assert first.customer_id == "c1"
        gateway.list_customers.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_refresh_replaces_cache(self) -> None:
        gateway = _gateway([])
        matcher = CustomerMatcher(gateway)
        assert await matcher.match("buyer@acme.com") is None

        gateway.list_customers.return_value = [
            _customer("c9", "Acme Tools", email="buyer@acme.com")
        ]
        await matcher.refresh_cache()

        result = await matcher.match("buyer@acme.com")
        assert result is not None
        assert result.customer_id == "c9"
        assert gateway.list_customers.await_count == 2

    @pytest.mark.asyncio
    async def test_fetch_failure_propagates_and_leaves_cache_empty(self) -> None:
        gateway = MagicMock()
        gateway.list_customers = AsyncMock(side_effect=AccountingAPIError("offline"))
        matcher = CustomerMatcher(gateway)

        with pytest.raises(AccountingAPIError):
            await matcher.match("buyer@acme.com")
        assert matcher.cached_customers is None
