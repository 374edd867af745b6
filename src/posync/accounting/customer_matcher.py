"""Match email contacts to accounting-system customers.

Each customer is compared against the contact in order, and the first rule
that fires decides that customer's candidate entry:

1. Exact email address                              -> exact
2. Name or company is a variation of the contact    -> high
3. Fuzzy name/company similarity >= 0.70            -> high (>= 0.85) or medium
4. Sender domain vs company/customer name >= 0.60   -> medium (>= 0.80) or low

All candidates are returned ranked best-first; ``match`` returns the head.
The customer list is fetched once per matcher instance and reused until
``refresh_cache`` is called.

Usage:
    from posync.accounting.customer_matcher import CustomerMatcher

    matcher = CustomerMatcher(gateway)
    best = await matcher.match("buyer@acme-tools.com", "Acme Tools")
    if best:
        print(best.customer_id, best.confidence)
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

import regex
from rapidfuzz.distance import Levenshtein

from posync.accounting.models import CustomerMatchCandidate
from posync.core.headers import REGEX_TIMEOUT
from posync.core.logging import get_logger, truncate_pii

if TYPE_CHECKING:
    from posync.accounting.gateway import AccountingGateway

logger = get_logger(__name__)

Confidence = Literal["exact", "high", "medium", "low"]
MatchType = Literal["email", "name", "company"]

CONFIDENCE_RANK: dict[str, int] = {"exact": 0, "high": 1, "medium": 2, "low": 3}

FUZZY_MATCH_THRESHOLD = 0.70
FUZZY_HIGH_THRESHOLD = 0.85
DOMAIN_MATCH_THRESHOLD = 0.60
DOMAIN_MEDIUM_THRESHOLD = 0.80

# Shorter alphanumeric forms must be at least this long to count as contained
MIN_CONTAINED_LENGTH = 4

FREE_MAIL_PROVIDERS = frozenset({"gmail", "yahoo", "hotmail", "outlook", "aol", "icloud", "mail"})

PUNCTUATION_PATTERN = regex.compile(r"[.,'\"!?()]")
LEGAL_SUFFIX_PATTERN = regex.compile(
    r"\b(?:inc|llc|ltd|corp|corporation|co|company|limited|incorporated)\b",
    regex.IGNORECASE,
)
WHITESPACE_PATTERN = regex.compile(r"\s+")
NON_ALNUM_PATTERN = regex.compile(r"[^a-z0-9]")
EMAIL_DOMAIN_LABEL_PATTERN = regex.compile(r"@([^.@\s]+)")


@dataclass(frozen=True)
class MatchResult:
    """A ranked customer candidate for a contact."""

    customer_id: str
    customer_name: str
    customer_full_name: str
    confidence: Confidence
    match_type: MatchType
    matched_value: str

    @property
    def rank(self) -> int:
        return CONFIDENCE_RANK[self.confidence]


def normalize_for_comparison(value: str) -> str:
    """Lowercase, strip punctuation and legal suffixes, collapse whitespace."""
    text = PUNCTUATION_PATTERN.sub("", value.lower(), timeout=REGEX_TIMEOUT)
    text = LEGAL_SUFFIX_PATTERN.sub("", text, timeout=REGEX_TIMEOUT)
    return WHITESPACE_PATTERN.sub(" ", text, timeout=REGEX_TIMEOUT).strip()


def _alphanumeric(value: str) -> str:
    return NON_ALNUM_PATTERN.sub("", value, timeout=REGEX_TIMEOUT)


def are_variations_of_same(a: str, b: str) -> bool:
    """Check whether two names are spellings of the same entity.

    "TNT Tools" and "T.N.T. TOOLS 2025 INC" are variations: the alphanumeric
    form of the shorter ("tnttools") is contained in the longer.
    """
    na = normalize_for_comparison(a)
    nb = normalize_for_comparison(b)
    if na == nb:
        return bool(na)

    a_clean = _alphanumeric(na)
    b_clean = _alphanumeric(nb)
    if a_clean == b_clean:
        return bool(a_clean)

    shorter, longer = sorted((a_clean, b_clean), key=len)
    return len(shorter) >= MIN_CONTAINED_LENGTH and shorter in longer


def string_similarity(a: str, b: str) -> float:
    """Similarity of two names between 0 and 1.

    Uses normalized Levenshtein distance (1 - distance / longer length).
    When one normalized string contains the other, the length ratio is
    returned instead.
    """
    na = normalize_for_comparison(a)
    nb = normalize_for_comparison(b)

    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0

    shorter, longer = sorted((len(na), len(nb)))
    if na in nb or nb in na:
        return shorter / longer

    distance = Levenshtein.distance(na, nb)
    return 1.0 - distance / longer


def extract_company_from_email(email: str) -> str | None:
    """Guess a company name from the first label of an email domain.

    "john@acme-tools.com" -> "acme tools". Free-mail providers yield None.
    """
    match = EMAIL_DOMAIN_LABEL_PATTERN.search(email, timeout=REGEX_TIMEOUT)
    if not match:
        return None
    label = match.group(1).lower()
    if label in FREE_MAIL_PROVIDERS:
        return None
    return label.replace("-", " ").replace("_", " ")


def _result(
    customer: CustomerMatchCandidate,
    confidence: Confidence,
    match_type: MatchType,
    matched_value: str,
) -> MatchResult:
    return MatchResult(
        customer_id=customer.id,
        customer_name=customer.name,
        customer_full_name=customer.full_name,
        confidence=confidence,
        match_type=match_type,
        matched_value=matched_value,
    )


def match_customer(
    customer: CustomerMatchCandidate,
    contact_email: str,
    contact_name: str | None = None,
    company_from_email: str | None = None,
) -> MatchResult | None:
    """Apply the matching rules to a single customer."""
    if customer.email and customer.email.lower() == contact_email.lower():
        return _result(customer, "exact", "email", customer.email)

    if contact_name:
        if customer.name and are_variations_of_same(contact_name, customer.name):
            return _result(customer, "high", "name", customer.name)
        if customer.company_name and are_variations_of_same(contact_name, customer.company_name):
            return _result(customer, "high", "company", customer.company_name)

        name_similarity = string_similarity(contact_name, customer.name) if customer.name else 0.0
        if name_similarity >= FUZZY_MATCH_THRESHOLD:
            confidence: Confidence = "high" if name_similarity >= FUZZY_HIGH_THRESHOLD else "medium"
            return _result(customer, confidence, "name", customer.name)

        if customer.company_name:
            company_similarity = string_similarity(contact_name, customer.company_name)
            if company_similarity >= FUZZY_MATCH_THRESHOLD:
                confidence = "high" if company_similarity >= FUZZY_HIGH_THRESHOLD else "medium"
                return _result(customer, confidence, "company", customer.company_name)

    if company_from_email:
        if customer.company_name:
            similarity = string_similarity(company_from_email, customer.company_name)
            if similarity >= DOMAIN_MATCH_THRESHOLD:
                confidence = "medium" if similarity >= DOMAIN_MEDIUM_THRESHOLD else "low"
                return _result(customer, confidence, "company", customer.company_name)
        if customer.name:
            similarity = string_similarity(company_from_email, customer.name)
            if similarity >= DOMAIN_MATCH_THRESHOLD:
                confidence = "medium" if similarity >= DOMAIN_MEDIUM_THRESHOLD else "low"
                return _result(customer, confidence, "name", customer.name)

    return None


def rank_matches(
    customers: Sequence[CustomerMatchCandidate],
    contact_email: str,
    contact_name: str | None = None,
) -> list[MatchResult]:
    """Match a contact against every customer and rank the results.

    The sort is stable, so customers keep their list order within a tier.
    """
    company_from_email = extract_company_from_email(contact_email)
    results = [
        result
        for customer in customers
        if (result := match_customer(customer, contact_email, contact_name, company_from_email))
    ]
    results.sort(key=lambda r: r.rank)
    return results


class CustomerMatcher:
    """Customer matcher owning a cached customer list.

    The cache is filled on first use and replaced only by refresh_cache().
    Refreshes are serialized with a lock.
    """

    def __init__(self, gateway: AccountingGateway):
        self.gateway = gateway
        self._customers: list[CustomerMatchCandidate] | None = None
        self._lock = asyncio.Lock()

    @property
    def cached_customers(self) -> list[CustomerMatchCandidate] | None:
        return self._customers

    async def ensure_cache(self) -> list[CustomerMatchCandidate]:
        """Return the cached customers, fetching them on first use.

        Raises:
            AccountingAPIError: If the customer list cannot be fetched
        """
        if self._customers is None:
            async with self._lock:
                if self._customers is None:
                    self._customers = await self.gateway.list_customers()
                    logger.info("customer_cache_loaded", count=len(self._customers))
        return self._customers

    async def refresh_cache(self) -> None:
        """Replace the cached customer list with a fresh fetch."""
        async with self._lock:
            self._customers = await self.gateway.list_customers()
            logger.info("customer_cache_refreshed", count=len(self._customers))

    async def match_all(self, contact_email: str, contact_name: str | None = None) -> list[MatchResult]:
        """All qualifying customers for a contact, best first."""
        customers = await self.ensure_cache()
        results = rank_matches(customers, contact_email, contact_name)
        logger.debug(
            "customer_match_candidates",
            contact=truncate_pii(contact_email),
            candidates=len(results),
            best=results[0].confidence if results else None,
        )
        return results

    async def match(self, contact_email: str, contact_name: str | None = None) -> MatchResult | None:
        """Best customer match for a contact, or None."""
        results = await self.match_all(contact_email, contact_name)
        return results[0] if results else None
