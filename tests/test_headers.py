"""Tests for email header helpers."""

import pytest

from posync.core.headers import (
    extract_domain,
    normalize_subject,
    parse_recipients,
    split_references,
)


class TestNormalizeSubject:
    """Tests for subject normalization."""

    @pytest.mark.parametrize(
        "subject,expected",
        [
            ("RE: PO 4521 for brackets", "po 4521 for brackets"),
            ("Fwd: RE: re: PO 4521 for brackets", "po 4521 for brackets"),
            ("FW:  Quote request", "quote request"),
            ("[External] RE: Order update", "order update"),
            ("  Drawing Rev B  ", "drawing rev b"),
        ],
    )
    def test_strips_prefixes_and_tags(self, subject: str, expected: str) -> None:
        assert normalize_subject(subject) == expected

    def test_empty_subject(self) -> None:
        assert normalize_subject(None) == ""
        assert normalize_subject("") == ""

    def test_does_not_strip_words_that_start_with_prefix(self) -> None:
        """A subject like 'Request' must keep its leading 're'."""
        assert normalize_subject("Request for pricing") == "request for pricing"


class TestSplitReferences:
    def test_splits_on_whitespace_oldest_first(self) -> None:
        assert split_references("<a@x>  <b@x>\n<c@x>") == ["<a@x>", "<b@x>", "<c@x>"]

    def test_empty(self) -> None:
        assert split_references(None) == []
        assert split_references("   ") == []


class TestParseRecipients:
    def test_json_array(self) -> None:
        assert parse_recipients('["a@x.com", " b@y.com "]') == ["a@x.com", "b@y.com"]

    def test_comma_separated_fallback(self) -> None:
        assert parse_recipients("a@x.com, b@y.com") == ["a@x.com", "b@y.com"]

    def test_malformed_input_yields_empty_list(self) -> None:
        assert parse_recipients("{}") == []
        assert parse_recipients("") == []
        assert parse_recipients(None) == []

    def test_sequence_passthrough(self) -> None:
        assert parse_recipients(("a@x.com", "")) == ["a@x.com"]


class TestExtractDomain:
    @pytest.mark.parametrize(
        "address,expected",
        [
            ("Buyer@ACME.com", "acme.com"),
            ("<buyer@acme.com>", "acme.com"),
            ("no-at-sign", None),
            (None, None),
        ],
    )
    def test_extract_domain(self, address: str | None, expected: str | None) -> None:
        assert extract_domain(address) == expected
