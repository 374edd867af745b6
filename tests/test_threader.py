"""Tests for thread resolution.

Covers canonical keys, the three grouping passes, order independence,
history expansion against a real store and external contact detection.
"""

import random
from datetime import UTC, datetime, timedelta

import pytest

from posync.db.store import DatabaseStore, EmailRecord
from posync.engine.threader import (
    DisjointSet,
    ExternalContact,
    fetch_full_thread_emails,
    group_emails_into_threads,
    identify_external_contact,
    is_outbound,
    is_specific_subject,
    resolve_thread_id,
)

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _email(
    email_id: str,
    hours: float = 0,
    message_id: str | None = None,
    in_reply_to: str | None = None,
    references: str | None = None,
    subject: str | None = "PO",
    from_address: str | None = "buyer@acme.com",
    from_name: str | None = "Jane Buyer",
    to_addresses: tuple[str, ...] = ("sales@example.com",),
    mailbox: str = "INBOX",
) -> EmailRecord:
    return EmailRecord(
        id=email_id,
        message_id=message_id,
        in_reply_to=in_reply_to,
        references=references,
        subject=subject,
        from_address=from_address,
        from_name=from_name,
        to_addresses=to_addresses,
        date=BASE_TIME + timedelta(hours=hours),
        mailbox=mailbox,
    )


def _partition(threads: dict[str, list[EmailRecord]]) -> dict[str, set[str]]:
    return {key: {e.id for e in members} for key, members in threads.items()}


class TestResolveThreadId:
    """Tests for the canonical grouping key."""

    def test_oldest_reference_wins(self) -> None:
        email = _email("1", message_id="<c>", in_reply_to="<b>", references="<a> <b>")
        assert resolve_thread_id(email) == "<a>"

    def test_in_reply_to_without_references(self) -> None:
        email = _email("1", message_id="<c>", in_reply_to="<b>")
        assert resolve_thread_id(email) == "<b>"

    def test_message_id_for_thread_root(self) -> None:
        assert resolve_thread_id(_email("1", message_id="<a>")) == "<a>"

    def test_subject_fallback_without_headers(self) -> None:
        email = _email("1", subject="RE: Bracket Assembly")
        assert resolve_thread_id(email) == "subject:bracket assembly"


class TestIsSpecificSubject:
    def test_long_distinct_subject(self) -> None:
        assert is_specific_subject("bracket assembly po 4521")

    def test_generic_subject_rejected(self) -> None:
        assert not is_specific_subject("purchase order")

    def test_length_must_exceed_minimum(self) -> None:
        assert not is_specific_subject("abcdefghij")  # exactly 10
        assert is_specific_subject("abcdefghijk")

    def test_custom_denylist(self) -> None:
        assert not is_specific_subject("weekly production report", ["weekly production report"])


class TestDisjointSet:
    def test_representative_is_smallest_member(self) -> None:
        sets: DisjointSet[str] = DisjointSet()
        for item in ("c", "a", "b", "d"):
            sets.add(item)
        sets.union("c", "b")
        sets.union("d", "c")
        assert sets.find("d") == "b"
        assert sets.union("a", "d") == "a"
        assert sets.groups() == {"a": ["c", "a", "b", "d"]}


class TestGroupEmailsIntoThreads:
    """Tests for the three grouping passes."""

    def test_reply_chain_is_one_thread(self) -> None:
        emails = [
            _email("1", 0, message_id="<a>"),
            _email("2", 1, message_id="<b>", in_reply_to="<a>", references="<a>"),
            _email("3", 2, message_id="<c>", in_reply_to="<b>", references="<a> <b>"),
        ]
        threads = group_emails_into_threads(emails)
        assert _partition(threads) == {"<a>": {"1", "2", "3"}}

    def test_in_reply_to_merges_buckets_when_references_dropped(self) -> None:
        """A reply whose client dropped References still joins its parent's thread."""
        emails = [
            _email("1", 0, message_id="<a>", references="<root>"),
            _email("2", 1, message_id="<b>", in_reply_to="<a>"),
        ]
        threads = group_emails_into_threads(emails)
        assert _partition(threads) == {"<root>": {"1", "2"}}

    def test_same_message_id_in_two_buckets_merges(self) -> None:
        emails = [
            _email("inbox-1", 0, message_id="<s>"),
            _email("sent-1", 0, message_id="<s>", references="<x>", mailbox="Sent"),
        ]
        threads = group_emails_into_threads(emails)
        assert len(threads) == 1

    def test_specific_subject_merges_unlinked_threads(self) -> None:
        emails = [
            _email("1", 0, message_id="<a>", subject="Bracket assembly PO 4521"),
            _email("2", 5, message_id="<z>", subject="RE: Bracket assembly PO 4521"),
        ]
        threads = group_emails_into_threads(emails)
        assert _partition(threads) == {"<a>": {"1", "2"}}

    def test_generic_subject_never_merges(self) -> None:
        emails = [
            _email("1", 0, message_id="<a>", subject="Purchase Order"),
            _email("2", 1, message_id="<b>", subject="RE: Purchase Order", from_address="x@other.com"),
        ]
        threads = group_emails_into_threads(emails)
        assert _partition(threads) == {"<a>": {"1"}, "<b>": {"2"}}

    def test_short_subject_never_merges(self) -> None:
        emails = [
            _email("1", 0, message_id="<a>", subject="Hi there"),
            _email("2", 1, message_id="<b>", subject="Hi there"),
        ]
        assert len(group_emails_into_threads(emails)) == 2

    def test_threads_ordered_by_earliest_email_and_sorted_within(self) -> None:
        emails = [
            _email("late", 10, message_id="<l>"),
            _email("reply", 3, message_id="<r>", in_reply_to="<e>", references="<e>"),
            _email("early", 1, message_id="<e>"),
        ]
        threads = group_emails_into_threads(emails)
        assert list(threads) == ["<e>", "<l>"]
        assert [e.id for e in threads["<e>"]] == ["early", "reply"]

    def test_empty_input(self) -> None:
        assert group_emails_into_threads([]) == {}

    def test_grouping_is_independent_of_input_order(self) -> None:
        emails = [
            _email("1", 0, message_id="<a>", references="<root>"),
            _email("2", 1, message_id="<b>", in_reply_to="<a>"),
            _email("3", 2, message_id="<c>", subject="Bracket assembly PO 4521"),
            _email("4", 3, message_id="<d>", subject="RE: Bracket assembly PO 4521"),
            _email("5", 4, message_id="<s>"),
            _email("6", 4, message_id="<s>", references="<y>", mailbox="Sent"),
            _email("7", 6, subject="Unrelated note about shipping"),
        ]
        expected = _partition(group_emails_into_threads(emails))

        rng = random.Random(1234)
        for _ in range(25):
            shuffled = emails[:]
            rng.shuffle(shuffled)
            assert _partition(group_emails_into_threads(shuffled)) == expected

    def test_regrouping_a_thread_is_idempotent(self) -> None:
        emails = [
            _email("1", 0, message_id="<a>", references="<root>"),
            _email("2", 1, message_id="<b>", in_reply_to="<a>"),
            _email("3", 2, message_id="<c>", subject="Bracket assembly PO 4521"),
        ]
        first = group_emails_into_threads(emails)
        for key, members in first.items():
            again = group_emails_into_threads(members)
            assert _partition(again) == {key: {e.id for e in members}}


class TestFetchFullThreadEmails:
    """Tests for expanding a window to full thread history."""

    @pytest.mark.asyncio
    async def test_pulls_in_ancestors_and_subject_matches(self, store: DatabaseStore) -> None:
        await store.save_emails_batch(
            [
                _email("a", 0, message_id="<a>", subject="Bracket assembly for line 3"),
                _email(
                    "b",
                    24,
                    message_id="<b>",
                    in_reply_to="<a>",
                    references="<a>",
                    subject="RE: Bracket assembly for line 3",
                ),
                _email(
                    "c",
                    96,
                    message_id="<c>",
                    in_reply_to="<b>",
                    references="<a> <b>",
                    subject="RE: Bracket assembly for line 3",
                ),
                _email("forwarded", 30, message_id="<f>", subject="FW: Bracket assembly for line 3"),
                _email("other", 50, message_id="<o>", subject="Invoice"),
            ]
        )
        window = [await store.get_email("c")]

        emails = await fetch_full_thread_emails(window, store)

        assert [e.id for e in emails] == ["a", "b", "forwarded", "c"]

    @pytest.mark.asyncio
    async def test_reference_chain_is_bounded_by_max_hops(self, store: DatabaseStore) -> None:
        await store.save_emails_batch(
            [
                _email("a", 0, message_id="<a>"),
                _email("b", 1, message_id="<b>", in_reply_to="<a>"),
                _email("c", 2, message_id="<c>", in_reply_to="<b>"),
            ]
        )
        window = [await store.get_email("c")]

        one_hop = await fetch_full_thread_emails(window, store, max_hops=1)
        two_hops = await fetch_full_thread_emails(window, store, max_hops=2)

        assert [e.id for e in one_hop] == ["b", "c"]
        assert [e.id for e in two_hops] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_cutoff_drops_later_emails(self, store: DatabaseStore) -> None:
        await store.save_emails_batch(
            [
                _email("a", 0, message_id="<a>"),
                _email("b", 1, message_id="<b>", in_reply_to="<a>", references="<a>"),
                _email("later", 48, message_id="<z>", in_reply_to="<b>", references="<a> <b>"),
            ]
        )
        window = [await store.get_email("b")]

        emails = await fetch_full_thread_emails(window, store, cutoff=BASE_TIME + timedelta(hours=2))

        assert [e.id for e in emails] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_cutoff_with_naive_email_dates(self, store: DatabaseStore) -> None:
        await store.save_emails_batch(
            [
                EmailRecord.from_dict({"id": "a", "messageId": "<a>", "date": "2026-03-01T10:00:00"}),
                EmailRecord.from_dict(
                    {
                        "id": "b",
                        "messageId": "<b>",
                        "inReplyTo": "<a>",
                        "date": "2026-03-03T10:00:00",
                    }
                ),
            ]
        )
        window = [await store.get_email("a")]

        emails = await fetch_full_thread_emails(
            window, store, cutoff=datetime(2026, 3, 2, tzinfo=UTC)
        )

        assert [e.id for e in emails] == ["a"]

    def test_naive_email_date_is_taken_as_utc(self) -> None:
        record = EmailRecord(id="a", date=datetime(2026, 3, 1, 10, 0))
        assert record.date == datetime(2026, 3, 1, 10, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_empty_window(self, store: DatabaseStore) -> None:
        assert await fetch_full_thread_emails([], store) == []


class TestExternalContact:
    """Tests for identifying the external party of a thread."""

    def test_first_inbound_sender(self) -> None:
        emails = [
            _email("1", 0, from_address="buyer@acme.com", from_name="Jane Buyer"),
            _email("2", 1, from_address="other@acme.com", from_name="Other"),
        ]
        contact = identify_external_contact(emails, "example.com")
        assert contact == ExternalContact(email="buyer@acme.com", name="Jane Buyer")

    def test_recipient_of_our_first_outbound_email(self) -> None:
        emails = [
            _email(
                "1",
                0,
                from_address="sales@example.com",
                to_addresses=("ops@example.com", "buyer@acme.com"),
                mailbox="Sent Items",
            ),
            _email("2", 1, from_address="someone@else.com", from_name="Someone"),
        ]
        contact = identify_external_contact(emails, "example.com")
        assert contact == ExternalContact(email="buyer@acme.com", name="buyer@acme.com")

    def test_sender_name_falls_back_to_address(self) -> None:
        contact = identify_external_contact([_email("1", from_name=None)], "example.com")
        assert contact is not None
        assert contact.name == "buyer@acme.com"

    def test_internal_only_thread(self) -> None:
        emails = [
            _email(
                "1",
                0,
                from_address="ops@mail.example.com",
                to_addresses=("sales@example.com",),
            )
        ]
        assert identify_external_contact(emails, "example.com") is None

    def test_sent_folder_is_outbound_even_with_foreign_sender(self) -> None:
        email = _email("1", from_address="alias@acme.com", mailbox="Sent")
        assert is_outbound(email, "example.com")
