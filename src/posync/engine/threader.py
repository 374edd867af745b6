"""Thread resolution for synced mailbox messages.

Mail clients disagree about which headers they set on replies, so a single
conversation can arrive with different Message-ID / In-Reply-To /
References combinations. This module groups a flat list of emails into
threads in three passes:

1. Bucket every email by its canonical key (resolve_thread_id).
2. Merge buckets linked through In-Reply-To.
3. Merge buckets whose first message shares a *specific* normalized subject.

Merges go through a disjoint-set whose representative is the bucket holding
the earliest email, so the result does not depend on input order.

It also expands a time-windowed subset of emails back to full thread history
(fetch_full_thread_emails) and identifies the external party of a thread.

Usage:
    from posync.engine.threader import group_emails_into_threads

    threads = group_emails_into_threads(emails)
    for thread_key, thread_emails in threads.items():
        print(thread_key, len(thread_emails))
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Hashable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Generic, TypeVar

from posync.config_schema import DEFAULT_GENERIC_SUBJECTS
from posync.core.headers import (
    extract_domain,
    normalize_subject,
    split_references,
)
from posync.core.logging import get_logger
from posync.db.store import to_utc

if TYPE_CHECKING:
    from posync.db.store import DatabaseStore, EmailRecord

logger = get_logger(__name__)

SUBJECT_KEY_PREFIX = "subject:"

# Subjects must be strictly longer than this to merge threads on subject alone
MIN_SPECIFIC_SUBJECT_LENGTH = 10

DEFAULT_MAX_REFERENCE_HOPS = 2

T = TypeVar("T", bound=Hashable)


@dataclass(frozen=True)
class ExternalContact:
    """The party on the other side of a thread."""

    email: str
    name: str


class DisjointSet(Generic[T]):
    """Disjoint-set forest with path compression.

    The representative of a set is always its smallest member under
    ``sort_key``, which makes the final partition and its representatives
    independent of the order in which unions are performed.
    """

    def __init__(self, sort_key: Callable[[T], object] | None = None):
        self._parent: dict[T, T] = {}
        self._sort_key = sort_key or (lambda item: item)

    def __contains__(self, item: object) -> bool:
        return item in self._parent

    def __len__(self) -> int:
        return len(self._parent)

    def add(self, item: T) -> None:
        self._parent.setdefault(item, item)

    def find(self, item: T) -> T:
        """Return the representative of ``item``'s set."""
        root = item
        while self._parent[root] != root:
            root = self._parent[root]

        # Path compression
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: T, b: T) -> T:
        """Merge the sets containing ``a`` and ``b``; return the new representative."""
        root_a = self.find(a)
        root_b = self.find(b)
        if root_a == root_b:
            return root_a

        if self._sort_key(root_b) < self._sort_key(root_a):  # type: ignore[operator]
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        return root_a

    def groups(self) -> dict[T, list[T]]:
        """Map each representative to the members of its set."""
        result: dict[T, list[T]] = defaultdict(list)
        for item in self._parent:
            result[self.find(item)].append(item)
        return dict(result)


def email_sort_key(email: EmailRecord) -> tuple[bool, float, str]:
    """Chronological sort key; undated emails sort first, ties broken by id."""
    if email.date is None:
        return (False, 0.0, email.id)
    return (True, email.date.timestamp(), email.id)


def resolve_thread_id(email: EmailRecord) -> str:
    """Produce the canonical grouping key for an email.

    Priority: oldest References entry, In-Reply-To, Message-ID, then the
    normalized subject prefixed with "subject:".
    """
    references = split_references(email.references)
    if references:
        return references[0]
    if email.in_reply_to:
        return email.in_reply_to
    if email.message_id:
        return email.message_id
    return SUBJECT_KEY_PREFIX + normalize_subject(email.subject)


def is_specific_subject(
    normalized_subject: str,
    generic_subjects: Iterable[str] | None = None,
    min_length: int = MIN_SPECIFIC_SUBJECT_LENGTH,
) -> bool:
    """Check whether a normalized subject is distinctive enough to merge threads on.

    Args:
        normalized_subject: Output of normalize_subject()
        generic_subjects: Denylist of common business subjects
        min_length: Subjects must be longer than this

    Returns:
        True if the subject is longer than min_length and not generic
    """
    if len(normalized_subject) <= min_length:
        return False
    denylist = DEFAULT_GENERIC_SUBJECTS if generic_subjects is None else generic_subjects
    return normalized_subject not in set(denylist)


def group_emails_into_threads(
    emails: Sequence[EmailRecord],
    generic_subjects: Iterable[str] | None = None,
    min_specific_length: int = MIN_SPECIFIC_SUBJECT_LENGTH,
) -> dict[str, list[EmailRecord]]:
    """Group emails into conversation threads.

    Deterministic and idempotent: shuffling the input or running the
    function again yields the same grouping and keys.

    Args:
        emails: Emails to group
        generic_subjects: Subjects never used for subject merging
        min_specific_length: Minimum subject length for subject merging

    Returns:
        Mapping of thread key to that thread's emails sorted by date,
        ordered by each thread's earliest email
    """
    denylist = set(DEFAULT_GENERIC_SUBJECTS if generic_subjects is None else generic_subjects)

    # Pass 1: bucket by canonical key
    buckets: dict[str, list[EmailRecord]] = defaultdict(list)
    message_index: dict[str, set[str]] = defaultdict(set)
    for email in emails:
        key = resolve_thread_id(email)
        buckets[key].append(email)
        if email.message_id:
            message_index[email.message_id].add(key)

    for members in buckets.values():
        members.sort(key=email_sort_key)

    earliest = {key: email_sort_key(members[0]) for key, members in buckets.items()}
    sets: DisjointSet[str] = DisjointSet(sort_key=lambda key: (earliest[key], key))
    for key in buckets:
        sets.add(key)

    # The same Message-ID in two buckets is the same message (e.g. a copy in Sent)
    for keys in message_index.values():
        first, *rest = sorted(keys)
        for other in rest:
            sets.union(first, other)

    # Pass 2: header-linked merge
    header_merges = 0
    for key, members in buckets.items():
        for email in members:
            if not email.in_reply_to:
                continue
            for target in message_index.get(email.in_reply_to, ()):
                if sets.find(target) != sets.find(key):
                    sets.union(key, target)
                    header_merges += 1

    # Pass 3: subject fallback on the merged buckets
    subject_roots: dict[str, list[str]] = defaultdict(list)
    for root, keys in sets.groups().items():
        first_email = min((buckets[k][0] for k in keys), key=email_sort_key)
        subject = normalize_subject(first_email.subject)
        if is_specific_subject(subject, denylist, min_specific_length):
            subject_roots[subject].append(root)

    subject_merges = 0
    for roots in subject_roots.values():
        for other in roots[1:]:
            sets.union(roots[0], other)
            subject_merges += 1

    threads: dict[str, list[EmailRecord]] = {}
    for root, keys in sets.groups().items():
        members = [email for key in keys for email in buckets[key]]
        members.sort(key=email_sort_key)
        threads[root] = members

    ordered = dict(sorted(threads.items(), key=lambda item: (email_sort_key(item[1][0]), item[0])))

    logger.debug(
        "threads_grouped",
        emails=len(emails),
        buckets=len(buckets),
        threads=len(ordered),
        header_merges=header_merges,
        subject_merges=subject_merges,
    )
    return ordered


def _header_ids(email: EmailRecord) -> set[str]:
    ids = set(split_references(email.references))
    if email.message_id:
        ids.add(email.message_id)
    if email.in_reply_to:
        ids.add(email.in_reply_to)
    return ids


async def fetch_full_thread_emails(
    window_emails: Sequence[EmailRecord],
    store: DatabaseStore,
    cutoff: datetime | None = None,
    generic_subjects: Iterable[str] | None = None,
    min_specific_length: int = MIN_SPECIFIC_SUBJECT_LENGTH,
    max_hops: int = DEFAULT_MAX_REFERENCE_HOPS,
) -> list[EmailRecord]:
    """Expand a time-windowed set of emails to their full thread history.

    Looks up every stored email linked to the window through Message-ID,
    In-Reply-To or References, repeats the lookup with newly discovered ids
    up to ``max_hops`` times, then adds any email sharing a specific
    normalized subject with the window. This is a bounded closure: chains
    longer than ``max_hops`` reference hops may be cut short.

    Args:
        window_emails: Emails inside the reporting window
        store: Store holding the full email corpus
        cutoff: If given, emails dated after it are dropped
        generic_subjects: Subjects excluded from the subject pass
        min_specific_length: Minimum subject length for the subject pass
        max_hops: Number of reference lookups

    Returns:
        Deduplicated emails sorted by date
    """
    denylist = set(DEFAULT_GENERIC_SUBJECTS if generic_subjects is None else generic_subjects)

    found: dict[str, EmailRecord] = {email.id: email for email in window_emails}
    known_ids: set[str] = set()
    subjects: set[str] = set()
    for email in window_emails:
        known_ids |= _header_ids(email)
        subject = normalize_subject(email.subject)
        if is_specific_subject(subject, denylist, min_specific_length):
            subjects.add(subject)

    frontier = set(known_ids)
    hops = 0
    while frontier and hops < max_hops:
        hops += 1
        linked = await store.find_emails_by_header_ids(frontier)
        new_ids: set[str] = set()
        for email in linked:
            found.setdefault(email.id, email)
            new_ids |= _header_ids(email) - known_ids
        known_ids |= new_ids
        frontier = new_ids

    if subjects:
        for email in await store.find_emails_by_normalized_subjects(subjects):
            found.setdefault(email.id, email)

    emails = list(found.values())
    if cutoff is not None:
        cutoff = to_utc(cutoff)
        emails = [email for email in emails if email.date is None or email.date <= cutoff]

    emails.sort(key=email_sort_key)
    logger.info(
        "thread_history_expanded",
        window_emails=len(window_emails),
        total_emails=len(emails),
        reference_hops=hops,
        specific_subjects=len(subjects),
    )
    return emails


def is_internal_address(address: str | None, our_domain: str) -> bool:
    """Check whether an address belongs to our domain or one of its subdomains."""
    domain = extract_domain(address)
    if not domain:
        return False
    our = our_domain.lower()
    return domain == our or domain.endswith("." + our)


def is_outbound(email: EmailRecord, our_domain: str) -> bool:
    """An email is outbound if it sits in a sent folder or was sent by us."""
    return email.is_sent_folder or is_internal_address(email.from_address, our_domain)


def identify_external_contact(
    emails: Sequence[EmailRecord],
    our_domain: str,
) -> ExternalContact | None:
    """Find the external party of a thread.

    Walks the thread in order and returns the first inbound sender outside
    our domain, or the first external recipient of one of our outbound
    emails, whichever comes first.

    Args:
        emails: Thread emails, oldest first
        our_domain: Our own email domain

    Returns:
        ExternalContact, or None if the thread is entirely internal
    """
    for email in emails:
        if not is_outbound(email, our_domain):
            if email.from_address:
                return ExternalContact(
                    email=email.from_address,
                    name=email.from_name or email.from_address,
                )
            continue

        for recipient in email.to_addresses:
            if extract_domain(recipient) and not is_internal_address(recipient, our_domain):
                return ExternalContact(email=recipient, name=recipient)

    return None
