"""Email header helpers shared by the store, thread resolution and trust filter.

All helpers are total: malformed input yields an empty result, never an
exception.
"""

from __future__ import annotations

import json

import regex

# Regex timeout for security (passed at match time)
REGEX_TIMEOUT = 1.0

# Leading reply/forward markers (Re:, RE:, Fwd:, FW:, Fw:)
SUBJECT_PREFIX_PATTERN = regex.compile(r"^(?:re|fwd?|fw)\s*:\s*", regex.IGNORECASE)

# Leading mailing-list or system tags such as "[External]"
SUBJECT_TAG_PATTERN = regex.compile(r"^\[[^\]]*\]\s*")

DOMAIN_PATTERN = regex.compile(r"@([^@\s>]+)$")

# Mailbox names the sync collaborator uses for our own outgoing mail
SENT_MAILBOXES = frozenset(
    {"Sent", "Sent Items", "Sent Messages", "INBOX.Sent", "INBOX.Sent Messages"}
)


def normalize_subject(subject: str | None) -> str:
    """Normalize a subject for thread comparison.

    Strips any chain of Re:/Fwd:/Fw: prefixes and [tags], then trims and
    lowercases.

    Args:
        subject: Raw subject header

    Returns:
        Normalized subject, or "" for an empty subject
    """
    if not subject:
        return ""

    normalized = subject.strip()
    try:
        while True:
            stripped = SUBJECT_PREFIX_PATTERN.sub("", normalized, timeout=REGEX_TIMEOUT)
            stripped = SUBJECT_TAG_PATTERN.sub("", stripped, timeout=REGEX_TIMEOUT).strip()
            if stripped == normalized:
                break
            normalized = stripped
    except (regex.error, TimeoutError):
        return subject.strip().lower()

    return normalized.lower()


def split_references(references: str | None) -> list[str]:
    """Split a References header into message ids, oldest first."""
    if not references:
        return []
    return [ref for ref in references.split() if ref]


def parse_recipients(raw: str | list[str] | tuple[str, ...] | None) -> list[str]:
    """Parse a stored recipient list.

    The sync collaborator stores a JSON array of addresses. Older rows and
    hand-edited data may hold a comma-separated string instead.

    Args:
        raw: JSON array text, comma-separated text, or an already-parsed sequence

    Returns:
        List of non-empty address strings (empty when nothing can be parsed)
    """
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [addr.strip() for addr in raw if isinstance(addr, str) and addr.strip()]

    text = raw.strip()
    if not text:
        return []

    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return [part.strip() for part in text.split(",") if part.strip()]

    if isinstance(parsed, list):
        return [addr.strip() for addr in parsed if isinstance(addr, str) and addr.strip()]
    if isinstance(parsed, str) and parsed.strip():
        return [parsed.strip()]
    return []


def extract_domain(email: str | None) -> str | None:
    """Extract the lowercase domain from an email address.

    Args:
        email: Email address (may be wrapped in angle brackets)

    Returns:
        Domain, or None if the address is invalid
    """
    if not email:
        return None
    match = DOMAIN_PATTERN.search(email.strip().rstrip(">"))
    if not match:
        return None
    return match.group(1).lower()
