"""PO sync processing engines.

This package provides:
- Thread resolution for synced emails
- Trusted-domain filtering of PO threads
- The alert lifecycle manager
"""

from posync.engine.alerts import (
    AlertCycleResult,
    AlertManager,
    CategorizedThread,
    EscalationResult,
    PoDetails,
)
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
from posync.engine.trusted_domains import (
    TrustedDomainSet,
    filter_trusted_emails,
    flag_untrusted_threads,
    get_trusted_domains,
    is_domain_trusted,
)

__all__ = [
    # Alerts
    "AlertCycleResult",
    "AlertManager",
    "CategorizedThread",
    "EscalationResult",
    "PoDetails",
    # Threads
    "DisjointSet",
    "ExternalContact",
    "fetch_full_thread_emails",
    "group_emails_into_threads",
    "identify_external_contact",
    "is_outbound",
    "is_specific_subject",
    "resolve_thread_id",
    # Trust
    "TrustedDomainSet",
    "filter_trusted_emails",
    "flag_untrusted_threads",
    "get_trusted_domains",
    "is_domain_trusted",
]
