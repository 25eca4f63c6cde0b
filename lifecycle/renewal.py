"""
Renewal decision: is the stored certificate due for replacement?

A certificate is renewed once two thirds of its validity window have elapsed,
i.e. at ``not_after - (not_after - not_before) / 3``.  Missing or unparseable
data always means "renew".
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from cryptography import x509

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenewalDecision:
    needs_renewal: bool
    reason: str
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    renew_after: Optional[datetime] = None


def parse_validity(pem: bytes) -> tuple[datetime, datetime]:
    """Return (not_before, not_after) of the leaf (first) certificate in *pem*, as UTC datetimes."""
    cert = x509.load_pem_x509_certificates(pem)[0]
    # cryptography >= 42 exposes timezone-aware accessors
    try:
        return cert.not_valid_before_utc, cert.not_valid_after_utc
    except AttributeError:
        return (
            cert.not_valid_before.replace(tzinfo=timezone.utc),
            cert.not_valid_after.replace(tzinfo=timezone.utc),
        )


def renewal_threshold(not_before: datetime, not_after: datetime) -> datetime:
    return not_after - (not_after - not_before) / 3


def check_renewal(
    raw: Optional[bytes],
    now: Optional[datetime] = None,
    force: bool = False,
) -> RenewalDecision:
    """
    Decide whether the certificate stored as *raw* (full-chain PEM) needs renewal.

    Being exactly at the threshold counts as due.
    """
    if force:
        return RenewalDecision(True, "renewal forced")
    if not raw:
        return RenewalDecision(True, "no certificate stored")

    try:
        not_before, not_after = parse_validity(raw)
    except ValueError as exc:
        logger.warning("Failed to parse stored certificate, renewing: %s", exc)
        return RenewalDecision(True, "stored certificate unparseable")

    now = now or datetime.now(timezone.utc)
    threshold = renewal_threshold(not_before, not_after)
    if now >= threshold:
        reason = "certificate expired" if now >= not_after else "renewal window reached"
        return RenewalDecision(True, reason, not_before, not_after, threshold)
    return RenewalDecision(False, "certificate still fresh", not_before, not_after, threshold)
