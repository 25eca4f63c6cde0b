"""
Error kinds for a renewal run.

Every fatal condition raised by the adapters and the orchestrator derives from
CertLifecycleError so the CLI can report it and exit non-zero.  Third-party
exceptions are wrapped at the adapter boundary (``raise ... from exc``).
"""
from __future__ import annotations


class CertLifecycleError(Exception):
    """Base class for all fatal renewal-run errors."""


# ── Configuration ─────────────────────────────────────────────────────────────


class ConfigError(CertLifecycleError):
    """A required input (domain list, email on first run) is missing or invalid."""


class MissingEmailError(ConfigError):
    """No account is stored yet and no email address was configured."""


# ── Key-value store ───────────────────────────────────────────────────────────


class StoreError(CertLifecycleError):
    """Failure talking to the key-value store."""

    def __init__(self, message: str, key: str = "") -> None:
        self.key = key
        super().__init__(message)


class StoreConnectError(StoreError):
    pass


class StoreReadError(StoreError):
    pass


class StoreWriteError(StoreError):
    pass


class CommitError(StoreWriteError):
    """The final full-chain + private-key transaction failed or was rejected."""


# ── Stored data ───────────────────────────────────────────────────────────────


class MalformedAccountError(CertLifecycleError):
    """The stored account document cannot be decoded."""


class AccountCorruptError(MalformedAccountError):
    """The account stored at the account key is unusable; the run cannot proceed."""


class MalformedKeyError(CertLifecycleError):
    """A key field is present but is not a valid PEM private key."""


# ── ACME ──────────────────────────────────────────────────────────────────────


class ChallengeSetupError(CertLifecycleError):
    """The HTTP-01 challenge responder could not bind its port."""


class RegistrationError(CertLifecycleError):
    """The ACME account registration call failed."""


class IssuanceError(CertLifecycleError):
    """The ACME obtain call failed (validation, rate limits, network, ...)."""
