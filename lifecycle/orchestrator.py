"""
One check-and-renew pass for a single domain set.

Flow:
  check existing  →  (fresh)  done
                  →  (due)    self-signed  → commit
                              ACME: load/create account → register if needed
                                    → bind HTTP-01 listener → load old key (hint)
                                    → obtain → commit

The commit writes full chain and private key in one store transaction.  The
account write after registration is separate and not transactional with it:
losing it only means registering again on the next run.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from acme import messages

from config import Settings
from issuer.client import AcmeIssuer, IssuedCertificate
from issuer.crypto import PrivateKey, create_self_signed, load_private_key_pem
from issuer.http_challenge import HTTP01Responder
from lifecycle.account import Account, decode_account, encode_account
from lifecycle.errors import AccountCorruptError, MalformedAccountError, MalformedKeyError, MissingEmailError
from lifecycle.renewal import check_renewal, parse_validity
from storage.kv import KeyValueStore, Put

logger = logging.getLogger(__name__)

OUTCOME_SKIPPED = "skipped"
OUTCOME_RENEWED = "renewed"
OUTCOME_SELF_SIGNED = "self_signed"


class ChallengeResponder(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...

    def add(self, path: str, validation: str) -> None: ...


class Issuer(Protocol):
    def register(self) -> messages.RegistrationResource: ...

    def set_challenge_responder(self, responder: ChallengeResponder) -> None: ...

    def obtain(self, domains: list[str], reuse_key: Optional[PrivateKey] = None) -> IssuedCertificate: ...


@dataclass(frozen=True)
class RunResult:
    outcome: str
    not_after: Optional[datetime] = None


class CertificateRenewer:
    """
    Drives one renewal pass against *store*.

    *issuer_factory* builds the ACME issuer for a loaded account and
    *responder_factory* the HTTP-01 listener for a port; both default to the
    real implementations and are swapped for fakes in tests.
    """

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        issuer_factory: Optional[Callable[[Account], Issuer]] = None,
        responder_factory: Optional[Callable[[int], ChallengeResponder]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.settings = settings
        self.store = store
        self.issuer_factory = issuer_factory or (lambda account: AcmeIssuer.from_settings(settings, account))
        self.responder_factory = responder_factory or HTTP01Responder
        self.clock = clock

    def run(self) -> RunResult:
        s = self.settings

        # Self-signed + force regenerates unconditionally without reading anything
        if not (s.SELF_SIGNED and s.FORCE_RENEW):
            decision = check_renewal(self.store.get(s.fullchain_key), now=self.clock(), force=s.FORCE_RENEW)
            if not decision.needs_renewal:
                logger.info("Certificate is valid until %s. Not refreshing.", decision.not_after)
                return RunResult(OUTCOME_SKIPPED, decision.not_after)
            logger.info("Renewing certificate for %s: %s", s.primary_domain, decision.reason)

        if s.SELF_SIGNED:
            return self._self_signed()
        return self._acme()

    # ── Self-signed branch ────────────────────────────────────────────────

    def _self_signed(self) -> RunResult:
        domains = self.settings.DOMAINS
        cert_pem, key_pem = create_self_signed(domains, now=self.clock())
        self._commit(cert_pem, key_pem)
        logger.info("Generated new self signed certificate!")
        return RunResult(OUTCOME_SELF_SIGNED, parse_validity(cert_pem.encode())[1])

    # ── ACME branch ───────────────────────────────────────────────────────

    def _acme(self) -> RunResult:
        s = self.settings

        account = self._load_or_create_account()
        issuer = self.issuer_factory(account)
        if not account.registered:
            self._register(issuer, account)

        logger.info("Preparing for challenge...")
        responder = self.responder_factory(s.HTTP_CHALLENGE_PORT)
        responder.start()
        try:
            issuer.set_challenge_responder(responder)
            reuse_key = self._load_existing_key()
            logger.info("Requesting new certificate...")
            issued = issuer.obtain(list(s.DOMAINS), reuse_key=reuse_key)
        finally:
            responder.stop()

        self._commit(issued.fullchain_pem, issued.key_pem)
        logger.info("Acquired new certificate!")
        return RunResult(OUTCOME_RENEWED, _expiry_or_none(issued.fullchain_pem))

    def _load_or_create_account(self) -> Account:
        s = self.settings
        raw = self.store.get(s.account_key)
        if raw is not None:
            try:
                account = decode_account(raw)
            except (MalformedAccountError, MalformedKeyError) as exc:
                raise AccountCorruptError(
                    f"Failed to decode the ACME account stored in {s.account_key}: {exc}"
                ) from exc
            if account.key is None:
                raise AccountCorruptError(f"The ACME account stored in {s.account_key} has no key")
            logger.info("Loaded ACME account from %s", s.account_key)
            return account

        logger.info("Creating new ACME account...")
        if not s.EMAIL:
            raise MissingEmailError(
                f"Flag --email (-e) is required if you don't have an ACME account stored in {s.account_key}"
            )
        return Account.create(s.EMAIL)

    def _register(self, issuer: Issuer, account: Account) -> None:
        account.registration = issuer.register()
        self.store.put(self.settings.account_key, encode_account(account))
        logger.info("Stored ACME account in %s", self.settings.account_key)

    def _load_existing_key(self) -> Optional[PrivateKey]:
        """Previous certificate key, passed to the issuer as a reuse hint.  Best effort."""
        raw = self.store.get(self.settings.privkey_key)
        if not raw:
            return None
        try:
            return load_private_key_pem(raw)
        except ValueError as exc:
            logger.warning("Failed to parse old private key for your certificate: %s", exc)
            return None

    def _commit(self, fullchain_pem: str, key_pem: str) -> None:
        s = self.settings
        self.store.transaction([
            Put(s.fullchain_key, fullchain_pem),
            Put(s.privkey_key, key_pem),
        ])


def _expiry_or_none(fullchain_pem: str) -> Optional[datetime]:
    try:
        return parse_validity(fullchain_pem.encode())[1]
    except ValueError:
        return None
