"""
ACME issuer: account registration and certificate issuance.

The RFC 8555 state machine (nonces, JWS signing, order polling) is delegated to
certbot's ``acme`` package; this adapter only decides *what* to ask for and
translates library failures into RegistrationError / IssuanceError.

The ACME client itself is built lazily on first use, so constructing an
AcmeIssuer never touches the network.
"""
from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import josepy as jose
import requests
from cryptography.hazmat.primitives.asymmetric import rsa
from acme import client as acme_client
from acme import errors as acme_errors
from acme import messages

from issuer.crypto import PrivateKey, create_csr, generate_rsa_key, private_key_to_pem
from lifecycle.errors import IssuanceError, RegistrationError

if TYPE_CHECKING:
    from config import Settings
    from issuer.http_challenge import HTTP01Responder
    from lifecycle.account import Account

logger = logging.getLogger(__name__)

LE_DIRECTORY_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"
LE_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

# ClientNetwork re-raises connection failures as ValueError("Requesting <host><path>: ...")
_ACME_FAILURES = (acme_errors.Error, jose.errors.Error, requests.RequestException, ValueError)


def _account_jwk(key: PrivateKey) -> tuple[jose.JWK, jose.JWASignature]:
    """Wrap the account key for JWS signing; accounts are EC P-256, RSA is tolerated."""
    if isinstance(key, rsa.RSAPrivateKey):
        return jose.JWKRSA(key=key), jose.RS256
    return jose.JWKEC(key=key), jose.ES256


@dataclass(frozen=True)
class IssuedCertificate:
    """Result of a successful obtain: bundled chain (leaf first) and its private key."""

    fullchain_pem: str
    key_pem: str


class AcmeIssuer:
    """
    Registers *account* and obtains certificates from the CA at *directory_url*.

    HTTP-01 is the only challenge type offered; the responder must be attached
    with set_challenge_responder() and already listening before obtain().
    """

    def __init__(
        self,
        directory_url: str,
        account: "Account",
        user_agent: str = "letsencrypt-etcd",
        timeout: int = 90,
        insecure: bool = False,
    ) -> None:
        self.directory_url = directory_url
        self.account = account
        self.user_agent = user_agent
        self.timeout = timeout
        self.insecure = insecure
        self._jwk, self._alg = _account_jwk(account.key)
        self._responder: Optional["HTTP01Responder"] = None
        self._acme: Optional[acme_client.ClientV2] = None

    @classmethod
    def from_settings(cls, settings: "Settings", account: "Account") -> "AcmeIssuer":
        return cls(
            directory_url=settings.acme_directory,
            account=account,
            user_agent=settings.ACME_USER_AGENT,
            timeout=settings.ACME_TIMEOUT,
            insecure=settings.ACME_INSECURE,
        )

    # ── Account ───────────────────────────────────────────────────────────

    def register(self) -> messages.RegistrationResource:
        """
        POST /newAccount with the terms of service accepted.

        If the CA already knows this key it answers with the existing account's
        location; that registration is fetched and returned instead.
        """
        try:
            client = self._client()
            new_reg = messages.NewRegistration.from_data(
                email=self.account.email or None,
                terms_of_service_agreed=True,
            )
            try:
                regr = client.new_account(new_reg)
            except acme_errors.ConflictError as exc:
                logger.info("Account key already registered at %s; querying it", exc.location)
                regr = client.query_registration(
                    messages.RegistrationResource(uri=exc.location, body=messages.Registration())
                )
        except _ACME_FAILURES as exc:
            raise RegistrationError(f"Failed to create ACME account: {exc}") from exc

        logger.info("Registered ACME account: %s", regr.uri)
        return regr

    # ── Issuance ──────────────────────────────────────────────────────────

    def set_challenge_responder(self, responder: "HTTP01Responder") -> None:
        self._responder = responder

    def obtain(
        self,
        domains: list[str],
        reuse_key: Optional[PrivateKey] = None,
    ) -> IssuedCertificate:
        """
        Order a certificate for *domains* and answer every HTTP-01 challenge.

        *reuse_key* keeps the previous certificate key; otherwise a fresh
        RSA-2048 key is generated.  Returns the bundled chain and the key PEM.
        """
        if self._responder is None:
            raise IssuanceError("No HTTP-01 challenge responder configured")

        key = reuse_key if reuse_key is not None else generate_rsa_key()
        csr_pem = create_csr(key, domains)

        try:
            client = self._client()
            order = client.new_order(csr_pem)
            for authzr in order.authorizations:
                self._answer_authorization(client, authzr)

            deadline = datetime.datetime.now() + datetime.timedelta(seconds=self.timeout)
            order = client.poll_and_finalize(order, deadline=deadline)
        except _ACME_FAILURES as exc:
            raise IssuanceError(f"Failed to obtain certificate for {', '.join(domains)}: {exc}") from exc

        if not order.fullchain_pem:
            raise IssuanceError("Order finalized but no certificate chain was returned")

        return IssuedCertificate(fullchain_pem=order.fullchain_pem, key_pem=private_key_to_pem(key))

    # ── Internal ──────────────────────────────────────────────────────────

    def _answer_authorization(
        self,
        client: acme_client.ClientV2,
        authzr: messages.AuthorizationResource,
    ) -> None:
        domain = authzr.body.identifier.value
        # CAs may reuse an earlier validation for the same account (RFC 8555 §7.5)
        if authzr.body.status == messages.STATUS_VALID:
            logger.info("Authorization for %s already valid; skipping challenge", domain)
            return

        challb = next(
            (c for c in authzr.body.challenges if c.chall.typ == "http-01"),
            None,
        )
        if challb is None:
            raise IssuanceError(f"CA offered no http-01 challenge for {domain}")

        response, validation = challb.response_and_validation(self._jwk)
        self._responder.add(challb.chall.path, validation)
        logger.info("Answering http-01 challenge for %s", domain)
        client.answer_challenge(challb, response)

    def _client(self) -> acme_client.ClientV2:
        if self._acme is None:
            net = acme_client.ClientNetwork(
                self._jwk,
                account=self.account.registration,
                alg=self._alg,
                verify_ssl=not self.insecure,
                user_agent=self.user_agent,
                timeout=self.timeout,
            )
            directory = acme_client.ClientV2.get_directory(self.directory_url, net)
            self._acme = acme_client.ClientV2(directory, net)
        return self._acme
