"""
Shared pytest fixtures.

In-memory fakes
---------------
MemoryStore, FakeIssuer and FakeResponder stand in for etcd, the CA and the
HTTP-01 listener so the renewal flow can be exercised end to end without any
network.  `make_cert_pem` builds real certificates with a chosen validity window.

etcd availability check
-----------------------
`requires_etcd` skips the integration tests unless an etcd gateway answers on
localhost:2379 (e.g. ``docker run -p 2379:2379 quay.io/coreos/etcd``).
"""
from __future__ import annotations

import datetime
import socket
from typing import Optional

import pytest
from acme import messages
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from config import Settings
from issuer.client import IssuedCertificate
from issuer.crypto import private_key_to_pem
from lifecycle.errors import CommitError
from storage.kv import Put


# ─── etcd availability check ──────────────────────────────────────────────────

def _etcd_running(host: str = "localhost", port: int = 2379) -> bool:
    """Return True if etcd's client port is open."""
    try:
        with socket.create_connection((host, port), timeout=1):
            return True
    except OSError:
        return False


requires_etcd = pytest.mark.skipif(
    not _etcd_running(),
    reason="etcd not running — start with: docker run -p 2379:2379 quay.io/coreos/etcd",
)


# ─── Certificates ─────────────────────────────────────────────────────────────

NOW = datetime.datetime(2026, 3, 15, 12, 0, 0, tzinfo=datetime.timezone.utc)


def make_cert_pem(
    domains: list[str],
    not_before: datetime.datetime,
    not_after: datetime.datetime,
    key: Optional[ec.EllipticCurvePrivateKey] = None,
) -> str:
    """Self-signed EC certificate for *domains* with an explicit validity window."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode()


# ─── Fakes ────────────────────────────────────────────────────────────────────

class MemoryStore:
    """KeyValueStore kept in a dict, recording every read and write."""

    def __init__(self, data: Optional[dict[str, bytes]] = None) -> None:
        self.data: dict[str, bytes] = dict(data or {})
        self.reads: list[str] = []
        self.puts: list[str] = []
        self.transactions: list[list[str]] = []
        self.fail_transactions = False

    def get(self, key: str) -> Optional[bytes]:
        self.reads.append(key)
        return self.data.get(key)

    def put(self, key: str, value) -> None:
        self.puts.append(key)
        self.data[key] = value.encode() if isinstance(value, str) else value

    def transaction(self, puts: list[Put]) -> None:
        if self.fail_transactions:
            raise CommitError("simulated transaction failure")
        staged = {p.key: p.value.encode() if isinstance(p.value, str) else p.value for p in puts}
        self.data.update(staged)
        self.transactions.append([p.key for p in puts])

    @property
    def write_count(self) -> int:
        return len(self.puts) + len(self.transactions)


class FakeIssuer:
    """Issuer that answers instantly with a 90-day certificate."""

    def __init__(self, account, now: datetime.datetime = NOW, error: Optional[Exception] = None) -> None:
        self.account = account
        self.now = now
        self.error = error
        self.register_calls = 0
        self.obtain_calls: list[dict] = []
        self.responder = None

    def register(self) -> messages.RegistrationResource:
        self.register_calls += 1
        return messages.RegistrationResource(
            uri="https://acme.test/acct/1",
            body=messages.Registration(contact=(f"mailto:{self.account.email}",)),
        )

    def set_challenge_responder(self, responder) -> None:
        self.responder = responder

    def obtain(self, domains, reuse_key=None) -> IssuedCertificate:
        self.obtain_calls.append({"domains": list(domains), "reuse_key": reuse_key})
        if self.error is not None:
            raise self.error
        key = reuse_key or ec.generate_private_key(ec.SECP256R1())
        chain = make_cert_pem(domains, self.now, self.now + datetime.timedelta(days=90), key=key)
        return IssuedCertificate(fullchain_pem=chain, key_pem=private_key_to_pem(key))


class FakeResponder:
    def __init__(self, port: int) -> None:
        self.port = port
        self.started = False
        self.stopped = False
        self.validations: dict[str, str] = {}

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def add(self, path: str, validation: str) -> None:
        self.validations[path] = validation


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture()
def make_settings():
    """Build Settings from explicit values only (no env / .env)."""

    def _make(**overrides) -> Settings:
        values = {"DOMAINS": ["example.com"], "EMAIL": "admin@example.com"}
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()
