"""
Key generation, PEM helpers, CSR creation and the offline self-signed leaf.

Boundary: this module owns everything cryptographic that is *certificate*-specific.
The account key is an EC P-256 key (generate_ec_key); certificate keys are
RSA-2048 unless a previous key is reused.
"""
from __future__ import annotations

import datetime
from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]

SELF_SIGNED_VALIDITY_YEARS = 10


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key for a domain certificate."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def generate_ec_key() -> ec.EllipticCurvePrivateKey:
    """Generate an EC P-256 private key (used for the ACME account)."""
    return ec.generate_private_key(ec.SECP256R1())


def private_key_to_pem(key: PrivateKey) -> str:
    """Serialize a private key to an unencrypted PEM string."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def load_private_key_pem(pem: Union[str, bytes]) -> PrivateKey:
    """
    Parse an unencrypted PEM private key.

    Raises ValueError for anything that is not an RSA or EC private key in PEM form.
    """
    if isinstance(pem, str):
        pem = pem.encode()
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"not a PEM private key: {exc}") from exc
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError(f"unsupported private key type {type(key).__name__}")
    return key


def create_csr(private_key: PrivateKey, domains: list[str]) -> bytes:
    """
    Create a PEM-encoded CSR for *domains*.

    The first domain is the subject common name; every domain (first included)
    is listed as a SubjectAlternativeName.
    """
    all_domains = list(dict.fromkeys(domains))  # deduplicate, preserve order

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, all_domains[0])])
        )
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in all_domains]),
            critical=False,
        )
    )

    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM)


def add_years(moment: datetime.datetime, years: int) -> datetime.datetime:
    """Shift *moment* by whole calendar years; Feb 29 rolls over to Mar 1."""
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, month=3, day=1)


def create_self_signed(
    domains: list[str],
    now: datetime.datetime | None = None,
) -> tuple[str, str]:
    """
    Build a self-signed server certificate for *domains*, valid 10 years.

    Returns (certificate_pem, private_key_pem).
    """
    now = (now or datetime.datetime.now(datetime.timezone.utc)).replace(microsecond=0)
    key = generate_rsa_key()
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(add_years(now, SELF_SIGNED_VALIDITY_YEARS))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
            critical=False,
        )
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
    return cert_pem, private_key_to_pem(key)
