"""
Key-value storage for accounts and certificate pairs.

Everything the tool persists lives in etcd, addressed by string keys:
  /letsencrypt-with-etcd/{staging,production}-account   — ACME account document
  <directory><primary>-fullchain.pem                    — bundled chain
  <directory><primary>-key.pem                          — certificate private key

EtcdStore talks to the etcd v3 JSON gateway through etcd3gw.  The full-chain and
key entries are only ever written through transaction(), so readers see both
updated or neither.
"""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol, Union

from etcd3gw.client import Etcd3Client
from etcd3gw.exceptions import Etcd3Exception

from lifecycle.errors import CommitError, StoreConnectError, StoreReadError, StoreWriteError

if TYPE_CHECKING:
    from config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Put:
    key: str
    value: Union[str, bytes]


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, value: Union[str, bytes]) -> None: ...

    def transaction(self, puts: list[Put]) -> None: ...


def _b64(data: Union[str, bytes]) -> str:
    """etcd's JSON gateway carries keys and values as standard base64."""
    if isinstance(data, str):
        data = data.encode()
    return base64.b64encode(data).decode()


class EtcdStore:
    """KeyValueStore backed by an etcd cluster (v3 gRPC gateway)."""

    def __init__(self, client: Etcd3Client) -> None:
        self._client = client

    @classmethod
    def connect(cls, settings: "Settings") -> "EtcdStore":
        """Build a client from *settings* and verify the cluster answers."""
        logger.info("Connecting to etcd at %s:%d...", settings.ETCD_HOST, settings.ETCD_PORT)
        client = Etcd3Client(
            host=settings.ETCD_HOST,
            port=settings.ETCD_PORT,
            protocol=settings.ETCD_PROTOCOL,
            ca_cert=settings.ETCD_CA_CERT or None,
            cert_key=settings.ETCD_KEY or None,
            cert_cert=settings.ETCD_CERT or None,
            timeout=settings.ETCD_TIMEOUT,
            api_path=settings.ETCD_API_PATH,
        )
        try:
            client.status()
        except Etcd3Exception as exc:
            raise StoreConnectError(f"Failed to connect to etcd: {exc}") from exc
        logger.info("Connected.")
        return cls(client)

    def get(self, key: str) -> Optional[bytes]:
        """Return the value stored at *key*, or None when the key does not exist."""
        try:
            values = self._client.get(key)
        except Etcd3Exception as exc:
            raise StoreReadError(f"Failed to fetch {key}: {exc}", key=key) from exc
        if not values:
            return None
        return values[0]

    def put(self, key: str, value: Union[str, bytes]) -> None:
        try:
            self._client.put(key, value)
        except Etcd3Exception as exc:
            raise StoreWriteError(f"Failed to write {key}: {exc}", key=key) from exc

    def transaction(self, puts: list[Put]) -> None:
        """Apply every put in one etcd transaction (no compare clauses)."""
        txn = {
            "compare": [],
            "success": [
                {"request_put": {"key": _b64(p.key), "value": _b64(p.value)}} for p in puts
            ],
            "failure": [],
        }
        keys = ", ".join(p.key for p in puts)
        try:
            result = self._client.transaction(txn)
        except Etcd3Exception as exc:
            raise CommitError(f"Failed to write {keys}: {exc}") from exc
        if not result.get("succeeded", False):
            raise CommitError(f"Transaction writing {keys} was not applied")
