"""
HTTP-01 challenge responder.

Spins up a minimal HTTP server on a configurable port (default 8080) for the
duration of one obtain call.  Any number of challenge paths can be registered
while it runs; everything else gets a 404.  Binding a privileged port needs
root or CAP_NET_BIND_SERVICE; usually port 80 is forwarded to it instead.
"""
from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Optional

from lifecycle.errors import ChallengeSetupError

logger = logging.getLogger(__name__)

CHALLENGE_PATH_PREFIX = "/.well-known/acme-challenge/"


class _ChallengeHandler(BaseHTTPRequestHandler):
    """Serves registered ACME HTTP-01 challenge paths; 404 for everything else."""

    server: "_ChallengeServer"

    def do_GET(self) -> None:
        validation = self.server.validations.get(self.path)
        if validation is not None and self.path.startswith(CHALLENGE_PATH_PREFIX):
            body = validation.encode()
            self.send_response(200)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
            logger.info("Served HTTP-01 challenge %s to %s", self.path, self.client_address[0])
        else:
            self.send_response(404)
            self.end_headers()

    def log_message(self, fmt: str, *args: object) -> None:
        pass  # access log goes through do_GET


class _ChallengeServer(HTTPServer):
    def __init__(self, address: tuple[str, int], validations: dict[str, str]) -> None:
        super().__init__(address, _ChallengeHandler)
        self.validations = validations


class HTTP01Responder:
    """
    Serves ACME HTTP-01 key authorizations while an order is being validated.

    Usage:
        responder = HTTP01Responder(port=8080)
        responder.start()                 # raises ChallengeSetupError if the bind fails
        responder.add(chall.path, validation)
        # ... tell the CA to verify ...
        responder.stop()
    """

    def __init__(self, port: int = 8080, host: str = "") -> None:
        self.port = port
        self.host = host
        self._validations: dict[str, str] = {}
        self._server: Optional[_ChallengeServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def bound_port(self) -> int:
        """The port actually bound (differs from *port* when 0 was requested)."""
        if self._server is None:
            return self.port
        return self._server.server_address[1]

    def add(self, path: str, validation: str) -> None:
        """Register *validation* as the response body for *path*."""
        self._validations[path] = validation

    def start(self) -> None:
        """Bind the port and serve in a background thread."""
        if self._server is not None:
            raise RuntimeError("Challenge server is already running")

        try:
            self._server = _ChallengeServer((self.host, self.port), self._validations)
        except OSError as exc:
            raise ChallengeSetupError(
                f"Failed to bind HTTP-01 challenge listener on port {self.port}: {exc}"
            ) from exc

        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info("HTTP-01 challenge listener bound on port %d", self.bound_port)

    def stop(self) -> None:
        """Shut down the HTTP server and forget all registered challenges."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        self._validations.clear()

    def __enter__(self) -> "HTTP01Responder":
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()
