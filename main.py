"""
letsencrypt-etcd — CLI entry point.

Performs one check-and-renew pass and exits; run it periodically (cron,
Kubernetes CronJob, systemd timer).

Usage:
  python main.py -e admin@example.com -d example.com,www.example.com
  python main.py -d example.com --staging --force-renew
  python main.py -d internal.example.com --self-signed

etcd connection settings come from the environment (ETCD_HOST, ETCD_PORT, ...),
see config.py.
"""
from __future__ import annotations

import argparse
import logging
import sys

import structlog

from config import load_settings
from lifecycle.errors import CertLifecycleError

# ── Logging setup ─────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)


# ── Runner ────────────────────────────────────────────────────────────────────


def run_once(overrides: dict) -> int:
    """Execute one renewal pass; return the process exit code."""
    from lifecycle.orchestrator import CertificateRenewer
    from storage.kv import EtcdStore

    try:
        settings = load_settings(**overrides)
        store = EtcdStore.connect(settings)
        result = CertificateRenewer(settings, store).run()
    except CertLifecycleError as exc:
        log.error("%s", exc)
        return 1

    log.info("Run complete — %s (valid until %s)", result.outcome, result.not_after or "unknown")
    return 0


# ── CLI ───────────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Obtain or renew a TLS certificate and store it in etcd",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  letsencrypt-etcd -e admin@example.com -d example.com -d www.example.com
  letsencrypt-etcd -d example.com --directory /certs/ --staging
  letsencrypt-etcd -d example.com --self-signed --force-renew
        """,
    )
    parser.add_argument(
        "-p", "--port",
        type=int,
        metavar="PORT",
        help="Port to listen on for HTTP-01 challenges (default: 8080)",
    )
    parser.add_argument(
        "-e", "--email",
        metavar="EMAIL",
        help="Your email address (required when no account is stored yet)",
    )
    parser.add_argument(
        "-d", "--domains",
        action="append",
        metavar="DOMAIN[,DOMAIN...]",
        help="Domains to request a certificate for; the first is the primary (repeatable)",
    )
    parser.add_argument(
        "--directory",
        metavar="PREFIX",
        help="Key prefix to put certificates and private keys under (default: /letsencrypt-with-etcd/)",
    )
    parser.add_argument(
        "--staging",
        action="store_true",
        default=None,
        help="Use the Let's Encrypt staging environment",
    )
    parser.add_argument(
        "--force-renew",
        action="store_true",
        default=None,
        help="Force renewal even if the certificate isn't due",
    )
    parser.add_argument(
        "--self-signed",
        action="store_true",
        default=None,
        help="Don't contact the CA; create a self-signed certificate",
    )
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict:
    """Map CLI flags onto Settings fields, skipping flags that were not given."""
    mapping = {
        "HTTP_CHALLENGE_PORT": args.port,
        "EMAIL": args.email,
        "DOMAINS": args.domains,
        "CERT_DIRECTORY": args.directory,
        "STAGING": args.staging,
        "FORCE_RENEW": args.force_renew,
        "SELF_SIGNED": args.self_signed,
    }
    return {k: v for k, v in mapping.items() if v is not None}


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    sys.exit(run_once(overrides_from_args(args)))


if __name__ == "__main__":
    main()
