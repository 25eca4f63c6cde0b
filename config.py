"""
Application configuration via Pydantic Settings.

Values come from environment variables or a .env file; command-line flags are
passed to load_settings() as overrides and win over both.  The resulting
Settings object is immutable and is handed explicitly to everything that needs it.
"""
from __future__ import annotations

from typing import List, Literal

from pydantic import ValidationError, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from issuer.client import LE_DIRECTORY_PRODUCTION, LE_DIRECTORY_STAGING
from lifecycle.errors import ConfigError

ACCOUNT_KEY_STAGING = "/letsencrypt-with-etcd/staging-account"
ACCOUNT_KEY_PRODUCTION = "/letsencrypt-with-etcd/production-account"


class _CommaFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings calls json.loads() on complex-typed fields (e.g.
    List[str]) before field_validators run.  A plain comma-separated value like
    ``example.com,www.example.com`` is not valid JSON, so hand the raw string
    through and let the parse_domains validator split it.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _CSVEnvSource(_CommaFallbackMixin, EnvSettingsSource):
    pass


class _CSVDotEnvSource(_CommaFallbackMixin, DotEnvSettingsSource):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # ── Certificate request ────────────────────────────────────────────────
    EMAIL: str = ""
    DOMAINS: List[str] = []
    CERT_DIRECTORY: str = "/letsencrypt-with-etcd/"
    FORCE_RENEW: bool = False
    SELF_SIGNED: bool = False

    # ── ACME ───────────────────────────────────────────────────────────────
    STAGING: bool = False
    # Overrides the Let's Encrypt preset (e.g. a local Pebble instance)
    ACME_DIRECTORY_URL: str = ""
    ACME_USER_AGENT: str = "https://github.com/Jille/letsencrypt-with-etcd"
    ACME_TIMEOUT: int = 90
    ACME_INSECURE: bool = False    # Skip TLS verification (never use in production)

    # ── HTTP-01 Challenge ──────────────────────────────────────────────────
    HTTP_CHALLENGE_PORT: int = 8080

    # ── etcd ───────────────────────────────────────────────────────────────
    ETCD_HOST: str = "localhost"
    ETCD_PORT: int = 2379
    ETCD_PROTOCOL: Literal["http", "https"] = "http"
    ETCD_CA_CERT: str = ""
    ETCD_CERT: str = ""
    ETCD_KEY: str = ""
    ETCD_API_PATH: str = "/v3/"
    ETCD_TIMEOUT: int = 30

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("DOMAINS", mode="before")
    @classmethod
    def parse_domains(cls, v: object) -> List[str]:
        """Accept a comma-separated string or a list (whose items may contain commas)."""
        if isinstance(v, str):
            v = [v]
        if isinstance(v, (list, tuple)):
            return [d.strip() for item in v for d in str(item).split(",") if d.strip()]
        return v  # type: ignore[return-value]

    @field_validator("DOMAINS")
    @classmethod
    def require_a_labels(cls, v: List[str]) -> List[str]:
        """Internationalized names must be given Punycode-encoded (xn--...)."""
        for domain in v:
            if not domain.isascii():
                raise ValueError(
                    f"Domain {domain!r} must be an A-label (ASCII) name, "
                    f"e.g. {domain.encode('idna').decode('ascii')!r}"
                )
        return v

    @field_validator("CERT_DIRECTORY")
    @classmethod
    def normalize_directory(cls, v: str) -> str:
        return v.rstrip("/") + "/"

    @field_validator("HTTP_CHALLENGE_PORT")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"HTTP_CHALLENGE_PORT must be between 1 and 65535, got {v}")
        return v

    @model_validator(mode="after")
    def require_domains(self) -> "Settings":
        if not self.DOMAINS:
            raise ValueError("DOMAINS is required (flag --domains / -d)")
        return self

    # ── Derived values ─────────────────────────────────────────────────────

    @property
    def primary_domain(self) -> str:
        """First requested domain: storage-key namespace and certificate common name."""
        return self.DOMAINS[0]

    @property
    def account_key(self) -> str:
        return ACCOUNT_KEY_STAGING if self.STAGING else ACCOUNT_KEY_PRODUCTION

    @property
    def fullchain_key(self) -> str:
        return f"{self.CERT_DIRECTORY}{self.primary_domain}-fullchain.pem"

    @property
    def privkey_key(self) -> str:
        return f"{self.CERT_DIRECTORY}{self.primary_domain}-key.pem"

    @property
    def acme_directory(self) -> str:
        if self.ACME_DIRECTORY_URL:
            return self.ACME_DIRECTORY_URL
        return LE_DIRECTORY_STAGING if self.STAGING else LE_DIRECTORY_PRODUCTION


def load_settings(**overrides: object) -> Settings:
    """Build the run configuration; *overrides* (CLI flags) beat env and .env."""
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
