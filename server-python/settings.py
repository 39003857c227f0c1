"""
Link Gate Settings

All configuration is read once at startup from environment variables
(prefix GATE_) or a .env file and is immutable for the process lifetime.
"""

import ipaddress
from typing import List, Optional
from urllib.parse import urlsplit

from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(RuntimeError):
    """Raised when the gate cannot start with the supplied configuration."""


# Placeholder secrets seen in sample configs; refusing them is the point.
KNOWN_WEAK_SECRETS = {
    "dev-secret-change-in-production",
    "change-me",
    "changeme",
    "secret",
    "default",
}

DEFAULT_UA_DENYLIST = [
    "bot", "crawl", "spider", "slurp", "facebook", "whatsapp",
    "telegram", "discord", "preview", "meta", "curl", "wget",
    "python", "ahrefs", "linkedin", "skype", "slackbot",
    "pinterest", "insomnia", "uptime", "monitor", "go-http",
    "headless", "phantomjs", "selenium", "webdriver", "puppeteer",
    "playwright",
]

DEFAULT_ASN_DENYLIST = [
    "AS15169", "AS32934", "AS13335", "AS14618", "AS8075",
    "AS63949", "AS14061", "AS9009", "AS212238", "AS396982",
]


class Settings(BaseSettings):
    # Destination and signing
    destination_url: str = Field(alias="GATE_DESTINATION_URL")
    secret_key: SecretStr = Field(alias="GATE_SECRET_KEY")
    token_param: str = Field(default="go", alias="GATE_TOKEN_PARAM")

    # Classifier data sets
    ua_denylist: List[str] = Field(default=DEFAULT_UA_DENYLIST, alias="GATE_UA_DENYLIST")
    asn_denylist: List[str] = Field(default=DEFAULT_ASN_DENYLIST, alias="GATE_ASN_DENYLIST")
    network_denylist: List[str] = Field(default=[], alias="GATE_NETWORK_DENYLIST")
    country_allowlist: List[str] = Field(default=[], alias="GATE_COUNTRY_ALLOWLIST")
    preview_safe_paths: List[str] = Field(default=[], alias="GATE_PREVIEW_SAFE_PATHS")

    # Platform-supplied request metadata
    client_ip_headers: List[str] = Field(
        default=["cf-connecting-ip", "x-real-ip", "x-forwarded-for"],
        alias="GATE_CLIENT_IP_HEADERS",
    )
    country_header: str = Field(default="cf-ipcountry", alias="GATE_COUNTRY_HEADER")
    asn_header: str = Field(default="x-client-asn", alias="GATE_ASN_HEADER")

    # Proof engine
    pow_difficulty: int = Field(default=16, ge=1, le=32, alias="GATE_POW_DIFFICULTY")
    score_threshold: int = Field(default=2, ge=1, le=3, alias="GATE_SCORE_THRESHOLD")
    min_pointer_events: int = Field(default=1, ge=0, alias="GATE_MIN_POINTER_EVENTS")
    fallback_enabled: bool = Field(default=True, alias="GATE_FALLBACK_ENABLED")
    fallback_delay_seconds: int = Field(default=8, ge=1, alias="GATE_FALLBACK_DELAY_SECONDS")

    # Token lifetimes
    challenge_ttl_seconds: int = Field(default=120, ge=10, le=900, alias="GATE_CHALLENGE_TTL_SECONDS")
    token_ttl_seconds: int = Field(default=45, ge=30, le=45, alias="GATE_TOKEN_TTL_SECONDS")
    session_ttl_seconds: int = Field(default=12 * 60 * 60, ge=60, alias="GATE_SESSION_TTL_SECONDS")

    # Session cookie
    session_cookie_name: str = Field(default="__gate", alias="GATE_SESSION_COOKIE_NAME")
    session_cookie_secure: bool = Field(default=True, alias="GATE_SESSION_COOKIE_SECURE")

    # Rate limiting (fixed window)
    rate_limit_window_ms: int = Field(default=60_000, ge=1, alias="GATE_RATE_LIMIT_WINDOW_MS")
    rate_limit_max: int = Field(default=60, ge=1, alias="GATE_RATE_LIMIT_MAX")

    # Logging / webhook
    log_level: str = Field(default="INFO", alias="GATE_LOG_LEVEL")
    webhook_url: Optional[str] = Field(default=None, alias="GATE_WEBHOOK_URL")
    webhook_timeout_seconds: float = Field(default=2.0, gt=0, alias="GATE_WEBHOOK_TIMEOUT_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    @field_validator("destination_url")
    @classmethod
    def _check_destination(cls, value: str) -> str:
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("destination must be an absolute http(s) URL")
        return value

    @field_validator("secret_key")
    @classmethod
    def _check_secret(cls, value: SecretStr) -> SecretStr:
        raw = value.get_secret_value()
        if raw.strip().lower() in KNOWN_WEAK_SECRETS:
            raise ValueError("secret is a known placeholder")
        if len(raw) < 32:
            raise ValueError("secret must be at least 32 characters")
        return value

    @field_validator("webhook_url")
    @classmethod
    def _check_webhook(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("webhook must be an absolute http(s) URL")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value}")
        return value

    @field_validator("asn_denylist")
    @classmethod
    def _normalize_asns(cls, value: List[str]) -> List[str]:
        return [normalize_asn(v) for v in value if normalize_asn(v)]

    @field_validator("network_denylist")
    @classmethod
    def _check_networks(cls, value: List[str]) -> List[str]:
        for cidr in value:
            ipaddress.ip_network(cidr, strict=False)
        return value

    @field_validator("country_allowlist")
    @classmethod
    def _normalize_countries(cls, value: List[str]) -> List[str]:
        return [v.strip().upper() for v in value if v.strip()]

    @field_validator("ua_denylist")
    @classmethod
    def _normalize_patterns(cls, value: List[str]) -> List[str]:
        return [v.strip().lower() for v in value if v.strip()]

    @model_validator(mode="after")
    def _check_timings(self) -> "Settings":
        if self.fallback_enabled and self.fallback_delay_seconds >= self.challenge_ttl_seconds:
            raise ValueError("fallback delay must be shorter than the challenge lifetime")
        return self


def normalize_asn(value: Optional[str]) -> str:
    """'as13335', 'AS13335' and '13335' all become 'AS13335'."""
    if value is None:
        return ""
    value = str(value).strip().upper()
    if value.startswith("AS"):
        value = value[2:]
    return f"AS{value}" if value.isdigit() else ""


def load_settings(**overrides) -> Settings:
    """Build Settings, turning validation failures into ConfigurationError.

    Only field names and messages are reported so the secret never reaches
    a log line.
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = ", ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"invalid gate configuration ({problems})") from None
