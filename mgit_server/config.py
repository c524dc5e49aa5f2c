from pathlib import Path
from typing import Annotated
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ORIGIN: str = "http://127.0.0.1:3003"

    # raw 32-byte Ed25519 seed, base64. Empty -> ephemeral key per process.
    SESSION_SIGNING_KEY_B64: str = ""
    SESSION_TTL_SECONDS: int = 60 * 60 * 24

    # challenge store
    CHALLENGE_TTL_SECONDS: int = 300
    CHALLENGE_VERIFIED_RETENTION_SECONDS: int = 3600
    CHALLENGE_MAX_ENTRIES: int = 10_000

    # login event freshness window (0 disables the check)
    EVENT_MAX_AGE_SECONDS: int = 600

    # profile enrichment
    NOSTR_RELAY_URL: str = "wss://relay.damus.io"
    METADATA_ENABLED: bool = True
    METADATA_TIMEOUT_SECONDS: float = 5.0

    NIP05_TIMEOUT_SECONDS: float = 5.0

    # repositories served through the mgit CLI
    REPOS_PATH: Path = Path("repos")
    MGIT_BIN: str = "mgit"

    # prebuilt web front end (optional)
    PUBLIC_DIR: Path = Path("public")

    CORS_ORIGINS: Annotated[list[str], NoDecode] = ["*"]

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: Path = Path("audit")

    LOG_LEVEL: str = "INFO"

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        """
        ORIGIN is the absolute http(s) origin the front end is served from.

        Normalization:
          - strip whitespace and trailing slash
          - require http/https and a hostname
          - lowercase hostname, keep port
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("ORIGIN must start with http:// or https://")

        if not p.hostname:
            raise ValueError("ORIGIN must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, "", "", "", ""))

    @field_validator("NOSTR_RELAY_URL")
    @classmethod
    def normalize_relay_url(cls, v: str) -> str:
        v = (v or "").strip()
        if urlparse(v).scheme not in ("ws", "wss"):
            raise ValueError("NOSTR_RELAY_URL must start with ws:// or wss://")
        return v

    @field_validator("SESSION_TTL_SECONDS", "CHALLENGE_TTL_SECONDS", "CHALLENGE_MAX_ENTRIES")
    @classmethod
    def require_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def normalize_cors_origins(cls, v):
        # accept CORS_ORIGINS="https://a.example,https://b.example" from env
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
            return parts or ["*"]
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()


settings = Settings()
