"""
Configuration for the ClickStudio RBAC server.

Settings are loaded from environment variables or a `.env` file. The
defaults are suitable for local development against an SQLite file;
production deployments must provide the signing and encryption secrets
explicitly or the server refuses to start.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(ENV_PATH, override=False)

APP_VERSION = "1.4.0"

DEV_JWT_SECRET = "dev-jwt-secret-change-me-before-deploying-0000"
DEV_ENCRYPTION_KEY = "dev-encryption-key-change-me-before-deploying-00"
DEV_ENCRYPTION_SALT = "0" * 64

MIN_SECRET_LENGTH = 32
MIN_PBKDF2_ITERATIONS = 100_000

_HEX_SALT_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_WEAK_SECRETS = {
    "your-super-secret-key-change-in-production-min-32-chars!",
    "changeme",
    "change-me",
    "secret",
    "password",
}


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    chstudio_env: str = "dev"
    database_url: str = "sqlite+pysqlite:///./data/rbac.db"

    # Token signing
    jwt_secret: str | None = None
    jwt_issuer: str = "clickstudio"
    jwt_audience: str = "clickstudio-client"
    jwt_access_expiry: str = "15m"
    jwt_refresh_expiry: str = "7d"

    # Credential vault
    rbac_encryption_key: str | None = None
    rbac_encryption_salt: str | None = None
    vault_pbkdf2_iterations: int = 120_000

    # ClickHouse client pool
    pool_idle_timeout_sec: float = 600.0
    pool_cleanup_interval_sec: float = 300.0
    enable_pool_cleanup: bool = True
    clickhouse_request_timeout_sec: int = 300

    # Startup tasks
    auto_create_db: bool = True
    auto_run_migrations: bool = False
    auto_seed_rbac: bool = True
    rbac_admin_email: str = "admin@localhost"
    rbac_admin_username: str = "admin"
    rbac_admin_password: str | None = None

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def app_env(self) -> str:
        env = (self.chstudio_env or "dev").strip().lower()
        if env not in {"dev", "prod"}:
            return "dev"
        return env

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"

    @property
    def signing_secret(self) -> str:
        secret = (self.jwt_secret or "").strip()
        if secret:
            return secret
        if self.is_prod:
            return ""
        return DEV_JWT_SECRET

    @property
    def encryption_key(self) -> str:
        key = (self.rbac_encryption_key or "").strip()
        if key:
            return key
        if self.is_prod:
            return ""
        return DEV_ENCRYPTION_KEY

    @property
    def encryption_salt(self) -> str:
        salt = (self.rbac_encryption_salt or "").strip()
        if salt:
            return salt
        if self.is_prod:
            return ""
        return DEV_ENCRYPTION_SALT

    @property
    def pbkdf2_iterations(self) -> int:
        return max(MIN_PBKDF2_ITERATIONS, int(self.vault_pbkdf2_iterations))


def get_settings() -> Settings:
    return Settings()


def _is_weak_secret(value: str | None) -> bool:
    if not value:
        return True
    value = value.strip()
    if len(value) < MIN_SECRET_LENGTH:
        return True
    return value.lower() in _WEAK_SECRETS


def is_valid_salt(value: str | None) -> bool:
    return bool(value) and bool(_HEX_SALT_RE.match(value.strip()))


def validate_runtime_settings(settings: Settings) -> None:
    logger = logging.getLogger("config")
    raw_env = (settings.chstudio_env or "").strip().lower()
    if raw_env not in {"dev", "prod"}:
        logger.warning("Unknown CHSTUDIO_ENV=%s; defaulting to dev", settings.chstudio_env)

    if settings.is_prod:
        if _is_weak_secret(settings.jwt_secret):
            raise RuntimeError("JWT_SECRET must be set to at least 32 characters in prod.")
        if _is_weak_secret(settings.rbac_encryption_key):
            raise RuntimeError("RBAC_ENCRYPTION_KEY must be set to at least 32 characters in prod.")
        if not is_valid_salt(settings.rbac_encryption_salt):
            raise RuntimeError("RBAC_ENCRYPTION_SALT must be exactly 64 hex characters in prod.")
        if settings.auto_create_db:
            logger.warning("AUTO_CREATE_DB is enabled in prod. Prefer AUTO_RUN_MIGRATIONS.")
        return

    for name, value in (("JWT_SECRET", settings.jwt_secret), ("RBAC_ENCRYPTION_KEY", settings.rbac_encryption_key)):
        if not (value or "").strip():
            logger.warning("%s is missing; dev fallback will be used.", name)
        elif _is_weak_secret(value):
            logger.warning("%s is weak; accepted only because CHSTUDIO_ENV=dev.", name)
    if settings.rbac_encryption_salt and not is_valid_salt(settings.rbac_encryption_salt):
        raise RuntimeError("RBAC_ENCRYPTION_SALT must be exactly 64 hex characters.")
    if not settings.rbac_encryption_salt:
        logger.warning("RBAC_ENCRYPTION_SALT is missing; dev fallback will be used.")
