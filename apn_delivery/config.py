from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from apn_delivery.errors import MissingCertificateError


SUPPORTED_APN_ENVS = {"PRODUCTION", "SANDBOX"}

PRODUCTION_GATEWAY_HOST = "gateway.push.apple.com"
SANDBOX_GATEWAY_HOST = "gateway.sandbox.push.apple.com"
PRODUCTION_FEEDBACK_HOST = "feedback.push.apple.com"
SANDBOX_FEEDBACK_HOST = "feedback.sandbox.push.apple.com"


def _current_apn_env() -> str:
    raw = os.getenv("APN_ENV", "SANDBOX").strip().upper()
    if not raw:
        return "SANDBOX"
    if raw not in SUPPORTED_APN_ENVS:
        raise ValueError(f"Invalid APN_ENV: {raw}. Supported values: {sorted(SUPPORTED_APN_ENVS)}")
    return raw


def _get_first_set(*env_names: str) -> str:
    for env_name in env_names:
        value = os.getenv(env_name, "").strip()
        if value:
            return value
    return ""


def _normalize_database_url(raw_url: str) -> str:
    if raw_url.startswith("postgres://"):
        return raw_url.replace("postgres://", "postgresql+psycopg2://", 1)
    return raw_url


def _build_database_url() -> str:
    explicit = _get_first_set("APN_DATABASE_URL", "DATABASE_URL")
    if explicit:
        return _normalize_database_url(explicit)

    # Local dev fallback when DATABASE_URL is not set.
    sqlite_file = Path(os.getenv("SQLITE_DB_PATH", "./apn.db")).as_posix()
    if sqlite_file.startswith("/"):
        return f"sqlite:///{sqlite_file}"
    return f"sqlite:///./{sqlite_file.lstrip('./')}"


def _optional_int(env_name: str) -> int | None:
    raw = os.getenv(env_name, "").strip()
    return int(raw) if raw else None


def normalize_environment(environment: str | None) -> str | None:
    if environment is None:
        return None
    clean = environment.strip().upper()
    if clean not in SUPPORTED_APN_ENVS:
        raise ValueError(f"Invalid APN environment: {environment}. Supported values: {sorted(SUPPORTED_APN_ENVS)}")
    return clean


@dataclass(frozen=True)
class ApnCredentials:
    """Everything a gateway or feedback connection needs to open."""

    certificate: bytes
    passphrase: str
    gateway_host: str
    gateway_port: int
    feedback_host: str
    feedback_port: int
    feedback_passphrase: str = ""


@dataclass(frozen=True)
class Settings:
    apn_env: str = _current_apn_env()
    gateway_port: int = int(os.getenv("APN_GATEWAY_PORT", "2195"))
    feedback_port: int = int(os.getenv("APN_FEEDBACK_PORT", "2196"))
    gateway_host_override: str = os.getenv("APN_GATEWAY_HOST", "").strip()
    feedback_host_override: str = os.getenv("APN_FEEDBACK_HOST", "").strip()
    passphrase: str = os.getenv("APN_PASSPHRASE", "")
    feedback_passphrase: str = os.getenv("APN_FEEDBACK_PASSPHRASE", os.getenv("APN_PASSPHRASE", ""))

    poll_timeout_seconds: float = float(os.getenv("APN_POLL_TIMEOUT_SECONDS", "1.0"))
    connect_timeout_seconds: float = float(os.getenv("APN_CONNECT_TIMEOUT_SECONDS", "10"))
    expiry_days: int = int(os.getenv("APN_EXPIRY_DAYS", "30"))
    max_delivery_attempts: int | None = _optional_int("APN_MAX_DELIVERY_ATTEMPTS")
    oversized_policy: str = os.getenv("APN_OVERSIZED_POLICY", "abort").strip().lower()

    database_url: str = _build_database_url()

    @property
    def expiry_seconds(self) -> int:
        return self.expiry_days * 24 * 60 * 60

    def resolve_environment(self, environment: str | None = None) -> str:
        return normalize_environment(environment) or self.apn_env

    def gateway_host(self, environment: str | None = None) -> str:
        env = normalize_environment(environment)
        if env is None and self.gateway_host_override:
            return self.gateway_host_override
        if (env or self.apn_env) == "PRODUCTION":
            return PRODUCTION_GATEWAY_HOST
        return SANDBOX_GATEWAY_HOST

    def feedback_host(self, environment: str | None = None) -> str:
        env = normalize_environment(environment)
        if env is None and self.feedback_host_override:
            return self.feedback_host_override
        if (env or self.apn_env) == "PRODUCTION":
            return PRODUCTION_FEEDBACK_HOST
        return SANDBOX_FEEDBACK_HOST

    def credentials_for(self, certificate: bytes | str | None, environment: str | None = None) -> ApnCredentials:
        if not certificate:
            raise MissingCertificateError()
        if isinstance(certificate, str):
            certificate = certificate.encode("utf-8")
        return ApnCredentials(
            certificate=certificate,
            passphrase=self.passphrase,
            gateway_host=self.gateway_host(environment),
            gateway_port=self.gateway_port,
            feedback_host=self.feedback_host(environment),
            feedback_port=self.feedback_port,
            feedback_passphrase=self.feedback_passphrase,
        )


settings = Settings()


def get_settings() -> Settings:
    return settings
