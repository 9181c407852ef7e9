# localroute/core/config.py

from __future__ import annotations

import ipaddress
from pathlib import Path
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from localroute.utils.commands import split_command


CERT_BACKENDS = frozenset({"auto", "mkcert", "self-signed"})
LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR"})


class Settings(BaseSettings):
    """Runtime settings, read from ``LOCALROUTE_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="LOCALROUTE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Inputs and generated files ──
    SITES_FILE: Path = Path("sites.conf")
    PROXY_CONFIG_PATH: Path = Path("docker/nginx/nginx.conf")
    RESOLVER_CONFIG_PATH: Path = Path("docker/dnsmasq/dnsmasq.conf")
    CERT_DIR: Path = Path("ssl")
    PROXY_CERT_DIR: str = "/etc/nginx/ssl"

    # ── Addresses ──
    LOCAL_SERVICE_ADDRESS: str = "172.20.0.2"
    RESOLVER_ADDRESS: str = "127.0.0.1"
    RESOLVER_PORT: int = 53
    FALLBACK_RESOLVERS: List[str] = ["1.1.1.1", "8.8.8.8"]
    RESOLVER_CACHE_SIZE: int = 1000

    # ── System resolver ──
    SYSTEM_RESOLV_CONF: Path = Path("/etc/resolv.conf")
    SYSTEM_RESOLV_BACKUP: Path = Path("/etc/resolv.conf.backup")
    SYSTEM_RESOLVER_TIMEOUT: int = 1
    PRIVILEGE_COMMAND: str = ""
    RELEASE_DNS_PORT: bool = False

    # ── Services ──
    COMPOSE_COMMAND: str = "docker compose"
    COMPOSE_PROJECT_DIR: Path = Path(".")
    COMMAND_TIMEOUT_SECONDS: int = 120
    READINESS_TIMEOUT_SECONDS: float = 30.0
    READINESS_INTERVAL_SECONDS: float = 0.5

    # ── Certificates ──
    CERT_BACKEND: str = "auto"
    CERT_VALIDITY_DAYS: int = 365

    # ── Verification ──
    CHECK_TIMEOUT_SECONDS: float = 5.0
    VERIFY_STAGE_TIMEOUT_SECONDS: float = 30.0
    VERIFY_MAX_WORKERS: int = 8

    # ── Watch mode / logging ──
    WATCH_DEBOUNCE_SECONDS: float = 1.0
    LOG_LEVEL: str = "INFO"

    @field_validator("LOCAL_SERVICE_ADDRESS", "RESOLVER_ADDRESS")
    def validate_address(cls, v):
        return ipaddress.ip_address(v.strip()).compressed

    @field_validator("FALLBACK_RESOLVERS")
    def validate_fallback_resolvers(cls, v):
        if not v:
            raise ValueError("FALLBACK_RESOLVERS needs at least one server")
        return [ipaddress.ip_address(item.strip()).compressed for item in v]

    @field_validator("CERT_BACKEND")
    def validate_cert_backend(cls, v):
        normalized = v.strip().lower()
        if normalized not in CERT_BACKENDS:
            raise ValueError(f"CERT_BACKEND must be one of {', '.join(sorted(CERT_BACKENDS))}")
        return normalized

    @field_validator("LOG_LEVEL")
    def validate_log_level(cls, v):
        normalized = v.strip().upper()
        if normalized not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(sorted(LOG_LEVELS))}")
        return normalized

    @field_validator(
        "RESOLVER_PORT",
        "RESOLVER_CACHE_SIZE",
        "SYSTEM_RESOLVER_TIMEOUT",
        "COMMAND_TIMEOUT_SECONDS",
        "CERT_VALIDITY_DAYS",
        "VERIFY_MAX_WORKERS",
    )
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    # ── helpers ──
    @property
    def privilege_command(self) -> list[str]:
        return split_command(self.PRIVILEGE_COMMAND) if self.PRIVILEGE_COMMAND.strip() else []

    @property
    def compose_command(self) -> list[str]:
        return split_command(self.COMPOSE_COMMAND, "COMPOSE_COMMAND")


settings = Settings()
