from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROD_ENV_NAMES = {"prod", "production"}
_NODE_ROLES = {"leader", "member"}
_ADAPTER_MODES = {"real", "noop"}
MAX_NODE_CERT_VALIDITY_DAYS = 365


class Settings(BaseSettings):
    app_name: str = Field(default="MCloud")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="0.1.0")

    database_url: str = Field(default="sqlite+aiosqlite:///data/mcloud.db")
    store_auto_create: bool = Field(default=True)
    store_busy_timeout_ms: int = Field(default=5000)

    node_role: str = Field(default="leader")
    node_hostname: str = Field(default="")
    state_path: str = Field(default="data/state.yaml")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="data/mcloud.log")
    log_db_queries: bool = Field(default=False)
    log_db_query_params: bool = Field(default=False)
    log_sql_max_length: int = Field(default=400)

    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=9028)
    operator_token: str = Field(default="")
    metrics_enabled: bool = Field(default=True)

    control_plane_port: int = Field(default=8443)
    adapter_mode: str = Field(default="real")
    storage_device: str = Field(default="/dev/sdb")
    external_timeout_seconds: float = Field(default=120.0, gt=0)
    lxd_command: str = Field(default="lxd")
    lxc_command: str = Field(default="lxc")
    microceph_command: str = Field(default="microceph")
    microovn_command: str = Field(default="microovn")

    bootstrap_token_ttl_seconds: int = Field(default=86400, ge=60)
    ca_validity_days: int = Field(default=3650, ge=365)
    node_cert_validity_days: int = Field(default=365, ge=1)
    request_signature_max_skew_seconds: int = Field(default=30, ge=1)

    maintenance_enabled: bool = Field(default=True)
    maintenance_interval_seconds: int = Field(default=60, ge=1)
    node_heartbeat_timeout_seconds: int = Field(default=90, ge=1)
    expired_token_retention_seconds: int = Field(default=86400, ge=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def is_leader(self) -> bool:
        return self.node_role == "leader"

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        if not self.database_url:
            raise ValueError("DATABASE_URL must be set in .env or environment variables.")
        self.node_role = self.node_role.strip().lower()
        if self.node_role not in _NODE_ROLES:
            raise ValueError(f"NODE_ROLE must be one of: {', '.join(sorted(_NODE_ROLES))}.")
        self.adapter_mode = self.adapter_mode.strip().lower()
        if self.adapter_mode not in _ADAPTER_MODES:
            raise ValueError(f"ADAPTER_MODE must be one of: {', '.join(sorted(_ADAPTER_MODES))}.")
        if self.node_cert_validity_days > MAX_NODE_CERT_VALIDITY_DAYS:
            raise ValueError(
                f"NODE_CERT_VALIDITY_DAYS must not exceed {MAX_NODE_CERT_VALIDITY_DAYS} days."
            )
        if self.app_env.strip().lower() in _PROD_ENV_NAMES:
            issues: list[str] = []
            if self.adapter_mode == "noop":
                issues.append("ADAPTER_MODE=noop is only allowed outside production.")
            if len(self.operator_token) < 32:
                issues.append("OPERATOR_TOKEN must be at least 32 characters in production.")
            if issues:
                raise ValueError(" ".join(issues))
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
