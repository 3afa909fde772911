"""Configuration for the credit ledger and job pipeline backend using pydantic-settings."""

from __future__ import annotations

import os
import socket
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent.parent


class AppEnv(StrEnum):
    DEV = "dev"
    PRODUCTION = "production"


class LegacyTomlSettingsSource(PydanticBaseSettingsSource):
    def __init__(self, settings_cls: type[BaseSettings], toml_file: str | Path):
        super().__init__(settings_cls)
        self.toml_file = Path(toml_file)

    def get_field_value(self, field_name: str, field_data: Any) -> tuple[Any, str, bool]:
        # Not used in this source style
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        if not self.toml_file.exists():
            return {}

        import tomllib

        try:
            with open(self.toml_file, "rb") as f:
                data = tomllib.load(f)
        except Exception:
            return {}

        if not isinstance(data, dict):
            return {}

        flattened = {}

        # [credits] section
        credits = data.get("credits", {})
        if isinstance(credits, dict):
            if "refund_threshold_progress" in credits:
                flattened["refund_threshold_progress"] = credits["refund_threshold_progress"]

        # [worker] section
        worker = data.get("worker", {})
        if isinstance(worker, dict):
            for key in ("poll_interval", "max_retry_count", "claim_lease_seconds", "step_max_attempts"):
                if key in worker:
                    target = "worker_poll_interval" if key == "poll_interval" else key
                    flattened[target] = worker[key]

        # Top level keys
        for k, v in data.items():
            if k not in {"credits", "worker"}:
                flattened[k] = v

        return flattened


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # --- Environment ---
    app_env: AppEnv = Field(
        default=AppEnv.PRODUCTION,
        validation_alias=AliasChoices("VJ_APP_ENV", "APP_ENV", "ENV"),
    )
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("VJ_LOG_LEVEL", "LOG_LEVEL"))

    @field_validator("app_env", mode="before")
    @classmethod
    def normalize_env(cls, v: Any) -> AppEnv:
        if v is None:
            return AppEnv.PRODUCTION
        if isinstance(v, AppEnv):
            return v
        if isinstance(v, str):
            lowered = v.strip().lower()
            if lowered in {"dev", "development", "local", "localhost"}:
                return AppEnv.DEV
        return AppEnv.PRODUCTION

    @field_validator("allowed_origins", "trusted_hosts", "proxy_trusted_hosts", "admin_user_ids", mode="before")
    @classmethod
    def parse_list(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            v_stripped = v.strip()
            if not v_stripped:
                return []
            if v_stripped.startswith("[") and v_stripped.endswith("]"):
                import json
                try:
                    return json.loads(v_stripped)
                except Exception:
                    pass
            return [x.strip() for x in v_stripped.split(",") if x.strip()]
        return v or []

    @property
    def is_dev(self) -> bool:
        return self.app_env == AppEnv.DEV

    # --- Project Paths ---
    project_root: Path = PROJECT_ROOT

    # --- API & Security ---
    allowed_origins: Any = Field(default_factory=list, validation_alias="VJ_ALLOWED_ORIGINS")
    trusted_hosts: Any = Field(default_factory=list, validation_alias="VJ_TRUSTED_HOSTS")
    proxy_trusted_hosts: Any = Field(
        default_factory=lambda: ["127.0.0.1", "::1", "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"],
        validation_alias="VJ_PROXY_TRUSTED_HOSTS",
    )
    admin_user_ids: Any = Field(default_factory=list, validation_alias="VJ_ADMIN_USER_IDS")

    # --- Database ---
    database_url: str = Field(
        default="postgresql+psycopg://localhost/video_jobs",
        validation_alias=AliasChoices("VJ_DATABASE_URL", "DATABASE_URL"),
    )

    # --- Credits ---
    # Jobs failing below this progress percentage get their reservation back.
    refund_threshold_progress: int = Field(default=30, ge=0, le=100)
    max_credit_history_page: int = 100

    # --- Worker ---
    worker_id: str = Field(default_factory=lambda: f"worker-{socket.gethostname()}-{os.getpid()}")
    worker_poll_interval: float = 2.0
    claim_lease_seconds: int = 900
    max_retry_count: int = 3
    step_max_attempts: int = 3
    step_backoff_min: float = 1.0
    step_backoff_max: float = 30.0
    max_concurrent_jobs: int = 3

    def __init__(self, **values: Any) -> None:
        super().__init__(**values)
        # Apply secure defaults for production if hosts are missing
        if not self.is_dev:
            if not self.trusted_hosts:
                self.trusted_hosts = ["*.run.app", "*.a.run.app"]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Order of precedence:
        # 1. Constructor arguments
        # 2. Environment variables
        # 3. .env file
        # 4. config/app_settings.toml
        # 5. Secrets
        toml_path = os.getenv("VJ_APP_SETTINGS_FILE")
        if not toml_path:
            toml_path = str(PROJECT_ROOT / "config" / "app_settings.toml")

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            LegacyTomlSettingsSource(settings_cls, toml_file=toml_path),
            file_secret_settings,
        )


settings = Settings()
