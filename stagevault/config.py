from __future__ import annotations

import os
from typing import Any, Optional
from urllib.parse import quote

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the snapshot and asset store."""

    shared_fs_root: str = env_field("/srv/stagevault", "SHARED_FS_ROOT")
    image_base_url: str = env_field(
        "/uploads/images",
        "IMAGE_BASE_URL",
        description="Public URL prefix under which asset files are served",
    )
    # Relational backend; all of host/user/password/name must be set to enable it
    db_host: Optional[str] = env_field(None, "DB_HOST")
    db_port: int = env_field(5432, "DB_PORT")
    db_user: Optional[str] = env_field(None, "DB_USER")
    db_password: Optional[str] = env_field(None, "DB_PASSWORD")
    db_name: Optional[str] = env_field(None, "DB_NAME")
    db_connect_timeout: int = env_field(
        5,
        "DB_CONNECT_TIMEOUT",
        description="Seconds to wait for the relational backend at startup",
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    max_image_storage_mb: float = env_field(
        500,
        "MAX_IMAGE_STORAGE_MB",
        description="Size ceiling used by the admin cleanup route when none is given",
    )
    max_upload_bytes: int = env_field(20 * 1024 * 1024, "MAX_UPLOAD_BYTES")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("db_host", "db_user", "db_password", "db_name", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Optional[str]) -> Optional[str]:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("db_pool_min_size", "db_pool_max_size", "db_connect_timeout")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @property
    def relational_configured(self) -> bool:
        """True only when the full connection set is present."""
        return all((self.db_host, self.db_user, self.db_password, self.db_name))

    @property
    def database_url(self) -> Optional[str]:
        if not self.relational_configured:
            return None
        return "postgresql://{user}:{password}@{host}:{port}/{name}".format(
            user=quote(self.db_user or "", safe=""),
            password=quote(self.db_password or "", safe=""),
            host=self.db_host,
            port=self.db_port,
            name=self.db_name,
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
