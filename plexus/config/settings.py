"""Plexus configuration via environment / .env file."""

from __future__ import annotations

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_SECRET_KEY = "CHANGE-ME-in-production"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Routing ---
    PRODUCT_CODE: str = "plexus"

    # --- Plugin discovery ---
    PLUGINS_DIR: str = "./plugins"
    INSTANCE_CONFIG_DIR: str = "./instance"

    # --- Agent proxy ("service" typed services) ---
    AGENT_HOST: str = ""
    AGENT_PORT: int = 0
    AGENT_HTTPS: bool = False

    # --- Loopback (service handles) ---
    LOOPBACK_URL: str = "http://127.0.0.1:8000"

    # --- Reverse proxy ---
    PROXY_TIMEOUT: float = 30.0
    ALLOW_INVALID_TLS_PROXY: bool = False

    # --- Auth ---
    SECRET_KEY: str = DEV_SECRET_KEY

    # --- CORS ---
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    @field_validator("PRODUCT_CODE", mode="before")
    @classmethod
    def _strip_slashes(cls, v: str) -> str:
        v = str(v).strip().strip("/")
        if not v or "/" in v:
            raise ValueError("PRODUCT_CODE must be a single URL segment")
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return str(v).strip().upper()

    @model_validator(mode="after")
    def _agent_port_required(self) -> "Settings":
        if self.AGENT_HOST and not self.AGENT_PORT:
            raise ValueError("AGENT_PORT is required when AGENT_HOST is set")
        return self

    @property
    def auth_enabled(self) -> bool:
        return self.SECRET_KEY != DEV_SECRET_KEY


settings = Settings()
