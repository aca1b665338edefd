from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from blubbai.logging import get_logger

logger = get_logger(__name__)

# HS512 needs a key of at least 512 bits
MIN_JWT_SECRET_BYTES = 64

DEFAULT_MAIL_VALIDATION_URL = "https://emailvalidation.abstractapi.com/v1/"
DEFAULT_PHONE_VALIDATION_URL = "https://phonevalidation.abstractapi.com/v1/"
DEFAULT_SMS_API_BASE_URL = "https://api.twilio.com/2010-04-01"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration for the auth service.

    Values come from the environment first and from a local ``.env`` file
    second. The signing key is the only secret the token codec needs and it
    must be at least 64 bytes long.
    """

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    platform_name: str = env_field("BlubbAI", "PLATFORM_NAME")
    mail_from: str | None = env_field(None, "MAIL_FROM")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    mail_validation_api_key: str | None = env_field(None, "MAIL_VALIDATION_API_KEY")
    phone_validation_api_key: str | None = env_field(None, "PHONE_VALIDATION_API_KEY")
    mail_validation_url: str = env_field(
        DEFAULT_MAIL_VALIDATION_URL, "MAIL_VALIDATION_URL"
    )
    phone_validation_url: str = env_field(
        DEFAULT_PHONE_VALIDATION_URL, "PHONE_VALIDATION_URL"
    )

    smtp_host: str | None = env_field(
        None, "SMTP_HOST", description="SMTP server host; unset logs emails instead"
    )
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")

    sms_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    sms_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    sms_from_number: str | None = env_field(None, "TWILIO_PHONE_NUMBER")
    sms_api_base_url: str = env_field(DEFAULT_SMS_API_BASE_URL, "SMS_API_BASE_URL")

    external_timeout_seconds: float = env_field(
        5.0,
        "EXTERNAL_TIMEOUT_SECONDS",
        description="Upper bound for validation API, SMTP and SMS calls",
    )

    dev_mode: bool = env_field(
        False,
        "DEV_MODE",
        description="Expose /tools/key, /tools/token and /tools/bearer",
    )
    shared_fs_root: str | None = env_field(None, "SHARED_FS_ROOT")
    cors_allow_origins: str | None = env_field(None, "CORS_ALLOW_ORIGINS")

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

    @field_validator("jwt_secret")
    @classmethod
    def _validate_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value.encode("utf-8")) < MIN_JWT_SECRET_BYTES:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_BYTES} bytes for HS512"
            )
        return value

    @field_validator("external_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0 or value > 30:
            raise ValueError("EXTERNAL_TIMEOUT_SECONDS must be in (0, 30]")
        return value

    @property
    def allowed_origins(self) -> List[str]:
        if self.cors_allow_origins:
            return [
                origin.strip()
                for origin in self.cors_allow_origins.split(",")
                if origin.strip()
            ]
        return [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            platform_name=_settings_cache.platform_name,
            dev_mode=_settings_cache.dev_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
