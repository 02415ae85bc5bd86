from __future__ import annotations

import json
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from appauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth backend, read from the environment or `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/appauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    data_root: str = env_field("/srv/appauth", "DATA_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI: in-process OAuth state, no Redis requirement.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("appauth", "JWT_ISSUER")
    jwt_audience: str = env_field("appauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime; defaults to seven days",
    )

    max_login_attempts: int = env_field(
        5,
        "MAX_LOGIN_ATTEMPTS",
        description="Consecutive failed logins per app before that app access locks",
    )
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    global_lockout_enabled: bool = env_field(
        False,
        "GLOBAL_LOCKOUT_ENABLED",
        description="Also throttle the whole account across apps",
    )
    global_max_login_attempts: int = env_field(10, "GLOBAL_MAX_LOGIN_ATTEMPTS")
    global_lockout_minutes: int = env_field(60, "GLOBAL_LOCKOUT_MINUTES")
    password_min_length: int = env_field(6, "PASSWORD_MIN_LENGTH")
    restrict_admin_signup: bool = env_field(
        True,
        "RESTRICT_ADMIN_SIGNUP",
        description="Refuse admin and superadmin roles on self-service registration",
    )

    app_endpoints: dict[str, str] = env_field(
        {},
        "APP_ENDPOINTS",
        description="Extra endpoint -> app identifier entries as a JSON object",
    )

    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_facebook_client_id: str | None = env_field(None, "OAUTH_FACEBOOK_CLIENT_ID")
    oauth_facebook_client_secret: str | None = env_field(None, "OAUTH_FACEBOOK_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("App Accounts", "EMAIL_FROM_NAME")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("app_endpoints", mode="before")
    @classmethod
    def _parse_app_endpoints(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("APP_ENDPOINTS must be a JSON object") from exc
            if not isinstance(parsed, dict):
                raise ValueError("APP_ENDPOINTS must be a JSON object")
            return parsed
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("max_login_attempts", "global_max_login_attempts", "password_min_length")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        data_root = Path(info.data.get("data_root") or "/srv/appauth")
        secret_path = data_root / ".jwt_secret"

        try:
            data_root.mkdir(parents=True, exist_ok=True)
            os.chmod(data_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(data_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(data_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make DATA_ROOT writable"
            ) from exc
        return generated
