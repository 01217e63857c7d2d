from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from communityhub.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the community service."""

    environment: str = env_field("development", "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/communityhub", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/communityhub", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI; permits in-process fallbacks.",
    )

    # Shopify Customer Account API
    shopify_client_id: Optional[str] = env_field(None, "SHOPIFY_CLIENT_ID")
    shopify_client_secret: Optional[str] = env_field(None, "SHOPIFY_CLIENT_SECRET")
    shopify_shop_domain: Optional[str] = env_field(None, "SHOPIFY_SHOP_DOMAIN")
    shopify_shop_id: Optional[str] = env_field(None, "SHOPIFY_SHOP_ID")
    shopify_redirect_uri: Optional[str] = env_field(
        None,
        "SHOPIFY_REDIRECT_URI",
        description="Must match the callback registered with the Shopify app byte for byte.",
    )
    shopify_api_version: str = env_field("2024-01", "SHOPIFY_API_VERSION")
    shopify_scopes: str = env_field(
        "openid email customer-account-api:full", "SHOPIFY_SCOPES"
    )
    shopify_locale: str = env_field("en", "SHOPIFY_LOCALE")
    shopify_region_country: Optional[str] = env_field(None, "SHOPIFY_REGION_COUNTRY")
    shopify_http_timeout_seconds: float = env_field(30.0, "SHOPIFY_HTTP_TIMEOUT_SECONDS")

    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    auth_callback_path: str = env_field("/auth/callback", "AUTH_CALLBACK_PATH")
    auth_error_path: str = env_field("/auth/error", "AUTH_ERROR_PATH")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("communityhub", "JWT_ISSUER")
    jwt_audience: str = env_field("community-clients", "JWT_AUDIENCE")
    token_ttl_days: int = env_field(7, "TOKEN_TTL_DAYS")

    session_cookie_name: str = env_field("community_session", "SESSION_COOKIE_NAME")
    cookie_secure: Optional[bool] = env_field(
        None,
        "COOKIE_SECURE",
        description="Defaults to true when ENVIRONMENT=production.",
    )
    cookie_domain: Optional[str] = env_field(None, "COOKIE_DOMAIN")
    session_embed_provider_token: bool = env_field(
        False, "SESSION_EMBED_PROVIDER_TOKEN"
    )

    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES")
    state_sweep_interval_minutes: int = env_field(5, "STATE_SWEEP_INTERVAL_MINUTES")

    default_community_id: str = env_field("the_bar_wardrobe", "DEFAULT_COMMUNITY_ID")
    community_tag_prefix: str = env_field("community:", "COMMUNITY_TAG_PREFIX")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in {"production", "prod"}

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.is_production

    @field_validator(
        "redis_url", "cookie_domain", "cookie_secure", "shopify_region_country", mode="before"
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("frontend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("oauth_state_ttl_minutes", "state_sweep_interval_minutes", "token_ttl_days")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/communityhub"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

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
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
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
        return generated


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
