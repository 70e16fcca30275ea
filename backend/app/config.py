"""Configuration settings for OIDCGate."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "OIDCGate"
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:////data/oidcgate.db"

    # Frontend landing page (redirect target after callback and logout)
    frontend_url: str = "http://localhost:5173"

    # CORS settings
    cors_origins: str = '["http://localhost:5173"]'

    # OIDC client
    oidc_issuer_url: str = ""
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_redirect_uri: str = ""
    oidc_scopes: str = "openid profile"
    oidc_token_endpoint_auth_method: str = "client_secret_post"  # or client_secret_basic, none
    oidc_prompt: str | None = None

    # Lifetimes
    flow_ttl_seconds: int = 600  # 10 minutes to complete a login
    session_ttl_seconds: int = 86400  # absolute cap on a session, 24 hours
    discovery_ttl_seconds: int = 3600
    jwks_min_refresh_seconds: int = 60

    # Provider network calls
    http_timeout_seconds: float = 10.0
    discovery_max_retries: int = 3
    discovery_retry_base_wait: float = 1.0  # doubles per attempt (1s, 2s, 4s)
    ssrf_protection: bool = True  # disable only for a provider on a private network

    # ID token validation
    clock_skew_seconds: int = 60
    id_token_max_age_seconds: int = 3600

    # Flow storage: "database" (shared across instances) or "memory" (single instance)
    flow_store_backend: str = "database"

    # Session cookie signing (falls back to a key file when unset)
    session_secret: str | None = None
    session_secret_file: str = "/data/oidcgate_secret.key"

    # Rate limiting
    rate_limit_enabled: bool = True
    login_rate_limit: str = "20/minute"
    callback_rate_limit: str = "20/minute"


settings = Settings()
