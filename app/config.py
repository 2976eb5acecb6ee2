"""
Application Configuration
Uses Pydantic Settings for environment-based configuration
"""

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra env vars used by docker-compose
    )

    # Application
    PROJECT_NAME: str = "Platform Identity API"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development", pattern="^(development|staging|production)$")
    DEBUG: bool = Field(default=False)
    API_V1_STR: str = "/api/v1"
    FRONTEND_URL: str = "http://localhost:3000"

    # Local token signing
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30

    # CORS
    # Allow str because it can be a comma-separated string in .env
    CORS_ORIGINS: str | list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8000"]
    )

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_ECHO: bool = False
    DB_CREATE_TABLES: bool = False  # create_all on startup (development convenience)

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # Arq
    ARQ_REDIS_URL: str = Field(default="redis://localhost:6379/1")
    ARQ_MAX_TRIES: int = 3
    ARQ_KEEP_RESULT: int = 3600  # 1 hour

    # Sessions
    SESSION_COOKIE_NAME: str = "platform_session"
    SESSION_COOKIE_SAMESITE: str = Field(default="lax", pattern="^(lax|strict|none)$")
    SESSION_MAX_AGE: int = 604800  # 7 days
    SESSION_MAX_AGE_REMEMBER_ME: int = 2592000  # 30 days
    MAX_CONCURRENT_SESSIONS: int = 5
    TOKEN_REFRESH_THRESHOLD: int = 300  # seconds of access-token lifetime left
    TOKEN_REFRESH_INTERVAL: int = 60  # seconds between refresh scans
    SESSION_CLEANUP_INTERVAL: int = 3600  # seconds between cleanup runs
    SESSION_REFRESH_BATCH_SIZE: int = 100
    SCHEDULER_ENABLED: bool = True

    # Delegated identity provider (Keycloak-compatible realm API)
    IDP_ENABLED: bool = False
    IDP_SERVER_URL: str | None = None
    IDP_REALM: str = "platform"
    IDP_CLIENT_ID: str | None = None
    IDP_CLIENT_SECRET: str | None = None
    IDP_ADMIN_CLIENT_ID: str | None = None
    IDP_ADMIN_CLIENT_SECRET: str | None = None
    IDP_REDIRECT_URI: str = "http://localhost:8000/api/v1/auth/idp/callback"
    IDP_VERIFY_AUDIENCE: bool = True
    IDP_CLOCK_TOLERANCE: int = 30
    IDP_TIMEOUT: float = 10.0
    IDP_SYNC_ENABLED: bool = False
    IDP_SYNC_ON_UPDATE: bool = True
    IDP_SYNC_BATCH_SIZE: int = 50

    # Interactive login state cache
    AUTH_STATE_TTL: int = 600

    # Authorization server
    OIDC_ISSUER: str = "http://localhost:8000"
    OIDC_JWKS: str | None = None  # JSON private JWK set
    OIDC_KEY_ID: str = "platform-signing-key"
    OIDC_CODE_TTL: int = 600
    OIDC_ACCESS_TOKEN_TTL: int = 3600
    OIDC_ID_TOKEN_TTL: int = 3600
    OIDC_REFRESH_TOKEN_TTL: int = 14 * 24 * 3600
    OIDC_DEVICE_CODE_TTL: int = 600
    OIDC_DEVICE_POLL_INTERVAL: int = 5
    OIDC_INTERACTION_TTL: int = 3600
    OIDC_CONSENT_TTL: int = 90 * 24 * 3600
    OIDC_INTERACTION_URL: str = "http://localhost:3000/oidc/interaction"
    OIDC_DEVICE_VERIFICATION_URL: str = "http://localhost:3000/device"
    OIDC_REGISTRATION_ACCESS_TOKEN: str | None = None  # initial access token for /reg

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        """Parse CORS origins from comma-separated string"""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @property
    def is_idp_configured(self) -> bool:
        """True when the delegated provider is enabled and has client credentials"""
        return bool(self.IDP_ENABLED and self.IDP_SERVER_URL and self.IDP_CLIENT_ID)

    @property
    def IDP_REALM_URL(self) -> str:  # noqa: N802
        return f"{(self.IDP_SERVER_URL or '').rstrip('/')}/realms/{self.IDP_REALM}"

    @property
    def IDP_OIDC_URL(self) -> str:  # noqa: N802
        return f"{self.IDP_REALM_URL}/protocol/openid-connect"

    @property
    def IDP_ADMIN_URL(self) -> str:  # noqa: N802
        return f"{(self.IDP_SERVER_URL or '').rstrip('/')}/admin/realms/{self.IDP_REALM}"


# Create global settings instance

load_dotenv()
settings = Settings()  # type: ignore[call-arg]


class UserStatus:
    """Identity status constants"""

    ACTIVE = 1
    INACTIVE = 2
    SUSPENDED = 3

    LABELS = {
        ACTIVE: "active",
        INACTIVE: "inactive",
        SUSPENDED: "suspended",
    }


class RoleCode:
    """System role codes. An identity holds exactly one of these."""

    ADMIN = "admin"
    INSTRUCTOR = "instructor"
    STUDENT = "student"
    GUEST = "guest"

    DEFAULT = STUDENT
    SYSTEM = (ADMIN, INSTRUCTOR, STUDENT, GUEST)


class TokenSource:
    """Where a session's token pair was issued"""

    LOCAL = "local"
    DELEGATED = "delegated"


# Prefix marking permission tokens in the delegated realm; role codes never carry it
PERMISSION_ROLE_PREFIX = "permission:"
