"""Application settings and configuration."""

from typing import Literal

from pydantic import Field, model_validator  # type: ignore
from pydantic_settings import BaseSettings, SettingsConfigDict  # type: ignore


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENV: Literal["dev", "staging", "prod", "test"] = Field(default="dev")
    PROJECT_NAME: str = Field(default="Ride Hailing 2FA API")

    # API
    API_PREFIX: str = Field(default="/api/v1")

    # Database
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./twofa.db")
    DATABASE_POOL_SIZE: int = Field(default=5)
    DATABASE_MAX_OVERFLOW: int = Field(default=10)

    # Redis
    REDIS_URL: str | None = Field(default=None)
    REDIS_ENABLED: bool = Field(default=False)

    # CORS - Accept string or list, will be normalized to list
    CORS_ORIGINS: str | list[str] = Field(default="http://localhost:3000")

    # Logging
    LOG_LEVEL: str = Field(default="INFO")

    # Security - bearer credential issued by the outer auth subsystem
    JWT_SECRET: str | None = Field(default=None)
    JWT_ALG: str = Field(default="HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=15)
    TOKEN_PEPPER: str | None = Field(default=None)  # Server-side pepper for token digests

    # Adaptive hashing (Argon2) for OTPs and backup codes
    HASH_TIME_COST: int = Field(default=3)
    HASH_MEMORY_COST: int = Field(default=65536)  # KiB
    HASH_PARALLELISM: int = Field(default=4)

    # OTP
    OTP_LENGTH: int = Field(default=6)
    OTP_EXPIRY_MINUTES: int = Field(default=10)
    OTP_MAX_ATTEMPTS: int = Field(default=5)

    # Pending login / trusted devices
    PENDING_LOGIN_EXPIRY_MINUTES: int = Field(default=5)
    TRUSTED_DEVICE_TTL_DAYS: int = Field(default=30)
    TRUSTED_DEVICE_TOKEN_BYTES: int = Field(default=32)
    TRUSTED_DEVICE_COOKIE_NAME: str = Field(default="trusted_device")
    COOKIE_SECURE: bool = Field(default=True)

    # Backup codes
    BACKUP_CODES_COUNT: int = Field(default=10)
    BACKUP_CODE_LENGTH: int = Field(default=8)

    # TOTP
    MFA_ENCRYPTION_KEY: str | None = Field(default=None)  # Fernet key for encrypting TOTP secrets
    TOTP_ISSUER: str = Field(default="RideHailing")
    TOTP_SECRET_SIZE: int = Field(default=32)  # bytes
    TOTP_PERIOD: int = Field(default=30)
    TOTP_DIGITS: int = Field(default=6)
    TOTP_VALID_WINDOW: int = Field(default=1)  # accepted drift in steps

    # Rate Limiting
    RATE_LIMIT_BACKEND: Literal["database", "redis"] = Field(default="database")
    RL_OTP_PHONE_LIMIT: int = Field(default=5)
    RL_OTP_PHONE_WINDOW: int = Field(default=3600)  # 1 hour
    RL_CAS_MAX_RETRIES: int = Field(default=16)
    # Guessing guard for TOTP and backup codes, keyed by user
    RL_VERIFY_USER_LIMIT: int = Field(default=10)
    RL_VERIFY_USER_WINDOW: int = Field(default=900)  # 15 minutes

    # SMS delivery
    SMS_BACKEND: Literal["console", "twilio"] = Field(default="console")
    TWILIO_ACCOUNT_SID: str | None = Field(default=None)
    TWILIO_AUTH_TOKEN: str | None = Field(default=None)
    TWILIO_FROM_NUMBER: str | None = Field(default=None)
    TWILIO_API_BASE: str = Field(default="https://api.twilio.com")

    # Phone number source for phone verification: "server" prefers the bearer claim
    PHONE_SOURCE_POLICY: Literal["server", "request"] = Field(default="server")

    # Timeouts
    SMS_SEND_TIMEOUT_SECONDS: float = Field(default=10.0)
    STORE_CALL_TIMEOUT_SECONDS: float = Field(default=2.0)
    REQUEST_TIMEOUT_SECONDS: float = Field(default=30.0)

    @model_validator(mode="before")
    @classmethod
    def parse_cors_origins(cls, data):
        """Parse CORS_ORIGINS from comma-separated string or list."""
        if isinstance(data, dict) and "CORS_ORIGINS" in data:
            cors_origins = data["CORS_ORIGINS"]
            if isinstance(cors_origins, str):
                data["CORS_ORIGINS"] = [
                    origin.strip() for origin in cors_origins.split(",") if origin.strip()
                ]
        return data

    def __init__(self, **kwargs):
        """Validate settings on initialization."""
        super().__init__(**kwargs)
        # Ensure CORS_ORIGINS is a list after initialization
        if isinstance(self.CORS_ORIGINS, str):
            object.__setattr__(
                self,
                "CORS_ORIGINS",
                [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()],
            )
        # Fail fast in production if critical vars are missing
        if self.ENV == "prod":
            if self.DATABASE_URL.startswith("sqlite"):
                raise ValueError("DATABASE_URL must point at PostgreSQL in production")
            if not self.JWT_SECRET:
                raise ValueError("JWT_SECRET must be set in production")
            if not self.TOKEN_PEPPER:
                raise ValueError("TOKEN_PEPPER must be set in production")
            if not self.MFA_ENCRYPTION_KEY:
                raise ValueError("MFA_ENCRYPTION_KEY must be set in production")
            if self.SMS_BACKEND == "console":
                raise ValueError("SMS_BACKEND=console is not allowed in production")
            if self.RATE_LIMIT_BACKEND == "redis" and not self.REDIS_URL:
                raise ValueError("REDIS_URL must be set when RATE_LIMIT_BACKEND=redis")


# Global settings instance
settings = Settings()
