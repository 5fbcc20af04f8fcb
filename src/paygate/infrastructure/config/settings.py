"""Environment-based configuration for gateways, logging and persistence."""

from functools import lru_cache
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ...shared.exceptions.base import ConfigurationError


class GatewayCredentials(BaseModel):
    """Credentials for one gateway mode."""

    api_key: SecretStr = Field(..., description="Bearer secret used for outbound calls")
    base_url: Optional[str] = Field(None, description="Override of the vendor API base URL")


class GatewayConfig(BaseModel):
    """Per-gateway configuration."""

    enabled: bool = Field(False, description="Whether the gateway accepts new payments")
    mode: Literal["test", "live"] = Field("test", description="Which credential set is active")
    credentials: Dict[Literal["test", "live"], GatewayCredentials] = Field(default_factory=dict)

    # Webhooks
    webhook_secret: Optional[SecretStr] = Field(None, description="Webhook signing secret")
    allow_unsigned_webhooks: bool = Field(
        False, description="Explicit opt-out: accept webhooks when no secret is configured"
    )
    webhook_tolerance_seconds: int = Field(300, description="Max signature age", ge=0)

    @model_validator(mode="after")
    def validate_active_credentials(self) -> "GatewayConfig":
        """An enabled gateway must carry credentials for its active mode."""
        if self.enabled and self.mode not in self.credentials:
            raise ValueError(f"Enabled gateway has no credentials for mode '{self.mode}'")
        return self

    @property
    def active_credentials(self) -> GatewayCredentials:
        try:
            return self.credentials[self.mode]
        except KeyError:
            raise ConfigurationError(
                f"No credentials configured for mode '{self.mode}'", config_key="credentials"
            )

    @property
    def webhook_secret_value(self) -> Optional[str]:
        if self.webhook_secret is None:
            return None
        return self.webhook_secret.get_secret_value() or None


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Log level")
    format: str = Field("json", description="Log format: json or console")

    # Sensitive data handling
    sensitive_fields: List[str] = Field(
        default=[
            "api_key", "authorization", "secret", "webhook_secret", "token",
            "signature", "signature_header", "buyer_email", "buyer_phone",
        ],
        description="Fields to mask in logs",
    )

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v.lower() not in {"json", "console"}:
            raise ValueError("Log format must be 'json' or 'console'")
        return v.lower()

    model_config = SettingsConfigDict(env_prefix="LOG_")


class PaymentSettings(BaseSettings):
    """Main payment settings.

    Gateways are read from ``PAYGATE_GATEWAYS`` as JSON, or field by field with
    the ``__`` delimiter, e.g. ``PAYGATE_GATEWAYS__STRIPE__ENABLED=true``.
    """

    app_name: str = Field("paygate", description="Application name")
    default_gateway: Optional[str] = Field(None, description="Gateway used when none is named")
    gateways: Dict[str, GatewayConfig] = Field(default_factory=dict)

    # Outbound vendor calls
    request_timeout_seconds: float = Field(10.0, description="Vendor call timeout", gt=0, le=120)
    max_retries: int = Field(2, description="Retries for idempotent vendor calls", ge=0, le=10)

    # Persistence
    database_url: Optional[str] = Field(None, description="Async SQLAlchemy URL; in-memory store when unset")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("gateways")
    @classmethod
    def normalize_gateway_names(cls, v: Dict[str, GatewayConfig]) -> Dict[str, GatewayConfig]:
        return {name.lower(): config for name, config in v.items()}

    @model_validator(mode="after")
    def validate_default_gateway(self) -> "PaymentSettings":
        if self.default_gateway:
            self.default_gateway = self.default_gateway.lower()
            if self.default_gateway not in self.gateways:
                raise ValueError(f"Default gateway '{self.default_gateway}' is not configured")
        return self

    def gateway(self, name: str) -> GatewayConfig:
        """Configuration for ``name`` or ConfigurationError."""
        try:
            return self.gateways[name]
        except KeyError:
            raise ConfigurationError(f"Gateway '{name}' is not configured", config_key="gateways")

    model_config = SettingsConfigDict(
        env_prefix="PAYGATE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


def load_settings(**overrides) -> PaymentSettings:
    """Load settings, turning validation failures into ConfigurationError."""
    try:
        return PaymentSettings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid payment configuration: {e}") from e


@lru_cache()
def get_settings() -> PaymentSettings:
    """Process-wide settings, loaded once."""
    return load_settings()
