"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Workflow Execution Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production, testing

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Workflow definitions loaded on startup (directory of *.json files)
    DEFINITIONS_PATH: str = ""

    # Step execution
    HANDLER_TIMEOUT_SECONDS: float = 300.0
    APPROVAL_TIMEOUT_SECONDS: float = 0.0  # 0 disables approval expiry
    STEP_HANDLER_URL: str = ""  # default HTTP handler for steps without a registered one
    RUN_RETENTION_LIMIT: int = 1000  # finished runs kept in memory, oldest dropped first

    # Triggers
    SCHEDULER_TICK_SECONDS: float = 1.0
    EVENT_BUS_BACKEND: str = "memory"  # memory or redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Notifications & escalation
    NOTIFICATION_MAX_DELIVERY_ATTEMPTS: int = 3
    NOTIFICATION_RETRY_DELAY: float = 2.0
    ESCALATION_CHANNELS: str = "email"
    ESCALATION_RECIPIENTS: str = ""
    RUN_FAILURE_ALERTS: bool = True  # alert escalation recipients when a run fails
    DISPATCH_RECORD_LIMIT: int = 10000

    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_ADDRESS: str = "workflows@localhost"
    SMTP_USE_TLS: bool = True
    SLACK_WEBHOOK_URL: str = ""
    TEAMS_WEBHOOK_URL: str = ""
    NOTIFICATION_WEBHOOK_URL: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def escalation_channels_list(self) -> list[str]:
        """Parse ESCALATION_CHANNELS string into a list."""
        return [c.strip() for c in self.ESCALATION_CHANNELS.split(",") if c.strip()]

    @property
    def escalation_recipients_list(self) -> list[str]:
        """Parse ESCALATION_RECIPIENTS string into a list."""
        return [r.strip() for r in self.ESCALATION_RECIPIENTS.split(",") if r.strip()]

    def notification_channel_config(self) -> dict:
        """Build the channel config dict consumed by NotificationManager."""
        config: dict = {}
        if self.SMTP_HOST:
            config["email"] = {
                "smtp_host": self.SMTP_HOST,
                "smtp_port": self.SMTP_PORT,
                "smtp_user": self.SMTP_USER,
                "smtp_password": self.SMTP_PASSWORD,
                "from_address": self.SMTP_FROM_ADDRESS,
                "use_tls": self.SMTP_USE_TLS,
            }
        if self.SLACK_WEBHOOK_URL:
            config["slack"] = {"webhook_url": self.SLACK_WEBHOOK_URL}
        if self.TEAMS_WEBHOOK_URL:
            config["teams"] = {"webhook_url": self.TEAMS_WEBHOOK_URL}
        if self.NOTIFICATION_WEBHOOK_URL:
            config["webhook"] = {"url": self.NOTIFICATION_WEBHOOK_URL}
        return config

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
