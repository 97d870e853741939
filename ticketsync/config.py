"""
Application configuration using pydantic-settings.
Loads configuration from environment variables and .env file.
"""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Supports loading from .env file for local development.
    """

    # ServiceNow API Configuration
    SERVICENOW_INSTANCE_URL: str = Field(
        description="ServiceNow instance base URL (e.g., https://company.service-now.com)"
    )
    SERVICENOW_USERNAME: str = Field(
        description="ServiceNow user for API authentication"
    )
    SERVICENOW_PASSWORD: str = Field(
        description="ServiceNow password for API authentication"
    )
    SERVICENOW_TIMEOUT: float = Field(
        default=30.0,
        description="Timeout in seconds for a single ServiceNow request"
    )
    SERVICENOW_RATE_LIMIT: int = Field(
        default=100,
        description="Maximum ServiceNow requests per minute"
    )

    # Database Configuration
    DATABASE_URL: str = Field(
        description="Database URL (use postgresql+asyncpg:// for async)"
    )

    # Redis Configuration (optional)
    REDIS_URL: Optional[str] = Field(
        default=None,
        description="Redis URL for the scheduler lock and change stream"
    )

    # Sync Configuration
    SYNC_TABLES: str = Field(
        default="incident,change_task,sc_task",
        description="Comma-separated list of ServiceNow tables to synchronize"
    )
    SYNC_BATCH_SIZE: int = Field(
        default=50,
        description="Maximum records fetched per table pass"
    )
    SYNC_DELTA_HOURS: int = Field(
        default=1,
        description="Width of the incremental sync window in hours"
    )
    SYNC_ENABLE_DELTA: bool = Field(
        default=True,
        description="Use delta windows for incremental sync (full sync otherwise)"
    )
    SYNC_COLLECT_SLA: bool = Field(
        default=True,
        description="Collect SLA timers for every synced ticket"
    )
    SYNC_COLLECT_NOTES: bool = Field(
        default=True,
        description="Collect journal notes for every synced ticket"
    )
    SYNC_BROADCAST_CHANGES: bool = Field(
        default=True,
        description="Publish a change event for every created or updated ticket"
    )
    SYNC_CONFLICT_STRATEGY: str = Field(
        default="servicenow_wins",
        description="Conflict strategy: servicenow_wins, store_wins, merge"
    )
    SYNC_ERROR_DETAIL_LIMIT: int = Field(
        default=50,
        description="Maximum error entries kept per table sync result"
    )
    SYNC_STATS_ERROR_LIMIT: int = Field(
        default=100,
        description="Maximum error messages kept in the rolling statistics"
    )

    # Hybrid read configuration
    HYBRID_READ_CONCURRENCY: int = Field(
        default=5,
        description="Concurrent upstream lookups for batch ticket reads"
    )

    # Scheduler Configuration
    SCHEDULER_TICK_SECONDS: int = Field(
        default=60,
        description="Interval between scheduler ticks in seconds"
    )
    SCHEDULER_LOCK_KEY: str = Field(
        default="scheduler:lock",
        description="Well-known name of the cross-process scheduler lock"
    )
    SCHEDULER_LOCK_TTL_SECONDS: int = Field(
        default=30,
        description="Expiry of the scheduler lock in seconds"
    )
    SCHEDULER_DEFAULT_JOBS: bool = Field(
        default=True,
        description="Register the default incremental and full sync jobs on startup"
    )
    INCREMENTAL_SYNC_CRON: str = Field(
        default="*/5 * * * *",
        description="Cron expression of the default incremental sync job"
    )
    FULL_SYNC_CRON: str = Field(
        default="0 2 * * *",
        description="Cron expression of the default full sync job"
    )

    # Change stream Configuration
    CHANGE_STREAM_KEY: str = Field(
        default="servicenow:changes",
        description="Redis stream receiving ticket change events"
    )
    CHANGE_STREAM_MAXLEN: int = Field(
        default=10000,
        description="Approximate maximum length of the change stream"
    )

    # Security Configuration
    DASHBOARD_PASSWORD: str = Field(
        description="Password for admin API access"
    )

    # CORS Configuration
    CORS_ORIGINS: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins"
    )

    # Environment
    ENVIRONMENT: str = Field(
        default="development",
        description="Application environment: development, staging, production"
    )

    # Logging Configuration
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def database_url_sync(self) -> str:
        """Get synchronous database URL for Alembic migrations."""
        return self.DATABASE_URL.replace("postgresql+asyncpg://", "postgresql://")

    @property
    def sync_tables_list(self) -> list[str]:
        """Get the synchronized tables as a list."""
        return [table.strip() for table in self.SYNC_TABLES.split(",") if table.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        if self.CORS_ORIGINS == "*":
            return ["*"]
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    def __repr__(self) -> str:
        """
        Custom repr that masks sensitive values.

        Prevents accidental exposure of credentials in logs.
        """
        sensitive_fields = {
            "SERVICENOW_PASSWORD",
            "DASHBOARD_PASSWORD",
            "DATABASE_URL",
            "REDIS_URL",
        }

        fields = []
        for field_name in type(self).model_fields:
            value = getattr(self, field_name)
            if field_name in sensitive_fields and value:
                # Mask sensitive values
                if isinstance(value, str) and len(value) > 8:
                    masked = value[:4] + "***" + value[-4:]
                else:
                    masked = "***"
                fields.append(f"{field_name}={masked!r}")
            else:
                fields.append(f"{field_name}={value!r}")

        return f"Settings({', '.join(fields)})"


# Create singleton settings instance
settings = Settings()
