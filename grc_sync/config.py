"""
Configuration management for GRC Sync.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = Field(default="GRC Sync")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_workers: int = Field(default=1)

    # Database
    database_url: str = Field(default="sqlite:///./grc_sync.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="'json' or 'console'")

    # Remote source (GRC system of record)
    source_instance_url: Optional[str] = Field(default=None)
    source_username: Optional[str] = Field(default=None)
    source_password: Optional[str] = Field(default=None)
    source_timeout_seconds: float = Field(default=10.0)
    source_max_retries: int = Field(default=3)
    source_retry_delay_seconds: float = Field(default=0.5)
    source_max_retry_delay_seconds: float = Field(default=30.0)
    source_rate_limit_delay_seconds: float = Field(default=60.0)
    source_max_rate_limit_waits: int = Field(default=5)
    source_max_total_wait_seconds: float = Field(
        default=300.0,
        description="Ceiling on the cumulative backoff and rate-limit wait of one call.",
    )
    source_page_size: int = Field(default=100)

    # Remote tables
    systems_table: str = Field(default="sn_grc_profile")
    controls_table: str = Field(default="sn_compliance_control")
    statements_table: str = Field(default="sn_compliance_policy_statement")
    control_system_field: str = Field(default="profile")
    statement_control_field: str = Field(default="control")
    statement_content_field: str = Field(default="description")

    # Pull
    pull_progress_flush_every: int = Field(default=25)
    pull_fetch_concurrency: int = Field(default=2)

    # Push
    push_concurrency: int = Field(default=3)
    push_item_timeout_seconds: float = Field(default=30.0)

    # Jobs
    max_concurrent_jobs: int = Field(default=4)

    # Audit
    audit_default_page_size: int = Field(default=50)
    audit_max_page_size: int = Field(default=100)
    audit_export_max_rows: int = Field(default=10000)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
