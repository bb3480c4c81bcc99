"""Configuration management for pushdeploy."""

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_STAGE_IGNORE = ".git,__pycache__,*.pyc,.venv,node_modules"


class Settings(BaseSettings):
    """Orchestrator configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="PUSHDEPLOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server configuration
    host: str = Field("0.0.0.0", description="Server host")
    port: int = Field(8000, description="Server port")

    # Inventory and state
    inventory_path: str = Field(
        "inventory.yaml",
        description="YAML file listing targets and repositories",
    )
    state_dir: str = Field(
        "/var/lib/pushdeploy",
        description="Directory for run journal and registry state",
    )
    staging_dir: str = Field(
        "/tmp/pushdeploy/staging",
        description="Local directory for staged bundles",
    )
    stage_ignore: str = Field(
        DEFAULT_STAGE_IGNORE,
        description="Comma-separated names/globs excluded from staged bundles",
    )

    # Retry policy
    max_retries: int = Field(3, ge=0, description="Retries per stage on connectivity errors")
    backoff_base: float = Field(1.0, ge=0, description="Initial backoff in seconds")
    backoff_max: float = Field(30.0, ge=0, description="Backoff ceiling in seconds")

    # Remote execution
    connect_timeout: float = Field(10.0, gt=0, description="SSH connect timeout in seconds")
    operation_timeout: float = Field(600.0, gt=0, description="Per remote operation timeout in seconds")
    strict_host_keys: bool = Field(
        False, description="Reject hosts missing from known_hosts instead of adding them"
    )

    # Trigger gateway
    queue_size: int = Field(100, gt=0, description="Maximum pending deployment requests")
    webhook_secret: Optional[str] = Field(None, description="HMAC secret for webhook signatures")

    # Observability
    log_level: str = Field("INFO")
    log_format: str = Field("json")
    metrics_enabled: bool = Field(True)

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @property
    def stage_ignore_list(self) -> List[str]:
        """Get ignore patterns as a list."""
        return [p.strip() for p in self.stage_ignore.split(",") if p.strip()]
