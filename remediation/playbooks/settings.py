"""Engine settings loaded from the environment."""

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """
    Configuration for the playbook engine.

    Values come from ``PLAYBOOK_*`` environment variables or a ``.env`` file.
    Construct once at process start and pass to the engine.
    """

    model_config = SettingsConfigDict(
        env_prefix="PLAYBOOK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Scheduling
    max_parallel_steps: int = Field(
        default=0,
        ge=0,
        description="Max concurrent steps in one execution wave (0 = unbounded)",
    )
    max_triggered_playbooks: int = Field(
        default=3, ge=1, description="Playbooks started per ingested trigger event"
    )

    # Approvals
    default_approval_timeout_minutes: float = Field(
        default=30.0,
        gt=0,
        description="Approval timeout when no trigger supplies one",
    )

    # Events
    event_history_size: int = Field(
        default=1000, ge=0, description="Events kept in memory for inspection"
    )

    # Ports
    http_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Default timeout for HTTP ports"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_dir: Optional[Path] = Field(default=None, description="Directory for log files")
    log_json: bool = Field(default=False, description="Use JSON format for logs")
