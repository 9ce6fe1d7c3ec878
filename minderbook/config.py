"""
Configuration management using Pydantic models loaded from YAML.
"""

from pathlib import Path
from typing import Optional

import pendulum
import yaml
from pydantic import BaseModel, Field, field_validator

from .domain.models import SchedulingPolicy


class PolicyConfig(BaseModel):
    """Scheduling rules."""
    late_cancellation_hours: int = 24
    open_when_undeclared: bool = True
    emergency_bypasses_past_start: bool = False
    min_lead_minutes: int = 0
    emergency_max_lead_hours: int = 24
    max_recurrence_days: int = 366

    @field_validator("late_cancellation_hours", "emergency_max_lead_hours", "max_recurrence_days")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Ensure windows are positive."""
        if value <= 0:
            raise ValueError(f"Value must be greater than zero, got {value}")
        return value

    @field_validator("min_lead_minutes")
    @classmethod
    def validate_lead(cls, value: int) -> int:
        if value < 0:
            raise ValueError(f"min_lead_minutes cannot be negative, got {value}")
        return value


class CalendarSyncConfig(BaseModel):
    """External calendar connection."""
    base_url: str = "https://www.googleapis.com/calendar/v3"
    calendar_id: str = "primary"
    access_token: str
    timeout_seconds: float = 10


class AppConfig(BaseModel):
    """Application configuration."""
    timezone: str = "Europe/Dublin"
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    data_file: Path = Path("minderbook-data.json")
    calendar_sync: Optional[CalendarSyncConfig] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Ensure the service time zone is a known IANA name."""
        try:
            pendulum.timezone(value)
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    def build_policy(self) -> SchedulingPolicy:
        """Get the domain policy for the configured rules."""
        return SchedulingPolicy(timezone=self.timezone, **self.policy.model_dump())

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a minderbook.yaml file."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping at the root level.")

        return cls(**data)


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for minderbook.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / "minderbook.yaml"

    if not config_path.exists():
        # Try in the project root (parent of minderbook/)
        project_root = Path(__file__).parent.parent
        config_path = project_root / "minderbook.yaml"

    return config_path
