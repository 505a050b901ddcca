import os
from typing import Any, Dict, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class PriorityQuotaConfig(BaseModel):
    max_urgent_percent: int = Field(default=20, ge=0, le=100)
    max_high_percent: int = Field(default=30, ge=0, le=100)
    # downgrade: offer the next tier with room; reject: refuse the requested tier outright
    policy: Literal["downgrade", "reject"] = "downgrade"

    @model_validator(mode="after")
    def validate_combined_percent(self):
        if self.max_urgent_percent + self.max_high_percent > 100:
            raise ValueError("max_urgent_percent + max_high_percent must not exceed 100")
        return self


class NotifierConfig(BaseModel):
    url: Optional[str] = Field(default=None, description="Webhook receiving assignment events")
    timeout_seconds: float = Field(default=5.0, gt=0)


class AllotmentConfig(BaseModel):
    database_url: Optional[str] = Field(
        default=None, description="SQLAlchemy URL; defaults to a local SQLite file"
    )
    timezone: str = Field(default="UTC", description="Canonical timezone for ledger days")
    default_strategy: Literal["least_loaded", "round_robin", "priority_first"] = "least_loaded"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    priority_quota: PriorityQuotaConfig = Field(default_factory=PriorityQuotaConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        if v == "UTC":
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v


# Environment variable -> (section or None, field, type)
ENV_MAPPINGS = {
    "ALLOTMENT_DATABASE_URL": (None, "database_url", str),
    "ALLOTMENT_TIMEZONE": (None, "timezone", str),
    "ALLOTMENT_DEFAULT_STRATEGY": (None, "default_strategy", str),
    "ALLOTMENT_LOG_LEVEL": (None, "log_level", str),
    "ALLOTMENT_MAX_URGENT_PERCENT": ("priority_quota", "max_urgent_percent", int),
    "ALLOTMENT_MAX_HIGH_PERCENT": ("priority_quota", "max_high_percent", int),
    "ALLOTMENT_QUOTA_POLICY": ("priority_quota", "policy", str),
    "ALLOTMENT_NOTIFIER_URL": ("notifier", "url", str),
    "ALLOTMENT_NOTIFIER_TIMEOUT": ("notifier", "timeout_seconds", float),
}


def load_config(config_path: str = "allotment_config.yml") -> AllotmentConfig:
    """Load configuration from YAML file with environment variable overrides."""
    config_data: Dict[str, Any] = {}

    try:
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        pass
    except (OSError, yaml.YAMLError) as e:
        print(f"Warning: Failed to load config from {config_path}: {e}")

    _apply_environment_overrides(config_data)

    return AllotmentConfig(**config_data)


def _apply_environment_overrides(config_data: Dict[str, Any]):
    """Overlay ALLOTMENT_* environment variables onto the YAML data."""
    for env_key, (section, field_name, field_type) in ENV_MAPPINGS.items():
        env_value = os.getenv(env_key)
        if env_value is None:
            continue

        try:
            value = field_type(env_value)
        except (ValueError, TypeError) as e:
            print(f"Warning: Invalid {field_type.__name__} value for {env_key}: {env_value} ({e})")
            continue

        if section is None:
            config_data[field_name] = value
        else:
            target = config_data.get(section)
            if not isinstance(target, dict):
                target = {}
                config_data[section] = target
            target[field_name] = value
