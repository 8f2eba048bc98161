"""
Configuration for the Entitlement Engine.

Settings come from an optional YAML file; environment variables prefixed
with ``ENTITLEMENT_ENGINE_`` override individual values. Nested sections use
a double underscore, e.g. ``ENTITLEMENT_ENGINE_PROCUREMENT__ACCESS_TOKEN``.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .connectors.procurement import DEFAULT_BASE_URL

logger = logging.getLogger(__name__)

ENV_PREFIX = "ENTITLEMENT_ENGINE_"


class ProcurementSettings(BaseModel):
    """Connection settings for the Commerce Procurement API."""
    base_url: str = DEFAULT_BASE_URL
    access_token: Optional[str] = Field(None, description="OAuth bearer token")
    timeout_seconds: float = 30.0


class EngineSettings(BaseSettings):
    """Top-level engine settings."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    dataset_id: str = Field("datashare", description="Dataset holding the lookup views")
    policy_view_id: str = Field("currentPolicy", description="Policy view name")
    account_view_id: str = Field("currentAccount", description="Account view name")
    state_file: Optional[str] = Field(None, description="Account state JSON file")
    policy_file: Optional[str] = Field(None, description="Policy catalog YAML file")
    audit_dir: Optional[str] = Field(None, description="Directory for the audit trail")
    mock_mode: bool = Field(True, description="Use the in-memory procurement gateway")
    mock_entitlements_file: Optional[str] = Field(
        None, description="JSON list of entitlements seeding the in-memory gateway"
    )
    procurement: ProcurementSettings = Field(default_factory=ProcurementSettings)

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings,
                                   dotenv_settings, file_secret_settings):
        # environment wins over values read from the YAML file
        return env_settings, init_settings


def load_settings(config_path: Optional[Union[str, Path]] = None) -> EngineSettings:
    """
    Load engine settings.

    Args:
        config_path: Optional YAML settings file

    Returns:
        Validated EngineSettings
    """
    data: Dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {path}")
        else:
            logger.warning(f"Configuration file not found: {path}, using defaults")

    # empty YAML keys (``procurement:``) mean "use the defaults"
    file_values = {key: value for key, value in data.items() if value is not None}
    return EngineSettings(**file_values)
