"""
Configuration management for the onboarding tool.

Settings come from environment variables (`load_config`) or a YAML file
(`OnboardingConfig.from_yaml`); command-line flags of the drivers override
either. Nothing here is ever written back to disk.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from ._types import OtmFailurePolicy

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_DIR = Path("./onboarding_tool_creds")


class OnboardingConfig(BaseModel):
    """Onboarding tool configuration."""

    # ========================================================================
    # SDK / Storage
    # ========================================================================

    storage_dir: Path = Field(
        default=DEFAULT_STORAGE_DIR,
        description="Credential storage directory handed to the SDK"
    )
    simulate: bool = Field(
        default=False,
        description="Drive the in-memory simulated network instead of a real SDK"
    )

    # ========================================================================
    # Tool identity (the tool is itself a device on the network)
    # ========================================================================

    platform_manufacturer: str = Field(default="OCF")
    device_uri: str = Field(default="/oic/d")
    device_type: str = Field(default="oic.d.phone")
    device_name: str = Field(default="OBT")
    spec_version: str = Field(default="ocf.1.0.0")
    data_model_version: str = Field(default="ocf.res.1.0.0")

    # ========================================================================
    # Ownership transfer
    # ========================================================================

    otm_failure_policy: OtmFailurePolicy = Field(
        default=OtmFailurePolicy.LEAVE_REMOVED,
        description="leave_removed: failed devices stay out of the registry; "
                    "rollback: they are offered again as unowned"
    )

    # ========================================================================
    # HTTP API
    # ========================================================================

    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=8090, ge=1, le=65535)

    # ========================================================================
    # Logging
    # ========================================================================

    log_level: str = Field(default="INFO")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator('device_name', 'device_type')
    @classmethod
    def validate_not_empty(cls, v):
        if not v.strip():
            raise ValueError("must not be empty")
        return v

    def device_info(self) -> dict[str, str]:
        """Identity the SDK registers for the tool itself."""
        return {
            "manufacturer": self.platform_manufacturer,
            "uri": self.device_uri,
            "rt": self.device_type,
            "name": self.device_name,
            "spec_version": self.spec_version,
            "data_model_version": self.data_model_version,
        }

    @classmethod
    def from_yaml(cls, path: Path) -> "OnboardingConfig":
        """Load configuration from a YAML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        values = {}
        if "storage_dir" in data:
            values["storage_dir"] = Path(data["storage_dir"])
        if "simulate" in data:
            values["simulate"] = bool(data["simulate"])

        if "device" in data:
            d = data["device"]
            for yaml_key, field_name in (
                ("manufacturer", "platform_manufacturer"),
                ("uri", "device_uri"),
                ("type", "device_type"),
                ("name", "device_name"),
                ("spec_version", "spec_version"),
                ("data_model_version", "data_model_version"),
            ):
                if yaml_key in d:
                    values[field_name] = d[yaml_key]

        if "otm" in data:
            policy = data["otm"].get("failure_policy")
            if policy:
                values["otm_failure_policy"] = policy

        if "api" in data:
            a = data["api"]
            values["api_host"] = a.get("host", "127.0.0.1")
            values["api_port"] = a.get("port", 8090)

        values["log_level"] = data.get("log_level", "INFO")

        return cls(**values)


def load_config(path: Optional[Path] = None) -> OnboardingConfig:
    """
    Load configuration.

    A YAML file wins when given; otherwise environment variables are read.
    """
    if path is not None:
        return OnboardingConfig.from_yaml(path)

    values = {
        'storage_dir': Path(os.environ.get('OBT_STORAGE_DIR', str(DEFAULT_STORAGE_DIR))),
        'simulate': os.environ.get('OBT_SIMULATE', 'false').lower() == 'true',
        'device_name': os.environ.get('OBT_DEVICE_NAME', 'OBT'),
        'otm_failure_policy': os.environ.get('OBT_OTM_FAILURE_POLICY', 'leave_removed'),
        'api_host': os.environ.get('OBT_API_HOST', '127.0.0.1'),
        'api_port': int(os.environ.get('OBT_API_PORT', '8090')),
        'log_level': os.environ.get('OBT_LOG_LEVEL', 'INFO'),
    }
    return OnboardingConfig(**values)


# Example onboarding.yaml:
"""
storage_dir: "./onboarding_tool_creds"
simulate: false

device:
  name: "OBT"
  type: "oic.d.phone"

otm:
  failure_policy: "leave_removed"   # or "rollback"

api:
  host: "127.0.0.1"
  port: 8090

log_level: "INFO"
"""
