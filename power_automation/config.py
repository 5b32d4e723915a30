"""
Automation configuration, read from the ``automation:`` section of
./config/config.yaml. Missing file or keys fall back to defaults.
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

from power_automation.actions import DEFAULT_ACTION_TIMEOUT
from power_automation.models import DEFAULT_COOLDOWN_SECONDS, DEFAULT_PRIORITY
from power_automation.stores import DEFAULT_LOG_ENTRIES
from power_automation.telemetry import DEFAULT_SNAPSHOT_MAX_DEVICES, DEFAULT_SNAPSHOT_TTL

logger = logging.getLogger("automation.config")

DEFAULT_CONFIG_PATH = "./config/config.yaml"
CONFIG_SECTION = "automation"


@dataclass
class AutomationConfig:
    action_timeout_seconds: float = DEFAULT_ACTION_TIMEOUT
    default_cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS
    default_priority: int = DEFAULT_PRIORITY
    trace_entries: int = 100
    log_entries: int = DEFAULT_LOG_ENTRIES
    snapshot_ttl_seconds: float = DEFAULT_SNAPSHOT_TTL
    snapshot_max_devices: int = DEFAULT_SNAPSHOT_MAX_DEVICES
    default_notification_channel: Optional[str] = None

    @classmethod
    def from_dict(cls, section: Optional[Dict[str, Any]]) -> "AutomationConfig":
        """
        Build from a parsed ``automation:`` mapping.

        Raises:
            ValueError: if a numeric option is not a number
        """
        section = section or {}
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}

        for key, value in section.items():
            if key not in known:
                logger.warning(f"Ignoring unknown automation option: {key}")
                continue
            if value is None:
                continue
            if key == "default_notification_channel":
                values[key] = str(value)
                continue

            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"automation.{key} must be a number, got {value!r}")
            if key in ("action_timeout_seconds", "snapshot_ttl_seconds"):
                values[key] = float(value)
            else:
                values[key] = int(value)

        return cls(**values)


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> AutomationConfig:
    if not os.path.exists(config_path):
        logger.warning(f"Config not found at {config_path}, using automation defaults")
        return AutomationConfig()

    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    section = config.get(CONFIG_SECTION)
    if section is not None and not isinstance(section, dict):
        raise ValueError(f"'{CONFIG_SECTION}' section must be a mapping")

    automation_config = AutomationConfig.from_dict(section)
    logger.info(f"Loaded automation config from {config_path}")
    return automation_config
