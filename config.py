"""
config.py – Configuration persistence helpers.

Handles loading and saving the application's ``config.json`` file, including
backwards-compatible key migration and first-run default creation, and turns
the configured rule groups into :class:`~models.RuleGroup` objects.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from typing import Any

from models import RuleGroup

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

CONFIG_DIR: str = os.environ.get(
    "RECLAIMARR_CONFIG_DIR", os.path.join(os.path.dirname(__file__), "config")
)
CONFIG_FILE: str = os.path.join(CONFIG_DIR, "config.json")

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "jellyfin_url": "",
    "api_key": "",
    "radarr_url": "",
    "radarr_api_key": "",
    "sonarr_url": "",
    "sonarr_api_key": "",
    "tautulli_url": "",
    "tautulli_api_key": "",
    "seerr_url": "",
    "seerr_api_key": "",
    "request_timeout": 10,
    "page_size": 50,
    "rule_groups": [],
    "scheduler": {
        "rule_handler_enabled": True,
        "rule_handler_schedule": "0 */8 * * *",
        "collection_handler_enabled": True,
        "collection_handler_schedule": "0 */12 * * *",
    },
}

# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def state_file_path() -> str:
    """Path of the runtime state document kept next to ``config.json``."""
    return os.path.join(CONFIG_DIR, "state.json")


def _migrate(cfg: dict[str, Any]) -> bool:
    """Rename legacy keys in place; return ``True`` when anything changed."""
    migrated = False
    if "plex_url" in cfg:
        cfg.pop("plex_url")
        migrated = True

    for group in cfg.get("rule_groups", []):
        if not isinstance(group, dict):
            continue
        targets = [group]
        if isinstance(group.get("collection"), dict):
            targets.append(group["collection"])
        for target in targets:
            for legacy in ("plex_id", "plexId"):
                if legacy in target:
                    value = target.pop(legacy)
                    target.setdefault("media_server_id", value)
                    migrated = True
        collection = group.get("collection")
        if isinstance(collection, dict) and "media_server_type" not in collection:
            collection["media_server_type"] = "jellyfin"
            migrated = True
    return migrated


def load_config() -> dict[str, Any]:
    """Load configuration from disk.

    If the config file does not exist it is created from :data:`DEFAULT_CONFIG`
    and that default dict is returned.  When loading an existing file:

    * Missing keys are filled in from :data:`DEFAULT_CONFIG` (forward-compat).
    * Legacy ``plex_id`` / ``plexId`` keys become ``media_server_id``, the old
      ``plex_url`` is dropped and collections without ``media_server_type``
      default to Jellyfin.  The updated config is persisted automatically.

    Returns:
        The (possibly migrated) configuration dictionary.
    """
    if not os.path.exists(CONFIG_FILE):
        save_config(copy.deepcopy(DEFAULT_CONFIG))
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(CONFIG_FILE, "r") as fh:
            cfg: dict[str, Any] = json.load(fh)
    except (OSError, ValueError):
        # If the file is corrupt or unreadable, fall back to safe defaults
        logger.warning("Config file %s is unreadable; using defaults", CONFIG_FILE)
        return copy.deepcopy(DEFAULT_CONFIG)
    if not isinstance(cfg, dict):
        logger.warning("Config file %s does not hold an object; using defaults", CONFIG_FILE)
        return copy.deepcopy(DEFAULT_CONFIG)

    # Fill in any keys added after initial creation
    for key, default_value in DEFAULT_CONFIG.items():
        cfg.setdefault(key, copy.deepcopy(default_value))
        # Ensure nested dictionaries (like scheduler) also have defaults
        if isinstance(default_value, dict) and isinstance(cfg[key], dict):
            for sub_key, sub_val in default_value.items():
                cfg[key].setdefault(sub_key, sub_val)

    if _migrate(cfg):
        logger.info("Migrated legacy configuration keys")
        save_config(cfg)

    return cfg


def save_config(config: dict[str, Any]) -> None:
    """Persist *config* to :data:`CONFIG_FILE` as pretty-printed JSON.

    Args:
        config: The configuration dictionary to write.
    """
    os.makedirs(CONFIG_DIR, exist_ok=True)
    with open(CONFIG_FILE, "w") as fh:
        json.dump(config, fh, indent=4)


def get_rule_groups(config: dict[str, Any]) -> list[RuleGroup]:
    """Parse the configured rule groups, skipping malformed entries.

    Args:
        config: Loaded configuration.

    Returns:
        The valid rule groups, in configuration order.
    """
    groups: list[RuleGroup] = []
    for raw in config.get("rule_groups", []):
        if not isinstance(raw, dict):
            logger.warning("Ignoring rule group entry that is not an object: %r", raw)
            continue
        try:
            groups.append(RuleGroup.from_dict(raw))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed rule group %r: %s", raw.get("name", raw.get("id")), exc)
    return groups


def find_rule_group(config: dict[str, Any], rule_group_id: int) -> RuleGroup | None:
    for group in get_rule_groups(config):
        if group.id == rule_group_id:
            return group
    return None
