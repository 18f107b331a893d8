"""
Configuration Module for Mentionable.

This module provides configuration loading and management for the webmention
service. Configuration is loaded from config.yml and supports Docker secrets.

Usage:
    >>> from config import load_config, get_site_url
    >>> config = load_config()
    >>> site_url = get_site_url(config)
"""
import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional


logger = logging.getLogger(__name__)

DEFAULT_SITE_URL = "http://localhost:3000"

# Per-call network budgets in seconds
DEFAULT_TIMEOUTS = {
    "discovery_head": 5,
    "discovery_get": 10,
    "verify": 10,
    "send": 10,
}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from config.yml file.

    Args:
        config_path: Path to config.yml file. If None, looks in current directory
                    and parent directories.

    Returns:
        Dictionary containing configuration settings

    Example:
        >>> config = load_config()
        >>> receive_enabled = config.get("webmention", {}).get("receive", {}).get("enabled", True)
    """
    if config_path is None:
        current = Path.cwd()
        for parent in [current] + list(current.parents):
            candidate = parent / "config.yml"
            if candidate.exists():
                config_path = str(candidate)
                break

        # If still not found, check the project root (where this file is located)
        if config_path is None:
            project_root = Path(__file__).parent.parent.parent
            candidate = project_root / "config.yml"
            if candidate.exists():
                config_path = str(candidate)

    if config_path is None:
        logger.warning("config.yml not found, using default configuration")
        return get_default_config()

    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
            if not isinstance(config, dict):
                logger.warning("Configuration root must be a mapping, using default configuration")
                return get_default_config()
            logger.info(f"Loaded configuration from {config_path}")
            return config
    except FileNotFoundError:
        logger.warning(f"Configuration file not found: {config_path}")
        return get_default_config()
    except yaml.YAMLError as e:
        logger.error(f"Error parsing configuration file: {e}")
        return get_default_config()


def get_default_config() -> Dict[str, Any]:
    """Return default configuration when config.yml is not available.

    Returns:
        Dictionary with default configuration values
    """
    return {
        "site": {
            "url": DEFAULT_SITE_URL,
        },
        "webmention": {
            "receive": {"enabled": True},
            "send": {"enabled": True, "max_candidates": 25, "max_workers": 5},
            "storage_directory": "./data/webmentions",
            "timeouts": dict(DEFAULT_TIMEOUTS),
        },
        "cors": {
            "enabled": False,
            "origins": []
        },
        "security": {
            "rate_limit_enabled": True,
            "rate_limit_requests": 60,
            "rate_limit_window_seconds": 60,
        },
    }


def get_site_url(config: Dict[str, Any]) -> str:
    """Return the configured site origin without a trailing slash.

    The ``SITE_URL`` environment variable wins over the config file so a
    container can be pointed at a different public hostname without
    rebuilding its config.
    """
    site_url = os.environ.get("SITE_URL") or config.get("site", {}).get("url", "")
    if not isinstance(site_url, str) or not site_url.strip():
        logger.warning(f"No site.url configured; falling back to {DEFAULT_SITE_URL}")
        return DEFAULT_SITE_URL
    return site_url.strip().rstrip("/")


def get_webmention_timeouts(config: Dict[str, Any]) -> Dict[str, float]:
    """Return per-call timeouts with defaults applied for missing keys."""
    configured = config.get("webmention", {}).get("timeouts", {}) or {}
    timeouts = dict(DEFAULT_TIMEOUTS)
    for key, value in configured.items():
        if key not in timeouts:
            logger.warning(f"Ignoring unknown webmention timeout key: {key}")
            continue
        try:
            timeouts[key] = float(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid timeout {value!r} for {key}; using {timeouts[key]}s")
    return timeouts


def read_secret_file(filepath: str) -> Optional[str]:
    """Read a Docker secret from a file.

    Docker secrets are mounted as files in /run/secrets/ directory.

    Args:
        filepath: Path to the secret file

    Returns:
        Content of the secret file (stripped of whitespace), or None if file doesn't exist

    Example:
        >>> key = read_secret_file("/run/secrets/content_api_key")
    """
    try:
        with open(filepath, "r") as f:
            return f.read().strip()
    except FileNotFoundError:
        logger.debug(f"Secret file not found: {filepath}")
        return None
    except OSError as e:
        logger.error(f"Error reading secret file {filepath}: {e}")
        return None
