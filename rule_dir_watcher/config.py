"""Configuration management for rule-dir-watcher.

This module handles loading configuration from defaults, config files, environment variables,
and CLI arguments. It enforces a strict priority order and validates every value before the
watcher starts. Supports XDG_CONFIG_HOME (Linux/macOS), APPDATA (Windows), and ~/.config fallback.

The configuration is aggregated into a :class:`Config` dataclass, which serves as the
single source of truth for application settings.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Supported Environment Variables:
    * ``RULE_DIR_WATCHER_RULES_FOLDER``: Rules folder to watch. Unset disables watching.
    * ``RULE_DIR_WATCHER_BUNDLED_RULES_FOLDER``: Rules loaded before the watched folder.
    * ``RULE_DIR_WATCHER_PERIOD``: Seconds between scheduler ticks.
    * ``RULE_DIR_WATCHER_DRAIN_TIMEOUT``: Max seconds a tick waits for notifications.
    * ``RULE_DIR_WATCHER_RECURSIVE``: Whether subdirectories are watched.
    * ``RULE_DIR_WATCHER_MAX_PENDING_EVENTS``: Capacity of the notification queue.
    * ``RULE_DIR_WATCHER_LOG_FILE``: Path to the log file.
    * ``RULE_DIR_WATCHER_LOG_LEVEL``: Logging level.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "load_config"]

CONFIG_SECTION = "rule-dir-watcher"

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        rules_folder (Optional[str]): Absolute path of the folder to watch. None disables watching.
        bundled_rules_folder (Optional[str]): Absolute path of rules loaded before the watched ones.
        period (float): Seconds between scheduler ticks. Defaults to 5.0.
        drain_timeout (float): Max seconds each tick waits for notifications. Defaults to 1.0.
        recursive (bool): Watch subdirectories too. Defaults to True.
        max_pending_events (int): Notification queue capacity before overflow. Defaults to 4096.
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "INFO".
    """

    rules_folder: Optional[str]
    bundled_rules_folder: Optional[str]
    period: float
    drain_timeout: float
    recursive: bool
    max_pending_events: int
    log_file: Optional[str]
    log_level: str


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Checks the following locations:
    1. Local `config.ini` (current working directory).
    2. `$XDG_CONFIG_HOME/rule-dir-watcher/config.ini` (Linux/macOS).
    3. `%APPDATA%\\rule-dir-watcher\\config.ini` (Windows).
    4. `~/.config/rule-dir-watcher/config.ini` (Fallback).

    Returns:
        List[str]: A list of file paths to check for configuration.
    """
    paths = ["config.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(os.path.join(os.path.expanduser(xdg_config_home), CONFIG_SECTION, "config.ini"))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(os.path.join(os.path.expanduser(os.environ["APPDATA"]), CONFIG_SECTION, "config.ini"))
    else:
        paths.append(os.path.join(os.path.expanduser("~"), ".config", CONFIG_SECTION, "config.ini"))
    return paths


def _validate_folder(path_str: str, name: str) -> str:
    """Resolve a folder path and check it is an existing directory.

    Args:
        path_str (str): Raw path, may contain ``~``.
        name (str): Setting name used in error messages.

    Returns:
        str: The resolved, absolute path.

    Raises:
        ValueError: If the path does not exist or is not a directory.
    """
    path = Path(os.path.expanduser(path_str))
    try:
        resolved = path.resolve(strict=True)
    except FileNotFoundError as e:
        raise ValueError(f"Invalid {name}: directory not found: {path}") from e
    except (RuntimeError, OSError) as e:
        raise ValueError(f"Error resolving {name} {path}: {e}") from e
    if not resolved.is_dir():
        raise ValueError(f"Invalid {name}: not a directory: {resolved}")
    return str(resolved)


def _validate_log_file(path_str: str) -> str:
    """Resolve the log file path and check it can be written.

    Raises:
        ValueError: If the path is a directory or cannot be created.
    """
    resolved = Path(os.path.expanduser(path_str)).absolute()
    if resolved.exists() and not resolved.is_file():
        raise ValueError(f"Invalid path: Log file is not a regular file: {resolved}")
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        with resolved.open("a"):
            pass
    except PermissionError as e:
        raise ValueError(f"Cannot create log file (permission denied): {resolved}") from e
    except OSError as e:
        raise ValueError(f"Cannot create log file: {e}") from e
    return str(resolved)


def _to_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {name}: {value}")


def _to_positive_float(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid float for {name}: {value}") from e
    if number <= 0:
        raise ValueError(f"{name} must be positive, got {number}")
    return number


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Priority Order (Highest to Lowest):
        1. CLI Arguments (passed via `args`)
        2. Environment Variables (e.g., `RULE_DIR_WATCHER_RULES_FOLDER`)
        3. Config File (`[rule-dir-watcher]` section of `config.ini`)
        4. Hardcoded Defaults

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments from argparse.
            Keys should match Config attributes. Values of None are ignored so that
            lower-priority sources take effect. Typically ``vars(parser.parse_args())``.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ValueError: If a numeric value is invalid, ``drain_timeout`` is not shorter
            than ``period``, a folder does not exist, or the log level is unknown.

    Examples:
        >>> config = load_config({"period": 10.0})
        >>> config.period
        10.0
        >>> config.rules_folder is None
        True
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "rules_folder": None,
        "bundled_rules_folder": None,
        "period": 5.0,
        "drain_timeout": 1.0,
        "recursive": True,
        "max_pending_events": 4096,
        "log_file": None,
        "log_level": "INFO",
    }

    # 2. Config File
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            parser = ConfigParser(interpolation=None)
            try:
                parser.read(path, encoding="utf-8-sig")
                if CONFIG_SECTION in parser:
                    for key, value in parser[CONFIG_SECTION].items():
                        if value is not None and value != "":
                            config_values[key] = value
            except (ConfigParserError, UnicodeDecodeError, OSError) as e:
                logger.error(f"Failed to parse config file {path}: {e}")
            break

    # 3. Environment Variables
    env_map = {
        "RULE_DIR_WATCHER_RULES_FOLDER": "rules_folder",
        "RULE_DIR_WATCHER_BUNDLED_RULES_FOLDER": "bundled_rules_folder",
        "RULE_DIR_WATCHER_PERIOD": "period",
        "RULE_DIR_WATCHER_DRAIN_TIMEOUT": "drain_timeout",
        "RULE_DIR_WATCHER_RECURSIVE": "recursive",
        "RULE_DIR_WATCHER_MAX_PENDING_EVENTS": "max_pending_events",
        "RULE_DIR_WATCHER_LOG_FILE": "log_file",
        "RULE_DIR_WATCHER_LOG_LEVEL": "log_level",
    }
    for env_var, config_key in env_map.items():
        val = os.getenv(env_var)
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    config_values["period"] = _to_positive_float(config_values["period"], "period")
    config_values["drain_timeout"] = _to_positive_float(config_values["drain_timeout"], "drain_timeout")
    if config_values["drain_timeout"] >= config_values["period"]:
        raise ValueError(
            f"drain_timeout ({config_values['drain_timeout']}) must be shorter than period ({config_values['period']})"
        )

    config_values["recursive"] = _to_bool(config_values["recursive"], "recursive")

    try:
        config_values["max_pending_events"] = int(config_values["max_pending_events"])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid integer for max_pending_events: {config_values['max_pending_events']}") from e
    if not (1 <= config_values["max_pending_events"] <= 1_000_000):
        raise ValueError(
            f"max_pending_events must be between 1 and 1000000, got {config_values['max_pending_events']}"
        )

    # An absent rules folder is not an error: watching is simply disabled.
    if config_values["rules_folder"]:
        config_values["rules_folder"] = _validate_folder(str(config_values["rules_folder"]), "rules_folder")
    else:
        config_values["rules_folder"] = None

    if config_values["bundled_rules_folder"]:
        config_values["bundled_rules_folder"] = _validate_folder(
            str(config_values["bundled_rules_folder"]), "bundled_rules_folder"
        )
    else:
        config_values["bundled_rules_folder"] = None

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_file(str(config_values["log_file"]))

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ValueError(f"Invalid log level: {config_values['log_level']}")

    # Filter out keys that are not in Config fields (e.g. 'debug' from CLI)
    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(**filtered_values)
