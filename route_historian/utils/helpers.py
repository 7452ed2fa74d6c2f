"""
Helper functions for Route Historian.
"""

import logging
from pathlib import Path
from typing import Any

import structlog
import yaml


DEFAULT_CONFIG_FILE = "config.yaml"


def load_config(config_path: str | Path | None = None) -> dict[str, Any]:
    """
    Load configuration overrides from a YAML file.

    Args:
        config_path: Path to config file. If None, uses ./config.yaml

    Returns:
        Configuration dictionary (empty for an empty file)
    """
    config_path = Path(config_path or DEFAULT_CONFIG_FILE)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"Configuration file must contain a mapping: {config_path}")

    return config


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    log_format: str | None = None
) -> structlog.BoundLogger:
    """
    Set up structured logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for log output
        log_format: Optional custom format string

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_dir = Path(log_file).parent
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=numeric_level,
        format=log_format or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("route_historian")


def format_coordinates(latitude: float, longitude: float, precision: int = 5) -> str:
    """
    Format a coordinate pair with hemisphere letters.

    Example: ``23.55052°S, 46.63331°W``
    """
    lat_hemi = "N" if latitude >= 0 else "S"
    lon_hemi = "E" if longitude >= 0 else "W"
    return f"{abs(latitude):.{precision}f}°{lat_hemi}, {abs(longitude):.{precision}f}°{lon_hemi}"


def format_duration(seconds: float) -> str:
    """
    Format a short duration (audio lengths, trace spans).

    Returns:
        e.g. "4.2 s" or "2 min 05 s"
    """
    if seconds < 60:
        return f"{seconds:.1f} s"
    minutes, secs = divmod(int(round(seconds)), 60)
    return f"{minutes} min {secs:02d} s"
