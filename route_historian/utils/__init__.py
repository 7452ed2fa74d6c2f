"""
Utility functions and helpers for Route Historian.
"""

from .helpers import (
    format_coordinates,
    format_duration,
    load_config,
    setup_logging,
)

__all__ = [
    "format_coordinates",
    "format_duration",
    "load_config",
    "setup_logging",
]
