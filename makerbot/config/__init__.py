"""
Configuration package.

Environment-driven settings loading and validation.
"""

from makerbot.config.config import Settings, log_config

__all__ = [
    "Settings",
    "log_config",
]
