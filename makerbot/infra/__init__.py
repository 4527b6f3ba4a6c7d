"""
Infrastructure package.

This package contains infrastructure components including async execution,
the info HTTP client and logging configuration.
"""

from makerbot.infra.async_execution import AsyncExchange
from makerbot.infra.async_info import AsyncInfo
from makerbot.infra.logging_cfg import build_logger

__all__ = [
    "AsyncExchange",
    "AsyncInfo",
    "build_logger",
]
