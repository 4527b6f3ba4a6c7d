"""
Utility helpers.
"""

from __future__ import annotations

import time


def now_ms() -> int:
    return int(time.time() * 1000)


def ms_to_sec(ms: int) -> float:
    return max(0, ms) / 1000.0
