"""
makerbot: continuous two-sided maker quoting for Hyperliquid perpetuals.
"""

__version__ = "0.1.0"
