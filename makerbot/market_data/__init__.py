"""
Market data package.

Hyperliquid websocket stream and the reference-market spread source.
"""

from makerbot.market_data.binance_spread import BinanceSpreadSource
from makerbot.market_data.hyperliquid_stream import HyperliquidMarketStream

__all__ = [
    "BinanceSpreadSource",
    "HyperliquidMarketStream",
]
