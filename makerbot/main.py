"""
Entry point wiring all components.

Exit codes: 0 on a requested stop, 1 on a fatal halt or failed startup.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys

import httpx
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info

from makerbot.bot_factory import BotDependencies, build_bot
from makerbot.config.config import Settings, log_config
from makerbot.execution.hyperliquid_gateway import HyperliquidGateway
from makerbot.infra.async_execution import AsyncExchange
from makerbot.infra.async_info import AsyncInfo
from makerbot.infra.logging_cfg import build_logger
from makerbot.market_data.binance_spread import BinanceSpreadSource
from makerbot.market_data.hyperliquid_stream import HyperliquidMarketStream
from makerbot.monitoring.metrics_rich import RichMetrics, start_metrics_server
from makerbot.monitoring.status import StatusBoard
from makerbot.risk.position_guard import FlattenError


async def main() -> int:
    cfg = Settings.load()
    log = build_logger("makerbot", level=getattr(logging, cfg.log_level, logging.INFO), file_path=cfg.log_file)
    log_config(cfg)

    account = cfg.resolve_account()
    wallet = cfg.resolve_signer()
    perp_dexs = [cfg.dex] if cfg.dex else None
    info = Info(cfg.base_url, skip_ws=False, perp_dexs=perp_dexs)
    shared_info_client = httpx.AsyncClient(base_url=cfg.base_url.rstrip("/"), http2=True, timeout=cfg.http_timeout)
    async_info = AsyncInfo(cfg.base_url, timeout=cfg.http_timeout, client=shared_info_client)
    base_exchange = Exchange(wallet, cfg.base_url, account_address=account, perp_dexs=perp_dexs)
    async_exchange = AsyncExchange(base_exchange, timeout=cfg.http_timeout)
    spread_source = BinanceSpreadSource(cfg.spread_guard_base_url, timeout=cfg.http_timeout)

    gateway = HyperliquidGateway(
        async_exchange,
        async_info,
        coin=cfg.coin,
        account=account,
        dex=cfg.dex,
        market_slippage_pct=cfg.market_slippage_pct,
    )
    stream = HyperliquidMarketStream(
        info,
        coin=cfg.coin,
        account=account,
        stale_after=cfg.ws_stale_after,
        watch_interval=cfg.ws_watch_interval,
    )
    metrics = RichMetrics()
    if start_metrics_server(metrics, cfg.metrics_port):
        log.info(json.dumps({"event": "metrics_server_started", "port": cfg.metrics_port}))

    orchestrator = build_bot(
        BotDependencies(
            cfg=cfg,
            gateway=gateway,
            market_data=stream,
            spread_source=spread_source,
            metrics=metrics,
            status_board=StatusBoard(),
        )
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_stop)
        except NotImplementedError:
            pass

    log.info(json.dumps({"event": "startup", "coin": cfg.coin, "account": account}))
    exit_code = 0
    try:
        halted_reason = await orchestrator.run()
        if halted_reason:
            log.critical(json.dumps({"event": "exit_on_halt", "reason": halted_reason}))
            exit_code = 1
    except FlattenError as exc:
        log.critical(json.dumps({"event": "startup_aborted", "err": str(exc)}))
        exit_code = 1
    finally:
        log.info("Closing connections...")
        await async_exchange.close()
        await async_info.close()
        await shared_info_client.aclose()
        await spread_source.close()
        try:
            info.disconnect_websocket()
        except Exception as exc:
            log.debug(json.dumps({"event": "ws_disconnect_error", "err": str(exc)}))
        log.info("Shutdown complete")
    return exit_code


def run() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
