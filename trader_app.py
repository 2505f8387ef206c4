#Description: Process entry point. Initializes DB, restores the ledger, loads history, starts stream, worker and scheduler.

import argparse
import signal
import threading

from adapters.binance_stream import BinanceMarketStream
from models.db import init_db
from services.market_data import MarketDataService
from services.orchestrator import TradingOrchestrator
from services.portfolio import PortfolioService
from services.scheduler import report_job, start_scheduler, stop_scheduler
from utils.config import settings
from utils.logging import logger
from utils.security import SecretsVault


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Paper-trading crypto engine with advisory auto trading")
    parser.add_argument("--mode", choices=["spot", "futures"], help="trading mode (overrides the saved preference)")
    parser.add_argument("--symbols", help="comma separated symbols, e.g. BTCUSDT,ETHUSDT")
    parser.add_argument("--interval", help="kline interval, e.g. 1m, 5m")
    parser.add_argument("--no-auto-trade", action="store_true", help="analyse signals without opening positions")
    parser.add_argument("--save-advisory-key", metavar="KEY", help="store the advisory API key in the encrypted vault and exit")
    parser.add_argument("--save-telegram", nargs=2, metavar=("TOKEN", "CHAT_ID"),
                        help="store Telegram bot credentials in the encrypted vault and exit")
    return parser.parse_args(argv)


def save_credentials(args, vault: SecretsVault | None = None) -> bool:
    """Write any credentials given on the command line to the vault. True if something was stored."""
    if not (args.save_advisory_key or args.save_telegram):
        return False
    vault = vault or SecretsVault.instance()
    if args.save_advisory_key:
        vault.store("advisory", args.save_advisory_key, "")
        logger.info("Advisory API key saved to the vault")
    if args.save_telegram:
        token, chat_id = args.save_telegram
        vault.store("telegram", token, chat_id)
        logger.info("Telegram credentials saved to the vault")
    return True


def main(argv=None):
    args = parse_args(argv)
    if save_credentials(args):
        return
    init_db()

    portfolio = PortfolioService.instance()
    saved = portfolio.load_latest_snapshot()
    if saved is not None:
        portfolio.restore(saved)

    changes = {}
    if args.mode:
        changes["trading_mode"] = args.mode
    if args.interval:
        changes["selected_interval"] = args.interval
    if args.no_auto_trade:
        changes["auto_trade_enabled"] = False
    prefs = portfolio.update_preferences(**changes)

    symbols = [s.strip().upper() for s in args.symbols.split(",")] if args.symbols else settings.symbol_list
    market = MarketDataService.instance()
    market.load_history(symbols, prefs.selected_interval, prefs.trading_mode)

    orchestrator = TradingOrchestrator(portfolio=portfolio, market=market)
    stream = BinanceMarketStream(prefs.trading_mode, symbols, orchestrator.on_kline, orchestrator.on_price,
                                 interval=prefs.selected_interval)

    orchestrator.start()
    stream.start()
    start_scheduler()
    threading.Thread(target=report_job, daemon=True, name="initial_report").start()
    logger.info(f"Paper trader running: {prefs.trading_mode} {prefs.selected_interval} {', '.join(symbols)}")

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    stop.wait()

    logger.info("Shutting down")
    stream.stop()
    orchestrator.stop()
    stop_scheduler()
    portfolio.save_snapshot()


if __name__ == "__main__":
    main()
