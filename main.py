from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from pathlib import Path

from dotenv import load_dotenv

from autotrade.config import AppConfig, load_config
from autotrade.controller import TradingController
from autotrade.data.broker_client import KiwoomClient
from autotrade.data.streaming import StreamingFeed
from autotrade.execution.ledger import OrderLedger
from autotrade.execution.orders import OrderExecutor, OrderThrottle
from autotrade.monitoring.alerts import AlertConfig, AlertDispatcher
from autotrade.storage.db import get_connection, init_db
from autotrade.storage.journal import Journal

LOGGER = logging.getLogger("autotrade")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Kiwoom equity auto-trading bot")
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--dry-run", action="store_true", help="Never send orders; fills are simulated locally")
    mode_group.add_argument("--live", action="store_true", help="Send orders to the broker account")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--log-level", default=None, help="Logging level (default: LOG_LEVEL env or INFO)")
    return parser.parse_args()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def build_client(config: AppConfig, live: bool) -> KiwoomClient | None:
    app_key = os.getenv("KIWOOM_APPKEY")
    secret_key = os.getenv("KIWOOM_SECRETKEY")
    account = os.getenv("KIWOOM_ACCOUNT", "")

    if live and not (app_key and secret_key and account):
        raise RuntimeError("Live mode requires KIWOOM_APPKEY, KIWOOM_SECRETKEY and KIWOOM_ACCOUNT in .env")
    if not (app_key and secret_key):
        LOGGER.warning("Credentials missing. Running without screening or market data.")
        return None
    if os.getenv("KIWOOM_BASE_URL"):
        config.broker.base_url = os.environ["KIWOOM_BASE_URL"].strip().rstrip("/")
    return KiwoomClient.from_config(
        config.broker,
        app_key=app_key,
        secret_key=secret_key,
        account=account,
        timezone_name=config.timezone,
    )


def build_alert_dispatcher(config: AppConfig) -> AlertDispatcher:
    return AlertDispatcher(
        AlertConfig.from_env(
            enabled=config.monitoring.alerts_enabled,
            cooldown_seconds=int(os.getenv("ALERT_COOLDOWN_SECONDS", str(config.monitoring.alert_cooldown_seconds))),
        )
    )


def build_ledger(config: AppConfig) -> OrderLedger:
    execution = config.execution
    return OrderLedger(
        order_timeout_seconds=execution.order_timeout_seconds,
        cancelled_purge_seconds=execution.cancelled_purge_seconds,
        snapshot_push_grace_seconds=execution.snapshot_push_grace_seconds,
        dedupe_bucket_seconds=execution.dedupe_bucket_seconds,
        timezone_name=config.timezone,
    )


def resolve_db_path(root: Path, config: AppConfig, *, live: bool) -> str:
    raw = os.getenv("AUTOTRADE_DB_PATH", config.storage.sqlite_path)
    path = Path(raw)
    if not path.is_absolute():
        path = root / path
    if not live:
        path = path.with_name(f"{path.stem}.dry{path.suffix or '.db'}")
    return str(path)


def run() -> None:
    args = parse_args()
    live = bool(args.live)
    load_dotenv()
    setup_logging(args.log_level or os.getenv("LOG_LEVEL", "INFO"))

    root = Path(__file__).resolve().parent
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = root / config_path
    config = load_config(config_path)

    client = build_client(config, live)
    account = os.getenv("KIWOOM_ACCOUNT", "") or "dry-run"

    db_path = resolve_db_path(root, config, live=live)
    conn = get_connection(db_path)
    init_db(conn)
    journal = Journal(conn)
    LOGGER.info("SQLite state path: %s", db_path)

    ledger = build_ledger(config)
    executor = OrderExecutor(
        client=client,
        ledger=ledger,
        throttle=OrderThrottle(config.execution.order_cooldown_seconds),
        dry_run=not live,
    )
    stop_event = threading.Event()
    controller = TradingController(
        config=config,
        client=client,
        ledger=ledger,
        executor=executor,
        journal=journal,
        alerts=build_alert_dispatcher(config),
        account=account,
        stop_event=stop_event,
    )
    controller.restore()

    if client is not None:
        feed = StreamingFeed(
            config.broker.socket_url,
            client.access_token,
            on_tick=controller.on_tick,
            on_fill=controller.on_fill,
            stop_event=stop_event,
            reconnect_attempts=config.broker.stream_reconnect_attempts,
            reconnect_delay_seconds=config.broker.stream_reconnect_delay_seconds,
        )
        controller.stream = feed
        feed.start()
    else:
        LOGGER.warning("Streaming disabled; positions are marked from snapshots only")

    def _stop(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, shutting down.", signum)
        controller.trading_enabled.clear()
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _stop)

    LOGGER.info(
        "Starting bot | mode=%s | account=%s | timezone=%s | window=%s-%s",
        "live" if live else "dry-run",
        account,
        config.timezone,
        config.trading.window_start,
        config.trading.window_end,
    )
    threads = controller.start()
    while not stop_event.is_set():
        stop_event.wait(1.0)
    for thread in threads:
        thread.join(timeout=10.0)

    controller.persist()
    controller.heartbeat()
    LOGGER.info("Bot stopped.")


if __name__ == "__main__":
    run()
