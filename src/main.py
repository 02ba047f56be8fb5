"""Main entry point for the Nostr P2P order alert bot."""
import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import yaml
import structlog
from dotenv import load_dotenv

from src.alerts.telegram import TelegramNotifier
from src.api.relay import RelayConnection, RelayHealth
from src.detection.deduplicator import OrderDeduplicator
from src.detection.throttle import NotificationThrottle
from src.models import Alert
from src.pipeline import IngestionPipeline
from src.storage.database import DB_PATH, Database

# Load environment variables
load_dotenv()

DEFAULT_RELAYS = [
    "wss://relay.mostro.network",
    "wss://nos.lol",
    "wss://relay.damus.io",
]


def configure_logging(level: str = "INFO"):
    """Configure structured logging on top of the stdlib logging backend."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))
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
            structlog.dev.ConsoleRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


def load_config(config_path: Optional[Path] = None) -> dict:
    """Load configuration from YAML file and apply environment overrides."""
    config_path = config_path or Path(__file__).parent.parent / "config.yaml"

    config: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
        logger.info("config_loaded", path=str(config_path))
    else:
        logger.warning("config_file_not_found", path=str(config_path))

    relays = config.setdefault("relays", {})
    env_relays = os.getenv("NOSTR_RELAYS", "").strip()
    if env_relays:
        relays["urls"] = [r.strip() for r in env_relays.split(",") if r.strip()]
    if not relays.get("urls"):
        relays["urls"] = list(DEFAULT_RELAYS)

    storage = config.setdefault("storage", {})
    if os.getenv("DB_PATH"):
        storage["path"] = os.getenv("DB_PATH")

    return config


class NostrOrderAlertBot:
    """Main bot class that wires relays, pipeline, storage and Telegram."""

    def __init__(self, config: dict, notifier=None):
        self.config = config

        storage_config = config.get("storage", {})
        self.db = Database(storage_config.get("path", DB_PATH))
        self.notifier = notifier or TelegramNotifier()

        dedup_config = config.get("dedup", {})
        self.deduplicator = OrderDeduplicator(
            retention_hours=dedup_config.get("order_retention_hours", 48),
            history_size=dedup_config.get("history_size", 32),
        )

        throttle_config = config.get("throttle", {})
        self.throttle = NotificationThrottle(
            self.db,
            daily_cap=throttle_config.get("free_daily_cap", 10),
            tz=throttle_config.get("timezone", "UTC"),
        )

        pipeline_config = config.get("pipeline", {})
        self.pipeline = IngestionPipeline(
            self.db,
            self.notifier,
            self.deduplicator,
            self.throttle,
            queue_size=pipeline_config.get("queue_size", 1000),
            workers=pipeline_config.get("workers", 1),
            eviction_interval=pipeline_config.get("eviction_interval_seconds", 600),
        )
        self.health_interval = pipeline_config.get("health_log_interval_seconds", 300)

        relay_config = config.get("relays", {})
        self.relays = [
            RelayConnection(
                url,
                self.pipeline.submit,
                backoff_initial=relay_config.get("backoff_initial_seconds", 1.0),
                backoff_max=relay_config.get("backoff_max_seconds", 60.0),
                connect_timeout=relay_config.get("connect_timeout_seconds", 10.0),
                idle_timeout=relay_config.get("idle_timeout_seconds", 120.0),
                lookback_minutes=relay_config.get("lookback_minutes", 60),
            )
            for url in relay_config.get("urls", [])
        ]

    async def start(self):
        """Start the bot and run until cancelled."""
        logger.info("bot_starting", relays=len(self.relays))

        # 1. Storage and order cache
        await self.db.connect()
        since = datetime.now(timezone.utc) - self.deduplicator.retention
        self.deduplicator.restore(await self.db.load_recent_orders(since))

        # 2. Pipeline workers
        await self.pipeline.start()

        # 3. Relay connections
        for relay in self.relays:
            relay.start()

        logger.info("bot_started", relays=[r.url for r in self.relays])

        while True:
            await asyncio.sleep(self.health_interval)
            self.log_health()

    async def add_alert(self, alert: Alert) -> Alert:
        """Store an alert, enforcing the free-tier alert limit."""
        max_alerts = self.config.get("alerts", {}).get("free_max_alerts")
        return await self.db.add_alert(alert, max_alerts=max_alerts)

    async def list_alerts(self, user_id: str) -> list[Alert]:
        return await self.db.get_user_alerts(user_id)

    async def set_alert_active(self, user_id: str, alert_id: int, active: bool) -> bool:
        """Pause or resume one of the user's alerts. False if the user does not own it."""
        owned = {alert.alert_id for alert in await self.db.get_user_alerts(user_id)}
        if alert_id not in owned:
            logger.warning("alert_not_owned", user_id=user_id, alert_id=alert_id)
            return False
        await self.db.set_alert_active(alert_id, active)
        logger.info("alert_toggled", user_id=user_id, alert_id=alert_id, active=active)
        return True

    def relay_health(self) -> dict[str, str]:
        return {relay.url: relay.health.value for relay in self.relays}

    def log_health(self):
        health = self.relay_health()
        connected = sum(1 for state in health.values() if state == RelayHealth.CONNECTED.value)
        if self.relays and connected == 0:
            logger.warning("no_relays_connected", relays=health)
        logger.info("bot_health", connected=connected, relays=health, **self.pipeline.stats())

    async def shutdown(self):
        """Graceful shutdown: relays, then queue and workers, then storage."""
        logger.info("bot_shutting_down")
        await asyncio.gather(*(asyncio.to_thread(relay.stop) for relay in self.relays))
        await self.pipeline.stop()
        await self.db.close()


async def main():
    """Main entry point."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    config = load_config()
    bot = NostrOrderAlertBot(config)

    try:
        await bot.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("keyboard_interrupt")
    finally:
        await bot.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
