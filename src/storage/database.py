"""SQLite database for users, alerts, notification counters and the order cache."""
import aiosqlite
from datetime import date, datetime, timezone
from typing import Optional
import structlog

from src.errors import AlertLimitExceeded, InvariantViolation
from src.models import Alert, Order, Platform, User

logger = structlog.get_logger()

DB_PATH = "p2p_order_alerts.db"


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    """Async SQLite database handler."""

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Connect to database and create tables."""
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._create_tables()
        logger.info("database_connected", path=self.db_path)

    async def close(self):
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    async def _create_tables(self):
        """Create database tables if they don't exist."""
        await self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                tier TEXT NOT NULL DEFAULT 'free',
                created_at TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                kind TEXT,
                fiat_code TEXT,
                min_amount_sats INTEGER,
                max_amount_sats INTEGER,
                min_premium REAL,
                max_premium REAL,
                payment_method TEXT,
                platforms TEXT,
                active INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS notification_counters (
                user_id TEXT NOT NULL,
                day TEXT NOT NULL,
                count INTEGER NOT NULL DEFAULT 0 CHECK (count >= 0),
                PRIMARY KEY (user_id, day)
            );

            CREATE TABLE IF NOT EXISTS orders (
                order_id TEXT PRIMARY KEY,
                kind TEXT,
                fiat_code TEXT,
                status TEXT,
                amount_sats INTEGER,
                fiat_amount REAL,
                payment_method TEXT,
                premium REAL,
                source_url TEXT,
                platform TEXT,
                raw_sequence INTEGER,
                last_seen_at TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS alert_matches (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                alert_id INTEGER NOT NULL,
                order_id TEXT NOT NULL,
                decision TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_alerts_user ON alerts(user_id);
            CREATE INDEX IF NOT EXISTS idx_alerts_fiat_kind ON alerts(fiat_code, kind);
            CREATE INDEX IF NOT EXISTS idx_orders_last_seen ON orders(last_seen_at);
            CREATE INDEX IF NOT EXISTS idx_matches_user ON alert_matches(user_id);
        """)
        await self.conn.commit()

    # Users

    async def add_user(self, user_id: str, tier: str = "free") -> User:
        """Create a user, or update the tier of an existing one."""
        now = datetime.now(timezone.utc)
        await self.conn.execute("""
            INSERT INTO users (user_id, tier, created_at) VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET tier = excluded.tier
        """, (user_id, tier, now.isoformat()))
        await self.conn.commit()
        return await self.get_user(user_id)

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self.conn.execute(
            "SELECT * FROM users WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return User(
                    user_id=row["user_id"],
                    tier=row["tier"],
                    created_at=_parse_ts(row["created_at"]),
                )
        return None

    async def get_user_tier(self, user_id: str) -> str:
        """Return the user's tier, treating unknown users as free."""
        user = await self.get_user(user_id)
        return user.tier if user else "free"

    async def delete_user(self, user_id: str):
        """Delete a user together with its alerts, counters and match history."""
        await self.conn.execute("DELETE FROM alerts WHERE user_id = ?", (user_id,))
        await self.conn.execute("DELETE FROM notification_counters WHERE user_id = ?", (user_id,))
        await self.conn.execute("DELETE FROM alert_matches WHERE user_id = ?", (user_id,))
        await self.conn.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
        await self.conn.commit()
        logger.info("user_deleted", user_id=user_id)

    # Alerts

    async def add_alert(self, alert: Alert, max_alerts: Optional[int] = None) -> Alert:
        """Store an alert. ``max_alerts`` caps active alerts for free users."""
        if max_alerts is not None and await self.get_user_tier(alert.user_id) != "paid":
            async with self.conn.execute(
                "SELECT COUNT(*) AS n FROM alerts WHERE user_id = ? AND active = 1",
                (alert.user_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if row["n"] >= max_alerts:
                raise AlertLimitExceeded(f"user {alert.user_id} already has {row['n']} alerts")

        platforms = ",".join(sorted(str(Platform(p).value) for p in alert.platforms))
        cursor = await self.conn.execute("""
            INSERT INTO alerts
            (user_id, kind, fiat_code, min_amount_sats, max_amount_sats,
             min_premium, max_premium, payment_method, platforms, active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            alert.user_id,
            alert.kind.lower() if alert.kind else None,
            alert.fiat_code.upper() if alert.fiat_code else None,
            alert.min_amount_sats,
            alert.max_amount_sats,
            alert.min_premium,
            alert.max_premium,
            alert.payment_method or None,
            platforms or None,
            1 if alert.active else 0,
        ))
        await self.conn.commit()
        alert.alert_id = cursor.lastrowid
        return alert

    async def set_alert_active(self, alert_id: int, active: bool):
        await self.conn.execute(
            "UPDATE alerts SET active = ? WHERE id = ?", (1 if active else 0, alert_id)
        )
        await self.conn.commit()

    async def get_active_alerts(self, fiat_code: str, kind: str) -> list[Alert]:
        """Fetch active alerts that could match an order with this currency and side."""
        async with self.conn.execute("""
            SELECT * FROM alerts
            WHERE active = 1
              AND (fiat_code IS NULL OR fiat_code = ?)
              AND (kind IS NULL OR kind = ?)
            ORDER BY id
        """, (fiat_code.upper(), kind.lower())) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_alert(row) for row in rows]

    async def get_user_alerts(self, user_id: str) -> list[Alert]:
        async with self.conn.execute(
            "SELECT * FROM alerts WHERE user_id = ? ORDER BY id", (user_id,)
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_alert(row) for row in rows]

    @staticmethod
    def _row_to_alert(row) -> Alert:
        platforms = row["platforms"]
        return Alert(
            alert_id=row["id"],
            user_id=row["user_id"],
            kind=row["kind"],
            fiat_code=row["fiat_code"],
            min_amount_sats=row["min_amount_sats"],
            max_amount_sats=row["max_amount_sats"],
            min_premium=row["min_premium"],
            max_premium=row["max_premium"],
            payment_method=row["payment_method"],
            platforms=frozenset(Platform(p) for p in platforms.split(",")) if platforms else frozenset(),
            active=bool(row["active"]),
        )

    # Notification counters

    async def get_notification_count(self, user_id: str, day: date) -> int:
        async with self.conn.execute(
            "SELECT count FROM notification_counters WHERE user_id = ? AND day = ?",
            (user_id, day.isoformat())
        ) as cursor:
            row = await cursor.fetchone()
            return row["count"] if row else 0

    async def increment_notification_count(self, user_id: str, day: date, cap: int) -> bool:
        """Atomically bump the (user, day) counter if it is below ``cap``.

        The comparison and the increment are a single statement, so
        concurrent callers can never push the counter past the cap.
        Returns True when the counter was incremented.
        """
        cursor = await self.conn.execute("""
            INSERT INTO notification_counters (user_id, day, count)
            SELECT ?, ?, 1 WHERE ? > 0
            ON CONFLICT(user_id, day) DO UPDATE SET count = count + 1
            WHERE notification_counters.count < ?
        """, (user_id, day.isoformat(), cap, cap))
        await self.conn.commit()
        incremented = cursor.rowcount > 0

        count = await self.get_notification_count(user_id, day)
        if count < 0 or count > cap:
            logger.error("notification_counter_invalid", user_id=user_id, day=day.isoformat(), count=count, cap=cap)
            raise InvariantViolation(f"counter for {user_id} on {day} is {count}, cap {cap}")
        return incremented

    # Order cache

    async def save_order(self, order: Order):
        """Persist the authoritative copy of an order."""
        await self.conn.execute("""
            INSERT INTO orders
            (order_id, kind, fiat_code, status, amount_sats, fiat_amount,
             payment_method, premium, source_url, platform, raw_sequence, last_seen_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(order_id) DO UPDATE SET
                kind = excluded.kind,
                fiat_code = excluded.fiat_code,
                status = excluded.status,
                amount_sats = excluded.amount_sats,
                fiat_amount = excluded.fiat_amount,
                payment_method = excluded.payment_method,
                premium = excluded.premium,
                source_url = excluded.source_url,
                platform = excluded.platform,
                raw_sequence = excluded.raw_sequence,
                last_seen_at = excluded.last_seen_at
            WHERE excluded.raw_sequence >= orders.raw_sequence
        """, (
            order.order_id,
            order.kind,
            order.fiat_code,
            order.status,
            order.amount_sats,
            order.fiat_amount,
            order.payment_method,
            order.premium,
            order.source_url,
            Platform(order.platform).value,
            order.raw_sequence,
            _ts(order.last_seen_at),
        ))
        await self.conn.commit()

    async def touch_order(self, order_id: str, seen_at: datetime) -> bool:
        """Move an order's last_seen_at forward after a duplicate sighting."""
        cursor = await self.conn.execute(
            "UPDATE orders SET last_seen_at = ? WHERE order_id = ? AND last_seen_at < ?",
            (seen_at.isoformat(), order_id, seen_at.isoformat())
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def load_recent_orders(self, since: datetime) -> list[Order]:
        """Load orders seen after ``since`` to warm the order cache."""
        async with self.conn.execute(
            "SELECT * FROM orders WHERE last_seen_at >= ? ORDER BY last_seen_at",
            (since.isoformat(),)
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            Order(
                order_id=row["order_id"],
                kind=row["kind"],
                fiat_code=row["fiat_code"],
                status=row["status"],
                amount_sats=row["amount_sats"],
                fiat_amount=row["fiat_amount"],
                payment_method=row["payment_method"],
                premium=row["premium"],
                source_url=row["source_url"],
                platform=Platform(row["platform"]),
                raw_sequence=row["raw_sequence"],
                last_seen_at=_parse_ts(row["last_seen_at"]),
            )
            for row in rows
        ]

    async def prune_orders(self, before: datetime) -> int:
        """Delete orders not seen since ``before``."""
        cursor = await self.conn.execute(
            "DELETE FROM orders WHERE last_seen_at < ?", (before.isoformat(),)
        )
        await self.conn.commit()
        return cursor.rowcount

    # Match history

    async def record_match(self, user_id: str, alert_id: int, order_id: str, decision: str = "pending") -> int:
        """Record that an alert matched an order, whatever the throttle decides."""
        cursor = await self.conn.execute("""
            INSERT INTO alert_matches (user_id, alert_id, order_id, decision)
            VALUES (?, ?, ?, ?)
        """, (user_id, alert_id, order_id, decision))
        await self.conn.commit()
        return cursor.lastrowid

    async def set_match_decision(self, match_id: int, decision: str):
        await self.conn.execute(
            "UPDATE alert_matches SET decision = ? WHERE id = ?", (decision, match_id)
        )
        await self.conn.commit()

    async def count_matches(self, user_id: str, decision: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) AS n FROM alert_matches WHERE user_id = ?"
        params: tuple = (user_id,)
        if decision is not None:
            query += " AND decision = ?"
            params = (user_id, decision)
        async with self.conn.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return row["n"]
