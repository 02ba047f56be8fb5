"""Per-user daily notification quota."""
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import structlog

from src.models import Decision
from src.storage.database import Database

logger = structlog.get_logger()

DEFAULT_DAILY_CAP = 10


class NotificationThrottle:
    """Decides whether one more notification may go out to a user today."""

    def __init__(self, db: Database, daily_cap: int = DEFAULT_DAILY_CAP, tz: str = "UTC"):
        self.db = db
        self.daily_cap = daily_cap
        self.tz = ZoneInfo(tz)

    def today(self, now: Optional[datetime] = None) -> date:
        """Current calendar date in the reference timezone."""
        now = now or datetime.now(timezone.utc)
        return now.astimezone(self.tz).date()

    async def check(self, user_id: str, tier: str, day: Optional[date] = None) -> Decision:
        """Allow paid users outright; count free users against the daily cap."""
        if tier == "paid":
            return Decision.ALLOW

        day = day or self.today()
        allowed = await self.db.increment_notification_count(user_id, day, self.daily_cap)
        if not allowed:
            logger.info("notification_denied", user_id=user_id, day=day.isoformat(), cap=self.daily_cap)
            return Decision.DENY
        return Decision.ALLOW
