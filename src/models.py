"""Data models for the Nostr P2P order alert bot."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


ORDER_EVENT_KIND = 38383


class Platform(str, Enum):
    MOSTRO = "Mostro"
    ROBOSATS = "RoboSats"
    PEACH = "Peach"
    LNP2PBOT = "lnp2pBot"
    UNKNOWN = "Unknown"


class Classification(str, Enum):
    NEW = "new"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    STALE_CONFLICT = "stale_conflict"

    @property
    def accepted(self) -> bool:
        return self in (Classification.NEW, Classification.UPDATED)


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass
class Order:
    """Canonical P2P order parsed from a kind 38383 event."""
    order_id: str
    kind: str  # "buy", "sell" or "unknown"
    fiat_code: str = "unknown"
    status: str = "unknown"
    amount_sats: int = 0  # 0 = market / unspecified
    fiat_amount: float = 0.0
    payment_method: str = ""
    premium: float = 0.0
    source_url: Optional[str] = None
    platform: Platform = Platform.UNKNOWN
    last_seen_at: Optional[datetime] = None
    raw_sequence: int = 0

    def fingerprint(self) -> tuple:
        """Content identity, ignoring arrival bookkeeping."""
        return (
            self.order_id,
            self.kind,
            self.fiat_code,
            self.status,
            self.amount_sats,
            self.fiat_amount,
            self.payment_method,
            self.premium,
            self.source_url,
            self.platform,
        )


@dataclass
class Rejection:
    """An event the normalizer refused to turn into an Order."""
    event_id: str
    reason: str


@dataclass
class User:
    user_id: str
    tier: str = "free"  # "free" or "paid"
    created_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.tier == "paid"


@dataclass
class Alert:
    """A user-owned conjunction of optional order filters."""
    alert_id: int
    user_id: str
    kind: Optional[str] = None
    fiat_code: Optional[str] = None
    min_amount_sats: Optional[int] = None
    max_amount_sats: Optional[int] = None
    min_premium: Optional[float] = None
    max_premium: Optional[float] = None
    payment_method: Optional[str] = None
    platforms: frozenset = field(default_factory=frozenset)
    active: bool = True

    @property
    def is_catch_all(self) -> bool:
        """True when no predicate is set, so every order matches."""
        return (
            self.kind is None
            and self.fiat_code is None
            and self.min_amount_sats is None
            and self.max_amount_sats is None
            and self.min_premium is None
            and self.max_premium is None
            and not self.payment_method
            and not self.platforms
        )


@dataclass
class Match:
    user_id: str
    alert_id: int


@dataclass
class NotificationDirective:
    """A matched and allowed notification handed to the dispatcher."""
    user_id: str
    order: Order
    alert: Alert
