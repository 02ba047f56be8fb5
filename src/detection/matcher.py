"""Match orders against user alerts."""
from typing import Iterable

import structlog

from src.models import Alert, Match, Order

logger = structlog.get_logger()


def _in_range(value, low, high) -> bool:
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def alert_matches(order: Order, alert: Alert) -> bool:
    """Check every predicate the alert sets; unset predicates always pass."""
    # 1. Side
    if alert.kind is not None and alert.kind.lower() != order.kind.lower():
        return False

    # 2. Currency
    if alert.fiat_code is not None and alert.fiat_code.upper() != order.fiat_code.upper():
        return False

    # 3. Amount and premium ranges, both bounds inclusive
    if not _in_range(order.amount_sats, alert.min_amount_sats, alert.max_amount_sats):
        return False
    if not _in_range(order.premium, alert.min_premium, alert.max_premium):
        return False

    # 4. Payment method substring
    if alert.payment_method and alert.payment_method.lower() not in order.payment_method.lower():
        return False

    # 5. Platform
    if alert.platforms and order.platform not in alert.platforms:
        return False

    return True


def match_alerts(order: Order, alerts: Iterable[Alert]) -> list[Match]:
    """Return (user, alert) pairs whose alert matches the order, in input order."""
    matches = []
    for alert in alerts:
        if not alert_matches(order, alert):
            continue
        if alert.is_catch_all:
            logger.warning("catch_all_alert_matched", alert_id=alert.alert_id, user_id=alert.user_id)
        matches.append(Match(user_id=alert.user_id, alert_id=alert.alert_id))
    return matches
