# automation/scoring.py
"""
Engagement lead scoring.

Each ingested event may move a lead's score by a fixed delta. Stored scores
decay by ``LEAD_SCORE_DECAY_RATE`` per ``LEAD_SCORE_DECAY_PERIOD_DAYS`` of
inactivity and are bucketed into tiers:

    0-20 cold, 21-60 warm, 61-120 hot, 121+ sales_ready
"""
from datetime import datetime
from typing import Any, Mapping, Optional

from automation.clock import ensure_utc
from automation.conf import LEAD_SCORE_DECAY_PERIOD_DAYS, LEAD_SCORE_DECAY_RATE
from automation.rules.conditions import to_number

EVENT_DELTAS = {
    "email_opened": 5,
    "email_clicked": 20,
    "form_submitted": 60,
    "email_replied": 75,
    "email_unsubscribed": -50,
}

PRICING_PAGE_BONUS = 30
REPEAT_OPEN_BONUS = 10

TIERS = ("cold", "warm", "hot", "sales_ready")


def score_delta(event_type: str, payload: Optional[Mapping[str, Any]] = None) -> int:
    """Points an event is worth; 0 when the event does not affect the score."""
    payload = payload or {}
    if event_type == "page_visit" and payload.get("page") == "pricing":
        return PRICING_PAGE_BONUS
    if event_type == "email_opened" and payload.get("is_repeat_open"):
        return REPEAT_OPEN_BONUS
    if event_type == "score_adjustment":
        delta = to_number(payload.get("delta"))
        return int(round(delta)) if delta is not None else 0
    return EVENT_DELTAS.get(event_type, 0)


def decayed_score(score: int, last_activity_at: Optional[datetime], now: datetime) -> int:
    if not score:
        return 0
    if last_activity_at is None:
        return max(0, int(score))
    periods = max(0.0, (now - ensure_utc(last_activity_at)).total_seconds() / 86400 / LEAD_SCORE_DECAY_PERIOD_DAYS)
    return max(0, int(round(score * (1 - LEAD_SCORE_DECAY_RATE) ** periods)))


def score_tier(score: int) -> str:
    if score <= 20:
        return "cold"
    if score <= 60:
        return "warm"
    if score <= 120:
        return "hot"
    return "sales_ready"
