# crm_api/services/scores.py
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from automation.clock import ensure_utc, utcnow
from automation.rules.models import CrmEvent
from automation.scoring import TIERS, decayed_score, score_delta, score_tier
from crm_api.db.engine import get_session
from crm_api.db.models import LeadScore

logger = logging.getLogger(__name__)

DISTRIBUTION_BUCKETS = ((0, 24), (25, 49), (50, 74), (75, None))


def _current(row: LeadScore, now: datetime) -> Dict[str, Any]:
    last_activity_at = ensure_utc(row.last_activity_at) if row.last_activity_at else None
    score = decayed_score(row.score, last_activity_at, now)
    return {
        "entity_id": row.entity_id,
        "score": score,
        "tier": score_tier(score),
        "last_activity_at": last_activity_at,
        "updated_at": ensure_utc(row.updated_at),
    }


def adjust_lead_score(tenant_id: str, entity_id: str, delta: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Add ``delta`` to the lead's decayed score (never below zero) and restart its decay clock.

    Returns:
        {entity_id, score, tier, delta, previous_score}
    """
    now = now or utcnow()
    session = get_session()
    try:
        row = (
            session.query(LeadScore)
            .filter(LeadScore.tenant_id == tenant_id, LeadScore.entity_id == entity_id)
            .first()
        )
        if row is None:
            row = LeadScore(tenant_id=tenant_id, entity_id=entity_id, score=0)
            session.add(row)
            previous = 0
        else:
            previous = _current(row, now)["score"]
        score = max(0, previous + int(delta))
        row.score = score
        row.tier = score_tier(score)
        row.last_activity_at = now
        session.commit()
        logger.info("Lead score %s: %d -> %d (%+d) tier=%s", entity_id, previous, score, delta, row.tier)
        return {
            "entity_id": entity_id,
            "score": score,
            "tier": row.tier,
            "delta": int(delta),
            "previous_score": previous,
        }
    finally:
        session.close()


def apply_score_event(event: CrmEvent, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Score an ingested event; None when the event carries no points."""
    delta = score_delta(event.type, event.payload)
    if delta == 0:
        return None
    return adjust_lead_score(event.tenant_id, event.entity_id, delta, now)


def get_lead_score(tenant_id: str, entity_id: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    session = get_session()
    try:
        row = (
            session.query(LeadScore)
            .filter(LeadScore.tenant_id == tenant_id, LeadScore.entity_id == entity_id)
            .first()
        )
        return _current(row, now or utcnow()) if row else None
    finally:
        session.close()


def list_lead_scores(
    tenant_id: str,
    tier: Optional[str] = None,
    q: Optional[str] = None,
    limit: Optional[int] = 500,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Current (decayed) scores, highest first. ``tier`` filters on the current tier."""
    now = now or utcnow()
    session = get_session()
    try:
        query = session.query(LeadScore).filter(LeadScore.tenant_id == tenant_id)
        if q:
            query = query.filter(LeadScore.entity_id.ilike(f"%{q}%"))
        scores = [_current(row, now) for row in query.all()]
    finally:
        session.close()

    if tier:
        scores = [s for s in scores if s["tier"] == tier]
    scores.sort(key=lambda s: (-s["score"], s["entity_id"]))
    return scores[:limit]


def score_stats(tenant_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Tier counts, rounded average and a bucketed distribution of current scores."""
    scores = [s["score"] for s in list_lead_scores(tenant_id, limit=None, now=now)]
    stats: Dict[str, Any] = {"total": len(scores), **{tier: 0 for tier in TIERS}}
    for score in scores:
        stats[score_tier(score)] += 1
    stats["avg_score"] = round(sum(scores) / len(scores)) if scores else 0

    distribution = []
    for low, high in DISTRIBUTION_BUCKETS:
        label = f"{low}-{high}" if high is not None else f"{low}+"
        count = sum(1 for s in scores if s >= low and (high is None or s <= high))
        distribution.append({"range": label, "count": count})
    stats["distribution"] = distribution
    return stats
