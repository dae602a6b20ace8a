# Event Log Service
# Append-only audit trail written in the same transaction as the change it
# describes.

import logging
from typing import Optional, Dict, Any, List
from sqlalchemy.orm import Session

from database.escrow_models import EventLog

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def record_event(
    db: Session,
    event_type: str,
    actor_id: Optional[str] = None,
    deal_id: Optional[str] = None,
    milestone_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None
) -> EventLog:
    """Append an entry. The caller owns the commit."""
    entry = EventLog(
        type=event_type,
        actor_id=actor_id or SYSTEM_ACTOR,
        deal_id=deal_id,
        milestone_id=milestone_id,
        payload=payload or {}
    )
    db.add(entry)
    logger.info(f"[{event_type}] deal={deal_id} milestone={milestone_id} actor={entry.actor_id}")
    return entry


def list_events(db: Session, deal_id: str, limit: int = 200) -> List[EventLog]:
    return (
        db.query(EventLog)
        .filter(EventLog.deal_id == deal_id)
        .order_by(EventLog.id.asc())
        .limit(limit)
        .all()
    )
