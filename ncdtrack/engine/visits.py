"""NCDTrack — Site Visit Counter.

One row, created on first visit. Recording a visit is a read-modify-write
and runs under the process key lock.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from ncdtrack.core.errors import PersistenceError
from ncdtrack.core.locks import record_locks
from ncdtrack.core.logging import get_logger
from ncdtrack.models.visit_models import SiteVisit

logger = get_logger("engine.visits")

VISITS_KEY = ("site", "visits")


def _as_text(stamp: Optional[datetime]) -> Optional[str]:
    if stamp is None:
        return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp.isoformat()


def _current(session: Session) -> Optional[SiteVisit]:
    return session.exec(
        select(SiteVisit).order_by(SiteVisit.id).execution_options(populate_existing=True)
    ).first()


def get_visits(session: Session) -> dict:
    """Current count and last visit time."""
    try:
        row = _current(session)
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Visit count read failed: {e}")
        raise PersistenceError("Failed to read visit count") from e
    if row is None:
        return {"count": 0, "last_visit": None}
    return {"count": row.count, "last_visit": _as_text(row.last_visit)}


def record_visit(session: Session) -> dict:
    """Count one visit. Returns the new count and the *previous* last visit."""
    with record_locks.hold(VISITS_KEY):
        try:
            row = _current(session) or SiteVisit()
            previous = _as_text(row.last_visit)
            row.count += 1
            row.last_visit = datetime.now(timezone.utc)
            count = row.count
            session.add(row)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Visit count update failed: {e}")
            raise PersistenceError("Failed to update visit count") from e

    logger.info(f"Visit recorded ({count} total)")
    return {"count": count, "last_visit": previous}
