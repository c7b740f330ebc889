"""NCDTrack — Site Visit Counter Routes."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from ncdtrack.core.errors import EngineError
from ncdtrack.database import get_session
from ncdtrack.engine.visits import get_visits, record_visit
from ncdtrack.core.logging import get_logger

logger = get_logger("api.visits")

router = APIRouter(prefix="/visits", tags=["Visits"])


@router.get("")
def read_visits(session: Session = Depends(get_session)):
    """Current visit count and last visit time."""
    try:
        return get_visits(session)
    except EngineError as e:
        logger.error(f"Visit count read failed: {e}")
        raise HTTPException(status_code=e.status_code, detail=str(e)) from e


@router.post("")
def add_visit(session: Session = Depends(get_session)):
    """Count a visit; ``last_visit`` in the response is the one before this."""
    try:
        return record_visit(session)
    except EngineError as e:
        logger.error(f"Visit count update failed: {e}")
        raise HTTPException(status_code=e.status_code, detail=str(e)) from e
