"""NCDTrack — Administrative Routes (seeding, reconcile)."""

from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from ncdtrack.config import settings
from ncdtrack.core.errors import EngineError
from ncdtrack.core.metric_registry import MetricDomain
from ncdtrack.database import get_session
from ncdtrack.engine.rollup import reconcile_districts
from ncdtrack.engine.seeder import load_roster, parse_roster, seed
from ncdtrack.core.logging import get_logger

logger = get_logger("api.admin")

router = APIRouter(prefix="/admin", tags=["Admin"])


class SeedRequest(BaseModel):
    """Request body for POST /admin/seed.

    Omit ``roster`` to load the file at ROSTER_PATH.
    """

    roster: Optional[List[dict[str, Any]]] = None
    domains: Optional[List[MetricDomain]] = None


@router.post("/seed")
def seed_records(request: SeedRequest, session: Session = Depends(get_session)):
    """Create zeroed baseline rows. Safe to call repeatedly."""
    try:
        if request.roster is not None:
            roster = parse_roster(request.roster)
        elif settings.roster_path:
            roster = load_roster(settings.roster_path)
        else:
            raise HTTPException(status_code=400, detail="No roster supplied or configured")
        report = seed(session, roster, request.domains)
    except EngineError as e:
        logger.error(f"Seed failed: {e}")
        raise HTTPException(status_code=e.status_code, detail=str(e)) from e
    return {"status": "success", **report.model_dump()}


@router.post("/reconcile")
def reconcile(session: Session = Depends(get_session)):
    """Re-derive every materialized district row from facility rows."""
    try:
        drifted = {d.value: reconcile_districts(session, d) for d in MetricDomain}
    except EngineError as e:
        logger.error(f"Reconcile failed: {e}")
        raise HTTPException(status_code=e.status_code, detail=str(e)) from e
    return {"status": "success", "reconciled": drifted}
