"""NCDTrack — Facility & District Metric Routes.

Thin marshalling over the engine. Handlers are sync so FastAPI runs them
in its threadpool; same-record writes are serialized inside the engine.
"""

from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, field_validator
from sqlmodel import Session

from ncdtrack.core.errors import EngineError
from ncdtrack.core.metric_registry import MetricDomain
from ncdtrack.database import get_session
from ncdtrack.engine.coordinator import (
    delete_facility_record,
    get_facility_record,
    get_facility_records,
    update_district_record,
    update_facility_record,
)
from ncdtrack.engine.rollup import get_district_aggregate, get_district_aggregates
from ncdtrack.engine.summary import summarize
from ncdtrack.core.logging import get_logger

logger = get_logger("api.metrics")

router = APIRouter(prefix="/{domain}", tags=["Metrics"])


# ── Request Models ──


class FacilityUpdateRequest(BaseModel):
    """Request body for PUT /{domain}/facilities/{facility_code}."""

    credential: Optional[Union[str, int]] = None
    """Must equal the facility code being edited. Numeric codes may be sent as numbers."""
    fields: Dict[str, Any] = {}
    """Raw counters to change. Fields not listed keep their stored values."""

    @field_validator("credential")
    @classmethod
    def _credential_as_text(cls, v):
        return None if v is None else str(v)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"credential": "10670", "fields": {"target_population": 100, "carb_counted": 40}},
            ]
        }
    }


class DistrictUpdateRequest(BaseModel):
    """Request body for PUT /{domain}/districts/{district_code}."""

    fields: Dict[str, Any] = {}


def raise_http(error: EngineError, action: str) -> None:
    """Translate an engine error into the matching HTTP error."""
    logger.warning(f"{action} failed: {error}", extra={"status_code": error.status_code})
    raise HTTPException(status_code=error.status_code, detail=str(error)) from error


# ── Facility Endpoints ──


@router.get("/facilities")
def list_facilities(
    domain: MetricDomain,
    district_code: Optional[str] = Query(None, description="Only this district"),
    session: Session = Depends(get_session),
):
    """List facility records ordered by facility code."""
    try:
        rows = get_facility_records(session, domain, district_code)
    except EngineError as e:
        raise_http(e, "Facility listing")
    return {
        "status": "success",
        "domain": domain.value,
        "count": len(rows),
        "results": [r.model_dump(mode="json") for r in rows],
    }


@router.get("/facilities/{facility_code}")
def read_facility(
    domain: MetricDomain, facility_code: str, session: Session = Depends(get_session)
):
    try:
        row = get_facility_record(session, domain, facility_code)
    except EngineError as e:
        raise_http(e, "Facility lookup")
    return {"status": "success", "record": row.model_dump(mode="json")}


@router.put("/facilities/{facility_code}")
def update_facility(
    domain: MetricDomain,
    facility_code: str,
    request: FacilityUpdateRequest,
    session: Session = Depends(get_session),
):
    """Apply a partial counter update.

    Invalid numbers are stored as 0 and listed under ``coerced``; values
    forced under a ceiling are listed under ``clamped``.
    """
    try:
        outcome = update_facility_record(
            session, domain, facility_code, request.credential, request.fields
        )
    except EngineError as e:
        raise_http(e, f"Update of {domain.value} facility {facility_code}")
    return outcome.to_response()


@router.delete("/facilities/{facility_code}")
def delete_facility(
    domain: MetricDomain, facility_code: str, session: Session = Depends(get_session)
):
    """Administrative delete."""
    try:
        delete_facility_record(session, domain, facility_code)
    except EngineError as e:
        raise_http(e, f"Delete of {domain.value} facility {facility_code}")
    return Response(status_code=204)


# ── District Endpoints ──


@router.get("/districts")
def list_districts(domain: MetricDomain, session: Session = Depends(get_session)):
    """Live district rollups ordered by district code."""
    try:
        rows = get_district_aggregates(session, domain)
    except EngineError as e:
        raise_http(e, "District listing")
    return {
        "status": "success",
        "domain": domain.value,
        "count": len(rows),
        "results": [r.model_dump(mode="json", exclude={"id"}) for r in rows],
    }


@router.get("/districts/{district_code}")
def read_district(
    domain: MetricDomain, district_code: str, session: Session = Depends(get_session)
):
    try:
        row = get_district_aggregate(session, domain, district_code)
    except EngineError as e:
        raise_http(e, "District lookup")
    return {"status": "success", "record": row.model_dump(mode="json", exclude={"id"})}


@router.put("/districts/{district_code}")
def update_district(
    domain: MetricDomain,
    district_code: str,
    request: DistrictUpdateRequest,
    session: Session = Depends(get_session),
):
    """Rename a district. Counters are derived and rejected here."""
    try:
        outcome = update_district_record(session, domain, district_code, request.fields)
    except EngineError as e:
        raise_http(e, f"Update of {domain.value} district {district_code}")
    return outcome.to_response()


@router.get("/summary")
def domain_summary(domain: MetricDomain, session: Session = Depends(get_session)):
    """Programme-wide totals."""
    try:
        summary = summarize(session, domain)
    except EngineError as e:
        raise_http(e, "Summary")
    return summary.to_response()
