"""NCDTrack — Engine Result Schemas."""

from typing import List
from pydantic import BaseModel
from sqlmodel import SQLModel

from ncdtrack.core.metric_registry import MetricDomain


class ClampResult(BaseModel):
    """Outcome of forcing a dependent counter under its ceiling."""

    stored_value: int
    submitted_value: int
    was_clamped: bool = False


class ClampCorrection(ClampResult):
    """A clamp that fired during a write, reported back to the caller."""

    field: str
    ceiling_field: str
    ceiling_value: int


class UpdateOutcome(BaseModel):
    """Result of a facility or district write.

    ``record`` is the persisted (facility) or re-derived (district) row.
    ``clamped`` lists every value that was silently corrected, so callers
    learn the stored value differs from what they submitted.
    ``coerced`` names submitted fields that were invalid and stored as 0.
    """

    domain: MetricDomain
    record: SQLModel
    clamped: List[ClampCorrection] = []
    coerced: List[str] = []

    def to_response(self) -> dict:
        return {
            "status": "success",
            "domain": self.domain.value,
            "record": self.record.model_dump(mode="json"),
            "clamped": [c.model_dump() for c in self.clamped],
            "coerced": self.coerced,
        }


class SeedReport(BaseModel):
    """Counts produced by one seed run."""

    created: int = 0
    skipped: int = 0  # Already present, left untouched
    excluded: int = 0  # Administrative facility types


class DomainSummary(BaseModel):
    """Programme-wide totals for one domain."""

    domain: MetricDomain
    district_count: int = 0
    facility_count: int = 0
    totals: SQLModel

    def to_response(self) -> dict:
        return {
            "status": "success",
            "domain": self.domain.value,
            "district_count": self.district_count,
            "facility_count": self.facility_count,
            "totals": self.totals.model_dump(
                mode="json", exclude={"id", "district_code", "district_name", "last_updated"}
            ),
        }
