"""NCDTrack — Programme-Wide Summary.

Rolls every eligible facility of a domain into one total row, with
percentages re-derived from the grand sums (never averaged across
districts).
"""

from sqlmodel import Session

from ncdtrack.core.metric_registry import MetricDomain
from ncdtrack.engine.rollup import get_district_aggregates, rollup
from ncdtrack.engine.coordinator import get_facility_records
from ncdtrack.models.engine_models import DomainSummary
from ncdtrack.core.logging import get_logger

logger = get_logger("engine.summary")

PROGRAMME_CODE = "ALL"


def summarize(session: Session, domain: MetricDomain) -> DomainSummary:
    facilities = get_facility_records(session, domain)
    districts = get_district_aggregates(session, domain)
    totals = rollup(domain, facilities, PROGRAMME_CODE, "All districts")

    logger.info(
        f"Summarized {len(facilities)} {domain.value} facilities "
        f"across {len(districts)} districts",
        extra={"domain": domain.value},
    )
    return DomainSummary(
        domain=domain,
        district_count=len(districts),
        facility_count=totals.facility_count,
        totals=totals,
    )
