"""NCDTrack — Seed / Bootstrap Loader.

Creates zeroed facility and district rows from a static roster. Idempotent:
rows are keyed by facility/district code, existing rows are never touched,
and administrative non-reporting facility types are skipped.
"""

import json
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from sqlmodel import Session

from ncdtrack.config import settings
from ncdtrack.core.errors import ValidationError
from ncdtrack.core.logging import get_logger
from ncdtrack.core.metric_registry import MetricDomain, counter_fields
from ncdtrack.engine.derived_fields import derive
from ncdtrack.engine.rollup import refresh_district
from ncdtrack.engine.store import RecordStore
from ncdtrack.models.engine_models import SeedReport

logger = get_logger("engine.seeder")


class RosterEntry(BaseModel):
    """One facility in the static roster.

    Accepts both descriptive names and the legacy roster keys
    (hoscode, hosname, hostype, amp_code, amp_name, tmb_code, tmb_name).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    facility_code: str = Field(validation_alias=AliasChoices("facility_code", "hoscode"))
    facility_name: str = Field(
        default="", validation_alias=AliasChoices("facility_name", "hosname")
    )
    facility_type: str = Field(
        default="", validation_alias=AliasChoices("facility_type", "hostype")
    )
    district_code: str = Field(validation_alias=AliasChoices("district_code", "amp_code"))
    district_name: str = Field(
        default="", validation_alias=AliasChoices("district_name", "amp_name")
    )
    subdistrict_code: str = Field(
        default="", validation_alias=AliasChoices("subdistrict_code", "tmb_code")
    )
    subdistrict_name: str = Field(
        default="", validation_alias=AliasChoices("subdistrict_name", "tmb_name")
    )

    @field_validator("*", mode="before")
    @classmethod
    def _stringify(cls, v):
        # Roster exports carry numeric codes as ints
        return "" if v is None else str(v).strip()


def load_roster(path: str | Path) -> List[RosterEntry]:
    """Read a JSON array roster file."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Cannot read roster {path}: {e}") from e
    return parse_roster(raw)


def parse_roster(raw) -> List[RosterEntry]:
    if not isinstance(raw, list):
        raise ValidationError("Roster must be a JSON array of facilities")
    try:
        return [e if isinstance(e, RosterEntry) else RosterEntry.model_validate(e) for e in raw]
    except ValueError as e:
        raise ValidationError(f"Malformed roster entry: {e}") from e


def eligible_entries(roster: Iterable[RosterEntry]) -> List[RosterEntry]:
    excluded = set(settings.excluded_facility_types)
    return [e for e in roster if e.facility_type not in excluded]


def _zeroed(domain: MetricDomain) -> dict:
    zeros = {f: 0 for f in counter_fields(domain)}
    return {**zeros, **derive(domain, zeros)}


def seed(
    session: Session,
    roster: Sequence[RosterEntry],
    domains: Optional[Sequence[MetricDomain]] = None,
) -> SeedReport:
    """Create one zeroed row per eligible facility and per district, per domain.

    District rows are created through the aggregator so their counters and
    facility_count match whatever facility rows already exist.
    """
    domains = list(domains or MetricDomain)
    entries = eligible_entries(roster)
    report = SeedReport(excluded=len(roster) - len(entries))

    for domain in domains:
        store = RecordStore(session, domain)
        zeros = _zeroed(domain)
        new_rows = []
        seen: set[str] = set()

        for entry in entries:
            if entry.facility_code in seen:
                continue
            seen.add(entry.facility_code)
            if store.get_facility(entry.facility_code) is not None:
                report.skipped += 1
                continue
            new_rows.append(store.facility_model(**entry.model_dump(), **zeros))
        store.save(*new_rows)

        new_districts = 0
        touched = {row.district_code for row in new_rows}
        for code in dict.fromkeys(e.district_code for e in entries):
            if store.get_district(code) is None:
                new_districts += 1
            else:
                report.skipped += 1
                if code not in touched:
                    continue
            # New facilities change the cached count of an existing district
            refresh_district(session, domain, code)

        report.created += len(new_rows) + new_districts
        logger.info(
            f"Seeded {len(new_rows)} {domain.value} facilities, {new_districts} districts",
            extra={"domain": domain.value},
        )

    return report
