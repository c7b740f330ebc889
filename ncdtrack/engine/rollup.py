"""NCDTrack — Rollup Aggregator.

Produces district aggregates from facility rows. Live aggregation is the
single source of truth: every read sums facility counters and re-derives
percentages from the sums. The district tables are a materialized cache,
rewritten after each facility write and by ``reconcile_districts``, which
is safe to re-run at any time.
"""

from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlmodel import Session, SQLModel, col

from ncdtrack.config import settings
from ncdtrack.core.errors import NotFoundError
from ncdtrack.core.locks import record_locks
from ncdtrack.core.logging import get_logger
from ncdtrack.core.metric_registry import MetricDomain, counter_fields, derived_fields
from ncdtrack.engine.derived_fields import derive
from ncdtrack.engine.store import RecordStore, counters_of, district_key
from ncdtrack.models.metric_models import DISTRICT_MODELS

logger = get_logger("engine.rollup")


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands timestamps back naive
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def is_excluded(row: SQLModel) -> bool:
    return str(getattr(row, "facility_type", "") or "") in settings.excluded_facility_types


def group_by_district(rows: Iterable[SQLModel]) -> Dict[str, List[SQLModel]]:
    groups: Dict[str, List[SQLModel]] = defaultdict(list)
    for row in rows:
        groups[row.district_code].append(row)
    return dict(groups)


def rollup(
    domain: MetricDomain,
    facility_rows: Iterable[SQLModel],
    district_code: str,
    district_name: str = "",
) -> SQLModel:
    """Sum facility counters into an (unpersisted) district row.

    Excluded facility types are skipped even if the caller passes them in.
    An empty input yields a zero-valued row.
    """
    fields = counter_fields(domain)
    sums = {f: 0 for f in fields}
    facility_count = 0
    latest: Optional[datetime] = None

    for row in facility_rows:
        if is_excluded(row):
            continue
        facility_count += 1
        for f, v in counters_of(row, fields).items():
            sums[f] += v
        if row.last_updated is not None:
            stamp = _as_utc(row.last_updated)
            latest = stamp if latest is None or stamp > latest else latest
        if not district_name:
            district_name = row.district_name

    return DISTRICT_MODELS[domain](
        district_code=district_code,
        district_name=district_name,
        facility_count=facility_count,
        last_updated=latest or datetime.now(timezone.utc),
        **sums,
        **derive(domain, sums),
    )


def _eligible_facilities(store: RecordStore, *predicates) -> List[SQLModel]:
    model = store.facility_model
    return store.list_facilities(
        col(model.facility_type).not_in(settings.excluded_facility_types), *predicates
    )


def get_district_aggregates(session: Session, domain: MetricDomain) -> List[SQLModel]:
    """Live aggregates for every known district, ordered by district_code."""
    store = RecordStore(session, domain)
    grouped = group_by_district(_eligible_facilities(store))
    names = {d.district_code: d.district_name for d in store.list_districts()}
    for code, rows in grouped.items():
        names.setdefault(code, rows[0].district_name)

    aggregates = [
        rollup(domain, grouped.get(code, []), code, names[code]) for code in sorted(names)
    ]
    logger.info(f"Rolled up {len(aggregates)} {domain.value} districts")
    return aggregates


def get_district_aggregate(
    session: Session, domain: MetricDomain, district_code: str
) -> SQLModel:
    """Live aggregate for one district."""
    store = RecordStore(session, domain)
    cached = store.get_district(district_code)
    rows = _eligible_facilities(store, store.facility_model.district_code == district_code)
    if cached is None and not rows:
        raise NotFoundError(
            f"Unknown {domain.value} district: {district_code}", record_key=district_code
        )
    return rollup(domain, rows, district_code, cached.district_name if cached else "")


def _differs(domain: MetricDomain, cached: SQLModel, live: SQLModel) -> bool:
    fields = counter_fields(domain)
    return (
        counters_of(cached, fields) != counters_of(live, fields)
        or cached.facility_count != live.facility_count
    )


def refresh_district(
    session: Session, domain: MetricDomain, district_code: str
) -> Optional[SQLModel]:
    """Rewrite one materialized district row from the live sum.

    Creates the row if missing. Returns None when the district has neither
    a row nor any facility.
    """
    store = RecordStore(session, domain)
    with record_locks.hold(district_key(domain, district_code)):
        row = store.get_district(district_code)
        rows = _eligible_facilities(
            store, store.facility_model.district_code == district_code
        )
        if row is None and not rows:
            return None
        live = rollup(domain, rows, district_code, row.district_name if row else "")
        if row is None:
            row = DISTRICT_MODELS[domain](
                district_code=district_code, district_name=live.district_name
            )
        for f in counter_fields(domain) + derived_fields(domain):
            setattr(row, f, getattr(live, f))
        row.facility_count = live.facility_count
        row.last_updated = datetime.now(timezone.utc)
        store.save(row)
    return row


def find_stale_districts(session: Session, domain: MetricDomain) -> List[str]:
    """District codes whose materialized counters differ from the live sum."""
    store = RecordStore(session, domain)
    live = {a.district_code: a for a in get_district_aggregates(session, domain)}
    cached = {d.district_code: d for d in store.list_districts()}
    stale = [code for code in live if code not in cached]
    stale += [code for code, row in cached.items() if _differs(domain, row, live[code])]
    return sorted(stale)


def reconcile_districts(session: Session, domain: MetricDomain) -> int:
    """Re-derive every materialized district row. Returns how many had drifted."""
    stale = find_stale_districts(session, domain)
    for code in stale:
        refresh_district(session, domain, code)
    if stale:
        logger.warning(
            f"Reconciled {len(stale)} stale {domain.value} districts: {', '.join(stale)}",
            extra={"domain": domain.value},
        )
    else:
        logger.info(f"All {domain.value} districts consistent", extra={"domain": domain.value})
    return len(stale)
