"""NCDTrack — Update Coordinator.

The per-record write path:
  lock → authorize → validate/coerce → merge → clamp → derive → persist → refresh district

Each edit walks an explicit state machine. Any failure before Persisting
moves to Rejected and nothing is written; a store failure rolls back and
surfaces as PersistenceError with the prior row intact.
"""

import math
import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlmodel import Session, SQLModel

from ncdtrack.config import settings
from ncdtrack.core.errors import (
    AuthorizationError,
    EngineError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from ncdtrack.core.locks import record_locks
from ncdtrack.core.logging import get_logger
from ncdtrack.core.metric_registry import MetricDomain, counter_fields, derived_fields
from ncdtrack.engine.derived_fields import apply_clamps, derive
from ncdtrack.engine.rollup import get_district_aggregate, is_excluded, refresh_district
from ncdtrack.engine.store import RecordStore, counters_of, district_key, facility_key
from ncdtrack.models.engine_models import UpdateOutcome
from ncdtrack.models.metric_models import IDENTITY_FIELDS

logger = get_logger("engine.coordinator")


# ─────────────────────────────────────────────
# EDIT STATE MACHINE
# ─────────────────────────────────────────────


class EditState(str, Enum):
    IDLE = "idle"
    AUTHORIZATION_PENDING = "authorization_pending"
    EDITING = "editing"
    VALIDATING = "validating"
    PERSISTING = "persisting"
    REJECTED = "rejected"


ALLOWED_TRANSITIONS: Dict[EditState, Tuple[EditState, ...]] = {
    EditState.IDLE: (EditState.AUTHORIZATION_PENDING, EditState.EDITING),
    EditState.AUTHORIZATION_PENDING: (EditState.EDITING, EditState.REJECTED),
    EditState.EDITING: (EditState.VALIDATING, EditState.REJECTED),
    EditState.VALIDATING: (EditState.PERSISTING, EditState.REJECTED),
    EditState.PERSISTING: (EditState.IDLE, EditState.REJECTED),
    EditState.REJECTED: (EditState.IDLE,),
}


class EditSession:
    """Tracks one edit through the state machine."""

    def __init__(self, domain: MetricDomain, record_key: str):
        self.domain = domain
        self.record_key = record_key
        self.state = EditState.IDLE
        self.history: List[EditState] = [EditState.IDLE]

    def advance(self, state: EditState) -> None:
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal edit transition {self.state.value} → {state.value}")
        self.state = state
        self.history.append(state)

    def reject(self, error: EngineError) -> None:
        self.advance(EditState.REJECTED)
        self.advance(EditState.IDLE)
        logger.warning(
            f"Rejected {self.domain.value} edit of {self.record_key}: {error}",
            extra={"domain": self.domain.value, "record_key": self.record_key},
        )


# ─────────────────────────────────────────────
# INPUT HANDLING
# ─────────────────────────────────────────────


def coerce_count(value: Any) -> Tuple[int, bool]:
    """Lenient numeric coercion: anything unusable becomes 0.

    Returns (count, was_coerced). Floats and numeric strings truncate toward
    zero; missing, blank, non-numeric, negative, boolean, non-finite and
    out-of-range input is stored as 0 rather than rejected.
    """
    if isinstance(value, bool) or value is None:
        return 0, True
    if isinstance(value, int):
        count = value
    else:
        try:
            number = float(str(value).strip())
        except (TypeError, ValueError):
            return 0, True
        if not math.isfinite(number) or number < 0:
            return 0, True
        count = int(number)
    if count < 0 or count > settings.max_counter:
        return 0, True
    return count, False


def _split_fields(domain: MetricDomain, partial_fields: Any) -> Dict[str, Any]:
    """Separate submitted counters from ignorable keys; reject unknown names."""
    if partial_fields is None:
        partial_fields = {}
    if not isinstance(partial_fields, Mapping):
        raise ValidationError("Submitted fields must be an object of field → value")

    counters = set(counter_fields(domain))
    ignorable = IDENTITY_FIELDS | set(derived_fields(domain))
    submitted: Dict[str, Any] = {}
    unknown: List[str] = []
    for name, value in partial_fields.items():
        if name in counters:
            submitted[name] = value
        elif name not in ignorable:
            unknown.append(str(name))
    if unknown:
        raise ValidationError(
            f"Unknown {domain.value} field(s): {', '.join(sorted(unknown))}"
        )
    return submitted


def _coerce_all(submitted: Mapping[str, Any]) -> Tuple[Dict[str, int], List[str]]:
    values: Dict[str, int] = {}
    coerced: List[str] = []
    for name, raw in submitted.items():
        values[name], was_coerced = coerce_count(raw)
        if was_coerced:
            coerced.append(name)
    return values, coerced


def _credential_matches(credential: Optional[str], facility_code: str) -> bool:
    if not credential:
        return False
    return secrets.compare_digest(str(credential).encode(), facility_code.encode())


def _detached(row: SQLModel) -> SQLModel:
    """Session-free copy, safe to hand back after later commits expire the row."""
    return type(row)(**row.model_dump())


# ─────────────────────────────────────────────
# READS
# ─────────────────────────────────────────────


def get_facility_records(
    session: Session, domain: MetricDomain, district_code: Optional[str] = None
) -> List[SQLModel]:
    """Facility rows ordered by facility_code, administrative types omitted."""
    store = RecordStore(session, domain)
    predicates = []
    if district_code:
        predicates.append(store.facility_model.district_code == district_code)
    return [r for r in store.list_facilities(*predicates) if not is_excluded(r)]


def get_facility_record(session: Session, domain: MetricDomain, facility_code: str) -> SQLModel:
    row = RecordStore(session, domain).get_facility(facility_code)
    if row is None:
        raise NotFoundError(
            f"Unknown {domain.value} facility: {facility_code}", record_key=facility_code
        )
    return row


# ─────────────────────────────────────────────
# WRITES
# ─────────────────────────────────────────────


def _refresh_district_cache(session: Session, domain: MetricDomain, district_code: str) -> None:
    """Bring the district cache back in line after a facility write.

    The facility write is already committed; a failure here leaves the cache
    stale until the next reconcile, and reads are live regardless. It must
    not reach the caller as a failed update.
    """
    try:
        refresh_district(session, domain, district_code)
    except Exception as e:
        session.rollback()
        logger.error(
            f"District cache refresh failed for {district_code}, pending reconcile: {e}",
            exc_info=not isinstance(e, PersistenceError),
            extra={"domain": domain.value, "record_key": district_code},
        )


def update_facility_record(
    session: Session,
    domain: MetricDomain,
    facility_code: str,
    credential: Optional[str],
    partial_fields: Any,
) -> UpdateOutcome:
    """Apply a partial counter update to one facility row."""
    started = time.monotonic()
    edit = EditSession(domain, facility_code)
    store = RecordStore(session, domain)

    with record_locks.hold(facility_key(domain, facility_code)):
        row = store.get_facility(facility_code)
        if row is None:
            raise NotFoundError(
                f"Unknown {domain.value} facility: {facility_code}", record_key=facility_code
            )

        try:
            edit.advance(EditState.AUTHORIZATION_PENDING)
            if not _credential_matches(credential, facility_code):
                raise AuthorizationError(
                    f"Credential does not match facility {facility_code}",
                    record_key=facility_code,
                )
            edit.advance(EditState.EDITING)
            submitted = _split_fields(domain, partial_fields)
            values, coerced = _coerce_all(submitted)

            edit.advance(EditState.VALIDATING)
            fields = counter_fields(domain)
            merged = {**counters_of(row, fields), **values}
            merged, corrections = apply_clamps(domain, merged)
        except (AuthorizationError, ValidationError) as e:
            edit.reject(e)
            raise

        edit.advance(EditState.PERSISTING)
        for name, value in {**merged, **derive(domain, merged)}.items():
            setattr(row, name, value)
        row.last_updated = datetime.now(timezone.utc)
        district_code = row.district_code
        # Taken before commit: nothing after a successful commit may fail the update
        snapshot = _detached(row)
        try:
            store.save(row)
        except PersistenceError as e:
            edit.reject(e)
            raise
        edit.advance(EditState.IDLE)

    _refresh_district_cache(session, domain, district_code)
    logger.info(
        f"Updated {domain.value} facility {facility_code} "
        f"({len(values)} field(s), {len(corrections)} clamp(s), {len(coerced)} coerced)",
        extra={
            "domain": domain.value,
            "record_key": facility_code,
            "duration_ms": round((time.monotonic() - started) * 1000, 2),
        },
    )
    return UpdateOutcome(domain=domain, record=snapshot, clamped=corrections, coerced=coerced)


def update_district_record(
    session: Session,
    domain: MetricDomain,
    district_code: str,
    partial_fields: Any,
) -> UpdateOutcome:
    """Edit a district row.

    District counters are sums of facility rows and cannot be set directly;
    only ``district_name`` is editable. The returned record is the live,
    re-derived aggregate.
    """
    edit = EditSession(domain, district_code)
    store = RecordStore(session, domain)

    # A district known only through its facilities gets its cache row first
    if store.get_district(district_code) is None:
        if refresh_district(session, domain, district_code) is None:
            raise NotFoundError(
                f"Unknown {domain.value} district: {district_code}", record_key=district_code
            )

    with record_locks.hold(district_key(domain, district_code)):
        row = store.get_district(district_code)

        try:
            edit.advance(EditState.EDITING)
            if partial_fields is not None and not isinstance(partial_fields, Mapping):
                raise ValidationError("Submitted fields must be an object of field → value")
            fields = dict(partial_fields or {})
            counters = set(counter_fields(domain))
            read_only = sorted(n for n in fields if n in counters)
            if read_only:
                raise ValidationError(
                    f"District counters are derived from facility rows and cannot be "
                    f"edited: {', '.join(read_only)}",
                    record_key=district_code,
                )
            known = IDENTITY_FIELDS | set(derived_fields(domain))
            unknown = sorted(str(n) for n in fields if n not in known)
            if unknown:
                raise ValidationError(
                    f"Unknown {domain.value} field(s): {', '.join(unknown)}",
                    record_key=district_code,
                )

            edit.advance(EditState.VALIDATING)
            new_name = fields.get("district_name")
            if new_name is not None and not str(new_name).strip():
                raise ValidationError("district_name cannot be blank", record_key=district_code)
        except ValidationError as e:
            edit.reject(e)
            raise

        edit.advance(EditState.PERSISTING)
        if new_name is not None:
            row.district_name = str(new_name).strip()
            row.last_updated = datetime.now(timezone.utc)
            try:
                store.save(row)
            except PersistenceError as e:
                edit.reject(e)
                raise
        edit.advance(EditState.IDLE)

    aggregate = get_district_aggregate(session, domain, district_code)
    logger.info(
        f"Updated {domain.value} district {district_code}",
        extra={"domain": domain.value, "record_key": district_code},
    )
    return UpdateOutcome(domain=domain, record=aggregate)


def delete_facility_record(
    session: Session, domain: MetricDomain, facility_code: str
) -> SQLModel:
    """Administrative delete of one facility row."""
    store = RecordStore(session, domain)
    with record_locks.hold(facility_key(domain, facility_code)):
        row = store.get_facility(facility_code)
        if row is None:
            raise NotFoundError(
                f"Unknown {domain.value} facility: {facility_code}", record_key=facility_code
            )
        snapshot = _detached(row)
        store.delete(row)

    _refresh_district_cache(session, domain, snapshot.district_code)
    logger.info(
        f"Deleted {domain.value} facility {facility_code}",
        extra={"domain": domain.value, "record_key": facility_code},
    )
    return snapshot
