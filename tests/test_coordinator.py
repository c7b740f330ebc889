# tests/test_coordinator.py
# The per-record write path: authorization, coercion, merge, clamp, persistence.

import random
import threading
from unittest import mock

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from ncdtrack.core.errors import (
    AuthorizationError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from ncdtrack.core.metric_registry import MetricDomain
from ncdtrack.engine.coordinator import (
    EditSession,
    EditState,
    coerce_count,
    delete_facility_record,
    get_facility_record,
    get_facility_records,
    update_district_record,
    update_facility_record,
)
from ncdtrack.engine.rollup import (
    find_stale_districts,
    get_district_aggregate,
    reconcile_districts,
)
from ncdtrack.engine.store import RecordStore
from ncdtrack.models.metric_models import CarbDistrict


# --- coercion ---

@pytest.mark.parametrize(
    "raw, expected",
    [
        (12, (12, False)),
        ("12", (12, False)),
        (" 7 ", (7, False)),
        (12.9, (12, False)),
        ("3.5", (3, False)),
        (0, (0, False)),
        (None, (0, True)),
        ("", (0, True)),
        ("abc", (0, True)),
        (-4, (0, True)),
        ("-4", (0, True)),
        (True, (0, True)),
        (float("nan"), (0, True)),
        ("inf", (0, True)),
        ([1], (0, True)),
        ("1e30", (0, True)),
        (10**30, (0, True)),
        (10**12, (10**12, False)),
        (10**12 + 1, (0, True)),
    ],
)
def test_coerce_count_is_lenient(raw, expected):
    assert coerce_count(raw) == expected


def test_invalid_numbers_stored_as_zero_and_reported(seeded_session):
    s = seeded_session
    update_facility_record(s, MetricDomain.CARB, "F1", "F1", {"target_population": 100, "carb_counted": 10})
    outcome = update_facility_record(s, MetricDomain.CARB, "F1", "F1", {"carb_counted": "lots"})
    assert outcome.record.carb_counted == 0
    assert outcome.record.target_population == 100
    assert outcome.coerced == ["carb_counted"]
    assert outcome.record.remaining == 100


# --- authorization gate ---

def test_wrong_credential_leaves_record_unchanged(seeded_session):
    s = seeded_session
    update_facility_record(s, MetricDomain.CARB, "F1", "F1", {"target_population": 100})
    stamp = get_facility_record(s, MetricDomain.CARB, "F1").last_updated

    with pytest.raises(AuthorizationError):
        update_facility_record(s, MetricDomain.CARB, "F1", "F2", {"target_population": 5})
    with pytest.raises(AuthorizationError):
        update_facility_record(s, MetricDomain.CARB, "F1", None, {"target_population": 5})

    after = get_facility_record(s, MetricDomain.CARB, "F1")
    assert after.target_population == 100
    assert after.last_updated == stamp


def test_unknown_facility_is_not_created(seeded_session):
    with pytest.raises(NotFoundError):
        update_facility_record(seeded_session, MetricDomain.CARB, "NOPE", "NOPE", {"carb_counted": 1})
    with pytest.raises(NotFoundError):
        get_facility_record(seeded_session, MetricDomain.CARB, "NOPE")


# --- validation ---

def test_unknown_field_rejected(seeded_session):
    with pytest.raises(ValidationError):
        update_facility_record(seeded_session, MetricDomain.CARB, "F1", "F1", {"carb_count": 3})


def test_non_mapping_payload_rejected(seeded_session):
    with pytest.raises(ValidationError):
        update_facility_record(seeded_session, MetricDomain.CARB, "F1", "F1", [1, 2])


def test_derived_and_identity_input_ignored(seeded_session):
    outcome = update_facility_record(
        seeded_session, MetricDomain.CARB, "F1", "F1",
        {"target_population": 10, "carb_counted": 5, "percentage": 99.9,
         "remaining": -1, "facility_code": "HACK", "district_code": "D2"},
    )
    assert outcome.record.percentage == 50.0
    assert outcome.record.remaining == 5
    assert outcome.record.facility_code == "F1"
    assert outcome.record.district_code == "D1"


# --- merge / idempotence ---

def test_partial_update_keeps_untouched_fields(seeded_session):
    s = seeded_session
    update_facility_record(s, MetricDomain.REMISSION, "F1", "F1", {"trained": 10, "reduced_3": 4})
    outcome = update_facility_record(s, MetricDomain.REMISSION, "F1", "F1", {"lost_followup": 2})
    r = outcome.record
    assert (r.trained, r.reduced_3, r.lost_followup) == (10, 4, 2)
    assert r.followed_total == 6


def test_same_partial_update_twice_is_idempotent(seeded_session):
    s = seeded_session
    payload = {"risk_trained": 9, "risk_to_normal": 12, "normal_population": "5"}
    first = update_facility_record(s, MetricDomain.PREVENTION, "F2", "F2", payload).record
    second = update_facility_record(s, MetricDomain.PREVENTION, "F2", "F2", payload).record
    dump = lambda r: r.model_dump(exclude={"last_updated"})
    assert dump(first) == dump(second)


# --- clamp ---

def test_clamp_reported_in_outcome(seeded_session):
    outcome = update_facility_record(
        seeded_session, MetricDomain.PREVENTION, "F1", "F1",
        {"risk_trained": 5, "risk_to_normal": 8},
    )
    assert outcome.record.risk_to_normal == 5
    assert len(outcome.clamped) == 1
    correction = outcome.clamped[0]
    assert correction.field == "risk_to_normal"
    assert (correction.submitted_value, correction.stored_value) == (8, 5)


def test_clamp_applies_when_ceiling_decreased(seeded_session):
    s = seeded_session
    update_facility_record(s, MetricDomain.PREVENTION, "F1", "F1", {"risk_trained": 10, "risk_to_normal": 7})
    outcome = update_facility_record(s, MetricDomain.PREVENTION, "F1", "F1", {"risk_trained": 4})
    assert outcome.record.risk_trained == 4
    assert outcome.record.risk_to_normal == 4
    assert outcome.clamped[0].submitted_value == 7


def test_clamp_invariant_over_sequences(seeded_session):
    s = seeded_session
    rng = random.Random(42)
    for _ in range(40):
        payload = {}
        if rng.random() < 0.7:
            payload["risk_trained"] = rng.randint(0, 20)
        if rng.random() < 0.7:
            payload["risk_to_normal"] = rng.randint(0, 25)
        r = update_facility_record(s, MetricDomain.PREVENTION, "F3", "F3", payload).record
        assert r.risk_to_normal <= r.risk_trained


def test_remission_clamp(seeded_session):
    r = update_facility_record(
        seeded_session, MetricDomain.REMISSION, "F1", "F1", {"trained": 3, "ncds_remission": 10}
    ).record
    assert r.ncds_remission == 3
    assert r.remission_percentage == 100.0


# --- persistence failure ---

def test_persistence_failure_leaves_prior_record(seeded_session, db_engine):
    s = seeded_session
    update_facility_record(s, MetricDomain.CARB, "F1", "F1", {"target_population": 100})

    with mock.patch.object(s, "commit", side_effect=OperationalError("UPDATE", {}, Exception("disk full"))):
        with pytest.raises(PersistenceError):
            update_facility_record(s, MetricDomain.CARB, "F1", "F1", {"target_population": 1})

    with Session(db_engine) as fresh:
        assert get_facility_record(fresh, MetricDomain.CARB, "F1").target_population == 100


# --- state machine ---

def test_edit_state_machine_enforces_transitions():
    edit = EditSession(MetricDomain.CARB, "F1")
    with pytest.raises(RuntimeError):
        edit.advance(EditState.PERSISTING)
    edit.advance(EditState.AUTHORIZATION_PENDING)
    edit.reject(AuthorizationError("nope"))
    assert edit.state == EditState.IDLE
    assert edit.history == [
        EditState.IDLE, EditState.AUTHORIZATION_PENDING, EditState.REJECTED, EditState.IDLE,
    ]


# --- concurrency ---

def test_concurrent_updates_to_same_key_serialize(seeded_session, db_engine):
    payloads = [
        {"target_population": 100, "carb_counted": 10},
        {"target_population": 200, "carb_counted": 150},
    ]
    barrier = threading.Barrier(len(payloads))
    errors = []

    def worker(payload):
        try:
            with Session(db_engine) as s:
                barrier.wait()
                update_facility_record(s, MetricDomain.CARB, "F1", "F1", payload)
        except Exception as e:  # surfaced through the errors list
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(p,)) for p in payloads]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []

    with Session(db_engine) as s:
        row = get_facility_record(s, MetricDomain.CARB, "F1")
        final = (row.target_population, row.carb_counted, row.percentage, row.remaining)
        d1 = get_district_aggregate(s, MetricDomain.CARB, "D1")
    assert final in {(100, 10, 10.0, 90), (200, 150, 75.0, 50)}
    assert d1.target_population == row.target_population


def test_concurrent_disjoint_partial_updates_both_land(seeded_session, db_engine):
    # Read-modify-write on one key: neither field may be lost
    payloads = [{"target_population": 70}, {"carb_counted": 35}]
    barrier = threading.Barrier(2)

    def worker(payload):
        with Session(db_engine) as s:
            barrier.wait()
            update_facility_record(s, MetricDomain.CARB, "F2", "F2", payload)

    threads = [threading.Thread(target=worker, args=(p,)) for p in payloads]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    with Session(db_engine) as s:
        row = get_facility_record(s, MetricDomain.CARB, "F2")
    assert (row.target_population, row.carb_counted, row.percentage) == (70, 35, 50.0)


# --- reads ---

def test_facility_listing_order_and_filter(seeded_session):
    codes = [r.facility_code for r in get_facility_records(seeded_session, MetricDomain.CARB)]
    assert codes == ["F1", "F2", "F3"]
    d1 = [r.facility_code for r in get_facility_records(seeded_session, MetricDomain.CARB, "D1")]
    assert d1 == ["F1", "F2"]


# --- district edits ---

def test_district_counter_edit_rejected(seeded_session):
    with pytest.raises(ValidationError):
        update_district_record(seeded_session, MetricDomain.CARB, "D1", {"target_population": 5})


def test_district_rename_returns_live_aggregate(seeded_session):
    s = seeded_session
    update_facility_record(s, MetricDomain.CARB, "F1", "F1", {"target_population": 12})
    outcome = update_district_record(s, MetricDomain.CARB, "D1", {"district_name": "Renamed"})
    assert outcome.record.district_name == "Renamed"
    assert outcome.record.target_population == 12


def test_unknown_district_update(seeded_session):
    with pytest.raises(NotFoundError):
        update_district_record(seeded_session, MetricDomain.CARB, "DX", {"district_name": "x"})


# --- delete ---

def test_delete_facility_updates_district(seeded_session):
    s = seeded_session
    update_facility_record(s, MetricDomain.CARB, "F2", "F2", {"target_population": 50})
    deleted = delete_facility_record(s, MetricDomain.CARB, "F2")
    assert deleted.facility_code == "F2"
    d1 = get_district_aggregate(s, MetricDomain.CARB, "D1")
    assert d1.target_population == 0
    assert d1.facility_count == 1
    with pytest.raises(NotFoundError):
        delete_facility_record(s, MetricDomain.CARB, "F2")


# --- range and store failures ---

def test_oversized_number_stored_as_zero(seeded_session):
    outcome = update_facility_record(
        seeded_session, MetricDomain.CARB, "F1", "F1",
        {"target_population": "1e30", "carb_counted": 10**19},
    )
    assert outcome.record.target_population == 0
    assert outcome.record.carb_counted == 0
    assert outcome.coerced == ["target_population", "carb_counted"]


def test_largest_counters_sum_into_district(seeded_session, db_engine):
    s = seeded_session
    for code in ("F1", "F2"):
        update_facility_record(s, MetricDomain.CARB, code, code, {"target_population": 10**12})

    with Session(db_engine) as fresh:
        cached = fresh.exec(select(CarbDistrict).where(CarbDistrict.district_code == "D1")).one()
        assert cached.target_population == 2 * 10**12
        assert find_stale_districts(fresh, MetricDomain.CARB) == []


def test_save_overflow_becomes_persistence_error(seeded_session, db_engine):
    s = seeded_session
    store = RecordStore(s, MetricDomain.CARB)
    row = store.get_facility("F1")
    row.target_population = 10**30
    with pytest.raises(PersistenceError):
        store.save(row)

    with Session(db_engine) as fresh:
        assert get_facility_record(fresh, MetricDomain.CARB, "F1").target_population == 0


def test_district_refresh_failure_keeps_update_successful(seeded_session, db_engine):
    s = seeded_session
    failure = OperationalError("SELECT", {}, Exception("database is locked"))
    with mock.patch("ncdtrack.engine.coordinator.refresh_district", side_effect=failure):
        outcome = update_facility_record(s, MetricDomain.CARB, "F1", "F1", {"target_population": 30})
    assert outcome.record.target_population == 30

    with Session(db_engine) as fresh:
        assert get_facility_record(fresh, MetricDomain.CARB, "F1").target_population == 30
        assert find_stale_districts(fresh, MetricDomain.CARB) == ["D1"]
        assert reconcile_districts(fresh, MetricDomain.CARB) == 1


def test_store_read_failure_is_persistence_error(seeded_session):
    s = seeded_session
    with mock.patch.object(s, "exec", side_effect=OperationalError("SELECT", {}, Exception("gone"))):
        with pytest.raises(PersistenceError):
            update_facility_record(s, MetricDomain.CARB, "F1", "F1", {"carb_counted": 1})
        with pytest.raises(PersistenceError):
            get_facility_records(s, MetricDomain.CARB)


def test_district_known_only_by_facilities_can_be_renamed(seeded_session):
    s = seeded_session
    s.delete(s.exec(select(CarbDistrict).where(CarbDistrict.district_code == "D2")).one())
    s.commit()

    live = get_district_aggregate(s, MetricDomain.CARB, "D2")
    assert (live.facility_count, live.district_name) == (1, "District Two")
    outcome = update_district_record(s, MetricDomain.CARB, "D2", {"district_name": "Valley"})
    assert outcome.record.district_name == "Valley"
    assert outcome.record.facility_count == 1
    cached = s.exec(select(CarbDistrict).where(CarbDistrict.district_code == "D2")).one()
    assert cached.district_name == "Valley"
