"""NCDTrack — Facility & District Metric Models.

One table per domain per granularity. Counter/derived columns live on a
shared non-table base so a facility row and its district aggregate always
have the same field shape.

Unique constraint on the natural key (facility_code / district_code)
ensures idempotent upserts — re-running the seed won't duplicate rows.
"""

from datetime import datetime, timezone
from typing import Dict, Optional, Type
from sqlalchemy import BigInteger
from sqlmodel import SQLModel, Field

from ncdtrack.core.metric_registry import MetricDomain


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────
# COUNTER SETS — shared by facility and district rows
# ─────────────────────────────────────────────


class CarbCounters(SQLModel):
    """Carbohydrate-counting compliance."""

    target_population: int = Field(default=0, sa_type=BigInteger)
    carb_counted: int = Field(default=0, sa_type=BigInteger)
    # Derived
    percentage: float = Field(default=0.0)
    remaining: int = Field(default=0, sa_type=BigInteger)


class PreventionCounters(SQLModel):
    """Prevention screening: enrolment, visits, population status, weight loss."""

    total_officer: int = Field(default=0, sa_type=BigInteger)
    officer_provider: int = Field(default=0, sa_type=BigInteger)
    total_volunteer: int = Field(default=0, sa_type=BigInteger)
    volunteer_provider: int = Field(default=0, sa_type=BigInteger)
    target_population: int = Field(default=0, sa_type=BigInteger)
    prevention_visit: int = Field(default=0, sa_type=BigInteger)
    normal_population: int = Field(default=0, sa_type=BigInteger)
    risk_population: int = Field(default=0, sa_type=BigInteger)
    sick_population: int = Field(default=0, sa_type=BigInteger)
    risk_trained: int = Field(default=0, sa_type=BigInteger)
    risk_to_normal: int = Field(default=0, sa_type=BigInteger, description="Never exceeds risk_trained")
    weight_reduced_0_1: int = Field(default=0, sa_type=BigInteger)
    weight_reduced_1_2: int = Field(default=0, sa_type=BigInteger)
    weight_reduced_2_3: int = Field(default=0, sa_type=BigInteger)
    weight_reduced_3_4: int = Field(default=0, sa_type=BigInteger)
    weight_reduced_4_5: int = Field(default=0, sa_type=BigInteger)
    weight_reduced_over_5: int = Field(default=0, sa_type=BigInteger)
    # Derived
    officer_percentage: float = Field(default=0.0)
    volunteer_percentage: float = Field(default=0.0)
    visit_percentage: float = Field(default=0.0)
    visit_remaining: int = Field(default=0, sa_type=BigInteger)
    screened_total: int = Field(default=0, sa_type=BigInteger)
    risk_to_normal_percentage: float = Field(default=0.0)
    weight_reduced_total: int = Field(default=0, sa_type=BigInteger)


class RemissionCounters(SQLModel):
    """Remission outcomes and medication changes."""

    trained: int = Field(default=0, sa_type=BigInteger)
    ncds_remission: int = Field(default=0, sa_type=BigInteger, description="Never exceeds trained")
    stopped_medication: int = Field(default=0, sa_type=BigInteger)
    reduced_1: int = Field(default=0, sa_type=BigInteger)
    reduced_2: int = Field(default=0, sa_type=BigInteger)
    reduced_3: int = Field(default=0, sa_type=BigInteger)
    reduced_4: int = Field(default=0, sa_type=BigInteger)
    reduced_5: int = Field(default=0, sa_type=BigInteger)
    reduced_6: int = Field(default=0, sa_type=BigInteger)
    reduced_7: int = Field(default=0, sa_type=BigInteger)
    reduced_8: int = Field(default=0, sa_type=BigInteger)
    reduced_n: int = Field(default=0, sa_type=BigInteger, description="Reduced by more than 8")
    same_medication: int = Field(default=0, sa_type=BigInteger)
    increased_medication: int = Field(default=0, sa_type=BigInteger)
    pending_evaluation: int = Field(default=0, sa_type=BigInteger)
    lost_followup: int = Field(default=0, sa_type=BigInteger)
    # Derived
    remission_percentage: float = Field(default=0.0)
    reduced_total: int = Field(default=0, sa_type=BigInteger)
    followed_total: int = Field(default=0, sa_type=BigInteger)
    stopped_percentage: float = Field(default=0.0)


# ─────────────────────────────────────────────
# FACILITY TABLES
# ─────────────────────────────────────────────


class CarbFacility(CarbCounters, table=True):
    __tablename__ = "carb_facilities"

    id: Optional[int] = Field(default=None, primary_key=True)
    facility_code: str = Field(index=True, unique=True)
    facility_name: str = Field(default="")
    facility_type: str = Field(default="")
    subdistrict_code: str = Field(default="")
    subdistrict_name: str = Field(default="")
    district_code: str = Field(index=True)
    district_name: str = Field(default="")
    last_updated: datetime = Field(default_factory=_utcnow)


class PreventionFacility(PreventionCounters, table=True):
    __tablename__ = "prevention_facilities"

    id: Optional[int] = Field(default=None, primary_key=True)
    facility_code: str = Field(index=True, unique=True)
    facility_name: str = Field(default="")
    facility_type: str = Field(default="")
    subdistrict_code: str = Field(default="")
    subdistrict_name: str = Field(default="")
    district_code: str = Field(index=True)
    district_name: str = Field(default="")
    last_updated: datetime = Field(default_factory=_utcnow)


class RemissionFacility(RemissionCounters, table=True):
    __tablename__ = "remission_facilities"

    id: Optional[int] = Field(default=None, primary_key=True)
    facility_code: str = Field(index=True, unique=True)
    facility_name: str = Field(default="")
    facility_type: str = Field(default="")
    subdistrict_code: str = Field(default="")
    subdistrict_name: str = Field(default="")
    district_code: str = Field(index=True)
    district_name: str = Field(default="")
    last_updated: datetime = Field(default_factory=_utcnow)


# ─────────────────────────────────────────────
# DISTRICT TABLES — materialized rollup cache
# ─────────────────────────────────────────────


class CarbDistrict(CarbCounters, table=True):
    __tablename__ = "carb_districts"

    id: Optional[int] = Field(default=None, primary_key=True)
    district_code: str = Field(index=True, unique=True)
    district_name: str = Field(default="")
    facility_count: int = Field(default=0)
    last_updated: datetime = Field(default_factory=_utcnow)


class PreventionDistrict(PreventionCounters, table=True):
    __tablename__ = "prevention_districts"

    id: Optional[int] = Field(default=None, primary_key=True)
    district_code: str = Field(index=True, unique=True)
    district_name: str = Field(default="")
    facility_count: int = Field(default=0)
    last_updated: datetime = Field(default_factory=_utcnow)


class RemissionDistrict(RemissionCounters, table=True):
    __tablename__ = "remission_districts"

    id: Optional[int] = Field(default=None, primary_key=True)
    district_code: str = Field(index=True, unique=True)
    district_name: str = Field(default="")
    facility_count: int = Field(default=0)
    last_updated: datetime = Field(default_factory=_utcnow)


IDENTITY_FIELDS = frozenset(
    {
        "id",
        "facility_code",
        "facility_name",
        "facility_type",
        "subdistrict_code",
        "subdistrict_name",
        "district_code",
        "district_name",
        "facility_count",
        "last_updated",
    }
)


# ─────────────────────────────────────────────
# DOMAIN → TABLE LOOKUP
# ─────────────────────────────────────────────

FACILITY_MODELS: Dict[MetricDomain, Type[SQLModel]] = {
    MetricDomain.CARB: CarbFacility,
    MetricDomain.PREVENTION: PreventionFacility,
    MetricDomain.REMISSION: RemissionFacility,
}

DISTRICT_MODELS: Dict[MetricDomain, Type[SQLModel]] = {
    MetricDomain.CARB: CarbDistrict,
    MetricDomain.PREVENTION: PreventionDistrict,
    MetricDomain.REMISSION: RemissionDistrict,
}
