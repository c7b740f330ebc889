"""NCDTrack — Keyed Record Store.

Thin wrapper over a SQLModel session: get-by-key, list-by-predicate,
atomic save and delete. Store failures roll the session back and surface
as PersistenceError so a failed write leaves the prior row intact.
"""

from typing import Any, List, Optional, Sequence, Type

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from ncdtrack.core.errors import PersistenceError
from ncdtrack.core.logging import get_logger
from ncdtrack.core.metric_registry import MetricDomain
from ncdtrack.models.metric_models import DISTRICT_MODELS, FACILITY_MODELS

logger = get_logger("engine.store")


class RecordStore:
    """Record access for one domain."""

    def __init__(self, session: Session, domain: MetricDomain):
        self.session = session
        self.domain = domain
        self.facility_model: Type[SQLModel] = FACILITY_MODELS[domain]
        self.district_model: Type[SQLModel] = DISTRICT_MODELS[domain]

    # ── Reads ──

    def _fetch(self, query, first: bool = False):
        """Run a select; store failures surface as PersistenceError."""
        try:
            result = self.session.exec(query)
            return result.first() if first else list(result.all())
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Read failed for {self.domain.value}: {e}")
            raise PersistenceError(f"Failed to read {self.domain.value} records") from e

    def get_facility(self, facility_code: str) -> Optional[SQLModel]:
        model = self.facility_model
        return self._fetch(
            select(model)
            .where(model.facility_code == facility_code)
            .execution_options(populate_existing=True),
            first=True,
        )

    def get_district(self, district_code: str) -> Optional[SQLModel]:
        model = self.district_model
        return self._fetch(
            select(model)
            .where(model.district_code == district_code)
            .execution_options(populate_existing=True),
            first=True,
        )

    def list_facilities(self, *predicates: Any) -> List[SQLModel]:
        """Facility rows matching every predicate, ordered by facility_code."""
        model = self.facility_model
        query = select(model)
        if predicates:
            query = query.where(*predicates)
        return self._fetch(query.order_by(model.facility_code))

    def list_districts(self, *predicates: Any) -> List[SQLModel]:
        """District rows matching every predicate, ordered by district_code."""
        model = self.district_model
        query = select(model)
        if predicates:
            query = query.where(*predicates)
        return self._fetch(query.order_by(model.district_code))

    # ── Writes ──

    def save(self, *rows: SQLModel) -> None:
        """Persist rows in one transaction."""
        try:
            for row in rows:
                self.session.add(row)
            self.session.commit()
        except (SQLAlchemyError, OverflowError) as e:
            self.session.rollback()
            logger.error(f"Commit failed for {self.domain.value}: {e}")
            raise PersistenceError(f"Failed to persist {self.domain.value} records") from e

    def delete(self, row: SQLModel) -> None:
        try:
            self.session.delete(row)
            self.session.commit()
        except (SQLAlchemyError, OverflowError) as e:
            self.session.rollback()
            logger.error(f"Delete failed for {self.domain.value}: {e}")
            raise PersistenceError(f"Failed to delete {self.domain.value} record") from e


def facility_key(domain: MetricDomain, facility_code: str) -> tuple:
    return (domain.value, "facility", facility_code)


def district_key(domain: MetricDomain, district_code: str) -> tuple:
    return (domain.value, "district", district_code)


def counters_of(row: SQLModel, fields: Sequence[str]) -> dict:
    return {f: int(getattr(row, f) or 0) for f in fields}
