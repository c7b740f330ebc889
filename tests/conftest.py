# tests/conftest.py
# Pytest fixtures for the NCDTrack engine and API.

import os

# Keep the module-level engine off the working directory and the scheduler idle.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from ncdtrack.database import build_engine, get_session
from ncdtrack.engine.seeder import parse_roster, seed
from ncdtrack.main import app


# --- Roster ---
# Legacy export keys, ints where the export has them. F9 is an administrative
# type and must never be seeded or summed.
ROSTER_RAW = [
    {"hoscode": "F1", "hosname": "Facility One", "hostype": "7", "amp_code": "D1", "amp_name": "District One", "tmb_code": "T1", "tmb_name": "Sub One"},
    {"hoscode": "F2", "hosname": "Facility Two", "hostype": "8", "amp_code": "D1", "amp_name": "District One", "tmb_code": "T2", "tmb_name": "Sub Two"},
    {"hoscode": "F3", "hosname": "Facility Three", "hostype": 7, "amp_code": "D2", "amp_name": "District Two"},
    {"hoscode": "F9", "hosname": "Provincial Office", "hostype": "15", "amp_code": "D1", "amp_name": "District One"},
    {"hoscode": "F8", "hosname": "District Office", "hostype": "16", "amp_code": "D3", "amp_name": "District Three"},
]


@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite so threads get their own connections."""
    engine = build_engine(f"sqlite:///{tmp_path / 'ncdtrack_test.db'}")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(db_engine):
    with Session(db_engine) as s:
        yield s


@pytest.fixture
def roster():
    return parse_roster(ROSTER_RAW)


@pytest.fixture
def seeded_session(session, roster):
    seed(session, roster)
    return session


@pytest.fixture
def client(db_engine, roster):
    """TestClient bound to the test database, seeded. Lifespan is not run."""
    with Session(db_engine) as s:
        seed(s, roster)

    def _override_session():
        with Session(db_engine) as s:
            yield s

    app.dependency_overrides[get_session] = _override_session
    yield TestClient(app)
    app.dependency_overrides.clear()
