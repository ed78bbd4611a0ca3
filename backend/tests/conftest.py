"""Shared fixtures for service and API tests.

Uses an in-memory SQLite database for speed. Row locking (SELECT ... FOR
UPDATE) is not rendered on SQLite, so concurrency itself is only exercised
against PostgreSQL.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pharmatrace.core.config import Settings
from pharmatrace.core.database import Base, get_db
from pharmatrace.main import create_app
from pharmatrace.schemas.schemas import ManifestIn
from pharmatrace.services.hierarchy_store import HierarchyStore
from pharmatrace.services.manifest_parser import flatten
from pharmatrace.services.reconciliation import ReconciliationEngine

PRODUCT_A = "08698978090035"
PRODUCT_B = "08690000000011"


def sample_manifest(transfer_id: int = 1001, pallet: str = "P001", prefix: str = "S") -> dict:
    """A pallet holding two cases plus one loose unit on the pallet itself.

    P001 (pallet)
    ├── C001 (case): PRODUCT_A x3
    ├── C002 (case): PRODUCT_A x2, PRODUCT_B x1
    └── PRODUCT_B x1
    """
    return {
        "transferId": transfer_id,
        "documentNumber": f"DOC-{transfer_id}",
        "documentDate": "2026-10-01",
        "sourceGLN": "8680000000001",
        "destinationGLN": "8680000000002",
        "actionType": "S",
        "version": "1.4",
        "carrier": [
            {
                "carrierLabel": pallet,
                "containerType": "P",
                "productList": [
                    {
                        "GTIN": PRODUCT_B,
                        "expirationDate": "2028-01-31",
                        "lotNumber": "LB1",
                        "serialNumber": [f"{prefix}X0002"],
                    },
                ],
                "carrier": [
                    {
                        "carrierLabel": f"{pallet}-C001",
                        "containerType": "C",
                        "productList": [
                            {
                                "GTIN": PRODUCT_A,
                                "expirationDate": "2027-11-30",
                                "productionDate": "2024-11-30",
                                "lotNumber": "LA1",
                                "PONumber": "PO-1",
                                "serialNumber": [f"{prefix}0001", f"{prefix}0002", f"{prefix}0003"],
                            },
                        ],
                    },
                    {
                        "carrierLabel": f"{pallet}-C002",
                        "containerType": "C",
                        "productList": [
                            {
                                "GTIN": PRODUCT_A,
                                "expirationDate": "2027-11-30",
                                "lotNumber": "LA1",
                                "serialNumber": [f"{prefix}0004", f"{prefix}0005"],
                            },
                            {
                                "GTIN": PRODUCT_B,
                                "expirationDate": "2028-01-31",
                                "lotNumber": "LB1",
                                "serialNumber": f"{prefix}X0001",
                            },
                        ],
                    },
                ],
            }
        ],
    }


# ── SQLite test database ────────────────────────────────────────────────────

@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # SQLite needs foreign key enforcement turned on explicitly
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, _):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    """A fresh session on the in-memory database for each test."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def settings():
    return Settings(_env_file=None, DATABASE_URL="sqlite://", LOG_LEVEL="WARNING")


@pytest.fixture()
def store(db, settings):
    return HierarchyStore(db, settings)


@pytest.fixture()
def reconciler(db, store, settings):
    return ReconciliationEngine(db, store, settings)


@pytest.fixture()
def client(db, settings, session_factory):
    """FastAPI test client with the DB session overridden."""
    app = create_app(settings, session_factory=session_factory)

    def _override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = _override_get_db

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


# ── Seed data ────────────────────────────────────────────────────────────────

def ingest_sample(store: HierarchyStore, **kwargs):
    manifest = ManifestIn.model_validate(sample_manifest(**kwargs))
    return store.ingest(manifest, flatten(manifest.carriers), created_by="tester")


@pytest.fixture()
def shipment(store):
    """Shipment 1001 with pallet P001, already ingested."""
    result = ingest_sample(store)
    assert result.accepted
    return result
