import os

# Keep the module-level engine in services.db away from any real database
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("SNAPSHOT_SECRET", "")

from datetime import datetime

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from models.base import Base


@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite database per test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _fk_on(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


def make_pod(address, **overrides):
    """Normalized live pod as produced by data_sources.prpc.normalize_pod"""
    pod = {
        "address": address,
        "pubkey": f"pk-{address}",
        "rpc_port": 6000,
        "version": "0.8.0",
        "is_public": True,
        "storage_used": 1000,
        "storage_committed": 5000,
        "storage_usage_percent": 20.0,
        "uptime": 100,
        "last_seen_timestamp": 1766400000,
        "timestamp": datetime(2025, 12, 22, 10, 40, 0),
    }
    pod.update(overrides)
    return pod
