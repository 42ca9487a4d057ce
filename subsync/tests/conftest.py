"""Shared test configuration."""

import sys
from pathlib import Path

import pytest
from sqlalchemy.pool import StaticPool

# Ensure the project root is in the path so imports work
project_root = Path(__file__).parent.parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from subsync.database.db import build_engine, init_db, make_sessionmaker  # noqa: E402


@pytest.fixture
def session_factory():
    """In-memory SQLite sessionmaker; every session shares one connection."""
    engine = build_engine("sqlite:///:memory:", poolclass=StaticPool, echo=False)
    init_db(engine)
    return make_sessionmaker(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()
