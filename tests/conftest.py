"""Shared fixtures: a fresh SQLite database per test."""

import pytest
from sqlalchemy.orm import sessionmaker

from models.node import Node
from services.cache import Caches
from services.db import init_db, make_engine
from services.error_log import ErrorLogSink


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'podnet.db'}")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def error_sink(session_factory):
    return ErrorLogSink(session_factory)


@pytest.fixture
def caches():
    return Caches()


@pytest.fixture
def add_node(session_factory):
    """Insert a node row with sensible defaults, overridable per-field."""

    def _add(**overrides):
        defaults = {
            "ip": "10.0.0.1",
            "pubkey": "pk",
            "version": "0.8.0",
            "country": "US",
            "lat": 1.0,
            "lon": 2.0,
            "credits": 0,
            "storage": 0.0,
            "uptime": 0,
            "status": "active",
        }
        defaults.update(overrides)
        s = session_factory()
        try:
            s.add(Node(**defaults))
            s.commit()
        finally:
            s.close()

    return _add
