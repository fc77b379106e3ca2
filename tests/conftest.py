"""
Shared pytest configuration.

This file ensures the project root is on sys.path so that `import chatcache`
works consistently in all tests, and provides the in-memory stores.
"""

import sys
from pathlib import Path

import pytest


# Ensure project root is importable for test modules.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


@pytest.fixture
def redis():
    from tests.utils import InMemoryRedis

    return InMemoryRedis()


@pytest.fixture
def db():
    from tests.utils import make_inmemory_sessionmaker

    SessionLocal = make_inmemory_sessionmaker()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def app():
    from chatcache.routes import create_app
    from tests.utils import install_inmemory_db

    application = create_app()
    application.state.session_factory = install_inmemory_db(application)
    return application


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)
