"""
Pytest configuration and shared fixtures
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from core.countdown import CountdownRegistry
from core.room_manager import RoomSessionManager
from core.session import Role, SessionContext
from core.transport import InMemoryTransport
from database import Base, get_db


@pytest.fixture
def engine():
    """Private in-memory database per test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def manager(transport):
    return RoomSessionManager(transport, CountdownRegistry())


@pytest.fixture
def host(manager, db) -> SessionContext:
    """A fresh room and its host session"""
    _, ctx = manager.create_room(db)
    return ctx


@pytest.fixture
def join(manager, db, host):
    """join("alice") -> (Player, player SessionContext)"""
    def _join(name, token=None):
        token = token or f"token-{name}"
        player = manager.join_as_player(db, host.room_id, token, name)
        ctx = SessionContext(room_id=host.room_id, session_token=token, role=Role.PLAYER)
        return player, ctx
    return _join


@pytest.fixture
def client(session_factory, manager):
    """
    HTTP client wired to the test database and manager

    Not used as a context manager, so the app lifespan (which creates the
    tables of the configured database) never runs.
    """
    from main import app
    from api.dependencies import get_room_manager, get_session_factory

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_room_manager] = lambda: manager
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
