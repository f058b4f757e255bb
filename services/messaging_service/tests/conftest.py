import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["EVENTS_ENABLED"] = "false"
os.environ.pop("REDIS_URL", None)

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Optional

import pytest
from fastapi import HTTPException, Query, Request, WebSocketException, status
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import routes
from auth import resolve_account
from crud import Actor, upsert_profile
from database import get_db, init_db
from main import app
from models import Message, UserRole

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def anyio_backend():
    # the service and client are built on asyncio; trio is not a declared dependency
    return "asyncio"


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def people(db):
    """Two teachers and three students; ids are also their bearer tokens in API tests."""
    def add(profile_id, name, role):
        profile, _ = upsert_profile(db, profile_id, f"{name.lower()}@guitar.test", name, role)
        return profile

    return SimpleNamespace(
        teacher=add(1, "Tessa", UserRole.TEACHER),
        other_teacher=add(2, "Theo", UserRole.TEACHER),
        s1=add(11, "Sam", UserRole.STUDENT),
        s2=add(12, "Sara", UserRole.STUDENT),
        s3=add(13, "Bram", UserRole.STUDENT),
    )


def actor_of(profile) -> Actor:
    return Actor.from_profile(profile)


@pytest.fixture()
def add_message(db):
    def add(sender, receiver, content, minutes=0, read=False):
        message = Message(
            sender_id=sender.id,
            receiver_id=receiver.id,
            content=content,
            read=read,
            created_at=BASE_TIME + timedelta(minutes=minutes),
        )
        db.add(message)
        db.commit()
        db.refresh(message)
        return message

    return add


def _fake_account(request: Request):
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.isdigit():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return {"id": int(token)}


async def _fake_websocket_account(token: Optional[str] = Query(None)):
    if not token or not token.isdigit():
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Missing authentication token")
    return {"id": int(token)}


@pytest.fixture()
def published(monkeypatch):
    events = []
    monkeypatch.setattr(routes, "publish_event", lambda event_type, data: events.append((event_type, data)) or True)
    return events


@pytest.fixture()
def api(session_factory, people, published):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[resolve_account] = _fake_account
    app.dependency_overrides[routes.websocket_account] = _fake_websocket_account
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth(profile) -> dict:
    return {"Authorization": f"Bearer {profile.id}"}
