import os
os.environ["TESTING"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret")
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from incubator.main import app
from incubator.database import Base, enable_sqlite_savepoints, get_db
from incubator import models, notify, pubsub, schemas
from incubator.auth import create_access_token

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
enable_sqlite_savepoints(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(autouse=True)
def published_events(monkeypatch):
    events: list[tuple[str, str, dict]] = []

    async def fake_publish(channel, event, payload):
        events.append((channel, event, payload))

    monkeypatch.setattr(pubsub, "publish", fake_publish)
    notify.EMAIL_OUTBOX.clear()
    yield events
    notify.EMAIL_OUTBOX.clear()


def make_user(db, role: str = "incubator", name: str | None = None) -> models.User:
    user = models.User(
        email=f"{role}-{uuid.uuid4()}@example.com",
        full_name=name or role.title(),
        role=role,
    )
    db.add(user)
    db.flush()
    return user


def make_team(db, leader: models.User | None = None, members=()) -> models.Team:
    team = models.Team(name=f"Team {uuid.uuid4().hex[:6]}", company_name="Acme Labs")
    db.add(team)
    db.flush()
    if leader is not None:
        db.add(models.TeamMember(team_id=team.id, user_id=leader.id, role="team_leader"))
    for member in members:
        db.add(models.TeamMember(team_id=team.id, user_id=member.id, role="member"))
    db.flush()
    return team


def make_item(
    db,
    quantity: int,
    *,
    name: str = "Pipette",
    category: str | None = "Equipment",
    frequently_distributed: bool = False,
) -> models.InventoryItem:
    item = models.InventoryItem(
        name=name,
        category=category,
        is_frequently_distributed=frequently_distributed,
        total_quantity=quantity,
        available_quantity=quantity,
        consumed_quantity=0,
    )
    db.add(item)
    db.flush()
    return item


def request_data(team, items, **kwargs) -> schemas.MaterialRequestCreate:
    return schemas.MaterialRequestCreate(
        team_id=team.id,
        title=kwargs.pop("title", "Lab supplies"),
        items=[schemas.RequestItemIn(**item) for item in items],
        **kwargs,
    )


def auth_headers(user: models.User) -> dict[str, str]:
    token = create_access_token({"sub": user.email})
    return {"Authorization": f"Bearer {token}"}
