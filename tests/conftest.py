import pytest
from fastapi.testclient import TestClient

from kanban.config import Settings
from kanban.db import init_db
from kanban.main import create_app


def register_user(client, email, name=None):
    resp = client.post("/v1/users", json={"email": email, "displayName": name or email.split("@")[0]})
    assert resp.status_code == 201, resp.text
    body = resp.json()
    token = body["token"]
    return {"id": body["user"]["id"], "token": token, "headers": {"Authorization": f"Bearer {token}"}}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'kanban.db'}",
        session_secret="test-secret",
        session_ttl_seconds=3600,
        log_level="DEBUG",
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def state(app):
    """Application services without the HTTP layer (broadcaster not running)."""
    init_db(app.state.engine)
    yield app.state
    app.state.engine.dispose()


@pytest.fixture
def owner(client):
    return register_user(client, "owner@example.com", "Owner")


@pytest.fixture
def board(client, owner):
    team = client.post("/v1/teams", json={"name": "Core"}, headers=owner["headers"]).json()
    created = client.post(
        f"/v1/teams/{team['id']}/boards", json={"name": "Sprint"}, headers=owner["headers"]
    ).json()
    view = client.get(f"/v1/boards/{created['id']}", headers=owner["headers"]).json()
    return {
        "id": created["id"],
        "teamId": team["id"],
        "columns": [c["id"] for c in view["columns"]],
        "swimlane": view["swimlanes"][0]["id"],
    }
