from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from chatbot.app import app_db, config


@pytest.fixture
def db_path(tmp_path: Path, monkeypatch) -> Path:
    path = tmp_path / "app.sqlite"
    monkeypatch.setattr(config, "APP_DB_PATH", path)
    app_db.init_db()
    return path


@pytest.fixture
def make_client(db_path):
    from chatbot.app.main import app

    clients = []

    def _make(*, guest: bool = False) -> TestClient:
        client = TestClient(app, follow_redirects=False)
        client.__enter__()
        clients.append(client)
        if guest:
            res = client.get("/api/auth/guest")
            assert res.status_code == 307, res.text
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


@pytest.fixture
def guest_client(make_client) -> TestClient:
    return make_client(guest=True)
