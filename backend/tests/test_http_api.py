import importlib.util
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

MODULE_PATH = Path(__file__).resolve().parents[1] / "main.py"


def _load_main_module(monkeypatch, tmp_path):
    monkeypatch.setenv("JWT_SECRET", "test-secret-123456")
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))

    spec = importlib.util.spec_from_file_location("backend_main_http", MODULE_PATH)
    module = importlib.util.module_from_spec(spec)
    assert spec and spec.loader
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def api(monkeypatch, tmp_path):
    module = _load_main_module(monkeypatch, tmp_path)
    with TestClient(module.app, raise_server_exceptions=False) as client:
        yield module, client


def test_private_chat_round_trip_over_http(api, tmp_path):
    module, client = api

    res = client.post("/api/auth/register", json={"username": "bob", "password": "pw2"})
    assert res.status_code == 200
    bob = res.json()
    res = client.post("/api/auth/register", json={"username": "alice", "password": "pw1", "name": "Alice"})
    assert res.status_code == 200
    alice = res.json()
    assert client.cookies.get("token") == alice["token"]

    # the session cookie alone authenticates
    assert client.get("/api/auth/me").json()["user"]["username"] == "alice"

    chat = client.post("/api/chats/private", json={"userId": bob["user"]["id"]}).json()
    assert chat["type"] == "private"
    assert chat["participants"] == [alice["user"]["id"], bob["user"]["id"]]

    sent = client.post(f"/api/chats/{chat['id']}/messages", json={"text": "hi", "replyTo": None})
    assert sent.status_code == 200
    assert sent.json()["status"] == "sent"

    client.cookies.clear()
    as_bob = {"Authorization": f"Bearer {bob['token']}"}
    rows = client.get(f"/api/chats/{chat['id']}/messages", headers=as_bob).json()
    assert [(m["text"], m["status"]) for m in rows] == [("hi", "seen")]
    assert [c["id"] for c in client.get("/api/chats", headers=as_bob).json()] == [chat["id"]]

    # every mutation reached disk
    data_dir = tmp_path / "data"
    assert '"seen"' in (data_dir / "messages.json").read_text(encoding="utf-8")
    assert "alice" in (data_dir / "users.json").read_text(encoding="utf-8")


def test_bearer_header_is_accepted(api):
    module, client = api
    token = client.post("/api/auth/register", json={"username": "alice", "password": "pw1"}).json()["token"]
    client.cookies.clear()

    res = client.get("/api/users", headers={"Authorization": f"Bearer {token}"})

    assert res.status_code == 200
    assert [u["username"] for u in res.json()] == ["alice"]
    assert "password" not in res.json()[0]


def test_logout_clears_session_cookie(api):
    module, client = api
    client.post("/api/auth/register", json={"username": "alice", "password": "pw1"})

    res = client.post("/api/auth/logout")

    assert res.json() == {"success": True}
    assert "Max-Age=0" in res.headers.get("set-cookie", "")


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Bearer garbage"},
        {"Authorization": "Bearer a.b.c"},
        {"Authorization": "Bearer a.b.é".encode("utf-8")},
    ],
)
def test_bad_credentials_are_unauthenticated(api, headers):
    module, client = api

    res = client.get("/api/auth/me", headers=headers)

    assert res.status_code == 401
    assert res.json()["error"] == res.json()["detail"]


def test_non_ascii_token_does_not_break_public_routes(api):
    module, client = api

    res = client.get("/api/health", headers={"Authorization": "Bearer a.b.é".encode("utf-8")})

    assert res.status_code == 200
    assert res.json()["ok"] is True


def test_malformed_body_is_bad_request(api):
    module, client = api

    res = client.post("/api/auth/login", content=b"{not json", headers={"content-type": "application/json"})
    assert res.status_code == 400

    client.post("/api/auth/register", json={"username": "alice", "password": "pw1"})
    res = client.post("/api/chats/private", json={"userId": "not-a-number"})
    assert res.status_code == 400
    assert res.json()["error"].startswith("userId")


def test_non_member_and_missing_chat_over_http(api):
    module, client = api
    client.post("/api/auth/register", json={"username": "bob", "password": "pw2"})
    client.post("/api/auth/register", json={"username": "carol", "password": "pw3"})
    client.post("/api/auth/register", json={"username": "alice", "password": "pw1"})
    users = client.get("/api/users").json()
    bob_id = next(u["id"] for u in users if u["username"] == "bob")
    chat = client.post("/api/chats/group", json={"name": "Team", "participants": [bob_id]}).json()

    client.post("/api/auth/login", json={"username": "carol", "password": "pw3"})
    res = client.get(f"/api/chats/{chat['id']}/messages")
    assert res.status_code == 403
    assert res.json() == {"error": "Not a member of this chat", "detail": "Not a member of this chat"}

    res = client.delete("/api/chats/424242")
    assert res.status_code == 404


def test_storage_failure_is_reported(api, monkeypatch):
    module, client = api
    client.post("/api/auth/register", json={"username": "alice", "password": "pw1"})

    def broken_flush():
        raise module.StorageError("disk full")

    monkeypatch.setattr(client.app.state.store, "flush", broken_flush)
    res = client.put("/api/users/profile", json={"name": "Alice"})

    assert res.status_code == 500
    assert res.json()["error"] == "Storage write failed"


def test_unexpected_error_returns_generic_500(api, monkeypatch):
    module, client = api

    def explode():
        raise RuntimeError("boom")

    monkeypatch.setattr(module, "get_build_meta", explode)
    res = client.get("/api/health")

    assert res.status_code == 500
    assert res.json() == {"error": "Server error", "detail": "Server error"}
