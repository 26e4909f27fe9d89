import pytest

from chatbot.app import app_db, config, llm


@pytest.fixture
def fake_llm(monkeypatch):
    async def fake_stream(messages, chat_model=None, **kwargs):
        yield "ok"

    monkeypatch.setattr(llm, "chat_completion_stream", fake_stream)


def _register(client, email="ada@example.com", password="secret1"):
    return client.post("/register", data={"email": email, "password": password})


def test_root_renders_for_guest(guest_client):
    res = guest_client.get("/")
    assert res.status_code == 200
    assert 'data-testid="user-email">Guest<' in res.text
    assert "Login to your account" in res.text


def test_root_with_stale_cookie_goes_back_to_bootstrap(client):
    client.cookies.set(config.SESSION_COOKIE, "stale-token")
    res = client.get("/")
    assert res.status_code == 307
    assert res.headers["location"].startswith("/api/auth/guest?redirectUrl=")


def test_root_uses_forwarded_proto_for_bootstrap_target(client):
    client.cookies.set(config.SESSION_COOKIE, "stale-token")
    res = client.get("/", headers={"x-forwarded-proto": "https"})
    assert res.headers["location"].endswith("redirectUrl=https%3A%2F%2Ftestserver%2F")


def test_register_signs_in_and_replaces_guest_session(guest_client):
    res = _register(guest_client)
    assert res.status_code == 303
    assert res.headers["location"] == "/"

    page = guest_client.get("/")
    assert page.status_code == 200
    assert "ada@example.com" in page.text
    assert "Sign out" in page.text


def test_register_duplicate_and_invalid(client):
    _register(client)
    dup = _register(client)
    assert dup.status_code == 409
    assert "Account already exists!" in dup.text

    bad = _register(client, email="not-an-email", password="123")
    assert bad.status_code == 400
    assert "Failed validating your submission!" in bad.text


def test_login_flow(make_client):
    _register(make_client())

    client = make_client()
    wrong = client.post("/login", data={"email": "ada@example.com", "password": "wrong-password"})
    assert wrong.status_code == 401
    assert "Invalid credentials!" in wrong.text

    ok = client.post("/login", data={"email": "ada@example.com", "password": "secret1"})
    assert ok.status_code == 303
    assert client.get("/").status_code == 200


def test_logout_clears_session(make_client):
    client = make_client()
    _register(client)

    res = client.post("/logout")
    assert res.status_code == 303
    assert res.headers["location"] == "/login"
    assert client.get("/api/auth/session").json() is None


def test_chat_page_for_owner_and_strangers(make_client, fake_llm):
    owner = make_client(guest=True)
    stranger = make_client(guest=True)
    owner.post("/api/chat", json={"id": "c-1", "message": "Hello page"})

    page = owner.get("/chat/c-1")
    assert page.status_code == 200
    assert "Hello page" in page.text
    assert 'id="composer"' in page.text

    assert stranger.get("/chat/c-1").status_code == 404

    app_db.update_chat_visibility("c-1", "public")
    shared = stranger.get("/chat/c-1")
    assert shared.status_code == 200
    assert 'data-readonly="true"' in shared.text
    assert 'id="composer"' not in shared.text


def test_unknown_chat_is_404(guest_client):
    assert guest_client.get("/chat/does-not-exist").status_code == 404


def test_sidebar_lists_history(guest_client, fake_llm):
    guest_client.post("/api/chat", json={"id": "c-1", "message": "Sidebar title"})
    page = guest_client.get("/")
    assert "Today" in page.text
    assert 'href="/chat/c-1"' in page.text


def test_model_cookie_selection(guest_client):
    guest_client.cookies.set("chat-model", "unknown-model")
    page = guest_client.get("/")
    assert 'data-model="chat-model"' in page.text


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["db_ready"] is True


def test_static_assets_bypass_gate(client):
    res = client.get("/static/app.css")
    assert res.status_code == 200


def test_assistant_markdown_is_rendered_and_html_escaped(make_client, monkeypatch):
    async def md_stream(messages, chat_model=None, **kwargs):
        yield "**bold** <script>alert(1)</script>"

    monkeypatch.setattr(llm, "chat_completion_stream", md_stream)
    client = make_client(guest=True)
    client.post("/api/chat", json={"id": "md-1", "message": "<b>raw</b>"})

    page = client.get("/chat/md-1").text
    assert "<strong>bold</strong>" in page
    assert "<script>alert(1)</script>" not in page
    assert "&lt;b&gt;raw&lt;/b&gt;" in page
