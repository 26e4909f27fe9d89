from urllib.parse import quote

from fastapi.responses import JSONResponse

from chatbot.app import auth, config
from chatbot.app.guest import resolve_redirect_url


def _set_cookies(res):
    return res.headers.get_list("set-cookie")


def test_bootstrap_creates_guest_session_and_redirects(client):
    target = "http://testserver/chat/abc"
    res = client.get("/api/auth/guest", params={"redirectUrl": target})

    assert res.status_code == 307
    assert res.headers["location"] == target
    cookies = _set_cookies(res)
    assert any(c.startswith(config.SESSION_COOKIE + "=") for c in cookies)
    assert any(c.startswith(config.GUEST_MARKER_COOKIE + "=") for c in cookies)


def test_bootstrap_cookie_satisfies_gate_and_page(client):
    client.get("/api/auth/guest")

    res = client.get("/")
    assert res.status_code == 200
    assert "Guest" in res.text


def test_bootstrap_defaults_to_root(client):
    res = client.get("/api/auth/guest")
    assert res.status_code == 307
    assert res.headers["location"] == "http://testserver/"


def test_bootstrap_with_existing_session_sets_no_cookie(guest_client):
    res = guest_client.get("/api/auth/guest", params={"redirectUrl": "/chat/xyz"})

    assert res.status_code == 307
    assert res.headers["location"] == "http://testserver/chat/xyz"
    assert _set_cookies(res) == []


def test_bootstrap_store_failure_redirects_to_login(client, monkeypatch):
    def boom(**kwargs):
        raise RuntimeError("session store unavailable")

    monkeypatch.setattr(auth, "sign_in_anonymous", boom)
    res = client.get("/api/auth/guest", params={"redirectUrl": "/"})

    assert res.status_code == 307
    assert res.headers["location"] == "http://testserver/login"
    assert _set_cookies(res) == []


def test_bootstrap_rejected_signup_redirects_to_login(client, monkeypatch):
    monkeypatch.setattr(auth, "sign_in_anonymous", lambda **kwargs: JSONResponse({"error": "no"}, status_code=500))
    res = client.get("/api/auth/guest")

    assert res.status_code == 307
    assert res.headers["location"] == "http://testserver/login"
    assert _set_cookies(res) == []


def test_bootstrap_lookup_failure_redirects_to_login(client, monkeypatch):
    def boom(headers):
        raise RuntimeError("db down")

    monkeypatch.setattr(auth, "get_session", boom)
    res = client.get("/api/auth/guest")

    assert res.headers["location"] == "http://testserver/login"


def test_bootstrap_refuses_off_site_redirect(client):
    res = client.get("/api/auth/guest", params={"redirectUrl": "https://evil.example/phish"})
    assert res.headers["location"] == "http://testserver/"


def test_gate_roundtrip_through_bootstrap(client):
    first = client.get("/chat/some-id")
    assert first.status_code == 307
    assert first.headers["location"] == "/api/auth/guest?redirectUrl=" + quote("http://testserver/chat/some-id", safe="")

    boot = client.get(first.headers["location"])
    assert boot.headers["location"] == "http://testserver/chat/some-id"

    # Cookie now present: the gate lets it through and the page decides (unknown chat).
    assert client.get("/chat/some-id").status_code == 404


def test_resolve_redirect_url():
    base = "http://testserver/api/auth/guest?redirectUrl=x"
    assert resolve_redirect_url("/chat/1", base) == "http://testserver/chat/1"
    assert resolve_redirect_url("", base) == "http://testserver/"
    assert resolve_redirect_url(None, base) == "http://testserver/"
    assert resolve_redirect_url("//evil.example/", base) == "http://testserver/"
    assert resolve_redirect_url("javascript:alert(1)", base) == "http://testserver/"
