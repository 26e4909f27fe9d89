from __future__ import annotations

from urllib.parse import urljoin, urlsplit

from fastapi import Request
from fastapi.responses import RedirectResponse

from . import auth, config
from .logging_utils import get_logger

log = get_logger(__name__)

LOGIN_PATH = "/login"


def resolve_redirect_url(redirect_url: str | None, request_url: str) -> str:
    """Resolve ``redirect_url`` against the request; off-site targets collapse to ``/``."""
    target = urljoin(request_url, str(redirect_url or "").strip() or "/")
    here = urlsplit(request_url)
    there = urlsplit(target)
    if there.scheme not in ("http", "https") or there.netloc != here.netloc:
        log.warning("Refusing off-site redirect target %r", redirect_url)
        return urljoin(request_url, "/")
    return target


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=307)


def _login_redirect(request: Request) -> RedirectResponse:
    return _redirect(urljoin(str(request.url), LOGIN_PATH))


async def bootstrap_guest(request: Request) -> RedirectResponse:
    """Make sure the caller holds a session, then send them back to ``redirectUrl``."""
    redirect_url = request.query_params.get("redirectUrl") or "/"

    try:
        target = resolve_redirect_url(redirect_url, str(request.url))

        session = auth.get_session(request.headers)
        if session is not None:
            return _redirect(target)

        response = auth.sign_in_anonymous(as_response=True)
        if response.status_code >= 400:
            log.error("Anonymous sign-in failed: status=%s", response.status_code)
            return _login_redirect(request)

        redirect_response = _redirect(target)
        for key, value in response.raw_headers:
            if key.lower() == b"set-cookie":
                redirect_response.raw_headers.append((key, value))
        redirect_response.set_cookie(
            config.GUEST_MARKER_COOKIE,
            "1",
            max_age=config.GUEST_MARKER_MAX_AGE_S,
            httponly=True,
            samesite="lax",
            secure=config.COOKIE_SECURE,
            path="/",
        )
        return redirect_response
    except Exception:
        log.exception("Guest authentication error")
        return _login_redirect(request)
