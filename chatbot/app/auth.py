from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import sqlite3
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal, Mapping

from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.requests import cookie_parser

from . import app_db, config
from .logging_utils import get_logger

log = get_logger(__name__)

UserType = Literal["guest", "regular"]

GUEST_EMAIL_RE = re.compile(r"^guest-\d+(@" + re.escape(config.GUEST_EMAIL_DOMAIN) + r")?$")

_AUTH_SECRET = config.AUTH_SECRET
if not _AUTH_SECRET:
    _AUTH_SECRET = secrets.token_hex(32)
    log.warning("CHATBOT_AUTH_SECRET is not set; using ephemeral secret (sessions reset on restart).")


class AuthError(RuntimeError):
    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code


@dataclass(frozen=True)
class SessionUser:
    id: str
    email: str | None
    type: UserType


@dataclass(frozen=True)
class AuthSession:
    user: SessionUser
    expires: str

    @property
    def is_guest(self) -> bool:
        return self.user.type == "guest"

    def to_dict(self) -> dict:
        return asdict(self)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: object) -> datetime:
    try:
        return datetime.fromisoformat(str(value or ""))
    except ValueError:
        return _utc_now() - timedelta(seconds=1)


def _token_hash(token: str) -> str:
    return hmac.new(_AUTH_SECRET.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def user_type_for_email(email: str | None) -> UserType:
    return "guest" if email and GUEST_EMAIL_RE.match(email) else "regular"


def hash_password(password: str, *, iterations: int = 200_000) -> str:
    pwd = str(password or "")
    if not pwd:
        raise ValueError("Password is empty")
    salt = secrets.token_bytes(16)
    dk = hashlib.pbkdf2_hmac("sha256", pwd.encode("utf-8"), salt, iterations)
    return f"pbkdf2_sha256${iterations}${salt.hex()}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        algo, it_s, salt_hex, hash_hex = str(stored or "").split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        iterations = int(it_s)
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(hash_hex)
    except ValueError:
        return False

    dk = hashlib.pbkdf2_hmac("sha256", str(password or "").encode("utf-8"), salt, iterations)
    return hmac.compare_digest(dk, expected)


def _session_for(user: Mapping, expires_at: str) -> AuthSession:
    email = user.get("email")
    user_type = str(user.get("type") or "") or user_type_for_email(email)
    return AuthSession(
        user=SessionUser(id=str(user.get("user_id") or user.get("id")), email=email, type=user_type),  # type: ignore[arg-type]
        expires=expires_at,
    )


def _issue_session(user: Mapping) -> tuple[AuthSession, str]:
    token = secrets.token_urlsafe(32)
    expires_at = (_utc_now() + timedelta(seconds=config.SESSION_EXPIRES_IN_S)).isoformat()
    app_db.create_auth_session(token_hash=_token_hash(token), user_id=str(user["id"]), expires_at=expires_at)
    return _session_for(user, expires_at), token


def session_token_from_headers(headers: Mapping[str, str]) -> str | None:
    raw = headers.get("cookie") or ""
    if not raw:
        return None
    token = cookie_parser(raw).get(config.SESSION_COOKIE)
    return token or None


def get_session(headers: Mapping[str, str]) -> AuthSession | None:
    """Resolve the session carried by the request cookie header.

    Expired or unknown tokens resolve to None. A session that has not been
    refreshed for ``SESSION_UPDATE_AGE_S`` gets its expiry pushed forward.
    """
    now = _utc_now()
    try:
        app_db.delete_expired_auth_sessions(now.isoformat())
    except sqlite3.Error:
        log.warning("Failed to purge expired sessions", exc_info=True)

    token = session_token_from_headers(headers)
    if not token:
        return None

    th = _token_hash(token)
    sess = app_db.get_auth_session(th)
    if not sess:
        return None

    expires_at = _parse_ts(sess.get("expires_at"))
    if expires_at <= now:
        app_db.delete_auth_session(th)
        return None

    if now - _parse_ts(sess.get("updated_at")) >= timedelta(seconds=config.SESSION_UPDATE_AGE_S):
        expires_at = now + timedelta(seconds=config.SESSION_EXPIRES_IN_S)
        app_db.refresh_auth_session(th, expires_at=expires_at.isoformat())

    return _session_for(sess, expires_at.isoformat())


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        config.SESSION_COOKIE,
        token,
        httponly=True,
        samesite="lax",
        secure=config.COOKIE_SECURE,
        max_age=config.SESSION_EXPIRES_IN_S,
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(config.SESSION_COOKIE, path="/")


def _create_guest_user() -> dict:
    for attempt in range(3):
        email = f"guest-{int(time.time() * 1000) + attempt}@{config.GUEST_EMAIL_DOMAIN}"
        try:
            return app_db.create_user(email=email, user_type="guest")
        except sqlite3.IntegrityError:
            continue
    raise AuthError("guest_create_failed", "Could not allocate a guest identity")


def sign_in_anonymous(*, as_response: bool = False):
    """Create a guest user plus session.

    With ``as_response`` the result is a JSONResponse whose ``set-cookie``
    header carries the session, otherwise ``(AuthSession, token)``.
    """
    if not as_response:
        user = _create_guest_user()
        return _issue_session(user)

    try:
        user = _create_guest_user()
    except AuthError as e:
        log.error("Anonymous sign-in rejected: %s", e)
        return JSONResponse({"error": e.code}, status_code=500)
    session, token = _issue_session(user)
    log.info("Created guest user %s", session.user.id)
    resp = JSONResponse({"token": token, "user": asdict(session.user)})
    set_session_cookie(resp, token)
    return resp


def sign_up_email(*, email: str, password: str) -> tuple[AuthSession, str]:
    ident = str(email or "").strip()
    if app_db.get_user_by_email(ident):
        raise AuthError("user_exists", "User already exists")
    try:
        user = app_db.create_user(email=ident, password_hash=hash_password(password), user_type="regular")
    except sqlite3.IntegrityError as e:
        raise AuthError("user_exists", "User already exists") from e
    log.info("Registered user %s", user["id"])
    return _issue_session(user)


def sign_in_email(*, email: str, password: str) -> tuple[AuthSession, str]:
    user = app_db.get_user_by_email(str(email or "").strip())
    if not user or not user.get("password_hash"):
        raise AuthError("invalid_credentials", "Invalid email or password")
    if not verify_password(password, str(user.get("password_hash") or "")):
        raise AuthError("invalid_credentials", "Invalid email or password")
    return _issue_session(user)


def sign_out(headers: Mapping[str, str]) -> None:
    token = session_token_from_headers(headers)
    if not token:
        return
    app_db.delete_auth_session(_token_hash(token))


def require_session(request: Request) -> AuthSession:
    session = get_session(request.headers)
    if not session:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return session
