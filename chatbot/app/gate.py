from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Mapping
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import PlainTextResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from . import config
from .logging_utils import get_logger

log = get_logger(__name__)

PING_PREFIX = "/ping"
API_PREFIX = "/api/"
GUEST_BOOTSTRAP_PATH = "/api/auth/guest"
AUTH_PAGES = frozenset({"/login", "/register"})

# Paths the gate never sees: static files and metadata.
_EXCLUDED_RE = re.compile(r"^/(static/|favicon\.ico$|sitemap\.xml$|robots\.txt$)")


class GateOutcome(str, Enum):
    PASS = "pass"
    PONG = "pong"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class GateDecision:
    outcome: GateOutcome
    location: str | None = None


PASS = GateDecision(GateOutcome.PASS)


def is_protected_path(path: str) -> bool:
    return path == "/" or path.startswith("/chat")


def is_gated_path(path: str) -> bool:
    return not _EXCLUDED_RE.match(path or "/")


def bootstrap_location(url: str) -> str:
    return f"{GUEST_BOOTSTRAP_PATH}?redirectUrl={quote(url, safe='')}"


def decide(
    path: str,
    url: str,
    cookies: Mapping[str, str],
    headers: Mapping[str, str],
    *,
    trust_referer: bool | None = None,
) -> GateDecision:
    """Pass through, answer the health check, or send the caller to guest bootstrap.

    Only cookie presence is checked; whether the session is still valid is
    left to the page or handler that serves the request.
    """
    if path.startswith(PING_PREFIX):
        return GateDecision(GateOutcome.PONG)

    if path.startswith(API_PREFIX):
        return PASS

    # Auth pages must stay reachable without a session or they redirect to themselves.
    if path in AUTH_PAGES:
        return PASS

    if cookies.get(config.SESSION_COOKIE):
        return PASS

    if not is_protected_path(path):
        return PASS

    if cookies.get(config.GUEST_MARKER_COOKIE):
        return PASS

    if config.GATE_TRUST_REFERER if trust_referer is None else trust_referer:
        referer = headers.get("referer") or ""
        if GUEST_BOOTSTRAP_PATH in referer:
            return PASS

    return GateDecision(GateOutcome.REDIRECT, location=bootstrap_location(url))


class SessionGateMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if not is_gated_path(path):
            return await call_next(request)

        decision = decide(path, str(request.url), request.cookies, request.headers)
        if decision.outcome is GateOutcome.PONG:
            return PlainTextResponse("pong", status_code=200)
        if decision.outcome is GateOutcome.REDIRECT:
            log.debug("No session for %s; redirecting to guest bootstrap", path)
            return RedirectResponse(decision.location or GUEST_BOOTSTRAP_PATH, status_code=307)
        return await call_next(request)
