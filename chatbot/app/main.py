from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any

from fastapi import Depends, FastAPI, Form, HTTPException, Query, Request
from fastapi.responses import RedirectResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from . import app_db, auth, config, llm
from .auth import AuthError, AuthSession, require_session
from .entitlements import entitlements_for
from .gate import SessionGateMiddleware, bootstrap_location
from .guest import bootstrap_guest
from .history import GROUP_LABELS, GROUP_ORDER, group_chats_by_date
from .logging_utils import get_logger
from .models import CHAT_MODELS, resolve_chat_model
from .rendering import render_markdown
from .schemas import (
    ChatInfo,
    ChatModelInfo,
    ChatRequest,
    DeletedChatResponse,
    DocumentInfo,
    DocumentRequest,
    HistoryResponse,
    MessageInfo,
    OkResponse,
    VisibilityRequest,
    VoteInfo,
    VoteRequest,
)

log = get_logger(__name__)

MODEL_COOKIE = "chat-model"
SIDEBAR_COOKIE = "sidebar:state"
SIDEBAR_HISTORY_LIMIT = 20

app = FastAPI(title="chatbot")
app.add_middleware(SessionGateMiddleware)
app.mount("/static", StaticFiles(directory=str(config.TEMPLATES_DIR.parent / "static")), name="static")

templates = Jinja2Templates(directory=str(config.TEMPLATES_DIR))
templates.env.filters["markdown"] = render_markdown


@app.on_event("startup")
def _startup() -> None:
    app_db.init_db()


# -- health / auth endpoints ---------------------------------------------


@app.get("/health")
def health() -> dict[str, Any]:
    try:
        db_ok = app_db.ping()
    except Exception:
        log.exception("Database health check failed")
        db_ok = False
    return {"status": "ok" if db_ok else "degraded", "db_ready": db_ok, "llm_base_url": config.LLM_BASE_URL}


@app.get("/api/auth/guest")
async def auth_guest(request: Request) -> RedirectResponse:
    return await bootstrap_guest(request)


@app.get("/api/auth/session")
def auth_session(request: Request) -> dict[str, Any] | None:
    session = auth.get_session(request.headers)
    return session.to_dict() if session else None


# -- pages ---------------------------------------------------------------


def _root_url(request: Request) -> str:
    host = request.headers.get("host") or "localhost:8000"
    protocol = request.headers.get("x-forwarded-proto") or request.url.scheme
    return f"{protocol}://{host}/"


def _user_label(session: AuthSession | None) -> str | None:
    if session is None:
        return None
    return "Guest" if session.is_guest else (session.user.email or "")


def _sidebar_groups(session: AuthSession | None) -> list[dict[str, Any]]:
    if session is None:
        return []
    page = app_db.get_chats_by_user_id(session.user.id, limit=SIDEBAR_HISTORY_LIMIT)
    grouped = group_chats_by_date(page["chats"])
    return [{"label": GROUP_LABELS[k], "chats": grouped[k]} for k in GROUP_ORDER if grouped[k]]


def _page_context(request: Request, session: AuthSession | None, **extra: Any) -> dict[str, Any]:
    ctx: dict[str, Any] = {
        "session": session,
        "user_label": _user_label(session),
        "is_guest": bool(session and session.is_guest),
        "history_groups": _sidebar_groups(session),
        "sidebar_open": request.cookies.get(SIDEBAR_COOKIE) == "true",
        "chat_models": CHAT_MODELS,
        "selected_model": resolve_chat_model(request.cookies.get(MODEL_COOKIE)),
    }
    ctx.update(extra)
    return ctx


@app.get("/")
def chat_new(request: Request):
    session = auth.get_session(request.headers)
    if session is None:
        return RedirectResponse(bootstrap_location(_root_url(request)), status_code=307)

    return templates.TemplateResponse(
        request,
        "chat.html",
        _page_context(
            request,
            session,
            chat_id=str(uuid.uuid4()),
            messages=[],
            visibility="private",
            is_readonly=False,
        ),
    )


@app.get("/chat/{chat_id}")
def chat_page(chat_id: str, request: Request):
    chat = app_db.get_chat_by_id(chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")

    session = auth.get_session(request.headers)
    if chat["visibility"] == "private":
        if session is None:
            return RedirectResponse(bootstrap_location(str(request.url)), status_code=307)
        if session.user.id != chat["user_id"]:
            raise HTTPException(status_code=404, detail="Chat not found")

    is_owner = session is not None and session.user.id == chat["user_id"]
    return templates.TemplateResponse(
        request,
        "chat.html",
        _page_context(
            request,
            session,
            chat_id=chat_id,
            chat=chat,
            messages=app_db.get_messages_by_chat_id(chat_id),
            visibility=chat["visibility"],
            is_readonly=not is_owner,
        ),
    )


def _valid_credentials(email: str, password: str) -> bool:
    email = str(email or "").strip()
    return "@" in email and len(email) <= 254 and len(str(password or "")) >= 6


def _auth_page(request: Request, page: str, *, status: str = "idle", email: str = "", status_code: int = 200):
    return templates.TemplateResponse(
        request,
        "auth.html",
        {"page": page, "is_login": page == "login", "status": status, "email": email},
        status_code=status_code,
    )


def _signed_in_redirect(request: Request, token: str) -> RedirectResponse:
    # A guest who signs in or registers leaves their anonymous session behind.
    auth.sign_out(request.headers)
    resp = RedirectResponse("/", status_code=303)
    auth.set_session_cookie(resp, token)
    resp.delete_cookie(config.GUEST_MARKER_COOKIE, path="/")
    return resp


@app.get("/login")
def login_page(request: Request):
    return _auth_page(request, "login")


@app.post("/login")
def login_submit(request: Request, email: str = Form(""), password: str = Form("")):
    if not _valid_credentials(email, password):
        return _auth_page(request, "login", status="invalid_data", email=email, status_code=400)
    try:
        _, token = auth.sign_in_email(email=email, password=password)
    except AuthError:
        return _auth_page(request, "login", status="failed", email=email, status_code=401)
    return _signed_in_redirect(request, token)


@app.get("/register")
def register_page(request: Request):
    return _auth_page(request, "register")


@app.post("/register")
def register_submit(request: Request, email: str = Form(""), password: str = Form("")):
    if not _valid_credentials(email, password):
        return _auth_page(request, "register", status="invalid_data", email=email, status_code=400)
    try:
        _, token = auth.sign_up_email(email=email, password=password)
    except AuthError as e:
        if e.code == "user_exists":
            return _auth_page(request, "register", status="user_exists", email=email, status_code=409)
        log.exception("Registration failed")
        return _auth_page(request, "register", status="failed", email=email, status_code=500)
    return _signed_in_redirect(request, token)


@app.post("/logout")
def logout(request: Request) -> RedirectResponse:
    auth.sign_out(request.headers)
    resp = RedirectResponse("/login", status_code=303)
    auth.clear_session_cookie(resp)
    return resp


# -- chat API ------------------------------------------------------------


def _owned_chat(chat_id: str, session: AuthSession) -> dict[str, Any]:
    chat = app_db.get_chat_by_id(chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    if chat["user_id"] != session.user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return chat


def _sse(event: str, data: Any) -> bytes:
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")


@app.post("/api/chat")
async def chat_send(req: ChatRequest, session: AuthSession = Depends(require_session)) -> StreamingResponse:
    limits = entitlements_for(session.user.type)
    sent = app_db.get_message_count_by_user_id(session.user.id, difference_in_hours=24)
    if sent >= limits.max_messages_per_day:
        raise HTTPException(status_code=429, detail="You have exceeded your maximum number of messages for the day.")

    chat = app_db.get_chat_by_id(req.id)
    if chat is not None and chat["user_id"] != session.user.id:
        raise HTTPException(status_code=403, detail="Forbidden")

    history = app_db.get_messages_by_chat_id(req.id, limit=40) if chat else []
    messages = llm.build_messages(history + [{"role": "user", "content": req.message}])
    chat_model = resolve_chat_model(req.selected_chat_model)

    stream = llm.chat_completion_stream(messages, chat_model=chat_model)
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        first = ""
    except llm.LLMError as e:
        log.error("Completion failed for chat %s: %s", req.id, e)
        raise HTTPException(status_code=502, detail=str(e)) from e

    # Nothing is stored until the completion service has answered.
    if chat is None:
        app_db.save_chat(
            chat_id=req.id,
            user_id=session.user.id,
            title=req.message.strip()[:80] or "New chat",
            visibility=req.visibility,
        )
    user_message = app_db.save_message(chat_id=req.id, role="user", content=req.message)

    async def gen():
        parts: list[str] = []
        yield _sse("start", {"chatId": req.id, "userMessageId": user_message["id"]})
        if first:
            parts.append(first)
            yield _sse("delta", {"content": first})
        try:
            async for delta in stream:
                parts.append(delta)
                yield _sse("delta", {"content": delta})
        except llm.LLMError as e:
            log.error("Completion stream failed for chat %s: %s", req.id, e)
            yield _sse("error", {"error": "Completion failed", "detail": str(e)})
            return
        assistant = app_db.save_message(chat_id=req.id, role="assistant", content="".join(parts))
        yield _sse("done", {"messageId": assistant["id"]})

    return StreamingResponse(gen(), media_type="text/event-stream")


@app.delete("/api/chat", response_model=DeletedChatResponse)
def chat_delete(
    chat_id: str | None = Query(default=None, alias="id"),
    session: AuthSession = Depends(require_session),
) -> DeletedChatResponse:
    if not chat_id:
        raise HTTPException(status_code=400, detail="Parameter id is required")
    chat = _owned_chat(chat_id, session)
    app_db.delete_chat_by_id(chat_id)
    return DeletedChatResponse(id=chat["id"], title=chat["title"])


@app.patch("/api/chat/{chat_id}/visibility", response_model=OkResponse)
def chat_visibility(chat_id: str, req: VisibilityRequest, session: AuthSession = Depends(require_session)) -> OkResponse:
    _owned_chat(chat_id, session)
    app_db.update_chat_visibility(chat_id, req.visibility)
    return OkResponse()


@app.get("/api/chat/{chat_id}/messages", response_model=list[MessageInfo])
def chat_messages(chat_id: str, session: AuthSession = Depends(require_session)) -> list[dict[str, Any]]:
    _owned_chat(chat_id, session)
    return app_db.get_messages_by_chat_id(chat_id)


@app.get("/api/history", response_model=HistoryResponse)
def chat_history(
    limit: int = Query(default=10, ge=1, le=100),
    starting_after: str | None = None,
    ending_before: str | None = None,
    session: AuthSession = Depends(require_session),
) -> HistoryResponse:
    if starting_after and ending_before:
        raise HTTPException(status_code=400, detail="Only one of starting_after or ending_before can be provided.")
    try:
        page = app_db.get_chats_by_user_id(
            session.user.id,
            limit=limit,
            starting_after=starting_after,
            ending_before=ending_before,
        )
    except KeyError as e:
        raise HTTPException(status_code=404, detail="Cursor chat not found") from e
    return HistoryResponse(chats=[ChatInfo(**c) for c in page["chats"]], has_more=page["has_more"])


@app.get("/api/vote", response_model=list[VoteInfo])
def votes_get(
    chat_id: str | None = Query(default=None, alias="chatId"),
    session: AuthSession = Depends(require_session),
) -> list[VoteInfo]:
    if not chat_id:
        raise HTTPException(status_code=400, detail="Parameter chatId is required")
    _owned_chat(chat_id, session)
    return [VoteInfo(**v) for v in app_db.get_votes_by_chat_id(chat_id)]


@app.patch("/api/vote", response_model=OkResponse)
def votes_patch(req: VoteRequest, session: AuthSession = Depends(require_session)) -> OkResponse:
    _owned_chat(req.chat_id, session)
    if not any(m["id"] == req.message_id for m in app_db.get_messages_by_chat_id(req.chat_id)):
        raise HTTPException(status_code=404, detail="Message not found")
    app_db.vote_message(chat_id=req.chat_id, message_id=req.message_id, vote_type=req.type)
    return OkResponse()


# -- documents -----------------------------------------------------------


@app.get("/api/document", response_model=list[DocumentInfo])
def documents_get(
    document_id: str | None = Query(default=None, alias="id"),
    session: AuthSession = Depends(require_session),
) -> list[dict[str, Any]]:
    if not document_id:
        raise HTTPException(status_code=400, detail="Parameter id is missing")
    documents = app_db.get_documents_by_id(document_id)
    if not documents:
        raise HTTPException(status_code=404, detail="Document not found")
    if documents[0]["user_id"] != session.user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return documents


@app.post("/api/document", response_model=DocumentInfo)
def documents_save(
    req: DocumentRequest,
    document_id: str | None = Query(default=None, alias="id"),
    session: AuthSession = Depends(require_session),
) -> dict[str, Any]:
    if not document_id:
        raise HTTPException(status_code=400, detail="Parameter id is missing")
    existing = app_db.get_document_by_id(document_id)
    if existing and existing["user_id"] != session.user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return app_db.save_document(
        document_id=document_id,
        title=req.title,
        content=req.content,
        kind=req.kind,
        user_id=session.user.id,
    )


@app.delete("/api/document", response_model=list[DocumentInfo])
def documents_delete(
    document_id: str | None = Query(default=None, alias="id"),
    timestamp: str | None = None,
    session: AuthSession = Depends(require_session),
) -> list[dict[str, Any]]:
    if not document_id:
        raise HTTPException(status_code=400, detail="Parameter id is missing")
    if not timestamp:
        raise HTTPException(status_code=400, detail="Parameter timestamp is missing")
    try:
        cutoff = datetime.fromisoformat(timestamp)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Parameter timestamp is not an ISO timestamp") from e

    document = app_db.get_document_by_id(document_id)
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    if document["user_id"] != session.user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return app_db.delete_documents_by_id_after_timestamp(document_id, cutoff)


@app.get("/api/models", response_model=list[ChatModelInfo])
def models_list() -> list[ChatModelInfo]:
    return [ChatModelInfo(id=m.id, name=m.name, description=m.description) for m in CHAT_MODELS]
