from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .models import DEFAULT_CHAT_MODEL

Visibility = Literal["private", "public"]
DocumentKind = Literal["text", "code", "sheet", "image"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChatRequest(_CamelModel):
    id: str = Field(min_length=1)
    message: str = Field(min_length=1, max_length=2000)
    selected_chat_model: str = Field(default=DEFAULT_CHAT_MODEL, alias="selectedChatModel")
    visibility: Visibility = Field(default="private", alias="selectedVisibilityType")


class ChatInfo(BaseModel):
    id: str
    title: str
    visibility: Visibility
    created_at: str


class VisibilityRequest(BaseModel):
    visibility: Visibility


class HistoryResponse(_CamelModel):
    chats: list[ChatInfo]
    has_more: bool = Field(serialization_alias="hasMore")


class MessageInfo(BaseModel):
    id: str
    chat_id: str
    role: Literal["system", "user", "assistant"]
    content: str
    created_at: str


class DeletedChatResponse(BaseModel):
    id: str
    title: str
    deleted: bool = True


class VoteRequest(_CamelModel):
    chat_id: str = Field(alias="chatId", min_length=1)
    message_id: str = Field(alias="messageId", min_length=1)
    type: Literal["up", "down"]


class VoteInfo(_CamelModel):
    chat_id: str = Field(serialization_alias="chatId")
    message_id: str = Field(serialization_alias="messageId")
    is_upvoted: bool = Field(serialization_alias="isUpvoted")


class DocumentRequest(BaseModel):
    title: str = Field(min_length=1)
    content: str | None = None
    kind: DocumentKind = "text"


class DocumentInfo(BaseModel):
    id: str
    created_at: str
    title: str
    content: str | None = None
    kind: DocumentKind
    user_id: str


class ChatModelInfo(BaseModel):
    id: str
    name: str
    description: str


class OkResponse(BaseModel):
    ok: bool = True
