from __future__ import annotations

from dataclasses import dataclass

from . import config

DEFAULT_CHAT_MODEL = "chat-model"


@dataclass(frozen=True)
class ChatModel:
    id: str
    name: str
    description: str


CHAT_MODELS: list[ChatModel] = [
    ChatModel(
        id="chat-model",
        name="GPT-3.5-turbo",
        description="Most capable GPT-3.5-turbo model for complex tasks",
    ),
]


def is_known_model(model_id: str | None) -> bool:
    return any(m.id == model_id for m in CHAT_MODELS)


def resolve_chat_model(model_id: str | None) -> str:
    return model_id if model_id and is_known_model(model_id) else DEFAULT_CHAT_MODEL


def provider_model_for(model_id: str | None) -> str:
    provider_models = {"chat-model": config.LLM_MODEL}
    return provider_models.get(resolve_chat_model(model_id), config.LLM_MODEL)
