from __future__ import annotations

import os
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


REPO_ROOT = _repo_root()

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

APP_DB_PATH = Path(os.getenv("CHATBOT_APP_DB_PATH", str(REPO_ROOT / "data" / "app.sqlite")))

AUTH_SECRET = os.getenv("CHATBOT_AUTH_SECRET") or None

SESSION_COOKIE = os.getenv("CHATBOT_SESSION_COOKIE", "chatbot.session_token")
SESSION_EXPIRES_IN_S = int(os.getenv("CHATBOT_SESSION_EXPIRES_IN") or 60 * 60 * 24 * 7)  # 7 days
SESSION_UPDATE_AGE_S = int(os.getenv("CHATBOT_SESSION_UPDATE_AGE") or 60 * 60 * 24)  # 1 day
COOKIE_SECURE = _env_bool("CHATBOT_COOKIE_SECURE", False)

GUEST_EMAIL_DOMAIN = os.getenv("CHATBOT_GUEST_EMAIL_DOMAIN", "anonymous.local")
GUEST_MARKER_COOKIE = os.getenv("CHATBOT_GUEST_MARKER_COOKIE", "chatbot.guest_bootstrap")
GUEST_MARKER_MAX_AGE_S = 60
GATE_TRUST_REFERER = _env_bool("CHATBOT_GATE_TRUST_REFERER", True)

LLM_BASE_URL = os.getenv("CHATBOT_LLM_BASE_URL", "https://api.openai.com").rstrip("/")
LLM_API_KEY = os.getenv("CHATBOT_LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or None
LLM_MODEL = os.getenv("CHATBOT_LLM_MODEL", "gpt-3.5-turbo")
LLM_TIMEOUT_S = float(os.getenv("CHATBOT_LLM_TIMEOUT_S") or 60.0)

GUEST_MAX_MESSAGES_PER_DAY = int(os.getenv("CHATBOT_GUEST_MAX_MESSAGES_PER_DAY") or 20)
REGULAR_MAX_MESSAGES_PER_DAY = int(os.getenv("CHATBOT_REGULAR_MAX_MESSAGES_PER_DAY") or 100)

LOG_LEVEL = os.getenv("CHATBOT_LOG_LEVEL", "INFO")
