from __future__ import annotations

from dataclasses import dataclass

from . import config
from .auth import UserType


@dataclass(frozen=True)
class Entitlements:
    max_messages_per_day: int


def entitlements_for(user_type: UserType) -> Entitlements:
    if user_type == "guest":
        return Entitlements(max_messages_per_day=config.GUEST_MAX_MESSAGES_PER_DAY)
    return Entitlements(max_messages_per_day=config.REGULAR_MAX_MESSAGES_PER_DAY)
