"""Allow-list checks and the first-user bootstrap."""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Set

from dotenv import set_key

from .config import ALLOWED_USERS_ENV_KEY


class AuthDecision(Enum):
    ALLOWED = "allowed"
    REJECTED = "rejected"
    STALE = "stale"
    BOOTSTRAP = "bootstrap"
    RESTART_PENDING = "restart_pending"


@dataclass
class AuthState:
    allowed_user_ids: Set[int] = field(default_factory=set)
    started_at: int = field(default_factory=lambda: int(time.time()))
    bootstrapped: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)


def authorize(
    state: AuthState,
    user_id: Optional[int],
    message_timestamp: Optional[int],
) -> AuthDecision:
    if message_timestamp is None or message_timestamp < state.started_at:
        logging.info(
            "Ignoring stale message from user_id=%s (msg time=%s, start=%s)",
            user_id,
            message_timestamp,
            state.started_at,
        )
        return AuthDecision.STALE

    with state.lock:
        if state.bootstrapped:
            return AuthDecision.RESTART_PENDING
        if state.allowed_user_ids:
            if user_id is not None and user_id in state.allowed_user_ids:
                return AuthDecision.ALLOWED
            return AuthDecision.REJECTED
        if user_id is None:
            return AuthDecision.REJECTED
        # Only the first eligible message of the run claims the empty allow-list.
        state.bootstrapped = True
        return AuthDecision.BOOTSTRAP


def release_bootstrap(state: AuthState) -> None:
    """Let the next message claim the empty allow-list again."""
    with state.lock:
        state.bootstrapped = False


def is_member(state: AuthState, user_id: Optional[int]) -> bool:
    with state.lock:
        return user_id is not None and user_id in state.allowed_user_ids


def persist_allowed_user(env_path: str, user_id: int) -> None:
    path = Path(env_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)
    set_key(str(path), ALLOWED_USERS_ENV_KEY, str(user_id), quote_mode="never")
    logging.warning("Added user %s to %s as admin.", user_id, env_path)


def build_rejection_text(user_id: Optional[int]) -> str:
    return (
        "You are not authorized to use this bot.\n\n"
        "Paste this into the chat to allow your user ID to control the machine:\n\n"
        f"Add user {user_id} to {ALLOWED_USERS_ENV_KEY}"
    )


def build_bootstrap_text(user_id: int) -> str:
    return (
        "You are the first user to message this bot.\n\n"
        f"Adding you as admin (user ID: {user_id}).\n\n"
        "The bot will restart now. Please message again in a few seconds."
    )
