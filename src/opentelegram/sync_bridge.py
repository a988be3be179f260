"""Mirror OpenCode conversations into Telegram forum topics.

Driven by backend lifecycle events rather than chat messages:

- ``session.created`` registers the conversation without any network call.
- ``session.idle`` posts the newest (user, assistant) exchange, creating the
  topic on first use and skipping exchanges identical to the last one posted.
- ``session.deleted`` forgets the conversation and releases its topic.
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.request import Request, urlopen

from .backend import OpenCodeClient
from .session_registry import KeyedLocks

DEFAULT_TOPIC_TITLE = "OpenCode Session"
TOPIC_TITLE_CHARS = 50

Fingerprint = Tuple[str, str]


@dataclass
class SyncEntry:
    conversation_id: str
    topic_id: Optional[int] = None
    last_posted: Optional[Fingerprint] = None


class SyncClient:
    """Posts to the sync HTTP surface (see sync_server)."""

    def __init__(self, base_url: str, timeout_seconds: int = 30) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def _post(self, path: str, payload: Dict[str, object]) -> Optional[Dict[str, object]]:
        req = Request(
            f"{self.base_url}{path}",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urlopen(req, timeout=self.timeout_seconds) as response:
                decoded = json.loads(response.read().decode("utf-8"))
        except Exception:
            logging.exception("POST %s failed", path)
            return None
        return decoded if isinstance(decoded, dict) else None

    def create_topic(self, conversation_id: str, title: str, directory: str) -> Optional[int]:
        result = self._post(
            "/sync/session",
            {"sessionId": conversation_id, "title": title, "directory": directory},
        )
        topic_id = result.get("topicId") if result else None
        return topic_id if isinstance(topic_id, int) else None

    def post_exchange(
        self,
        conversation_id: str,
        topic_id: int,
        user_content: str,
        assistant_content: str,
        message_id: Optional[str],
    ) -> bool:
        result = self._post(
            "/sync/message",
            {
                "sessionId": conversation_id,
                "topicId": topic_id,
                "userContent": user_content,
                "assistantContent": assistant_content,
                "messageId": message_id,
            },
        )
        return bool(result and result.get("ok"))

    def close_session(self, conversation_id: str) -> bool:
        result = self._post("/sync/session/close", {"sessionId": conversation_id})
        return bool(result and result.get("ok"))


def event_conversation_id(event: Dict[str, object]) -> Optional[str]:
    properties = event.get("properties")
    if not isinstance(properties, dict):
        return None
    for key in ("sessionID", "sessionId"):
        value = properties.get(key)
        if isinstance(value, str) and value:
            return value
    for key in ("info", "session"):
        nested = properties.get(key)
        if isinstance(nested, dict) and isinstance(nested.get("id"), str) and nested["id"]:
            return nested["id"]
    return None


def message_role(message: Dict[str, object]) -> Optional[str]:
    info = message.get("info")
    if isinstance(info, dict) and isinstance(info.get("role"), str):
        return info["role"]
    role = message.get("role")
    return role if isinstance(role, str) else None


def message_id(message: Dict[str, object]) -> Optional[str]:
    info = message.get("info")
    if isinstance(info, dict) and isinstance(info.get("id"), str):
        return info["id"]
    value = message.get("id")
    return value if isinstance(value, str) else None


def message_text(message: Dict[str, object]) -> str:
    parts = message.get("parts")
    if not isinstance(parts, list):
        return ""
    texts = [
        part.get("text") or ""
        for part in parts
        if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), (str, type(None)))
    ]
    return "".join(texts).strip()


def find_latest_exchange(
    messages: List[Dict[str, object]],
) -> Optional[Tuple[Dict[str, object], Dict[str, object]]]:
    assistant: Optional[Dict[str, object]] = None
    for message in reversed(messages):
        role = message_role(message)
        if role == "assistant" and assistant is None:
            assistant = message
        elif role == "user" and assistant is not None:
            return message, assistant
    return None


class SyncBridge:
    def __init__(self, backend: OpenCodeClient, sync_client: SyncClient, directory: str) -> None:
        self.backend = backend
        self.sync_client = sync_client
        self.directory = directory
        self._lock = threading.Lock()
        self._entry_locks = KeyedLocks()
        self._entries: Dict[str, SyncEntry] = {}

    def get_entry(self, conversation_id: str) -> Optional[SyncEntry]:
        with self._lock:
            return self._entries.get(conversation_id)

    def active_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def handle_event(self, event: Dict[str, object]) -> None:
        event_type = event.get("type")
        logging.debug("Sync event received: %s", event_type)
        if event_type not in ("session.created", "session.idle", "session.deleted"):
            return
        conversation_id = event_conversation_id(event)
        if not conversation_id:
            return

        with self._entry_locks.get(conversation_id):
            if event_type == "session.created":
                self._on_created(conversation_id)
            elif event_type == "session.idle":
                self._on_idle(conversation_id)
            else:
                self._on_deleted(conversation_id)
        if event_type == "session.deleted":
            self._entry_locks.discard(conversation_id)

    def _on_created(self, conversation_id: str) -> None:
        logging.info("Session created: %s", conversation_id)
        with self._lock:
            self._entries[conversation_id] = SyncEntry(conversation_id=conversation_id)

    def _on_deleted(self, conversation_id: str) -> None:
        logging.info("Session deleted: %s", conversation_id)
        with self._lock:
            entry = self._entries.pop(conversation_id, None)
        if entry is not None and entry.topic_id is not None:
            self.sync_client.close_session(conversation_id)

    def _on_idle(self, conversation_id: str) -> None:
        logging.info("Session idle: %s", conversation_id)
        try:
            messages = self.backend.list_messages(conversation_id)
        except Exception:
            logging.exception("Failed to list messages for session %s", conversation_id)
            return
        exchange = find_latest_exchange(messages)
        if exchange is None:
            return
        user_message, assistant_message = exchange
        fingerprint = (message_text(user_message), message_text(assistant_message))

        with self._lock:
            entry = self._entries.get(conversation_id)
            if entry is None:
                # Sessions that predate this process never saw a created event.
                entry = SyncEntry(conversation_id=conversation_id)
                self._entries[conversation_id] = entry
        if entry.last_posted == fingerprint:
            logging.debug("Skipping duplicate exchange for session %s", conversation_id)
            return

        if entry.topic_id is None:
            title = fingerprint[0][:TOPIC_TITLE_CHARS] or DEFAULT_TOPIC_TITLE
            logging.info("Creating topic: %r", title)
            topic_id = self.sync_client.create_topic(conversation_id, title, self.directory)
            if topic_id is None:
                return
            entry.topic_id = topic_id

        if self.sync_client.post_exchange(
            conversation_id,
            entry.topic_id,
            fingerprint[0],
            fingerprint[1],
            message_id(assistant_message),
        ):
            entry.last_posted = fingerprint


def run_event_listener(
    backend: OpenCodeClient,
    bridge: SyncBridge,
    stop_event: threading.Event,
    retry_sleep_seconds: float,
) -> None:
    while not stop_event.is_set():
        try:
            for event in backend.iter_events():
                if stop_event.is_set():
                    return
                try:
                    bridge.handle_event(event)
                except Exception:
                    logging.exception("Sync event handler failure for %s", event.get("type"))
        except Exception:
            logging.exception("OpenCode event stream error")
        stop_event.wait(retry_sleep_seconds)
