import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional

from .backend import ModelSelector, OpenCodeClient

CALLBACK_DATA_LIMIT_BYTES = 64
MODEL_CALLBACK_PREFIX = "m:"
MODEL_HASH_CALLBACK_PREFIX = "mh:"


class KeyedLocks:
    """One lock per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def get(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def discard(self, key: Hashable) -> None:
        with self._guard:
            self._locks.pop(key, None)


@dataclass(frozen=True)
class ModelCatalogEntry:
    index: int
    id: str
    display_name: str


class SessionRegistry:
    def __init__(self, backend: OpenCodeClient, default_model: str) -> None:
        self.backend = backend
        self.default_model = ModelSelector.parse(default_model)
        self._lock = threading.Lock()
        self._chat_locks = KeyedLocks()
        self._sessions: Dict[int, str] = {}
        self._models: Dict[int, ModelSelector] = {}

    def get_or_create_session(self, chat_id: int) -> str:
        # The per-chat lock spans the backend call so one chat never ends up
        # with two conversations; other chats are not blocked by it.
        with self._chat_locks.get(chat_id):
            with self._lock:
                existing = self._sessions.get(chat_id)
            if existing:
                return existing
            session_id = self.backend.create_session()
            with self._lock:
                self._sessions[chat_id] = session_id
            logging.info("Created OpenCode session %s for chat_id=%s", session_id, chat_id)
            return session_id

    def start_new_session(self, chat_id: int) -> str:
        with self._chat_locks.get(chat_id):
            session_id = self.backend.create_session()
            with self._lock:
                self._sessions[chat_id] = session_id
            logging.info("Replaced OpenCode session for chat_id=%s with %s", chat_id, session_id)
            return session_id

    def get_session(self, chat_id: int) -> Optional[str]:
        with self._lock:
            return self._sessions.get(chat_id)

    def has_session(self, chat_id: int) -> bool:
        with self._lock:
            return chat_id in self._sessions

    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get_model(self, chat_id: int) -> ModelSelector:
        with self._lock:
            return self._models.get(chat_id, self.default_model)

    def set_model(self, chat_id: int, selector: ModelSelector) -> None:
        with self._lock:
            self._models[chat_id] = selector


def fetch_model_catalog(backend: OpenCodeClient) -> List[ModelCatalogEntry]:
    entries: List[ModelCatalogEntry] = []
    for provider in backend.list_providers():
        provider_id = provider.get("id")
        models = provider.get("models")
        if not isinstance(provider_id, str) or not isinstance(models, dict):
            continue
        provider_name = provider.get("name")
        if not isinstance(provider_name, str) or not provider_name.strip():
            provider_name = provider_id
        for model_id in models:
            entries.append(
                ModelCatalogEntry(
                    index=len(entries),
                    id=f"{provider_id}/{model_id}",
                    display_name=f"{provider_name} {model_id}",
                )
            )
    logging.info("Loaded %s models from OpenCode server", len(entries))
    return entries


def find_model(catalog: List[ModelCatalogEntry], query: str) -> Optional[ModelCatalogEntry]:
    needle = query.strip()
    if not needle:
        return None
    for entry in catalog:
        if entry.id == needle:
            return entry
    lowered = needle.lower()
    for entry in catalog:
        if lowered in entry.display_name.lower():
            return entry
    return None


def _model_id_digest(model_id: str) -> str:
    return hashlib.sha1(model_id.encode("utf-8")).hexdigest()[:20]


def encode_model_callback(model_id: str) -> str:
    data = f"{MODEL_CALLBACK_PREFIX}{model_id}"
    if len(data.encode("utf-8")) <= CALLBACK_DATA_LIMIT_BYTES:
        return data
    return f"{MODEL_HASH_CALLBACK_PREFIX}{_model_id_digest(model_id)}"


def resolve_model_callback(
    catalog: List[ModelCatalogEntry],
    data: str,
) -> Optional[ModelCatalogEntry]:
    if data.startswith(MODEL_HASH_CALLBACK_PREFIX):
        digest = data[len(MODEL_HASH_CALLBACK_PREFIX):]
        for entry in catalog:
            if _model_id_digest(entry.id) == digest:
                return entry
        return None
    if data.startswith(MODEL_CALLBACK_PREFIX):
        model_id = data[len(MODEL_CALLBACK_PREFIX):]
        for entry in catalog:
            if entry.id == model_id:
                return entry
    return None
