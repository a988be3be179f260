"""HTTP surface the sync bridge posts conversation exchanges to."""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

from .backend import OpenCodeClient
from .delivery import chunk_text
from .session_registry import KeyedLocks
from .transport import TelegramClient


class RequestError(ValueError):
    pass


def build_topic_header(conversation_id: str, title: str, directory: str) -> str:
    return f"📂 {title}\n📁 {directory}\n🆔 {conversation_id}"


def build_exchange_text(user_content: str, assistant_content: str) -> str:
    return f"👤 User:\n{user_content}\n\n🤖 Assistant:\n{assistant_content}"


def _required_str(payload: Dict[str, object], key: str, allow_empty: bool = False) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise RequestError(f"{key} is required")
    return value


class SyncHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(
        self,
        address: Tuple[str, int],
        client: TelegramClient,
        backend: OpenCodeClient,
        sync_chat_id: int,
    ) -> None:
        super().__init__(address, SyncRequestHandler)
        self.client = client
        self.backend = backend
        self.sync_chat_id = sync_chat_id
        self.topics: Dict[str, int] = {}
        self.topics_lock = threading.Lock()
        self.topic_locks = KeyedLocks()

    def create_topic(self, conversation_id: str, title: str, directory: str) -> int:
        # Held across the Telegram call so one session never gets two topics.
        with self.topic_locks.get(conversation_id):
            with self.topics_lock:
                existing = self.topics.get(conversation_id)
            if existing is not None:
                return existing
            topic_id = self.client.create_forum_topic(self.sync_chat_id, title)
            try:
                self.client.send_message(
                    self.sync_chat_id,
                    build_topic_header(conversation_id, title, directory),
                    message_thread_id=topic_id,
                )
            except Exception:
                logging.exception("Failed to post header into topic %s", topic_id)
            with self.topics_lock:
                self.topics[conversation_id] = topic_id
        logging.info("Created topic %s for session %s", topic_id, conversation_id)
        return topic_id

    def forget_topic(self, conversation_id: str) -> bool:
        with self.topic_locks.get(conversation_id):
            with self.topics_lock:
                removed = self.topics.pop(conversation_id, None)
        self.topic_locks.discard(conversation_id)
        if removed is not None:
            logging.info("Forgot topic %s for session %s", removed, conversation_id)
        return removed is not None

    def post_exchange(self, topic_id: int, user_content: str, assistant_content: str) -> None:
        for chunk in chunk_text(build_exchange_text(user_content, assistant_content)):
            self.client.send_message(self.sync_chat_id, chunk, message_thread_id=topic_id)

    def active_count(self) -> int:
        with self.topics_lock:
            return len(self.topics)


class SyncRequestHandler(BaseHTTPRequestHandler):
    server: SyncHTTPServer

    def _send_json(self, status: int, payload: Dict[str, object]) -> None:
        encoded = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Cache-Control", "no-store")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)

    def _read_json(self) -> Dict[str, object]:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError as exc:
            raise RequestError("invalid Content-Length") from exc
        raw = self.rfile.read(length) if length > 0 else b""
        try:
            payload = json.loads(raw.decode("utf-8") or "null")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise RequestError("body must be valid JSON") from exc
        if not isinstance(payload, dict):
            raise RequestError("body must be a JSON object")
        return payload

    def do_GET(self):
        path = urlparse(self.path).path.rstrip("/")
        if path == "/sync/status":
            self._send_json(200, {"activeCount": self.server.active_count()})
            return
        if path == "/health":
            opencode = "connected" if self.server.backend.is_reachable() else "disconnected"
            self._send_json(200, {"status": "ok", "opencode": opencode, "telegram": True})
            return
        self._send_json(404, {"error": "not found"})

    def do_POST(self):
        path = urlparse(self.path).path.rstrip("/")
        if path not in ("/sync/session", "/sync/session/close", "/sync/message"):
            self._send_json(404, {"error": "not found"})
            return
        try:
            payload = self._read_json()
            if path == "/sync/session":
                response = self._handle_session(payload)
            elif path == "/sync/session/close":
                response = self._handle_close(payload)
            else:
                response = self._handle_message(payload)
        except RequestError as exc:
            self._send_json(400, {"error": str(exc)})
            return
        except Exception as exc:
            logging.exception("Sync request %s failed", path)
            self._send_json(502, {"error": str(exc)})
            return
        self._send_json(200, response)

    def _handle_session(self, payload: Dict[str, object]) -> Dict[str, object]:
        conversation_id = _required_str(payload, "sessionId")
        title = payload.get("title")
        if not isinstance(title, str) or not title.strip():
            title = "OpenCode Session"
        directory = payload.get("directory")
        if not isinstance(directory, str):
            directory = ""
        topic_id = self.server.create_topic(conversation_id, title, directory)
        return {"topicId": topic_id}

    def _handle_close(self, payload: Dict[str, object]) -> Dict[str, object]:
        conversation_id = _required_str(payload, "sessionId")
        return {"ok": self.server.forget_topic(conversation_id)}

    def _handle_message(self, payload: Dict[str, object]) -> Dict[str, object]:
        _required_str(payload, "sessionId")
        topic_id = payload.get("topicId")
        if not isinstance(topic_id, int) or isinstance(topic_id, bool):
            raise RequestError("topicId is required")
        user_content = _required_str(payload, "userContent", allow_empty=True)
        assistant_content = _required_str(payload, "assistantContent", allow_empty=True)
        self.server.post_exchange(topic_id, user_content, assistant_content)
        return {"ok": True}

    def log_message(self, format, *args):
        logging.debug("sync-http %s - %s", self.address_string(), format % args)


def build_sync_server(
    host: str,
    port: int,
    client: TelegramClient,
    backend: OpenCodeClient,
    sync_chat_id: int,
) -> SyncHTTPServer:
    return SyncHTTPServer((host, port), client, backend, sync_chat_id)


def start_sync_server(server: SyncHTTPServer) -> threading.Thread:
    worker = threading.Thread(target=server.serve_forever, name="sync-http", daemon=True)
    worker.start()
    host, port = server.server_address[:2]
    logging.info("Sync HTTP server listening on http://%s:%s", host, port)
    return worker


def stop_sync_server(server: Optional[SyncHTTPServer]) -> None:
    if server is None:
        return
    server.shutdown()
    server.server_close()
