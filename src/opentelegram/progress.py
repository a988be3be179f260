import logging
import threading
import time
from typing import Callable, Optional

from .transport import TELEGRAM_LIMIT, TelegramClient

PROGRESS_EDIT_MIN_INTERVAL_SECONDS = 2.0


def trim_output(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    marker = "\n\n[output truncated]"
    return text[: max(0, limit - len(marker))] + marker


class ProgressMessage:
    """A transient status message that is edited in place and deleted at the end.

    Every transport failure is logged and swallowed: a missing or stale status
    message must never break the request it describes.
    """

    def __init__(
        self,
        client: TelegramClient,
        chat_id: int,
        min_interval_seconds: float = PROGRESS_EDIT_MIN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.chat_id = chat_id
        self.min_interval_seconds = min_interval_seconds
        self.clock = clock
        self.message_id: Optional[int] = None
        self.last_edit_at = 0.0
        self.last_rendered_text = ""
        self._lock = threading.Lock()

    def start(self, text: str) -> Optional[int]:
        text = trim_output(text, TELEGRAM_LIMIT)
        try:
            self.message_id = self.client.send_message_get_id(self.chat_id, text)
        except Exception:
            logging.debug("Failed to send progress message for chat_id=%s", self.chat_id, exc_info=True)
            self.message_id = None
        with self._lock:
            self.last_rendered_text = text
            self.last_edit_at = self.clock()
        return self.message_id

    def update(self, text: str, force: bool = False) -> bool:
        message_id = self.message_id
        if message_id is None:
            return False
        text = trim_output(text, TELEGRAM_LIMIT)
        now = self.clock()
        with self._lock:
            if text == self.last_rendered_text:
                return False
            if not force and now - self.last_edit_at < self.min_interval_seconds:
                return False
            self.last_edit_at = now
            self.last_rendered_text = text
        try:
            self.client.edit_message(self.chat_id, message_id, text)
        except Exception as exc:
            if "message is not modified" not in str(exc).lower():
                logging.debug("Failed to edit progress message for chat_id=%s: %s", self.chat_id, exc)
            return False
        return True

    def delete(self) -> None:
        message_id = self.message_id
        self.message_id = None
        if message_id is None:
            return
        try:
            self.client.delete_message(self.chat_id, message_id)
        except Exception:
            logging.debug("Failed to delete progress message for chat_id=%s", self.chat_id, exc_info=True)
