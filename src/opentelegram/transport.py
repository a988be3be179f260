import json
from typing import Dict, List, Optional
from urllib.error import HTTPError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from .config import TELEGRAM_LIMIT, Config

__all__ = ["TELEGRAM_LIMIT", "TelegramAPIError", "TelegramClient"]


class TelegramAPIError(RuntimeError):
    """Raised when the Bot API answers ok=false or an HTTP error."""


class TelegramClient:
    def __init__(self, config: Config) -> None:
        self.config = config

    def _request(self, method: str, payload: Dict[str, object]) -> Dict[str, object]:
        endpoint = f"{self.config.api_base}/bot{self.config.token}/{method}"
        data = urlencode(payload).encode("utf-8")
        request = Request(endpoint, data=data, method="POST")
        try:
            with urlopen(request, timeout=self.config.poll_timeout_seconds + 10) as response:
                body = response.read().decode("utf-8")
        except HTTPError as exc:
            # The Bot API reports failures as JSON bodies on 4xx responses.
            body = exc.read().decode("utf-8", errors="replace")
            if not body.strip().startswith("{"):
                raise TelegramAPIError(f"Telegram API {method} failed: HTTP {exc.code}") from exc
        decoded = json.loads(body)
        if not isinstance(decoded, dict) or not decoded.get("ok"):
            description = "unknown Telegram error"
            if isinstance(decoded, dict):
                description = decoded.get("description", description)
            raise TelegramAPIError(f"Telegram API {method} failed: {description}")
        return decoded

    def get_updates(
        self,
        offset: int,
        timeout_seconds: Optional[int] = None,
    ) -> List[Dict[str, object]]:
        timeout = self.config.poll_timeout_seconds if timeout_seconds is None else timeout_seconds
        payload: Dict[str, object] = {
            "offset": offset,
            "timeout": timeout,
            "allowed_updates": json.dumps(["message", "callback_query"]),
        }
        response = self._request("getUpdates", payload)
        result = response.get("result", [])
        if not isinstance(result, list):
            raise TelegramAPIError("Invalid getUpdates response: result is not a list")
        return result

    def send_message_get_id(
        self,
        chat_id: int,
        text: str,
        reply_markup: Optional[Dict[str, object]] = None,
        message_thread_id: Optional[int] = None,
    ) -> Optional[int]:
        payload: Dict[str, object] = {
            "chat_id": str(chat_id),
            "text": text,
            "disable_web_page_preview": "true",
        }
        if reply_markup is not None:
            payload["reply_markup"] = json.dumps(reply_markup)
        if message_thread_id is not None:
            payload["message_thread_id"] = str(message_thread_id)
        response = self._request("sendMessage", payload)
        result = response.get("result")
        if isinstance(result, dict) and isinstance(result.get("message_id"), int):
            return result["message_id"]
        return None

    def send_message(
        self,
        chat_id: int,
        text: str,
        reply_markup: Optional[Dict[str, object]] = None,
        message_thread_id: Optional[int] = None,
    ) -> None:
        self.send_message_get_id(
            chat_id,
            text,
            reply_markup=reply_markup,
            message_thread_id=message_thread_id,
        )

    def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        reply_markup: Optional[Dict[str, object]] = None,
    ) -> None:
        payload: Dict[str, object] = {
            "chat_id": str(chat_id),
            "message_id": str(message_id),
            "text": text,
            "disable_web_page_preview": "true",
        }
        if reply_markup is not None:
            payload["reply_markup"] = json.dumps(reply_markup)
        self._request("editMessageText", payload)

    def delete_message(self, chat_id: int, message_id: int) -> None:
        self._request(
            "deleteMessage",
            {"chat_id": str(chat_id), "message_id": str(message_id)},
        )

    def answer_callback_query(
        self,
        callback_query_id: str,
        text: Optional[str] = None,
        show_alert: bool = False,
    ) -> None:
        payload: Dict[str, object] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        if show_alert:
            payload["show_alert"] = "true"
        self._request("answerCallbackQuery", payload)

    def send_chat_action(self, chat_id: int, action: str = "typing") -> None:
        self._request("sendChatAction", {"chat_id": str(chat_id), "action": action})

    def create_forum_topic(self, chat_id: int, name: str) -> int:
        response = self._request(
            "createForumTopic",
            {"chat_id": str(chat_id), "name": name[:128]},
        )
        result = response.get("result")
        if not isinstance(result, dict) or not isinstance(result.get("message_thread_id"), int):
            raise TelegramAPIError("Invalid createForumTopic response: missing message_thread_id")
        return result["message_thread_id"]

    def get_file(self, file_id: str) -> Dict[str, object]:
        response = self._request("getFile", {"file_id": file_id})
        result = response.get("result")
        if not isinstance(result, dict):
            raise TelegramAPIError("Invalid getFile response: result is not an object")
        return result

    def download_file_to_path(
        self,
        file_path: str,
        target_path: str,
        max_bytes: int,
        size_label: str = "File",
    ) -> None:
        cleaned = file_path.lstrip("/")
        if not cleaned:
            raise TelegramAPIError("Invalid Telegram file_path")
        encoded = quote(cleaned, safe="/")
        endpoint = f"{self.config.api_base}/file/bot{self.config.token}/{encoded}"
        request = Request(endpoint, method="GET")

        total = 0
        with (
            urlopen(request, timeout=self.config.poll_timeout_seconds + 10) as response,
            open(target_path, "wb") as handle,
        ):
            while True:
                chunk = response.read(64 * 1024)
                if not chunk:
                    break
                total += len(chunk)
                if total > max_bytes:
                    raise ValueError(
                        f"{size_label} too large (> {max_bytes} bytes)."
                    )
                handle.write(chunk)
