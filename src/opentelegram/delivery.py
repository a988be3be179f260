import logging
from typing import Dict, List

from .transport import TelegramClient

MESSAGE_CHUNK_CHARS = 4000


def _join_text_parts(items: List[object]) -> str:
    texts: List[str] = []
    for item in items:
        if not isinstance(item, dict) or item.get("type") != "text":
            continue
        text = item.get("text")
        if isinstance(text, str):
            texts.append(text)
    return "\n".join(texts)


def extract_response_text(payload: object) -> str:
    if not isinstance(payload, dict):
        return ""
    parts = payload.get("parts")
    if isinstance(parts, list):
        return _join_text_parts(parts)
    content = payload.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return _join_text_parts(content)
    return ""


def chunk_text(text: str, limit: int = MESSAGE_CHUNK_CHARS) -> List[str]:
    if limit < 1:
        raise ValueError("limit must be >= 1")
    return [text[start:start + limit] for start in range(0, len(text), limit)]


def has_binary_parts(parts: List[Dict[str, object]]) -> bool:
    return any(isinstance(part, dict) and part.get("type") != "text" for part in parts)


def send_chunks(client: TelegramClient, chat_id: int, text: str, **send_kwargs) -> int:
    sent = 0
    for chunk in chunk_text(text):
        try:
            client.send_message(chat_id, chunk, **send_kwargs)
            sent += 1
        except Exception:
            logging.exception("Failed to deliver response chunk for chat_id=%s", chat_id)
    return sent


def deliver_response(
    config,
    client: TelegramClient,
    chat_id: int,
    payload: object,
    request_parts: List[Dict[str, object]],
) -> None:
    text = extract_response_text(payload)
    if text.strip():
        send_chunks(client, chat_id, text)
        return

    if has_binary_parts(request_parts):
        notice = config.empty_vision_output_message
    else:
        notice = config.empty_output_message
    logging.warning("Empty model response for chat_id=%s", chat_id)
    try:
        client.send_message(chat_id, notice)
    except Exception:
        logging.exception("Failed to send empty-response notice for chat_id=%s", chat_id)


def deliver_error(client: TelegramClient, chat_id: int, exc: BaseException, prefix: str = "Error") -> None:
    try:
        client.send_message(chat_id, f"{prefix}: {exc}")
    except Exception:
        logging.exception("Failed to send error response for chat_id=%s", chat_id)
