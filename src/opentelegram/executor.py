import logging
from typing import Dict, List

from .backend import BackendError, ModelSelector, OpenCodeClient
from .progress import ProgressMessage
from .transport import TelegramClient

PROCESSING_INDICATOR = "⏳ Processing..."


def build_progress_text(context_label: str) -> str:
    if context_label:
        return f"{context_label}\n\n{PROCESSING_INDICATOR}"
    return PROCESSING_INDICATOR


def raise_for_inband_error(payload: object) -> None:
    if not isinstance(payload, dict):
        return
    if payload.get("error"):
        raise BackendError(payload["error"])
    info = payload.get("info")
    if isinstance(info, dict) and info.get("error"):
        raise BackendError(info["error"])


def execute_with_progress(
    client: TelegramClient,
    backend: OpenCodeClient,
    chat_id: int,
    session_id: str,
    parts: List[Dict[str, object]],
    model: ModelSelector,
    context_label: str = "",
) -> object:
    progress = ProgressMessage(client, chat_id)
    progress.start(build_progress_text(context_label))
    try:
        logging.info(
            "Prompting session=%s chat_id=%s model=%s parts=%s",
            session_id,
            chat_id,
            model,
            len(parts),
        )
        payload = backend.prompt(session_id, parts, model)
        raise_for_inband_error(payload)
        return payload
    finally:
        progress.delete()
