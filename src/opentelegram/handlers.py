import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .auth import (
    AuthDecision,
    AuthState,
    authorize,
    build_bootstrap_text,
    build_rejection_text,
    is_member,
    persist_allowed_user,
    release_bootstrap,
)
from .backend import ModelSelector, OpenCodeClient
from .delivery import deliver_error, deliver_response
from .executor import execute_with_progress
from .frames import MediaExtractionError, SubprocessTimeout
from .media import (
    DownloadFailure,
    EmptyTranscription,
    MediaJob,
    MediaSource,
    PhotoSource,
    TranscriptionFailure,
    VideoSource,
    VoiceSource,
    pick_largest_photo_file_id,
    prepare_media,
)
from .progress import ProgressMessage
from .session_registry import (
    SessionRegistry,
    encode_model_callback,
    fetch_model_catalog,
    find_model,
    resolve_model_callback,
)
from .transport import TelegramClient

MODELS_PAGE_SIZE = 50
PAGE_CALLBACK_PREFIX = "page:"
RECENT_SESSIONS_LIMIT = 10
TEXT_CONTEXT_LABEL = "🤔 Processing your message..."


@dataclass
class BridgeState:
    auth: AuthState
    registry: SessionRegistry
    backend: OpenCodeClient
    restart_requested: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)

    def request_restart(self) -> None:
        with self.lock:
            self.restart_requested = True

    def is_restart_requested(self) -> bool:
        with self.lock:
            return self.restart_requested


@dataclass
class InboundMessage:
    chat_id: int
    user_id: Optional[int]
    timestamp: Optional[int]
    text: str = ""
    caption: str = ""
    voice_file_id: Optional[str] = None
    photo_file_id: Optional[str] = None
    video_file_id: Optional[str] = None
    video_duration: float = 0
    video_size: int = 0


def normalize_command(text: str) -> Optional[str]:
    stripped = text.strip()
    if not stripped.startswith("/"):
        return None
    head = stripped.split(maxsplit=1)[0]
    return head.split("@", maxsplit=1)[0].lower()


def command_argument(text: str) -> str:
    parts = text.strip().split(maxsplit=1)
    return parts[1].strip() if len(parts) > 1 else ""


def parse_inbound_message(message: Dict[str, object]) -> Optional[InboundMessage]:
    chat = message.get("chat")
    if not isinstance(chat, dict) or not isinstance(chat.get("id"), int):
        return None
    sender = message.get("from")
    user_id = sender.get("id") if isinstance(sender, dict) else None
    timestamp = message.get("date")

    inbound = InboundMessage(
        chat_id=chat["id"],
        user_id=user_id if isinstance(user_id, int) else None,
        timestamp=timestamp if isinstance(timestamp, int) else None,
    )
    text = message.get("text")
    if isinstance(text, str):
        inbound.text = text
    caption = message.get("caption")
    if isinstance(caption, str):
        inbound.caption = caption

    voice = message.get("voice")
    if isinstance(voice, dict) and isinstance(voice.get("file_id"), str):
        inbound.voice_file_id = voice["file_id"]
    photo = message.get("photo")
    if isinstance(photo, list):
        inbound.photo_file_id = pick_largest_photo_file_id(photo)
    video = message.get("video")
    if isinstance(video, dict) and isinstance(video.get("file_id"), str):
        inbound.video_file_id = video["file_id"]
        duration = video.get("duration")
        inbound.video_duration = duration if isinstance(duration, (int, float)) else 0
        size = video.get("file_size")
        inbound.video_size = size if isinstance(size, int) else 0
    return inbound


def build_start_text(model: ModelSelector) -> str:
    return (
        "Welcome to OpenTelegram!\n\n"
        "I connect you to OpenCode AI assistant.\n\n"
        f"Current Model: {model}\n\n"
        "Commands:\n"
        "/new - Start a new session\n"
        "/sessions - List your sessions\n"
        "/models - Browse available models\n"
        "/model - Show/set current model\n"
        "/help - Show help\n\n"
        "Just send me any message, voice note, photo, or video to chat with the AI!"
    )


def build_help_text() -> str:
    return (
        "OpenTelegram Help\n\n"
        "Commands:\n"
        "/start - Welcome message\n"
        "/new - Start a new chat session\n"
        "/sessions - List recent sessions\n"
        "/model - Show current model and set a new one\n"
        "/models - Browse and select available models\n"
        "/help - Show this help\n\n"
        "Send text to chat, a voice note to transcribe and chat, a photo with an "
        "optional caption for image analysis, or a video to extract frames and analyze.\n"
        "Long responses may be split into multiple messages. Use /new to start fresh."
    )


def build_sessions_text(sessions: List[Dict[str, object]], current: Optional[str]) -> str:
    lines = []
    for index, session in enumerate(sessions[:RECENT_SESSIONS_LIMIT], start=1):
        session_id = str(session.get("id") or "")
        title = session.get("title") or "Untitled"
        lines.append(f"{index}. {session_id[:8]}... - {title}")
    current_label = f"{current[:8]}..." if current else "none"
    return "Recent sessions:\n\n" + "\n".join(lines) + f"\n\nCurrent: {current_label}"


def build_models_keyboard(catalog, current_model: str, page: int) -> Dict[str, object]:
    start = page * MODELS_PAGE_SIZE
    end = start + MODELS_PAGE_SIZE
    keyboard: List[List[Dict[str, str]]] = []
    for entry in catalog[start:end]:
        marker = "✓ " if entry.id == current_model else ""
        keyboard.append(
            [{"text": f"{marker}{entry.display_name}", "callback_data": encode_model_callback(entry.id)}]
        )
    nav: List[Dict[str, str]] = []
    if page > 0:
        nav.append({"text": "⬅️ Previous", "callback_data": f"{PAGE_CALLBACK_PREFIX}{page - 1}"})
    if end < len(catalog):
        nav.append({"text": "➡️ Next", "callback_data": f"{PAGE_CALLBACK_PREFIX}{page + 1}"})
    if nav:
        keyboard.append(nav)
    return {"inline_keyboard": keyboard}


def build_models_text(catalog, current_model: str, page: int) -> str:
    start = page * MODELS_PAGE_SIZE
    end = min(start + MODELS_PAGE_SIZE, len(catalog))
    header = f"Available Models ({len(catalog)} total"
    if len(catalog) > MODELS_PAGE_SIZE:
        header += f", showing {start + 1}-{end}"
    return f"{header})\n\nTap a model to select it.\n\nCurrent: {current_model}"


def build_video_status_text(duration_seconds: float, size_bytes: int, step: str) -> str:
    size_mb = size_bytes / 1024 / 1024
    return (
        "🎬 Processing video...\n"
        f"⏱️ Duration: {duration_seconds:g}s\n"
        f"📦 Size: {size_mb:.2f} MB\n\n"
        f"{step}"
    )


def handle_new_command(state: BridgeState, client: TelegramClient, chat_id: int) -> None:
    client.send_message(chat_id, "Creating new session...")
    try:
        session_id = state.registry.start_new_session(chat_id)
    except Exception as exc:
        logging.exception("Failed to create session for chat_id=%s", chat_id)
        deliver_error(client, chat_id, exc, prefix="Error creating session")
        return
    client.send_message(
        chat_id,
        f"New session created!\n\nSession ID: {session_id}\n\nSend me a message to start chatting.",
    )


def handle_sessions_command(state: BridgeState, client: TelegramClient, chat_id: int) -> None:
    try:
        sessions = state.backend.list_sessions()
    except Exception as exc:
        logging.exception("Failed to list sessions for chat_id=%s", chat_id)
        deliver_error(client, chat_id, exc, prefix="Error listing sessions")
        return
    if not sessions:
        client.send_message(chat_id, "No sessions found. Use /new to create one.")
        return
    client.send_message(chat_id, build_sessions_text(sessions, state.registry.get_session(chat_id)))


def handle_model_command(
    state: BridgeState,
    client: TelegramClient,
    chat_id: int,
    argument: str,
) -> None:
    current = state.registry.get_model(chat_id)
    if not argument:
        client.send_message(
            chat_id,
            f"Current Model:\n{current}\n\n"
            "Run /models to see and select other models.\n"
            "Or use /model <model-id> to set a specific model.",
        )
        return
    entry = find_model(fetch_model_catalog(state.backend), argument)
    if entry is None:
        client.send_message(
            chat_id,
            f'Model "{argument}" not found in the available list.\n\n'
            "Run /models to see all available models.",
        )
        return
    state.registry.set_model(chat_id, ModelSelector.parse(entry.id))
    client.send_message(
        chat_id,
        f"✅ Model set to: {entry.display_name}\n\nID: {entry.id}\n\n"
        "Your next message will use this model.",
    )


def handle_models_command(state: BridgeState, client: TelegramClient, chat_id: int) -> None:
    catalog = fetch_model_catalog(state.backend)
    if not catalog:
        client.send_message(chat_id, "Unable to load models. Please try again later.")
        return
    current = str(state.registry.get_model(chat_id))
    client.send_message(
        chat_id,
        build_models_text(catalog, current, 0),
        reply_markup=build_models_keyboard(catalog, current, 0),
    )


def handle_callback_query(
    state: BridgeState,
    client: TelegramClient,
    callback_query: Dict[str, object],
) -> None:
    callback_id = callback_query.get("id")
    data = callback_query.get("data")
    message = callback_query.get("message")
    if not isinstance(callback_id, str) or not isinstance(data, str) or not isinstance(message, dict):
        return
    chat = message.get("chat")
    message_id = message.get("message_id")
    if not isinstance(chat, dict) or not isinstance(chat.get("id"), int) or not isinstance(message_id, int):
        return
    chat_id = chat["id"]

    try:
        catalog = fetch_model_catalog(state.backend)
    except Exception:
        logging.exception("Failed to load models for callback in chat_id=%s", chat_id)
        client.answer_callback_query(callback_id, "Unable to load models. Please try again later.", show_alert=True)
        return
    current = str(state.registry.get_model(chat_id))

    if data.startswith(PAGE_CALLBACK_PREFIX):
        try:
            page = max(0, int(data[len(PAGE_CALLBACK_PREFIX):]))
        except ValueError:
            client.answer_callback_query(callback_id)
            return
        client.answer_callback_query(callback_id)
        client.edit_message(
            chat_id,
            message_id,
            build_models_text(catalog, current, page),
            reply_markup=build_models_keyboard(catalog, current, page),
        )
        return

    entry = resolve_model_callback(catalog, data)
    if entry is None:
        client.answer_callback_query(callback_id, "Model not found. Try /models again.", show_alert=True)
        return
    state.registry.set_model(chat_id, ModelSelector.parse(entry.id))
    logging.info("Model for chat_id=%s set to %s", chat_id, entry.id)
    client.answer_callback_query(callback_id, f"Model set: {entry.display_name}")
    client.edit_message(
        chat_id,
        message_id,
        f"✅ Model Changed\n\n{entry.display_name}\n{entry.id}\n\nYour next message will use this model.",
    )


def send_typing(client: TelegramClient, chat_id: int) -> None:
    try:
        client.send_chat_action(chat_id, "typing")
    except Exception:
        logging.debug("Failed to send typing action for chat_id=%s", chat_id, exc_info=True)


def run_prompt(
    state: BridgeState,
    config,
    client: TelegramClient,
    chat_id: int,
    parts: List[Dict[str, object]],
    context_label: str,
) -> None:
    session_id = state.registry.get_or_create_session(chat_id)
    send_typing(client, chat_id)
    payload = execute_with_progress(
        client,
        state.backend,
        chat_id,
        session_id,
        parts,
        state.registry.get_model(chat_id),
        context_label=context_label,
    )
    deliver_response(config, client, chat_id, payload, parts)


def process_text(state: BridgeState, config, client: TelegramClient, chat_id: int, text: str) -> None:
    try:
        run_prompt(state, config, client, chat_id, [{"type": "text", "text": text}], TEXT_CONTEXT_LABEL)
    except Exception as exc:
        logging.exception("Error processing message for chat_id=%s", chat_id)
        deliver_error(client, chat_id, exc)


def process_voice(
    state: BridgeState,
    config,
    client: TelegramClient,
    chat_id: int,
    file_id: str,
) -> None:
    send_typing(client, chat_id)
    job = MediaJob(chat_id=chat_id, kind="voice")
    source: MediaSource = VoiceSource(config, client, file_id)
    try:
        with prepare_media(source, job) as parts:
            transcript = str(parts[0]["text"])
            client.send_message(chat_id, f"🎤 Voice Transcription:\n{transcript}")
            ellipsis = "..." if len(transcript) > 50 else ""
            run_prompt(state, config, client, chat_id, parts, f'🎤 Voice: "{transcript[:50]}{ellipsis}"')
    except DownloadFailure:
        client.send_message(chat_id, config.voice_download_error_message)
    except EmptyTranscription:
        client.send_message(chat_id, config.voice_transcribe_empty_message)
    except (TranscriptionFailure, SubprocessTimeout):
        logging.exception("Voice transcription failed for chat_id=%s", chat_id)
        client.send_message(chat_id, config.voice_transcribe_error_message)
    except Exception as exc:
        logging.exception("Error processing voice message for chat_id=%s", chat_id)
        deliver_error(client, chat_id, exc, prefix="Error processing voice message")


def process_photo(
    state: BridgeState,
    config,
    client: TelegramClient,
    chat_id: int,
    file_id: str,
    caption: str,
) -> None:
    send_typing(client, chat_id)
    job = MediaJob(chat_id=chat_id, kind="photo", caption=caption)
    source: MediaSource = PhotoSource(config, client, file_id)
    try:
        with prepare_media(source, job) as parts:
            context_label = f"📸 Photo Analysis\n💬 {str(parts[0]['text'])[:100]}"
            run_prompt(state, config, client, chat_id, parts, context_label)
    except Exception as exc:
        logging.exception("Error processing photo for chat_id=%s", chat_id)
        deliver_error(client, chat_id, exc, prefix="Error processing photo")


def process_video(
    state: BridgeState,
    config,
    client: TelegramClient,
    inbound: InboundMessage,
) -> None:
    chat_id = inbound.chat_id
    duration = inbound.video_duration
    size = inbound.video_size

    status = ProgressMessage(client, chat_id)
    status.start(build_video_status_text(duration, size, "⏳ Step 1/3: Downloading..."))

    def on_progress(stage: str, percent: int) -> None:
        if stage == "starting":
            status.update(build_video_status_text(duration, size, "⏳ Step 2/3: Starting conversion..."), force=True)
        elif stage == "progress":
            status.update(build_video_status_text(duration, size, f"⏳ Step 2/3: Converting... {percent}%"))
        elif stage == "done":
            status.update(build_video_status_text(duration, size, "✅ Step 2/3: Conversion done!"), force=True)

    job = MediaJob(
        chat_id=chat_id,
        kind="video",
        caption=inbound.caption,
        duration_seconds=duration,
        on_progress=on_progress,
    )
    source: MediaSource = VideoSource(config, client, inbound.video_file_id or "")
    try:
        with prepare_media(source, job) as parts:
            frame_count = len(parts) - 1
            status.update(
                "🎬 Processing video...\n"
                f"⏱️ Duration: {duration:g}s\n"
                f"📊 Extracted {frame_count} frames\n\n"
                "⏳ Step 3/3: Analyzing with AI...",
                force=True,
            )
            status.delete()
            context_label = (
                f"🎬 Video Analysis\n📊 Extracted {frame_count} frames\n⏱️ Duration: {duration:g}s"
            )
            run_prompt(state, config, client, chat_id, parts, context_label)
    except MediaExtractionError as exc:
        logging.warning("Video extraction failed for chat_id=%s: %s", chat_id, exc)
        status.delete()
        deliver_error(client, chat_id, exc, prefix="❌ Error processing video")
    except Exception as exc:
        logging.exception("Error processing video for chat_id=%s", chat_id)
        status.delete()
        deliver_error(client, chat_id, exc, prefix="❌ Error processing video")


def process_command(
    state: BridgeState,
    client: TelegramClient,
    chat_id: int,
    command: str,
    text: str,
) -> bool:
    if command == "/start":
        client.send_message(chat_id, build_start_text(state.registry.get_model(chat_id)))
    elif command == "/help":
        client.send_message(chat_id, build_help_text())
    elif command == "/new":
        handle_new_command(state, client, chat_id)
    elif command == "/sessions":
        handle_sessions_command(state, client, chat_id)
    elif command == "/model":
        handle_model_command(state, client, chat_id, command_argument(text))
    elif command == "/models":
        handle_models_command(state, client, chat_id)
    else:
        return False
    return True


def process_message_worker(
    state: BridgeState,
    config,
    client: TelegramClient,
    inbound: InboundMessage,
) -> None:
    chat_id = inbound.chat_id
    try:
        if inbound.voice_file_id:
            process_voice(state, config, client, chat_id, inbound.voice_file_id)
            return
        if inbound.photo_file_id:
            process_photo(state, config, client, chat_id, inbound.photo_file_id, inbound.caption)
            return
        if inbound.video_file_id:
            process_video(state, config, client, inbound)
            return

        command = normalize_command(inbound.text)
        if command and process_command(state, client, chat_id, command, inbound.text):
            return
        if command:
            # Unknown commands are not forwarded to the model.
            return
        prompt = inbound.text.strip()
        if prompt:
            process_text(state, config, client, chat_id, prompt)
    except Exception:
        logging.exception("Unexpected message worker error for chat_id=%s", chat_id)
        try:
            client.send_message(chat_id, config.generic_error_message)
        except Exception:
            logging.exception("Failed to send worker error response for chat_id=%s", chat_id)


def process_callback_worker(
    state: BridgeState,
    client: TelegramClient,
    callback_query: Dict[str, object],
) -> None:
    try:
        handle_callback_query(state, client, callback_query)
    except Exception:
        logging.exception("Unexpected callback worker error")


def handle_message_update(
    state: BridgeState,
    config,
    client: TelegramClient,
    message: Dict[str, object],
) -> Optional[threading.Thread]:
    inbound = parse_inbound_message(message)
    if inbound is None:
        return None

    decision = authorize(state.auth, inbound.user_id, inbound.timestamp)
    if decision in (AuthDecision.STALE, AuthDecision.RESTART_PENDING):
        return None
    if decision == AuthDecision.REJECTED:
        logging.warning("Denied user_id=%s in chat_id=%s", inbound.user_id, inbound.chat_id)
        client.send_message(inbound.chat_id, build_rejection_text(inbound.user_id))
        return None
    if decision == AuthDecision.BOOTSTRAP:
        user_id = inbound.user_id
        try:
            persist_allowed_user(config.env_path, user_id)
        except Exception:
            release_bootstrap(state.auth)
            raise
        state.request_restart()
        try:
            client.send_message(inbound.chat_id, build_bootstrap_text(user_id))
        except Exception:
            logging.exception("Failed to send admin notice to chat_id=%s", inbound.chat_id)
        return None

    worker = threading.Thread(
        target=process_message_worker,
        args=(state, config, client, inbound),
        daemon=True,
    )
    worker.start()
    return worker


def handle_callback_update(
    state: BridgeState,
    client: TelegramClient,
    callback_query: Dict[str, object],
) -> Optional[threading.Thread]:
    sender = callback_query.get("from")
    user_id = sender.get("id") if isinstance(sender, dict) else None
    if not is_member(state.auth, user_id if isinstance(user_id, int) else None):
        callback_id = callback_query.get("id")
        if isinstance(callback_id, str):
            client.answer_callback_query(callback_id, "You are not authorized to use this bot.", show_alert=True)
        return None

    worker = threading.Thread(
        target=process_callback_worker,
        args=(state, client, callback_query),
        daemon=True,
    )
    worker.start()
    return worker


def handle_update(
    state: BridgeState,
    config,
    client: TelegramClient,
    update: Dict[str, object],
) -> Optional[threading.Thread]:
    """Route one Telegram update. Returns the worker thread it started, if any."""
    message = update.get("message")
    if isinstance(message, dict):
        return handle_message_update(state, config, client, message)
    callback_query = update.get("callback_query")
    if isinstance(callback_query, dict):
        return handle_callback_update(state, client, callback_query)
    return None
