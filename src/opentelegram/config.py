import os
import shlex
import sys
from dataclasses import dataclass
from typing import List, Optional, Set

from dotenv import load_dotenv

TELEGRAM_LIMIT = 4096
DEFAULT_MODEL = "opencode/minimax-m2.5-free"
ALLOWED_USERS_ENV_KEY = "TELEGRAM_ALLOWED_USERS"


@dataclass
class Config:
    token: str
    allowed_user_ids: Set[int]
    env_path: str
    api_base: str
    poll_timeout_seconds: int
    retry_sleep_seconds: float
    max_voice_bytes: int
    max_image_bytes: int
    max_video_bytes: int
    voice_transcribe_cmd: List[str]
    voice_transcribe_timeout_seconds: int
    upload_dir: str
    ffmpeg_cmd: List[str]
    opencode_base_url: str
    opencode_timeout_seconds: int
    default_model: str
    opencode_directory: str
    sync_chat_id: Optional[int] = None
    sync_host: str = "127.0.0.1"
    sync_port: int = 4097
    sync_url: str = "http://127.0.0.1:4097"
    frame_timeout_seconds: int = 60
    generic_error_message: str = "Something went wrong. Please try again later."
    voice_download_error_message: str = "Voice download failed. Please send another voice message."
    voice_transcribe_error_message: str = "Voice transcription failed. Please send clearer audio."
    voice_transcribe_empty_message: str = "Could not transcribe the voice message. Please try again."
    empty_output_message: str = "No response received. Please try again."
    empty_vision_output_message: str = (
        "The AI model returned an empty response. This model may not support image analysis. "
        "Try a vision-capable model like gpt-4o or claude-3-5-sonnet with /model."
    )


def parse_int_env(name: str, default: int, minimum: int = 1) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return parsed


def parse_allowed_user_ids(raw: str) -> Set[int]:
    # "0" is the placeholder shipped in example env files.
    values = [item.strip() for item in raw.split(",") if item.strip() and item.strip() != "0"]
    parsed: Set[int] = set()
    for value in values:
        try:
            parsed.add(int(value))
        except ValueError as exc:
            raise ValueError(f"Invalid {ALLOWED_USERS_ENV_KEY} value: {value!r}") from exc
    return parsed


def parse_optional_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def parse_optional_cmd_env(name: str) -> List[str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return []
    cmd = shlex.split(raw)
    if not cmd:
        raise ValueError(f"{name} cannot be blank")
    return cmd


def build_default_transcribe_cmd() -> List[str]:
    return [sys.executable, "-m", "opentelegram.voice_transcribe", "{file}"]


def load_env_file(env_path: str) -> bool:
    """Load the durable key-value configuration into the process environment."""
    if not os.path.isfile(env_path):
        return False
    return load_dotenv(env_path, override=True)


def load_config(env_path: str = ".env") -> Config:
    load_env_file(env_path)

    token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
    if not token:
        raise ValueError("TELEGRAM_BOT_TOKEN is required")

    opencode_host = os.getenv("OPENCODE_HOST", "127.0.0.1").strip() or "127.0.0.1"
    opencode_port = parse_int_env("OPENCODE_PORT", 4096)
    sync_host = os.getenv("TELEGRAM_SYNC_HOST", "127.0.0.1").strip() or "127.0.0.1"
    sync_port = parse_int_env("TELEGRAM_SYNC_PORT", 4097)
    default_sync_url = f"http://{sync_host}:{sync_port}"

    return Config(
        token=token,
        allowed_user_ids=parse_allowed_user_ids(os.getenv(ALLOWED_USERS_ENV_KEY, "")),
        env_path=os.path.abspath(env_path),
        api_base=os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org").rstrip("/"),
        poll_timeout_seconds=parse_int_env("TELEGRAM_POLL_TIMEOUT_SECONDS", 30),
        retry_sleep_seconds=float(os.getenv("TELEGRAM_RETRY_SLEEP_SECONDS", "3")),
        max_voice_bytes=parse_int_env("TELEGRAM_MAX_VOICE_BYTES", 20 * 1024 * 1024, minimum=1024),
        max_image_bytes=parse_int_env("TELEGRAM_MAX_IMAGE_BYTES", 20 * 1024 * 1024, minimum=1024),
        max_video_bytes=parse_int_env("TELEGRAM_MAX_VIDEO_BYTES", 20 * 1024 * 1024, minimum=1024),
        voice_transcribe_cmd=(
            parse_optional_cmd_env("TELEGRAM_VOICE_TRANSCRIBE_CMD") or build_default_transcribe_cmd()
        ),
        voice_transcribe_timeout_seconds=parse_int_env(
            "TELEGRAM_VOICE_TRANSCRIBE_TIMEOUT_SECONDS",
            120,
        ),
        upload_dir=os.path.abspath(os.getenv("TELEGRAM_UPLOAD_DIR", "uploads").strip() or "uploads"),
        ffmpeg_cmd=parse_optional_cmd_env("TELEGRAM_FFMPEG_CMD") or ["ffmpeg"],
        opencode_base_url=f"http://{opencode_host}:{opencode_port}",
        opencode_timeout_seconds=parse_int_env("OPENCODE_TIMEOUT_SECONDS", 600),
        default_model=os.getenv("OPENCODE_MODEL", "").strip() or DEFAULT_MODEL,
        opencode_directory=os.getenv("OPENCODE_DIRECTORY", "").strip() or os.getcwd(),
        sync_chat_id=parse_optional_int_env("TELEGRAM_SYNC_CHAT_ID"),
        sync_host=sync_host,
        sync_port=sync_port,
        sync_url=os.getenv("TELEGRAM_SYNC_URL", "").strip().rstrip("/") or default_sync_url,
        frame_timeout_seconds=parse_int_env("TELEGRAM_FFMPEG_TIMEOUT_SECONDS", 60),
    )
