import logging
import os
import subprocess
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

from .frames import (
    MAX_SUBMITTED_FRAMES,
    MediaExtractionError,
    ProgressCallback,
    SubprocessTimeout,
    expected_frame_count,
    extract_frames,
    list_frames,
)

DEFAULT_PHOTO_PROMPT = "What do you see in this image?"

ContentPart = Dict[str, object]


class DownloadFailure(MediaExtractionError):
    pass


class TranscriptionFailure(MediaExtractionError):
    pass


class EmptyTranscription(MediaExtractionError):
    pass


class TelegramFileClientProtocol(Protocol):
    def get_file(self, file_id: str) -> Dict[str, object]:
        ...

    def download_file_to_path(
        self,
        file_path: str,
        target_path: str,
        max_bytes: int,
        size_label: str = "File",
    ) -> None:
        ...


@dataclass(frozen=True)
class TelegramFileDownloadSpec:
    file_id: str
    max_bytes: int
    size_label: str
    name_prefix: str
    default_suffix: str
    target_dir: Optional[str] = None


def download_telegram_file(
    client: TelegramFileClientProtocol,
    spec: TelegramFileDownloadSpec,
) -> Tuple[str, int]:
    file_meta = client.get_file(spec.file_id)
    file_path = file_meta.get("file_path")
    if not isinstance(file_path, str) or not file_path.strip():
        raise RuntimeError("Telegram getFile response missing file_path")

    file_size = file_meta.get("file_size")
    if isinstance(file_size, int) and file_size > spec.max_bytes:
        raise ValueError(
            f"{spec.size_label} too large ({file_size} bytes). Max is {spec.max_bytes} bytes."
        )

    suffix = Path(file_path).suffix or spec.default_suffix
    if spec.target_dir:
        os.makedirs(spec.target_dir, exist_ok=True)
    fd, local_path = tempfile.mkstemp(prefix=spec.name_prefix, suffix=suffix, dir=spec.target_dir)
    os.close(fd)
    try:
        client.download_file_to_path(
            file_path,
            local_path,
            spec.max_bytes,
            size_label=spec.size_label,
        )
    except Exception:
        try:
            os.remove(local_path)
        except OSError:
            pass
        raise

    final_size = file_size if isinstance(file_size, int) else os.path.getsize(local_path)
    return local_path, final_size


@dataclass
class MediaJob:
    chat_id: int
    kind: str
    caption: str = ""
    duration_seconds: float = 0
    on_progress: Optional[ProgressCallback] = None
    scratch_files: List[str] = field(default_factory=list)
    scratch_dirs: List[str] = field(default_factory=list)

    def name_prefix(self, label: str) -> str:
        return f"{label}_{self.chat_id}_{time.time_ns()}_"

    def remove_file(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError:
            logging.warning("Failed to remove scratch file: %s", path)
        if path in self.scratch_files:
            self.scratch_files.remove(path)

    def cleanup(self) -> None:
        for path in list(self.scratch_files):
            self.remove_file(path)
        for directory in list(self.scratch_dirs):
            try:
                for name in os.listdir(directory):
                    os.remove(os.path.join(directory, name))
                os.rmdir(directory)
            except FileNotFoundError:
                pass
            except OSError:
                logging.warning("Failed to remove scratch directory: %s", directory)
            self.scratch_dirs.remove(directory)


class MediaSource(Protocol):
    kind: str

    def fetch(self, job: MediaJob) -> str:
        ...

    def to_parts(self, job: MediaJob, path: str) -> List[ContentPart]:
        ...


def _download(client: TelegramFileClientProtocol, spec: TelegramFileDownloadSpec) -> str:
    try:
        local_path, _ = download_telegram_file(client, spec)
    except ValueError as exc:
        logging.warning("%s rejected: %s", spec.size_label, exc)
        raise DownloadFailure(str(exc)) from exc
    except Exception as exc:
        logging.exception("%s download failed", spec.size_label)
        raise DownloadFailure(f"{spec.size_label} download failed: {exc}") from exc
    return local_path


def build_voice_transcribe_command(cmd_template: List[str], voice_path: str) -> List[str]:
    cmd: List[str] = []
    used_placeholder = False
    for arg in cmd_template:
        if "{file}" in arg:
            cmd.append(arg.replace("{file}", voice_path))
            used_placeholder = True
        else:
            cmd.append(arg)
    if not used_placeholder:
        cmd.append(voice_path)
    return cmd


def transcribe_voice(config, voice_path: str) -> str:
    cmd = build_voice_transcribe_command(config.voice_transcribe_cmd, voice_path)
    logging.info("Running voice transcription command: %s", cmd)
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=config.voice_transcribe_timeout_seconds,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise SubprocessTimeout("Voice transcription timed out") from exc
    except OSError as exc:
        raise TranscriptionFailure(f"Voice transcription failed to start: {exc}") from exc
    if result.returncode != 0:
        logging.error(
            "Voice transcription failed returncode=%s stderr=%r",
            result.returncode,
            (result.stderr or "")[-1000:],
        )
        raise TranscriptionFailure("Voice transcription failed")
    return (result.stdout or "").strip()


class VoiceSource:
    kind = "voice"

    def __init__(self, config, client: TelegramFileClientProtocol, file_id: str) -> None:
        self.config = config
        self.client = client
        self.file_id = file_id

    def fetch(self, job: MediaJob) -> str:
        local_path = _download(
            self.client,
            TelegramFileDownloadSpec(
                file_id=self.file_id,
                max_bytes=self.config.max_voice_bytes,
                size_label="Voice file",
                name_prefix=job.name_prefix("voice"),
                default_suffix=".ogg",
            ),
        )
        job.scratch_files.append(local_path)
        return local_path

    def to_parts(self, job: MediaJob, path: str) -> List[ContentPart]:
        try:
            transcript = transcribe_voice(self.config, path)
        finally:
            job.remove_file(path)
        if not transcript:
            raise EmptyTranscription("Voice transcription was empty")
        return [{"type": "text", "text": transcript}]


def pick_largest_photo_file_id(photo_items: List[object]) -> Optional[str]:
    best_file_id: Optional[str] = None
    best_size = -1
    for item in photo_items:
        if not isinstance(item, dict):
            continue
        file_id = item.get("file_id")
        if not isinstance(file_id, str) or not file_id.strip():
            continue
        file_size = item.get("file_size")
        size_score = file_size if isinstance(file_size, int) else 0
        # Telegram lists variants smallest first, so ties go to the later one.
        if size_score >= best_size:
            best_size = size_score
            best_file_id = file_id.strip()
    return best_file_id


def mime_type_for_image(path: str) -> str:
    return "image/png" if Path(path).suffix.lower() == ".png" else "image/jpeg"


def build_file_part(path: str, mime: str) -> ContentPart:
    return {
        "type": "file",
        "mime": mime,
        "url": Path(path).resolve().as_uri(),
        "filename": os.path.basename(path),
    }


class PhotoSource:
    kind = "photo"

    def __init__(self, config, client: TelegramFileClientProtocol, file_id: str) -> None:
        self.config = config
        self.client = client
        self.file_id = file_id

    def fetch(self, job: MediaJob) -> str:
        # Kept outside the job's scratch list: the backend reads it by file URL later.
        return _download(
            self.client,
            TelegramFileDownloadSpec(
                file_id=self.file_id,
                max_bytes=self.config.max_image_bytes,
                size_label="Image",
                name_prefix=job.name_prefix("photo"),
                default_suffix=".jpg",
                target_dir=self.config.upload_dir,
            ),
        )

    def to_parts(self, job: MediaJob, path: str) -> List[ContentPart]:
        prompt_text = job.caption if job.caption.strip() else DEFAULT_PHOTO_PROMPT
        return [
            {"type": "text", "text": prompt_text},
            build_file_part(path, mime_type_for_image(path)),
        ]


def build_video_prompt(frame_count: int, duration_seconds: float) -> str:
    return (
        f"I've extracted {frame_count} frames from a {duration_seconds:g}-second video. "
        "Please analyze these frames and describe what you see."
    )


class VideoSource:
    kind = "video"

    def __init__(self, config, client: TelegramFileClientProtocol, file_id: str) -> None:
        self.config = config
        self.client = client
        self.file_id = file_id

    def fetch(self, job: MediaJob) -> str:
        local_path = _download(
            self.client,
            TelegramFileDownloadSpec(
                file_id=self.file_id,
                max_bytes=self.config.max_video_bytes,
                size_label="Video",
                name_prefix=job.name_prefix("video"),
                default_suffix=".mp4",
            ),
        )
        job.scratch_files.append(local_path)
        return local_path

    def to_parts(self, job: MediaJob, path: str) -> List[ContentPart]:
        frames_dir = tempfile.mkdtemp(prefix=job.name_prefix("frames"))
        job.scratch_dirs.append(frames_dir)
        extract_frames(
            self.config.ffmpeg_cmd,
            path,
            frames_dir,
            job.duration_seconds,
            on_progress=job.on_progress,
            timeout_seconds=self.config.frame_timeout_seconds,
        )
        extracted = list_frames(frames_dir)
        frame_paths = extracted[:MAX_SUBMITTED_FRAMES]
        if not frame_paths:
            raise MediaExtractionError("No frames could be extracted from the video")
        logging.info(
            "Extracted %s frame(s) for chat_id=%s (expected %s, submitting %s)",
            len(extracted),
            job.chat_id,
            expected_frame_count(job.duration_seconds),
            len(frame_paths),
        )

        prompt_text = (
            job.caption
            if job.caption.strip()
            else build_video_prompt(len(frame_paths), job.duration_seconds)
        )
        parts: List[ContentPart] = [{"type": "text", "text": prompt_text}]
        parts.extend(build_file_part(frame_path, "image/jpeg") for frame_path in frame_paths)
        return parts


@contextmanager
def prepare_media(source: MediaSource, job: MediaJob) -> Iterator[List[ContentPart]]:
    """Yield backend content parts for one attachment, removing scratch files on exit."""
    try:
        path = source.fetch(job)
        yield source.to_parts(job, path)
    finally:
        job.cleanup()
