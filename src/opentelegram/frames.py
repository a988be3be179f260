import logging
import os
import re
import subprocess
import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional

FRAME_INTERVAL_SECONDS = 2
FRAME_PATTERN = "frame_%03d.jpg"
MAX_SUBMITTED_FRAMES = 5
FRAME_TIMEOUT_SECONDS = 60
DIAGNOSTIC_TAIL_CHARS = 500
OUT_TIME_RE = re.compile(r"out_time_ms=(\d+)")

ProgressCallback = Callable[[str, int], None]


class MediaExtractionError(RuntimeError):
    """Raised when an attachment cannot be turned into backend content."""


class SubprocessTimeout(MediaExtractionError):
    pass


class SubprocessNonZeroExit(MediaExtractionError):
    def __init__(self, returncode: int, diagnostics: str) -> None:
        self.returncode = returncode
        self.diagnostics = diagnostics
        super().__init__(f"ffmpeg failed with code {returncode}: {diagnostics}")


def expected_frame_count(duration_seconds: float) -> int:
    if duration_seconds <= 0:
        return 0
    return int(duration_seconds // FRAME_INTERVAL_SECONDS)


def build_ffmpeg_command(ffmpeg_cmd: List[str], video_path: str, frames_dir: str) -> List[str]:
    return list(ffmpeg_cmd) + [
        "-i", video_path,
        "-vf", f"fps=1/{FRAME_INTERVAL_SECONDS}",
        "-q:v", "2",
        "-progress", "pipe:1",
        "-nostats",
        os.path.join(frames_dir, FRAME_PATTERN),
    ]


def progress_percent(out_time_us: int, duration_seconds: float) -> Optional[int]:
    if duration_seconds <= 0:
        return None
    # ffmpeg reports out_time_ms in microseconds despite the name.
    elapsed_seconds = out_time_us / 1_000_000
    return max(0, min(99, round(elapsed_seconds / duration_seconds * 100)))


class DiagnosticTail:
    """Keeps only the last max_chars characters written to it."""

    def __init__(self, max_chars: int = DIAGNOSTIC_TAIL_CHARS) -> None:
        self.max_chars = max_chars
        self._parts: Deque[str] = deque()
        self._length = 0

    def append(self, text: str) -> None:
        if not text:
            return
        self._parts.append(text)
        self._length += len(text)
        while self._parts and self._length - len(self._parts[0]) >= self.max_chars:
            self._length -= len(self._parts.popleft())

    def render(self) -> str:
        return "".join(self._parts)[-self.max_chars:]


def _notify(on_progress: Optional[ProgressCallback], status: str, percent: int) -> None:
    if on_progress is None:
        return
    try:
        on_progress(status, percent)
    except Exception:
        logging.exception("Frame progress callback failure")


def extract_frames(
    ffmpeg_cmd: List[str],
    video_path: str,
    frames_dir: str,
    duration_seconds: float,
    on_progress: Optional[ProgressCallback] = None,
    timeout_seconds: float = FRAME_TIMEOUT_SECONDS,
) -> None:
    cmd = build_ffmpeg_command(ffmpeg_cmd, video_path, frames_dir)
    logging.info("Running frame extraction command: %s", cmd)
    started_at = time.monotonic()
    _notify(on_progress, "starting", 0)
    try:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
        )
    except OSError as exc:
        raise MediaExtractionError(f"ffmpeg failed to start: {exc}") from exc

    if process.stdout is None or process.stderr is None:
        raise MediaExtractionError("Failed to initialize ffmpeg process pipes")

    stderr_tail = DiagnosticTail()
    last_percent = 0

    def drain_stdout() -> None:
        nonlocal last_percent
        for raw_line in process.stdout:
            match = OUT_TIME_RE.search(raw_line)
            if not match:
                continue
            percent = progress_percent(int(match.group(1)), duration_seconds)
            if percent is not None and percent > last_percent:
                last_percent = percent
                _notify(on_progress, "progress", percent)

    def drain_stderr() -> None:
        for raw_line in process.stderr:
            stderr_tail.append(raw_line)

    stdout_worker = threading.Thread(target=drain_stdout, daemon=True)
    stderr_worker = threading.Thread(target=drain_stderr, daemon=True)
    stdout_worker.start()
    stderr_worker.start()

    try:
        return_code = process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired as exc:
        process.kill()
        process.wait(timeout=5)
        stdout_worker.join(timeout=1.5)
        stderr_worker.join(timeout=1.5)
        raise SubprocessTimeout(f"ffmpeg timed out after {timeout_seconds:g} seconds") from exc

    stdout_worker.join(timeout=1.5)
    stderr_worker.join(timeout=1.5)
    elapsed = time.monotonic() - started_at

    if return_code != 0:
        diagnostics = stderr_tail.render()
        logging.error("ffmpeg failed returncode=%s stderr=%r", return_code, diagnostics)
        raise SubprocessNonZeroExit(return_code, diagnostics)

    logging.info("ffmpeg completed in %.1fs", elapsed)
    _notify(on_progress, "done", 100)


def list_frames(frames_dir: str) -> List[str]:
    names = sorted(
        name
        for name in os.listdir(frames_dir)
        if name.startswith("frame_") and name.endswith(".jpg")
    )
    return [os.path.join(frames_dir, name) for name in names]
