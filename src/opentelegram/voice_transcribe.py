#!/usr/bin/env python3
"""Transcribe one audio file with faster-whisper and print the text to stdout.

Used as the default voice transcription command of the bridge::

    python -m opentelegram.voice_transcribe /tmp/voice_42_123.ogg
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, replace
from typing import Iterable

from faster_whisper import WhisperModel


@dataclass(frozen=True)
class WhisperSettings:
    model_name: str = "base"
    device: str = "cpu"
    compute_type: str = "int8"
    language: str | None = None
    model_dir: str | None = None
    fallback_device: str = "cpu"
    fallback_compute_type: str = "int8"

    @classmethod
    def from_env(cls) -> "WhisperSettings":
        return cls(
            model_name=os.getenv("WHISPER_MODEL", "base"),
            device=os.getenv("WHISPER_DEVICE", "cpu"),
            compute_type=os.getenv("WHISPER_COMPUTE_TYPE", "int8"),
            language=os.getenv("WHISPER_LANGUAGE", "") or None,
            model_dir=os.getenv("WHISPER_MODEL_DIR", "") or None,
            fallback_device=os.getenv("WHISPER_FALLBACK_DEVICE", "cpu"),
            fallback_compute_type=os.getenv("WHISPER_FALLBACK_COMPUTE_TYPE", "int8"),
        )


def join_segments(segments: Iterable[object]) -> str:
    texts = [(getattr(segment, "text", "") or "").strip() for segment in segments]
    return " ".join(text for text in texts if text).strip()


def transcribe(audio_path: str, settings: WhisperSettings) -> str:
    model_kwargs = {"device": settings.device, "compute_type": settings.compute_type}
    if settings.model_dir:
        model_kwargs["download_root"] = settings.model_dir
    model = WhisperModel(settings.model_name, **model_kwargs)
    segments, _info = model.transcribe(audio_path, language=settings.language, vad_filter=True)
    return join_segments(segments)


def transcribe_with_fallback(audio_path: str, settings: WhisperSettings) -> str:
    try:
        return transcribe(audio_path, settings)
    except Exception as exc:  # pragma: no cover - depends on local GPU runtime
        if settings.device.lower() != "cuda":
            raise
        print(
            f"CUDA transcription failed ({exc}); retrying on "
            f"{settings.fallback_device}/{settings.fallback_compute_type}.",
            file=sys.stderr,
        )
        fallback = replace(
            settings,
            device=settings.fallback_device,
            compute_type=settings.fallback_compute_type,
        )
        return transcribe(audio_path, fallback)


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: python -m opentelegram.voice_transcribe <audio_file>", file=sys.stderr)
        return 2

    audio_path = args[0]
    if not os.path.isfile(audio_path):
        print(f"audio file not found: {audio_path}", file=sys.stderr)
        return 2

    try:
        text = transcribe_with_fallback(audio_path, WhisperSettings.from_env())
    except Exception as exc:  # pragma: no cover - runtime integration path
        print(f"transcription backend error: {exc}", file=sys.stderr)
        return 1

    if text:
        print(text)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
