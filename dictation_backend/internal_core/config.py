from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from ..utils.model_paths import resolve_cache_root


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_version(name: str, default: str) -> Tuple[int, ...]:
    # Imported here: the asr package imports this module through the registry.
    from .asr.capability import parse_version

    return parse_version(_getenv_str(name, default))


def _getenv_csv(name: str, default: str) -> Tuple[str, ...]:
    raw = _getenv_str(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class ServiceConfig:
    DICTATION_CACHE_ROOT: str
    DICTATION_ASR_PROVIDER: str
    DICTATION_HF_MODEL: str
    DICTATION_HF_DEVICE: str
    DICTATION_HF_FP16: bool
    DICTATION_HF_LANGUAGE: str
    DICTATION_HF_ARCHS: Tuple[str, ...]
    DICTATION_HF_MIN_MACOS: Tuple[int, ...]
    DICTATION_STREAMING_MAX_NEW_TOKENS: int
    DICTATION_FINAL_MAX_NEW_TOKENS: int
    DICTATION_SAMPLE_RATE: int
    DICTATION_LOG_LEVEL: str
    DICTATION_EVENT_LOG_SIZE: int

    def cache_root_path(self) -> Path:
        return Path(self.DICTATION_CACHE_ROOT).expanduser()


def load_config() -> ServiceConfig:
    streaming_budget = _getenv_int("DICTATION_STREAMING_MAX_NEW_TOKENS", 192)
    final_budget = _getenv_int("DICTATION_FINAL_MAX_NEW_TOKENS", 512)
    if streaming_budget <= 0 or final_budget <= 0:
        raise ValueError("generation budgets must be positive")

    return ServiceConfig(
        DICTATION_CACHE_ROOT=str(resolve_cache_root()),
        DICTATION_ASR_PROVIDER=_getenv_str("DICTATION_ASR_PROVIDER", "mock").strip() or "mock",
        DICTATION_HF_MODEL=_getenv_str("DICTATION_HF_MODEL", "openai/whisper-small"),
        DICTATION_HF_DEVICE=_getenv_str("DICTATION_HF_DEVICE", ""),
        DICTATION_HF_FP16=_getenv_bool("DICTATION_HF_FP16", False),
        DICTATION_HF_LANGUAGE=_getenv_str("DICTATION_HF_LANGUAGE", ""),
        DICTATION_HF_ARCHS=_getenv_csv("DICTATION_HF_ARCHS", "arm64,x86_64"),
        DICTATION_HF_MIN_MACOS=_getenv_version("DICTATION_HF_MIN_MACOS", ""),
        DICTATION_STREAMING_MAX_NEW_TOKENS=streaming_budget,
        DICTATION_FINAL_MAX_NEW_TOKENS=final_budget,
        DICTATION_SAMPLE_RATE=_getenv_int("DICTATION_SAMPLE_RATE", 16000),
        DICTATION_LOG_LEVEL=_getenv_str("DICTATION_LOG_LEVEL", "INFO"),
        DICTATION_EVENT_LOG_SIZE=_getenv_int("DICTATION_EVENT_LOG_SIZE", 200),
    )
