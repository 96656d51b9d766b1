from __future__ import annotations

from .base import (
    ASRError,
    InferenceError,
    InvalidAudioError,
    LoadFailureError,
    ModelCacheError,
    NotReadyError,
    ProviderUnavailableError,
    RecoveryExhaustedError,
    TranscriptionProvider,
)
from .capability import (
    CapabilityGate,
    CapabilityRequirements,
    EngineSupport,
    PlatformFacts,
    detect_platform,
)
from .hf_seq2seq import WhisperHFProvider
from .lifecycle import ModelLifecycle
from .mock import MockASRProvider
from .model_backed import ModelBackedProvider
from .model_cache import ModelCache
from .registry import ProviderRegistry, UnknownProviderError, build_default_registry

__all__ = [
    "ASRError",
    "CapabilityGate",
    "CapabilityRequirements",
    "EngineSupport",
    "InferenceError",
    "InvalidAudioError",
    "LoadFailureError",
    "MockASRProvider",
    "ModelBackedProvider",
    "ModelCache",
    "ModelCacheError",
    "ModelLifecycle",
    "NotReadyError",
    "PlatformFacts",
    "ProviderRegistry",
    "ProviderUnavailableError",
    "RecoveryExhaustedError",
    "TranscriptionProvider",
    "UnknownProviderError",
    "WhisperHFProvider",
    "build_default_registry",
    "detect_platform",
]
