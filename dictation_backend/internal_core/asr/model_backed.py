from __future__ import annotations

import logging
from abc import abstractmethod
from pathlib import Path
from typing import Any, Optional, Sequence

import numpy as np

from .. import audit
from ..contracts import ProviderState, ProviderStatus, TranscriptionResult
from .base import (
    ASRError,
    InferenceError,
    InvalidAudioError,
    ProgressCallback,
    TranscriptionProvider,
)
from .capability import CapabilityGate, CapabilityRequirements, EngineSupport, PlatformFacts
from .lifecycle import ModelLifecycle
from .model_cache import ModelCache

logger = logging.getLogger(__name__)

STREAMING_MAX_NEW_TOKENS = 192
FINAL_MAX_NEW_TOKENS = 512

# Engines that do not report a confidence get this value.
CONFIDENCE_SENTINEL = 1.0


def coerce_samples(samples: Sequence[float], provider_name: str) -> np.ndarray:
    """Mono float32 view of the caller's samples. No resampling or channel mixing."""
    try:
        audio = np.asarray(samples, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise InvalidAudioError(f"samples must be a sequence of floats: {e}", provider_name) from e
    if audio.ndim != 1:
        raise InvalidAudioError(f"expected mono samples (1-D), got shape {audio.shape}", provider_name)
    if audio.size == 0:
        raise InvalidAudioError("no audio samples", provider_name)
    return audio


class ModelBackedProvider(TranscriptionProvider):
    """Provider whose engine needs on-disk model assets loaded into memory.

    Subclasses supply ``_acquire``, ``_load`` and ``_generate``; everything
    else (capability gate, cache, lifecycle, mode dispatch) lives here.
    """

    PROVIDER_ID: str = ""
    DISPLAY_NAME: str = ""
    REQUIREMENTS = CapabilityRequirements()
    REQUIRED_FILES: tuple[str, ...] = ()

    def __init__(
        self,
        cache_root: Path,
        *,
        requirements: Optional[CapabilityRequirements] = None,
        facts: Optional[PlatformFacts] = None,
        streaming_max_new_tokens: int = STREAMING_MAX_NEW_TOKENS,
        final_max_new_tokens: int = FINAL_MAX_NEW_TOKENS,
        events: Optional[audit.LifecycleEventLog] = None,
    ) -> None:
        self._gate = CapabilityGate(requirements or self.REQUIREMENTS, facts)
        self._support: EngineSupport = self._gate.evaluate()
        self._cache = ModelCache(Path(cache_root), self.PROVIDER_ID, required_files=self.REQUIRED_FILES)
        self._streaming_budget = int(streaming_max_new_tokens)
        self._final_budget = int(final_max_new_tokens)
        self._lifecycle = ModelLifecycle(
            provider_id=self.PROVIDER_ID,
            provider_name=self.DISPLAY_NAME,
            gate=self._gate,
            cache=self._cache,
            acquire=self._acquire,
            load=self._load,
            release=self._release,
            events=events,
        )

    # -- engine hooks ----------------------------------------------------------

    @abstractmethod
    async def _acquire(self, cache: ModelCache) -> Path:
        """Return the model directory, downloading into it when absent."""

    @abstractmethod
    async def _load(self, path: Path) -> Any:
        """Load assets from ``path`` and return the engine handle."""

    @abstractmethod
    async def _generate(self, handle: Any, audio: np.ndarray, max_new_tokens: int) -> str: ...

    async def _release(self, handle: Any) -> None:
        return None

    # -- capability interface --------------------------------------------------

    @property
    def provider_id(self) -> str:
        return self.PROVIDER_ID

    @property
    def name(self) -> str:
        return self.DISPLAY_NAME

    @property
    def support(self) -> EngineSupport:
        return self._support

    @property
    def is_available(self) -> bool:
        return self._gate.is_available()

    @property
    def is_ready(self) -> bool:
        return self._lifecycle.is_ready

    @property
    def state(self) -> ProviderState:
        return self._lifecycle.state

    @property
    def lifecycle(self) -> ModelLifecycle:
        return self._lifecycle

    @property
    def cache(self) -> ModelCache:
        return self._cache

    @property
    def streaming_budget(self) -> int:
        return self._streaming_budget

    @property
    def final_budget(self) -> int:
        return self._final_budget

    async def prepare(self, progress: Optional[ProgressCallback] = None) -> None:
        await self._lifecycle.prepare(progress)

    async def transcribe_streaming(self, samples: Sequence[float]) -> TranscriptionResult:
        return await self._transcribe_with_budget(samples, self._streaming_budget)

    async def transcribe_final(self, samples: Sequence[float]) -> TranscriptionResult:
        return await self._transcribe_with_budget(samples, self._final_budget)

    async def _transcribe_with_budget(self, samples: Sequence[float], max_new_tokens: int) -> TranscriptionResult:
        async with self._lifecycle.borrow_handle() as handle:
            audio = coerce_samples(samples, self.name)
            try:
                text = await self._generate(handle, audio, max_new_tokens)
            except ASRError:
                raise
            except Exception as e:
                logger.warning("inference failed provider=%s error=%s", self.PROVIDER_ID, e)
                raise InferenceError(str(e), self.name) from e
        return TranscriptionResult(text=" ".join((text or "").split()), confidence=CONFIDENCE_SENTINEL)

    def models_exist_on_disk(self) -> bool:
        return self._cache.exists()

    async def clear_cache(self) -> None:
        await self._lifecycle.clear()

    async def shutdown(self) -> None:
        await self._lifecycle.shutdown()

    def status(self) -> ProviderStatus:
        support = self._gate.evaluate()
        return ProviderStatus(
            provider_id=self.PROVIDER_ID,
            name=self.DISPLAY_NAME,
            available=support.supported,
            unavailable_reason=support.reason,
            ready=self.is_ready,
            state=self.state,
            models_on_disk=self.models_exist_on_disk(),
            cache_bytes=self._cache.size_bytes(),
            last_error=self._lifecycle.last_error,
        )
