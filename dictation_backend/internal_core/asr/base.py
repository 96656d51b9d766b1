from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

from ..contracts import ProviderState, ProviderStatus, TranscriptionResult

ProgressCallback = Callable[[float], None]


class ASRError(RuntimeError):
    def __init__(self, code: str, message: str, provider_name: str):
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider_name = provider_name


class ProviderUnavailableError(ASRError):
    """Platform or hardware cannot run this provider. Not retryable."""

    def __init__(self, reason: str, provider_name: str):
        super().__init__(
            "PROVIDER_UNAVAILABLE",
            f"{provider_name} is not supported on this machine ({reason}). Try a different provider.",
            provider_name,
        )
        self.reason = reason


class LoadFailureError(ASRError):
    def __init__(self, message: str, provider_name: str):
        super().__init__("MODEL_LOAD_FAILED", message, provider_name)


class RecoveryExhaustedError(ASRError):
    """Both the first acquire-and-load attempt and the single retry failed."""

    def __init__(self, original: BaseException, retry: BaseException, provider_name: str):
        super().__init__(
            "RECOVERY_EXHAUSTED",
            "Model download is incomplete or corrupted. The cache was cleared and the retry also "
            f"failed: {retry}. Check the network connection, or clear the cache and retry manually. "
            f"(first failure: {original})",
            provider_name,
        )
        self.original = original
        self.retry = retry

    @property
    def causes(self) -> tuple[BaseException, BaseException]:
        return (self.original, self.retry)


class NotReadyError(ASRError):
    def __init__(self, provider_name: str, state: str = "uninitialized"):
        super().__init__(
            "PROVIDER_NOT_READY",
            f"{provider_name} is not ready (state={state}); call prepare() first.",
            provider_name,
        )
        self.state = state


class InvalidAudioError(ASRError):
    def __init__(self, message: str, provider_name: str):
        super().__init__("INVALID_AUDIO", message, provider_name)


class InferenceError(ASRError):
    def __init__(self, message: str, provider_name: str):
        super().__init__("INFERENCE_FAILED", message, provider_name)


class ModelCacheError(ASRError):
    def __init__(self, message: str, provider_name: str):
        super().__init__("CACHE_CLEAR_FAILED", message, provider_name)


class TranscriptionProvider(ABC):
    """Operations the rest of the application may invoke on a speech-to-text engine."""

    @property
    @abstractmethod
    def provider_id(self) -> str: ...

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def is_available(self) -> bool: ...

    @property
    @abstractmethod
    def is_ready(self) -> bool: ...

    @property
    @abstractmethod
    def state(self) -> ProviderState: ...

    @abstractmethod
    async def prepare(self, progress: Optional[ProgressCallback] = None) -> None: ...

    @abstractmethod
    async def transcribe_streaming(self, samples: Sequence[float]) -> TranscriptionResult: ...

    @abstractmethod
    async def transcribe_final(self, samples: Sequence[float]) -> TranscriptionResult: ...

    async def transcribe(self, samples: Sequence[float]) -> TranscriptionResult:
        return await self.transcribe_final(samples)

    @abstractmethod
    def models_exist_on_disk(self) -> bool: ...

    @abstractmethod
    async def clear_cache(self) -> None: ...

    @abstractmethod
    async def shutdown(self) -> None: ...

    @abstractmethod
    def status(self) -> ProviderStatus: ...
