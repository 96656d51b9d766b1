from __future__ import annotations

import logging
from threading import RLock
from typing import Callable, Dict, List, Optional

from .. import audit
from ..config import ServiceConfig
from ..contracts import ProviderStatus
from .base import TranscriptionProvider
from .capability import CapabilityRequirements, PlatformFacts
from .hf_seq2seq import WhisperHFProvider
from .mock import MockASRProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ServiceConfig, audit.LifecycleEventLog], TranscriptionProvider]


class UnknownProviderError(KeyError):
    def __init__(self, provider_id: str, known: List[str]):
        super().__init__(provider_id)
        self.provider_id = provider_id
        self.known = known

    def __str__(self) -> str:
        return f"Unknown provider: {self.provider_id} (known: {', '.join(self.known) or 'none'})"


class ProviderRegistry:
    """Constructs providers on first use and owns them for the registry's lifetime."""

    def __init__(self, cfg: ServiceConfig, events: Optional[audit.LifecycleEventLog] = None):
        self._cfg = cfg
        self._events = events if events is not None else audit.LifecycleEventLog(cfg.DICTATION_EVENT_LOG_SIZE)
        self._lock = RLock()
        self._factories: Dict[str, ProviderFactory] = {}
        self._instances: Dict[str, TranscriptionProvider] = {}

    @property
    def config(self) -> ServiceConfig:
        return self._cfg

    @property
    def events(self) -> audit.LifecycleEventLog:
        return self._events

    def register(self, provider_id: str, factory: ProviderFactory) -> None:
        with self._lock:
            if provider_id in self._instances:
                raise ValueError(f"provider {provider_id} is already constructed; cannot replace its factory")
            self._factories[provider_id] = factory

    def list_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._factories.keys())

    def get(self, provider_id: str) -> TranscriptionProvider:
        with self._lock:
            existing = self._instances.get(provider_id)
            if existing is not None:
                return existing
            factory = self._factories.get(provider_id)
            if factory is None:
                raise UnknownProviderError(provider_id, sorted(self._factories.keys()))
            logger.info("constructing provider=%s", provider_id)
            provider = factory(self._cfg, self._events)
            self._instances[provider_id] = provider
            return provider

    def default(self) -> TranscriptionProvider:
        return self.get(self._cfg.DICTATION_ASR_PROVIDER)

    def statuses(self) -> List[ProviderStatus]:
        return [self.get(pid).status() for pid in self.list_ids()]

    async def shutdown(self) -> None:
        with self._lock:
            instances = list(self._instances.values())
        for provider in instances:
            await provider.shutdown()


def _mock_factory(cfg: ServiceConfig, events: audit.LifecycleEventLog) -> TranscriptionProvider:
    return MockASRProvider(
        cfg.cache_root_path(),
        streaming_max_new_tokens=cfg.DICTATION_STREAMING_MAX_NEW_TOKENS,
        final_max_new_tokens=cfg.DICTATION_FINAL_MAX_NEW_TOKENS,
        events=events,
    )


def whisper_hf_requirements(cfg: ServiceConfig) -> CapabilityRequirements:
    return CapabilityRequirements(
        arch_families=frozenset(cfg.DICTATION_HF_ARCHS),
        min_os_version=cfg.DICTATION_HF_MIN_MACOS,
        min_os_system="Darwin",
    )


def _whisper_hf_factory(
    cfg: ServiceConfig,
    events: audit.LifecycleEventLog,
    facts: Optional[PlatformFacts] = None,
) -> TranscriptionProvider:
    return WhisperHFProvider(
        cfg.cache_root_path(),
        cfg.DICTATION_HF_MODEL,
        device=cfg.DICTATION_HF_DEVICE or None,
        fp16=cfg.DICTATION_HF_FP16,
        language=cfg.DICTATION_HF_LANGUAGE,
        sample_rate=cfg.DICTATION_SAMPLE_RATE,
        requirements=whisper_hf_requirements(cfg),
        facts=facts,
        streaming_max_new_tokens=cfg.DICTATION_STREAMING_MAX_NEW_TOKENS,
        final_max_new_tokens=cfg.DICTATION_FINAL_MAX_NEW_TOKENS,
        events=events,
    )


def build_default_registry(
    cfg: ServiceConfig,
    events: Optional[audit.LifecycleEventLog] = None,
) -> ProviderRegistry:
    registry = ProviderRegistry(cfg, events=events)
    registry.register(MockASRProvider.PROVIDER_ID, _mock_factory)
    registry.register(WhisperHFProvider.PROVIDER_ID, _whisper_hf_factory)
    return registry
