from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

import numpy as np

from .capability import CapabilityRequirements
from .model_backed import ModelBackedProvider
from .model_cache import ModelCache

MODEL_FILE = "model.json"
MODEL_FORMAT = 1

DEFAULT_VOCABULARY = (
    "(mock)",
    "simulated",
    "transcript",
    "for",
    "the",
    "dictation",
    "buffer",
)


@dataclass
class _MockEngine:
    vocabulary: tuple[str, ...]
    samples_per_token: int


class MockASRProvider(ModelBackedProvider):
    """Deterministic engine for demos and tests.

    Its "model" is a small JSON file written into the cache directory on
    acquire. The transcript is the vocabulary cycled once per
    ``samples_per_token`` samples, cut to the generation budget, so streaming
    output is always a prefix of final output.
    """

    PROVIDER_ID = "mock"
    DISPLAY_NAME = "Mock ASR"
    REQUIREMENTS = CapabilityRequirements()
    REQUIRED_FILES = (MODEL_FILE,)

    def __init__(
        self,
        cache_root: Path,
        *,
        vocabulary: Sequence[str] = DEFAULT_VOCABULARY,
        samples_per_token: int = 160,
        fail_acquires: int = 0,
        fail_loads: int = 0,
        load_delay_sec: float = 0.0,
        generate_delay_sec: float = 0.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(cache_root, **kwargs)
        if not vocabulary:
            raise ValueError("vocabulary must not be empty")
        self._vocabulary = tuple(vocabulary)
        self._samples_per_token = max(1, int(samples_per_token))
        # Fault injection: the next N acquires/loads raise.
        self.fail_acquires = int(fail_acquires)
        self.fail_loads = int(fail_loads)
        self._load_delay_sec = float(load_delay_sec)
        self._generate_delay_sec = float(generate_delay_sec)
        self.acquire_calls = 0
        self.download_count = 0
        self.load_calls = 0
        self.generate_calls = 0
        self.released_handles = 0

    async def _acquire(self, cache: ModelCache) -> Path:
        self.acquire_calls += 1
        if self.fail_acquires > 0:
            self.fail_acquires -= 1
            raise ConnectionError("simulated download failure")
        if cache.exists():
            return cache.resolve_path()
        path = cache.ensure_dir()
        payload = {"format": MODEL_FORMAT, "vocabulary": list(self._vocabulary)}
        (path / MODEL_FILE).write_text(json.dumps(payload), encoding="utf-8")
        self.download_count += 1
        return path

    async def _load(self, path: Path) -> _MockEngine:
        self.load_calls += 1
        if self._load_delay_sec > 0:
            await asyncio.sleep(self._load_delay_sec)
        if self.fail_loads > 0:
            self.fail_loads -= 1
            raise ValueError("simulated corrupted model file")
        raw = (path / MODEL_FILE).read_text(encoding="utf-8")
        data = json.loads(raw)
        if data.get("format") != MODEL_FORMAT:
            raise ValueError(f"unsupported mock model format: {data.get('format')!r}")
        vocabulary = tuple(str(w) for w in data.get("vocabulary") or [])
        if not vocabulary:
            raise ValueError("mock model has an empty vocabulary")
        return _MockEngine(vocabulary=vocabulary, samples_per_token=self._samples_per_token)

    async def _generate(self, handle: _MockEngine, audio: np.ndarray, max_new_tokens: int) -> str:
        self.generate_calls += 1
        if self._generate_delay_sec > 0:
            await asyncio.sleep(self._generate_delay_sec)
        n_tokens = max(1, int(audio.size) // handle.samples_per_token)
        n_tokens = min(n_tokens, int(max_new_tokens))
        vocab = handle.vocabulary
        return " ".join(vocab[i % len(vocab)] for i in range(n_tokens))

    async def _release(self, handle: Optional[_MockEngine]) -> None:
        self.released_handles += 1
