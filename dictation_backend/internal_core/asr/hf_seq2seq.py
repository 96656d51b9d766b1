from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import numpy as np

from .base import LoadFailureError
from .capability import CapabilityRequirements
from .model_backed import ModelBackedProvider
from .model_cache import ModelCache

logger = logging.getLogger(__name__)

_SNAPSHOT_PATTERNS = ["*.json", "*.safetensors", "*.txt", "*.model", "*.tiktoken"]

# Whisper-style decoders reserve a few positions for the forced prompt tokens.
_PROMPT_TOKEN_RESERVE = 4


@dataclass
class _HFRuntime:
    torch: object
    processor: object
    model: object
    device: str
    dtype: object = None


class WhisperHFProvider(ModelBackedProvider):
    PROVIDER_ID = "whisper_hf"
    DISPLAY_NAME = "Whisper (transformers)"
    REQUIREMENTS = CapabilityRequirements(arch_families=frozenset({"arm64", "x86_64"}))
    REQUIRED_FILES = ("config.json",)

    def __init__(
        self,
        cache_root: Path,
        model_ref: str = "openai/whisper-small",
        *,
        device: Optional[str] = None,
        fp16: bool = False,
        language: str = "",
        sample_rate: int = 16000,
        **kwargs: Any,
    ) -> None:
        super().__init__(cache_root, **kwargs)
        self._model_ref = model_ref
        self._device_override = device
        self._fp16 = fp16
        self._language = (language or "").strip()
        self._sr = int(sample_rate)

    @property
    def model_ref(self) -> str:
        return self._model_ref

    def _pick_device(self, torch_mod) -> str:
        if self._device_override:
            return self._device_override
        if getattr(torch_mod.cuda, "is_available", lambda: False)():
            return "cuda"
        backends = getattr(torch_mod, "backends", None)
        mps = getattr(backends, "mps", None) if backends else None
        if mps is not None and getattr(mps, "is_available", lambda: False)():
            return "mps"
        return "cpu"

    async def _acquire(self, cache: ModelCache) -> Path:
        if cache.exists():
            return cache.resolve_path()

        local_ref = Path(self._model_ref).expanduser()
        if local_ref.is_dir():
            target = cache.ensure_dir()
            logger.info("copying local model provider=%s source=%s target=%s", self.PROVIDER_ID, local_ref, target)
            await asyncio.to_thread(shutil.copytree, local_ref, target, dirs_exist_ok=True)
            return target

        try:
            from huggingface_hub import snapshot_download  # type: ignore
        except Exception as e:
            raise LoadFailureError(f"Model download requires huggingface_hub installed: {e}", self.name)

        target = cache.ensure_dir()
        logger.info("downloading model provider=%s repo=%s target=%s", self.PROVIDER_ID, self._model_ref, target)
        await asyncio.to_thread(
            snapshot_download,
            repo_id=self._model_ref,
            local_dir=str(target),
            allow_patterns=_SNAPSHOT_PATTERNS,
        )
        return target

    async def _load(self, path: Path) -> _HFRuntime:
        return await asyncio.to_thread(self._load_blocking, path)

    def _load_blocking(self, path: Path) -> _HFRuntime:
        try:
            import torch  # type: ignore
            from transformers import AutoModelForSpeechSeq2Seq, AutoProcessor  # type: ignore
        except Exception as e:
            raise LoadFailureError(f"{self.name} requires torch+transformers installed: {e}", self.name)

        logging.getLogger("transformers").setLevel(logging.ERROR)
        device = self._pick_device(torch)
        dtype = torch.float16 if self._fp16 and device in {"cuda", "mps"} else torch.float32
        processor = AutoProcessor.from_pretrained(str(path), local_files_only=True)
        model = AutoModelForSpeechSeq2Seq.from_pretrained(
            str(path),
            local_files_only=True,
            torch_dtype=dtype,
            low_cpu_mem_usage=True,
        ).to(device)
        model.eval()
        logger.info("model loaded provider=%s device=%s dtype=%s", self.PROVIDER_ID, device, dtype)
        return _HFRuntime(torch=torch, processor=processor, model=model, device=device, dtype=dtype)

    def effective_budget(self, rt: _HFRuntime, requested: int) -> int:
        cfg = getattr(rt.model, "config", None)
        cap = getattr(cfg, "max_target_positions", None)
        if isinstance(cap, int) and cap > _PROMPT_TOKEN_RESERVE:
            return max(1, min(int(requested), cap - _PROMPT_TOKEN_RESERVE))
        return max(1, int(requested))

    async def _generate(self, handle: _HFRuntime, audio: np.ndarray, max_new_tokens: int) -> str:
        return await asyncio.to_thread(self._generate_blocking, handle, audio, max_new_tokens)

    def _generate_blocking(self, rt: _HFRuntime, audio: np.ndarray, max_new_tokens: int) -> str:
        torch_mod = rt.torch
        inputs = rt.processor(audio, sampling_rate=self._sr, return_tensors="pt")
        features = inputs["input_features"] if "input_features" in inputs else inputs["input_values"]
        features = features.to(rt.device)
        if rt.dtype is not None:
            features = features.to(rt.dtype)

        gen_kwargs: dict[str, object] = {"max_new_tokens": self.effective_budget(rt, max_new_tokens)}
        if self._language:
            gen_kwargs["language"] = self._language
            gen_kwargs["task"] = "transcribe"

        with torch_mod.inference_mode():
            pred_ids = rt.model.generate(features, **gen_kwargs)
        text = rt.processor.batch_decode(pred_ids, skip_special_tokens=True)[0]
        return " ".join((text or "").split()).strip()

    async def _release(self, handle: _HFRuntime) -> None:
        torch_mod = handle.torch
        device = handle.device
        handle.model = None
        if device == "cuda":
            cuda = getattr(torch_mod, "cuda", None)
            if cuda is not None:
                cuda.empty_cache()
