from __future__ import annotations

"""
HTTP surface for the transcription provider registry.

Design intent:
- Keep API orchestration thin and typed.
- Delegate lifecycle and transcription to providers owned by the registry.
- Return typed errors instead of letting provider failures escape.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Literal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from dictation_backend.internal_core.asr.base import (
    ASRError,
    InvalidAudioError,
    ModelCacheError,
    NotReadyError,
    ProviderUnavailableError,
    RecoveryExhaustedError,
    TranscriptionProvider,
)
from dictation_backend.internal_core.asr.registry import (
    ProviderRegistry,
    UnknownProviderError,
    build_default_registry,
)
from dictation_backend.internal_core.config import load_config
from dictation_backend.internal_core.contracts import (
    LifecycleEvent,
    PrepareOutcome,
    ProviderStatus,
    TranscriptionMode,
    TranscriptionResult,
)
from dictation_backend.internal_core.logging_setup import configure_logging


class TranscribeRequest(BaseModel):
    samples: List[float] = Field(min_length=1)
    mode: TranscriptionMode = "final"


class ErrorDetail(BaseModel):
    code: str
    message: str
    provider: str


class RecoveryErrorDetail(ErrorDetail):
    original: str
    retry: str


class ClearCacheResponse(BaseModel):
    status: ProviderStatus
    cleared: Literal[True] = True


logger = logging.getLogger(__name__)

_REGISTRY_LOCK = threading.Lock()


def _get_registry() -> ProviderRegistry:
    existing = getattr(app.state, "provider_registry", None)
    if isinstance(existing, ProviderRegistry):
        return existing
    # Sync endpoints run in the thread pool; only one may build the registry.
    with _REGISTRY_LOCK:
        existing = getattr(app.state, "provider_registry", None)
        if isinstance(existing, ProviderRegistry):
            return existing
        cfg = load_config()
        configure_logging(cfg)
        created = build_default_registry(cfg)
        setattr(app.state, "provider_registry", created)
        logger.info("provider registry created providers=%s default=%s", created.list_ids(), cfg.DICTATION_ASR_PROVIDER)
        return created


@asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    registry = getattr(_app.state, "provider_registry", None)
    if isinstance(registry, ProviderRegistry):
        await registry.shutdown()


app = FastAPI(title="dictation backend service", lifespan=_lifespan)


def _provider_or_404(provider_id: str) -> TranscriptionProvider:
    try:
        return _get_registry().get(provider_id)
    except UnknownProviderError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _error_detail(e: ASRError) -> dict:
    return ErrorDetail(code=e.code, message=e.message, provider=e.provider_name).model_dump()


@app.get("/providers", response_model=list[ProviderStatus])
def list_providers() -> list[ProviderStatus]:
    return _get_registry().statuses()


@app.get("/providers/{provider_id}", response_model=ProviderStatus)
def get_provider(provider_id: str) -> ProviderStatus:
    return _provider_or_404(provider_id).status()


@app.post("/providers/{provider_id}/prepare", response_model=PrepareOutcome)
async def prepare_provider(provider_id: str) -> PrepareOutcome:
    provider = _provider_or_404(provider_id)
    progress: list[float] = []
    try:
        await provider.prepare(progress.append)
    except ProviderUnavailableError as e:
        raise HTTPException(status_code=409, detail=_error_detail(e))
    except RecoveryExhaustedError as e:
        logger.warning("prepare exhausted recovery provider=%s original=%s retry=%s", provider_id, e.original, e.retry)
        detail = RecoveryErrorDetail(
            code=e.code,
            message=e.message,
            provider=e.provider_name,
            original=str(e.original),
            retry=str(e.retry),
        )
        raise HTTPException(status_code=503, detail=detail.model_dump())
    except ASRError as e:
        raise HTTPException(status_code=500, detail=_error_detail(e))
    return PrepareOutcome(status=await asyncio.to_thread(provider.status), progress=progress)


@app.post("/providers/{provider_id}/transcribe", response_model=TranscriptionResult)
async def transcribe(provider_id: str, payload: TranscribeRequest) -> TranscriptionResult:
    provider = _provider_or_404(provider_id)
    try:
        if payload.mode == "streaming":
            return await provider.transcribe_streaming(payload.samples)
        return await provider.transcribe_final(payload.samples)
    except NotReadyError as e:
        raise HTTPException(status_code=409, detail=_error_detail(e))
    except InvalidAudioError as e:
        raise HTTPException(status_code=422, detail=_error_detail(e))
    except ASRError as e:
        raise HTTPException(status_code=500, detail=_error_detail(e))


@app.delete("/providers/{provider_id}/cache", response_model=ClearCacheResponse)
async def clear_provider_cache(provider_id: str) -> ClearCacheResponse:
    provider = _provider_or_404(provider_id)
    try:
        await provider.clear_cache()
    except ModelCacheError as e:
        raise HTTPException(status_code=500, detail=_error_detail(e))
    return ClearCacheResponse(status=await asyncio.to_thread(provider.status))


@app.get("/providers/{provider_id}/events", response_model=list[LifecycleEvent])
def provider_events(provider_id: str) -> list[LifecycleEvent]:
    _provider_or_404(provider_id)
    return _get_registry().events.list(provider_id)
