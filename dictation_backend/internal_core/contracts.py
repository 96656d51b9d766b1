from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ProviderState = Literal["uninitialized", "preparing", "ready", "failed"]

TranscriptionMode = Literal["streaming", "final"]

LifecycleEventType = Literal[
    "PREPARE_STARTED",
    "PREPARE_SKIPPED",
    "MODEL_ACQUIRED",
    "MODEL_LOADED",
    "LOAD_FAILED",
    "CACHE_CLEARED",
    "RECOVERY_EXHAUSTED",
    "PROVIDER_UNAVAILABLE",
    "PROVIDER_SHUTDOWN",
]


class TranscriptionResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    text: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class LifecycleEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    provider_id: str
    type: LifecycleEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None


class ProviderStatus(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider_id: str
    name: str
    available: bool
    unavailable_reason: str = ""
    ready: bool
    state: ProviderState
    models_on_disk: bool
    cache_bytes: int = 0
    last_error: Optional[str] = None


class PrepareOutcome(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: ProviderStatus
    progress: List[float] = Field(default_factory=list)
