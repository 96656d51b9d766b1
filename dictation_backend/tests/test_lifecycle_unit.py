import asyncio
import gc
import json
import shutil
import time

import pytest

from dictation_backend.internal_core.asr.base import (
    LoadFailureError,
    ModelCacheError,
    NotReadyError,
    ProviderUnavailableError,
    RecoveryExhaustedError,
)
from dictation_backend.internal_core.asr.capability import (
    CapabilityGate,
    CapabilityRequirements,
    PlatformFacts,
)
from dictation_backend.internal_core.asr.lifecycle import (
    PROGRESS_DONE,
    PROGRESS_START,
    ModelLifecycle,
)
from dictation_backend.internal_core.asr.mock import MODEL_FILE, MockASRProvider
from dictation_backend.internal_core.asr.model_cache import ModelCache
from dictation_backend.internal_core.audit import LifecycleEventLog

_APPLE_SILICON_ONLY = CapabilityRequirements(
    arch_families=frozenset({"arm64"}),
    systems=frozenset({"Darwin"}),
    min_os_version=(15, 0),
)


def _count_cache_clears(monkeypatch, provider: MockASRProvider) -> list:
    calls = []
    original_clear = provider.cache.clear

    def spy_clear() -> bool:
        calls.append(1)
        return original_clear()

    monkeypatch.setattr(provider.cache, "clear", spy_clear)
    return calls


def test_prepare_fresh_environment_downloads_and_reports_progress(tmp_path) -> None:
    provider = MockASRProvider(tmp_path)
    seen: list[float] = []

    asyncio.run(provider.prepare(seen.append))

    assert provider.is_ready
    assert provider.state == "ready"
    assert provider.models_exist_on_disk()
    assert provider.download_count == 1
    assert seen[0] == PROGRESS_START
    assert seen[-1] == PROGRESS_DONE
    assert seen == sorted(seen)


def test_prepare_when_ready_is_a_no_op(tmp_path, monkeypatch) -> None:
    provider = MockASRProvider(tmp_path)
    asyncio.run(provider.prepare())
    calls_before = (provider.acquire_calls, provider.load_calls)

    def no_disk_access() -> bool:
        raise AssertionError("prepare touched the cache while ready")

    monkeypatch.setattr(provider.cache, "exists", no_disk_access)
    seen: list[float] = []
    asyncio.run(provider.prepare(seen.append))

    assert seen == []
    assert (provider.acquire_calls, provider.load_calls) == calls_before


def test_prepare_recovers_from_corrupted_cache(tmp_path, monkeypatch) -> None:
    model_dir = tmp_path / "mock"
    model_dir.mkdir()
    (model_dir / MODEL_FILE).write_text('{"format": 1, "vocab', encoding="utf-8")
    provider = MockASRProvider(tmp_path)
    clears = _count_cache_clears(monkeypatch, provider)
    assert provider.models_exist_on_disk()

    seen: list[float] = []
    asyncio.run(provider.prepare(seen.append))

    assert provider.is_ready
    assert provider.load_calls == 2
    assert provider.download_count == 1
    assert len(clears) == 1
    assert provider.lifecycle.recoveries == 1
    assert json.loads((model_dir / MODEL_FILE).read_text(encoding="utf-8"))["format"] == 1
    assert seen == sorted(seen)
    assert seen[-1] == PROGRESS_DONE
    assert provider.lifecycle.last_error is None


def test_prepare_recovers_from_transient_download_failure(tmp_path) -> None:
    provider = MockASRProvider(tmp_path, fail_acquires=1)

    asyncio.run(provider.prepare())

    assert provider.is_ready
    assert provider.acquire_calls == 2
    assert provider.download_count == 1


def test_prepare_gives_up_after_single_retry_with_both_causes(tmp_path, monkeypatch) -> None:
    provider = MockASRProvider(tmp_path, fail_loads=100)
    clears = _count_cache_clears(monkeypatch, provider)

    with pytest.raises(RecoveryExhaustedError) as info:
        asyncio.run(provider.prepare())

    err = info.value
    assert err.code == "RECOVERY_EXHAUSTED"
    assert isinstance(err.original, LoadFailureError)
    assert isinstance(err.retry, LoadFailureError)
    assert err.original is not err.retry
    assert err.__cause__ is err.retry
    assert "simulated corrupted model file" in str(err.original)
    assert err.causes == (err.original, err.retry)
    assert provider.load_calls == 2
    assert provider.acquire_calls == 2
    assert provider.lifecycle.load_attempts == 2
    assert len(clears) == 1
    assert not provider.is_ready
    assert provider.state == "failed"
    assert provider.status().last_error


def test_prepare_after_failure_can_succeed_on_manual_retry(tmp_path) -> None:
    provider = MockASRProvider(tmp_path, fail_loads=2)
    with pytest.raises(RecoveryExhaustedError):
        asyncio.run(provider.prepare())

    asyncio.run(provider.prepare())

    assert provider.is_ready
    assert provider.state == "ready"
    assert provider.lifecycle.last_error is None


def test_transcribe_before_prepare_fails_with_not_ready(tmp_path) -> None:
    provider = MockASRProvider(tmp_path)

    with pytest.raises(NotReadyError) as info:
        asyncio.run(provider.transcribe([1.0, -1.0, 0.0]))

    assert info.value.code == "PROVIDER_NOT_READY"
    assert info.value.state == "uninitialized"
    assert provider.generate_calls == 0
    with pytest.raises(NotReadyError):
        asyncio.run(provider.transcribe_streaming([1.0, -1.0, 0.0]))
    assert provider.generate_calls == 0


def test_unsupported_platform_is_rejected_without_touching_cache(tmp_path) -> None:
    facts = PlatformFacts(machine="x86_64", system="Darwin", os_version="14.5")
    provider = MockASRProvider(tmp_path, requirements=_APPLE_SILICON_ONLY, facts=facts)

    assert provider.is_available is False
    assert provider.support.supported is False
    status = provider.status()
    assert status.available is False
    assert status.unavailable_reason == provider.support.reason
    with pytest.raises(ProviderUnavailableError) as info:
        asyncio.run(provider.prepare())

    assert "x86_64" in info.value.reason
    assert provider.acquire_calls == 0
    assert not (tmp_path / "mock").exists()
    assert provider.state == "uninitialized"


def test_clear_cache_resets_readiness_and_deletes_assets(tmp_path) -> None:
    provider = MockASRProvider(tmp_path)
    asyncio.run(provider.prepare())

    asyncio.run(provider.clear_cache())

    assert provider.is_ready is False
    assert provider.models_exist_on_disk() is False
    assert provider.state == "uninitialized"
    assert provider.released_handles == 1


def test_clear_cache_on_fresh_provider_is_not_an_error(tmp_path) -> None:
    provider = MockASRProvider(tmp_path)

    asyncio.run(provider.clear_cache())

    assert provider.state == "uninitialized"
    assert provider.released_handles == 0


def test_shutdown_keeps_assets_on_disk(tmp_path) -> None:
    provider = MockASRProvider(tmp_path)
    asyncio.run(provider.prepare())

    asyncio.run(provider.shutdown())

    assert provider.is_ready is False
    assert provider.models_exist_on_disk() is True
    assert provider.released_handles == 1


def test_concurrent_prepare_calls_share_one_load(tmp_path) -> None:
    provider = MockASRProvider(tmp_path, load_delay_sec=0.05)
    seen_a: list[float] = []
    seen_b: list[float] = []

    async def run() -> None:
        await asyncio.gather(
            provider.prepare(seen_a.append),
            provider.prepare(seen_b.append),
            provider.prepare(),
        )

    asyncio.run(run())

    assert provider.is_ready
    assert provider.acquire_calls == 1
    assert provider.load_calls == 1
    assert seen_a[-1] == PROGRESS_DONE
    assert seen_b[-1] == PROGRESS_DONE
    assert seen_b == sorted(seen_b)


def test_transcribe_during_prepare_fails_fast(tmp_path) -> None:
    provider = MockASRProvider(tmp_path, load_delay_sec=0.05)

    async def run() -> str:
        preparing = asyncio.create_task(provider.prepare())
        await asyncio.sleep(0)
        try:
            await provider.transcribe([0.1] * 400)
        except NotReadyError as e:
            state = e.state
        else:
            state = "transcribed"
        await preparing
        return state

    state = asyncio.run(run())

    assert state in {"uninitialized", "preparing"}
    assert provider.generate_calls == 0
    assert provider.is_ready


def test_clear_cache_waits_for_in_flight_transcription(tmp_path) -> None:
    provider = MockASRProvider(tmp_path, generate_delay_sec=0.05)

    async def run():
        await provider.prepare()
        transcription = asyncio.create_task(provider.transcribe_final([0.1] * 480))
        await asyncio.sleep(0.01)
        assert provider.lifecycle.active_transcriptions == 1
        await provider.clear_cache()
        finished_before_clear_returned = transcription.done()
        return finished_before_clear_returned, await transcription

    finished, result = asyncio.run(run())

    assert finished is True
    assert result.text.split() == ["(mock)", "simulated", "transcript"]
    assert provider.is_ready is False
    assert provider.released_handles == 1
    assert provider.lifecycle.active_transcriptions == 0


def test_progress_callback_errors_do_not_abort_prepare(tmp_path) -> None:
    provider = MockASRProvider(tmp_path)

    def broken_observer(value: float) -> None:
        raise RuntimeError("observer broke")

    asyncio.run(provider.prepare(broken_observer))

    assert provider.is_ready


def test_lifecycle_attempts_acquire_and_load_exactly_twice(tmp_path) -> None:
    cache = ModelCache(tmp_path, "engine")
    gate = CapabilityGate(CapabilityRequirements(), PlatformFacts("arm64", "Darwin", "15.0"))
    events = LifecycleEventLog()
    attempts: list[str] = []

    async def acquire(c: ModelCache):
        attempts.append("acquire")
        path = c.ensure_dir()
        (path / "weights.bin").write_bytes(b"\x00" * 8)
        return path

    async def load(path):
        attempts.append("load")
        raise OSError("truncated weights")

    lifecycle = ModelLifecycle(
        provider_id="engine",
        provider_name="Engine",
        gate=gate,
        cache=cache,
        acquire=acquire,
        load=load,
        events=events,
    )

    with pytest.raises(RecoveryExhaustedError) as info:
        asyncio.run(lifecycle.prepare())

    assert attempts == ["acquire", "load", "acquire", "load"]
    assert "OSError" in info.value.original.message
    assert lifecycle.state == "failed"
    types = [e.type for e in events.list("engine")]
    assert types.count("LOAD_FAILED") == 2
    assert types.count("CACHE_CLEARED") == 1
    assert types[-1] == "RECOVERY_EXHAUSTED"


def test_failed_recovery_wipe_still_retries_the_load(tmp_path, monkeypatch) -> None:
    provider = MockASRProvider(tmp_path, fail_loads=1)

    def read_only_clear() -> bool:
        raise ModelCacheError("read-only volume", provider.name)

    monkeypatch.setattr(provider.cache, "clear", read_only_clear)

    asyncio.run(provider.prepare())

    assert provider.is_ready
    assert provider.load_calls == 2
    assert provider.lifecycle.recoveries == 1


def test_clear_cache_during_prepare_waits_then_leaves_nothing_behind(tmp_path) -> None:
    provider = MockASRProvider(tmp_path, load_delay_sec=0.05)

    async def run() -> None:
        preparing = asyncio.create_task(provider.prepare())
        await asyncio.sleep(0.01)
        assert provider.lifecycle.is_preparing
        await provider.clear_cache()
        await preparing

    asyncio.run(run())

    assert provider.load_calls == 1
    assert provider.is_ready is False
    assert provider.models_exist_on_disk() is False
    assert provider.released_handles == 1


def test_clear_cache_keeps_the_event_loop_responsive(tmp_path, monkeypatch) -> None:
    provider = MockASRProvider(tmp_path)
    real_rmtree = shutil.rmtree

    def slow_rmtree(path, *args, **kwargs):
        time.sleep(0.3)
        real_rmtree(path, *args, **kwargs)

    monkeypatch.setattr("dictation_backend.internal_core.asr.model_cache.shutil.rmtree", slow_rmtree)

    async def run() -> float:
        await provider.prepare()
        gaps: list[float] = []
        stop = asyncio.Event()

        async def ticker() -> None:
            last = time.monotonic()
            while not stop.is_set():
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        ticking = asyncio.create_task(ticker())
        await asyncio.sleep(0.02)
        await provider.clear_cache()
        stop.set()
        await ticking
        return max(gaps)

    max_gap = asyncio.run(run())

    assert max_gap < 0.2
    assert provider.models_exist_on_disk() is False


def test_failed_prepare_with_no_remaining_waiters_reports_nothing_unretrieved(tmp_path) -> None:
    reported: list[dict] = []

    async def run() -> None:
        asyncio.get_running_loop().set_exception_handler(lambda loop, context: reported.append(context))
        provider = MockASRProvider(tmp_path, fail_loads=10, load_delay_sec=0.02)
        waiter = asyncio.create_task(provider.prepare())
        await asyncio.sleep(0.01)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        while provider.lifecycle.is_preparing:
            await asyncio.sleep(0.01)
        assert provider.state == "failed"
        del provider, waiter
        gc.collect()

    asyncio.run(run())

    assert [c for c in reported if "exception" in c] == []
