import pytest

from dictation_backend.internal_core.asr.base import ModelCacheError
from dictation_backend.internal_core.asr.model_cache import ModelCache


def test_resolve_path_is_scoped_by_provider_and_not_created(tmp_path) -> None:
    cache = ModelCache(tmp_path, "whisper_hf")

    assert cache.resolve_path() == tmp_path / "whisper_hf"
    assert not cache.resolve_path().exists()
    assert cache.exists() is False


def test_exists_requires_a_non_empty_directory(tmp_path) -> None:
    cache = ModelCache(tmp_path, "engine")
    cache.ensure_dir()
    assert cache.exists() is False

    (cache.resolve_path() / "weights.bin").write_bytes(b"\x01")
    assert cache.exists() is True


def test_exists_checks_required_files(tmp_path) -> None:
    cache = ModelCache(tmp_path, "engine", required_files=("config.json", "model.safetensors"))
    path = cache.ensure_dir()
    (path / "config.json").write_text("{}", encoding="utf-8")
    assert cache.exists() is False

    (path / "model.safetensors").write_bytes(b"\x00")
    assert cache.exists() is True


def test_clear_missing_directory_is_not_an_error(tmp_path) -> None:
    cache = ModelCache(tmp_path, "engine")

    assert cache.clear() is False


def test_clear_removes_nested_assets(tmp_path) -> None:
    cache = ModelCache(tmp_path, "engine")
    path = cache.ensure_dir()
    (path / "shards").mkdir()
    (path / "shards" / "part-0").write_bytes(b"\x00" * 16)

    assert cache.clear() is True
    assert not path.exists()
    assert tmp_path.exists()


def test_clear_wraps_os_errors(tmp_path, monkeypatch) -> None:
    cache = ModelCache(tmp_path, "engine")
    (cache.ensure_dir() / "weights.bin").write_bytes(b"\x00")

    def failing_rmtree(path):
        raise PermissionError("read-only volume")

    monkeypatch.setattr("dictation_backend.internal_core.asr.model_cache.shutil.rmtree", failing_rmtree)

    with pytest.raises(ModelCacheError) as info:
        cache.clear()
    assert info.value.code == "CACHE_CLEAR_FAILED"


def test_size_bytes_sums_files(tmp_path) -> None:
    cache = ModelCache(tmp_path, "engine")
    assert cache.size_bytes() == 0
    path = cache.ensure_dir()
    (path / "a.bin").write_bytes(b"\x00" * 10)
    (path / "sub").mkdir()
    (path / "sub" / "b.bin").write_bytes(b"\x00" * 5)

    assert cache.size_bytes() == 15


@pytest.mark.parametrize("bad_id", ["", ".", "..", "a/b", "a\\b"])
def test_invalid_provider_ids_are_rejected(tmp_path, bad_id) -> None:
    with pytest.raises(ValueError):
        ModelCache(tmp_path, bad_id)
