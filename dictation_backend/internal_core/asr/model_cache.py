from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Sequence

from .base import ModelCacheError

logger = logging.getLogger(__name__)


def _validate_provider_id(provider_id: str) -> str:
    pid = (provider_id or "").strip()
    if not pid or pid in {".", ".."} or "/" in pid or "\\" in pid:
        raise ValueError(f"invalid provider id for cache directory: {provider_id!r}")
    return pid


class ModelCache:
    """On-disk model assets for one provider: ``<root>/<provider_id>/``.

    Presence is binary. Corruption is not detected here; it only shows up as a
    load failure.
    """

    def __init__(self, root: Path, provider_id: str, required_files: Sequence[str] = ()):
        self._root = Path(root)
        self._provider_id = _validate_provider_id(provider_id)
        self._required_files = tuple(required_files)

    @property
    def provider_id(self) -> str:
        return self._provider_id

    def resolve_path(self) -> Path:
        return self._root / self._provider_id

    def ensure_dir(self) -> Path:
        path = self.resolve_path()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def exists(self) -> bool:
        path = self.resolve_path()
        if not path.is_dir():
            return False
        if self._required_files:
            return all((path / name).exists() for name in self._required_files)
        return any(path.iterdir())

    def clear(self) -> bool:
        """Delete the model directory. Returns False when there was nothing to delete."""
        path = self.resolve_path()
        if not path.exists():
            return False
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise ModelCacheError(f"Failed to delete model cache {path}: {e}", self._provider_id) from e
        logger.info("model cache cleared provider=%s path=%s", self._provider_id, path)
        return True

    def size_bytes(self) -> int:
        path = self.resolve_path()
        if not path.is_dir():
            return 0
        total = 0
        for item in path.rglob("*"):
            try:
                if item.is_file():
                    total += item.stat().st_size
            except OSError:
                continue
        return total
