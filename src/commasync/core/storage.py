"""Storage helpers: crash-safe file replacement and JSON documents on disk."""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generic, TypeVar

from commasync.core.errors import ConfigCorrupt, InsufficientLocalSpace

T = TypeVar("T")


def ensure_directory(path: Path) -> Path:
    """Ensure the target directory exists and return it."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def atomic_write_bytes(path: Path, data: bytes, mode: int | None = None) -> Path:
    """Replace ``path`` with ``data`` without ever exposing a partial file.

    The content goes to a temporary file in the same directory, is fsynced and
    then renamed over the original.
    """

    ensure_directory(path.parent)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise

    _fsync_directory(path.parent)
    return path


def atomic_write_text(path: Path, content: str, mode: int | None = None) -> Path:
    return atomic_write_bytes(path, content.encode("utf-8"), mode=mode)


def _fsync_directory(path: Path) -> None:
    try:
        dir_fd = os.open(path, os.O_RDONLY)
    except OSError:  # pragma: no cover - platform dependent
        return
    try:
        os.fsync(dir_fd)
    except OSError:  # pragma: no cover - platform dependent
        pass
    finally:
        os.close(dir_fd)


class JsonDocument(Generic[T]):
    """A JSON file used as a small database.

    Every mutation is read-modify-write followed by an atomic replace, so a
    crash leaves either the previous or the new document on disk.
    """

    def __init__(
        self,
        path: Path,
        default_factory: Callable[[], T],
        validator: Callable[[Any], bool] | None = None,
    ) -> None:
        self.path = path
        self._default_factory = default_factory
        self._validator = validator

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> T:
        if not self.path.exists():
            return self._default_factory()

        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigCorrupt(self.path, f"unreadable ({exc})") from exc

        if not raw.strip():
            raise ConfigCorrupt(self.path, "empty file")

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigCorrupt(self.path, f"invalid JSON ({exc.msg} at line {exc.lineno})") from exc

        if self._validator is not None and not self._validator(data):
            raise ConfigCorrupt(self.path, "unexpected document structure")
        return data

    def save(self, data: T) -> None:
        atomic_write_text(self.path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")

    def update(self, mutate: Callable[[T], T | None]) -> T:
        """Load, apply ``mutate`` and atomically persist the result."""

        data = self.load()
        result = mutate(data)
        if result is not None:
            data = result
        self.save(data)
        return data

    def reinitialize(self, logger: logging.Logger | None = None) -> Path | None:
        """Move an unreadable document aside and start from the default value."""

        moved_to = move_aside(self.path, logger)
        self.save(self._default_factory())
        return moved_to


def move_aside(path: Path, logger: logging.Logger | None = None) -> Path | None:
    """Rename a corrupt file to ``<name>.corrupt-<timestamp>`` so it is kept but no longer read."""

    if not path.exists():
        return None
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    moved_to = path.with_name(f"{path.name}.corrupt-{stamp}")
    os.replace(path, moved_to)
    if logger:
        logger.warning("corrupt file preserved path=%s", moved_to)
    return moved_to


def check_free_space(directory: Path, required_bytes: int, margin_bytes: int = 0) -> int:
    """Raise ``InsufficientLocalSpace`` unless ``directory`` can hold ``required_bytes``."""

    probe = directory
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent

    free = shutil.disk_usage(probe).free
    if free < required_bytes + margin_bytes:
        raise InsufficientLocalSpace(
            f"Not enough space in {directory}: need {required_bytes + margin_bytes} bytes, "
            f"{free} bytes free"
        )
    return free


def join_remote(*parts: str) -> str:
    """Join remote path components with ``/``, dropping empty ones.

    A leading slash on the first component is kept so absolute SSH paths stay
    absolute.
    """

    cleaned = [part.strip("/") for part in parts if part and part.strip("/")]
    joined = "/".join(cleaned)
    if parts and parts[0].startswith("/"):
        joined = f"/{joined}"
    return joined
