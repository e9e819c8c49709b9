"""Per-route transfer progress markers."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from commasync.core.errors import ConfigCorrupt
from commasync.core.models import TransferState
from commasync.core.storage import atomic_write_text, move_aside

STATE_PREFIX = "transfer_"
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class TransferStateStore:
    """One JSON file per in-flight route transfer under ``state_dir``.

    An unreadable state file is treated as absent by ``load`` and
    ``list_all``; ``corrupt_files`` reports it so it can be moved aside.
    """

    def __init__(self, state_dir: Path, logger: logging.Logger | None = None) -> None:
        self.state_dir = state_dir
        self.logger = logger or logging.getLogger(__name__)

    def path_for(self, route_base_id: str) -> Path:
        return self.state_dir / f"{STATE_PREFIX}{_UNSAFE.sub('_', route_base_id)}.json"

    def save(self, route_base_id: str, location_id: str, progress: int) -> TransferState:
        if not 0 <= progress <= 100:
            raise ValueError(f"progress must be between 0 and 100, got {progress}")
        state = TransferState(
            route_base_id=route_base_id,
            location_id=location_id,
            progress_percent=progress,
            timestamp=utc_timestamp(),
        )
        atomic_write_text(self.path_for(route_base_id), json.dumps(state.to_dict(), indent=2) + "\n")
        return state

    def _read(self, path: Path) -> TransferState:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigCorrupt(path, str(exc)) from exc
        if not isinstance(raw, dict):
            raise ConfigCorrupt(path, "state is not an object")
        try:
            return TransferState.from_dict(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigCorrupt(path, str(exc)) from exc

    def _state_files(self) -> list[Path]:
        if not self.state_dir.is_dir():
            return []
        return sorted(self.state_dir.glob(f"{STATE_PREFIX}*.json"))

    def load(self, route_base_id: str) -> TransferState | None:
        path = self.path_for(route_base_id)
        if not path.exists():
            return None
        try:
            return self._read(path)
        except ConfigCorrupt as exc:
            self.logger.warning(
                "unreadable transfer state ignored path=%s reason=%s",
                path,
                exc.reason,
                extra={"route": route_base_id},
            )
            return None

    def clear(self, route_base_id: str) -> bool:
        path = self.path_for(route_base_id)
        existed = path.exists()
        path.unlink(missing_ok=True)
        return existed

    def list_all(self) -> list[TransferState]:
        """Return every readable interrupted transfer, oldest first."""

        states = []
        for path in self._state_files():
            try:
                states.append(self._read(path))
            except ConfigCorrupt as exc:
                self.logger.warning("unreadable transfer state skipped path=%s reason=%s", path, exc.reason)
        states.sort(key=lambda state: state.timestamp)
        return states

    def corrupt_files(self) -> list[ConfigCorrupt]:
        found = []
        for path in self._state_files():
            try:
                self._read(path)
            except ConfigCorrupt as exc:
                found.append(exc)
        return found

    def quarantine(self, path: Path) -> Path | None:
        """Move an unreadable state file out of the store."""

        if path.parent != self.state_dir:
            raise ValueError(f"{path} is not a transfer state file")
        return move_aside(path, self.logger)
