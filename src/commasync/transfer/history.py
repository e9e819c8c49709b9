"""Append-only history of transfer attempts."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from commasync.core.errors import ConfigCorrupt
from commasync.core.models import TransferLogEntry
from commasync.core.storage import JsonDocument


def _is_entry_list(data: Any) -> bool:
    return isinstance(data, list) and all(isinstance(entry, dict) for entry in data)


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TransferLog:
    """JSON array of ``TransferLogEntry`` values; every append rewrites the file atomically.

    Recording is best-effort: an unreadable file is moved aside and a fresh
    history is started rather than failing the transfer being recorded.
    """

    def __init__(self, path: Path, logger: logging.Logger | None = None) -> None:
        self.document: JsonDocument[list[dict[str, Any]]] = JsonDocument(path, list, _is_entry_list)
        self.logger = logger or logging.getLogger(__name__)

    @property
    def path(self) -> Path:
        return self.document.path

    def append(self, entry: TransferLogEntry) -> None:
        try:
            self.document.update(lambda entries: entries.append(entry.to_dict()))
        except ConfigCorrupt as exc:
            self.logger.warning("transfer log unreadable, starting a new one reason=%s", exc.reason)
            self.reinitialize()
            self.document.update(lambda entries: entries.append(entry.to_dict()))

    def reinitialize(self) -> Path | None:
        return self.document.reinitialize(self.logger)

    def _entries(self) -> list[TransferLogEntry]:
        try:
            return [TransferLogEntry.from_dict(raw) for raw in self.document.load()]
        except (TypeError, ValueError) as exc:
            raise ConfigCorrupt(self.path, str(exc)) from exc

    def check(self) -> str | None:
        """Return why the history file cannot be read, or None when it is fine."""

        try:
            self._entries()
        except ConfigCorrupt as exc:
            return exc.reason
        return None

    def query_all(self) -> list[TransferLogEntry]:
        try:
            return self._entries()
        except ConfigCorrupt as exc:
            self.logger.warning("transfer log unreadable, treating it as empty reason=%s", exc.reason)
            return []

    def query_by_route(self, route_base_id: str) -> list[TransferLogEntry]:
        return [entry for entry in self.query_all() if entry.route_base_id == route_base_id]

    def prune(self, max_age_days: int, now: datetime | None = None) -> int:
        """Drop entries older than ``max_age_days``; returns how many were removed.

        Entries whose timestamp cannot be parsed are kept. An unreadable file
        is left alone.
        """

        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=max_age_days)
        removed = 0

        def _mutate(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
            nonlocal removed
            kept = []
            for raw in entries:
                stamp = _parse_timestamp(str(raw.get("timestamp") or ""))
                if stamp is not None and stamp < cutoff:
                    removed += 1
                    continue
                kept.append(raw)
            return kept

        if not self.document.exists():
            return 0
        try:
            self.document.update(_mutate)
        except ConfigCorrupt as exc:
            self.logger.warning("transfer log unreadable, not pruned reason=%s", exc.reason)
            return 0
        return removed
