"""Helpers for building and persisting machine-readable sync-all summaries."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from commasync.core.storage import atomic_write_text, ensure_directory


@dataclass(slots=True)
class RouteResultData:
    """Summary of a single route transfer."""

    route_base_id: str
    status: str
    uploaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    total_size: int = 0
    uploaded_bytes: int = 0
    duration: float = 0.0
    stage: str | None = None
    state_preserved: bool | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "route_base_id": self.route_base_id,
            "status": self.status,
            "uploaded": self.uploaded,
            "skipped": self.skipped,
            "total_size": self.total_size,
            "uploaded_bytes": self.uploaded_bytes,
            "duration": self.duration,
            "stage": self.stage,
            "state_preserved": self.state_preserved,
            "error": self.error,
        }


class SyncSummaryBuilder:
    """Accumulate per-run data and store it as JSON."""

    def __init__(self, *, run_id: str, timestamp: str, location_id: str, destination: str) -> None:
        self.run_id = run_id
        self.timestamp = timestamp
        self.location_id = location_id
        self.destination = destination
        self.routes_total = 0
        self.routes_success = 0
        self.routes_failed = 0
        self.files_uploaded = 0
        self.files_skipped = 0
        self.bytes_uploaded = 0
        self._routes: list[RouteResultData] = []

    def set_routes_total(self, total: int) -> None:
        self.routes_total = max(0, total)

    def add_route(self, route: RouteResultData) -> None:
        self._routes.append(route)

        if route.status == "success":
            self.routes_success += 1
        elif route.status == "failed":
            self.routes_failed += 1

        self.files_uploaded += len(route.uploaded)
        self.files_skipped += len(route.skipped)
        self.bytes_uploaded += route.uploaded_bytes

    @property
    def routes(self) -> list[RouteResultData]:
        return list(self._routes)

    def build(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "location_id": self.location_id,
            "destination": self.destination,
            "totals": {
                "routes_total": self.routes_total,
                "routes_success": self.routes_success,
                "routes_failed": self.routes_failed,
                "files_uploaded": self.files_uploaded,
                "files_skipped": self.files_skipped,
                "bytes_uploaded": self.bytes_uploaded,
            },
            "routes": [route.to_dict() for route in self._routes],
        }

    def save(self, summary_dir: Path, logger: logging.Logger) -> Path:
        ensure_directory(summary_dir)

        target = summary_dir / f"run_{self.run_id}.json"
        atomic_write_text(target, json.dumps(self.build(), indent=2, ensure_ascii=False) + "\n")

        logger.info("run_summary_json_saved path=%s", target)
        return target
