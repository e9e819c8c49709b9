"""Discovery of route segment directories."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

SEGMENT_SEPARATOR = "--"
LOG_KINDS: tuple[str, ...] = ("rlog", "qlog")
# (camera, container extension)
CAMERAS: tuple[tuple[str, str], ...] = (
    ("dcamera", "hevc"),
    ("ecamera", "hevc"),
    ("fcamera", "hevc"),
    ("qcamera", "ts"),
)


@dataclass(frozen=True, slots=True)
class RouteSegment:
    """One recorded segment directory, e.g. ``<route_base_id>--7``."""

    route_base_id: str
    segment_index: int
    path: Path

    def log_file(self, kind: str) -> Path | None:
        candidate = self.path / kind
        return candidate if candidate.is_file() else None

    def camera_file(self, camera: str, extension: str) -> Path | None:
        candidate = self.path / f"{camera}.{extension}"
        return candidate if candidate.is_file() else None


def split_segment_name(name: str) -> tuple[str, int] | None:
    """Split ``<base>--<index>`` into its parts; the base may contain ``--`` itself."""

    base, separator, index = name.rpartition(SEGMENT_SEPARATOR)
    if not separator or not base or not index.isdigit():
        return None
    return base, int(index)


def discover_segments(routes_dir: Path, route_base_id: str) -> list[RouteSegment]:
    """Return the segments of a route in ascending numeric index order."""

    if not routes_dir.is_dir():
        return []

    segments: list[RouteSegment] = []
    for entry in routes_dir.iterdir():
        if not entry.is_dir():
            continue
        parsed = split_segment_name(entry.name)
        if parsed is None or parsed[0] != route_base_id:
            continue
        segments.append(RouteSegment(route_base_id=route_base_id, segment_index=parsed[1], path=entry))

    segments.sort(key=lambda segment: segment.segment_index)
    return segments


def list_route_ids(routes_dir: Path) -> list[str]:
    """Return every distinct route base id present under ``routes_dir``."""

    if not routes_dir.is_dir():
        return []

    routes: set[str] = set()
    for entry in routes_dir.iterdir():
        if not entry.is_dir():
            continue
        parsed = split_segment_name(entry.name)
        if parsed is not None:
            routes.add(parsed[0])
    return sorted(routes)


def segments_total_size(segments: list[RouteSegment], kind: str) -> int:
    """Sum the on-disk size of the source files that ``kind`` would merge."""

    total = 0
    for segment in segments:
        if kind == "video":
            sources = [segment.camera_file(camera, extension) for camera, extension in CAMERAS]
        else:
            sources = [segment.log_file(kind)]
        total += sum(path.stat().st_size for path in sources if path is not None)
    return total
