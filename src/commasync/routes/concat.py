"""Segment concatenation.

Per-segment logs and camera streams are merged into one artifact per kind
(per camera for video) in ascending numeric segment order. Video is joined
with ffmpeg's concat demuxer and stream copy, driven by a manifest written
before ffmpeg runs so the order never depends on directory listing order.
"""

from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Callable

from commasync.core.errors import CommandError, ConcatenationFailed, RouteNotFound
from commasync.core.models import RouteArtifact
from commasync.core.runner import CommandRunner
from commasync.core.storage import check_free_space, ensure_directory
from commasync.routes.segments import (
    CAMERAS,
    LOG_KINDS,
    RouteSegment,
    discover_segments,
    segments_total_size,
)

ARTIFACT_KINDS: tuple[str, ...] = (*LOG_KINDS, "video")
COPY_CHUNK_SIZE = 1024 * 1024

# Called with (kind, number of source files) before originals are deleted.
RemovalConfirm = Callable[[str, int], bool]


def segment_delimiter(index: int) -> bytes:
    return f"=== Segment {index} ===\n".encode("utf-8")


def _manifest_line(path: Path) -> str:
    # ffmpeg concat demuxer quoting: close quote, escaped quote, reopen
    escaped = str(path.resolve()).replace("'", "'\\''")
    return f"file '{escaped}'\n"


class OutputSizeSampler:
    """Samples a growing output file to report throughput while ffmpeg runs."""

    def __init__(self, path: Path, logger: logging.Logger, log_extra: dict) -> None:
        self.path = path
        self.logger = logger
        self.log_extra = log_extra
        self.samples: list[tuple[float, int]] = []

    def __call__(self, elapsed: float) -> None:
        try:
            size = self.path.stat().st_size
        except OSError:
            size = 0
        previous = self.samples[-1] if self.samples else (0.0, 0)
        self.samples.append((elapsed, size))
        interval = elapsed - previous[0]
        rate = (size - previous[1]) / interval if interval > 0 else 0.0
        self.logger.info(
            "concat progress file=%s bytes=%d rate=%.1fKiB/s elapsed=%.0fs",
            self.path.name,
            size,
            rate / 1024,
            elapsed,
            extra=self.log_extra,
        )


class SegmentConcatenator:
    """Builds ``RouteArtifact`` files from route segments."""

    def __init__(
        self,
        routes_dir: Path,
        work_dir: Path,
        runner: CommandRunner,
        logger: logging.Logger | None = None,
        command_timeout: float | None = None,
        poll_interval: float = 2.0,
        min_free_bytes: int = 0,
    ) -> None:
        self.routes_dir = routes_dir
        self.work_dir = work_dir
        self.runner = runner
        self.logger = logger or logging.getLogger(__name__)
        self.command_timeout = command_timeout
        self.poll_interval = poll_interval
        self.min_free_bytes = min_free_bytes

    def concatenate(
        self,
        route_base_id: str,
        kind: str,
        output_dir: Path,
        keep_originals: bool = True,
        confirm_removal: RemovalConfirm | None = None,
    ) -> list[RouteArtifact]:
        """Concatenate one kind of data for a route into ``output_dir``.

        Returns one artifact for ``rlog``/``qlog`` and one per present camera
        for ``video``; an empty list when no segment carries that kind. On
        failure every output produced by this call is removed and
        ``ConcatenationFailed`` is raised.
        """

        if kind not in ARTIFACT_KINDS:
            raise ValueError(f"Invalid concatenation type: {kind}")

        log_extra = {"route": route_base_id}
        segments = discover_segments(self.routes_dir, route_base_id)
        if not segments:
            raise RouteNotFound(f"No route segments found for route {route_base_id}.")

        ensure_directory(output_dir)
        check_free_space(output_dir, segments_total_size(segments, kind), self.min_free_bytes)

        if kind == "video":
            artifacts = self._concat_video(route_base_id, segments, output_dir, log_extra)
        else:
            artifact = self._concat_log(route_base_id, kind, segments, output_dir, log_extra)
            artifacts = [artifact] if artifact is not None else []

        if not keep_originals and artifacts:
            self._remove_originals(kind, segments, confirm_removal, log_extra)
        return artifacts

    def _concat_log(
        self,
        route_base_id: str,
        kind: str,
        segments: list[RouteSegment],
        output_dir: Path,
        log_extra: dict,
    ) -> RouteArtifact | None:
        sources = [(segment, segment.log_file(kind)) for segment in segments]
        present = [(segment, path) for segment, path in sources if path is not None]
        output_file = output_dir / kind
        if not present:
            self.logger.info("no %s files in %d segments, skipping", kind, len(segments), extra=log_extra)
            output_file.unlink(missing_ok=True)
            return None

        try:
            with output_file.open("wb") as output:
                for position, (segment, path) in enumerate(present, start=1):
                    self.logger.debug(
                        "processing %s segment %d/%d index=%d",
                        kind,
                        position,
                        len(present),
                        segment.segment_index,
                        extra=log_extra,
                    )
                    if kind == "rlog":
                        output.write(segment_delimiter(segment.segment_index))
                    with path.open("rb") as source:
                        shutil.copyfileobj(source, output, COPY_CHUNK_SIZE)
                    if kind == "rlog":
                        output.write(b"\n")
        except OSError as exc:
            output_file.unlink(missing_ok=True)
            raise ConcatenationFailed(kind, reason=str(exc)) from exc
        except BaseException:
            output_file.unlink(missing_ok=True)
            raise

        size = output_file.stat().st_size
        self.logger.info(
            "%s concatenation completed segments=%d/%d bytes=%d",
            kind,
            len(present),
            len(segments),
            size,
            extra=log_extra,
        )
        return RouteArtifact(route_base_id=route_base_id, kind=kind, path=output_file, byte_size=size)

    def write_manifest(self, route_base_id: str, camera: str, sources: list[Path]) -> Path:
        """Write the ffmpeg concat list for one camera, in the given order."""

        ensure_directory(self.work_dir)
        manifest = self.work_dir / f"{route_base_id}_{camera}_concat_list.txt"
        manifest.write_text("".join(_manifest_line(path) for path in sources), encoding="utf-8")
        return manifest

    def _concat_video(
        self,
        route_base_id: str,
        segments: list[RouteSegment],
        output_dir: Path,
        log_extra: dict,
    ) -> list[RouteArtifact]:
        artifacts: list[RouteArtifact] = []
        produced: list[Path] = []
        try:
            for camera, extension in CAMERAS:
                output_file = output_dir / f"{camera}.{extension}"
                if output_file.exists():
                    self.logger.info("removing existing output file=%s", output_file, extra=log_extra)
                    output_file.unlink()

                sources = [
                    path
                    for path in (segment.camera_file(camera, extension) for segment in segments)
                    if path is not None
                ]
                if not sources:
                    self.logger.info("no segments for %s, skipping", camera, extra=log_extra)
                    continue

                manifest = self.write_manifest(route_base_id, camera, sources)
                produced.append(output_file)
                try:
                    self._run_ffmpeg(camera, manifest, output_file, log_extra)
                finally:
                    manifest.unlink(missing_ok=True)

                size = output_file.stat().st_size
                self.logger.info(
                    "%s concatenation completed segments=%d bytes=%d",
                    camera,
                    len(sources),
                    size,
                    extra=log_extra,
                )
                artifacts.append(
                    RouteArtifact(
                        route_base_id=route_base_id,
                        kind="video",
                        path=output_file,
                        byte_size=size,
                        camera=camera,
                    )
                )
        except BaseException:
            for path in produced:
                path.unlink(missing_ok=True)
            raise
        return artifacts

    def _run_ffmpeg(self, camera: str, manifest: Path, output_file: Path, log_extra: dict) -> None:
        args = [
            "ffmpeg",
            "-nostdin",
            "-y",
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(manifest),
            "-c",
            "copy",
            "-fflags",
            "+genpts",
            str(output_file),
        ]
        self.logger.info("concatenating %s videos", camera, extra=log_extra)
        sampler = OutputSizeSampler(output_file, self.logger, log_extra)
        started = time.monotonic()
        try:
            result = self.runner.run(
                args,
                timeout=self.command_timeout,
                on_poll=sampler,
                poll_interval=self.poll_interval,
            )
        except CommandError as exc:
            raise ConcatenationFailed("video", camera, str(exc)) from exc

        if not result.ok or not output_file.is_file():
            detail = result.stderr.strip().splitlines()[-1:] or [f"exit_status={result.returncode}"]
            raise ConcatenationFailed("video", camera, detail[0])
        self.logger.debug(
            "ffmpeg finished camera=%s seconds=%.1f", camera, time.monotonic() - started, extra=log_extra
        )

    def _remove_originals(
        self,
        kind: str,
        segments: list[RouteSegment],
        confirm_removal: RemovalConfirm | None,
        log_extra: dict,
    ) -> None:
        if kind == "video":
            sources = [
                path
                for segment in segments
                for path in (segment.camera_file(camera, extension) for camera, extension in CAMERAS)
                if path is not None
            ]
        else:
            sources = [path for path in (segment.log_file(kind) for segment in segments) if path is not None]

        if confirm_removal is None or not confirm_removal(kind, len(sources)):
            self.logger.info("original %s files kept count=%d", kind, len(sources), extra=log_extra)
            return

        for path in sources:
            path.unlink(missing_ok=True)
        self.logger.info("original %s files removed count=%d", kind, len(sources), extra=log_extra)

    def cleanup_work_dir(self) -> None:
        """Remove temporary manifests left behind by an interrupted run."""

        if self.work_dir.is_dir():
            shutil.rmtree(self.work_dir, ignore_errors=True)
