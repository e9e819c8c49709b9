"""Route and backup transfers to network locations.

A route transfer moves through ``init -> concatenating -> uploading ->
verifying -> done``. Progress milestones are persisted in the transfer state
store as the stages complete; any failure leaves the last milestone on disk so
the next run can resume, and success clears it.
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, TypeVar

from commasync.core.config import Settings
from commasync.core.device import get_device_id
from commasync.core.errors import (
    AuthFailed,
    ConfigCorrupt,
    ConcatenationFailed,
    InsufficientLocalSpace,
    RemoteAuthError,
    RemoteCommandError,
    RemoteConnectionError,
    RemoteError,
    RouteNotFound,
    TransferFailed,
    Unreachable,
    UploadFailed,
)
from commasync.core.models import BackupResult, NetworkLocation, RouteArtifact, TransferLogEntry, TransferState
from commasync.core.retry import retry_call
from commasync.core.storage import join_remote
from commasync.routes.concat import SegmentConcatenator
from commasync.routes.segments import CAMERAS, discover_segments
from commasync.transfer.history import TransferLog
from commasync.transfer.state import TransferStateStore
from commasync.transfer.targets import RemoteTarget, TargetFactory

T = TypeVar("T")

BACKUP_SUBDIR = "backups"
PROGRESS_INIT = 0
PROGRESS_UPLOADED = 90
# (kind, milestone reached once that kind is concatenated)
CONCAT_MILESTONES: tuple[tuple[str, int], ...] = (("rlog", 25), ("qlog", 50), ("video", 75))

# Receives the stored state and returns True to resume, False to restart.
ResumeDecision = Callable[[TransferState], bool]


class TransferStage(str, Enum):
    INIT = "init"
    CONCATENATING = "concatenating"
    UPLOADING = "uploading"
    VERIFYING = "verifying"
    DONE = "done"


@dataclass(slots=True)
class TransferOutcome:
    """Result of a completed route transfer."""

    route_base_id: str
    location_id: str
    destination: str
    uploaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    total_size: int = 0
    uploaded_bytes: int = 0
    duration: float = 0.0


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def describe_destination(location: NetworkLocation, remote_dir: str) -> str:
    if location.protocol == "smb":
        return f"smb://{location.server}/{join_remote(location.share or '', remote_dir)}"
    return f"ssh://{location.username}@{location.server}:{location.port or 22}/{remote_dir.lstrip('/')}"


class TransferEngine:
    """Pushes route artifacts and device backups to a network location."""

    def __init__(
        self,
        settings: Settings,
        concatenator: SegmentConcatenator,
        state_store: TransferStateStore,
        history: TransferLog,
        target_factory: TargetFactory,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.concatenator = concatenator
        self.state_store = state_store
        self.history = history
        self.target_factory = target_factory
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.sleep = sleep

    @property
    def device_id(self) -> str:
        return get_device_id(self.settings.paths.device_id_file)

    def remote_route_dir(self, location: NetworkLocation, route_base_id: str) -> str:
        return join_remote(location.remote_path, self.device_id, route_base_id)

    def remote_backup_dir(self, location: NetworkLocation) -> str:
        return join_remote(location.remote_path, self.device_id, BACKUP_SUBDIR)

    def output_dir_for(self, route_base_id: str) -> Path:
        return self.settings.paths.concat_output_dir / route_base_id

    def _retry(self, func: Callable[[], T], description: str, log_extra: dict) -> T:
        return retry_call(
            func,
            attempts=self.settings.transfer.retries,
            delay=self.settings.transfer.retry_delay,
            exceptions=(RemoteConnectionError, RemoteCommandError),
            description=description,
            logger=self.logger,
            log_extra=log_extra,
            sleep=self.sleep,
        )

    def _connect(self, target: RemoteTarget, stage: TransferStage, log_extra: dict) -> None:
        """Verify connectivity once per batch of remote operations."""

        try:
            self._retry(lambda: target.check(log_extra), "connectivity check", log_extra)
        except RemoteAuthError as exc:
            raise AuthFailed(str(exc), stage=stage.value) from exc
        except RemoteError as exc:
            raise Unreachable(str(exc), stage=stage.value) from exc

    # route transfers

    def sync_route(
        self,
        route_base_id: str,
        location: NetworkLocation,
        resume: bool | ResumeDecision | None = None,
    ) -> TransferOutcome:
        """Concatenate a route and transfer its artifacts to ``location``.

        ``resume`` decides what happens when a previous transfer of the route
        to the same location was interrupted: ``True`` (the default when
        ``None``) continues from the recorded milestone, ``False`` starts over,
        and a callable is asked with the stored ``TransferState``.
        """

        log_extra = {"route": route_base_id}
        if not discover_segments(self.settings.paths.routes_dir, route_base_id):
            raise RouteNotFound(f"No route segments found for route {route_base_id}.")

        resume_from = self._resume_point(route_base_id, location, resume, log_extra)
        if resume_from == PROGRESS_INIT:
            self.state_store.save(route_base_id, location.location_id, PROGRESS_INIT)

        try:
            artifacts = self._build_artifacts(route_base_id, location, resume_from, log_extra)
            if resume_from >= PROGRESS_UPLOADED:
                self.logger.info("resuming at verification, re-checking remote sizes", extra=log_extra)
            return self.transfer(route_base_id, location, artifacts)
        except KeyboardInterrupt:
            self.concatenator.cleanup_work_dir()
            self.logger.warning(
                "transfer interrupted, state kept for resume state=%s",
                self.state_store.path_for(route_base_id),
                extra=log_extra,
            )
            raise

    def _resume_point(
        self,
        route_base_id: str,
        location: NetworkLocation,
        resume: bool | ResumeDecision | None,
        log_extra: dict,
    ) -> int:
        state = self.state_store.load(route_base_id)
        if state is None:
            return PROGRESS_INIT

        if state.location_id != location.location_id:
            self.logger.info(
                "previous transfer targeted another location, restarting previous=%s",
                state.location_id,
                extra=log_extra,
            )
            self.state_store.clear(route_base_id)
            return PROGRESS_INIT

        if callable(resume):
            decision = resume(state)
        else:
            decision = True if resume is None else resume

        if not decision:
            self.logger.info("previous transfer discarded progress=%d", state.progress_percent, extra=log_extra)
            self.state_store.clear(route_base_id)
            return PROGRESS_INIT

        self.logger.info(
            "resuming interrupted transfer progress=%d since=%s",
            state.progress_percent,
            state.timestamp,
            extra=log_extra,
        )
        return state.progress_percent

    def _existing_artifacts(self, route_base_id: str, kind: str, output_dir: Path) -> list[RouteArtifact]:
        if kind == "video":
            candidates = [(output_dir / f"{camera}.{extension}", camera) for camera, extension in CAMERAS]
        else:
            candidates = [(output_dir / kind, None)]
        return [
            RouteArtifact(
                route_base_id=route_base_id,
                kind=kind,
                path=path,
                byte_size=path.stat().st_size,
                camera=camera,
            )
            for path, camera in candidates
            if path.is_file()
        ]

    def _build_artifacts(
        self,
        route_base_id: str,
        location: NetworkLocation,
        resume_from: int,
        log_extra: dict,
    ) -> list[RouteArtifact]:
        output_dir = self.output_dir_for(route_base_id)
        artifacts: list[RouteArtifact] = []
        for kind, milestone in CONCAT_MILESTONES:
            if resume_from >= milestone:
                existing = self._existing_artifacts(route_base_id, kind, output_dir)
                if existing:
                    self.logger.info("reusing %s artifacts count=%d", kind, len(existing), extra=log_extra)
                    artifacts.extend(existing)
                    continue

            self.logger.info("stage=%s kind=%s", TransferStage.CONCATENATING.value, kind, extra=log_extra)
            try:
                artifacts.extend(self.concatenator.concatenate(route_base_id, kind, output_dir))
            except (ConcatenationFailed, InsufficientLocalSpace) as exc:
                self._record_failure(route_base_id, location, artifacts, 0.0, log_extra)
                raise TransferFailed(str(exc), stage=TransferStage.CONCATENATING.value) from exc

            if resume_from < milestone:
                self.state_store.save(route_base_id, location.location_id, milestone)
        return artifacts

    def transfer(
        self,
        route_base_id: str,
        location: NetworkLocation,
        artifacts: Iterable[RouteArtifact],
    ) -> TransferOutcome:
        """Upload ``artifacts`` to the route directory of ``location``.

        Artifacts whose remote copy has exactly the local size are skipped.
        On success the artifacts and their directory are deleted and the
        transfer state is cleared; on failure both are left in place.
        """

        artifacts = list(artifacts)
        log_extra = {"route": route_base_id}
        started = self.clock()
        remote_dir = self.remote_route_dir(location, route_base_id)
        outcome = TransferOutcome(
            route_base_id=route_base_id,
            location_id=location.location_id,
            destination=describe_destination(location, remote_dir),
            total_size=sum(artifact.byte_size for artifact in artifacts),
        )
        names = [artifact.name for artifact in artifacts]

        target = self.target_factory(location)
        stage = TransferStage.UPLOADING
        self.logger.info(
            "stage=%s artifacts=%d bytes=%d destination=%s",
            stage.value,
            len(artifacts),
            outcome.total_size,
            outcome.destination,
            extra=log_extra,
        )

        try:
            self._connect(target, stage, log_extra)
            try:
                self._retry(lambda: target.ensure_directory(remote_dir, log_extra), "remote mkdir", log_extra)
                sizes = self._retry(
                    lambda: target.remote_sizes(remote_dir, names, log_extra), "remote size query", log_extra
                )

                pending = [artifact for artifact in artifacts if sizes.get(artifact.name) != artifact.byte_size]
                skipped = [artifact for artifact in artifacts if sizes.get(artifact.name) == artifact.byte_size]
                for artifact in skipped:
                    self.logger.info(
                        "file unchanged on remote, skipping file=%s bytes=%d",
                        artifact.name,
                        artifact.byte_size,
                        extra=log_extra,
                    )

                if pending:
                    self._retry(lambda: target.upload(remote_dir, pending, skipped, log_extra), "upload", log_extra)
                self.state_store.save(route_base_id, location.location_id, PROGRESS_UPLOADED)

                stage = TransferStage.VERIFYING
                if pending:
                    self._verify(target, remote_dir, pending, log_extra)
            except RemoteAuthError as exc:
                raise AuthFailed(str(exc), stage=stage.value) from exc
            except RemoteConnectionError as exc:
                raise Unreachable(str(exc), stage=stage.value) from exc
            except RemoteCommandError as exc:
                raise UploadFailed(", ".join(names) or route_base_id, str(exc), stage=stage.value) from exc
        except TransferFailed as exc:
            duration = self.clock() - started
            self._record_failure(route_base_id, location, artifacts, duration, log_extra)
            self.logger.error(
                "transfer failed stage=%s state_preserved=%s error=%s",
                exc.stage,
                exc.state_preserved,
                exc,
                extra=log_extra,
            )
            raise

        outcome.uploaded = [artifact.name for artifact in pending]
        outcome.skipped = [artifact.name for artifact in skipped]
        outcome.uploaded_bytes = sum(artifact.byte_size for artifact in pending)
        outcome.duration = round(self.clock() - started, 1)

        self.state_store.clear(route_base_id)
        self._remove_artifacts(artifacts, log_extra)
        self._record_history(
            TransferLogEntry(
                timestamp=utc_now(),
                route_base_id=route_base_id,
                status="success",
                destination=outcome.destination,
                total_size=outcome.total_size,
                duration=outcome.duration,
            ),
            log_extra,
        )
        self.logger.info(
            "stage=%s uploaded=%d skipped=%d bytes=%d duration=%.1fs",
            TransferStage.DONE.value,
            len(outcome.uploaded),
            len(outcome.skipped),
            outcome.uploaded_bytes,
            outcome.duration,
            extra=log_extra,
        )
        return outcome

    def _verify(
        self,
        target: RemoteTarget,
        remote_dir: str,
        uploaded: list[RouteArtifact],
        log_extra: dict,
    ) -> None:
        sizes = self._retry(
            lambda: target.remote_sizes(remote_dir, [artifact.name for artifact in uploaded], log_extra),
            "remote size verification",
            log_extra,
        )
        for artifact in uploaded:
            remote_size = sizes.get(artifact.name)
            if remote_size != artifact.byte_size:
                raise UploadFailed(
                    artifact.name,
                    f"remote size {remote_size} does not match local size {artifact.byte_size}",
                    stage=TransferStage.VERIFYING.value,
                )
        self.logger.info("verification passed files=%d", len(uploaded), extra=log_extra)

    def _record_failure(
        self,
        route_base_id: str,
        location: NetworkLocation,
        artifacts: list[RouteArtifact],
        duration: float,
        log_extra: dict,
    ) -> None:
        if not self.settings.transfer.log_failed_transfers:
            return
        self._record_history(
            TransferLogEntry(
                timestamp=utc_now(),
                route_base_id=route_base_id,
                status="failure",
                destination=describe_destination(location, self.remote_route_dir(location, route_base_id)),
                total_size=sum(artifact.byte_size for artifact in artifacts),
                duration=round(duration, 1),
            ),
            log_extra,
        )
        self.logger.debug("failed attempt recorded in transfer log", extra=log_extra)

    def _record_history(self, entry: TransferLogEntry, log_extra: dict) -> None:
        try:
            self.history.append(entry)
        except (ConfigCorrupt, OSError) as exc:
            self.logger.warning("transfer log not updated status=%s error=%s", entry.status, exc, extra=log_extra)

    def _remove_artifacts(self, artifacts: list[RouteArtifact], log_extra: dict) -> None:
        directories = {artifact.path.parent for artifact in artifacts}
        for artifact in artifacts:
            artifact.path.unlink(missing_ok=True)
        for directory in directories:
            if directory.is_dir() and directory != self.settings.paths.concat_output_dir:
                shutil.rmtree(directory)
                self.logger.debug("artifact directory removed path=%s", directory, extra=log_extra)

    # device backups

    def transfer_backup(self, backup_dir: Path, location: NetworkLocation) -> BackupResult:
        """Upload a local backup directory to ``<remote_path>/<device_id>/backups``."""

        log_extra = {"route": f"backup:{backup_dir.name}"}
        if not backup_dir.is_dir():
            raise TransferFailed(f"Backup directory not found: {backup_dir}", state_preserved=False)

        started = self.clock()
        remote_dir = self.remote_backup_dir(location)
        target = self.target_factory(location)
        stage = TransferStage.UPLOADING
        self._connect(target, stage, log_extra)
        try:
            self._retry(lambda: target.ensure_directory(remote_dir, log_extra), "remote mkdir", log_extra)
            result = self._retry(
                lambda: target.push_backup(
                    backup_dir, remote_dir, self.settings.paths.concat_work_dir, log_extra
                ),
                "backup upload",
                log_extra,
            )
        except RemoteAuthError as exc:
            raise AuthFailed(str(exc), stage=stage.value, state_preserved=False) from exc
        except RemoteConnectionError as exc:
            raise Unreachable(str(exc), stage=stage.value, state_preserved=False) from exc
        except RemoteCommandError as exc:
            raise UploadFailed(backup_dir.name, str(exc)) from exc

        self._record_history(
            TransferLogEntry(
                timestamp=utc_now(),
                route_base_id=log_extra["route"],
                status="success",
                destination=describe_destination(location, remote_dir),
                total_size=result.total_size,
                duration=round(self.clock() - started, 1),
            ),
            log_extra,
        )
        self.logger.info(
            "backup transfer completed bytes=%d skipped=%s destination=%s",
            result.total_size,
            result.skipped,
            remote_dir,
            extra=log_extra,
        )
        return result

    def fetch_backup(self, location: NetworkLocation, destination: Path) -> Path:
        """Download the device backup stored at ``location`` into ``destination``."""

        log_extra = {"route": "backup:fetch"}
        remote_dir = self.remote_backup_dir(location)
        target = self.target_factory(location)
        self._connect(target, TransferStage.INIT, log_extra)
        try:
            return self._retry(
                lambda: target.pull_backup(remote_dir, destination, log_extra), "backup fetch", log_extra
            )
        except RemoteAuthError as exc:
            raise AuthFailed(str(exc), state_preserved=False) from exc
        except RemoteConnectionError as exc:
            raise Unreachable(str(exc), state_preserved=False) from exc
        except RemoteCommandError as exc:
            raise TransferFailed(f"Backup fetch failed: {exc}", state_preserved=False) from exc
