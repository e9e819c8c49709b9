"""SMB transfer target."""

from __future__ import annotations

import logging
import tarfile
from pathlib import Path
from typing import Any, Iterable, Sequence

from commasync.core.errors import RemoteCommandError
from commasync.core.models import BackupResult, NetworkLocation, RouteArtifact
from commasync.core.storage import ensure_directory
from commasync.smb.client import SmbClient

BACKUP_ARCHIVE = "backup.tar.gz"


def build_backup_archive(backup_dir: Path, archive_path: Path) -> Path:
    """Pack ``backup_dir`` (including its own directory name) into a gzip tarball."""

    ensure_directory(archive_path.parent)
    try:
        with tarfile.open(archive_path, "w:gz") as archive:
            archive.add(backup_dir, arcname=backup_dir.name)
    except BaseException:
        archive_path.unlink(missing_ok=True)
        raise
    return archive_path


class SmbTarget:
    """Puts artifacts on an SMB share, one file at a time."""

    protocol = "smb"

    def __init__(self, location: NetworkLocation, client: SmbClient, logger: logging.Logger | None = None) -> None:
        self.location = location
        self.client = client
        self.logger = logger or logging.getLogger(__name__)

    def check(self, log_extra: dict[str, Any]) -> None:
        self.client.list("", self.logger, log_extra)

    def ensure_directory(self, remote_dir: str, log_extra: dict[str, Any]) -> None:
        self.client.make_dirs(remote_dir, self.logger, log_extra)

    def remote_sizes(self, remote_dir: str, names: Iterable[str], log_extra: dict[str, Any]) -> dict[str, int | None]:
        sizes = self.client.remote_sizes(remote_dir, names)
        self.logger.debug("smb remote sizes dir=%s sizes=%s", remote_dir, sizes, extra=log_extra)
        return sizes

    def upload(
        self,
        remote_dir: str,
        pending: Sequence[RouteArtifact],
        skipped: Sequence[RouteArtifact],
        log_extra: dict[str, Any],
    ) -> None:
        for artifact in pending:
            self.logger.info(
                "uploading file=%s bytes=%d target=%s", artifact.name, artifact.byte_size, remote_dir, extra=log_extra
            )
            self.client.put(artifact.path, remote_dir, artifact.name)

    def push_backup(
        self,
        backup_dir: Path,
        remote_dir: str,
        work_dir: Path,
        log_extra: dict[str, Any],
    ) -> BackupResult:
        archive = build_backup_archive(backup_dir, work_dir / BACKUP_ARCHIVE)
        try:
            size = archive.stat().st_size
            remote_size = self.client.remote_sizes(remote_dir, [BACKUP_ARCHIVE])[BACKUP_ARCHIVE]
            if remote_size == size:
                self.logger.info("backup unchanged on remote, skipping bytes=%d", size, extra=log_extra)
                return BackupResult(remote_dir=remote_dir, total_size=size, skipped=True)

            self.logger.info("uploading backup archive bytes=%d target=%s", size, remote_dir, extra=log_extra)
            self.client.put(archive, remote_dir, BACKUP_ARCHIVE)
            return BackupResult(remote_dir=remote_dir, total_size=size)
        finally:
            archive.unlink(missing_ok=True)

    def pull_backup(self, remote_dir: str, destination: Path, log_extra: dict[str, Any]) -> Path:
        ensure_directory(destination)
        archive = destination / BACKUP_ARCHIVE
        self.client.get(remote_dir, BACKUP_ARCHIVE, archive)
        try:
            with tarfile.open(archive, "r:gz") as handle:
                handle.extractall(destination, filter="data")
        except tarfile.TarError as exc:
            raise RemoteCommandError(f"Fetched backup archive is unreadable: {exc}") from exc
        finally:
            archive.unlink(missing_ok=True)
        self.logger.info("backup fetched destination=%s", destination, extra=log_extra)
        return destination
