"""SSH transfer target: remote mkdir over paramiko, data over rsync."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Sequence

from commasync.core.models import BackupResult, NetworkLocation, RouteArtifact
from commasync.ssh.client import SshClient


def _tree_size(path: Path) -> int:
    return sum(entry.stat().st_size for entry in path.rglob("*") if entry.is_file())


class SshTarget:
    """Mirrors a local artifact directory into the remote route directory."""

    protocol = "ssh"

    def __init__(self, location: NetworkLocation, client: SshClient, logger: logging.Logger | None = None) -> None:
        self.location = location
        self.client = client
        self.logger = logger or logging.getLogger(__name__)

    def check(self, log_extra: dict[str, Any]) -> None:
        self.client.check(self.logger, log_extra)

    def ensure_directory(self, remote_dir: str, log_extra: dict[str, Any]) -> None:
        self.client.make_dirs(remote_dir, self.logger, log_extra)

    def remote_sizes(self, remote_dir: str, names: Iterable[str], log_extra: dict[str, Any]) -> dict[str, int | None]:
        return self.client.remote_sizes(remote_dir, names, self.logger, log_extra)

    def upload(
        self,
        remote_dir: str,
        pending: Sequence[RouteArtifact],
        skipped: Sequence[RouteArtifact],
        log_extra: dict[str, Any],
    ) -> None:
        if not pending:
            return
        local_dir = pending[0].path.parent
        self.client.push(
            local_dir,
            remote_dir,
            self.logger,
            log_extra,
            mirror=True,
            excludes=[artifact.name for artifact in skipped],
        )

    def push_backup(
        self,
        backup_dir: Path,
        remote_dir: str,
        work_dir: Path,
        log_extra: dict[str, Any],
    ) -> BackupResult:
        self.client.push(backup_dir, remote_dir, self.logger, log_extra, mirror=False, flags=("-az",))
        return BackupResult(remote_dir=remote_dir, total_size=_tree_size(backup_dir))

    def pull_backup(self, remote_dir: str, destination: Path, log_extra: dict[str, Any]) -> Path:
        self.client.pull(remote_dir, destination, self.logger, log_extra)
        self.logger.info("backup fetched destination=%s", destination, extra=log_extra)
        return destination
