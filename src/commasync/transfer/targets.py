"""Protocol-neutral view of a remote location."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol, Sequence

import paramiko

from commasync.core.config import TransferConfig
from commasync.core.models import BackupResult, NetworkLocation, RouteArtifact
from commasync.core.registry import LocationRegistry
from commasync.core.runner import CommandRunner
from commasync.smb.client import SmbClient
from commasync.smb.target import SmbTarget
from commasync.ssh.client import SshClient
from commasync.ssh.target import SshTarget


class RemoteTarget(Protocol):
    """Operations the transfer engine needs from a location."""

    protocol: str
    location: NetworkLocation

    def check(self, log_extra: dict[str, Any]) -> None:
        ...

    def ensure_directory(self, remote_dir: str, log_extra: dict[str, Any]) -> None:
        ...

    def remote_sizes(self, remote_dir: str, names: Iterable[str], log_extra: dict[str, Any]) -> dict[str, int | None]:
        ...

    def upload(
        self,
        remote_dir: str,
        pending: Sequence[RouteArtifact],
        skipped: Sequence[RouteArtifact],
        log_extra: dict[str, Any],
    ) -> None:
        ...

    def push_backup(self, backup_dir: Path, remote_dir: str, work_dir: Path, log_extra: dict[str, Any]) -> BackupResult:
        ...

    def pull_backup(self, remote_dir: str, destination: Path, log_extra: dict[str, Any]) -> Path:
        ...


TargetFactory = Callable[[NetworkLocation], RemoteTarget]


class ProtocolTargetFactory:
    """Builds the SMB or SSH target for a location, decrypting its password on demand."""

    def __init__(
        self,
        registry: LocationRegistry,
        runner: CommandRunner,
        transfer: TransferConfig,
        ssh_client_factory: Callable[[], Any] = paramiko.SSHClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.runner = runner
        self.transfer = transfer
        self.ssh_client_factory = ssh_client_factory
        self.logger = logger or logging.getLogger(__name__)

    def __call__(self, location: NetworkLocation) -> RemoteTarget:
        password = self.registry.password_for(location)
        if location.protocol == "smb":
            client = SmbClient(
                server=location.server,
                share=location.share or "",
                username=location.username,
                password=password or "",
                runner=self.runner,
                timeout=self.transfer.connect_timeout,
                transfer_timeout=self.transfer.command_timeout,
            )
            return SmbTarget(location, client, self.logger)

        client = SshClient(
            host=location.server,
            username=location.username,
            runner=self.runner,
            password=password,
            key_path=location.auth.key_path if location.auth.type == "key" else None,
            port=location.port or 22,
            timeout=self.transfer.connect_timeout,
            transfer_timeout=self.transfer.command_timeout,
            client_factory=self.ssh_client_factory,
        )
        return SshTarget(location, client, self.logger)
