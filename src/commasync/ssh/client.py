"""SSH access for remote locations: paramiko for commands, rsync for data."""

from __future__ import annotations

import logging
import shlex
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

import paramiko

from commasync.core.errors import (
    CommandError,
    CommandTimeout,
    RemoteAuthError,
    RemoteCommandError,
    RemoteConnectionError,
)
from commasync.core.runner import CommandResult, CommandRunner

# rsync exit codes that mean the remote side was never reached
RSYNC_CONNECTION_CODES = {5, 10, 12, 30, 35, 255}
_AUTH_MARKERS = ("Permission denied", "Authentication failed", "Too many authentication failures")


@dataclass(slots=True)
class SshClient:
    """SSH client for one remote location.

    Password authentication hands the secret to paramiko directly and to
    rsync through ``sshpass -e`` with the ``SSHPASS`` environment variable.
    """

    host: str
    username: str
    runner: CommandRunner
    password: str | None = None
    key_path: str | None = None
    port: int = 22
    timeout: float = 5.0
    transfer_timeout: float | None = None
    client_factory: Callable[[], Any] = paramiko.SSHClient

    def _connect(self, logger: logging.Logger, log_extra: dict[str, Any]) -> paramiko.SSHClient:
        ssh = self.client_factory()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            logger.debug("opening ssh session host=%s port=%s", self.host, self.port, extra=log_extra)
            ssh.connect(
                self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                key_filename=self.key_path,
                look_for_keys=False,
                allow_agent=False,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
            )
            logger.debug("ssh ok host=%s port=%s", self.host, self.port, extra=log_extra)
            return ssh
        except paramiko.AuthenticationException as exc:
            ssh.close()
            raise RemoteAuthError(f"SSH authentication failed for {self.username}@{self.host}") from exc
        except (paramiko.SSHException, socket.error, TimeoutError) as exc:
            ssh.close()
            raise RemoteConnectionError(f"SSH connection to {self.host}:{self.port} failed: {exc}") from exc

    def _run_command(self, client: paramiko.SSHClient, command: str) -> tuple[str, str, int]:
        try:
            stdin, stdout, stderr = client.exec_command(command, timeout=self.timeout)
        except paramiko.SSHException as exc:
            raise RemoteCommandError(f"Unable to execute command '{command}'") from exc

        output = stdout.read().decode("utf-8", errors="replace")
        error_output = stderr.read().decode("utf-8", errors="replace")
        exit_status = stdout.channel.recv_exit_status()
        return output, error_output, exit_status

    def check(self, logger: logging.Logger, log_extra: dict[str, Any]) -> None:
        """Connect and run a no-op command."""

        client = self._connect(logger, log_extra)
        try:
            _, error_output, exit_status = self._run_command(client, "exit")
            if exit_status != 0:
                raise RemoteCommandError(error_output.strip() or f"exit_status={exit_status}")
        finally:
            client.close()

    def make_dirs(self, remote_dir: str, logger: logging.Logger, log_extra: dict[str, Any]) -> None:
        command = f"mkdir -p {shlex.quote(remote_dir)}"
        client = self._connect(logger, log_extra)
        try:
            logger.debug("executing remote command='%s'", command, extra=log_extra)
            _, error_output, exit_status = self._run_command(client, command)
        finally:
            client.close()

        if exit_status != 0:
            error_message = error_output.strip() or f"exit_status={exit_status}"
            logger.error("remote mkdir failed dir=%s error=%s", remote_dir, error_message, extra=log_extra)
            raise RemoteCommandError(error_message)

    def remote_sizes(
        self,
        remote_dir: str,
        names: Iterable[str],
        logger: logging.Logger,
        log_extra: dict[str, Any],
    ) -> dict[str, int | None]:
        """Stat each named file in ``remote_dir`` over one SFTP session."""

        client = self._connect(logger, log_extra)
        sftp: paramiko.SFTPClient | None = None
        sizes: dict[str, int | None] = {}
        try:
            try:
                sftp = client.open_sftp()
            except paramiko.SSHException as exc:
                raise RemoteConnectionError("Unable to open SFTP session") from exc

            for name in names:
                remote_file = f"{remote_dir.rstrip('/')}/{name}" if remote_dir else name
                try:
                    sizes[name] = sftp.stat(remote_file).st_size
                except FileNotFoundError:
                    sizes[name] = None
                except OSError as exc:
                    raise RemoteCommandError(f"Unable to stat {remote_file}: {exc}") from exc
            return sizes
        finally:
            if sftp is not None:
                sftp.close()
            client.close()

    def _remote_spec(self, remote_dir: str) -> str:
        return f"{self.username}@{self.host}:{remote_dir.rstrip('/')}/"

    def _rsync_argv(self, flags: Sequence[str]) -> tuple[list[str], dict[str, str] | None]:
        ssh_command = [
            "ssh",
            "-p",
            str(self.port),
            "-o",
            f"ConnectTimeout={int(self.timeout)}",
            "-o",
            "StrictHostKeyChecking=accept-new",
        ]
        if self.key_path:
            ssh_command.extend(["-i", self.key_path, "-o", "BatchMode=yes"])

        argv = ["rsync", *flags, "-e", " ".join(shlex.quote(part) for part in ssh_command)]
        if self.password is not None and not self.key_path:
            return ["sshpass", "-e", *argv], {"SSHPASS": self.password}
        return argv, None

    def _run_rsync(self, argv: list[str], env: dict[str, str] | None, action: str) -> CommandResult:
        try:
            result = self.runner.run(argv, timeout=self.transfer_timeout, env=env)
        except CommandTimeout as exc:
            raise RemoteConnectionError(f"rsync {action} timed out") from exc
        except CommandError as exc:
            raise RemoteCommandError(str(exc)) from exc

        if result.ok:
            return result
        detail = result.stderr.strip().splitlines()[-1:] or [f"exit_status={result.returncode}"]
        if any(marker in result.stderr for marker in _AUTH_MARKERS):
            raise RemoteAuthError(f"SSH authentication failed for {self.username}@{self.host}")
        if result.returncode in RSYNC_CONNECTION_CODES:
            raise RemoteConnectionError(f"rsync {action} could not reach {self.host}: {detail[0]}")
        raise RemoteCommandError(f"rsync {action} failed: {detail[0]}")

    def push(
        self,
        local_dir: Path,
        remote_dir: str,
        logger: logging.Logger,
        log_extra: dict[str, Any],
        mirror: bool = True,
        excludes: Iterable[str] = (),
        flags: Sequence[str] = ("-av",),
    ) -> CommandResult:
        """Sync ``local_dir`` contents into ``remote_dir``.

        With ``mirror`` the remote directory ends up matching the local one;
        excluded names are neither sent nor deleted on the remote side.
        """

        rsync_flags = list(flags)
        if mirror:
            rsync_flags.append("--delete")
        for name in excludes:
            rsync_flags.extend(["--exclude", name])

        argv, env = self._rsync_argv(rsync_flags)
        argv.extend([f"{local_dir}/", self._remote_spec(remote_dir)])
        logger.info("rsync push source=%s target=%s:%s", local_dir, self.host, remote_dir, extra=log_extra)
        return self._run_rsync(argv, env, "push")

    def pull(
        self,
        remote_dir: str,
        local_dir: Path,
        logger: logging.Logger,
        log_extra: dict[str, Any],
        flags: Sequence[str] = ("-az",),
    ) -> CommandResult:
        """Copy ``remote_dir`` contents into ``local_dir``."""

        local_dir.mkdir(parents=True, exist_ok=True)
        argv, env = self._rsync_argv(list(flags))
        argv.extend([self._remote_spec(remote_dir), f"{local_dir}/"])
        logger.info("rsync pull source=%s:%s target=%s", self.host, remote_dir, local_dir, extra=log_extra)
        return self._run_rsync(argv, env, "pull")
