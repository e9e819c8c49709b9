"""SMB share access through ``smbclient``."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from commasync.core.errors import (
    CommandError,
    CommandTimeout,
    RemoteAuthError,
    RemoteCommandError,
    RemoteConnectionError,
)
from commasync.core.runner import CommandResult, CommandRunner
from commasync.core.storage import join_remote

AUTH_STATUSES = (
    "NT_STATUS_LOGON_FAILURE",
    "NT_STATUS_ACCESS_DENIED",
    "NT_STATUS_ACCOUNT_DISABLED",
    "NT_STATUS_ACCOUNT_LOCKED_OUT",
    "NT_STATUS_PASSWORD_EXPIRED",
    "NT_STATUS_WRONG_PASSWORD",
)
CONNECTION_STATUSES = (
    "NT_STATUS_HOST_UNREACHABLE",
    "NT_STATUS_NETWORK_UNREACHABLE",
    "NT_STATUS_CONNECTION_REFUSED",
    "NT_STATUS_CONNECTION_RESET",
    "NT_STATUS_CONNECTION_DISCONNECTED",
    "NT_STATUS_IO_TIMEOUT",
    "NT_STATUS_BAD_NETWORK_NAME",
    "NT_STATUS_UNSUCCESSFUL",
)
MISSING_STATUSES = (
    "NT_STATUS_NO_SUCH_FILE",
    "NT_STATUS_OBJECT_NAME_NOT_FOUND",
    "NT_STATUS_OBJECT_PATH_NOT_FOUND",
)
EXISTS_STATUS = "NT_STATUS_OBJECT_NAME_COLLISION"

# "  rlog                                A     4096  Mon Jan  1 00:00:00 2024"
_LISTING_LINE = re.compile(
    r"^\s+(?P<name>.+?)\s+(?P<attrs>[A-Za-z]*)\s+(?P<size>\d+)\s+"
    r"\w{3}\s+\w{3}\s+\d+\s+\d+:\d+:\d+\s+\d{4}\s*$"
)


def _quote(path: str) -> str:
    return f'"{path}"'


def _status_in(output: str, statuses: Iterable[str]) -> str | None:
    for status in statuses:
        if status in output:
            return status
    return None


def parse_listing(output: str) -> dict[str, int]:
    """Return ``{name: size}`` for the regular files in an ``ls`` listing."""

    files: dict[str, int] = {}
    for line in output.splitlines():
        match = _LISTING_LINE.match(line)
        if not match:
            continue
        name = match.group("name")
        if name in (".", "..") or "D" in match.group("attrs"):
            continue
        files[name] = int(match.group("size"))
    return files


@dataclass(slots=True)
class SmbClient:
    """Runs ``smbclient -c`` commands against one share.

    The password is passed through the ``PASSWD`` environment variable so it
    never appears in the process list.
    """

    server: str
    share: str
    username: str
    password: str
    runner: CommandRunner
    timeout: float = 5.0
    transfer_timeout: float | None = None

    @property
    def service(self) -> str:
        return f"//{self.server}/{self.share}"

    def _run(self, command: str, timeout: float | None) -> CommandResult:
        args = ["smbclient", self.service, "-U", self.username, "-c", command]
        try:
            return self.runner.run(args, timeout=timeout, env={"PASSWD": self.password})
        except CommandTimeout as exc:
            raise RemoteConnectionError(f"smbclient timed out for {self.service}") from exc
        except CommandError as exc:
            raise RemoteCommandError(str(exc)) from exc

    def _raise_for_status(self, result: CommandResult, action: str) -> None:
        output = result.output
        status = _status_in(output, AUTH_STATUSES)
        if status:
            raise RemoteAuthError(f"SMB authentication failed for {self.service}: {status}")
        status = _status_in(output, CONNECTION_STATUSES)
        if status or "Connection to" in output:
            raise RemoteConnectionError(f"Unable to connect to {self.service}: {status or output.strip()}")
        detail = re.search(r"NT_STATUS_\w+", output)
        if detail or not result.ok:
            reason = detail.group(0) if detail else f"exit_status={result.returncode}"
            raise RemoteCommandError(f"{action} failed on {self.service}: {reason}")

    def list(
        self,
        remote_dir: str = "",
        logger: logging.Logger | None = None,
        log_extra: dict[str, Any] | None = None,
    ) -> dict[str, int]:
        """List regular files in ``remote_dir``; an empty path lists the share root."""

        command = f"ls {_quote(join_remote(remote_dir, '*'))}" if remote_dir else "ls"
        if logger:
            logger.debug("smb listing share=%s dir=%s", self.service, remote_dir or "/", extra=log_extra or {})
        result = self._run(command, self.timeout)
        self._raise_for_status(result, "ls")
        return parse_listing(result.stdout)

    def make_dirs(self, remote_dir: str, logger: logging.Logger, log_extra: dict[str, Any]) -> None:
        """Create ``remote_dir`` one component at a time; existing ones are fine."""

        current = ""
        for component in [part for part in remote_dir.split("/") if part]:
            current = join_remote(current, component)
            result = self._run(f"mkdir {_quote(current)}", self.timeout)
            if EXISTS_STATUS in result.output:
                logger.debug("smb directory exists dir=%s", current, extra=log_extra)
                continue
            self._raise_for_status(result, "mkdir")
            logger.debug("smb directory created dir=%s", current, extra=log_extra)

    def remote_sizes(self, remote_dir: str, names: Iterable[str]) -> dict[str, int | None]:
        """Return the size of each named file in ``remote_dir``, ``None`` when absent."""

        wanted = list(names)
        result = self._run(f"ls {_quote(join_remote(remote_dir, '*'))}", self.timeout)
        if _status_in(result.output, MISSING_STATUSES):
            return {name: None for name in wanted}
        self._raise_for_status(result, "ls")
        listing = parse_listing(result.stdout)
        return {name: listing.get(name) for name in wanted}

    def put(self, local_path: Path, remote_dir: str, remote_name: str) -> None:
        target = join_remote(remote_dir, remote_name)
        result = self._run(f"put {_quote(str(local_path))} {_quote(target)}", self.transfer_timeout)
        self._raise_for_status(result, f"put {remote_name}")

    def get(self, remote_dir: str, remote_name: str, local_path: Path) -> None:
        source = join_remote(remote_dir, remote_name)
        result = self._run(f"get {_quote(source)} {_quote(str(local_path))}", self.transfer_timeout)
        if _status_in(result.output, MISSING_STATUSES):
            raise RemoteCommandError(f"Remote file not found: {source}")
        self._raise_for_status(result, f"get {remote_name}")
