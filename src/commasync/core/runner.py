"""Execution of external programs (smbclient, rsync, ssh, ffmpeg).

Everything that shells out goes through a ``CommandRunner`` so it can be
replaced by a fake in tests.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Protocol, Sequence

from commasync.core.errors import CommandError, CommandTimeout

logger = logging.getLogger(__name__)

PollCallback = Callable[[float], None]


@dataclass(slots=True)
class CommandResult:
    """Outcome of one external program invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as a user would see them."""

        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


class CommandRunner(Protocol):
    """Capability for running external programs."""

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        on_poll: PollCallback | None = None,
        poll_interval: float = 1.0,
    ) -> CommandResult:
        ...


def printable_command(args: Sequence[str]) -> str:
    return " ".join(shlex.quote(arg) for arg in args)


class SubprocessRunner:
    """``CommandRunner`` backed by :mod:`subprocess`.

    ``env`` is overlaid on the current environment so secrets can be handed to
    child processes without appearing in argv. While the child runs,
    ``on_poll`` is called every ``poll_interval`` seconds with the elapsed time.
    """

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        on_poll: PollCallback | None = None,
        poll_interval: float = 1.0,
    ) -> CommandResult:
        argv = tuple(args)
        child_env = None
        if env:
            child_env = dict(os.environ)
            child_env.update(env)

        logger.debug("running command=%s timeout=%s", printable_command(argv), timeout)
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=child_env,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as exc:
            raise CommandError(f"Required command not found: {argv[0]}") from exc
        except OSError as exc:
            raise CommandError(f"Unable to start {argv[0]}: {exc}") from exc

        started = time.monotonic()
        try:
            if on_poll is None:
                stdout, stderr = process.communicate(timeout=timeout)
            else:
                stdout, stderr = self._communicate_polling(process, started, timeout, on_poll, poll_interval)
        except subprocess.TimeoutExpired as exc:
            process.kill()
            process.communicate()
            raise CommandTimeout(f"{argv[0]} exceeded timeout of {timeout}s") from exc
        except BaseException:
            # interrupted by the user: do not leave the child running
            process.kill()
            process.communicate()
            raise

        result = CommandResult(args=argv, returncode=process.returncode, stdout=stdout or "", stderr=stderr or "")
        logger.debug("command finished program=%s returncode=%d", argv[0], result.returncode)
        return result

    @staticmethod
    def _communicate_polling(
        process: subprocess.Popen,
        started: float,
        timeout: float | None,
        on_poll: PollCallback,
        poll_interval: float,
    ) -> tuple[str, str]:
        while True:
            try:
                return process.communicate(timeout=poll_interval)
            except subprocess.TimeoutExpired:
                elapsed = time.monotonic() - started
                if timeout is not None and elapsed >= timeout:
                    raise
                on_poll(elapsed)
