"""Scheduled job blocks in the launch environment file.

A job is a delimited block appended to the launch script:

    ### Start CommaUtilityRoute Sync
    sleep 60 && /data/commasync/scripts/run.py sync-all --network <location_id>
    ### End CommaUtilityRoute Sync

Replacing a block removes any previous copy first, so the operation is
idempotent.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from commasync.core.config import JobsConfig
from commasync.core.storage import atomic_write_text

JobKind = Literal["route_sync", "backup"]

_NETWORK_ARG = re.compile(r"--network\s+(\S+)")


@dataclass(frozen=True, slots=True)
class JobMarkers:
    start: str
    end: str


JOB_MARKERS: dict[str, JobMarkers] = {
    "backup": JobMarkers("### Start CommaUtility Backup", "### End CommaUtility Backup"),
    "route_sync": JobMarkers("### Start CommaUtilityRoute Sync", "### End CommaUtilityRoute Sync"),
}


def _markers(kind: str) -> JobMarkers:
    try:
        return JOB_MARKERS[kind]
    except KeyError:
        raise ValueError(f"Invalid job type: {kind}") from None


def job_command(kind: str, location_id: str, jobs: JobsConfig) -> str:
    _markers(kind)
    if kind == "backup":
        return f"{jobs.command} backup --latest --network {location_id}"
    return f"sleep {jobs.startup_delay} && {jobs.command} sync-all --network {location_id}"


def _strip_block(lines: list[str], markers: JobMarkers) -> tuple[list[str], bool]:
    kept: list[str] = []
    inside = False
    found = False
    for line in lines:
        if not inside and line.startswith(markers.start):
            inside = True
            found = True
            continue
        if inside:
            if line.startswith(markers.end):
                inside = False
            continue
        kept.append(line)
    return kept, found


def _read_lines(launch_env: Path) -> list[str]:
    if not launch_env.exists():
        return []
    return launch_env.read_text(encoding="utf-8").splitlines()


def _write_lines(launch_env: Path, lines: list[str]) -> None:
    content = "\n".join(lines)
    if content:
        content += "\n"
    mode = launch_env.stat().st_mode & 0o777 if launch_env.exists() else 0o755
    atomic_write_text(launch_env, content, mode=mode)


def replace_job_block(
    launch_env: Path,
    kind: str,
    location_id: str,
    jobs: JobsConfig,
    logger: logging.Logger | None = None,
) -> str:
    """Write (or rewrite) the job block for ``kind`` and return its command."""

    logger = logger or logging.getLogger(__name__)
    markers = _markers(kind)
    command = job_command(kind, location_id, jobs)

    lines, _ = _strip_block(_read_lines(launch_env), markers)
    lines.extend([markers.start, command, markers.end])
    _write_lines(launch_env, lines)
    logger.info("job updated kind=%s location_id=%s file=%s", kind, location_id, launch_env)
    return command


def remove_job_block(launch_env: Path, kind: str, logger: logging.Logger | None = None) -> bool:
    """Remove the job block for ``kind``; returns whether one was present."""

    logger = logger or logging.getLogger(__name__)
    markers = _markers(kind)
    lines = _read_lines(launch_env)
    kept, found = _strip_block(lines, markers)
    if found:
        _write_lines(launch_env, kept)
        logger.info("job removed kind=%s file=%s", kind, launch_env)
    else:
        logger.debug("no job block to remove kind=%s file=%s", kind, launch_env)
    return found


def read_job_location_id(launch_env: Path, kind: str) -> str | None:
    """Return the location id referenced by an existing job block, if any."""

    markers = _markers(kind)
    inside = False
    for line in _read_lines(launch_env):
        if line.startswith(markers.start):
            inside = True
            continue
        if inside:
            if line.startswith(markers.end):
                return None
            match = _NETWORK_ARG.search(line)
            if match:
                return match.group(1)
    return None
