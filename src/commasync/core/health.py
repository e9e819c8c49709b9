"""Detection and repair of common problems with the sync setup.

``detect_issues`` is a pure function over a ``HealthSnapshot``; reading the
device state happens in ``collect_snapshot``. Each ``IssueKind`` with an
automatic fix maps to a ``Remedy`` in ``REMEDIES``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Protocol

from commasync.core.config import Settings
from commasync.core.device import latest_backup_dir
from commasync.core.errors import ConfigCorrupt, VaultUnavailable
from commasync.core.jobs import JOB_MARKERS, read_job_location_id, remove_job_block
from commasync.core.models import TransferState
from commasync.core.registry import LocationRegistry
from commasync.transfer.history import TransferLog
from commasync.transfer.state import TransferStateStore

BACKUP_STALE_DAYS = 30


class Severity(IntEnum):
    CRITICAL = 1
    WARNING = 2
    RECOMMENDATION = 3


class IssueKind(str, Enum):
    VAULT_KEY_MISSING = "vault_key_missing"
    REGISTRY_CORRUPT = "registry_corrupt"
    HISTORY_CORRUPT = "history_corrupt"
    TRANSFER_STATE_CORRUPT = "transfer_state_corrupt"
    INTERRUPTED_TRANSFER = "interrupted_transfer"
    ORPHANED_JOB = "orphaned_job"
    BACKUP_MISSING = "backup_missing"
    BACKUP_STALE = "backup_stale"


@dataclass(frozen=True, slots=True)
class Issue:
    kind: IssueKind
    description: str
    severity: Severity
    subject: str | None = None


@dataclass(slots=True)
class HealthSnapshot:
    """Everything ``detect_issues`` looks at, gathered up front."""

    key_file_ok: bool = True
    registry_error: str | None = None
    location_ids: set[str] = field(default_factory=set)
    interrupted: list[TransferState] = field(default_factory=list)
    corrupt_states: dict[str, str] = field(default_factory=dict)
    history_error: str | None = None
    job_locations: dict[str, str | None] = field(default_factory=dict)
    backup_age_days: float | None = None


@dataclass(slots=True)
class HealthContext:
    settings: Settings
    registry: LocationRegistry
    state_store: TransferStateStore
    history: TransferLog
    logger: logging.Logger


def detect_issues(snapshot: HealthSnapshot, stale_after_days: int = BACKUP_STALE_DAYS) -> list[Issue]:
    """Return the issues present in ``snapshot``, most severe first."""

    issues: list[Issue] = []

    if not snapshot.key_file_ok:
        issues.append(
            Issue(
                IssueKind.VAULT_KEY_MISSING,
                "Credential key file missing - stored passwords cannot be used",
                Severity.CRITICAL,
            )
        )

    if snapshot.registry_error is not None:
        issues.append(
            Issue(
                IssueKind.REGISTRY_CORRUPT,
                f"Network location config is corrupt: {snapshot.registry_error}",
                Severity.CRITICAL,
            )
        )
    else:
        for kind, location_id in sorted(snapshot.job_locations.items()):
            if location_id is not None and location_id not in snapshot.location_ids:
                issues.append(
                    Issue(
                        IssueKind.ORPHANED_JOB,
                        f"Scheduled {kind} job references a removed location ({location_id})",
                        Severity.WARNING,
                        subject=kind,
                    )
                )

    for path, reason in sorted(snapshot.corrupt_states.items()):
        issues.append(
            Issue(
                IssueKind.TRANSFER_STATE_CORRUPT,
                f"Transfer state file is unreadable and is being ignored: {reason}",
                Severity.WARNING,
                subject=path,
            )
        )

    if snapshot.history_error is not None:
        issues.append(
            Issue(
                IssueKind.HISTORY_CORRUPT,
                f"Transfer history is unreadable: {snapshot.history_error}",
                Severity.WARNING,
            )
        )

    for state in snapshot.interrupted:
        issues.append(
            Issue(
                IssueKind.INTERRUPTED_TRANSFER,
                f"Interrupted transfer of route {state.route_base_id} at {state.progress_percent}%",
                Severity.WARNING,
                subject=state.route_base_id,
            )
        )

    if snapshot.backup_age_days is None:
        issues.append(Issue(IssueKind.BACKUP_MISSING, "No device backup found", Severity.WARNING))
    elif snapshot.backup_age_days > stale_after_days:
        issues.append(
            Issue(
                IssueKind.BACKUP_STALE,
                f"Device backup is {int(snapshot.backup_age_days)} days old",
                Severity.RECOMMENDATION,
            )
        )

    issues.sort(key=lambda issue: issue.severity)
    return issues


def collect_snapshot(context: HealthContext, now: float | None = None) -> HealthSnapshot:
    paths = context.settings.paths
    snapshot = HealthSnapshot()

    try:
        context.registry.vault.ensure_available()
    except VaultUnavailable:
        snapshot.key_file_ok = False

    try:
        snapshot.location_ids = {location.location_id for location in context.registry.list_all()}
    except ConfigCorrupt as exc:
        snapshot.registry_error = exc.reason

    snapshot.interrupted = context.state_store.list_all()
    snapshot.corrupt_states = {str(exc.path): exc.reason for exc in context.state_store.corrupt_files()}
    snapshot.history_error = context.history.check()

    snapshot.job_locations = {kind: read_job_location_id(paths.launch_env, kind) for kind in JOB_MARKERS}

    latest = latest_backup_dir(paths.backup_base_dir)
    if latest is not None:
        now = time.time() if now is None else now
        snapshot.backup_age_days = max(0.0, (now - latest.stat().st_mtime) / 86400)
    return snapshot


class Remedy(Protocol):
    description: str

    def apply(self, issue: Issue, context: HealthContext) -> str:
        ...


class ReinitializeRegistry:
    description = "Move the corrupt config aside and start with an empty one"

    def apply(self, issue: Issue, context: HealthContext) -> str:
        moved: Path | None = context.registry.reinitialize()
        return f"Network config reinitialized (previous file kept at {moved})" if moved else "Network config created"


class ResetHistory:
    description = "Move the unreadable transfer history aside and start a new one"

    def apply(self, issue: Issue, context: HealthContext) -> str:
        moved = context.history.reinitialize()
        return f"Transfer history reset (previous file kept at {moved})" if moved else "Transfer history created"


class QuarantineTransferState:
    description = "Move the unreadable transfer state file aside"

    def apply(self, issue: Issue, context: HealthContext) -> str:
        moved = context.state_store.quarantine(Path(issue.subject or ""))
        return f"Transfer state file moved to {moved}" if moved else "Transfer state file already gone"


class ClearTransferState:
    description = "Discard the interrupted transfer so the route starts over"

    def apply(self, issue: Issue, context: HealthContext) -> str:
        route = issue.subject or ""
        context.state_store.clear(route)
        return f"Transfer state cleared for route {route}"


class RemoveOrphanedJob:
    description = "Remove the scheduled job that points at a missing location"

    def apply(self, issue: Issue, context: HealthContext) -> str:
        kind = issue.subject or ""
        removed = remove_job_block(context.settings.paths.launch_env, kind, context.logger)
        return f"Removed {kind} job" if removed else f"No {kind} job found"


REMEDIES: dict[IssueKind, Remedy] = {
    IssueKind.REGISTRY_CORRUPT: ReinitializeRegistry(),
    IssueKind.HISTORY_CORRUPT: ResetHistory(),
    IssueKind.TRANSFER_STATE_CORRUPT: QuarantineTransferState(),
    IssueKind.INTERRUPTED_TRANSFER: ClearTransferState(),
    IssueKind.ORPHANED_JOB: RemoveOrphanedJob(),
}


def fix_issues(issues: list[Issue], context: HealthContext) -> list[tuple[Issue, str]]:
    """Apply the remedy of every fixable issue; returns ``(issue, message)`` pairs."""

    results: list[tuple[Issue, str]] = []
    for issue in issues:
        remedy = REMEDIES.get(issue.kind)
        if remedy is None:
            continue
        message = remedy.apply(issue, context)
        context.logger.info("issue fixed kind=%s result=%s", issue.kind.value, message)
        results.append((issue, message))
    return results
