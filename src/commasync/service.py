"""Entry points used by the command line and by scheduled jobs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

import paramiko

from commasync.common.run_summary import RouteResultData, SyncSummaryBuilder
from commasync.core.config import Settings
from commasync.core.device import ensure_offroad, latest_backup_dir
from commasync.core.errors import ConfigCorrupt, LocationNotFound, TransferFailed
from commasync.core.health import HealthContext, Issue, collect_snapshot, detect_issues, fix_issues
from commasync.core.jobs import remove_job_block, replace_job_block
from commasync.core.models import ROLE_LABELS, BackupResult, NetworkLocation
from commasync.core.registry import LocationRegistry
from commasync.core.runner import CommandRunner, SubprocessRunner
from commasync.core.vault import CredentialVault
from commasync.routes.concat import SegmentConcatenator
from commasync.routes.segments import list_route_ids
from commasync.transfer.engine import ResumeDecision, TransferEngine, TransferOutcome, describe_destination
from commasync.transfer.history import TransferLog
from commasync.transfer.prober import ConnectivityProber
from commasync.transfer.state import TransferStateStore
from commasync.transfer.targets import ProtocolTargetFactory

UNKNOWN_LABEL = "Unknown"

# Asked for (protocol, params) when a role has no location yet.
LocationPrompt = Callable[[str], tuple[str, Mapping[str, Any]]]


class SyncService:
    """Wires the registry, concatenator and transfer engine together."""

    def __init__(
        self,
        settings: Settings,
        registry: LocationRegistry,
        prober: ConnectivityProber,
        concatenator: SegmentConcatenator,
        state_store: TransferStateStore,
        history: TransferLog,
        engine: TransferEngine,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.prober = prober
        self.concatenator = concatenator
        self.state_store = state_store
        self.history = history
        self.engine = engine
        self.logger = logger or logging.getLogger(__name__)

    def _ensure_offroad(self, action: str) -> None:
        ensure_offroad(self.settings.paths.onroad_file, action)

    def select_or_configure_location(self, role: str, configure: LocationPrompt | None = None) -> NetworkLocation:
        """Return the location configured for ``role``, creating it through ``configure`` when missing."""

        existing = self.registry.get(role)
        if existing is not None:
            self.logger.debug("using %s location label=%s", role, existing.label)
            return existing
        if configure is None:
            raise LocationNotFound(f"No {ROLE_LABELS[role]} location configured.")

        protocol, params = configure(role)
        location = self.registry.add(role, protocol, params)
        result = self.prober.probe(location)
        if not result.ok:
            self.logger.warning(
                "new location saved but connection test failed label=%s status=%s detail=%s",
                location.label,
                result.status,
                result.detail,
            )
        return location

    def get_location_label(self, location_id: str) -> str:
        try:
            return self.registry.get_label(location_id)
        except (LocationNotFound, ConfigCorrupt):
            return UNKNOWN_LABEL

    def sync_route(
        self,
        route_base_id: str,
        location_id: str,
        resume: bool | ResumeDecision | None = None,
    ) -> TransferOutcome:
        self._ensure_offroad("sync routes")
        location = self.registry.get_by_id(location_id)
        return self.engine.sync_route(route_base_id, location, resume)

    def sync_all_routes(self, location_id: str, resume: bool | ResumeDecision | None = None) -> dict[str, object]:
        """Transfer every route on the device; one failing route does not stop the others."""

        self._ensure_offroad("sync routes")
        location = self.registry.get_by_id(location_id)
        routes = list_route_ids(self.settings.paths.routes_dir)

        now = datetime.now(timezone.utc)
        builder = SyncSummaryBuilder(
            run_id=now.strftime("%Y%m%d-%H%M%S"),
            timestamp=now.replace(microsecond=0).isoformat(),
            location_id=location.location_id,
            destination=describe_destination(location, self.engine.remote_route_dir(location, "")),
        )
        builder.set_routes_total(len(routes))
        self.logger.info("sync-all started routes=%d label=%s", len(routes), location.label)

        for route_base_id in routes:
            try:
                outcome = self.engine.sync_route(route_base_id, location, resume)
            except TransferFailed as exc:
                builder.add_route(
                    RouteResultData(
                        route_base_id=route_base_id,
                        status="failed",
                        stage=exc.stage,
                        state_preserved=exc.state_preserved,
                        error=str(exc),
                    )
                )
                continue

            builder.add_route(
                RouteResultData(
                    route_base_id=route_base_id,
                    status="success",
                    uploaded=outcome.uploaded,
                    skipped=outcome.skipped,
                    total_size=outcome.total_size,
                    uploaded_bytes=outcome.uploaded_bytes,
                    duration=outcome.duration,
                )
            )

        removed = self.history.prune(self.settings.transfer.history_retention_days)
        if removed:
            self.logger.info("transfer log pruned entries=%d", removed)

        builder.save(self.settings.paths.summary_dir, self.logger)
        self.logger.info(
            "sync-all finished success=%d failed=%d uploaded_files=%d skipped_files=%d",
            builder.routes_success,
            builder.routes_failed,
            builder.files_uploaded,
            builder.files_skipped,
        )
        return builder.build()

    def transfer_backup(self, backup_dir: Path, location_id: str) -> BackupResult:
        self._ensure_offroad("transfer backups")
        location = self.registry.get_by_id(location_id)
        return self.engine.transfer_backup(backup_dir, location)

    def transfer_latest_backup(self, location_id: str) -> BackupResult:
        backup_dir = latest_backup_dir(self.settings.paths.backup_base_dir)
        if backup_dir is None:
            raise TransferFailed(
                f"No device backup found in {self.settings.paths.backup_base_dir}", state_preserved=False
            )
        return self.transfer_backup(backup_dir, location_id)

    def fetch_backup(self, location_id: str, destination: Path) -> Path:
        location = self.registry.get_by_id(location_id)
        return self.engine.fetch_backup(location, destination)

    def set_job(self, kind: str, location_id: str) -> str:
        self._ensure_offroad("change scheduled jobs")
        location = self.registry.get_by_id(location_id)
        return replace_job_block(
            self.settings.paths.launch_env, kind, location.location_id, self.settings.jobs, self.logger
        )

    def remove_job(self, kind: str) -> bool:
        return remove_job_block(self.settings.paths.launch_env, kind, self.logger)

    def _health_context(self) -> HealthContext:
        return HealthContext(self.settings, self.registry, self.state_store, self.history, self.logger)

    def detect_issues(self) -> list[Issue]:
        return detect_issues(collect_snapshot(self._health_context()))

    def fix_issues(self, issues: list[Issue]) -> list[tuple[Issue, str]]:
        return fix_issues(issues, self._health_context())


def build_service(
    settings: Settings,
    logger: logging.Logger | None = None,
    runner: CommandRunner | None = None,
    ssh_client_factory: Callable[[], Any] = paramiko.SSHClient,
) -> SyncService:
    """Assemble a ``SyncService`` from settings."""

    logger = logger or logging.getLogger("commasync")
    runner = runner or SubprocessRunner()
    paths = settings.paths
    transfer = settings.transfer

    vault = CredentialVault(paths.credentials_dir, paths.key_file)
    registry = LocationRegistry(paths.network_config, vault, logger)
    target_factory = ProtocolTargetFactory(registry, runner, transfer, ssh_client_factory, logger)
    prober = ConnectivityProber(target_factory, logger)
    concatenator = SegmentConcatenator(
        paths.routes_dir,
        paths.concat_work_dir,
        runner,
        logger,
        command_timeout=transfer.command_timeout,
        poll_interval=transfer.poll_interval,
        min_free_bytes=transfer.min_free_bytes,
    )
    state_store = TransferStateStore(paths.state_dir, logger)
    history = TransferLog(paths.transfer_log, logger)
    engine = TransferEngine(settings, concatenator, state_store, history, target_factory, logger)
    return SyncService(settings, registry, prober, concatenator, state_store, history, engine, logger)
