"""Command line interface for commasync."""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from pathlib import Path
from typing import Any, Callable

from commasync.core.config import ConfigError, Settings, load_settings
from commasync.core.errors import (
    CommaSyncError,
    ConfirmationRequired,
    DuplicateRoleConflict,
    LocationNotFound,
    TransferFailed,
)
from commasync.core.health import Severity
from commasync.core.jobs import JOB_MARKERS, read_job_location_id
from commasync.core.logging import setup_logging
from commasync.core.models import PROTOCOLS, ROLE_LABELS, ROLES, NetworkLocation, TransferState
from commasync.routes.concat import ARTIFACT_KINDS
from commasync.service import SyncService, build_service

DEFAULT_RESTORE_DIR = Path("/tmp/network_restore")


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""

    parser = argparse.ArgumentParser(
        description=(
            "Network location management and resumable route/backup transfers for comma devices. "
            "Routes are concatenated per segment kind and pushed to SMB shares or SSH hosts."
        ),
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to local.yml. Defaults to config/local.yml in the project root.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting. Overrides config/local.yml logging.level.",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm destructive actions without prompting",
    )

    subcommands = parser.add_subparsers(dest="command", title="commands")

    locations = subcommands.add_parser("locations", help="Manage network locations")
    location_commands = locations.add_subparsers(dest="locations_command", title="location commands")
    location_commands.add_parser("list", help="Show configured locations")
    location_commands.add_parser("test", help="Test connectivity of every configured location")

    add_parser = location_commands.add_parser("add", help="Configure the location for a role")
    add_parser.add_argument("--role", choices=ROLES, required=True)
    add_parser.add_argument("--protocol", choices=PROTOCOLS, required=True)
    add_parser.add_argument("--server", required=True, help="Server address or hostname")
    add_parser.add_argument("--share", help="SMB share name")
    add_parser.add_argument("--port", type=int, help="SSH port (default 22)")
    add_parser.add_argument("--path", dest="remote_path", default="", help="Remote base path")
    add_parser.add_argument("--label", required=True, help="Friendly name for the location")
    add_parser.add_argument("--username", required=True)
    add_parser.add_argument("--key-path", help="SSH private key; password authentication when omitted")

    remove_parser = location_commands.add_parser("remove", help="Remove the location for a role")
    remove_parser.add_argument("--role", choices=ROLES, required=True)

    sync_route = subcommands.add_parser("sync-route", help="Concatenate and transfer one route")
    sync_route.add_argument("route", help="Route base id, e.g. 00000123--4a5b6c7d8e")
    sync_route.add_argument("--network", help="Location id (defaults to the route sync location)")
    sync_route.add_argument(
        "--restart",
        action="store_true",
        help="Discard an interrupted transfer of this route instead of resuming it",
    )

    sync_all = subcommands.add_parser("sync-all", help="Transfer every route on the device")
    sync_all.add_argument("--network", help="Location id (defaults to the route sync location)")
    sync_all.add_argument("--restart", action="store_true", help="Restart interrupted transfers")

    backup = subcommands.add_parser("backup", help="Transfer a device backup")
    backup.add_argument("backup_dir", nargs="?", type=Path, help="Backup directory to transfer")
    backup.add_argument("--latest", action="store_true", help="Transfer the newest local backup")
    backup.add_argument("--network", help="Location id (defaults to the device backup location)")

    fetch = subcommands.add_parser("fetch-backup", help="Download the device backup from a location")
    fetch.add_argument("--network", help="Location id (defaults to the device backup location)")
    fetch.add_argument("--dest", type=Path, default=DEFAULT_RESTORE_DIR, help="Destination directory")

    concat = subcommands.add_parser("concat", help="Concatenate route segments locally")
    concat.add_argument("route", help="Route base id")
    concat.add_argument("--type", dest="kind", choices=[*ARTIFACT_KINDS, "all"], default="all")
    concat.add_argument("--output", type=Path, help="Output directory")
    concat.add_argument(
        "--remove-originals",
        action="store_true",
        help="Delete the source segment files after a successful concatenation",
    )

    jobs = subcommands.add_parser("jobs", help="Manage scheduled jobs in the launch environment")
    job_commands = jobs.add_subparsers(dest="jobs_command", title="job commands")
    job_set = job_commands.add_parser("set", help="Create or replace a job")
    job_set.add_argument("kind", choices=sorted(JOB_MARKERS))
    job_set.add_argument("--network", help="Location id (defaults to the location of the matching role)")
    job_remove = job_commands.add_parser("remove", help="Remove a job")
    job_remove.add_argument("kind", choices=sorted(JOB_MARKERS))
    job_commands.add_parser("show", help="Show configured jobs")

    logs = subcommands.add_parser("logs", help="Show the transfer history")
    logs.add_argument("--route", help="Only show entries for this route")
    logs.add_argument("--limit", type=int, default=20, help="Number of most recent entries to show")

    issues = subcommands.add_parser("issues", help="Detect configuration and transfer problems")
    issues.add_argument("--fix", action="store_true", help="Apply the available fixes")

    return parser


def _confirm(args: argparse.Namespace, question: str) -> bool:
    if args.yes:
        return True
    if not sys.stdin.isatty():
        return False
    answer = input(f"{question} (y/N): ").strip().lower()
    return answer in ("y", "yes")


def _default_location_id(service: SyncService, role: str, explicit: str | None) -> str:
    if explicit:
        return explicit
    location = service.select_or_configure_location(role)
    return location.location_id


def _describe(location: NetworkLocation) -> str:
    return (
        f"{ROLE_LABELS[location.role]}: {location.label} [{location.protocol.upper()}] "
        f"{location.display_target} auth={location.auth.type} id={location.location_id}"
    )


def _cmd_locations(args: argparse.Namespace, service: SyncService, logger: logging.Logger) -> int:
    registry = service.registry
    command = args.locations_command

    if command in (None, "list"):
        locations = registry.list_all()
        if not locations:
            print("No network locations configured.")
        for location in locations:
            print(_describe(location))
        return 0

    if command == "test":
        failures = 0
        for role, result in registry.test_all(service.prober).items():
            if result is None:
                print(f"{ROLE_LABELS[role]}: not configured")
                continue
            print(f"{ROLE_LABELS[role]}: {result.status}{' - ' + result.detail if result.detail else ''}")
            failures += 0 if result.ok else 1
        return 1 if failures else 0

    if command == "add":
        params: dict[str, Any] = {
            "server": args.server,
            "share": args.share,
            "port": args.port,
            "remote_path": args.remote_path,
            "label": args.label,
            "username": args.username,
        }
        if args.key_path:
            params["auth_type"] = "key"
            params["key_path"] = args.key_path
        else:
            params["password"] = getpass.getpass(f"Password for {args.username}@{args.server}: ")

        try:
            location = registry.add(args.role, args.protocol, params)
        except DuplicateRoleConflict as exc:
            if not _confirm(args, f"Replace the existing {ROLE_LABELS[args.role]} location '{exc.existing_label}'?"):
                logger.info("location replacement cancelled role=%s", args.role)
                return 1
            location = registry.add(args.role, args.protocol, params, replace=True)

        result = service.prober.probe(location)
        print(_describe(location))
        print(f"Connection test: {result.status}{' - ' + result.detail if result.detail else ''}")
        return 0

    if command == "remove":
        existing = registry.get(args.role)
        if existing is None:
            raise LocationNotFound(f"No {ROLE_LABELS[args.role]} location configured.")
        confirmed = _confirm(args, f"Remove {ROLE_LABELS[args.role]} location '{existing.label}'?")
        try:
            registry.remove(args.role, confirmed=confirmed)
        except ConfirmationRequired:
            logger.info("location removal cancelled role=%s", args.role)
            return 1
        print(f"Removed {ROLE_LABELS[args.role]} location '{existing.label}'.")
        return 0

    raise ValueError(f"Unknown locations command: {command}")


def _resume_prompt(args: argparse.Namespace) -> bool | Callable[[TransferState], bool]:
    if args.restart:
        return False
    if args.yes or not sys.stdin.isatty():
        return True

    def _ask(state: TransferState) -> bool:
        answer = input(
            f"Route {state.route_base_id} was interrupted at {state.progress_percent}% "
            f"({state.timestamp}). Resume? (Y/n): "
        )
        return answer.strip().lower() not in ("n", "no")

    return _ask


def _cmd_sync_route(args: argparse.Namespace, service: SyncService, logger: logging.Logger) -> int:
    location_id = _default_location_id(service, "route_sync", args.network)
    outcome = service.sync_route(args.route, location_id, _resume_prompt(args))
    print(
        f"Route {outcome.route_base_id} -> {outcome.destination}: "
        f"uploaded={len(outcome.uploaded)} skipped={len(outcome.skipped)} duration={outcome.duration}s"
    )
    return 0


def _cmd_sync_all(args: argparse.Namespace, service: SyncService, logger: logging.Logger) -> int:
    location_id = _default_location_id(service, "route_sync", args.network)
    summary = service.sync_all_routes(location_id, False if args.restart else True)
    totals = summary["totals"]
    print(
        f"Routes: {totals['routes_success']} ok, {totals['routes_failed']} failed of {totals['routes_total']}; "
        f"files uploaded={totals['files_uploaded']} skipped={totals['files_skipped']}"
    )
    return 1 if totals["routes_failed"] else 0


def _cmd_backup(args: argparse.Namespace, service: SyncService, logger: logging.Logger) -> int:
    location_id = _default_location_id(service, "device_backup", args.network)
    if args.backup_dir is not None:
        result = service.transfer_backup(args.backup_dir, location_id)
    elif args.latest:
        result = service.transfer_latest_backup(location_id)
    else:
        raise ValueError("Specify a backup directory or --latest.")
    state = "unchanged, skipped" if result.skipped else "transferred"
    print(f"Backup {state}: {result.total_size} bytes -> {result.remote_dir}")
    return 0


def _cmd_fetch_backup(args: argparse.Namespace, service: SyncService, logger: logging.Logger) -> int:
    location_id = _default_location_id(service, "device_backup", args.network)
    destination = service.fetch_backup(location_id, args.dest)
    print(f"Backup fetched into {destination}")
    return 0


def _cmd_concat(args: argparse.Namespace, service: SyncService, logger: logging.Logger) -> int:
    output_dir = args.output or service.engine.output_dir_for(args.route)
    kinds = ARTIFACT_KINDS if args.kind == "all" else (args.kind,)

    def _confirm_removal(kind: str, count: int) -> bool:
        return _confirm(args, f"Delete {count} original {kind} segment files?")

    for kind in kinds:
        artifacts = service.concatenator.concatenate(
            args.route,
            kind,
            output_dir,
            keep_originals=not args.remove_originals,
            confirm_removal=_confirm_removal,
        )
        for artifact in artifacts:
            print(f"{artifact.path} ({artifact.byte_size} bytes)")
    return 0


def _cmd_jobs(args: argparse.Namespace, service: SyncService, logger: logging.Logger) -> int:
    command = args.jobs_command
    launch_env = service.settings.paths.launch_env

    if command in (None, "show"):
        for kind in sorted(JOB_MARKERS):
            location_id = read_job_location_id(launch_env, kind)
            if location_id is None:
                print(f"{kind}: not configured")
            else:
                print(f"{kind}: {service.get_location_label(location_id)} ({location_id})")
        return 0

    if command == "set":
        role = "device_backup" if args.kind == "backup" else "route_sync"
        location_id = _default_location_id(service, role, args.network)
        command_line = service.set_job(args.kind, location_id)
        print(f"{args.kind} job set: {command_line}")
        return 0

    if command == "remove":
        removed = service.remove_job(args.kind)
        print(f"{args.kind} job removed." if removed else f"No {args.kind} job configured.")
        return 0

    raise ValueError(f"Unknown jobs command: {command}")


def _cmd_logs(args: argparse.Namespace, service: SyncService, logger: logging.Logger) -> int:
    entries = service.history.query_by_route(args.route) if args.route else service.history.query_all()
    if not entries:
        print("No transfers recorded.")
        return 0
    for entry in entries[-max(1, args.limit):]:
        print(
            f"{entry.timestamp} {entry.status:<7} {entry.route_base_id} -> {entry.destination} "
            f"size={entry.total_size} duration={entry.duration}s"
        )
    return 0


def _cmd_issues(args: argparse.Namespace, service: SyncService, logger: logging.Logger) -> int:
    issues = service.detect_issues()
    if not issues:
        print("No issues found.")
        return 0

    for issue in issues:
        print(f"[{issue.severity.name}] {issue.description}")

    if args.fix:
        for issue, message in service.fix_issues(issues):
            print(f"fixed {issue.kind.value}: {message}")
    return 1 if any(issue.severity == Severity.CRITICAL for issue in issues) else 0


COMMANDS: dict[str, Callable[[argparse.Namespace, SyncService, logging.Logger], int]] = {
    "locations": _cmd_locations,
    "sync-route": _cmd_sync_route,
    "sync-all": _cmd_sync_all,
    "backup": _cmd_backup,
    "fetch-backup": _cmd_fetch_backup,
    "concat": _cmd_concat,
    "jobs": _cmd_jobs,
    "logs": _cmd_logs,
    "issues": _cmd_issues,
}


def main(
    argv: list[str] | None = None,
    service_factory: Callable[[Settings, logging.Logger], SyncService] | None = None,
) -> int:
    """Run the CLI."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logging(args.config or "config/local.yml", cli_level=logging.DEBUG if args.debug else None)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        settings = load_settings(args.config, logger)
    except ConfigError as exc:
        logger.error("invalid configuration: %s", exc)
        return 2

    service = (service_factory or build_service)(settings, logger)
    logger.debug("command started command=%s", args.command)
    try:
        return COMMANDS[args.command](args, service, logger)
    except TransferFailed as exc:
        logger.error("%s (stage=%s, state preserved=%s)", exc, exc.stage, exc.state_preserved)
        print(f"Transfer failed at stage '{exc.stage}': {exc}", file=sys.stderr)
        if exc.state_preserved:
            print("Progress was saved; rerun the command to resume.", file=sys.stderr)
        return 1
    except (CommaSyncError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.warning("interrupted by user")
        return 130
