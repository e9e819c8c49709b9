"""Device identity, driving-state checks and local backups."""

from __future__ import annotations

from pathlib import Path

from commasync.core.errors import DeviceOnroad

UNKNOWN_DEVICE_ID = "unknown_device"


def get_device_id(device_id_file: Path) -> str:
    """Return the persistent hardware serial used to namespace remote paths."""

    try:
        value = device_id_file.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return UNKNOWN_DEVICE_ID
    return value or UNKNOWN_DEVICE_ID


def is_onroad(onroad_file: Path) -> bool:
    try:
        return onroad_file.read_text(encoding="utf-8", errors="replace").startswith("1")
    except OSError:
        return False


def ensure_offroad(onroad_file: Path, action: str) -> None:
    if is_onroad(onroad_file):
        raise DeviceOnroad(f"Cannot {action} while onroad.")


def latest_backup_dir(backup_base_dir: Path) -> Path | None:
    """Return the most recently modified backup directory, if any."""

    if not backup_base_dir.is_dir():
        return None
    candidates = [entry for entry in backup_base_dir.iterdir() if entry.is_dir()]
    if not candidates:
        return None
    return max(candidates, key=lambda entry: entry.stat().st_mtime)
