"""Data models for network locations, route artifacts and transfer bookkeeping."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Mapping

from commasync.core.errors import ConfigCorrupt


LocationProtocol = Literal["smb", "ssh"]
LocationRole = Literal["route_sync", "device_backup"]
AuthType = Literal["password", "key"]
ArtifactKind = Literal["rlog", "qlog", "video"]
TransferStatus = Literal["success", "failure"]

PROTOCOLS: tuple[str, ...] = ("smb", "ssh")
ROLES: tuple[str, ...] = ("route_sync", "device_backup")
ROLE_LABELS = {"route_sync": "Route Sync", "device_backup": "Device Backup"}


def generate_location_id(server: str, share_or_port: str | int, label: str, role: str) -> str:
    """Return the stable identifier for a location's identifying fields."""

    seed = f"{server}_{share_or_port}_{label}_{role}"
    return hashlib.md5(seed.encode("utf-8")).hexdigest()


def _as_number(value: Any) -> float:
    # older history files stored sizes and durations as strings
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(slots=True)
class LocationAuth:
    """Authentication settings for a location."""

    type: AuthType
    credential_ref: str | None = None
    key_path: str | None = None


@dataclass(slots=True)
class NetworkLocation:
    """A configured remote destination for one role."""

    location_id: str
    protocol: LocationProtocol
    role: LocationRole
    server: str
    label: str
    username: str
    auth: LocationAuth
    remote_path: str = ""
    share: str | None = None
    port: int | None = None

    @property
    def share_or_port(self) -> str:
        if self.protocol == "smb":
            return self.share or ""
        return str(self.port or 22)

    @property
    def display_target(self) -> str:
        if self.protocol == "smb":
            return f"//{self.server}/{self.share}/{self.remote_path}".rstrip("/")
        return f"{self.username}@{self.server}:{self.remote_path or '~'} (port {self.port})"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "location_id": self.location_id,
            "protocol": self.protocol,
            "role": self.role,
            "server": self.server,
            "remote_path": self.remote_path,
            "label": self.label,
            "username": self.username,
            "auth_type": self.auth.type,
        }
        if self.protocol == "smb":
            data["share"] = self.share
        else:
            data["port"] = self.port
        if self.auth.type == "password":
            data["credential_ref"] = self.auth.credential_ref
        else:
            data["key_path"] = self.auth.key_path
        return data

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], source: Path | None = None) -> "NetworkLocation":
        """Build a location from a registry entry.

        Entries written by older tooling used ``type``/``path``/``credential_file``
        and are accepted as well. A malformed entry raises ``ConfigCorrupt``
        naming ``source``.
        """

        protocol = raw.get("protocol") or ("smb" if "share" in raw else "ssh")
        role = raw.get("role") or raw.get("type")
        credential_ref = raw.get("credential_ref") or raw.get("credential_file")
        auth_type = raw.get("auth_type") or ("key" if raw.get("key_path") else "password")
        port = raw.get("port")
        if port is not None and port != "":
            try:
                port = int(port)
            except (TypeError, ValueError) as exc:
                raise ConfigCorrupt(source or Path("network_locations.json"), f"invalid port {port!r}") from exc
        else:
            port = None if protocol == "smb" else 22

        location = cls(
            location_id=str(raw.get("location_id") or ""),
            protocol=protocol,
            role=role,
            server=str(raw.get("server") or ""),
            label=str(raw.get("label") or ""),
            username=str(raw.get("username") or ""),
            auth=LocationAuth(
                type=auth_type,
                credential_ref=credential_ref,
                key_path=raw.get("key_path"),
            ),
            remote_path=str(raw.get("remote_path") if raw.get("remote_path") is not None else raw.get("path") or ""),
            share=raw.get("share") if protocol == "smb" else None,
            port=port if protocol == "ssh" else None,
        )
        if not location.location_id:
            location.location_id = generate_location_id(
                location.server, location.share_or_port, location.label, location.role
            )
        return location


@dataclass(frozen=True, slots=True)
class RouteArtifact:
    """A concatenated file covering one data kind for a whole route."""

    route_base_id: str
    kind: ArtifactKind
    path: Path
    byte_size: int
    camera: str | None = None

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(slots=True)
class TransferState:
    """Progress marker persisted while a route transfer is in flight."""

    route_base_id: str
    location_id: str
    progress_percent: int
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "route_base_id": self.route_base_id,
            "location_id": self.location_id,
            "progress_percent": self.progress_percent,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TransferState":
        return cls(
            route_base_id=str(raw.get("route_base_id") or raw.get("route") or ""),
            location_id=str(raw.get("location_id") or raw.get("network_id") or ""),
            progress_percent=int(raw.get("progress_percent", raw.get("progress", 0))),
            timestamp=str(raw.get("timestamp") or ""),
        )


@dataclass(frozen=True, slots=True)
class TransferLogEntry:
    """One completed transfer attempt."""

    timestamp: str
    route_base_id: str
    status: TransferStatus
    destination: str
    total_size: int
    duration: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "route_base_id": self.route_base_id,
            "status": self.status,
            "destination": self.destination,
            "total_size": self.total_size,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TransferLogEntry":
        return cls(
            timestamp=str(raw.get("timestamp") or ""),
            route_base_id=str(raw.get("route_base_id") or raw.get("route") or ""),
            status=raw.get("status", "success"),
            destination=str(raw.get("destination") or ""),
            total_size=int(_as_number(raw.get("total_size", raw.get("size")))),
            duration=_as_number(raw.get("duration")),
        )


@dataclass(frozen=True, slots=True)
class BackupResult:
    """Outcome of pushing a device backup to a location."""

    remote_dir: str
    total_size: int
    skipped: bool = False
