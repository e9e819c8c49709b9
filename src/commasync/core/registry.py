"""Network location registry.

Locations live in a single JSON document ``{"locations": [...]}``. At most
one location exists per role; replacing one requires explicit confirmation.
The new credential is written before the document, and the previous
credential file is removed only once the document has been saved.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from commasync.core.config import parse_location_params, validate_protocol, validate_role
from commasync.core.errors import ConfigCorrupt, ConfirmationRequired, DuplicateRoleConflict, LocationNotFound
from commasync.core.models import (
    ROLE_LABELS,
    ROLES,
    LocationAuth,
    NetworkLocation,
    generate_location_id,
)
from commasync.core.storage import JsonDocument
from commasync.core.vault import CredentialVault, credential_filename

if TYPE_CHECKING:
    from commasync.transfer.prober import ConnectivityProber, ProbeResult


def _empty_document() -> dict[str, Any]:
    return {"locations": []}


def _is_registry_document(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("locations"), list)


class LocationRegistry:
    """CRUD access to configured network locations."""

    def __init__(self, path: Path, vault: CredentialVault, logger: logging.Logger | None = None) -> None:
        self.document = JsonDocument(path, _empty_document, _is_registry_document)
        self.vault = vault
        self.logger = logger or logging.getLogger(__name__)

    @property
    def path(self) -> Path:
        return self.document.path

    def initialize(self) -> None:
        """Create an empty registry file when none exists yet."""

        if not self.document.exists():
            self.document.save(_empty_document())
            self.logger.info("network config initialized path=%s", self.path)

    def reinitialize(self) -> Path | None:
        """Replace a corrupt registry with an empty one, keeping the old file aside."""

        moved = self.document.reinitialize(self.logger)
        self.logger.warning("network config reinitialized path=%s previous=%s", self.path, moved or "-")
        return moved

    def _entries(self) -> list[Mapping[str, Any]]:
        return self.document.load()["locations"]

    def list_all(self) -> list[NetworkLocation]:
        locations: list[NetworkLocation] = []
        for index, raw in enumerate(self._entries(), start=1):
            if not isinstance(raw, Mapping):
                raise ConfigCorrupt(self.path, f"location #{index} is not an object")
            locations.append(NetworkLocation.from_dict(raw, self.path))
        return locations

    def get(self, role: str) -> NetworkLocation | None:
        validate_role(role)
        for location in self.list_all():
            if location.role == role:
                return location
        return None

    def get_by_id(self, location_id: str) -> NetworkLocation:
        for location in self.list_all():
            if location.location_id == location_id:
                return location
        raise LocationNotFound(f"Network location ID '{location_id}' not found in configuration")

    def get_label(self, location_id: str) -> str:
        return self.get_by_id(location_id).label

    def add(
        self,
        role: str,
        protocol: str,
        params: Mapping[str, Any],
        replace: bool = False,
    ) -> NetworkLocation:
        """Create the location for ``role``.

        ``params`` holds ``server``, ``share`` or ``port``, ``remote_path``,
        ``label``, ``username`` and either ``password`` or ``key_path``.
        Raises ``DuplicateRoleConflict`` when the role is taken and ``replace``
        is false; the existing entry is then left untouched.
        """

        role = validate_role(role)
        protocol = validate_protocol(protocol)
        values = parse_location_params(protocol, params)

        existing = self.get(role)
        if existing is not None and not replace:
            raise DuplicateRoleConflict(role, existing.label)

        share_or_port = values["share"] if protocol == "smb" else values["port"]
        location = NetworkLocation(
            location_id=generate_location_id(values["server"], share_or_port, values["label"], role),
            protocol=protocol,
            role=role,
            server=values["server"],
            label=values["label"],
            username=values["username"],
            auth=LocationAuth(type=values["auth_type"], key_path=values.get("key_path")),
            remote_path=values["remote_path"],
            share=values.get("share"),
            port=values.get("port"),
        )

        if values["auth_type"] == "password":
            # nothing may be removed if the new credential cannot be written
            self.vault.ensure_available()
        previous_ref = existing.auth.credential_ref if existing is not None else None

        if values["auth_type"] == "password":
            name = credential_filename(protocol, role, values["server"], share_or_port)
            location.auth.credential_ref = str(self.vault.encrypt(values["password"], name))

        def _mutate(document: dict[str, Any]) -> None:
            document["locations"] = [
                entry for entry in document["locations"] if NetworkLocation.from_dict(entry, self.path).role != role
            ]
            document["locations"].append(location.to_dict())

        try:
            self.document.update(_mutate)
        except BaseException:
            if location.auth.credential_ref and location.auth.credential_ref != previous_ref:
                self.vault.delete(location.auth.credential_ref)
            raise

        if existing is not None:
            removed = False
            if previous_ref and previous_ref != location.auth.credential_ref:
                removed = self.vault.delete(previous_ref)
            self.logger.info(
                "replaced %s location label=%s credential_removed=%s",
                role,
                existing.label,
                removed,
            )
        self.logger.info(
            "%s %s location added label=%s server=%s location_id=%s",
            ROLE_LABELS[role],
            protocol.upper(),
            location.label,
            location.server,
            location.location_id,
        )
        return location

    def remove(self, role: str, confirmed: bool = False) -> NetworkLocation:
        """Delete the location for ``role`` together with its credential file."""

        role = validate_role(role)
        existing = self.get(role)
        if existing is None:
            raise LocationNotFound(f"No {ROLE_LABELS[role]} location configured.")
        if not confirmed:
            raise ConfirmationRequired(f"Removing the {ROLE_LABELS[role]} location '{existing.label}' must be confirmed.")

        def _mutate(document: dict[str, Any]) -> None:
            document["locations"] = [
                entry for entry in document["locations"] if NetworkLocation.from_dict(entry, self.path).role != role
            ]

        self.document.update(_mutate)
        removed = self.vault.delete(existing.auth.credential_ref)
        self.logger.info(
            "%s location removed label=%s credential_removed=%s", ROLE_LABELS[role], existing.label, removed
        )
        return existing

    def password_for(self, location: NetworkLocation) -> str | None:
        """Decrypt the password of a password-authenticated location."""

        if location.auth.type != "password":
            return None
        if not location.auth.credential_ref:
            raise LocationNotFound(f"Location '{location.label}' has no credential reference.")
        return self.vault.decrypt(location.auth.credential_ref)

    def test_all(self, prober: "ConnectivityProber") -> dict[str, "ProbeResult | None"]:
        """Probe every role; roles without a location map to ``None``."""

        results: dict[str, ProbeResult | None] = {}
        for role in ROLES:
            location = self.get(role)
            results[role] = prober.probe(location) if location is not None else None
        return results
