import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from commasync.core.config import LocationConfigError
from commasync.core.errors import (
    ConfigCorrupt,
    ConfirmationRequired,
    DuplicateRoleConflict,
    LocationNotFound,
    VaultUnavailable,
)
from commasync.core.models import generate_location_id
from commasync.core.registry import LocationRegistry
from commasync.core.vault import CredentialVault

SMB_PARAMS = {
    "server": "nas.local",
    "share": "routes",
    "remote_path": "comma",
    "label": "Home",
    "username": "comma",
    "password": "hunter2",
}


class LocationRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.key_file = self.root / "GithubSshKeys"
        self.key_file.write_text("device-key\n", encoding="utf-8")
        self.credentials = self.root / "credentials"
        self.vault = CredentialVault(self.credentials, self.key_file, iterations=1000)
        self.config = self.root / "network_locations.json"
        self.registry = LocationRegistry(self.config, self.vault)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_add_stores_location_and_encrypted_password(self) -> None:
        location = self.registry.add("route_sync", "smb", SMB_PARAMS)

        self.assertEqual([location], self.registry.list_all())
        self.assertEqual(generate_location_id("nas.local", "routes", "Home", "route_sync"), location.location_id)
        self.assertEqual("hunter2", self.registry.password_for(location))

        stored = json.loads(self.config.read_text(encoding="utf-8"))
        entry = stored["locations"][0]
        self.assertEqual("smb", entry["protocol"])
        self.assertEqual("route_sync", entry["role"])
        self.assertEqual("routes", entry["share"])
        self.assertNotIn("password", entry)
        self.assertNotIn("hunter2", self.config.read_text(encoding="utf-8"))
        self.assertTrue(Path(entry["credential_ref"]).is_file())

    def test_second_add_for_same_role_without_confirmation_conflicts(self) -> None:
        original = self.registry.add("route_sync", "smb", SMB_PARAMS)
        before = self.config.read_bytes()

        with self.assertRaises(DuplicateRoleConflict) as ctx:
            self.registry.add("route_sync", "smb", {**SMB_PARAMS, "server": "other.local", "label": "Work"})

        self.assertEqual("Home", ctx.exception.existing_label)
        self.assertEqual(before, self.config.read_bytes())
        self.assertEqual([original], self.registry.list_all())

    def test_replace_keeps_one_location_per_role_and_drops_old_credential(self) -> None:
        original = self.registry.add("route_sync", "smb", SMB_PARAMS)
        replacement = self.registry.add(
            "route_sync",
            "ssh",
            {"server": "backup.local", "port": 2222, "label": "Work", "username": "pi", "password": "pw"},
            replace=True,
        )

        locations = self.registry.list_all()
        self.assertEqual(1, len([loc for loc in locations if loc.role == "route_sync"]))
        self.assertEqual(replacement.location_id, locations[0].location_id)
        self.assertFalse(Path(original.auth.credential_ref).exists())
        self.assertEqual(["ssh_route_sync_backup.local_2222"], sorted(p.name for p in self.credentials.iterdir()))

    def test_failed_replace_keeps_previous_location_usable(self) -> None:
        original = self.registry.add("route_sync", "smb", SMB_PARAMS)
        before = self.config.read_bytes()

        with mock.patch.object(self.registry.document, "update", side_effect=OSError("No space left on device")):
            with self.assertRaises(OSError):
                self.registry.add(
                    "route_sync",
                    "ssh",
                    {"server": "backup.local", "label": "Work", "username": "pi", "password": "pw"},
                    replace=True,
                )

        self.assertEqual(before, self.config.read_bytes())
        self.assertEqual([original], self.registry.list_all())
        self.assertEqual("hunter2", self.registry.password_for(original))
        self.assertEqual(["smb_route_sync_nas.local_routes"], sorted(p.name for p in self.credentials.iterdir()))

    def test_replace_with_same_credential_file_keeps_it(self) -> None:
        self.registry.add("route_sync", "smb", SMB_PARAMS)

        replacement = self.registry.add("route_sync", "smb", {**SMB_PARAMS, "password": "changed"}, replace=True)

        self.assertEqual("changed", self.registry.password_for(replacement))

    def test_roles_are_independent(self) -> None:
        self.registry.add("route_sync", "smb", SMB_PARAMS)
        self.registry.add(
            "device_backup",
            "ssh",
            {"server": "backup.local", "label": "Backup", "username": "pi", "key_path": "/data/keys/id_ed25519"},
        )

        self.assertEqual({"route_sync", "device_backup"}, {loc.role for loc in self.registry.list_all()})
        backup = self.registry.get("device_backup")
        self.assertEqual("key", backup.auth.type)
        self.assertEqual(22, backup.port)
        self.assertIsNone(self.registry.password_for(backup))

    def test_key_auth_does_not_require_the_vault_key(self) -> None:
        self.key_file.unlink()

        location = self.registry.add(
            "device_backup",
            "ssh",
            {"server": "backup.local", "label": "Backup", "username": "pi", "key_path": "/data/keys/id"},
        )

        self.assertEqual("key", location.auth.type)

    def test_missing_vault_key_aborts_add_without_writing(self) -> None:
        self.key_file.unlink()

        with self.assertRaises(VaultUnavailable):
            self.registry.add("route_sync", "smb", SMB_PARAMS)
        self.assertFalse(self.config.exists())
        self.assertFalse(self.credentials.exists())

    def test_invalid_params_are_rejected(self) -> None:
        with self.assertRaises(LocationConfigError):
            self.registry.add("route_sync", "smb", {**SMB_PARAMS, "share": ""})
        with self.assertRaises(LocationConfigError):
            self.registry.add("route_sync", "ssh", {**SMB_PARAMS, "port": 70000})
        with self.assertRaises(LocationConfigError):
            self.registry.add("archive", "smb", SMB_PARAMS)

    def test_remove_requires_confirmation(self) -> None:
        location = self.registry.add("route_sync", "smb", SMB_PARAMS)

        with self.assertRaises(ConfirmationRequired):
            self.registry.remove("route_sync")
        self.assertEqual([location], self.registry.list_all())

        self.registry.remove("route_sync", confirmed=True)
        self.assertEqual([], self.registry.list_all())
        self.assertFalse(Path(location.auth.credential_ref).exists())

    def test_remove_unknown_role_raises(self) -> None:
        with self.assertRaises(LocationNotFound):
            self.registry.remove("device_backup", confirmed=True)

    def test_label_lookup_by_id(self) -> None:
        location = self.registry.add("route_sync", "smb", SMB_PARAMS)

        self.assertEqual("Home", self.registry.get_label(location.location_id))
        with self.assertRaises(LocationNotFound):
            self.registry.get_label("does-not-exist")

    def test_location_id_ignores_path_changes(self) -> None:
        first = self.registry.add("route_sync", "smb", SMB_PARAMS)
        second = self.registry.add("route_sync", "smb", {**SMB_PARAMS, "remote_path": "elsewhere"}, replace=True)
        renamed = self.registry.add("route_sync", "smb", {**SMB_PARAMS, "label": "Renamed"}, replace=True)

        self.assertEqual(first.location_id, second.location_id)
        self.assertNotEqual(first.location_id, renamed.location_id)

    def test_corrupt_document_raises_and_is_preserved_on_reinitialize(self) -> None:
        self.config.write_text("{not json", encoding="utf-8")

        with self.assertRaises(ConfigCorrupt):
            self.registry.list_all()

        moved = self.registry.reinitialize()
        self.assertIsNotNone(moved)
        self.assertEqual("{not json", moved.read_text(encoding="utf-8"))
        self.assertEqual([], self.registry.list_all())

    def test_empty_document_is_corrupt(self) -> None:
        self.config.write_text("", encoding="utf-8")

        with self.assertRaises(ConfigCorrupt):
            self.registry.get("route_sync")

    def test_legacy_entries_are_read(self) -> None:
        self.config.write_text(
            json.dumps(
                {
                    "locations": [
                        {
                            "type": "route_sync",
                            "server": "nas.local",
                            "share": "routes",
                            "path": "old/path",
                            "label": "Legacy",
                            "username": "comma",
                            "credential_file": "/data/commautil/credentials/smb_route_sync_nas.local_routes",
                        }
                    ]
                }
            ),
            encoding="utf-8",
        )

        location = self.registry.get("route_sync")

        self.assertEqual("smb", location.protocol)
        self.assertEqual("old/path", location.remote_path)
        self.assertEqual("password", location.auth.type)
        self.assertEqual(generate_location_id("nas.local", "routes", "Legacy", "route_sync"), location.location_id)

    def test_malformed_port_is_reported_as_corruption(self) -> None:
        self.config.write_text(
            json.dumps(
                {
                    "locations": [
                        {
                            "protocol": "ssh",
                            "role": "device_backup",
                            "server": "backup.local",
                            "port": "twenty-two",
                            "label": "Backup",
                            "username": "pi",
                            "key_path": "/data/keys/id",
                        }
                    ]
                }
            ),
            encoding="utf-8",
        )

        with self.assertRaises(ConfigCorrupt) as ctx:
            self.registry.list_all()
        self.assertEqual(self.config, ctx.exception.path)

    def test_initialize_creates_empty_document_once(self) -> None:
        self.registry.initialize()
        self.assertEqual({"locations": []}, json.loads(self.config.read_text(encoding="utf-8")))

        self.registry.add("route_sync", "smb", SMB_PARAMS)
        self.registry.initialize()
        self.assertEqual(1, len(self.registry.list_all()))


if __name__ == "__main__":
    unittest.main()
