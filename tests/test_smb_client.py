import logging
import sys
import tarfile
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
TESTS_DIR = Path(__file__).resolve().parent
for path in (SRC_DIR, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from commasync.core.errors import (
    CommandError,
    CommandTimeout,
    RemoteAuthError,
    RemoteCommandError,
    RemoteConnectionError,
)
from commasync.smb.client import SmbClient, parse_listing
from commasync.smb.target import BACKUP_ARCHIVE, SmbTarget, build_backup_archive

from fakes import FakeRunner, failed, make_location, ok, smb_listing

LOGGER = logging.getLogger("commasync.tests.smb")


class ParseListingTests(unittest.TestCase):
    def test_regular_files_with_sizes(self) -> None:
        listing = smb_listing({"rlog": 4096, "fcamera.hevc": 123456789, "name with spaces.ts": 7})

        self.assertEqual(
            {"rlog": 4096, "fcamera.hevc": 123456789, "name with spaces.ts": 7},
            parse_listing(listing),
        )

    def test_directories_and_footer_are_ignored(self) -> None:
        listing = (
            "  ..                                  D        0  Mon Jan  1 00:00:00 2024\n"
            "  abc123                              D        0  Tue Feb 13 09:15:02 2024\n"
            "  qlog                                AN     512  Tue Feb 13 09:15:02 2024\n"
            "\n\t\t61202 blocks of size 1048576. 3300 blocks available\n"
        )

        self.assertEqual({"qlog": 512}, parse_listing(listing))


class SmbClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.runner = FakeRunner()
        self.client = SmbClient("nas.local", "routes", "comma", "s3cret", self.runner, timeout=5.0, transfer_timeout=60.0)

    def test_password_travels_in_environment(self) -> None:
        self.runner.add("ls", ok(smb_listing({})))

        self.client.list()

        call = self.runner.calls[0]
        self.assertEqual(("smbclient", "//nas.local/routes", "-U", "comma", "-c", "ls"), call.args)
        self.assertEqual({"PASSWD": "s3cret"}, call.env)
        self.assertEqual(5.0, call.timeout)

    def test_listing_a_directory_uses_wildcard(self) -> None:
        self.runner.add("ls", ok(smb_listing({"rlog": 10})))

        self.assertEqual({"rlog": 10}, self.client.list("routes/abc123"))
        self.assertEqual('ls "routes/abc123/*"', self.runner.calls[0].args[-1])

    def test_status_codes_map_to_error_types(self) -> None:
        cases = [
            ("session setup failed: NT_STATUS_LOGON_FAILURE", RemoteAuthError),
            ("tree connect failed: NT_STATUS_ACCESS_DENIED", RemoteAuthError),
            ("Connection to nas.local failed (Error NT_STATUS_HOST_UNREACHABLE)", RemoteConnectionError),
            ("tree connect failed: NT_STATUS_BAD_NETWORK_NAME", RemoteConnectionError),
            ("NT_STATUS_DISK_FULL opening remote file", RemoteCommandError),
        ]
        for output, error in cases:
            with self.subTest(output=output):
                runner = FakeRunner()
                runner.add("ls", failed(1, stdout=output))
                client = SmbClient("nas.local", "routes", "comma", "s3cret", runner)
                with self.assertRaises(error):
                    client.list()

    def test_runner_failures_are_remote_errors(self) -> None:
        self.runner.add("ls", CommandTimeout("smbclient exceeded timeout of 5.0s"))
        with self.assertRaises(RemoteConnectionError):
            self.client.list()

        runner = FakeRunner()
        runner.add("ls", CommandError("Required command not found: smbclient"))
        with self.assertRaises(RemoteCommandError):
            SmbClient("nas.local", "routes", "comma", "s3cret", runner).list()

    def test_make_dirs_creates_each_level_and_tolerates_existing(self) -> None:
        self.runner.add('mkdir "routes"', ok("NT_STATUS_OBJECT_NAME_COLLISION making remote directory \\routes\n"))

        self.client.make_dirs("routes/abc123/2024-01-01--12-00-00", LOGGER, {})

        self.assertEqual(
            ['mkdir "routes"', 'mkdir "routes/abc123"', 'mkdir "routes/abc123/2024-01-01--12-00-00"'],
            [call.args[-1] for call in self.runner.calls],
        )

    def test_remote_sizes_reports_missing_files(self) -> None:
        self.runner.add("ls", ok(smb_listing({"rlog": 4096})))

        self.assertEqual({"rlog": 4096, "qlog": None}, self.client.remote_sizes("routes/x", ["rlog", "qlog"]))

    def test_remote_sizes_of_missing_directory(self) -> None:
        self.runner.add("ls", ok("NT_STATUS_OBJECT_NAME_NOT_FOUND listing \\routes\\x\\*\n"))

        self.assertEqual({"rlog": None}, self.client.remote_sizes("routes/x", ["rlog"]))

    def test_put_uses_transfer_timeout_and_quotes_paths(self) -> None:
        self.client.put(Path("/data/media/0/realdata/concatenated/r 1/qlog"), "routes/x", "qlog")

        call = self.runner.calls[0]
        self.assertEqual('put "/data/media/0/realdata/concatenated/r 1/qlog" "routes/x/qlog"', call.args[-1])
        self.assertEqual(60.0, call.timeout)

    def test_get_of_missing_file_fails(self) -> None:
        self.runner.add("get", ok("NT_STATUS_OBJECT_NAME_NOT_FOUND opening remote file \\routes\\backup.tar.gz\n"))

        with self.assertRaises(RemoteCommandError):
            self.client.get("routes", "backup.tar.gz", Path("/tmp/backup.tar.gz"))


class SmbTargetBackupTests(unittest.TestCase):
    def test_backup_archive_round_trip(self) -> None:
        with TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            backup = root / "backup_20240101"
            (backup / "params").mkdir(parents=True)
            (backup / "params" / "DongleId").write_text("abc", encoding="utf-8")

            archive = build_backup_archive(backup, root / "work" / BACKUP_ARCHIVE)

            with tarfile.open(archive, "r:gz") as handle:
                self.assertIn("backup_20240101/params/DongleId", handle.getnames())

    def test_push_backup_uploads_archive_and_removes_local_copy(self) -> None:
        with TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            backup = root / "backup_20240101"
            backup.mkdir()
            (backup / "settings.json").write_text("{}", encoding="utf-8")
            runner = FakeRunner()
            runner.add(lambda argv: argv[-1].startswith("ls "), ok("NT_STATUS_NO_SUCH_FILE listing \\backups\\*\n"))
            client = SmbClient("nas.local", "routes", "comma", "s3cret", runner)
            target = SmbTarget(make_location(), client, LOGGER)

            result = target.push_backup(backup, "routes/abc123/backups", root / "work", {})

            self.assertFalse(result.skipped)
            self.assertGreater(result.total_size, 0)
            puts = [call.args[-1] for call in runner.calls if call.args[-1].startswith("put ")]
            self.assertEqual(1, len(puts))
            self.assertTrue(puts[0].endswith('"routes/abc123/backups/backup.tar.gz"'))
            self.assertFalse((root / "work" / BACKUP_ARCHIVE).exists())


if __name__ == "__main__":
    unittest.main()
