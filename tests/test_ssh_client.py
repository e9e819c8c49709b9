import logging
import socket
import sys
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

import paramiko

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
TESTS_DIR = Path(__file__).resolve().parent
for path in (SRC_DIR, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from commasync.core.errors import RemoteAuthError, RemoteCommandError, RemoteConnectionError
from commasync.core.models import RouteArtifact
from commasync.ssh.client import SshClient
from commasync.ssh.target import SshTarget

from fakes import FakeRunner, FakeSSHClient, failed, make_location

LOGGER = logging.getLogger("commasync.tests.ssh")


class SshClientCommandTests(unittest.TestCase):
    def _client(self, fake: FakeSSHClient, **kwargs) -> SshClient:
        options = {"password": "pw", "port": 2222, "timeout": 5.0}
        options.update(kwargs)
        return SshClient("backup.local", "pi", FakeRunner(), client_factory=lambda: fake, **options)

    def test_check_connects_with_bounded_timeouts(self) -> None:
        fake = FakeSSHClient()

        self._client(fake).check(LOGGER, {})

        self.assertEqual("backup.local", fake.connect_kwargs["host"])
        self.assertEqual(2222, fake.connect_kwargs["port"])
        self.assertEqual("pw", fake.connect_kwargs["password"])
        self.assertEqual(5.0, fake.connect_kwargs["timeout"])
        self.assertFalse(fake.connect_kwargs["look_for_keys"])
        self.assertIsInstance(fake.policy, paramiko.AutoAddPolicy)
        self.assertEqual(["exit"], fake.commands)
        self.assertTrue(fake.closed)

    def test_authentication_error(self) -> None:
        fake = FakeSSHClient(connect_error=paramiko.AuthenticationException("bad password"))

        with self.assertRaises(RemoteAuthError):
            self._client(fake).check(LOGGER, {})
        self.assertTrue(fake.closed)

    def test_connection_errors(self) -> None:
        for error in (socket.timeout("timed out"), ConnectionRefusedError(111, "refused"), paramiko.SSHException("banner")):
            with self.subTest(error=type(error).__name__):
                with self.assertRaises(RemoteConnectionError):
                    self._client(FakeSSHClient(connect_error=error)).check(LOGGER, {})

    def test_make_dirs_quotes_path(self) -> None:
        fake = FakeSSHClient()

        self._client(fake).make_dirs("/srv/comma/abc123/route one", LOGGER, {})

        self.assertEqual(["mkdir -p '/srv/comma/abc123/route one'"], fake.commands)

    def test_make_dirs_failure(self) -> None:
        fake = FakeSSHClient(exit_status=1, stderr="mkdir: cannot create directory: Permission denied")

        with self.assertRaises(RemoteCommandError) as ctx:
            self._client(fake).make_dirs("/srv/comma", LOGGER, {})
        self.assertIn("Permission denied", str(ctx.exception))

    def test_remote_sizes_uses_sftp_stat(self) -> None:
        fake = FakeSSHClient(files={"/srv/comma/r/rlog": 4096})

        sizes = self._client(fake).remote_sizes("/srv/comma/r", ["rlog", "qlog"], LOGGER, {})

        self.assertEqual({"rlog": 4096, "qlog": None}, sizes)


class SshClientRsyncTests(unittest.TestCase):
    def test_password_push_runs_through_sshpass(self) -> None:
        runner = FakeRunner()
        client = SshClient("backup.local", "pi", runner, password="pw", port=2222, timeout=5.0)

        client.push(Path("/data/out/route"), "/srv/comma/abc123/route", LOGGER, {}, excludes=["rlog"])

        call = runner.calls[0]
        self.assertEqual(("sshpass", "-e", "rsync", "-av", "--delete", "--exclude", "rlog", "-e"), call.args[:8])
        self.assertEqual(
            "ssh -p 2222 -o ConnectTimeout=5 -o StrictHostKeyChecking=accept-new",
            call.args[8],
        )
        self.assertEqual(("/data/out/route/", "pi@backup.local:/srv/comma/abc123/route/"), call.args[9:])
        self.assertEqual({"SSHPASS": "pw"}, call.env)
        self.assertNotIn("pw", call.args)

    def test_key_push_uses_identity_file(self) -> None:
        runner = FakeRunner()
        client = SshClient("backup.local", "pi", runner, key_path="/data/keys/id_ed25519")

        client.push(Path("/data/device_backup/b1"), "backups", LOGGER, {}, mirror=False, flags=("-az",))

        call = runner.calls[0]
        self.assertEqual("rsync", call.args[0])
        self.assertNotIn("--delete", call.args)
        self.assertIn("-i /data/keys/id_ed25519 -o BatchMode=yes", call.args[3])
        self.assertEqual({}, call.env)

    def test_pull_reverses_source_and_target(self) -> None:
        with TemporaryDirectory() as tmpdir:
            runner = FakeRunner()
            client = SshClient("backup.local", "pi", runner, password="pw")
            local = Path(tmpdir) / "restore"

            client.pull("/srv/comma/abc123/backups", local, LOGGER, {})

            self.assertTrue(local.is_dir())
            self.assertEqual(("pi@backup.local:/srv/comma/abc123/backups/", f"{local}/"), runner.calls[0].args[-2:])

    def test_rsync_failures_are_classified(self) -> None:
        cases = [
            (failed(5, stderr="Permission denied, please try again."), RemoteAuthError),
            (failed(255, stderr="ssh: connect to host backup.local port 22: No route to host"), RemoteConnectionError),
            (failed(23, stderr="rsync error: some files could not be transferred (code 23)"), RemoteCommandError),
        ]
        for result, error in cases:
            with self.subTest(returncode=result.returncode):
                runner = FakeRunner()
                runner.add("rsync", result)
                client = SshClient("backup.local", "pi", runner, password="pw")
                with self.assertRaises(error):
                    client.push(Path("/data/out"), "/srv", LOGGER, {})


class SshTargetTests(unittest.TestCase):
    def test_upload_mirrors_artifact_directory_and_protects_skipped_files(self) -> None:
        runner = FakeRunner()
        client = SshClient("backup.local", "pi", runner, password="pw")
        target = SshTarget(make_location("ssh"), client, LOGGER)
        directory = Path("/data/out/2024-01-01--12-00-00")
        qlog = RouteArtifact("2024-01-01--12-00-00", "qlog", directory / "qlog", 20)
        rlog = RouteArtifact("2024-01-01--12-00-00", "rlog", directory / "rlog", 42)

        target.upload("/srv/r", [qlog], [rlog], {})
        target.upload("/srv/r", [], [qlog, rlog], {})

        self.assertEqual(1, len(runner.calls))
        args = runner.calls[0].args
        self.assertIn("--delete", args)
        self.assertEqual("rlog", args[args.index("--exclude") + 1])
        self.assertEqual(f"{directory}/", args[-2])


if __name__ == "__main__":
    unittest.main()
