import io
import logging
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest import mock

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
TESTS_DIR = Path(__file__).resolve().parent
for path in (SRC_DIR, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from commasync import cli
from commasync.service import build_service

from fakes import FakeRunner, failed, write_segment


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        params = self.root / "params"
        params.mkdir()
        (params / "HardwareSerial").write_text("abc123\n", encoding="utf-8")
        (params / "GithubSshKeys").write_text("ssh-ed25519 AAAATESTKEY device\n", encoding="utf-8")
        self.config = self.root / "local.yml"
        self.config.write_text(
            f"logging:\n"
            f"  directory: {self.root / 'logs'}\n"
            f"paths:\n"
            f"  routes_dir: {self.root / 'routes'}\n"
            f"  config_dir: {self.root / 'commautil'}\n"
            f"  params_dir: {params}\n"
            f"  concat_work_dir: {self.root / 'tmp'}\n"
            f"  launch_env: {self.root / 'launch_env.sh'}\n"
            f"  backup_base_dir: {self.root / 'device_backup'}\n"
            f"transfer:\n"
            f"  retries: 1\n"
            f"  retry_delay: 0\n"
            f"  min_free_bytes: 0\n",
            encoding="utf-8",
        )
        self.runner = FakeRunner()

    def tearDown(self) -> None:
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            handler.close()
            root_logger.removeHandler(handler)
        self._tmp.cleanup()

    def _factory(self, settings, logger):
        return build_service(settings, logger, runner=self.runner)

    def _run(self, *argv: str) -> tuple[int, str, str]:
        stdout, stderr = io.StringIO(), io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr), mock.patch.object(cli.sys, "stdin", io.StringIO()):
            code = cli.main(["--config", str(self.config), *argv], service_factory=self._factory)
        return code, stdout.getvalue(), stderr.getvalue()

    def _add_home(self, *extra: str) -> tuple[int, str, str]:
        with mock.patch.object(cli.getpass, "getpass", return_value="hunter2"):
            return self._run(
                *extra,
                "locations",
                "add",
                "--role",
                "route_sync",
                "--protocol",
                "smb",
                "--server",
                "nas.local",
                "--share",
                "routes",
                "--label",
                "Home",
                "--username",
                "comma",
            )

    def test_empty_location_list(self) -> None:
        code, out, _ = self._run("locations", "list")

        self.assertEqual(0, code)
        self.assertIn("No network locations configured.", out)

    def test_add_then_replace_requires_confirmation(self) -> None:
        code, out, _ = self._add_home()
        self.assertEqual(0, code)
        self.assertIn("Route Sync: Home [SMB]", out)
        self.assertIn("Connection test: valid", out)
        self.assertEqual({"PASSWD": "hunter2"}, self.runner.calls[-1].env)

        code, _, _ = self._add_home()
        self.assertEqual(1, code)

        code, _, _ = self._add_home("--yes")
        self.assertEqual(0, code)

    def test_remove_without_confirmation_keeps_location(self) -> None:
        self._add_home()

        code, _, _ = self._run("locations", "remove", "--role", "route_sync")
        self.assertEqual(1, code)
        _, out, _ = self._run("locations", "list")
        self.assertIn("Home", out)

        code, _, _ = self._run("--yes", "locations", "remove", "--role", "route_sync")
        self.assertEqual(0, code)

    def test_sync_without_location_reports_error(self) -> None:
        write_segment(self.root / "routes", "2024-01-01--10-00-00", 0, {"qlog": b"x"})

        code, _, err = self._run("sync-route", "2024-01-01--10-00-00")

        self.assertEqual(1, code)
        self.assertIn("No Route Sync location configured", err)

    def test_failed_transfer_reports_stage_and_resume_hint(self) -> None:
        self._add_home()
        write_segment(self.root / "routes", "2024-01-01--10-00-00", 0, {"qlog": b"x"})
        self.runner.add(lambda argv: argv[0] == "smbclient", failed(1, stdout="NT_STATUS_HOST_UNREACHABLE"))

        code, _, err = self._run("sync-route", "2024-01-01--10-00-00")

        self.assertEqual(1, code)
        self.assertIn("stage 'uploading'", err)
        self.assertIn("rerun the command to resume", err)

    def test_invalid_configuration_exits_with_2(self) -> None:
        self.config.write_text(
            f"logging:\n  directory: {self.root / 'logs'}\ntransfer:\n  retries: 0\n", encoding="utf-8"
        )

        code, _, _ = self._run("locations", "list")

        self.assertEqual(2, code)

    def test_jobs_show_and_logs(self) -> None:
        code, out, _ = self._run("jobs", "show")
        self.assertEqual(0, code)
        self.assertIn("backup: not configured", out)

        code, out, _ = self._run("logs")
        self.assertEqual(0, code)
        self.assertIn("No transfers recorded.", out)


if __name__ == "__main__":
    unittest.main()
