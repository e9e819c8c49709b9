import json
import sys
import unittest
from datetime import datetime, timezone
from pathlib import Path
from tempfile import TemporaryDirectory

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from commasync.core.models import TransferLogEntry
from commasync.transfer.history import TransferLog
from commasync.transfer.state import TransferStateStore

ROUTE = "2024-01-01--12-00-00"


def _entry(timestamp: str, route: str = ROUTE, status: str = "success") -> TransferLogEntry:
    return TransferLogEntry(
        timestamp=timestamp,
        route_base_id=route,
        status=status,
        destination="smb://nas.local/routes/abc123",
        total_size=1024,
        duration=1.5,
    )


class TransferStateStoreTests(unittest.TestCase):
    def test_save_load_clear(self) -> None:
        with TemporaryDirectory() as tmpdir:
            store = TransferStateStore(Path(tmpdir) / "state")

            self.assertIsNone(store.load(ROUTE))
            store.save(ROUTE, "loc-home", 25)
            state = store.load(ROUTE)

            self.assertEqual(("loc-home", 25), (state.location_id, state.progress_percent))
            self.assertEqual(f"transfer_{ROUTE}.json", store.path_for(ROUTE).name)
            self.assertTrue(store.clear(ROUTE))
            self.assertFalse(store.clear(ROUTE))
            self.assertIsNone(store.load(ROUTE))

    def test_progress_outside_range_is_rejected(self) -> None:
        with TemporaryDirectory() as tmpdir:
            store = TransferStateStore(Path(tmpdir))
            for progress in (-1, 101):
                with self.subTest(progress=progress):
                    with self.assertRaises(ValueError):
                        store.save(ROUTE, "loc-home", progress)

    def test_route_ids_cannot_escape_state_dir(self) -> None:
        store = TransferStateStore(Path("/data/commautil/state"))

        path = store.path_for("../../etc/passwd")

        self.assertEqual(Path("/data/commautil/state"), path.parent)

    def test_corrupt_state_is_treated_as_absent(self) -> None:
        with TemporaryDirectory() as tmpdir:
            store = TransferStateStore(Path(tmpdir))
            store.save("other", "loc-home", 50)
            store.path_for(ROUTE).write_text("{", encoding="utf-8")

            with self.assertLogs("commasync.transfer.state", level="WARNING"):
                self.assertIsNone(store.load(ROUTE))
            self.assertEqual(["other"], [state.route_base_id for state in store.list_all()])
            corrupt = store.corrupt_files()
            self.assertEqual([store.path_for(ROUTE)], [exc.path for exc in corrupt])

            moved = store.quarantine(store.path_for(ROUTE))

            self.assertFalse(store.path_for(ROUTE).exists())
            self.assertEqual("{", moved.read_text(encoding="utf-8"))
            self.assertEqual([], store.corrupt_files())
            with self.assertRaises(ValueError):
                store.quarantine(Path(tmpdir).parent / "elsewhere.json")

    def test_legacy_field_names_are_read(self) -> None:
        with TemporaryDirectory() as tmpdir:
            store = TransferStateStore(Path(tmpdir))
            store.path_for(ROUTE).write_text(
                json.dumps({"route": ROUTE, "network_id": "loc-old", "progress": 50, "timestamp": "2024-01-01T00:00:00"}),
                encoding="utf-8",
            )

            state = store.load(ROUTE)

            self.assertEqual(("loc-old", 50), (state.location_id, state.progress_percent))

    def test_list_all_is_ordered_oldest_first(self) -> None:
        with TemporaryDirectory() as tmpdir:
            store = TransferStateStore(Path(tmpdir))
            for route, stamp in (("b", "2024-02-01T00:00:00+00:00"), ("a", "2024-03-01T00:00:00+00:00")):
                store.path_for(route).write_text(
                    json.dumps(
                        {"route_base_id": route, "location_id": "x", "progress_percent": 25, "timestamp": stamp}
                    ),
                    encoding="utf-8",
                )

            self.assertEqual(["b", "a"], [state.route_base_id for state in store.list_all()])
            self.assertEqual([], TransferStateStore(Path(tmpdir) / "missing").list_all())


class TransferLogTests(unittest.TestCase):
    def test_append_and_query(self) -> None:
        with TemporaryDirectory() as tmpdir:
            log = TransferLog(Path(tmpdir) / "transfer_logs.json")
            log.append(_entry("2024-01-01T00:00:00+00:00"))
            log.append(_entry("2024-01-02T00:00:00+00:00", route="other", status="failure"))

            self.assertEqual(2, len(log.query_all()))
            self.assertEqual(["success"], [entry.status for entry in log.query_by_route(ROUTE)])
            self.assertIsInstance(json.loads(log.path.read_text(encoding="utf-8")), list)

    def test_empty_history(self) -> None:
        with TemporaryDirectory() as tmpdir:
            self.assertEqual([], TransferLog(Path(tmpdir) / "transfer_logs.json").query_all())

    def test_corrupt_history_reads_as_empty(self) -> None:
        with TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "transfer_logs.json"
            path.write_text('{"not": "a list"}', encoding="utf-8")
            log = TransferLog(path)

            with self.assertLogs("commasync.transfer.history", level="WARNING"):
                self.assertEqual([], log.query_all())
            self.assertEqual("unexpected document structure", log.check())
            self.assertEqual(0, log.prune(30))

    def test_append_to_corrupt_history_starts_a_new_one(self) -> None:
        with TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "transfer_logs.json"
            path.write_text("{not json", encoding="utf-8")
            log = TransferLog(path)

            log.append(_entry("2024-01-01T00:00:00+00:00"))

            self.assertIsNone(log.check())
            self.assertEqual([ROUTE], [entry.route_base_id for entry in log.query_all()])
            preserved = list(Path(tmpdir).glob("transfer_logs.json.corrupt-*"))
            self.assertEqual(["{not json"], [item.read_text(encoding="utf-8") for item in preserved])

    def test_string_sizes_from_older_files(self) -> None:
        with TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "transfer_logs.json"
            path.write_text(
                json.dumps([{"timestamp": "t", "route": ROUTE, "status": "success", "destination": "d", "size": "2048", "duration": "3.5"}]),
                encoding="utf-8",
            )

            entry = TransferLog(path).query_all()[0]

            self.assertEqual((2048, 3.5), (entry.total_size, entry.duration))

    def test_prune_drops_old_entries_only(self) -> None:
        with TemporaryDirectory() as tmpdir:
            log = TransferLog(Path(tmpdir) / "transfer_logs.json")
            log.append(_entry("2024-01-01T00:00:00+00:00", route="old"))
            log.append(_entry("2024-03-01T00:00:00Z", route="recent"))
            log.append(_entry("not a timestamp", route="unknown"))

            removed = log.prune(30, now=datetime(2024, 3, 10, tzinfo=timezone.utc))

            self.assertEqual(1, removed)
            self.assertEqual(["recent", "unknown"], [entry.route_base_id for entry in log.query_all()])

    def test_prune_without_history_file(self) -> None:
        with TemporaryDirectory() as tmpdir:
            log = TransferLog(Path(tmpdir) / "transfer_logs.json")

            self.assertEqual(0, log.prune(30))
            self.assertFalse(log.path.exists())


if __name__ == "__main__":
    unittest.main()
