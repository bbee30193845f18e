"""Tests for the processed-session ledger."""

import json
from datetime import datetime, timezone

from reflection.ledger import LedgerEntry, ProcessedLedger, ledger_path_for


def _entry(path, deltas=0):
    return LedgerEntry(
        session_path=path,
        processed_at=datetime(2025, 6, 1, tzinfo=timezone.utc),
        derived_id=f"diary-{path[-3:]}",
        deltas_generated=deltas,
    )


class TestLedgerEntry:
    def test_json_uses_camel_case(self):
        data = json.loads(_entry("/s/abc", deltas=2).to_json())
        assert data == {
            "sessionPath": "/s/abc",
            "processedAt": "2025-06-01T00:00:00+00:00",
            "derivedId": "diary-abc",
            "deltasGenerated": 2,
        }

    def test_from_dict(self):
        entry = LedgerEntry.from_dict({"sessionPath": "/s/1", "processedAt": "2025-06-01T00:00:00+00:00"})
        assert entry.session_path == "/s/1"
        assert entry.processed_at == datetime(2025, 6, 1, tzinfo=timezone.utc)
        assert entry.deltas_generated == 0


class TestProcessedLedger:
    def test_missing_file_is_empty(self, tmp_path):
        ledger = ProcessedLedger(tmp_path / "none.jsonl").load()
        assert ledger.processed_paths() == set()
        assert not ledger.has("/s/1")

    def test_append_and_reload(self, tmp_path):
        path = tmp_path / "reflections" / "global.processed.jsonl"
        ledger = ProcessedLedger(path).load()
        assert ledger.append_batch([_entry("/s/one", 3), _entry("/s/two")]) == 2
        assert ledger.has("/s/one")

        reloaded = ProcessedLedger(path).load()
        assert reloaded.processed_paths() == {"/s/one", "/s/two"}
        assert len(path.read_text().splitlines()) == 2

    def test_appends_accumulate(self, tmp_path):
        path = tmp_path / "l.jsonl"
        ProcessedLedger(path).append_batch([_entry("/s/one")])
        ProcessedLedger(path).append_batch([_entry("/s/two")])
        assert ProcessedLedger(path).load().processed_paths() == {"/s/one", "/s/two"}

    def test_empty_batch_writes_nothing(self, tmp_path):
        path = tmp_path / "l.jsonl"
        assert ProcessedLedger(path).append_batch([]) == 0
        assert not path.exists()

    def test_malformed_lines_skipped(self, tmp_path):
        path = tmp_path / "l.jsonl"
        path.write_text(
            "\n".join(
                [
                    _entry("/s/good").to_json(),
                    "not json at all",
                    json.dumps({"processedAt": "2025-06-01T00:00:00+00:00"}),
                    json.dumps([1, 2, 3]),
                    "",
                    _entry("/s/also").to_json(),
                ]
            )
            + "\n"
        )
        ledger = ProcessedLedger(path).load()
        assert ledger.processed_paths() == {"/s/good", "/s/also"}

    def test_reload_replaces_state(self, tmp_path):
        path = tmp_path / "l.jsonl"
        ledger = ProcessedLedger(path)
        ledger.append_batch([_entry("/s/one")])
        path.unlink()
        assert ledger.load().processed_paths() == set()


class TestLedgerPath:
    def test_global(self, app_config, tmp_path):
        assert ledger_path_for(app_config) == tmp_path / "home" / "reflections" / "global.processed.jsonl"

    def test_workspace_is_hashed(self, app_config, tmp_path):
        first = ledger_path_for(app_config, tmp_path / "ws-a")
        second = ledger_path_for(app_config, tmp_path / "ws-b")
        assert first != second
        assert first.name.startswith("ws-")
        assert first.name.endswith(".processed.jsonl")
        assert len(first.name.split(".")[0]) == len("ws-") + 8

    def test_workspace_hash_is_stable(self, app_config, tmp_path):
        assert ledger_path_for(app_config, tmp_path / "ws") == ledger_path_for(app_config, str(tmp_path / "ws"))
