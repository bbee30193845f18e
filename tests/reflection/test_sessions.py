"""Tests for transcript discovery, loading and keyword search."""

import json
import os
import time

from reflection.sessions import DirectorySessionSource


def _touch(path, text="hello", age_days=0.0):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    if age_days:
        ts = time.time() - age_days * 86400
        os.utime(path, (ts, ts))
    return path


def _jsonl(*entries):
    return "\n".join(e if isinstance(e, str) else json.dumps(e) for e in entries) + "\n"


class TestFindSessions:
    def test_missing_dir(self, tmp_path):
        assert DirectorySessionSource(tmp_path / "nope").find_sessions(7, 5) == []

    def test_filters_by_suffix_and_age(self, tmp_path):
        root = tmp_path / "sessions"
        recent = _touch(root / "a.jsonl")
        nested = _touch(root / "project" / "b.md", age_days=1)
        _touch(root / "image.png")
        _touch(root / "old.txt", age_days=30)

        found = DirectorySessionSource(root).find_sessions(days=7, max_sessions=10)
        assert found == [str(recent), str(nested)]

    def test_newest_first_and_capped(self, tmp_path):
        root = tmp_path / "sessions"
        paths = [_touch(root / f"s{i}.txt", age_days=i) for i in range(1, 5)]
        found = DirectorySessionSource(root).find_sessions(days=30, max_sessions=2)
        assert found == [str(paths[0]), str(paths[1])]


class TestLoad:
    def test_jsonl_transcript_flattened(self, tmp_path):
        path = _touch(
            tmp_path / "s.jsonl",
            _jsonl(
                {"type": "user", "message": {"role": "user", "content": "Why do the tests hang?"}},
                {
                    "type": "assistant",
                    "message": {
                        "role": "assistant",
                        "content": [
                            {"type": "text", "text": "The fixture never closes the pool."},
                            {"type": "tool_use", "name": "bash"},
                        ],
                    },
                },
                {"type": "summary", "summary": "ignored"},
                "not json",
            ),
        )
        ctx = DirectorySessionSource(tmp_path).load(str(path))
        assert ctx.text == "[USER]\nWhy do the tests hang?\n\n---\n\n[ASSISTANT]\nThe fixture never closes the pool."

    def test_plain_text_kept(self, tmp_path):
        path = _touch(tmp_path / "notes.md", "# Session\nfixed the bug")
        ctx = DirectorySessionSource(tmp_path).load(str(path))
        assert ctx.text == "# Session\nfixed the bug"
        assert ctx.session_path == str(path)
        assert ctx.timestamp is not None

    def test_id_is_stable(self, tmp_path):
        path = _touch(tmp_path / "notes.md")
        source = DirectorySessionSource(tmp_path)
        first = source.load(str(path))
        assert first.id.startswith("diary-")
        assert len(first.id) == len("diary-") + 12
        assert source.load(str(path)).id == first.id

    def test_agent_from_path(self, tmp_path):
        path = _touch(tmp_path / ".codex" / "sessions" / "s.txt")
        assert DirectorySessionSource(tmp_path).load(str(path)).agent == "codex"

    def test_truncated(self, tmp_path):
        path = _touch(tmp_path / "long.txt", "x" * 100)
        ctx = DirectorySessionSource(tmp_path, max_chars=10).load(str(path))
        assert ctx.text == "xxxxxxx..."


class TestSearch:
    def test_returns_matching_lines(self, tmp_path):
        a = _touch(tmp_path / "a.txt", "ran pytest\nredis timeout again\nok")
        _touch(tmp_path / "b.txt", "nothing relevant")
        hits = DirectorySessionSource(tmp_path).search(["Redis"], days=7)
        assert hits == [(str(a), "redis timeout again")]

    def test_no_keywords(self, tmp_path):
        _touch(tmp_path / "a.txt", "redis")
        assert DirectorySessionSource(tmp_path).search([], days=7) == []
