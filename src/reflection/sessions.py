"""Session transcript discovery and loading."""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

import structlog

from playbook.text import extract_agent_from_path, hash_content, truncate

logger = structlog.get_logger()

TRANSCRIPT_SUFFIXES = (".jsonl", ".json", ".md", ".txt")


@dataclass
class SessionContext:
    """What the proposer sees for one session."""

    id: str
    session_path: str
    text: str
    agent: str = "unknown"
    timestamp: Optional[datetime] = None
    related: list[str] = field(default_factory=list)


class SessionSource(Protocol):
    def find_sessions(self, days: int, max_sessions: int) -> list[str]: ...

    def load(self, path: str) -> SessionContext: ...


def _jsonl_to_text(raw: str) -> str:
    """Flatten a chat transcript (one message per line) to role-tagged text."""
    turns = []
    for line in raw.splitlines():
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue

        message = entry.get("message") if isinstance(entry.get("message"), dict) else entry
        role = message.get("role") or entry.get("type")
        if role not in ("user", "assistant"):
            continue

        content = message.get("content")
        if isinstance(content, str):
            text = content
        elif isinstance(content, list):
            text = "\n".join(
                block["text"]
                for block in content
                if isinstance(block, dict) and block.get("type") == "text" and "text" in block
            )
        else:
            continue
        if text.strip():
            turns.append(f"[{role.upper()}]\n{text.strip()}")
    return "\n\n---\n\n".join(turns)


class DirectorySessionSource:
    """Transcripts stored as files under one directory tree."""

    def __init__(self, sessions_dir: str | Path, max_chars: int = 20000):
        self.sessions_dir = Path(sessions_dir).expanduser()
        self.max_chars = max_chars

    def find_sessions(self, days: int, max_sessions: int) -> list[str]:
        if not self.sessions_dir.is_dir():
            logger.info("sessions.dir_missing", path=str(self.sessions_dir))
            return []

        cutoff = time.time() - days * 86400
        found = []
        for path in self.sessions_dir.rglob("*"):
            if not path.is_file() or path.suffix not in TRANSCRIPT_SUFFIXES:
                continue
            mtime = path.stat().st_mtime
            if mtime >= cutoff:
                found.append((mtime, str(path)))
        found.sort(reverse=True)
        return [p for _, p in found[:max_sessions]]

    def load(self, path: str) -> SessionContext:
        file_path = Path(path).expanduser()
        raw = file_path.read_text(encoding="utf-8", errors="replace")
        text = _jsonl_to_text(raw) if file_path.suffix == ".jsonl" else raw
        mtime = datetime.fromtimestamp(file_path.stat().st_mtime, tz=timezone.utc)
        return SessionContext(
            id=f"diary-{hash_content(str(file_path))[:12]}",
            session_path=str(file_path),
            text=truncate(text, self.max_chars),
            agent=extract_agent_from_path(str(file_path)),
            timestamp=mtime,
        )

    def search(self, keywords: list[str], days: int, limit: int = 20) -> list[tuple[str, str]]:
        """Lines mentioning any keyword, as (session_path, line) pairs."""
        if not keywords:
            return []
        needles = [k.lower() for k in keywords]
        hits: list[tuple[str, str]] = []
        for session_path in self.find_sessions(days, max_sessions=limit):
            try:
                text = self.load(session_path).text
            except OSError as e:
                logger.debug("sessions.search_read_failed", path=session_path, error=str(e))
                continue
            for line in text.splitlines():
                lowered = line.lower()
                if any(n in lowered for n in needles):
                    hits.append((session_path, line.strip()))
        return hits
