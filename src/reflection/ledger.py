"""Processed-session ledger.

One JSON object per line. An entry is appended only after the deltas derived
from that session are saved, so a crash before the append just means the
session is reflected on again (and curation skips what already landed).
"""

import hashlib
import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

import structlog

from cli.config_models import AppConfig
from playbook.models import utcnow

logger = structlog.get_logger()


@dataclass
class LedgerEntry:
    session_path: str
    processed_at: datetime = field(default_factory=utcnow)
    derived_id: Optional[str] = None
    deltas_generated: int = 0

    def to_json(self) -> str:
        return json.dumps(
            {
                "sessionPath": self.session_path,
                "processedAt": self.processed_at.isoformat(),
                "derivedId": self.derived_id,
                "deltasGenerated": self.deltas_generated,
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerEntry":
        session_path = data.get("sessionPath")
        if not isinstance(session_path, str) or not session_path:
            raise ValueError("sessionPath missing")
        processed_at = data.get("processedAt")
        return cls(
            session_path=session_path,
            processed_at=datetime.fromisoformat(processed_at) if processed_at else utcnow(),
            derived_id=data.get("derivedId"),
            deltas_generated=int(data.get("deltasGenerated") or 0),
        )


def ledger_path_for(config: AppConfig, workspace: str | Path | None = None) -> Path:
    """Global ledger, or one per workspace keyed by a hash of its resolved path."""
    if workspace is None:
        return config.paths.reflections_dir / "global.processed.jsonl"
    resolved = str(Path(workspace).expanduser().resolve())
    digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:8]
    return config.paths.reflections_dir / f"ws-{digest}.processed.jsonl"


class ProcessedLedger:
    """Append-only record of which sessions have been reflected on."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self._entries: dict[str, LedgerEntry] = {}

    def load(self) -> "ProcessedLedger":
        self._entries.clear()
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return self

        for lineno, line in enumerate(raw.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entry = LedgerEntry.from_dict(json.loads(line))
            except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
                logger.warning("ledger.malformed_line", path=str(self.path), line=lineno, error=str(e))
                continue
            self._entries[entry.session_path] = entry
        return self

    def has(self, session_path: str) -> bool:
        return session_path in self._entries

    def processed_paths(self) -> set[str]:
        return set(self._entries)

    def entries(self) -> list[LedgerEntry]:
        return list(self._entries.values())

    def append_batch(self, entries: Iterable[LedgerEntry]) -> int:
        """Append entries in one write and fsync. Returns how many were written."""
        batch = list(entries)
        if not batch:
            return 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = "".join(e.to_json() + "\n" for e in batch).encode("utf-8")
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            os.write(fd, payload)
            os.fsync(fd)
        finally:
            os.close(fd)
        for e in batch:
            self._entries[e.session_path] = e
        logger.debug("ledger.appended", path=str(self.path), count=len(batch))
        return len(batch)
