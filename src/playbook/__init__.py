"""Playbook store: rules with decaying feedback, curated under a directory lock."""

from .curate import curate_playbook, detect_conflicts
from .lock import DirectoryLock, LockRegistry, LockTimeoutError, with_lock
from .models import Bullet, CurationResult, Playbook, get_active_bullets, parse_delta
from .scoring import get_effective_score, is_stale
from .store import PlaybookError, load_playbook, save_playbook

__all__ = [
    "Bullet",
    "Playbook",
    "CurationResult",
    "curate_playbook",
    "detect_conflicts",
    "get_active_bullets",
    "get_effective_score",
    "is_stale",
    "parse_delta",
    "DirectoryLock",
    "LockRegistry",
    "LockTimeoutError",
    "with_lock",
    "PlaybookError",
    "load_playbook",
    "save_playbook",
]
