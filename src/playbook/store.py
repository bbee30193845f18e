"""YAML persistence for playbooks: atomic replace, corrupt-file backup, merged views."""

import os
import shutil
import tempfile
import time
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

import structlog
import yaml
from pydantic import ValidationError

from cli.config_models import AppConfig

from .lock import DirectoryLock, LockRegistry
from .models import Playbook, utcnow

logger = structlog.get_logger()

REPO_DIR_NAME = ".playbook"
REPO_PLAYBOOK_NAME = "playbook.yaml"

T = TypeVar("T")


class PlaybookError(Exception):
    """A playbook file exists but cannot be read."""


def create_empty_playbook() -> Playbook:
    return Playbook()


def _backup_corrupt_file(path: Path) -> Optional[Path]:
    backup = path.with_name(f"{path.name}.backup.{int(time.time() * 1000)}")
    try:
        shutil.copy2(path, backup)
    except OSError as e:
        logger.error("playbook.backup_failed", path=str(path), error=str(e))
        return None
    logger.warning("playbook.corrupt_backed_up", path=str(path), backup=str(backup))
    return backup


def load_playbook(path: str | Path) -> Playbook:
    """Read a playbook file. Missing or empty files give an empty playbook.

    A file that fails to parse or validate is copied aside and treated as
    empty. Permission errors propagate.
    """
    path = Path(path).expanduser()
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return create_empty_playbook()
    except PermissionError as e:
        raise PlaybookError(f"Cannot read playbook {path}: {e}") from e

    if not raw.strip():
        return create_empty_playbook()

    try:
        data = yaml.safe_load(raw)
        if not isinstance(data, dict):
            raise ValueError(f"expected a mapping, got {type(data).__name__}")
        return Playbook.model_validate(data)
    except (yaml.YAMLError, ValidationError, ValueError) as e:
        logger.warning("playbook.invalid", path=str(path), error=str(e)[:300])
        _backup_corrupt_file(path)
        return create_empty_playbook()


def dump_playbook(playbook: Playbook) -> str:
    data = playbook.model_dump(mode="json", by_alias=True, exclude_none=True)
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)


def atomic_write_text(target: Path, content: str) -> None:
    """Write via a unique temp file in the same directory, then rename over target."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, target)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def save_playbook(
    playbook: Playbook, path: str | Path, update_last_reflection: bool = False
) -> None:
    path = Path(path).expanduser()
    if update_last_reflection:
        playbook.metadata.last_reflection = utcnow()
        playbook.metadata.total_reflections += 1
    atomic_write_text(path, dump_playbook(playbook))
    logger.debug("playbook.saved", path=str(path), bullets=len(playbook.bullets))


def merge_playbooks(global_pb: Playbook, repo_pb: Optional[Playbook]) -> Playbook:
    """Read-only concatenation of both stores. Repo bullets win on id clashes."""
    if repo_pb is None:
        return global_pb.model_copy(deep=True)

    repo_ids = {b.id for b in repo_pb.bullets}
    merged = global_pb.model_copy(deep=True)
    merged.bullets = [b for b in merged.bullets if b.id not in repo_ids] + [
        b.model_copy(deep=True) for b in repo_pb.bullets
    ]
    merged.deprecated_patterns = merged.deprecated_patterns + [
        p.model_copy() for p in repo_pb.deprecated_patterns
    ]
    return merged


def find_repo_dir(start: str | Path | None = None) -> Optional[Path]:
    """Nearest ancestor of ``start`` (default cwd) that has a .playbook directory."""
    current = Path(start or Path.cwd()).expanduser().resolve()
    for candidate in (current, *current.parents):
        if (candidate / REPO_DIR_NAME).is_dir():
            return candidate / REPO_DIR_NAME
    return None


def resolve_repo_playbook_path(config: AppConfig, workspace: str | Path | None = None) -> Optional[Path]:
    if config.paths.repo_dir is not None:
        repo_dir = config.paths.repo_dir
    else:
        repo_dir = find_repo_dir(workspace)
    if repo_dir is None:
        return None
    return repo_dir / REPO_PLAYBOOK_NAME


def load_merged_playbook(config: AppConfig, workspace: str | Path | None = None) -> Playbook:
    global_pb = load_playbook(config.paths.playbook)
    repo_path = resolve_repo_playbook_path(config, workspace)
    repo_pb = load_playbook(repo_path) if repo_path and repo_path.exists() else None
    return merge_playbooks(global_pb, repo_pb)


def store_lock(config: AppConfig, path: Path, locks: LockRegistry | None = None) -> DirectoryLock:
    return DirectoryLock(
        path,
        retries=config.lock.retries,
        retry_delay=config.lock.retry_delay,
        stale_threshold=config.lock.stale_threshold,
        registry=locks,
    )


@contextmanager
def locked_stores(
    config: AppConfig,
    workspace: str | Path | None = None,
    locks: LockRegistry | None = None,
) -> Iterator[tuple[Path, Optional[Path]]]:
    """Hold the global lock, then the project lock if that store exists.

    Yields ``(global_path, repo_path)``; ``repo_path`` is None without a project store.
    """
    global_path = config.paths.playbook
    repo_path = resolve_repo_playbook_path(config, workspace)
    if repo_path is not None and not repo_path.exists():
        repo_path = None

    with ExitStack() as stack:
        stack.enter_context(store_lock(config, global_path, locks))
        if repo_path is not None:
            stack.enter_context(store_lock(config, repo_path, locks))
        yield global_path, repo_path


def edit_bullet(
    config: AppConfig,
    bullet_id: str,
    edit: Callable[[Playbook], T],
    workspace: str | Path | None = None,
    locks: LockRegistry | None = None,
) -> Optional[T]:
    """Run ``edit`` on the store that owns ``bullet_id`` and save it if the edit returns a truthy value.

    Returns None when neither store has the bullet.
    """
    with locked_stores(config, workspace, locks) as (global_path, repo_path):
        for path in (repo_path, global_path):
            if path is None:
                continue
            playbook = load_playbook(path)
            if playbook.find(bullet_id) is None:
                continue
            result = edit(playbook)
            if result:
                save_playbook(playbook, path)
                logger.info("playbook.bullet_edited", bullet_id=bullet_id, path=str(path))
            return result
    return None
