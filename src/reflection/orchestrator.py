"""Reflection transaction: sessions in, curated playbooks and ledger entries out.

Proposals are gathered without holding any store lock. The merge phase then
locks the global store, then the project store if one exists, reloads both,
routes each delta to the store that owns its bullet and saves. Ledger entries
are appended last, so a crash anywhere before that only causes a re-run whose
duplicate work curation skips.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import structlog

from cli.config_models import AppConfig
from playbook.curate import curate_playbook
from playbook.lock import LockRegistry
from playbook.models import (
    AddDelta,
    Bullet,
    CurationResult,
    DeprecateDelta,
    MergeDelta,
    NewBulletData,
    Playbook,
)
from playbook.store import (
    load_merged_playbook,
    load_playbook,
    locked_stores,
    merge_playbooks,
    save_playbook,
    store_lock,
)
from playbook.text import generate_bullet_id, hash_content, jaccard_similarity

from .ledger import LedgerEntry, ProcessedLedger, ledger_path_for
from .reflector import DeltaProposer, Reflector, deduplicate_deltas, propose_all
from .sessions import DirectorySessionSource, SessionSource
from .validate import EvidenceGate, KeywordEvidenceGate, validate_delta

logger = structlog.get_logger()

MERGED_CATEGORY = "merged"
MERGED_SOURCE_SESSION = "merged-operation"

ProgressCallback = Callable[[dict], None]


@dataclass
class ReflectionOutcome:
    sessions_processed: int = 0
    deltas_generated: int = 0
    global_result: Optional[CurationResult] = None
    repo_result: Optional[CurationResult] = None
    dry_run_deltas: Optional[list] = None
    errors: list[str] = field(default_factory=list)


def _find_hash_match(playbook: Playbook, content: str) -> Bullet | None:
    digest = hash_content(content)
    for b in playbook.bullets:
        if hash_content(b.content) == digest:
            return b
    return None


def _best_active_similar(playbook: Playbook, content: str, threshold: float) -> Bullet | None:
    best: Bullet | None = None
    best_score = 0.0
    for b in playbook.bullets:
        if not b.is_active:
            continue
        score = jaccard_similarity(content, b.content)
        if score >= threshold and score > best_score:
            best, best_score = b, score
    return best


def decompose_merges(deltas: list, merged_view: Playbook, threshold: float) -> list:
    """Turn merge deltas into add + deprecate deltas that can be routed per store."""
    out: list = []
    for delta in deltas:
        if not isinstance(delta, MergeDelta):
            out.append(delta)
            continue

        bullet_ids = list(dict.fromkeys(delta.bullet_ids))
        originals = [merged_view.find(i) for i in bullet_ids]
        if len(bullet_ids) < 2 or any(b is None for b in originals) or not delta.merged_content.strip():
            logger.warning(
                "reflection.merge_rejected",
                bullet_ids=delta.bullet_ids,
                found=sum(b is not None for b in originals),
                reason="needs at least two existing bullets and merged content",
            )
            continue

        exact = _find_hash_match(merged_view, delta.merged_content)
        if exact is not None and not exact.is_active:
            logger.warning("reflection.merge_blocked", bullet_id=exact.id, reason="matches deprecated bullet")
            continue

        replacement = exact or _best_active_similar(merged_view, delta.merged_content, threshold)
        if replacement is not None:
            out.extend(
                DeprecateDelta(bullet_id=i, reason=f"Merged into existing {replacement.id}", replaced_by=replacement.id)
                for i in bullet_ids
                if i != replacement.id
            )
            continue

        new_id = generate_bullet_id()
        tags = list(dict.fromkeys(t for b in originals for t in b.tags))
        out.append(
            AddDelta(
                bullet=NewBulletData(id=new_id, content=delta.merged_content, category=MERGED_CATEGORY, tags=tags),
                source_session=MERGED_SOURCE_SESSION,
                reason=delta.reason or "Merged from existing rules",
            )
        )
        out.extend(
            DeprecateDelta(bullet_id=i, reason=f"Merged into {new_id}", replaced_by=new_id)
            for i in bullet_ids
        )
    return out


def route_deltas(deltas: list, global_pb: Playbook, repo_pb: Playbook | None) -> tuple[list, list]:
    """Split into (global, repo). Deltas naming a repo bullet go to the repo; the rest go global."""
    global_deltas, repo_deltas = [], []
    for delta in deltas:
        bullet_id = getattr(delta, "bullet_id", None)
        if bullet_id and repo_pb is not None and repo_pb.find(bullet_id) is not None:
            repo_deltas.append(delta)
        else:
            global_deltas.append(delta)
    return global_deltas, repo_deltas


class ReflectionOrchestrator:
    """Runs one reflection pass for a workspace."""

    def __init__(
        self,
        config: AppConfig,
        proposer: DeltaProposer | None = None,
        gate: EvidenceGate | None = None,
        sessions: SessionSource | None = None,
        locks: LockRegistry | None = None,
    ):
        self.config = config
        self.sessions = sessions or DirectorySessionSource(
            config.paths.sessions_dir, max_chars=config.reflection.max_session_chars
        )
        self.proposer = proposer or Reflector(
            max_iterations=config.reflection.max_iterations,
            max_tokens=config.llm.max_tokens,
            llm_config=config.llm,
        )
        if gate is None and config.reflection.validation_enabled and isinstance(self.sessions, DirectorySessionSource):
            gate = KeywordEvidenceGate(self.sessions, config.reflection.validation_lookback_days)
        self.gate = gate
        self.locks = locks or LockRegistry()

    def run(
        self,
        max_sessions: int | None = None,
        session: str | None = None,
        dry_run: bool = False,
        days: int | None = None,
        workspace: str | Path | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ReflectionOutcome:
        ledger_path = ledger_path_for(self.config, workspace)
        ledger_path.parent.mkdir(parents=True, exist_ok=True)
        coordination = ledger_path.with_name(ledger_path.name + ".orchestrator")

        with store_lock(self.config, coordination, self.locks):
            return self._run_locked(
                ProcessedLedger(ledger_path).load(),
                max_sessions=max_sessions or self.config.reflection.max_sessions,
                session=session,
                dry_run=dry_run,
                days=days or self.config.reflection.lookback_days,
                workspace=workspace,
                progress=on_progress or (lambda event: None),
            )

    def _discover(self, ledger: ProcessedLedger, session, days, max_sessions) -> list[str]:
        if session:
            return [] if ledger.has(session) else [session]
        # Over-fetch so already-processed sessions don't eat the cap
        candidates = self.sessions.find_sessions(days, max_sessions + len(ledger.processed_paths()))
        return [s for s in candidates if not ledger.has(s)][:max_sessions]

    def _run_locked(self, ledger, *, max_sessions, session, dry_run, days, workspace, progress) -> ReflectionOutcome:
        outcome = ReflectionOutcome()
        snapshot = load_merged_playbook(self.config, workspace)

        try:
            pending_sessions = self._discover(ledger, session, days, max_sessions)
        except Exception as e:
            outcome.errors.append(f"Session discovery failed: {e}")
            logger.error("reflection.discovery_failed", error=str(e))
            return outcome

        if not pending_sessions:
            return outcome
        progress({"phase": "discovery", "total_sessions": len(pending_sessions)})

        all_deltas: list[Any] = []
        pending_entries: list[LedgerEntry] = []
        total = len(pending_sessions)

        for index, session_path in enumerate(pending_sessions, start=1):
            progress({"phase": "session_start", "index": index, "total_sessions": total, "session_path": session_path})
            try:
                context = self.sessions.load(session_path)
                if len(context.text) < self.config.reflection.min_session_chars:
                    if not dry_run:
                        ledger.append_batch([LedgerEntry(session_path=session_path, derived_id=context.id)])
                    progress({"phase": "session_skip", "index": index, "session_path": session_path, "reason": "Session content too short"})
                    continue

                proposed = propose_all(self.proposer, context, snapshot)
                validated = []
                for delta in proposed:
                    check = validate_delta(delta, self.gate, self.config)
                    if check.valid:
                        validated.append(check.delta)
                unique = deduplicate_deltas(validated, all_deltas)
                all_deltas.extend(unique)

                entry = LedgerEntry(session_path=session_path, derived_id=context.id, deltas_generated=len(unique))
                if not validated:
                    if not dry_run:
                        ledger.append_batch([entry])
                else:
                    pending_entries.append(entry)
                outcome.sessions_processed += 1
                progress({"phase": "session_done", "index": index, "session_path": session_path, "deltas_generated": len(unique)})
            except Exception as e:
                outcome.errors.append(f"Failed to process {session_path}: {e}")
                logger.warning("reflection.session_failed", session=session_path, error=str(e))
                progress({"phase": "session_error", "index": index, "session_path": session_path, "error": str(e)})

        outcome.deltas_generated = len(all_deltas)

        if dry_run:
            outcome.dry_run_deltas = all_deltas
            return outcome

        if not all_deltas:
            return outcome

        outcome.global_result, outcome.repo_result = self._merge(all_deltas, workspace)
        ledger.append_batch(pending_entries)
        logger.info(
            "reflection.merge_complete",
            sessions=outcome.sessions_processed,
            deltas=outcome.deltas_generated,
            global_applied=outcome.global_result.applied if outcome.global_result else 0,
            repo_applied=outcome.repo_result.applied if outcome.repo_result else 0,
        )
        return outcome

    def _merge(self, deltas: list, workspace) -> tuple[Optional[CurationResult], Optional[CurationResult]]:
        return merge_into_stores(self.config, deltas, workspace=workspace, locks=self.locks)


def merge_into_stores(
    config: AppConfig,
    deltas: list,
    workspace: str | Path | None = None,
    locks: LockRegistry | None = None,
    update_last_reflection: bool = True,
) -> tuple[Optional[CurationResult], Optional[CurationResult]]:
    """Lock global then project store, and apply ``deltas`` to whichever owns each bullet."""
    with locked_stores(config, workspace, locks) as (global_path, repo_path):
        return apply_deltas(config, deltas, global_path, repo_path, update_last_reflection)


def apply_deltas(
    config: AppConfig,
    deltas: list,
    global_path: Path,
    repo_path: Path | None,
    update_last_reflection: bool = True,
) -> tuple[Optional[CurationResult], Optional[CurationResult]]:
    """Reload, route, curate and save. Callers hold the store locks."""
    global_pb = load_playbook(global_path)
    repo_pb = load_playbook(repo_path) if repo_path is not None else None
    fresh = merge_playbooks(global_pb, repo_pb)

    expanded = decompose_merges(deltas, fresh, config.curation.dedup_similarity_threshold)
    global_deltas, repo_deltas = route_deltas(expanded, global_pb, repo_pb)

    global_result = repo_result = None
    if global_deltas:
        global_result = curate_playbook(global_pb, global_deltas, config, context=fresh)
        save_playbook(global_pb, global_path, update_last_reflection=update_last_reflection)
    if repo_deltas and repo_pb is not None:
        repo_result = curate_playbook(repo_pb, repo_deltas, config, context=fresh)
        save_playbook(repo_pb, repo_path, update_last_reflection=update_last_reflection)
    return global_result, repo_result


def orchestrate(config: AppConfig, **options) -> ReflectionOutcome:
    """Run a reflection pass with the default session source, gate and reflector."""
    collaborators = {k: options.pop(k) for k in ("proposer", "gate", "sessions", "locks") if k in options}
    return ReflectionOrchestrator(config, **collaborators).run(**options)
