"""Curation: apply a batch of deltas to one playbook in memory.

Dedup and conflict checks run against a context playbook (normally the
merged global + repo view) so a global add never duplicates a repo bullet.
No I/O happens here; callers own locking and persistence.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

import structlog

from cli.config_models import AppConfig

from .models import (
    AddDelta,
    Bullet,
    BulletMaturity,
    BulletState,
    BulletType,
    Conflict,
    CurationResult,
    DecisionLogEntry,
    DeprecateDelta,
    FeedbackEvent,
    FeedbackType,
    HarmfulDelta,
    HelpfulDelta,
    InversionReport,
    MergeDelta,
    NewBulletData,
    Playbook,
    Promotion,
    ReplaceDelta,
    parse_delta,
    utcnow,
)
from .scoring import AUTO_DEPRECATE, check_for_demotion, check_for_promotion, get_decayed_counts
from .text import generate_bullet_id, hash_content, jaccard_similarity, tokenize

logger = structlog.get_logger()

NEGATIVE_MARKERS = ["never", "dont", "don't", "avoid", "forbid", "forbidden", "disable", "prevent", "stop", "skip"]
POSITIVE_MARKERS = ["always", "must", "required", "ensure", "use", "enable"]
EXCEPTION_MARKERS = ["unless", "except", "only if", "only when", "except when"]

_INVERSION_EPSILON = 0.01
_DIRECTIVE_PREFIX = re.compile(r"^(always |prefer |use |try |consider |ensure )", re.IGNORECASE)


def _marker_pattern(markers: list[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(m) for m in sorted(markers, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


_NEGATIVE_RE = _marker_pattern(NEGATIVE_MARKERS)
_POSITIVE_RE = _marker_pattern(POSITIVE_MARKERS)
_EXCEPTION_RE = _marker_pattern(EXCEPTION_MARKERS)


@dataclass
class _ConflictMeta:
    bullet: Bullet
    tokens: set[str]
    neg: bool
    pos: bool
    exc: bool

    @classmethod
    def of(cls, bullet: Bullet) -> "_ConflictMeta":
        text = bullet.content
        return cls(
            bullet=bullet,
            tokens=set(tokenize(text)),
            neg=bool(_NEGATIVE_RE.search(text)),
            pos=bool(_POSITIVE_RE.search(text)),
            exc=bool(_EXCEPTION_RE.search(text)),
        )


def _conflicts_with_meta(
    new_content: str, metas: Iterable[_ConflictMeta], overlap: float, marker_overlap: float
) -> list[Conflict]:
    new_tokens = set(tokenize(new_content))
    if not new_tokens:
        return []
    new_neg = bool(_NEGATIVE_RE.search(new_content))
    new_pos = bool(_POSITIVE_RE.search(new_content))
    new_exc = bool(_EXCEPTION_RE.search(new_content))
    new_has_markers = new_neg or new_pos or new_exc

    conflicts = []
    for m in metas:
        if not m.bullet.is_active or not m.tokens:
            continue

        has_markers = new_has_markers or m.neg or m.pos or m.exc
        min_overlap = marker_overlap if has_markers else overlap
        # Jaccard can't exceed the smaller set over the larger one
        if min(len(new_tokens), len(m.tokens)) / max(len(new_tokens), len(m.tokens)) < min_overlap:
            continue
        score = len(new_tokens & m.tokens) / len(new_tokens | m.tokens)
        if score < min_overlap:
            continue

        if new_neg != m.neg:
            reason = "Possible negation conflict (one says do, the other says avoid) with high term overlap"
        elif (new_pos and m.neg) or (m.pos and new_neg):
            reason = "Opposite directives (must vs avoid) on similar subject matter"
        elif (new_pos and m.exc) or (m.pos and new_exc):
            reason = "Potential scope conflict (always vs exception) on overlapping topic"
        else:
            continue
        conflicts.append(
            Conflict(
                new_bullet_content=new_content,
                conflicting_bullet_id=m.bullet.id,
                conflicting_content=m.bullet.content,
                reason=reason,
            )
        )
    return conflicts


def detect_conflicts(
    new_content: str,
    existing: Iterable[Bullet],
    overlap: float = 0.2,
    marker_overlap: float = 0.1,
) -> list[Conflict]:
    """Heuristic contradiction check. Over-inclusive; results are advisory."""
    return _conflicts_with_meta(new_content, [_ConflictMeta.of(b) for b in existing], overlap, marker_overlap)


def invert_to_anti_pattern(bullet: Bullet, config: AppConfig, now: datetime | None = None) -> Bullet:
    ts = now or utcnow()
    cleaned = _DIRECTIVE_PREFIX.sub("", bullet.content).strip().rstrip(".").strip()
    return Bullet(
        id=generate_bullet_id(),
        content=f"AVOID: {cleaned}. Marked harmful {bullet.harmful_count} times",
        category=bullet.category,
        kind="anti_pattern",
        type=BulletType.ANTI_PATTERN,
        is_negative=True,
        scope=bullet.scope,
        workspace=bullet.workspace,
        state=BulletState.ACTIVE,
        maturity=BulletMaturity.CANDIDATE,
        created_at=ts,
        updated_at=ts,
        source_sessions=list(bullet.source_sessions),
        source_agents=list(bullet.source_agents),
        tags=[*bullet.tags, "inverted", "anti-pattern"],
        confidence_decay_half_life_days=config.scoring.decay_half_life_days,
    )


def _already_recorded(bullet: Bullet, kind: FeedbackType, session: str | None, timestamp: datetime | None) -> bool:
    for e in bullet.feedback_events:
        if e.type != kind:
            continue
        if session and e.session_path == session:
            return True
        if not session and timestamp is not None and e.session_path is None and e.timestamp == timestamp:
            return True
    return False


class _Curator:
    """One curation pass. Holds the per-batch caches."""

    def __init__(self, target: Playbook, config: AppConfig, context: Playbook, now: datetime):
        self.target = target
        self.config = config
        self.context = context
        self.now = now
        self.result = CurationResult(playbook=target)
        self.by_hash: dict[str, Bullet] = {hash_content(b.content): b for b in context.bullets}
        self.conflict_meta = [_ConflictMeta.of(b) for b in context.bullets]
        self.added: list[Bullet] = []

    def log(self, phase: str, action: str, reason: str, bullet_id=None, content=None, **details) -> None:
        self.result.decision_log.append(
            DecisionLogEntry(
                phase=phase,
                action=action,
                reason=reason,
                bullet_id=bullet_id,
                content=content[:100] if content else None,
                details=details,
                timestamp=self.now,
            )
        )

    def apply(self, delta) -> bool:
        match delta:
            case AddDelta():
                return self._add(delta)
            case HelpfulDelta():
                return self._feedback(delta, FeedbackType.HELPFUL)
            case HarmfulDelta():
                return self._feedback(delta, FeedbackType.HARMFUL)
            case ReplaceDelta():
                return self._replace(delta)
            case DeprecateDelta():
                return self._deprecate(delta)
            case MergeDelta():
                return self._merge(delta)
            case _:
                self.log("add", "rejected", "Malformed delta")
                return False

    # --- add ---

    def _find_similar(self, content: str) -> Bullet | None:
        threshold = self.config.curation.dedup_similarity_threshold
        # Live bullets (including ones added earlier in this batch) before deprecated ones
        for b in [*self.context.bullets, *self.added]:
            if b.is_active and jaccard_similarity(content, b.content) >= threshold:
                return b
        for b in self.context.bullets:
            if not b.is_active and jaccard_similarity(content, b.content) >= threshold:
                return b
        return None

    def _add(self, delta: AddDelta) -> bool:
        data = delta.bullet
        content = (data.content or "").strip()
        if not content or not data.category:
            self.log("add", "rejected", "Missing required content or category", content=content)
            return False

        curation = self.config.curation
        for c in _conflicts_with_meta(
            content, self.conflict_meta, curation.conflict_overlap, curation.conflict_marker_overlap
        ):
            self.result.conflicts.append(c)
            self.log("conflict", "skipped", c.reason, bullet_id=c.conflicting_bullet_id, content=content)

        digest = hash_content(content)
        exact = self.by_hash.get(digest)
        if exact is not None:
            reason = "Exact duplicate exists" if exact.is_active else "Exact duplicate exists but is deprecated"
            self.log("dedup", "skipped", reason, bullet_id=exact.id, content=content)
            return False

        similar = self._find_similar(content)
        if similar is not None:
            return self._reinforce_similar(similar, delta, content)

        half_life = self.config.scoring.decay_half_life_days
        bullet = self.target.add_bullet(
            data.model_copy(update={"content": content}),
            delta.source_session,
            half_life_days=half_life,
            now=self.now,
        )
        if delta.reason and delta.reason.strip():
            bullet.reasoning = delta.reason.strip()

        self.by_hash[digest] = bullet
        self.conflict_meta.append(_ConflictMeta.of(bullet))
        self.added.append(bullet)
        self.log("add", "accepted", "New bullet added to playbook", bullet_id=bullet.id, content=content)
        return True

    def _reinforce_similar(self, similar: Bullet, delta: AddDelta, content: str) -> bool:
        if not similar.is_active:
            self.log(
                "dedup", "skipped",
                "Similar bullet exists but is deprecated; not resurrecting blocked content",
                bullet_id=similar.id, content=content,
            )
            return False

        target_bullet = self.target.find(similar.id)
        if target_bullet is None:
            self.log(
                "dedup", "skipped", "Similar bullet exists in the other store",
                bullet_id=similar.id, content=content,
            )
            return False
        if not target_bullet.is_active:
            self.log("dedup", "skipped", "Similar bullet is deprecated in target", bullet_id=similar.id, content=content)
            return False
        if _already_recorded(target_bullet, FeedbackType.HELPFUL, delta.source_session, self.now):
            self.log("dedup", "skipped", "Similar bullet already reinforced by this session", bullet_id=similar.id)
            return False

        target_bullet.feedback_events.append(
            FeedbackEvent(
                type=FeedbackType.HELPFUL,
                timestamp=self.now,
                session_path=delta.source_session,
                context="Reinforced by similar insight",
            )
        )
        target_bullet.helpful_count += 1
        target_bullet.updated_at = self.now
        self.log("dedup", "modified", "Reinforced existing similar bullet", bullet_id=target_bullet.id, content=content)
        return True

    # --- feedback / replace / deprecate / merge ---

    def _feedback(self, delta: HelpfulDelta | HarmfulDelta, kind: FeedbackType) -> bool:
        bullet = self.target.find(delta.bullet_id)
        if bullet is None:
            self.log("feedback", "rejected", f"Bullet not found for {kind} feedback", bullet_id=delta.bullet_id)
            return False
        timestamp = delta.timestamp or self.now
        if _already_recorded(bullet, kind, delta.source_session, timestamp):
            self.log("feedback", "skipped", f"{kind.capitalize()} feedback already recorded", bullet_id=bullet.id)
            return False

        bullet.feedback_events.append(
            FeedbackEvent(
                type=kind,
                timestamp=timestamp,
                session_path=delta.source_session,
                reason=getattr(delta, "reason", None),
                context=delta.context,
            )
        )
        if kind == FeedbackType.HELPFUL:
            bullet.helpful_count += 1
            bullet.last_validated_at = self.now
        else:
            bullet.harmful_count += 1
        bullet.updated_at = self.now
        self.log("feedback", "accepted", f"{kind.capitalize()} feedback recorded", bullet_id=bullet.id, content=bullet.content)
        return True

    def _replace(self, delta: ReplaceDelta) -> bool:
        bullet = self.target.find(delta.bullet_id)
        if bullet is None:
            self.log("add", "rejected", "Bullet not found for replacement", bullet_id=delta.bullet_id)
            return False
        new_content = (delta.new_content or "").strip()
        if not new_content or new_content == bullet.content:
            self.log("add", "skipped", "Replacement content empty or unchanged", bullet_id=bullet.id)
            return False
        previous = bullet.content
        bullet.content = new_content
        bullet.updated_at = self.now
        self.log("add", "modified", "Bullet content replaced", bullet_id=bullet.id, content=new_content, previous=previous[:100])
        return True

    def _deprecate(self, delta: DeprecateDelta) -> bool:
        if self.target.deprecate(delta.bullet_id, delta.reason, delta.replaced_by, now=self.now):
            self.log("demotion", "accepted", "Bullet deprecated", bullet_id=delta.bullet_id, replaced_by=delta.replaced_by)
            return True
        self.log("demotion", "rejected", "Bullet missing or already deprecated", bullet_id=delta.bullet_id)
        return False

    def _merge(self, delta: MergeDelta) -> bool:
        found = [self.target.find(i) for i in delta.bullet_ids]
        originals = [b for b in found if b is not None]
        content = (delta.merged_content or "").strip()
        if len(originals) != len(delta.bullet_ids) or len(originals) < 2 or not content:
            self.log(
                "add", "rejected", "Cannot merge: missing bullets, fewer than two, or empty content",
                requested=len(delta.bullet_ids), found=len(originals),
            )
            return False

        tags = list(dict.fromkeys(t for b in originals for t in b.tags))
        merged = self.target.add_bullet(
            NewBulletData(content=content, category=originals[0].category, tags=tags),
            "merged",
            half_life_days=self.config.scoring.decay_half_life_days,
            now=self.now,
        )
        for b in originals:
            self.target.deprecate(b.id, f"Merged into {merged.id}", merged.id, now=self.now)
        self.by_hash[hash_content(content)] = merged
        self.added.append(merged)
        self.log("add", "accepted", "Bullets merged into new combined bullet", bullet_id=merged.id, content=content, merged_from=list(delta.bullet_ids))
        return True

    # --- post-processing ---

    def invert_harmful(self) -> set[str]:
        inverted: set[str] = set()
        curation = self.config.curation
        # Copy: anti-patterns are appended while iterating
        for bullet in list(self.target.bullets):
            if bullet.deprecated or bullet.pinned or bullet.is_anti_pattern:
                continue
            helpful, harmful = get_decayed_counts(bullet, self.config, self.now)
            if harmful < curation.inversion_harmful_min - _INVERSION_EPSILON:
                continue
            if harmful <= helpful * curation.inversion_harmful_ratio:
                continue

            if bullet.is_negative:
                self.target.deprecate(
                    bullet.id, "Negative rule marked harmful (likely incorrect restriction)", now=self.now
                )
                self.result.pruned += 1
                self.log("inversion", "rejected", "Negative rule deprecated instead of inverted", bullet_id=bullet.id, content=bullet.content)
                continue

            anti = invert_to_anti_pattern(bullet, self.config, self.now)
            self.target.bullets.append(anti)
            self.target.deprecate(bullet.id, f"Inverted to anti-pattern: {anti.id}", anti.id, now=self.now)
            inverted.add(bullet.id)
            self.result.inversions.append(
                InversionReport(
                    original_id=bullet.id,
                    original_content=bullet.content,
                    anti_pattern_id=anti.id,
                    anti_pattern_content=anti.content,
                    reason="Marked as blocked/anti-pattern",
                )
            )
            self.log("inversion", "accepted", "Rule inverted to anti-pattern", bullet_id=bullet.id, anti_pattern_id=anti.id)
            logger.info("curate.inverted", bullet_id=bullet.id, anti_pattern_id=anti.id, decayed_harmful=round(harmful, 3))
        return inverted

    def promote_and_demote(self, skip: set[str]) -> None:
        for bullet in list(self.target.bullets):
            if bullet.deprecated or bullet.id in skip:
                continue

            old = bullet.maturity
            promoted = check_for_promotion(bullet, self.config, self.now)
            if promoted != old:
                bullet.maturity = promoted
                bullet.promoted_at = self.now
                self.result.promotions.append(
                    Promotion(bullet_id=bullet.id, from_maturity=old, to_maturity=promoted, reason="Auto-promoted based on feedback")
                )
                self.log("promotion", "accepted", f"Maturity promoted from {old} to {promoted}", bullet_id=bullet.id)

            demotion = check_for_demotion(bullet, self.config, self.now)
            if demotion == AUTO_DEPRECATE:
                self.target.deprecate(bullet.id, "Auto-deprecated due to negative score", now=self.now)
                self.result.pruned += 1
                self.log("demotion", "accepted", "Auto-deprecated due to negative effective score", bullet_id=bullet.id)
            elif demotion != bullet.maturity:
                previous = bullet.maturity
                bullet.maturity = demotion
                self.log("demotion", "accepted", f"Maturity demoted from {previous} to {demotion}", bullet_id=bullet.id)


def curate_playbook(
    target: Playbook,
    deltas: Iterable[Any],
    config: AppConfig,
    context: Playbook | None = None,
    now: datetime | None = None,
) -> CurationResult:
    """Apply ``deltas`` to ``target`` in place and run inversion, then promotion/demotion."""
    curator = _Curator(target, config, context or target, now or utcnow())

    for raw in deltas:
        delta = parse_delta(raw)
        if delta is None:
            curator.log("add", "rejected", "Delta failed validation")
            curator.result.skipped += 1
            continue
        if curator.apply(delta):
            curator.result.applied += 1
        else:
            curator.result.skipped += 1

    inverted = curator.invert_harmful()
    curator.promote_and_demote(inverted)

    result = curator.result
    logger.debug(
        "curate.complete",
        applied=result.applied,
        skipped=result.skipped,
        conflicts=len(result.conflicts),
        inversions=len(result.inversions),
        pruned=result.pruned,
    )
    return result
