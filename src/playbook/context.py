"""Task-relevant rule lookup: context bundles and similarity search."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import structlog

from cli.config_models import AppConfig

from .models import Bullet, BulletScope, Playbook, get_active_bullets, utcnow
from .scoring import get_effective_score
from .text import extract_keywords, jaccard_similarity, tokenize

logger = structlog.get_logger()

DEFAULT_CONTEXT_LIMIT = 50
DEFAULT_SIMILAR_THRESHOLD = 0.7
DEFAULT_SIMILAR_LIMIT = 5
SIMILAR_SCOPES = ("global", "workspace", "all")

EXACT_TOKEN_WEIGHT = 3
PARTIAL_TOKEN_WEIGHT = 1
TAG_WEIGHT = 5
MIN_SCORE_FACTOR = 0.1


@dataclass
class ScoredBullet:
    bullet: Bullet
    relevance: float
    effective_score: float
    final_score: float


@dataclass
class ContextResult:
    task: str
    keywords: list[str]
    rules: list[ScoredBullet] = field(default_factory=list)
    anti_patterns: list[ScoredBullet] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class SimilarMatch:
    bullet: Bullet
    similarity: float


def score_relevance(content: str, tags: list[str], keywords: list[str]) -> float:
    """Keyword overlap: exact token hits, substring hits and tag hits, weighted."""
    if not keywords:
        return 0.0
    tokens = set(tokenize(content))
    lowered = content.lower()
    tag_set = {t.lower() for t in tags}
    score = 0.0
    for kw in keywords:
        if kw in tokens:
            score += EXACT_TOKEN_WEIGHT
        elif kw in lowered:
            score += PARTIAL_TOKEN_WEIGHT
        if kw in tag_set:
            score += TAG_WEIGHT
    return score


def _in_workspace(bullet: Bullet, workspace: str | Path | None) -> bool:
    if bullet.scope != BulletScope.WORKSPACE or workspace is None or bullet.workspace is None:
        return True
    return Path(bullet.workspace).expanduser().resolve() == Path(workspace).expanduser().resolve()


def build_context(
    playbook: Playbook,
    task: str,
    config: AppConfig,
    limit: int = DEFAULT_CONTEXT_LIMIT,
    workspace: str | Path | None = None,
    now: datetime | None = None,
) -> ContextResult:
    """Rank active bullets by relevance to ``task`` weighted by effective score.

    Rules and anti-patterns share the ``limit``. Deprecated patterns mentioned
    in the task come back as warnings.
    """
    now = now or utcnow()
    keywords = extract_keywords(task)
    result = ContextResult(task=task, keywords=keywords)

    scored: list[ScoredBullet] = []
    for b in get_active_bullets(playbook):
        if not _in_workspace(b, workspace):
            continue
        relevance = score_relevance(b.content, b.tags, keywords)
        if relevance <= 0:
            continue
        effective = get_effective_score(b, config, now)
        final = relevance * max(MIN_SCORE_FACTOR, effective)
        scored.append(ScoredBullet(bullet=b, relevance=relevance, effective_score=effective, final_score=final))

    scored.sort(key=lambda s: s.final_score, reverse=True)
    for item in scored[:limit]:
        if item.bullet.is_anti_pattern or item.bullet.is_negative:
            result.anti_patterns.append(item)
        else:
            result.rules.append(item)

    lowered_task = task.lower()
    for pattern in playbook.deprecated_patterns:
        if pattern.pattern and pattern.pattern.lower() in lowered_task:
            suffix = f" (use {pattern.replacement} instead)" if pattern.replacement else ""
            result.warnings.append(f"'{pattern.pattern}' was deprecated: {pattern.reason}{suffix}")

    logger.debug(
        "context.built",
        keywords=len(keywords),
        rules=len(result.rules),
        anti_patterns=len(result.anti_patterns),
        warnings=len(result.warnings),
    )
    return result


def find_similar(
    playbook: Playbook,
    query: str,
    threshold: float = DEFAULT_SIMILAR_THRESHOLD,
    limit: int = DEFAULT_SIMILAR_LIMIT,
    scope: str = "all",
) -> list[SimilarMatch]:
    """Active bullets whose token overlap with ``query`` meets ``threshold``, best first."""
    if not query or not query.strip():
        raise ValueError("query must not be empty")
    if scope not in SIMILAR_SCOPES:
        raise ValueError(f"scope must be one of {', '.join(SIMILAR_SCOPES)}, got {scope!r}")

    matches = []
    for b in get_active_bullets(playbook):
        if scope != "all" and b.scope.value != scope:
            continue
        similarity = jaccard_similarity(query, b.content)
        if similarity >= threshold:
            matches.append(SimilarMatch(bullet=b, similarity=similarity))
    matches.sort(key=lambda m: m.similarity, reverse=True)
    return matches[:limit]
