"""Evidence gate for proposed rules.

Before a new rule lands, recent transcripts are scanned for the rule's
keywords. Sessions whose matching lines read like a success or a failure are
counted once each; strong one-sided evidence decides, anything else is left
to curation as a draft.
"""

import re
from dataclasses import dataclass, field
from typing import Literal, Optional, Protocol

import structlog

from cli.config_models import AppConfig
from playbook.models import AddDelta, BulletMaturity, BulletState
from playbook.text import extract_keywords

logger = structlog.get_logger()

MIN_VALIDATION_CHARS = 15
ACCEPT_MIN_SUCCESSES = 5
REJECT_MIN_FAILURES = 3

SUCCESS_PATTERNS = [
    re.compile(r"\bfixed\s+(the|a|an|this|that|it)\b", re.IGNORECASE),
    re.compile(r"\bsuccessfully\b", re.IGNORECASE),
    re.compile(r"\bsuccess\b(?!ful)", re.IGNORECASE),
    re.compile(r"\bsolved\s+(the|a|an|this|that|it)\b", re.IGNORECASE),
    re.compile(r"\bworking\s+now\b", re.IGNORECASE),
    re.compile(r"\bworks\s+(now|correctly|properly)\b", re.IGNORECASE),
    re.compile(r"\bresolved\b", re.IGNORECASE),
]

FAILURE_PATTERNS = [
    re.compile(r"\bfailed\s+(to|with)\b", re.IGNORECASE),
    re.compile(r"\berror:", re.IGNORECASE),
    re.compile(r"\b(threw|throws)\s+.*error\b", re.IGNORECASE),
    re.compile(r"\bbroken\b", re.IGNORECASE),
    re.compile(r"\bcrash(ed|es|ing)?\b", re.IGNORECASE),
    re.compile(r"\bbug\s+(in|found|caused)\b", re.IGNORECASE),
    re.compile(r"\bdoesn't\s+work\b", re.IGNORECASE),
]


@dataclass
class GateResult:
    verdict: Literal["accept", "reject", "ambiguous"]
    suggested_state: BulletState = BulletState.DRAFT
    reason: str = ""
    suggested_maturity: Optional[BulletMaturity] = None
    refined_content: Optional[str] = None
    counts: dict = field(default_factory=dict)


class EvidenceGate(Protocol):
    def evaluate(self, content: str) -> GateResult: ...


class EvidenceSearch(Protocol):
    def search(self, keywords: list[str], days: int, limit: int = 20) -> list[tuple[str, str]]: ...


def _matches(text: str, patterns: list[re.Pattern]) -> bool:
    return any(p.search(text) for p in patterns)


class KeywordEvidenceGate:
    """Counts success/failure sessions among transcript lines sharing the rule's keywords."""

    def __init__(self, source: EvidenceSearch, lookback_days: int = 90, search_limit: int = 20):
        self.source = source
        self.lookback_days = lookback_days
        self.search_limit = search_limit

    def evaluate(self, content: str) -> GateResult:
        keywords = extract_keywords(content)
        if not keywords:
            return GateResult(
                verdict="ambiguous",
                reason="No meaningful keywords found for evidence search. Proposing as draft.",
            )

        hits = self.source.search(keywords, self.lookback_days, limit=self.search_limit)
        sessions: set[str] = set()
        successes: set[str] = set()
        failures: set[str] = set()
        for session_path, snippet in hits:
            sessions.add(session_path)
            if _matches(snippet, SUCCESS_PATTERNS):
                successes.add(session_path)
            if _matches(snippet, FAILURE_PATTERNS):
                failures.add(session_path)

        counts = {"sessions": len(sessions), "successes": len(successes), "failures": len(failures)}
        if not sessions:
            return GateResult(
                verdict="ambiguous", reason="No historical evidence found. Proposing as draft.", counts=counts
            )
        if len(successes) >= ACCEPT_MIN_SUCCESSES and not failures:
            return GateResult(
                verdict="accept",
                suggested_state=BulletState.ACTIVE,
                reason=f"Strong success signal ({len(successes)} sessions). Auto-accepting.",
                counts=counts,
            )
        if len(failures) >= REJECT_MIN_FAILURES and not successes:
            return GateResult(
                verdict="reject",
                reason=f"Strong failure signal ({len(failures)} sessions). Auto-rejecting.",
                counts=counts,
            )
        return GateResult(verdict="ambiguous", reason="Evidence found but ambiguous.", counts=counts)


@dataclass
class DeltaValidation:
    valid: bool
    delta: object
    reason: str = ""
    gate: Optional[GateResult] = None


def validate_delta(delta, gate: EvidenceGate | None, config: AppConfig) -> DeltaValidation:
    """Run an add delta past the evidence gate. Other delta types always pass.

    Accepted and ambiguous adds come back with the gate's suggested state
    applied to a copy, along with its maturity and refined content when the
    gate supplies them.
    """
    if not isinstance(delta, AddDelta):
        return DeltaValidation(True, delta, f"Non-add delta type: {delta.type}")
    if not config.reflection.validation_enabled or gate is None:
        return DeltaValidation(True, delta, "Validation disabled")

    content = delta.bullet.content or ""
    if len(content) < MIN_VALIDATION_CHARS:
        return DeltaValidation(True, delta, f"Content too short ({len(content)} chars < {MIN_VALIDATION_CHARS})")

    result = gate.evaluate(content)
    if result.verdict == "reject":
        logger.info("reflection.rule_rejected", reason=result.reason, content=content[:100])
        return DeltaValidation(False, delta, result.reason, result)

    update = {"state": result.suggested_state}
    if result.suggested_maturity is not None:
        update["maturity"] = result.suggested_maturity
    if result.refined_content:
        update["content"] = result.refined_content
    validated = delta.model_copy(update={"bullet": delta.bullet.model_copy(update=update)})
    return DeltaValidation(True, validated, result.reason, result)
