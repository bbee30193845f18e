"""LLM-backed proposal step: session transcript in, playbook deltas out."""

import json
from typing import Any, Iterable, Protocol

import structlog

from llm.base import LLMAuthError, LLMProvider, LLMResponseError
from llm.retry import llm_retry
from playbook.models import (
    AddDelta,
    Bullet,
    BulletMaturity,
    HarmfulDelta,
    HelpfulDelta,
    MergeDelta,
    Playbook,
    ReplaceDelta,
    get_active_bullets,
    parse_delta,
)
from playbook.text import hash_content, normalize, truncate

from .sessions import SessionContext

logger = structlog.get_logger()

MAX_DELTAS_PER_SESSION = 20
_PROMPT_SECTION_CHARS = 20000

_REFLECTOR_SYSTEM = """You analyze a coding session transcript and extract reusable lessons for a playbook.

Each delta should be:
- SPECIFIC: Bad: "Write tests". Good: "For React hooks, test effects separately with renderHook"
- ACTIONABLE: include concrete examples, file patterns, command flags
- REUSABLE: would help a different agent on a similar problem

Delta types (JSON objects, camelCase keys):
- {"type": "add", "bullet": {"content": "...", "category": "...", "tags": [...]}, "reason": "..."}
- {"type": "helpful", "bulletId": "..."}: an existing bullet proved useful
- {"type": "harmful", "bulletId": "...", "reason": "..."}: an existing bullet caused problems
- {"type": "replace", "bulletId": "...", "newContent": "..."}: existing bullet needs new wording
- {"type": "deprecate", "bulletId": "...", "reason": "..."}: existing bullet is outdated
- {"type": "merge", "bulletIds": ["...", "..."], "mergedContent": "..."}

Reference existing bullets only by the ids shown. At most 20 deltas.
Output ONLY a JSON object {"deltas": [...]}. No preamble, no markdown fences."""

_MATURITY_ICON = {BulletMaturity.PROVEN: "★", BulletMaturity.ESTABLISHED: "●"}


class DeltaProposer(Protocol):
    def propose(self, context: SessionContext, snapshot: Playbook) -> list: ...


def hash_delta(delta) -> str:
    """Identity used to drop repeated proposals within one run."""
    match delta:
        case AddDelta():
            return f"add:{hash_content(delta.bullet.content)}"
        case ReplaceDelta():
            return f"replace:{delta.bullet_id}:{normalize(delta.new_content)}"
        case MergeDelta():
            return "merge:" + ",".join(sorted(delta.bullet_ids))
        case _:
            return f"{delta.type}:{delta.bullet_id}"


def deduplicate_deltas(new_deltas: Iterable, existing: Iterable) -> list:
    seen = {hash_delta(d) for d in existing}
    unique = []
    for d in new_deltas:
        h = hash_delta(d)
        if h in seen:
            continue
        seen.add(h)
        unique.append(d)
    return unique


def format_bullets_for_prompt(bullets: list[Bullet]) -> str:
    if not bullets:
        return "(Playbook is empty)"

    by_category: dict[str, list[Bullet]] = {}
    for b in bullets:
        by_category.setdefault(b.category or "uncategorized", []).append(b)

    lines = []
    for category, group in by_category.items():
        lines.append(f"### {category}")
        for b in group:
            icon = _MATURITY_ICON.get(b.maturity, "○")
            lines.append(f"- [{b.id}] {icon} {b.content} ({b.helpful_count}+ / {b.harmful_count}-)")
        lines.append("")
    return "\n".join(lines)


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
    if text.endswith("```"):
        text = text.rsplit("```", 1)[0]
    return text.strip()


def parse_reflector_output(response: str) -> list[dict]:
    """Accept ``{"deltas": [...]}`` or a bare list. Raises LLMResponseError otherwise."""
    try:
        data = json.loads(_strip_fences(response))
    except json.JSONDecodeError as e:
        raise LLMResponseError(f"Reflector output is not JSON: {e}") from e

    if isinstance(data, dict):
        data = data.get("deltas")
    if not isinstance(data, list):
        raise LLMResponseError("Reflector output has no deltas list")
    return [d for d in data if isinstance(d, dict)]


def _with_source(delta, session_path: str):
    if isinstance(delta, AddDelta):
        return delta.model_copy(update={"source_session": session_path})
    if isinstance(delta, (HelpfulDelta, HarmfulDelta)) and not delta.source_session:
        return delta.model_copy(update={"source_session": session_path})
    return delta


class Reflector:
    """Iteratively asks the model for deltas until it stops finding new ones."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        max_iterations: int = 3,
        max_tokens: int = 4000,
        llm_config=None,
    ):
        self._provider = provider
        self._llm_config = llm_config
        self.max_iterations = max_iterations
        self.max_tokens = max_tokens

    def _get_provider(self) -> LLMProvider:
        if self._provider:
            return self._provider
        from llm.factory import create_llm_provider, create_provider_from_config

        if self._llm_config is not None:
            self._provider = create_provider_from_config(self._llm_config)
        else:
            self._provider = create_llm_provider()
        return self._provider

    def _build_prompt(self, context: SessionContext, bullets: str, iteration: int) -> str:
        parts = [
            f"<existing_playbook>\n{truncate(bullets, _PROMPT_SECTION_CHARS)}\n</existing_playbook>",
            f"<session path=\"{context.session_path}\" agent=\"{context.agent}\">\n"
            f"{truncate(context.text, _PROMPT_SECTION_CHARS)}\n</session>",
        ]
        if iteration > 0:
            parts.append(
                f"This is iteration {iteration + 1}. Focus on insights you may have missed in previous passes."
            )
        return "\n\n".join(parts)

    def _call(self, provider: LLMProvider, prompt: str) -> str:
        @llm_retry()
        def _generate() -> str:
            return provider.generate(
                messages=[{"role": "user", "content": prompt}],
                system=_REFLECTOR_SYSTEM,
                max_tokens=self.max_tokens,
            )

        return _generate()

    def propose(self, context: SessionContext, snapshot: Playbook) -> list:
        bullets = format_bullets_for_prompt(get_active_bullets(snapshot))
        collected: list = []
        provider = self._get_provider()

        for i in range(self.max_iterations):
            try:
                raw_items = parse_reflector_output(self._call(provider, self._build_prompt(context, bullets, i)))
            except LLMAuthError:
                raise
            except Exception as e:
                logger.warning("reflection.iteration_failed", session=context.session_path, iteration=i + 1, error=str(e))
                break

            parsed = [parse_delta(item) for item in raw_items]
            valid = [_with_source(d, context.session_path) for d in parsed if d is not None]
            unique = deduplicate_deltas(valid, collected)
            collected.extend(unique)
            logger.debug(
                "reflection.iteration",
                session=context.session_path,
                iteration=i + 1,
                generated=len(raw_items),
                unique=len(unique),
            )

            if not unique or len(collected) >= MAX_DELTAS_PER_SESSION:
                break

        return collected[:MAX_DELTAS_PER_SESSION]


def propose_all(proposer: DeltaProposer, context: SessionContext, snapshot: Playbook) -> list[Any]:
    """Call a proposer and normalise whatever it returns into validated deltas."""
    deltas = []
    for raw in proposer.propose(context, snapshot) or []:
        delta = parse_delta(raw)
        if delta is None:
            logger.debug("reflection.delta_dropped", session=context.session_path)
            continue
        deltas.append(_with_source(delta, context.session_path))
    return deltas
