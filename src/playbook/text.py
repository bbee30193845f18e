"""Text helpers shared by curation, dedup and evidence search."""

import hashlib
import random
import re
import string
import time

_TOKEN_RE = re.compile(r"[a-z0-9]+(?:[._\-+]+[a-z0-9]+)*")
_WS_RE = re.compile(r"\s+")
_B36 = string.digits + string.ascii_lowercase

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should", "can", "to", "of", "in",
        "for", "on", "with", "at", "by", "from", "as", "into", "through", "during", "before",
        "after", "and", "or", "but", "if", "when", "where", "why", "how", "this", "that",
        "these", "those", "what", "which", "who", "there", "here", "i", "you", "he", "she",
        "it", "we", "they", "me", "him", "her", "us", "them",
    }
)


def normalize(text: str) -> str:
    """Lowercase and collapse whitespace."""
    return _WS_RE.sub(" ", (text or "").lower()).strip()


def hash_content(content: str) -> str:
    """Stable 16-char content hash, insensitive to case and whitespace runs."""
    return hashlib.sha256(normalize(content).encode("utf-8")).hexdigest()[:16]


def tokenize(text: str) -> list[str]:
    """Split into lowercase tokens, keeping terms like node.js, c++ and user_id intact."""
    if not text:
        return []
    return [t for t in _TOKEN_RE.findall(text.lower()) if len(t) >= 2]


def jaccard_similarity(a: str, b: str) -> float:
    tokens_a = set(tokenize(a))
    tokens_b = set(tokenize(b))
    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def extract_keywords(text: str, limit: int = 10) -> list[str]:
    """Most frequent non-stop-word tokens, ties broken by first appearance."""
    counts: dict[str, int] = {}
    for token in tokenize(text):
        if token in STOP_WORDS:
            continue
        counts[token] = counts.get(token, 0) + 1
    ranked = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    return [k for k, _ in ranked[:limit]]


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_B36[r])
    return "".join(reversed(out))


def generate_bullet_id() -> str:
    """b-<ms since epoch, base36>-<6 random base36 chars>."""
    suffix = "".join(random.choices(_B36, k=6))
    return f"b-{_base36(int(time.time() * 1000))}-{suffix}"


def truncate(text: str, max_len: int) -> str:
    if not text or len(text) <= max_len:
        return text or ""
    if max_len < 3:
        return text[:max_len]
    return text[: max_len - 3] + "..."


_KNOWN_AGENTS = ("claude", "codex", "cursor", "aider", "gemini", "copilot")


def extract_agent_from_path(session_path: str | None) -> str:
    """Guess the originating agent from a transcript path."""
    lower = (session_path or "").lower()
    for agent in _KNOWN_AGENTS:
        if agent in lower:
            return agent
    return "unknown"
