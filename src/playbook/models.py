"""Data models for playbook bullets, feedback, deltas and curation results."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from .text import extract_agent_from_path, generate_bullet_id

PLAYBOOK_SCHEMA_VERSION = 2


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps from hand-edited files are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


Timestamp = Annotated[datetime, AfterValidator(_as_utc)]


class FeedbackType(StrEnum):
    HELPFUL = "helpful"
    HARMFUL = "harmful"


class BulletState(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    RETIRED = "retired"


class BulletMaturity(StrEnum):
    CANDIDATE = "candidate"
    ESTABLISHED = "established"
    PROVEN = "proven"
    DEPRECATED = "deprecated"


class BulletType(StrEnum):
    RULE = "rule"
    ANTI_PATTERN = "anti-pattern"


class BulletScope(StrEnum):
    GLOBAL = "global"
    WORKSPACE = "workspace"


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FeedbackEvent(_Model):
    """One helpful/harmful signal. Never mutated after it is appended."""

    model_config = ConfigDict(frozen=True)

    type: FeedbackType
    timestamp: Timestamp = Field(default_factory=utcnow)
    decayed_value: float = 1.0
    session_path: Optional[str] = None
    reason: Optional[str] = None
    context: Optional[str] = None


class Bullet(_Model):
    id: str = Field(default_factory=generate_bullet_id)
    scope: BulletScope = BulletScope.GLOBAL
    workspace: Optional[str] = None
    category: str = "uncategorized"
    content: str
    search_pointer: Optional[str] = None
    type: BulletType = BulletType.RULE
    is_negative: bool = False
    kind: str = "stack_pattern"
    state: BulletState = BulletState.DRAFT
    maturity: BulletMaturity = BulletMaturity.CANDIDATE
    promoted_at: Optional[Timestamp] = None
    helpful_count: int = 0
    harmful_count: int = 0
    feedback_events: list[FeedbackEvent] = Field(default_factory=list)
    last_validated_at: Optional[Timestamp] = None
    confidence_decay_half_life_days: Optional[float] = None
    created_at: Timestamp = Field(default_factory=utcnow)
    updated_at: Timestamp = Field(default_factory=utcnow)
    pinned: bool = False
    pinned_reason: Optional[str] = None
    deprecated: bool = False
    replaced_by: Optional[str] = None
    deprecation_reason: Optional[str] = None
    deprecated_at: Optional[Timestamp] = None
    source_sessions: list[str] = Field(default_factory=list)
    source_agents: list[str] = Field(default_factory=list)
    reasoning: Optional[str] = None
    tags: list[str] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return (
            not self.deprecated
            and self.maturity != BulletMaturity.DEPRECATED
            and self.state != BulletState.RETIRED
        )

    @property
    def is_anti_pattern(self) -> bool:
        return self.kind == "anti_pattern" or self.type == BulletType.ANTI_PATTERN


class NewBulletData(_Model):
    """Bullet fields a proposer may supply. Content and category are checked at curation."""

    id: Optional[str] = None
    content: str = ""
    category: str = ""
    tags: list[str] = Field(default_factory=list)
    kind: Optional[str] = None
    type: Optional[BulletType] = None
    is_negative: Optional[bool] = None
    scope: Optional[BulletScope] = None
    workspace: Optional[str] = None
    search_pointer: Optional[str] = None
    state: Optional[BulletState] = None
    maturity: Optional[BulletMaturity] = None


class DeprecatedPattern(_Model):
    pattern: str
    deprecated_at: Timestamp = Field(default_factory=utcnow)
    reason: str = ""
    replacement: Optional[str] = None


class PlaybookMetadata(_Model):
    created_at: Timestamp = Field(default_factory=utcnow)
    last_reflection: Optional[Timestamp] = None
    total_reflections: int = 0
    total_sessions_processed: int = 0


class Playbook(_Model):
    schema_version: int = Field(default=PLAYBOOK_SCHEMA_VERSION, alias="schema_version")
    name: str = "playbook"
    description: str = "Auto-generated by playbook-memory"
    metadata: PlaybookMetadata = Field(default_factory=PlaybookMetadata)
    deprecated_patterns: list[DeprecatedPattern] = Field(default_factory=list)
    bullets: list[Bullet] = Field(default_factory=list)

    def find(self, bullet_id: str | None) -> Bullet | None:
        if not bullet_id:
            return None
        for bullet in self.bullets:
            if bullet.id == bullet_id:
                return bullet
        return None

    def add_bullet(
        self,
        data: NewBulletData,
        source_session: str | None = None,
        half_life_days: float | None = None,
        now: datetime | None = None,
    ) -> Bullet:
        """Append a new bullet built from proposer data. Maturity defaults to candidate."""
        ts = now or utcnow()
        maturity = data.maturity or BulletMaturity.CANDIDATE
        if maturity == BulletMaturity.DEPRECATED:
            maturity = BulletMaturity.CANDIDATE
        bullet = Bullet(
            id=data.id or generate_bullet_id(),
            content=data.content,
            category=data.category or "uncategorized",
            tags=list(data.tags),
            kind=data.kind or "stack_pattern",
            type=data.type or BulletType.RULE,
            is_negative=bool(data.is_negative),
            scope=data.scope or BulletScope.GLOBAL,
            workspace=data.workspace,
            search_pointer=data.search_pointer,
            state=data.state or BulletState.DRAFT,
            maturity=maturity,
            confidence_decay_half_life_days=half_life_days,
            source_sessions=[source_session] if source_session else [],
            source_agents=[extract_agent_from_path(source_session)] if source_session else [],
            created_at=ts,
            updated_at=ts,
        )
        self.bullets.append(bullet)
        return bullet

    def deprecate(
        self,
        bullet_id: str,
        reason: str,
        replaced_by: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Soft-delete a bullet. Returns False when missing or already deprecated."""
        bullet = self.find(bullet_id)
        if bullet is None or bullet.deprecated:
            return False
        ts = now or utcnow()
        bullet.deprecated = True
        bullet.maturity = BulletMaturity.DEPRECATED
        bullet.state = BulletState.RETIRED
        bullet.deprecation_reason = reason
        bullet.deprecated_at = ts
        bullet.replaced_by = replaced_by
        bullet.updated_at = ts
        self.deprecated_patterns.append(
            DeprecatedPattern(
                pattern=bullet.content, deprecated_at=ts, reason=reason, replacement=replaced_by
            )
        )
        return True

    def undeprecate(self, bullet_id: str, now: datetime | None = None) -> bool:
        """Restore a deprecated bullet as an active candidate and drop its blocked pattern."""
        bullet = self.find(bullet_id)
        if bullet is None or bullet.is_active:
            return False
        ts = now or utcnow()
        pattern = bullet.content.strip().lower()
        self.deprecated_patterns = [
            p for p in self.deprecated_patterns if p.pattern.strip().lower() != pattern
        ]
        bullet.deprecated = False
        bullet.deprecated_at = None
        bullet.deprecation_reason = None
        bullet.replaced_by = None
        bullet.state = BulletState.ACTIVE
        if bullet.maturity == BulletMaturity.DEPRECATED:
            bullet.maturity = BulletMaturity.CANDIDATE
        bullet.updated_at = ts
        return True

    def undo_last_feedback(self, bullet_id: str, now: datetime | None = None) -> FeedbackEvent | None:
        """Drop the newest feedback event and its count. Returns the removed event."""
        bullet = self.find(bullet_id)
        if bullet is None or not bullet.feedback_events:
            return None
        event = bullet.feedback_events.pop()
        if event.type == FeedbackType.HELPFUL:
            bullet.helpful_count = max(0, bullet.helpful_count - 1)
        else:
            bullet.harmful_count = max(0, bullet.harmful_count - 1)
        bullet.updated_at = now or utcnow()
        return event

    def remove(self, bullet_id: str) -> Bullet | None:
        bullet = self.find(bullet_id)
        if bullet is not None:
            self.bullets.remove(bullet)
        return bullet


def get_active_bullets(playbook: Playbook) -> list[Bullet]:
    return [b for b in playbook.bullets if b.is_active]


# --- Deltas ---


class AddDelta(_Model):
    type: Literal["add"] = "add"
    bullet: NewBulletData
    reason: str = ""
    source_session: Optional[str] = None


class HelpfulDelta(_Model):
    type: Literal["helpful"] = "helpful"
    bullet_id: str
    source_session: Optional[str] = None
    context: Optional[str] = None
    timestamp: Optional[Timestamp] = None


class HarmfulDelta(_Model):
    type: Literal["harmful"] = "harmful"
    bullet_id: str
    source_session: Optional[str] = None
    reason: Optional[str] = None
    context: Optional[str] = None
    timestamp: Optional[Timestamp] = None


class ReplaceDelta(_Model):
    type: Literal["replace"] = "replace"
    bullet_id: str
    new_content: str
    reason: Optional[str] = None


class DeprecateDelta(_Model):
    type: Literal["deprecate"] = "deprecate"
    bullet_id: str
    reason: str = ""
    replaced_by: Optional[str] = None


class MergeDelta(_Model):
    type: Literal["merge"] = "merge"
    bullet_ids: list[str]
    merged_content: str
    reason: Optional[str] = None


Delta = Annotated[
    Union[AddDelta, HelpfulDelta, HarmfulDelta, ReplaceDelta, DeprecateDelta, MergeDelta],
    Field(discriminator="type"),
]

DELTA_TYPES = (AddDelta, HelpfulDelta, HarmfulDelta, ReplaceDelta, DeprecateDelta, MergeDelta)

_delta_adapter: TypeAdapter = TypeAdapter(Delta)


def parse_delta(raw: Any) -> Optional[Delta]:
    """Validate a raw dict into a Delta; None when it does not fit any variant."""
    if isinstance(raw, DELTA_TYPES):
        return raw
    try:
        return _delta_adapter.validate_python(raw)
    except ValidationError:
        return None


def delta_to_dict(delta: Delta) -> dict:
    return delta.model_dump(mode="json", by_alias=True, exclude_none=True)


# --- Curation results ---


@dataclass
class Conflict:
    new_bullet_content: str
    conflicting_bullet_id: str
    conflicting_content: str
    reason: str


@dataclass
class Promotion:
    bullet_id: str
    from_maturity: BulletMaturity
    to_maturity: BulletMaturity
    reason: str = ""


@dataclass
class InversionReport:
    original_id: str
    original_content: str
    anti_pattern_id: str
    anti_pattern_content: str
    reason: str = ""


@dataclass
class DecisionLogEntry:
    phase: str  # add | feedback | dedup | conflict | inversion | promotion | demotion
    action: str  # accepted | rejected | skipped | modified
    reason: str
    bullet_id: str | None = None
    content: str | None = None
    details: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class CurationResult:
    playbook: Playbook
    applied: int = 0
    skipped: int = 0
    conflicts: list[Conflict] = field(default_factory=list)
    promotions: list[Promotion] = field(default_factory=list)
    inversions: list[InversionReport] = field(default_factory=list)
    pruned: int = 0
    decision_log: list[DecisionLogEntry] = field(default_factory=list)
