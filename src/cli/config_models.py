"""Pydantic configuration models for playbook-memory."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

VALID_LLM_PROVIDERS = {"auto", "claude"}


class PathsConfig(BaseModel):
    """File paths configuration."""

    playbook: Path = Path("~/.playbook-memory/playbook.yaml")
    repo_dir: Optional[Path] = None  # None = search upward for .playbook/
    sessions_dir: Path = Path("~/.playbook-memory/sessions")
    reflections_dir: Path = Path("~/.playbook-memory/reflections")
    log_file: Path = Path("~/.playbook-memory/playbook.log")

    @model_validator(mode="after")
    def expand_paths(self):
        """Expand ~ in all paths."""
        self.playbook = self.playbook.expanduser()
        self.sessions_dir = self.sessions_dir.expanduser()
        self.reflections_dir = self.reflections_dir.expanduser()
        self.log_file = self.log_file.expanduser()
        if self.repo_dir is not None:
            self.repo_dir = self.repo_dir.expanduser()
        return self


class ScoringConfig(BaseModel):
    """Decay and maturity parameters."""

    decay_half_life_days: float = 90.0
    harmful_multiplier: float = 4.0
    min_feedback_for_active: float = 3.0
    min_helpful_for_proven: float = 10.0
    max_harmful_ratio_for_proven: float = 0.1
    prune_harmful_threshold: float = 3.0
    stale_days: int = 90

    @field_validator("decay_half_life_days")
    @classmethod
    def validate_half_life(cls, v: float) -> float:
        if v < 1:
            raise ValueError(f"decay_half_life_days must be >= 1, got {v}")
        return v

    @field_validator("prune_harmful_threshold")
    @classmethod
    def validate_prune(cls, v: float) -> float:
        if not 1 <= v <= 10:
            raise ValueError(f"prune_harmful_threshold must be 1-10, got {v}")
        return v

    @field_validator("max_harmful_ratio_for_proven")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"max_harmful_ratio_for_proven must be 0-1, got {v}")
        return v


class CurationConfig(BaseModel):
    """Dedup, conflict and inversion thresholds (empirical defaults)."""

    dedup_similarity_threshold: float = 0.85
    conflict_overlap: float = 0.2
    conflict_marker_overlap: float = 0.1
    inversion_harmful_min: float = 3.0
    inversion_harmful_ratio: float = 2.0

    @field_validator("dedup_similarity_threshold", "conflict_overlap", "conflict_marker_overlap")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"similarity thresholds must be 0-1, got {v}")
        return v


class LockConfig(BaseModel):
    """Directory lock retry/staleness settings."""

    retries: int = 20
    retry_delay: float = 0.1
    stale_threshold: float = 30.0

    @model_validator(mode="after")
    def validate_timing(self):
        if self.retries < 1:
            raise ValueError(f"lock retries must be >= 1, got {self.retries}")
        if self.stale_threshold <= 0:
            raise ValueError("lock stale_threshold must be positive")
        return self


class ReflectionConfig(BaseModel):
    """Session reflection settings."""

    lookback_days: int = 7
    max_sessions: int = 5
    max_iterations: int = 3
    min_session_chars: int = 50
    max_session_chars: int = 20000
    validation_enabled: bool = True
    validation_lookback_days: int = 90

    @field_validator("max_iterations")
    @classmethod
    def validate_iterations(cls, v: int) -> int:
        if not 1 <= v <= 10:
            raise ValueError(f"max_iterations must be 1-10, got {v}")
        return v


class LLMConfig(BaseModel):
    """LLM provider configuration."""

    provider: str = "auto"
    model: Optional[str] = None  # None = use provider default
    api_key: Optional[str] = None
    max_tokens: int = 4000

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in VALID_LLM_PROVIDERS:
            raise ValueError(f"Invalid LLM provider: {v}. Must be one of {VALID_LLM_PROVIDERS}")
        return v


VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    to_file: bool = False  # also write JSON lines to paths.log_file

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v_upper = v.upper()
        if v_upper not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {VALID_LOG_LEVELS}")
        return v_upper


class AppConfig(BaseModel):
    """Main configuration model."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    curation: CurationConfig = Field(default_factory=CurationConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    reflection: ReflectionConfig = Field(default_factory=ReflectionConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def expand_env_vars(self):
        """Expand ${VAR} patterns in the API key."""
        key = self.llm.api_key
        if key and key.startswith("${") and key.endswith("}"):
            self.llm.api_key = os.getenv(key[2:-1], "")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        return cls.model_validate(data)

    def to_dict(self) -> dict:
        return self.model_dump(mode="python")
