"""Confidence decay, effective score and the maturity state machine.

Every feedback event loses half its weight each half-life:

    value = weight * 0.5 ** (age_days / half_life_days)

Harmful feedback counts ``harmful_multiplier`` times as much as helpful
feedback, and the result is scaled by maturity so that a candidate with the
same raw feedback ranks below an established or proven bullet.
"""

from datetime import datetime
from typing import Literal

from cli.config_models import AppConfig

from .models import Bullet, BulletMaturity, BulletState, FeedbackEvent, FeedbackType, utcnow

AUTO_DEPRECATE = "auto-deprecate"

_SECONDS_PER_DAY = 86400.0

MATURITY_MULTIPLIER = {
    BulletMaturity.CANDIDATE: 0.5,
    BulletMaturity.ESTABLISHED: 1.0,
    BulletMaturity.PROVEN: 1.5,
    BulletMaturity.DEPRECATED: 0.0,
}

STATE_MULTIPLIER = {
    BulletState.DRAFT: 0.8,
    BulletState.ACTIVE: 1.0,
    BulletState.RETIRED: 0.1,
}


def calculate_decayed_value(
    event: FeedbackEvent, now: datetime | None = None, half_life_days: float = 90.0
) -> float:
    now = now or utcnow()
    age_days = (now - event.timestamp).total_seconds() / _SECONDS_PER_DAY
    # Future-dated events count at full weight, never more
    return event.decayed_value * 0.5 ** (max(0.0, age_days) / half_life_days)


def half_life_for(bullet: Bullet, config: AppConfig) -> float:
    return bullet.confidence_decay_half_life_days or config.scoring.decay_half_life_days


def get_decayed_counts(
    bullet: Bullet, config: AppConfig, now: datetime | None = None
) -> tuple[float, float]:
    """Return (decayed_helpful, decayed_harmful)."""
    now = now or utcnow()
    half_life = half_life_for(bullet, config)
    helpful = 0.0
    harmful = 0.0
    for event in bullet.feedback_events:
        value = calculate_decayed_value(event, now, half_life)
        if event.type == FeedbackType.HELPFUL:
            helpful += value
        else:
            harmful += value
    return helpful, harmful


def get_effective_score(bullet: Bullet, config: AppConfig, now: datetime | None = None) -> float:
    helpful, harmful = get_decayed_counts(bullet, config, now)
    raw = helpful - config.scoring.harmful_multiplier * harmful
    return (
        raw
        * MATURITY_MULTIPLIER.get(bullet.maturity, 1.0)
        * STATE_MULTIPLIER.get(bullet.state, 1.0)
    )


def calculate_maturity_state(
    bullet: Bullet, config: AppConfig, now: datetime | None = None
) -> BulletMaturity:
    if bullet.deprecated or bullet.maturity == BulletMaturity.DEPRECATED:
        return BulletMaturity.DEPRECATED

    scoring = config.scoring
    helpful, harmful = get_decayed_counts(bullet, config, now)
    total = helpful + harmful
    harmful_ratio = harmful / total if total > 0 else 0.0

    if harmful_ratio > 0.3 and total > 2:
        return BulletMaturity.DEPRECATED
    if total < scoring.min_feedback_for_active:
        return BulletMaturity.CANDIDATE
    if helpful >= scoring.min_helpful_for_proven and harmful_ratio < scoring.max_harmful_ratio_for_proven:
        return BulletMaturity.PROVEN
    return BulletMaturity.ESTABLISHED


def check_for_promotion(
    bullet: Bullet, config: AppConfig, now: datetime | None = None
) -> BulletMaturity:
    """Next maturity if the evidence supports moving up, else the current one."""
    current = bullet.maturity
    if current in (BulletMaturity.PROVEN, BulletMaturity.DEPRECATED):
        return current

    new_state = calculate_maturity_state(bullet, config, now)
    is_promotion = (
        current == BulletMaturity.CANDIDATE
        and new_state in (BulletMaturity.ESTABLISHED, BulletMaturity.PROVEN)
    ) or (current == BulletMaturity.ESTABLISHED and new_state == BulletMaturity.PROVEN)
    return new_state if is_promotion else current


def check_for_demotion(
    bullet: Bullet, config: AppConfig, now: datetime | None = None
) -> BulletMaturity | Literal["auto-deprecate"]:
    """Demotion signal. Pinned bullets are never demoted."""
    if bullet.pinned:
        return bullet.maturity

    score = get_effective_score(bullet, config, now)
    if score < -config.scoring.prune_harmful_threshold:
        return AUTO_DEPRECATE

    if score < 0:
        if bullet.maturity == BulletMaturity.PROVEN:
            return BulletMaturity.ESTABLISHED
        if bullet.maturity == BulletMaturity.ESTABLISHED:
            return BulletMaturity.CANDIDATE
    return bullet.maturity


def is_stale(bullet: Bullet, stale_days: int = 90, now: datetime | None = None) -> bool:
    now = now or utcnow()
    if bullet.feedback_events:
        last = max(e.timestamp for e in bullet.feedback_events)
    else:
        last = bullet.created_at
    return (now - last).total_seconds() > stale_days * _SECONDS_PER_DAY
