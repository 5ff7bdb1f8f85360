"""
Tier Resolver - Maps a game score to the purchase tier it unlocks.

Pure and total over non-negative scores.
"""

from batchsale.models.api import Tier
from batchsale.models.domain import TierResolution

# Highest tier first so the first match wins
_TIERS_BY_THRESHOLD: tuple[Tier, ...] = tuple(
    sorted(Tier, key=lambda t: t.min_score, reverse=True)
)


def resolve(score: int) -> TierResolution:
    """
    Resolve the tier unlocked by a game score.

    Scores below the bronze threshold return an ungated resolution
    (tier None, max_batches 0).

    Raises:
        ValueError: score is negative (caller bug)
    """
    if score < 0:
        raise ValueError(f"Game score cannot be negative: {score}")

    for tier in _TIERS_BY_THRESHOLD:
        if score >= tier.min_score:
            return TierResolution(score=score, tier=tier)

    return TierResolution(score=score, tier=None)


def tier_for_name(name: str) -> Tier:
    """Parse a tier name case-insensitively. Raises ValueError for unknown names."""
    try:
        return Tier(name.strip().lower())
    except ValueError:
        raise ValueError(f"Unknown tier: {name}") from None
