"""Interest graph weighting.

An interest's weight combines how recently it was seen with how often:

- recency: exponential decay with a 30 day half-life (1.0 today, 0.5 at
  30 days, 0.25 at 60 days)
- frequency: ``1 + log10(occurrences)`` (1.0 for one sighting, ~2.0 for ten)

``weight = min(1.0, 0.5 * recency * frequency)``, rounded to two decimals and
never below 0.1. Stale interests are additionally decayed in bulk.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from capturebot.core.logging import get_logger
from capturebot.core.models import INTEREST_TYPES, Interest
from capturebot.core.repositories import (
    decay_interest_weights,
    get_interest,
    save_interest_occurrence,
)
from capturebot.core.settings import get_settings
from capturebot.core.time import days_between, get_current_utc_time

logger = get_logger(__name__)

HALF_LIFE_DAYS = 30
BASE_WEIGHT = 0.5
MIN_WEIGHT = 0.1
MAX_WEIGHT = 1.0

# Values of these types are case-insensitive identifiers
_LOWERCASE_TYPES = {'topic', 'tool', 'repo'}


@dataclass(frozen=True)
class ExtractedInterest:
    """An interest reported by the classifier for one item."""
    interest_type: str
    value: str


def compute_weight(occurrence_count: int, last_seen: datetime, now: datetime) -> float:
    """
    Weight of an interest from its occurrence count and last sighting.

    Raises:
        ValueError: if occurrence_count is below 1
    """
    if occurrence_count < 1:
        raise ValueError(f"occurrence_count must be >= 1, got {occurrence_count}")

    days_since = max(0.0, days_between(last_seen, now))
    recency = 0.5 ** (days_since / HALF_LIFE_DAYS)
    frequency = 1 + math.log10(occurrence_count)

    weight = round(min(MAX_WEIGHT, BASE_WEIGHT * recency * frequency), 2)
    return max(MIN_WEIGHT, weight)


def normalize_interest(interest_type: str, value: str) -> ExtractedInterest:
    """
    Validate and normalise an extracted interest.

    Raises:
        ValueError: for unknown types or empty values
    """
    interest_type = (interest_type or '').strip().lower()
    if interest_type not in INTEREST_TYPES:
        raise ValueError(f"Unknown interest type: {interest_type!r}")

    value = (value or '').strip()
    if not value:
        raise ValueError("Interest value is empty")
    if interest_type in _LOWERCASE_TYPES:
        value = value.lower()

    return ExtractedInterest(interest_type, value)


async def record_interests(
    session: AsyncSession,
    user_id: str,
    interests: Iterable[ExtractedInterest],
    now: Optional[datetime] = None
) -> List[Interest]:
    """
    Fold one item's extracted interests into the user's interest graph.

    New interests start with one occurrence; repeats increment the count,
    refresh last_seen and recompute the weight.
    """
    now = now or get_current_utc_time()
    recorded = []

    seen = set()
    for raw in interests:
        interest = normalize_interest(raw.interest_type, raw.value)
        if interest in seen:
            continue
        seen.add(interest)

        existing = await get_interest(session, user_id, interest.interest_type, interest.value)
        count = existing.occurrence_count + 1 if existing else 1
        recorded.append(
            await save_interest_occurrence(
                session,
                user_id=user_id,
                interest_type=interest.interest_type,
                value=interest.value,
                seen_at=now,
                occurrence_count=count,
                weight=compute_weight(count, now, now),
                existing=existing,
            )
        )

    logger.debug(f"Recorded {len(recorded)} interests for user {user_id}")
    return recorded


async def decay_stale_interests(
    session: AsyncSession,
    now: Optional[datetime] = None,
    factor: Optional[float] = None,
    user_id: Optional[str] = None
) -> int:
    """
    Decay the weight of every interest not seen for a week.

    Applying this twice in the same tick decays twice; schedule it once.

    Returns:
        Number of interests decayed
    """
    settings = get_settings()
    now = now or get_current_utc_time()
    factor = settings.interest_decay_factor if factor is None else factor
    stale_before = now - timedelta(days=settings.interest_stale_days)

    return await decay_interest_weights(session, stale_before, factor, user_id=user_id)
