"""Algorithmic trend signal detectors.

Three independent detectors run over stored aggregates for one user:

- Velocity: containers that gained many recently captured items
- Emergence: interests that appeared recently and were already reinforced
- Convergence: container pairs that keep receiving the same items

Signals are computed fresh on every run and never persisted directly; the
narrator turns them into trends.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Union

from sqlalchemy.ext.asyncio import AsyncSession

from capturebot.core.logging import get_logger
from capturebot.core.repositories import (
    count_recent_container_items,
    get_container_convergence,
    get_emerging_interests,
)
from capturebot.core.time import normalize_timezone

logger = get_logger(__name__)

# Detector configuration
VELOCITY_THRESHOLD = 3
VELOCITY_WINDOW_DAYS = 14
EMERGENCE_THRESHOLD = 2
EMERGENCE_WINDOW_DAYS = 14
CONVERGENCE_THRESHOLD = 2
CONVERGENCE_WINDOW_DAYS = 30


@dataclass(frozen=True)
class VelocitySignal:
    """A container that gained several items in the velocity window."""
    container_id: str
    container_name: str
    item_count_14d: int

    signal_type = 'velocity'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.signal_type,
            'containerId': self.container_id,
            'containerName': self.container_name,
            'itemCount14d': self.item_count_14d,
        }

    def describe(self) -> str:
        return (
            f'VELOCITY: Container "{self.container_name}" gained '
            f'{self.item_count_14d} items in the last {VELOCITY_WINDOW_DAYS} days.'
        )


@dataclass(frozen=True)
class EmergenceSignal:
    """A new interest that was already seen more than once."""
    interest_type: str
    value: str
    occurrence_count: int
    first_seen: datetime

    signal_type = 'emergence'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.signal_type,
            'interestType': self.interest_type,
            'value': self.value,
            'occurrenceCount': self.occurrence_count,
            'firstSeen': normalize_timezone(self.first_seen).isoformat(),
        }

    def describe(self) -> str:
        first_seen = normalize_timezone(self.first_seen).date().isoformat()
        return (
            f'EMERGENCE: Interest "{self.value}" ({self.interest_type}) appeared recently '
            f'(first seen: {first_seen}) and already has {self.occurrence_count} occurrences.'
        )


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


@dataclass(frozen=True)
class ConvergenceSignal:
    """Two containers sharing recently captured items."""
    container_a: ContainerRef
    container_b: ContainerRef
    shared_items: int

    signal_type = 'convergence'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.signal_type,
            'containerA': {'id': self.container_a.id, 'name': self.container_a.name},
            'containerB': {'id': self.container_b.id, 'name': self.container_b.name},
            'sharedItems': self.shared_items,
        }

    def describe(self) -> str:
        return (
            f'CONVERGENCE: Containers "{self.container_a.name}" and '
            f'"{self.container_b.name}" share {self.shared_items} recent items.'
        )


TrendSignal = Union[VelocitySignal, EmergenceSignal, ConvergenceSignal]


async def detect_velocity(session: AsyncSession, user_id: str, now: datetime) -> List[VelocitySignal]:
    """Containers with at least VELOCITY_THRESHOLD items captured in the window."""
    rows = await count_recent_container_items(
        session,
        user_id,
        since=now - timedelta(days=VELOCITY_WINDOW_DAYS),
        until=now,
        min_count=VELOCITY_THRESHOLD,
    )
    return [
        VelocitySignal(
            container_id=row['container_id'],
            container_name=row['container_name'],
            item_count_14d=row['recent_count'],
        )
        for row in rows
    ]


async def detect_emergence(session: AsyncSession, user_id: str, now: datetime) -> List[EmergenceSignal]:
    """Interests first seen in the window with at least EMERGENCE_THRESHOLD occurrences."""
    interests = await get_emerging_interests(
        session,
        user_id,
        since=now - timedelta(days=EMERGENCE_WINDOW_DAYS),
        until=now,
        min_occurrences=EMERGENCE_THRESHOLD,
    )
    return [
        EmergenceSignal(
            interest_type=interest.interest_type,
            value=interest.value,
            occurrence_count=interest.occurrence_count,
            first_seen=normalize_timezone(interest.first_seen),
        )
        for interest in interests
    ]


async def detect_convergence(session: AsyncSession, user_id: str, now: datetime) -> List[ConvergenceSignal]:
    """Container pairs sharing at least CONVERGENCE_THRESHOLD recent items."""
    rows = await get_container_convergence(
        session,
        user_id,
        since=now - timedelta(days=CONVERGENCE_WINDOW_DAYS),
        until=now,
        min_shared=CONVERGENCE_THRESHOLD,
    )
    return [
        ConvergenceSignal(
            container_a=ContainerRef(row['container_a'], row['container_a_name']),
            container_b=ContainerRef(row['container_b'], row['container_b_name']),
            shared_items=row['shared_count'],
        )
        for row in rows
    ]


async def detect_signals(session: AsyncSession, user_id: str, now: datetime) -> List[TrendSignal]:
    """
    Run every detector for a user and concatenate the results.

    The detectors share one session, so they run one after another.
    """
    velocity = await detect_velocity(session, user_id, now)
    emergence = await detect_emergence(session, user_id, now)
    convergence = await detect_convergence(session, user_id, now)

    logger.debug(
        f"Detected signals for user {user_id}",
        extra={
            'user_id': user_id,
            'velocity': len(velocity),
            'emergence': len(emergence),
            'convergence': len(convergence),
        }
    )
    return [*velocity, *emergence, *convergence]
