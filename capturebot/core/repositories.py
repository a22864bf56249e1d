"""Repository layer for database operations.

Provides the async read aggregates consumed by the trend detectors, the
upsert/sweep commands for trends, interest graph maintenance and the
membership operations behind container merges.

Functions that are building blocks of a larger transaction (the
``*_container*`` helpers used by merge execution) only flush; the caller
owns commit and rollback. Everything else commits its own work.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Dict, Any, Iterable, Set

from sqlalchemy import select, func, delete, update, union, desc, case, and_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from capturebot.core.models import User, Item, Container, ContainerItem, Interest, Trend
from capturebot.core.logging import get_logger
from capturebot.core.time import normalize_timezone

logger = get_logger(__name__)

WEIGHT_FLOOR = 0.1


def _insert_for(session: AsyncSession, model):
    """Dialect specific INSERT supporting ON CONFLICT clauses."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")


# =============================================================================
# USERS
# =============================================================================

async def list_active_user_ids(session: AsyncSession) -> List[str]:
    """
    Get ids of users that own interests or containers.

    Args:
        session: Database session

    Returns:
        Sorted list of user ids
    """
    stmt = union(
        select(Interest.user_id),
        select(Container.user_id),
    )
    result = await session.execute(stmt)
    user_ids = sorted({row[0] for row in result.fetchall()})

    logger.debug(f"Retrieved {len(user_ids)} users with interests or containers")
    return user_ids


async def list_user_ids_with_containers(session: AsyncSession) -> List[str]:
    """Get ids of users owning at least one container."""
    stmt = select(Container.user_id).distinct().order_by(Container.user_id)
    result = await session.execute(stmt)
    return [row[0] for row in result.fetchall()]


async def list_scheduled_users(session: AsyncSession) -> List[User]:
    """
    Get users whose delivery cadence is enabled.

    Args:
        session: Database session

    Returns:
        List of User rows with a frequency other than none/never
    """
    stmt = (
        select(User)
        .where(User.report_frequency.notin_(("none", "never")))
        .order_by(User.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# =============================================================================
# SIGNAL AGGREGATES
# =============================================================================

async def count_recent_container_items(
    session: AsyncSession,
    user_id: str,
    since: datetime,
    until: datetime,
    min_count: int = 1
) -> List[Dict[str, Any]]:
    """
    Count memberships per container whose item was captured in a window.

    The item's own ``captured_at`` decides whether a membership is recent;
    when the item was filed into the container plays no part.

    Args:
        session: Database session
        user_id: Owner of the containers
        since: Window start (inclusive)
        until: Window end (inclusive)
        min_count: Only return containers with at least this many items

    Returns:
        List of dicts with container_id, container_name and recent_count
    """
    recent_count = func.count(ContainerItem.id).label("recent_count")
    stmt = (
        select(Container.id, Container.name, recent_count)
        .join(ContainerItem, ContainerItem.container_id == Container.id)
        .join(Item, Item.id == ContainerItem.item_id)
        .where(Container.user_id == user_id)
        .where(Item.captured_at >= normalize_timezone(since))
        .where(Item.captured_at <= normalize_timezone(until))
        .group_by(Container.id, Container.name)
        .having(func.count(ContainerItem.id) >= min_count)
        .order_by(desc(recent_count), Container.id)
    )

    result = await session.execute(stmt)
    rows = [
        {'container_id': cid, 'container_name': name, 'recent_count': count}
        for cid, name, count in result.all()
    ]

    logger.debug(f"Found {len(rows)} containers with >= {min_count} recent items for user {user_id}")
    return rows


async def get_emerging_interests(
    session: AsyncSession,
    user_id: str,
    since: datetime,
    until: datetime,
    min_occurrences: int = 2
) -> List[Interest]:
    """
    Get interests first seen inside a window that were already reinforced.

    Args:
        session: Database session
        user_id: User ID
        since: Window start for first_seen (inclusive)
        until: Window end for first_seen (inclusive)
        min_occurrences: Minimum occurrence_count

    Returns:
        List of Interest rows ordered by occurrence_count descending
    """
    stmt = (
        select(Interest)
        .where(Interest.user_id == user_id)
        .where(Interest.first_seen >= normalize_timezone(since))
        .where(Interest.first_seen <= normalize_timezone(until))
        .where(Interest.occurrence_count >= min_occurrences)
        .order_by(desc(Interest.occurrence_count), Interest.interest_type, Interest.value)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_container_convergence(
    session: AsyncSession,
    user_id: str,
    since: datetime,
    until: datetime,
    min_shared: int = 2
) -> List[Dict[str, Any]]:
    """
    Find pairs of a user's containers sharing recently captured items.

    Each unordered pair is reported once with ``container_a < container_b``.

    Args:
        session: Database session
        user_id: User ID
        since: Window start for item captured_at (inclusive)
        until: Window end for item captured_at (inclusive)
        min_shared: Minimum number of shared items

    Returns:
        List of dicts ordered by (container_a, container_b)
    """
    left = aliased(ContainerItem)
    right = aliased(ContainerItem)
    container_a = aliased(Container)
    container_b = aliased(Container)
    shared_count = func.count(left.item_id).label("shared_count")

    stmt = (
        select(
            left.container_id, container_a.name,
            right.container_id, container_b.name,
            shared_count,
        )
        .select_from(left)
        .join(right, and_(left.item_id == right.item_id, left.container_id < right.container_id))
        .join(Item, Item.id == left.item_id)
        .join(container_a, container_a.id == left.container_id)
        .join(container_b, container_b.id == right.container_id)
        .where(container_a.user_id == user_id)
        .where(container_b.user_id == user_id)
        .where(Item.captured_at >= normalize_timezone(since))
        .where(Item.captured_at <= normalize_timezone(until))
        .group_by(left.container_id, container_a.name, right.container_id, container_b.name)
        .having(func.count(left.item_id) >= min_shared)
        .order_by(left.container_id, right.container_id)
    )

    result = await session.execute(stmt)
    return [
        {
            'container_a': a_id,
            'container_a_name': a_name,
            'container_b': b_id,
            'container_b_name': b_name,
            'shared_count': count,
        }
        for a_id, a_name, b_id, b_name, count in result.all()
    ]


# =============================================================================
# INTEREST GRAPH
# =============================================================================

async def get_interest(
    session: AsyncSession,
    user_id: str,
    interest_type: str,
    value: str
) -> Optional[Interest]:
    """Get an interest by its natural key."""
    stmt = select(Interest).where(
        Interest.user_id == user_id,
        Interest.interest_type == interest_type,
        Interest.value == value,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def save_interest_occurrence(
    session: AsyncSession,
    user_id: str,
    interest_type: str,
    value: str,
    seen_at: datetime,
    occurrence_count: int,
    weight: float,
    existing: Optional[Interest] = None
) -> Interest:
    """
    Insert a new interest or refresh an existing one after a repeat sighting.

    Args:
        session: Database session
        user_id: User ID
        interest_type: topic | tool | domain | person | repo
        value: Normalised interest value
        seen_at: Sighting timestamp
        occurrence_count: New occurrence count
        weight: Recomputed weight
        existing: Existing row, if any

    Returns:
        The persisted Interest
    """
    seen_at = normalize_timezone(seen_at)

    if existing is not None:
        existing.occurrence_count = occurrence_count
        existing.last_seen = seen_at
        existing.weight = weight
        await session.commit()
        return existing

    interest = Interest(
        user_id=user_id,
        interest_type=interest_type,
        value=value,
        occurrence_count=occurrence_count,
        first_seen=seen_at,
        last_seen=seen_at,
        weight=weight,
    )
    session.add(interest)
    await session.commit()
    await session.refresh(interest)
    return interest


async def decay_interest_weights(
    session: AsyncSession,
    stale_before: datetime,
    factor: float,
    user_id: Optional[str] = None
) -> int:
    """
    Multiply the weight of stale interests by ``factor`` in one statement.

    Args:
        session: Database session
        stale_before: Interests with last_seen earlier than this are decayed
        factor: Multiplicative decay factor
        user_id: Restrict to a single user when given

    Returns:
        Number of interests updated
    """
    decayed = Interest.weight * factor
    stmt = (
        update(Interest)
        .where(Interest.last_seen < normalize_timezone(stale_before))
        .values(weight=case((decayed < WEIGHT_FLOOR, WEIGHT_FLOOR), else_=decayed))
        .execution_options(synchronize_session=False)
    )
    if user_id is not None:
        stmt = stmt.where(Interest.user_id == user_id)

    result = await session.execute(stmt)
    await session.commit()

    logger.info(
        f"Decayed {result.rowcount} stale interests by {factor}",
        extra={'stale_before': stale_before.isoformat(), 'user_id': user_id}
    )
    return result.rowcount


# =============================================================================
# TRENDS
# =============================================================================

async def upsert_trend(
    session: AsyncSession,
    user_id: str,
    trend_type: str,
    title: str,
    description: Optional[str],
    signals: Any,
    strength: float,
    detected_at: datetime,
    ttl_days: int = 30
) -> None:
    """
    Insert or overwrite a trend keyed by (user_id, trend_type, title).

    An existing trend keeps its id and surfaced flag; its description,
    signals, strength and detection time are replaced and its expiry is
    pushed to ``detected_at + ttl_days``.

    Args:
        session: Database session
        user_id: User ID
        trend_type: velocity | emergence | convergence
        title: Short trend title
        description: One sentence narrative
        signals: JSON payload of the originating signals
        strength: Strength in [0, 1]
        detected_at: Detection timestamp
        ttl_days: Days until the trend expires
    """
    detected_at = normalize_timezone(detected_at)
    expires_at = detected_at + timedelta(days=ttl_days)

    stmt = _insert_for(session, Trend).values(
        user_id=user_id,
        trend_type=trend_type,
        title=title,
        description=description,
        signals=signals,
        strength=strength,
        detected_at=detected_at,
        expires_at=expires_at,
        surfaced=False,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=['user_id', 'trend_type', 'title'],
        set_={
            'description': stmt.excluded.description,
            'signals': stmt.excluded.signals,
            'strength': stmt.excluded.strength,
            'detected_at': stmt.excluded.detected_at,
            'expires_at': stmt.excluded.expires_at,
        }
    )

    try:
        await session.execute(stmt)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.debug(f"Upserted trend '{title}' ({trend_type}) for user {user_id}")


async def delete_expired_trends(session: AsyncSession, now: datetime) -> int:
    """
    Delete every trend whose expiry has passed.

    Args:
        session: Database session
        now: Reference time

    Returns:
        Number of trends deleted
    """
    stmt = delete(Trend).where(Trend.expires_at < normalize_timezone(now))
    result = await session.execute(stmt)
    await session.commit()

    if result.rowcount:
        logger.info(f"Cleaned up {result.rowcount} expired trends")
    return result.rowcount


async def list_active_trends(session: AsyncSession, user_id: str, now: datetime) -> List[Trend]:
    """Get a user's non-expired trends, strongest first."""
    stmt = (
        select(Trend)
        .where(Trend.user_id == user_id)
        .where(Trend.expires_at >= normalize_timezone(now))
        .order_by(desc(Trend.strength), Trend.title)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def mark_trends_surfaced(session: AsyncSession, trend_ids: Iterable[str]) -> int:
    """Flag trends as shown to the user."""
    trend_ids = list(trend_ids)
    if not trend_ids:
        return 0

    stmt = update(Trend).where(Trend.id.in_(trend_ids)).values(surfaced=True)
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount


# =============================================================================
# CONTAINERS AND MERGES
# =============================================================================

async def get_containers_with_samples(
    session: AsyncSession,
    user_id: str,
    sample_size: int = 5
) -> List[Dict[str, Any]]:
    """
    Get a user's containers with a few item titles each for context.

    Args:
        session: Database session
        user_id: User ID
        sample_size: Maximum number of titles per container

    Returns:
        List of container dicts ordered by item_count descending
    """
    stmt = (
        select(Container)
        .where(Container.user_id == user_id)
        .order_by(desc(Container.item_count), Container.id)
    )
    result = await session.execute(stmt)
    containers = result.scalars().all()

    candidates = []
    for container in containers:
        titles_stmt = (
            select(Item.title)
            .join(ContainerItem, ContainerItem.item_id == Item.id)
            .where(ContainerItem.container_id == container.id)
            .where(Item.title.isnot(None))
            .order_by(desc(Item.captured_at))
            .limit(sample_size)
        )
        titles_result = await session.execute(titles_stmt)

        candidates.append({
            'id': container.id,
            'name': container.name,
            'description': container.description,
            'item_count': container.item_count,
            'items': [row[0] for row in titles_result.fetchall()],
        })

    return candidates


async def get_container(
    session: AsyncSession,
    container_id: str,
    for_update: bool = False
) -> Optional[Container]:
    """Get a container by id, optionally locking the row."""
    stmt = select(Container).where(Container.id == container_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_container_item_ids(session: AsyncSession, container_id: str) -> Set[str]:
    """Get ids of every item filed in a container."""
    stmt = select(ContainerItem.item_id).where(ContainerItem.container_id == container_id)
    result = await session.execute(stmt)
    return {row[0] for row in result.fetchall()}


async def add_items_to_container(
    session: AsyncSession,
    container_id: str,
    item_ids: Iterable[str]
) -> int:
    """
    Add membership rows for items (flush only).

    Returns:
        Number of membership rows added
    """
    added = 0
    for item_id in item_ids:
        session.add(ContainerItem(container_id=container_id, item_id=item_id))
        added += 1
    await session.flush()
    return added


async def delete_container_with_items(session: AsyncSession, container_id: str) -> None:
    """Delete a container and its membership rows (flush only)."""
    await session.execute(delete(ContainerItem).where(ContainerItem.container_id == container_id))
    await session.execute(delete(Container).where(Container.id == container_id))
    await session.flush()


async def recount_container_items(session: AsyncSession, container: Container) -> int:
    """Recompute a container's item_count from its membership rows (flush only)."""
    stmt = select(func.count(ContainerItem.id)).where(ContainerItem.container_id == container.id)
    result = await session.execute(stmt)
    container.item_count = result.scalar() or 0
    await session.flush()
    return container.item_count


async def count_user_containers(session: AsyncSession, user_id: str) -> int:
    """Count a user's containers."""
    stmt = select(func.count(Container.id)).where(Container.user_id == user_id)
    result = await session.execute(stmt)
    return result.scalar() or 0
