"""Trend detection orchestrator.

For every active user: detect signals -> narrate -> upsert trends. Users are
processed concurrently and independently; a failing user yields zero trends
for this run only. After all users, one sweep deletes expired trends.

Re-running a tick on the same data is safe: upserts overwrite trends with the
same identity and the TTL sweep removes whatever is no longer detected.
"""

import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from capturebot.core.batch import run_bounded
from capturebot.core.db import AsyncSessionLocal
from capturebot.core.logging import get_logger
from capturebot.core.repositories import delete_expired_trends, list_active_user_ids, upsert_trend
from capturebot.core.settings import Settings, get_settings
from capturebot.core.time import get_current_utc_time
from capturebot.llm.provider import CompletionProvider, get_completion_provider
from capturebot.trender.narrator import narrate_trends
from capturebot.trender.signals import detect_signals

logger = get_logger(__name__)


@dataclass
class UserTrendResult:
    """What one user's trend run produced."""
    user_id: str
    signals: int = 0
    trends: int = 0
    cost: float = 0.0
    stage: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TrendRunStats:
    """Statistics of one trend detection tick."""
    users_total: int = 0
    users_processed: int = 0
    users_failed: int = 0
    users_abandoned: int = 0
    signals_detected: int = 0
    trends_stored: int = 0
    expired_deleted: int = 0
    narration_cost: float = 0.0
    runtime_seconds: float = 0.0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def process_user_trends(
    user_id: str,
    now: datetime,
    session_factory: async_sessionmaker,
    provider: CompletionProvider,
    ttl_days: int = 30
) -> UserTrendResult:
    """
    Run detection, narration and storage for one user.

    Errors are logged with the failing stage and reported on the result,
    never raised.
    """
    result = UserTrendResult(user_id=user_id)
    stage = "detect"

    try:
        async with session_factory() as session:
            signals = await detect_signals(session, user_id, now)
        result.signals = len(signals)
        if not signals:
            return result

        stage = "narrate"
        narrated = await narrate_trends(signals, provider)
        if not narrated or not narrated.trends:
            return result
        result.cost = narrated.cost

        stage = "store"
        # Last one wins per (trend_type, title), matching the upsert key
        unique = {(trend.trend_type, trend.title): trend for trend in narrated.trends}
        async with session_factory() as session:
            for trend in unique.values():
                await upsert_trend(
                    session,
                    user_id=user_id,
                    trend_type=trend.trend_type,
                    title=trend.title,
                    description=trend.description,
                    signals=trend.signals,
                    strength=trend.strength,
                    detected_at=now,
                    ttl_days=ttl_days,
                )
                result.trends += 1

        logger.info(
            f"Stored {result.trends} trends for user {user_id}, narration cost: ${result.cost:.6f}",
            extra={'user_id': user_id, 'signals': result.signals}
        )

    except Exception as e:
        result.stage = stage
        result.error = str(e)
        logger.error(
            f"Trend pipeline failed for user {user_id} at {stage}: {e}",
            extra={'user_id': user_id, 'stage': stage}
        )

    return result


async def sweep_expired_trends(session_factory: async_sessionmaker, now: datetime) -> int:
    """Delete expired trends; failures are logged and reported as zero."""
    try:
        async with session_factory() as session:
            return await delete_expired_trends(session, now)
    except Exception as e:
        logger.error(f"Failed to clean up expired trends: {e}", extra={'stage': 'sweep'})
        return 0


async def run_trend_detection(
    now: Optional[datetime] = None,
    session_factory: async_sessionmaker = AsyncSessionLocal,
    provider: Optional[CompletionProvider] = None,
    user_ids: Optional[List[str]] = None,
    settings: Optional[Settings] = None
) -> TrendRunStats:
    """
    Main trend detection orchestrator.

    Args:
        now: Reference time for all windows (defaults to current UTC time)
        session_factory: Factory for per-unit database sessions
        provider: Completion provider (built from settings when omitted)
        user_ids: Restrict the run to these users
        settings: Settings override

    Returns:
        TrendRunStats for the tick
    """
    start_time = time.time()
    settings = settings or get_settings()
    now = now or get_current_utc_time()
    owns_provider = provider is None
    provider = provider or get_completion_provider(settings)
    stats = TrendRunStats()

    try:
        if user_ids is None:
            try:
                async with session_factory() as session:
                    user_ids = await list_active_user_ids(session)
            except Exception as e:
                logger.error(f"Failed to list users for trend detection: {e}", extra={'stage': 'list-users'})
                stats.failures.append({'user_id': None, 'stage': 'list-users', 'error': str(e)})
                user_ids = []

        stats.users_total = len(user_ids)
        logger.info(f"Starting trend detection for {len(user_ids)} users")

        async def _worker(user_id: str) -> UserTrendResult:
            return await process_user_trends(
                user_id, now, session_factory, provider, ttl_days=settings.trend_ttl_days
            )

        outcome = await run_bounded(
            user_ids,
            _worker,
            max_concurrency=settings.max_concurrent_users,
            item_timeout=settings.user_timeout_seconds,
            batch_timeout=settings.batch_timeout_seconds,
            label="trends",
        )

        for user_id, result in outcome.results.items():
            stats.signals_detected += result.signals
            stats.trends_stored += result.trends
            stats.narration_cost += result.cost
            if result.error:
                stats.users_failed += 1
                stats.failures.append({'user_id': user_id, 'stage': result.stage, 'error': result.error})
            else:
                stats.users_processed += 1
        for user_id, error in outcome.failed.items():
            stats.users_failed += 1
            stats.failures.append({'user_id': user_id, 'stage': 'timeout', 'error': error})
        stats.users_abandoned = len(outcome.abandoned)

        stats.expired_deleted = await sweep_expired_trends(session_factory, now)

    finally:
        if owns_provider:
            await provider.aclose()

    stats.runtime_seconds = time.time() - start_time
    logger.info(
        f"Trend detection completed in {stats.runtime_seconds:.2f}s: "
        f"{stats.users_processed} users, {stats.trends_stored} trends stored, "
        f"{stats.expired_deleted} expired deleted"
    )
    return stats
