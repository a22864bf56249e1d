"""Periodic container merge run.

Per user: load candidates -> ask for merge advice -> execute the accepted
merges one at a time. Users are independent and run concurrently; one
user's merges never interleave.
"""

import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from capturebot.core.batch import run_bounded
from capturebot.core.db import AsyncSessionLocal
from capturebot.core.logging import get_logger
from capturebot.core.repositories import list_user_ids_with_containers
from capturebot.core.settings import Settings, get_settings
from capturebot.llm.provider import CompletionProvider, get_completion_provider
from capturebot.merger.advisor import load_merge_candidates, suggest_merges
from capturebot.merger.executor import execute_merge

logger = get_logger(__name__)


@dataclass
class UserMergeResult:
    user_id: str
    suggested: int = 0
    executed: int = 0
    failed: int = 0
    items_moved: int = 0
    cost: float = 0.0
    stage: Optional[str] = None
    error: Optional[str] = None


@dataclass
class MergeRunStats:
    """Statistics of one merge run."""
    users_total: int = 0
    users_processed: int = 0
    users_failed: int = 0
    users_abandoned: int = 0
    merges_suggested: int = 0
    merges_executed: int = 0
    merges_failed: int = 0
    items_moved: int = 0
    advice_cost: float = 0.0
    runtime_seconds: float = 0.0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def process_user_merges(
    user_id: str,
    session_factory: async_sessionmaker,
    provider: CompletionProvider
) -> UserMergeResult:
    """Suggest and execute merges for one user, never raising."""
    result = UserMergeResult(user_id=user_id)
    stage = "candidates"

    try:
        async with session_factory() as session:
            candidates = await load_merge_candidates(session, user_id)
        if len(candidates) < 2:
            return result

        stage = "advise"
        advice = await suggest_merges(candidates, provider)
        if not advice:
            return result
        result.cost = advice.cost
        result.suggested = len(advice.merges)

        stage = "execute"
        for merge in advice.merges:
            async with session_factory() as session:
                execution = await execute_merge(session, merge)
            if execution.success:
                result.executed += 1
                result.items_moved += execution.items_moved
            else:
                result.failed += 1

    except Exception as e:
        result.stage = stage
        result.error = str(e)
        logger.error(
            f"Merge pipeline failed for user {user_id} at {stage}: {e}",
            extra={'user_id': user_id, 'stage': stage}
        )

    return result


async def run_container_merges(
    session_factory: async_sessionmaker = AsyncSessionLocal,
    provider: Optional[CompletionProvider] = None,
    user_ids: Optional[List[str]] = None,
    settings: Optional[Settings] = None
) -> MergeRunStats:
    """
    Run merge advice and execution for every user owning containers.

    Returns:
        MergeRunStats for the run
    """
    start_time = time.time()
    settings = settings or get_settings()
    owns_provider = provider is None
    provider = provider or get_completion_provider(settings)
    stats = MergeRunStats()

    try:
        if user_ids is None:
            try:
                async with session_factory() as session:
                    user_ids = await list_user_ids_with_containers(session)
            except Exception as e:
                logger.error(f"Failed to list users for container merges: {e}", extra={'stage': 'list-users'})
                stats.failures.append({'user_id': None, 'stage': 'list-users', 'error': str(e)})
                user_ids = []
        stats.users_total = len(user_ids)

        async def _worker(user_id: str) -> UserMergeResult:
            return await process_user_merges(user_id, session_factory, provider)

        outcome = await run_bounded(
            user_ids,
            _worker,
            max_concurrency=settings.max_concurrent_users,
            item_timeout=settings.user_timeout_seconds,
            batch_timeout=settings.batch_timeout_seconds,
            label="merges",
        )

        for user_id, result in outcome.results.items():
            stats.merges_suggested += result.suggested
            stats.merges_executed += result.executed
            stats.merges_failed += result.failed
            stats.items_moved += result.items_moved
            stats.advice_cost += result.cost
            if result.error:
                stats.users_failed += 1
                stats.failures.append({'user_id': user_id, 'stage': result.stage, 'error': result.error})
            else:
                stats.users_processed += 1
        for user_id, error in outcome.failed.items():
            stats.users_failed += 1
            stats.failures.append({'user_id': user_id, 'stage': 'timeout', 'error': error})
        stats.users_abandoned = len(outcome.abandoned)

    finally:
        if owns_provider:
            await provider.aclose()

    stats.runtime_seconds = time.time() - start_time
    logger.info(
        f"Container merge run completed in {stats.runtime_seconds:.2f}s: "
        f"{stats.merges_executed} merges executed for {stats.users_processed} users"
    )
    return stats
