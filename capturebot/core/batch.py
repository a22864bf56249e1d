"""Bounded concurrent fan-out for per-user batch work."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, Iterable, List, TypeVar

from capturebot.core.logging import get_logger

logger = get_logger(__name__)

K = TypeVar('K', bound=Hashable)
R = TypeVar('R')


@dataclass
class BatchOutcome(Generic[K, R]):
    """Per-key results of a fan-out."""
    results: Dict[K, R] = field(default_factory=dict)
    failed: Dict[K, str] = field(default_factory=dict)
    abandoned: List[K] = field(default_factory=list)


async def run_bounded(
    keys: Iterable[K],
    worker: Callable[[K], Awaitable[R]],
    max_concurrency: int,
    item_timeout: float,
    batch_timeout: float,
    label: str = "batch"
) -> BatchOutcome[K, R]:
    """
    Run ``worker(key)`` for every key with bounded concurrency.

    Each call is limited to ``item_timeout`` seconds. A failure or timeout
    for one key is recorded and never affects the others. When the whole
    batch exceeds ``batch_timeout`` the unfinished keys are cancelled and
    reported as abandoned; they are picked up again on the next run.
    """
    outcome: BatchOutcome[K, R] = BatchOutcome()
    semaphore = asyncio.Semaphore(max_concurrency)

    async def _run_one(key: K) -> Any:
        async with semaphore:
            return await asyncio.wait_for(worker(key), timeout=item_timeout)

    tasks = {asyncio.create_task(_run_one(key)): key for key in keys}
    if not tasks:
        return outcome

    done, pending = await asyncio.wait(tasks.keys(), timeout=batch_timeout)

    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
        outcome.abandoned = [tasks[task] for task in pending]
        logger.warning(
            f"{label}: batch budget of {batch_timeout}s exhausted, "
            f"abandoned {len(pending)} of {len(tasks)} units"
        )

    for task in done:
        key = tasks[task]
        error = task.exception()
        if error is None:
            outcome.results[key] = task.result()
        elif isinstance(error, asyncio.TimeoutError):
            outcome.failed[key] = f"timed out after {item_timeout}s"
            logger.error(f"{label}: {key} timed out after {item_timeout}s", extra={'key': str(key)})
        else:
            outcome.failed[key] = str(error)
            logger.error(f"{label}: {key} failed: {error}", extra={'key': str(key)})

    return outcome
