"""Transactional container merge execution."""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from capturebot.core.logging import get_logger
from capturebot.core.repositories import (
    add_items_to_container,
    delete_container_with_items,
    get_container,
    get_container_item_ids,
    recount_container_items,
)
from capturebot.merger.advisor import MergeSuggestion

logger = get_logger(__name__)


class MergeConflictError(Exception):
    """The containers named by a merge cannot be merged."""


@dataclass
class MergeExecution:
    success: bool
    items_moved: int = 0
    error: Optional[str] = None


async def execute_merge(session: AsyncSession, merge: MergeSuggestion) -> MergeExecution:
    """
    Move every item of ``merge.source`` into ``merge.target`` and delete the source.

    Runs as one transaction. Both container rows are locked in id order
    before any membership is read. Items the target already holds are
    skipped, the source and its memberships are removed, and the target's
    item_count is recomputed from its memberships. Any failure rolls the
    whole merge back and is reported on the result.

    ``items_moved`` counts memberships newly created in the target.
    """
    try:
        if merge.source == merge.target:
            raise MergeConflictError("Cannot merge a container into itself")

        locked = {}
        for container_id in sorted((merge.source, merge.target)):
            locked[container_id] = await get_container(session, container_id, for_update=True)
        source, target = locked[merge.source], locked[merge.target]
        if target is None or source is None:
            missing = merge.target if target is None else merge.source
            raise MergeConflictError(f"Container {missing} not found")
        if source.user_id != target.user_id:
            raise MergeConflictError("Containers belong to different users")

        source_items = await get_container_item_ids(session, source.id)
        target_items = await get_container_item_ids(session, target.id)
        to_move = sorted(source_items - target_items)

        moved = await add_items_to_container(session, target.id, to_move)
        await delete_container_with_items(session, source.id)
        item_count = await recount_container_items(session, target)

        await session.commit()

    except Exception as e:
        await session.rollback()
        logger.error(
            f"Merge of {merge.source} into {merge.target} failed: {e}",
            extra={'source': merge.source, 'target': merge.target}
        )
        return MergeExecution(success=False, items_moved=0, error=str(e))

    logger.info(
        f"Merged container {merge.source} into {merge.target}: {moved} items moved. Reason: {merge.reason}",
        extra={'source': merge.source, 'target': merge.target, 'item_count': item_count}
    )
    return MergeExecution(success=True, items_moved=moved)
