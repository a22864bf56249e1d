"""LLM-assisted container merge advice.

The completion service proposes which containers overlap; every suggestion
is checked against the candidate ids before it can reach the executor.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from capturebot.core.logging import get_logger
from capturebot.core.repositories import get_containers_with_samples
from capturebot.llm.provider import CompletionError, CompletionProvider, parse_json_response

logger = get_logger(__name__)

SAMPLE_SIZE = 5

MERGE_PROMPT = """You are a personal knowledge librarian. Review these containers and identify any that should be merged because they cover the same or very similar topics.

CONTAINERS:
{containers}

RULES:
1. Merge aggressively: if two containers cover substantially the same topic, merge them.
2. Always merge the SMALLER container (fewer items) into the LARGER one.
3. Only suggest merges where there is clear semantic overlap. "AI Dev Tools" and "AI Tooling" should merge. "AI Dev Tools" and "Game Design" should not.
4. A container can only appear once as a source (it can only be merged into one target).
5. If no merges are needed, return an empty array.

Return ONLY valid JSON, no markdown:
{{"merges": [{{"source": "smaller-container-id", "target": "larger-container-id", "reason": "brief explanation"}}]}}"""


@dataclass
class MergeCandidate:
    """A container offered to the advisor, with sample item titles."""
    id: str
    name: str
    description: Optional[str] = None
    item_count: int = 0
    items: List[str] = field(default_factory=list)

    def describe(self) -> str:
        samples = ', '.join(self.items[:SAMPLE_SIZE]) or 'none'
        return (
            f'- [{self.id}] "{self.name}" ({self.item_count} items): '
            f'{self.description or "No description"}. Sample items: {samples}'
        )


@dataclass(frozen=True)
class MergeSuggestion:
    """Merge ``source`` (deleted) into ``target`` (kept)."""
    source: str
    target: str
    reason: str


@dataclass
class MergeAdvice:
    merges: List[MergeSuggestion]
    cost: float


def build_merge_prompt(candidates: Sequence[MergeCandidate]) -> str:
    return MERGE_PROMPT.format(containers='\n'.join(c.describe() for c in candidates))


def validate_merges(payload: Any, candidates: Sequence[MergeCandidate]) -> List[MergeSuggestion]:
    """
    Keep only suggestions that are safe to execute.

    A suggestion survives when it names a source, target and reason, both
    ids are among the candidates, source and target differ, and the source
    was not already used by an earlier suggestion.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get('merges', []), list):
        raise CompletionError("Merge payload has no merges list")

    valid_ids = {c.id for c in candidates}
    used_sources = set()
    merges = []
    dropped = []

    for entry in payload.get('merges', []):
        if not isinstance(entry, dict):
            dropped.append(entry)
            continue
        source, target, reason = entry.get('source'), entry.get('target'), entry.get('reason')

        if not isinstance(source, str) or not isinstance(target, str) or not source or not target or not reason:
            dropped.append(entry)
            continue
        if source not in valid_ids or target not in valid_ids:
            dropped.append(entry)
            continue
        if source == target or source in used_sources:
            dropped.append(entry)
            continue

        used_sources.add(source)
        merges.append(MergeSuggestion(source=source, target=target, reason=str(reason)))

    if dropped:
        logger.debug(f"Dropped {len(dropped)} invalid merge suggestions: {dropped}")
    return merges


async def suggest_merges(
    candidates: Sequence[MergeCandidate],
    provider: CompletionProvider
) -> Optional[MergeAdvice]:
    """
    Ask the completion service which containers should be merged.

    Returns None with fewer than two candidates, when the provider is
    disabled, or when the completion fails.
    """
    if len(candidates) < 2:
        return None
    if not provider.enabled:
        logger.info("Completion provider disabled, skipping merge suggestions")
        return None

    try:
        completion = await provider.complete(build_merge_prompt(candidates), temperature=0.1)
        merges = validate_merges(parse_json_response(completion.text), candidates)
    except CompletionError as e:
        logger.error(f"Merge suggestion error: {e}")
        return None

    return MergeAdvice(merges=merges, cost=completion.cost)


async def load_merge_candidates(
    session: AsyncSession,
    user_id: str,
    sample_size: int = SAMPLE_SIZE
) -> List[MergeCandidate]:
    """A user's containers, largest first, with sample item titles."""
    rows = await get_containers_with_samples(session, user_id, sample_size=sample_size)
    return [
        MergeCandidate(
            id=row['id'],
            name=row['name'],
            description=row['description'],
            item_count=row['item_count'],
            items=row['items'],
        )
        for row in rows
    ]
