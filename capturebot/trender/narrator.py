"""LLM narration of trend signals."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from capturebot.core.logging import get_logger
from capturebot.llm.provider import CompletionError, CompletionProvider, parse_json_response
from capturebot.trender.signals import TrendSignal

logger = get_logger(__name__)

DEFAULT_STRENGTH = 0.5

NARRATION_PROMPT = """You are a personal knowledge analyst. Given these detected signals about a user's saving patterns, generate concise, natural-language trend descriptions.

SIGNALS:
{signals}

For each signal, generate:
- trendType: the signal type ("velocity", "emergence", or "convergence")
- title: 3-6 word phrase (e.g., "Deep into agent orchestration")
- description: one conversational sentence addressed to the user with "you" (e.g., "You've saved 5 items about agent orchestration in the last two weeks.")
- strength: 0.0-1.0 based on signal intensity (higher count/more overlap = stronger)

Return ONLY valid JSON, no markdown:
{{"trends": [{{"trendType": "...", "title": "...", "description": "...", "strength": 0.8}}]}}"""


@dataclass
class NarratedTrend:
    """A trend ready to be stored."""
    trend_type: str
    title: str
    description: str
    strength: float
    signals: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class NarrationResult:
    trends: List[NarratedTrend]
    cost: float


def build_narration_prompt(signals: Sequence[TrendSignal]) -> str:
    return NARRATION_PROMPT.format(signals='\n'.join(s.describe() for s in signals))


def _clamp_strength(value: Any) -> float:
    try:
        strength = float(value)
    except (TypeError, ValueError):
        return DEFAULT_STRENGTH
    return min(1.0, max(0.0, strength))


def _parse_trends(payload: Any, signals: Sequence[TrendSignal]) -> List[NarratedTrend]:
    """Turn the completion payload into trends, dropping malformed entries."""
    if not isinstance(payload, dict) or not isinstance(payload.get('trends', []), list):
        raise CompletionError("Narration payload has no trends list")

    by_type: Dict[str, List[Dict[str, Any]]] = {}
    for signal in signals:
        by_type.setdefault(signal.signal_type, []).append(signal.to_dict())
    all_signals = [s.to_dict() for s in signals]

    trends = []
    for entry in payload.get('trends', []):
        if not isinstance(entry, dict):
            continue
        trend_type = str(entry.get('trendType') or '').strip().lower()
        title = str(entry.get('title') or '').strip()
        if not trend_type or not title:
            logger.debug(f"Dropping narrated trend without type or title: {entry}")
            continue

        trends.append(
            NarratedTrend(
                trend_type=trend_type,
                title=title,
                description=str(entry.get('description') or '').strip(),
                strength=_clamp_strength(entry.get('strength', DEFAULT_STRENGTH)),
                signals=by_type.get(trend_type, all_signals),
            )
        )
    return trends


async def narrate_trends(
    signals: Sequence[TrendSignal],
    provider: CompletionProvider
) -> Optional[NarrationResult]:
    """
    Convert detected signals into narrated trends.

    Returns None when the completion provider is disabled, when there are
    no signals, or when the completion fails. Callers treat None as "no
    trends this run".
    """
    if not provider.enabled:
        logger.info("Completion provider disabled, skipping trend narration")
        return None
    if not signals:
        return None

    try:
        completion = await provider.complete(
            build_narration_prompt(signals),
            temperature=0.3,
            max_tokens=500,
        )
        trends = _parse_trends(parse_json_response(completion.text), signals)
    except CompletionError as e:
        logger.error(f"Trend narration error: {e}")
        return None

    return NarrationResult(trends=trends, cost=completion.cost)
