"""Tests for bounded concurrent fan-out."""

import asyncio

from capturebot.core.batch import run_bounded


async def test_results_failures_and_timeouts_are_separated():
    async def worker(key):
        if key == "boom":
            raise ValueError("bad input")
        if key == "slow":
            await asyncio.sleep(5)
        return key.upper()

    outcome = await run_bounded(
        ["a", "boom", "slow", "b"], worker,
        max_concurrency=4, item_timeout=0.05, batch_timeout=2,
    )

    assert outcome.results == {"a": "A", "b": "B"}
    assert outcome.failed["boom"] == "bad input"
    assert "timed out" in outcome.failed["slow"]
    assert outcome.abandoned == []


async def test_concurrency_is_bounded():
    running = 0
    peak = 0

    async def worker(key):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return key

    outcome = await run_bounded(range(10), worker, max_concurrency=3, item_timeout=1, batch_timeout=5)

    assert len(outcome.results) == 10
    assert peak == 3


async def test_batch_budget_abandons_unfinished_units():
    async def worker(key):
        await asyncio.sleep(0 if key == "fast" else 5)
        return key

    outcome = await run_bounded(["fast", "stuck"], worker, max_concurrency=2, item_timeout=10, batch_timeout=0.1)

    assert outcome.results == {"fast": "fast"}
    assert outcome.abandoned == ["stuck"]
    assert outcome.failed == {}


async def test_empty_batch():
    async def worker(key):
        return key

    outcome = await run_bounded([], worker, max_concurrency=1, item_timeout=1, batch_timeout=1)

    assert outcome.results == {}
    assert outcome.abandoned == []
