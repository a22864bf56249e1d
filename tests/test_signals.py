"""Tests for the velocity, emergence and convergence detectors."""

from capturebot.trender.signals import (
    ConvergenceSignal,
    EmergenceSignal,
    VelocitySignal,
    detect_convergence,
    detect_emergence,
    detect_signals,
    detect_velocity,
)

from conftest import days_ago


class TestVelocity:

    async def test_four_recent_items_emit_one_signal(self, session, build, now):
        user = await build.user()
        container = await build.container(user, "AI Dev Tools")
        for day in (0, 1, 2, 3):
            await build.item(user, days_ago(day), containers=[container])

        signals = await detect_velocity(session, user.id, now)

        assert signals == [VelocitySignal(container.id, "AI Dev Tools", 4)]

    async def test_single_item_emits_nothing(self, session, build, now):
        user = await build.user()
        container = await build.container(user, "Quiet")
        await build.item(user, days_ago(1), containers=[container])

        assert await detect_velocity(session, user.id, now) == []

    async def test_items_outside_window_ignored(self, session, build, now):
        user = await build.user()
        container = await build.container(user, "Old")
        for day in (20, 21, 22, 1):
            await build.item(user, days_ago(day), containers=[container])

        assert await detect_velocity(session, user.id, now) == []

    async def test_capture_time_counts_not_filing_time(self, session, build, now):
        user = await build.user()
        recent_capture = await build.container(user, "Filed late")
        old_capture = await build.container(user, "Filed recently")
        for day in (1, 2, 3):
            await build.item(user, days_ago(day), containers=[recent_capture], filed_at=days_ago(40))
        for day in (30, 31, 32):
            await build.item(user, days_ago(day), containers=[old_capture], filed_at=days_ago(1))

        signals = await detect_velocity(session, user.id, now)

        assert [s.container_id for s in signals] == [recent_capture.id]

    async def test_other_users_containers_ignored(self, session, build, now):
        alice = await build.user()
        bob = await build.user()
        container = await build.container(bob, "Bob's")
        for day in (0, 1, 2):
            await build.item(bob, days_ago(day), containers=[container])

        assert await detect_velocity(session, alice.id, now) == []


class TestEmergence:

    async def test_new_reinforced_interest_emitted(self, session, build, now):
        user = await build.user()
        await build.interest(user, "topic", "agents", first_seen=days_ago(5), occurrence_count=3)

        signals = await detect_emergence(session, user.id, now)

        assert len(signals) == 1
        assert signals[0].value == "agents"
        assert signals[0].occurrence_count == 3
        assert signals[0].first_seen == days_ago(5)

    async def test_single_occurrence_not_emitted(self, session, build, now):
        user = await build.user()
        await build.interest(user, "topic", "agents", first_seen=days_ago(5), occurrence_count=1)

        assert await detect_emergence(session, user.id, now) == []

    async def test_old_interest_not_emitted(self, session, build, now):
        user = await build.user()
        await build.interest(user, "topic", "agents", first_seen=days_ago(30),
                             last_seen=days_ago(1), occurrence_count=9)

        assert await detect_emergence(session, user.id, now) == []


class TestConvergence:

    async def test_three_shared_items(self, session, build, now):
        user = await build.user()
        a = await build.container(user, "A")
        b = await build.container(user, "B")
        for day in (1, 2, 3):
            await build.item(user, days_ago(day), containers=[a, b])

        signals = await detect_convergence(session, user.id, now)

        assert len(signals) == 1
        signal = signals[0]
        assert signal.shared_items == 3
        assert signal.container_a.id < signal.container_b.id
        assert {signal.container_a.id, signal.container_b.id} == {a.id, b.id}

    async def test_single_shared_item_not_emitted(self, session, build, now):
        user = await build.user()
        a = await build.container(user, "A")
        b = await build.container(user, "B")
        await build.item(user, days_ago(1), containers=[a, b])
        await build.item(user, days_ago(2), containers=[a])

        assert await detect_convergence(session, user.id, now) == []

    async def test_shared_items_outside_window_ignored(self, session, build, now):
        user = await build.user()
        a = await build.container(user, "A")
        b = await build.container(user, "B")
        for day in (40, 41, 42, 1):
            await build.item(user, days_ago(day), containers=[a, b])

        assert await detect_convergence(session, user.id, now) == []

    async def test_pairs_ordered_and_reported_once(self, session, build, now):
        user = await build.user()
        containers = [await build.container(user, name) for name in ("A", "B", "C")]
        for day in (1, 2):
            await build.item(user, days_ago(day), containers=containers)

        signals = await detect_convergence(session, user.id, now)

        pairs = [(s.container_a.id, s.container_b.id) for s in signals]
        assert len(pairs) == 3
        assert pairs == sorted(pairs)
        assert all(a < b for a, b in pairs)


async def test_detect_signals_concatenates_in_order(session, build, now):
    user = await build.user()
    a = await build.container(user, "A")
    b = await build.container(user, "B")
    for day in (0, 1, 2):
        await build.item(user, days_ago(day), containers=[a, b])
    await build.interest(user, "tool", "cursor", first_seen=days_ago(2), occurrence_count=2)

    signals = await detect_signals(session, user.id, now)

    kinds = [type(s) for s in signals]
    assert kinds == [VelocitySignal, VelocitySignal, EmergenceSignal, ConvergenceSignal]


def test_signal_payloads_use_camel_case(now):
    signal = VelocitySignal("c-1", "AI", 4)
    assert signal.to_dict() == {
        'type': 'velocity', 'containerId': 'c-1', 'containerName': 'AI', 'itemCount14d': 4,
    }
    assert 'gained 4 items' in signal.describe()
