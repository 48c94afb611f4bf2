"""Unit tests for load plans and the pattern engine."""

from __future__ import annotations

import asyncio

import pytest

from volley.exceptions import VolleyPatternError
from volley.execution import TestExecution
from volley.models import LoadConfig, LoadPattern, LoadStep, VirtualUserStatus
from volley.patterns import LoadPatternEngine, build_plan, expected_active_users

from conftest import FakeExecutor, make_scenario


def test_constant_plan() -> None:
    """Constant load holds N users for the whole duration and 0 after it."""
    plan = build_plan(LoadConfig(LoadPattern.CONSTANT, 7, 60))
    assert plan.points == ((0.0, 7),)
    assert plan.target_at(0) == 7
    assert plan.target_at(59.9) == 7
    assert plan.target_at(60) == 0


def test_ramp_up_plan_reaches_target_at_ramp_end() -> None:
    plan = build_plan(LoadConfig(LoadPattern.RAMP_UP, 10, 60, ramp_up_seconds=20))
    assert len(plan.points) == 10
    assert plan.target_at(0) == 1
    assert plan.target_at(10) == 6
    assert plan.target_at(19.99) == 10
    assert plan.target_at(40) == 10
    assert plan.peak == 10


def test_ramp_up_default_is_half_duration() -> None:
    plan = build_plan(LoadConfig(LoadPattern.RAMP_UP, 10, 60))
    assert plan.points[-1][0] == pytest.approx(27.0)


def test_ramp_up_targets_never_exceed_users() -> None:
    plan = build_plan(LoadConfig(LoadPattern.RAMP_UP, 7, 10))
    assert all(users <= 7 for _, users in plan.points)
    assert plan.points[-1][1] == 7


def test_ramp_down_plan() -> None:
    """Ramp-down reaches N in the first half, then only decreases."""
    plan = build_plan(LoadConfig(LoadPattern.RAMP_DOWN, 10, 100))
    assert plan.target_at(30) == 10
    assert plan.target_at(50) == 9
    assert plan.target_at(99) == 0
    users = [u for off, u in plan.points if off >= 50]
    assert users == sorted(users, reverse=True)


def test_step_plan() -> None:
    plan = build_plan(LoadConfig(LoadPattern.STEP, 10, 50))
    assert [u for _, u in plan.points] == [2, 4, 6, 8, 10]
    assert plan.target_at(25) == 6


def test_spike_plan() -> None:
    plan = build_plan(LoadConfig(LoadPattern.SPIKE, 20, 60))
    assert plan.target_at(0) == 2
    assert plan.target_at(30) == 20
    assert plan.target_at(59) == 2
    assert plan.peak == 20


def test_spike_window_capped_at_30_seconds() -> None:
    """The burst lasts 30% of the duration but never more than 30 seconds."""
    plan = build_plan(LoadConfig(LoadPattern.SPIKE, 20, 600))
    (_, _), (spike_start, _), (spike_end, _) = plan.points
    assert spike_end - spike_start == 30


def test_custom_plan_truncated_by_duration() -> None:
    """Steps running past the duration are cut off at the deadline."""
    steps = (LoadStep(2, 10), LoadStep(5, 10), LoadStep(1, 10))
    plan = build_plan(LoadConfig(LoadPattern.CUSTOM, 5, 15, custom_steps=steps))
    assert plan.end_seconds == 15
    assert plan.target_at(12) == 5
    assert plan.target_at(16) == 0


def test_custom_without_steps_raises() -> None:
    with pytest.raises(VolleyPatternError):
        build_plan(LoadConfig(LoadPattern.CUSTOM, 5, 10))


def test_custom_step_above_users_raises() -> None:
    with pytest.raises(VolleyPatternError):
        build_plan(LoadConfig(LoadPattern.CUSTOM, 5, 10, custom_steps=(LoadStep(6, 5),)))


def test_custom_negative_step_raises() -> None:
    with pytest.raises(VolleyPatternError):
        build_plan(LoadConfig(LoadPattern.CUSTOM, 5, 10, custom_steps=(LoadStep(2, -1),)))


@pytest.mark.parametrize("users,duration", [(0, 10), (5, 0)])
def test_invalid_load_raises(users: int, duration: float) -> None:
    with pytest.raises(VolleyPatternError):
        build_plan(LoadConfig(LoadPattern.CONSTANT, users, duration))


def test_expected_active_users_invalid_is_zero() -> None:
    assert expected_active_users(LoadConfig(LoadPattern.CUSTOM, 5, 10), 1) == 0


def _engine(**kwargs) -> tuple[TestExecution, LoadPatternEngine]:
    execution = TestExecution("t1", make_scenario(**kwargs))
    execution.mark_running()
    return execution, LoadPatternEngine(execution, FakeExecutor())


def test_engine_constant_spawns_and_completes() -> None:
    execution, engine = _engine(users=4, duration=0.3)

    async def scenario() -> None:
        await engine.run()
        engine.request_stop()
        assert await engine.join(1)

    asyncio.run(scenario())
    assert len(execution.virtual_users) == 4
    assert engine.peak_active == 4
    assert [u.id for u in execution.virtual_users] == [f"t1_vu_{i}" for i in range(1, 5)]
    assert all(u.status is VirtualUserStatus.COMPLETED for u in execution.virtual_users)


def test_engine_shrink_stops_oldest_first() -> None:
    """Shrinking flips the oldest active users to stopping first."""
    execution, engine = _engine(users=5, duration=5)

    async def scenario() -> None:
        engine.spawn(5)
        assert engine.shrink(2) == 2
        assert len(engine.active_users()) == 3
        stopping = [u.id for u in execution.virtual_users if u.status is not VirtualUserStatus.ACTIVE]
        assert stopping == ["t1_vu_1", "t1_vu_2"]
        engine.request_stop()
        await engine.join(1)

    asyncio.run(scenario())


def test_engine_exits_early_when_iterations_done() -> None:
    """The hold ends early once every user reached its iteration cap."""
    execution, engine = _engine(users=3, duration=10, iterations=2)

    async def scenario() -> None:
        await asyncio.wait_for(engine.run(), timeout=2)
        await engine.join(1)

    asyncio.run(scenario())
    assert sum(u.request_count for u in execution.virtual_users) == 6


def test_engine_request_stop_wakes_run() -> None:
    execution, engine = _engine(users=2, duration=30)

    async def scenario() -> None:
        task = asyncio.create_task(engine.run())
        await asyncio.sleep(0.05)
        assert engine.request_stop() == 2
        await asyncio.wait_for(task, timeout=1)
        assert await engine.join(1)

    asyncio.run(scenario())
    assert execution.all_users_terminal()


def test_engine_join_cancels_stragglers() -> None:
    """Users still busy after the join timeout are cancelled."""
    execution = TestExecution("t1", make_scenario(users=1, duration=10))
    execution.mark_running()
    engine = LoadPatternEngine(execution, FakeExecutor(sleep_seconds=5))

    async def scenario() -> bool:
        engine.spawn(1)
        await asyncio.sleep(0.01)
        engine.request_stop()
        return await engine.join(0.05)

    assert asyncio.run(scenario()) is False
    assert execution.virtual_users[0].is_terminal


def test_engine_custom_step_replaces_users_that_ended_early() -> None:
    """Each step diffs against users still active, so a failed user is replaced when the target rises."""
    steps = (LoadStep(3, 0.3), LoadStep(2, 0.3), LoadStep(3, 0.3))
    execution, engine = _engine(pattern=LoadPattern.CUSTOM, users=3, duration=0.9, custom_steps=steps)
    observed: list[int] = []

    async def scenario() -> None:
        task = asyncio.create_task(engine.run())
        await asyncio.sleep(0.15)
        execution.virtual_users[0].fail()
        await asyncio.sleep(0.3)
        observed.append(len(engine.active_users()))
        await asyncio.sleep(0.3)
        observed.append(len(engine.active_users()))
        engine.request_stop()
        await asyncio.wait_for(task, timeout=1)
        await engine.join(1)

    asyncio.run(scenario())
    assert observed == [2, 3]
    assert len(execution.virtual_users) == 4


def test_engine_scale_to_is_capped_at_virtual_users() -> None:
    execution, engine = _engine(users=2, duration=5)

    async def scenario() -> None:
        engine.scale_to(5)
        assert len(engine.active_users()) == 2
        engine.request_stop()
        await engine.join(1)

    asyncio.run(scenario())
