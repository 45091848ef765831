from __future__ import annotations

from datetime import timedelta

import pytest

from forwarding_guard.accounts.actions import NotFound
from forwarding_guard.graph.client import GraphAPIError
from forwarding_guard.remediation import lifecycle as lc
from forwarding_guard.remediation.lifecycle import BlockLifecycle
from tests.helpers import T0, FakeActions, FakeClock

USER = "user1@contoso.test"
MIN_ELAPSED = timedelta(minutes=58)


def _blocked(minutes_ago: int) -> tuple[FakeActions, BlockLifecycle]:
    actions = FakeActions([USER])
    actions.enabled[USER] = False
    actions.protocols[USER] = False
    actions.markers[USER] = T0 - timedelta(minutes=minutes_ago)
    return actions, BlockLifecycle(actions, clock=FakeClock(T0))


@pytest.mark.asyncio
async def test_block_disables_sign_in_and_stamps_marker() -> None:
    actions = FakeActions([USER])
    outcome = await BlockLifecycle(actions, clock=FakeClock(T0)).block(USER)

    assert outcome.blocked_at == T0
    assert outcome.previous_marker is None
    assert actions.enabled[USER] is False
    assert actions.protocols[USER] is False
    assert actions.markers[USER] == T0


@pytest.mark.asyncio
async def test_block_can_leave_protocols_alone() -> None:
    actions = FakeActions([USER])
    await BlockLifecycle(actions, clock=FakeClock(T0)).block(USER, disable_protocols=False)
    assert actions.protocols[USER] is True
    assert actions.called("set_protocols") == []


@pytest.mark.asyncio
async def test_reblock_refreshes_marker() -> None:
    actions, lifecycle = _blocked(minutes_ago=30)
    outcome = await lifecycle.block(USER)
    assert outcome.previous_marker == T0 - timedelta(minutes=30)
    assert actions.markers[USER] == T0


@pytest.mark.asyncio
async def test_block_unknown_identity_raises_not_found() -> None:
    with pytest.raises(NotFound):
        await BlockLifecycle(FakeActions(), clock=FakeClock(T0)).block("ghost@contoso.test")


@pytest.mark.asyncio
async def test_unblock_too_soon_changes_nothing() -> None:
    actions, lifecycle = _blocked(minutes_ago=30)
    outcome = await lifecycle.unblock(USER, min_elapsed=MIN_ELAPSED)

    assert outcome.status == lc.TOO_SOON
    assert outcome.remaining == timedelta(minutes=28)
    assert outcome.eligible_at == T0 + timedelta(minutes=28)
    assert "too soon" in outcome.describe()
    assert actions.enabled[USER] is False
    assert USER in actions.markers


@pytest.mark.asyncio
async def test_unblock_after_cooldown_clears_marker() -> None:
    actions, lifecycle = _blocked(minutes_ago=59)
    outcome = await lifecycle.unblock(USER, min_elapsed=MIN_ELAPSED)

    assert outcome.unblocked
    assert outcome.protocols_enabled
    assert actions.enabled[USER] is True
    assert actions.protocols[USER] is True
    assert USER not in actions.markers


@pytest.mark.asyncio
async def test_unblock_exactly_at_cooldown_succeeds() -> None:
    _, lifecycle = _blocked(minutes_ago=58)
    outcome = await lifecycle.unblock(USER, min_elapsed=MIN_ELAPSED)
    assert outcome.unblocked


@pytest.mark.asyncio
async def test_unblock_without_marker_is_refused() -> None:
    actions = FakeActions([USER])
    actions.enabled[USER] = False
    outcome = await BlockLifecycle(actions, clock=FakeClock(T0)).unblock(USER)

    assert outcome.status == lc.NO_DISABLE_MARKER
    assert actions.enabled[USER] is False


@pytest.mark.asyncio
async def test_forced_unblock_skips_cooldown() -> None:
    actions, lifecycle = _blocked(minutes_ago=5)
    outcome = await lifecycle.unblock(USER, force=True)

    assert outcome.unblocked
    assert outcome.forced
    assert USER not in actions.markers


@pytest.mark.asyncio
async def test_forced_unblock_without_marker_warns() -> None:
    actions = FakeActions([USER])
    actions.enabled[USER] = False
    outcome = await BlockLifecycle(actions, clock=FakeClock(T0)).unblock(USER, force=True)

    assert outcome.unblocked
    assert outcome.warnings == ["disable marker already absent"]
    assert actions.called("set_disable_marker") == []


@pytest.mark.asyncio
async def test_unblock_can_keep_protocols_disabled() -> None:
    actions, lifecycle = _blocked(minutes_ago=120)
    outcome = await lifecycle.unblock(USER, enable_protocols=False)
    assert outcome.unblocked
    assert actions.protocols[USER] is False


@pytest.mark.asyncio
async def test_sweep_unblocks_only_eligible_identities() -> None:
    actions = FakeActions(["a@contoso.test", "b@contoso.test", "c@contoso.test"])
    actions.markers = {
        "a@contoso.test": T0 - timedelta(minutes=90),
        "b@contoso.test": T0 - timedelta(minutes=10),
        "c@contoso.test": T0 - timedelta(minutes=60),
    }
    actions.fail = {"c@contoso.test": "unblock_sign_in"}
    outcomes = await BlockLifecycle(actions, clock=FakeClock(T0)).sweep(min_elapsed=MIN_ELAPSED)

    by_identity = {o.identity: o.status for o in outcomes}
    assert by_identity == {
        "a@contoso.test": lc.UNBLOCKED,
        "b@contoso.test": lc.TOO_SOON,
        "c@contoso.test": lc.FAILED,
    }
    assert set(actions.markers) == {"b@contoso.test", "c@contoso.test"}


@pytest.mark.asyncio
async def test_sweep_reports_deleted_identity() -> None:
    actions = FakeActions()
    actions.markers = {"gone@contoso.test": T0 - timedelta(hours=3)}
    outcomes = await BlockLifecycle(actions, clock=FakeClock(T0)).sweep()
    assert [o.status for o in outcomes] == [lc.NOT_FOUND]


@pytest.mark.parametrize("failing", ["revoke_sessions", "set_protocols"])
@pytest.mark.asyncio
async def test_block_failing_after_sign_in_off_still_leaves_marker(failing) -> None:
    actions = FakeActions([USER], fail={USER: failing})
    with pytest.raises(GraphAPIError):
        await BlockLifecycle(actions, clock=FakeClock(T0)).block(USER)

    assert actions.enabled[USER] is False
    assert actions.markers[USER] == T0
    assert await actions.list_marked_identities() == [USER]


@pytest.mark.asyncio
async def test_sweep_recovers_identity_whose_block_failed_midway() -> None:
    actions = FakeActions([USER], fail={USER: "set_protocols"})
    clock = FakeClock(T0)
    lifecycle = BlockLifecycle(actions, clock=clock)
    with pytest.raises(GraphAPIError):
        await lifecycle.block(USER)

    actions.fail = {}
    clock.advance(minutes=90)
    outcomes = await lifecycle.sweep(min_elapsed=MIN_ELAPSED)

    assert [(o.identity, o.status) for o in outcomes] == [(USER, lc.UNBLOCKED)]
    assert actions.enabled[USER] is True
    assert USER not in actions.markers
