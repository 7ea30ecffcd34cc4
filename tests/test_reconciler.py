"""Tests for status reconciliation."""

from __future__ import annotations

import pytest

from curator_server.schemas.fleet import FailureKind, LifecycleState, StatusSource
from curator_server.services.fleet_store import FleetStore
from curator_server.services.reconciler import Reconciler
from tests.conftest import make_host, make_status


@pytest.fixture()
async def fleet(store: FleetStore) -> FleetStore:
    """Store with h1 and h2 in the fleet."""
    await store.add_host(make_host("h1"))
    await store.add_host(make_host("h2"))
    return store


@pytest.mark.asyncio
async def test_accept_newer_status(fleet: FleetStore, reconciler: Reconciler) -> None:
    """A newer observation replaces the stored one."""
    await reconciler.accept(make_status(seconds=1, cpu=0.1))
    accepted = await reconciler.accept(make_status(seconds=2, cpu=0.2))
    assert accepted is not None
    assert fleet.snapshot().status_of("h1").cpu == 0.2


@pytest.mark.asyncio
async def test_out_of_order_status_is_discarded(
    fleet: FleetStore, reconciler: Reconciler,
) -> None:
    """An older observation arriving late is dropped silently."""
    await reconciler.accept(make_status(seconds=5, cpu=0.5))
    assert await reconciler.accept(make_status(seconds=3, cpu=0.9)) is None
    assert fleet.snapshot().status_of("h1").cpu == 0.5


@pytest.mark.asyncio
async def test_unreachable_after_threshold_keeps_gauges(
    fleet: FleetStore, reconciler: Reconciler,
) -> None:
    """Three consecutive failures mark the host unreachable with gauges intact."""
    await reconciler.accept(make_status(seconds=1, cpu=0.3, memory=0.6))
    before = fleet.snapshot().status_of("h1")

    assert await reconciler.record_failure("h1", FailureKind.TIMEOUT) is None
    assert await reconciler.record_failure("h1", FailureKind.TIMEOUT) is None
    assert fleet.snapshot().status_of("h1").state is LifecycleState.ONLINE

    marked = await reconciler.record_failure("h1", FailureKind.CONNECTION_REFUSED)
    assert marked is not None
    status = fleet.snapshot().status_of("h1")
    assert status.state is LifecycleState.UNREACHABLE
    assert status.cpu == 0.3
    assert status.memory == 0.6
    assert status.observed_at > before.observed_at
    assert reconciler.failure_count("h1") == 3


@pytest.mark.asyncio
async def test_further_failures_do_not_republish(
    fleet: FleetStore, reconciler: Reconciler,
) -> None:
    """Once unreachable, more failures leave the snapshot alone."""
    await reconciler.accept(make_status(seconds=1))
    for _ in range(3):
        await reconciler.record_failure("h1", FailureKind.TIMEOUT)
    version = fleet.snapshot().version
    assert await reconciler.record_failure("h1", FailureKind.TIMEOUT) is None
    assert fleet.snapshot().version == version


@pytest.mark.asyncio
async def test_success_resets_failure_counter(
    fleet: FleetStore, reconciler: Reconciler,
) -> None:
    """Two failures then a success: the next two failures do not trip the threshold."""
    await reconciler.accept(make_status(seconds=1))
    await reconciler.record_failure("h1", FailureKind.TIMEOUT)
    await reconciler.record_failure("h1", FailureKind.TIMEOUT)
    await reconciler.accept(make_status(seconds=2))
    assert reconciler.failure_count("h1") == 0
    await reconciler.record_failure("h1", FailureKind.TIMEOUT)
    await reconciler.record_failure("h1", FailureKind.TIMEOUT)
    assert fleet.snapshot().status_of("h1").state is LifecycleState.ONLINE


@pytest.mark.asyncio
async def test_cold_host_becomes_unreachable_without_gauges(
    fleet: FleetStore, reconciler: Reconciler,
) -> None:
    """A host that never answered is marked unreachable with empty gauges."""
    for _ in range(3):
        await reconciler.record_failure("h2", FailureKind.CONNECTION_REFUSED)
    status = fleet.snapshot().status_of("h2")
    assert status.state is LifecycleState.UNREACHABLE
    assert status.cpu is None


@pytest.mark.asyncio
async def test_failures_are_tracked_per_host(
    fleet: FleetStore, reconciler: Reconciler,
) -> None:
    """One host's failures do not count against another."""
    await reconciler.accept(make_status("h1", seconds=1))
    await reconciler.accept(make_status("h2", seconds=1))
    for _ in range(3):
        await reconciler.record_failure("h1", FailureKind.TIMEOUT)
    assert fleet.snapshot().status_of("h2").state is LifecycleState.ONLINE
    assert reconciler.failure_count("h2") == 0


@pytest.mark.asyncio
async def test_optimistic_then_revert(fleet: FleetStore, reconciler: Reconciler) -> None:
    """Revert restores the last real observation with a fresh timestamp."""
    await reconciler.accept(make_status(seconds=1, cpu=0.4))
    optimistic = await reconciler.apply_optimistic("h1", LifecycleState.MAINTENANCE)
    assert optimistic.source is StatusSource.OPTIMISTIC
    assert reconciler.last_observation("h1").state is LifecycleState.ONLINE

    reverted = await reconciler.revert("h1")
    assert reverted is not None
    assert reverted.state is LifecycleState.ONLINE
    assert reverted.cpu == 0.4
    assert reverted.observed_at > optimistic.observed_at


@pytest.mark.asyncio
async def test_revert_is_noop_after_real_observation(
    fleet: FleetStore, reconciler: Reconciler,
) -> None:
    """If a poll already replaced the optimistic write, revert leaves it."""
    await reconciler.accept(make_status(seconds=1))
    optimistic = await reconciler.apply_optimistic("h1", LifecycleState.MAINTENANCE)
    later = make_status(seconds=0, state=LifecycleState.OFFLINE).model_copy(
        update={"observed_at": optimistic.observed_at.replace(year=optimistic.observed_at.year + 1)},
    )
    await reconciler.accept(later)
    assert await reconciler.revert("h1") is None
    assert fleet.snapshot().status_of("h1").state is LifecycleState.OFFLINE


@pytest.mark.asyncio
async def test_removed_host_is_ignored(fleet: FleetStore, reconciler: Reconciler) -> None:
    """Results for a removed host are dropped without error."""
    await fleet.remove_host("h1")
    reconciler.forget("h1")
    assert await reconciler.accept(make_status("h1", seconds=1)) is None
    assert await reconciler.record_failure("h1", FailureKind.TIMEOUT) is None
    assert reconciler.failure_count("h1") == 0


@pytest.mark.asyncio
async def test_revert_by_other_owner_is_noop(
    fleet: FleetStore, reconciler: Reconciler,
) -> None:
    """Only the request that wrote the optimistic state may revert it."""
    await reconciler.accept(make_status(seconds=1))
    await reconciler.apply_optimistic("h1", LifecycleState.MAINTENANCE, owner="r1")
    await reconciler.apply_optimistic("h1", LifecycleState.OFFLINE, owner="r2")
    assert await reconciler.revert("h1", "r1") is None
    assert fleet.snapshot().status_of("h1").state is LifecycleState.OFFLINE

    reverted = await reconciler.revert("h1", "r2")
    assert reverted is not None
    assert reverted.state is LifecycleState.ONLINE
