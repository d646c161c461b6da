import asyncio
import re

import pytest

from graphagent.db import Database
from graphagent.delegation_store import DelegationLedger, new_session_id
from graphagent.streaming import AGENT_DELEGATION_CREATED, AGENT_DELEGATION_DELETED, AGENT_DELEGATION_UPDATED, EventBus


def drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


def test_session_id_format():
    assert re.fullmatch(r"delegation_\d{13}_[a-z0-9]{6}", new_session_id())


@pytest.mark.asyncio
async def test_lifecycle_moves_forward_and_notifies(db: Database):
    bus = EventBus()
    queue = await bus.subscribe_global()
    ledger = DelegationLedger(db, bus)

    delegation = await ledger.create("Link nodes", ["context line"], "An edge", agent_type="worker")
    assert delegation.status == "queued"
    assert delegation.context == ["context line"]
    assert delegation.summary is None
    assert await ledger.get(delegation.session_id) == delegation

    started = await ledger.mark_in_progress(delegation.session_id)
    assert started.status == "in_progress"

    done = await ledger.complete(delegation.session_id, "Created edge 1 → 2")
    assert done.status == "completed"
    assert done.summary == "Created edge 1 → 2"

    events = drain(queue)
    assert [e["type"] for e in events] == [
        AGENT_DELEGATION_CREATED,
        AGENT_DELEGATION_UPDATED,
        AGENT_DELEGATION_UPDATED,
    ]
    assert events[-1]["data"]["delegation"]["status"] == "completed"


@pytest.mark.asyncio
async def test_complete_from_queued_passes_through_in_progress(db: Database):
    bus = EventBus()
    queue = await bus.subscribe_global()
    ledger = DelegationLedger(db, bus)
    delegation = await ledger.create("Quick task")
    drain(queue)

    done = await ledger.complete(delegation.session_id, "ok")
    assert done.status == "completed"
    statuses = [e["data"]["delegation"]["status"] for e in drain(queue)]
    assert statuses == ["in_progress", "completed"]


@pytest.mark.asyncio
async def test_terminal_status_is_final(db: Database):
    ledger = DelegationLedger(db)
    delegation = await ledger.create("Task")
    await ledger.complete(delegation.session_id, "Task timed out", "failed")

    again = await ledger.complete(delegation.session_id, "late success", "completed")
    assert again.status == "failed"
    assert again.summary == "Task timed out"
    assert await ledger.mark_in_progress(delegation.session_id) is not None
    assert (await ledger.get(delegation.session_id)).status == "failed"


@pytest.mark.asyncio
async def test_complete_rejects_non_terminal_status(db: Database):
    ledger = DelegationLedger(db)
    delegation = await ledger.create("Task")
    with pytest.raises(ValueError):
        await ledger.complete(delegation.session_id, "x", "queued")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_touch_only_refreshes_live_rows(db: Database):
    ledger = DelegationLedger(db)
    delegation = await ledger.create("Task")
    assert await ledger.touch(delegation.session_id) is False
    await ledger.mark_in_progress(delegation.session_id)
    before = (await ledger.get(delegation.session_id)).updated_at
    await asyncio.sleep(0.002)
    assert await ledger.touch(delegation.session_id) is True
    assert (await ledger.get(delegation.session_id)).updated_at > before


@pytest.mark.asyncio
async def test_cleanup_stale_fails_only_old_in_progress_rows(db: Database):
    ledger = DelegationLedger(db)
    stale = await ledger.create("Stale")
    fresh = await ledger.create("Fresh")
    queued = await ledger.create("Queued")
    await ledger.mark_in_progress(stale.session_id)
    await ledger.mark_in_progress(fresh.session_id)
    await db.execute(
        "UPDATE agent_delegations SET updated_at=? WHERE session_id=?",
        ("2020-01-01T00:00:00.000000Z", stale.session_id),
    )
    await db.execute(
        "UPDATE agent_delegations SET updated_at=? WHERE session_id=?",
        ("2020-01-01T00:00:00.000000Z", queued.session_id),
    )

    reaped = await ledger.cleanup_stale_sessions(15)
    assert reaped == [stale.session_id]
    row = await ledger.get(stale.session_id)
    assert row.status == "failed"
    assert row.summary == "Task timed out (exceeded 15 minutes)"
    assert (await ledger.get(fresh.session_id)).status == "in_progress"
    assert (await ledger.get(queued.session_id)).status == "queued"
    assert await ledger.cleanup_stale(15) == 0


@pytest.mark.asyncio
async def test_list_active_and_recent(db: Database):
    ledger = DelegationLedger(db)
    first = await ledger.create("First")
    second = await ledger.create("Second")
    await ledger.complete(first.session_id, "done")

    recent = await ledger.list_recent(limit=10)
    assert [d.session_id for d in recent] == [second.session_id, first.session_id]

    active = await ledger.list_active(include_completed=False)
    assert [d.session_id for d in active] == [second.session_id]
    assert len(await ledger.list_active(include_completed=True)) == 2


@pytest.mark.asyncio
async def test_delete_emits_event(db: Database):
    bus = EventBus()
    ledger = DelegationLedger(db, bus)
    delegation = await ledger.create("Delete me")
    queue = await bus.subscribe_global()

    assert await ledger.delete(delegation.session_id) is True
    assert await ledger.get(delegation.session_id) is None
    assert await ledger.delete(delegation.session_id) is False
    events = drain(queue)
    assert [e["type"] for e in events] == [AGENT_DELEGATION_DELETED]
