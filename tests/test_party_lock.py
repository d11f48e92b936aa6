import asyncio
from datetime import timedelta

import pytest

from utils.dates import utcnow
from utils.errors import ConcurrencyConflict
from utils.party_lock import PartyLocks


@pytest.mark.asyncio
async def test_lease_released_after_use(db):
    locks = PartyLocks(ttl_seconds=60, wait_seconds=1)

    async with locks.hold(db, "cod", "d1"):
        assert await db.settlement_locks.find_one({"_id": "cod:d1"})

    assert await db.settlement_locks.find_one({"_id": "cod:d1"}) is None


@pytest.mark.asyncio
async def test_stale_lease_is_taken_over(db):
    past = utcnow() - timedelta(minutes=5)
    await db.settlement_locks.insert_one({
        "_id": "cod:d1",
        "token": "crashed-worker",
        "acquired_at": past,
        "expires_at": past + timedelta(seconds=60),
    })
    locks = PartyLocks(ttl_seconds=60, wait_seconds=1)

    async with locks.hold(db, "cod", "d1"):
        lease = await db.settlement_locks.find_one({"_id": "cod:d1"})
        assert lease["token"] != "crashed-worker"


@pytest.mark.asyncio
async def test_live_lease_held_elsewhere_times_out(db):
    now = utcnow()
    await db.settlement_locks.insert_one({
        "_id": "cod:d1",
        "token": "other-worker",
        "acquired_at": now,
        "expires_at": now + timedelta(seconds=60),
    })
    locks = PartyLocks(ttl_seconds=60, wait_seconds=0.2)

    with pytest.raises(ConcurrencyConflict):
        async with locks.hold(db, "cod", "d1"):
            pass


@pytest.mark.asyncio
async def test_same_key_runs_one_at_a_time(db):
    locks = PartyLocks(ttl_seconds=60, wait_seconds=2)
    active = []
    overlap = []

    async def critical():
        async with locks.hold(db, "payout", "vendor:v1"):
            if active:
                overlap.append(True)
            active.append(1)
            await asyncio.sleep(0.01)
            active.pop()

    await asyncio.gather(critical(), critical(), critical())
    assert not overlap
