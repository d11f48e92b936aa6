import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import timedelta

from pymongo.errors import DuplicateKeyError

from config.env import SETTLEMENT_LOCK_TTL_SECONDS, SETTLEMENT_LOCK_WAIT_SECONDS
from utils.dates import utcnow
from utils.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

LEASE_RETRY_SECONDS = 0.05


class PartyLocks:
    """
    Serialises money movements per party.

    Inside one process an asyncio.Lock per key queues requests; across API
    workers a lease document in `settlement_locks` (unique `_id`) does the
    same. A lease that outlives its TTL belongs to a crashed worker and is
    taken over.
    """

    def __init__(
        self,
        ttl_seconds: int = SETTLEMENT_LOCK_TTL_SECONDS,
        wait_seconds: float = SETTLEMENT_LOCK_WAIT_SECONDS,
    ):
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._loop = None

    def _local_lock(self, key: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            # asyncio locks are bound to the loop that first waits on them
            self._locks = {}
            self._loop = loop
        return self._locks.setdefault(key, asyncio.Lock())

    @asynccontextmanager
    async def hold(self, db, scope: str, key: str):
        lock_id = f"{scope}:{key}"
        async with self._local_lock(lock_id):
            token = await self._acquire_lease(db, lock_id)
            try:
                yield
            finally:
                await db.settlement_locks.delete_one({"_id": lock_id, "token": token})

    async def _acquire_lease(self, db, lock_id: str) -> str:
        token = secrets.token_hex(8)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds

        while True:
            now = utcnow()
            try:
                await db.settlement_locks.insert_one({
                    "_id": lock_id,
                    "token": token,
                    "acquired_at": now,
                    "expires_at": now + timedelta(seconds=self.ttl_seconds),
                })
                return token
            except DuplicateKeyError:
                stale = await db.settlement_locks.delete_one({"_id": lock_id, "expires_at": {"$lt": now}})
                if stale.deleted_count:
                    logger.warning("SETTLEMENT_LOCK_STALE_TAKEOVER lock=%s", lock_id)
                    continue

            if loop.time() >= deadline:
                logger.warning("SETTLEMENT_LOCK_BUSY lock=%s", lock_id)
                raise ConcurrencyConflict(
                    "Another settlement for this party is in progress, retry shortly",
                    lock=lock_id,
                )
            await asyncio.sleep(LEASE_RETRY_SECONDS)
