"""
Leader election for the database controller.

Replicas compete for one Redis key holding the leader's instance id with a
TTL. The holder refreshes the TTL every third of the lease; a replica that
cannot prove it still holds the key stops its controller before the key can
expire and another replica take over.
"""
import asyncio
from typing import Awaitable, Callable, Optional

from mssql_operator.config.logging import get_logger
from mssql_operator.config.redis import RedisConnection
from mssql_operator.config.settings import settings

logger = get_logger(__name__)

LEADER_KEY = "mssql-operator:leader:controller"

# Compare-and-act on the lease, atomic on the Redis server
RENEW_LEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("EXPIRE", KEYS[1], ARGV[2])
end
return 0
"""

RELEASE_LEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class LeaderElection:
    """Redis lease (SET NX EX) deciding which replica reconciles."""

    def __init__(self, instance_id: str, lease_duration: Optional[int] = None, key: str = LEADER_KEY):
        self.instance_id = instance_id
        self.lease_duration = lease_duration or settings.leader_lease_seconds
        self.key = key
        self.is_leader = False

    async def holder(self) -> Optional[str]:
        """Instance id currently holding the lease, if any."""
        client = await RedisConnection.get_client()
        return await client.get(self.key)

    async def try_acquire(self) -> bool:
        """
        Take the lease if it is free, or refresh it if this instance holds it.

        Returns:
            Whether this instance leads after the call
        """
        client = await RedisConnection.get_client()
        if await client.set(self.key, self.instance_id, nx=True, ex=self.lease_duration):
            self._set_leader(True, holder=self.instance_id)
            return True

        if await client.eval(RENEW_LEASE_SCRIPT, 1, self.key, self.instance_id, self.lease_duration):
            self._set_leader(True, holder=self.instance_id)
            return True

        self._set_leader(False, holder=await client.get(self.key))
        return False

    async def release(self) -> None:
        """Give the lease up on shutdown; a lease held by another replica is left alone."""
        if not self.is_leader:
            return
        client = await RedisConnection.get_client()
        if await client.eval(RELEASE_LEASE_SCRIPT, 1, self.key, self.instance_id):
            logger.info("leadership_released", instance_id=self.instance_id)
        self.is_leader = False

    def _set_leader(self, leading: bool, holder: Optional[str]) -> None:
        if leading and not self.is_leader:
            logger.info("leadership_acquired", instance_id=self.instance_id)
        elif not leading and self.is_leader:
            logger.info("leadership_lost", instance_id=self.instance_id, leader=holder)
        self.is_leader = leading

    async def run(
        self,
        on_elected: Callable[[], Awaitable[None]],
        on_demoted: Callable[[], Awaitable[None]],
    ) -> None:
        """
        Campaign until cancelled, calling ``on_elected`` when the lease is won
        and ``on_demoted`` when it is lost or on shutdown.
        """
        renew_interval = max(1, self.lease_duration // 3)
        leading = False
        while True:
            try:
                still_leader = await self.try_acquire()

                if still_leader and not leading:
                    logger.info("became_leader_starting_controller", instance_id=self.instance_id)
                    await on_elected()
                    leading = True
                elif not still_leader and leading:
                    logger.info("lost_leadership_stopping_controller", instance_id=self.instance_id)
                    await on_demoted()
                    leading = False

                await asyncio.sleep(renew_interval if leading else renew_interval * 2)
            except asyncio.CancelledError:
                if leading:
                    await on_demoted()
                await self.release()
                raise
            except Exception as e:
                logger.error("leader_election_error", error=str(e))
                if leading:
                    # Cannot prove the lease is still held
                    await on_demoted()
                    leading = False
                    self.is_leader = False
                await asyncio.sleep(renew_interval)
