"""
Tests for Redis lease based leader election.
"""
import asyncio
from typing import Dict, List, Optional

import pytest

from mssql_operator.config.redis import RedisConnection
from mssql_operator.workers.leader_election import (
    LEADER_KEY,
    RELEASE_LEASE_SCRIPT,
    RENEW_LEASE_SCRIPT,
    LeaderElection,
)


class FakeRedis:
    """The few Redis commands leader election uses."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.expiries: Dict[str, int] = {}
        self.scripts_run: List[str] = []

    async def set(self, key: str, value: str, nx: bool = False, ex: Optional[int] = None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.expiries[key] = ex
        return True

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def eval(self, script: str, numkeys: int, *keys_and_args):
        key, owner = keys_and_args[0], keys_and_args[1]
        self.scripts_run.append(script)
        if self.data.get(key) != owner:
            return 0
        if script == RENEW_LEASE_SCRIPT:
            self.expiries[key] = int(keys_and_args[2])
            return 1
        if script == RELEASE_LEASE_SCRIPT:
            del self.data[key]
            return 1
        raise AssertionError("unexpected script")


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    client = FakeRedis()
    monkeypatch.setattr(RedisConnection, "client", client)
    return client


@pytest.mark.asyncio
async def test_only_one_instance_leads(fake_redis):
    first = LeaderElection("replica-a", lease_duration=15)
    second = LeaderElection("replica-b", lease_duration=15)

    assert await first.try_acquire()
    assert not await second.try_acquire()
    assert await second.holder() == "replica-a"
    assert fake_redis.data[LEADER_KEY] == "replica-a"
    assert fake_redis.expiries[LEADER_KEY] == 15


@pytest.mark.asyncio
async def test_leader_refreshes_its_lease(fake_redis):
    election = LeaderElection("replica-a", lease_duration=15)
    await election.try_acquire()
    fake_redis.expiries[LEADER_KEY] = 1

    assert await election.try_acquire()
    assert election.is_leader
    assert fake_redis.expiries[LEADER_KEY] == 15


@pytest.mark.asyncio
async def test_lease_taken_over_demotes(fake_redis):
    election = LeaderElection("replica-a", lease_duration=15)
    await election.try_acquire()
    # The lease expired and another replica took it before this renewal
    fake_redis.data[LEADER_KEY] = "replica-b"
    fake_redis.expiries[LEADER_KEY] = 7

    assert not await election.try_acquire()
    assert not election.is_leader
    assert fake_redis.expiries[LEADER_KEY] == 7
    assert fake_redis.scripts_run == [RENEW_LEASE_SCRIPT]


@pytest.mark.asyncio
async def test_release_only_deletes_own_lease(fake_redis):
    election = LeaderElection("replica-a", lease_duration=15)
    await election.try_acquire()
    fake_redis.data[LEADER_KEY] = "replica-b"

    await election.release()

    assert fake_redis.data[LEADER_KEY] == "replica-b"


@pytest.mark.asyncio
async def test_run_starts_and_stops_controller(fake_redis):
    events = []
    elected = asyncio.Event()

    async def on_elected():
        events.append("elected")
        elected.set()

    async def on_demoted():
        events.append("demoted")

    election = LeaderElection("replica-a", lease_duration=15)
    task = asyncio.create_task(election.run(on_elected, on_demoted))
    await asyncio.wait_for(elected.wait(), timeout=1)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert events == ["elected", "demoted"]
    assert LEADER_KEY not in fake_redis.data
