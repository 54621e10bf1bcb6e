"""
Redis client holding the leader-election lease.

Only needed when ``leader_election_enabled`` is set; a single-replica
deployment never connects.
"""
import logging
from typing import Optional

import redis.asyncio as redis
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mssql_operator.config.logging import get_logger
from mssql_operator.config.settings import settings

logger = get_logger(__name__)


def _redacted_url(url: str) -> str:
    return url.split("@")[-1]


class RedisConnection:
    """Process-wide Redis client for the leader lease."""

    client: Optional[redis.Redis] = None

    @classmethod
    async def connect(cls, max_attempts: int = 10) -> None:
        """
        Connect and ping, retrying with exponential backoff (2s up to 30s).

        Raises:
            redis.ConnectionError: If Redis is still unreachable after ``max_attempts``
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=2, min=2, max=30),
            retry=retry_if_exception_type((redis.ConnectionError, redis.TimeoutError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                logger.info(
                    "connecting_to_redis",
                    attempt=attempt.retry_state.attempt_number,
                    url=_redacted_url(settings.redis_url),
                )
                client = redis.Redis.from_url(
                    settings.redis_url,
                    max_connections=settings.redis_max_connections,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    health_check_interval=30,
                )
                await client.ping()
                cls.client = client
        logger.info("redis_connected")

    @classmethod
    async def close(cls) -> None:
        if cls.client:
            await cls.client.aclose()
            cls.client = None
            logger.info("redis_connection_closed")

    @classmethod
    async def get_client(cls) -> redis.Redis:
        """
        Raises:
            RuntimeError: If ``connect`` has not succeeded
        """
        if cls.client is None:
            raise RuntimeError("Redis is not connected. Call connect() first.")
        return cls.client

    @classmethod
    async def ping(cls) -> bool:
        """Lease store reachability, for the readiness check."""
        if cls.client is None:
            return False
        try:
            await cls.client.ping()
            return True
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.warning("redis_ping_failed", error=str(e))
            return False
