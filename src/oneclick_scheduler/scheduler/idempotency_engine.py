"""
Idempotency Engine

Prevents duplicate schedule creation by tracking Idempotency-Key headers.
Uses Redis for fast lookups with configurable TTL.
"""
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class IdempotencyEngine:
    """
    Maps idempotency keys to the schedule they created.

    A client retrying POST /schedule after a network error gets the schedule
    created by its first request instead of a second provisioning job.
    Redis errors fail open: the request proceeds as if the key were new.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 86400):
        """
        Initialize idempotency engine.

        Args:
            redis_client: Redis async client
            ttl_seconds: Time-to-live for idempotency keys (default: 24 hours)
        """
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = "oneclick:idempotency:"

    async def check(self, idempotency_key: str) -> Optional[str]:
        """
        Look up the schedule id stored for a key.

        Returns:
            Existing schedule id if the key was seen, None otherwise
        """
        if not idempotency_key:
            return None

        try:
            existing = await self.redis.get(f"{self.key_prefix}{idempotency_key}")
        except RedisError as e:
            logger.error(f"Error checking idempotency key {idempotency_key}: {e}")
            return None

        if existing is None:
            return None
        if isinstance(existing, bytes):
            existing = existing.decode("utf-8")
        logger.info(f"Idempotency key found: {idempotency_key} -> {existing}")
        return existing

    async def store(self, idempotency_key: str, job_id: str) -> bool:
        """
        Store an idempotency key -> schedule id mapping.

        Returns:
            True if stored successfully, False otherwise
        """
        if not idempotency_key or not job_id:
            return False

        try:
            await self.redis.setex(f"{self.key_prefix}{idempotency_key}", self.ttl_seconds, job_id)
        except RedisError as e:
            logger.error(f"Error storing idempotency key {idempotency_key}: {e}")
            return False

        logger.debug(f"Stored idempotency key: {idempotency_key} -> {job_id} (TTL: {self.ttl_seconds}s)")
        return True
