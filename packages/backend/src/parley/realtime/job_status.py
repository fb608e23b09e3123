"""Job-status flags — a correlation id marked "booked" takes no more bargaining.

The flag is checked when a negotiation message is submitted. The check and
the later write of the message are separate steps on the event loop, so a
booking that lands in between is not seen by that one message. That window
is accepted; no lock serializes submissions per correlation id.

Two backends:
- InMemoryJobStatusBoard: per process, lost on restart
- RedisJobStatusBoard: shared across processes (key parley:job:{id})
"""

from abc import ABC, abstractmethod
from typing import Optional

import redis.asyncio as aioredis

BOOKED = "booked"


class JobStatusBoard(ABC):
    @abstractmethod
    async def mark_booked(self, correlation_id: str) -> None:
        ...

    @abstractmethod
    async def get_status(self, correlation_id: str) -> Optional[str]:
        ...

    async def is_booked(self, correlation_id: str) -> bool:
        return await self.get_status(correlation_id) == BOOKED


class InMemoryJobStatusBoard(JobStatusBoard):
    def __init__(self):
        self._statuses: dict[str, str] = {}

    async def mark_booked(self, correlation_id):
        self._statuses[correlation_id] = BOOKED

    async def get_status(self, correlation_id):
        return self._statuses.get(correlation_id)


class RedisJobStatusBoard(JobStatusBoard):
    """Job-status flags in Redis so every API process sees the same bookings."""

    def __init__(self, redis: aioredis.Redis, prefix: str = "parley:job:"):
        self.redis = redis
        self.prefix = prefix

    async def mark_booked(self, correlation_id):
        await self.redis.set(f"{self.prefix}{correlation_id}", BOOKED)

    async def get_status(self, correlation_id):
        return await self.redis.get(f"{self.prefix}{correlation_id}")
