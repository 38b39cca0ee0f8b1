"""
Lease Store Interface
Abstract base class for scheduler lease backends (Redis, Postgres, memory)
"""
from abc import ABC, abstractmethod
from typing import Optional

from carecall.domain.models.lease import SchedulerLease


class LeaseStore(ABC):
    """
    Time-bounded mutex per scheduler role.

    Each method is one atomic conditional write; none of them block.
    """

    @abstractmethod
    async def try_acquire(self, role: str, worker_id: str, ttl_seconds: int) -> bool:
        """
        Acquire or renew the lease.

        Succeeds when no holder exists, the lease expired, or `worker_id`
        already holds it.
        """
        pass

    @abstractmethod
    async def heartbeat(self, role: str, worker_id: str, ttl_seconds: int) -> bool:
        """Extend the lease; only the current holder succeeds."""
        pass

    @abstractmethod
    async def release(self, role: str, worker_id: str) -> bool:
        """Give up the lease; only the current holder succeeds."""
        pass

    @abstractmethod
    async def get(self, role: str) -> Optional[SchedulerLease]:
        """Read the current lease row (None if never acquired)."""
        pass
