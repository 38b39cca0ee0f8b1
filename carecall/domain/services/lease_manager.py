"""
Lease Manager
Role leases and row claims for scheduler workers

Only the holder of a role lease runs that role's tick. While held, a
background task heartbeats the lease every ttl/3 seconds; if a heartbeat
is refused the lease is treated as lost and the tick loop will try to
re-acquire on its next pass.
"""
import asyncio
import logging
import os
import socket
import uuid
from typing import Dict, List, Optional

from carecall.domain.interfaces.durable_store import DurableStore
from carecall.domain.interfaces.lease_store import LeaseStore
from carecall.domain.models.lease import LeaseRole
from carecall.domain.models.reminder import Reminder
from carecall.domain.models.schedule import ScheduleRule

logger = logging.getLogger(__name__)


class LeaseManager:
    """
    Acquires, heartbeats and releases role leases for one worker, and
    delegates row claims to the durable store.

    None of the methods block on contention: they return False or an
    empty list and the caller retries on the next tick.
    """

    def __init__(
        self,
        lease_store: LeaseStore,
        durable_store: DurableStore,
        worker_id: str,
        lease_ttl_seconds: int = 60,
        claim_ttl_seconds: int = 120
    ):
        self.lease_store = lease_store
        self.durable_store = durable_store
        self.worker_id = worker_id
        self.lease_ttl_seconds = lease_ttl_seconds
        self.claim_ttl_seconds = claim_ttl_seconds

        self._held: Dict[str, bool] = {}
        self._heartbeat_tasks: Dict[str, asyncio.Task] = {}

    @property
    def heartbeat_interval(self) -> float:
        return max(1.0, self.lease_ttl_seconds / 3)

    def holds(self, role: LeaseRole) -> bool:
        return self._held.get(self._role(role), False)

    # ========== Leases ==========

    async def try_acquire(self, role: LeaseRole) -> bool:
        """Acquire or renew the lease for a role; starts the heartbeat on success."""
        role = self._role(role)
        acquired = await self.lease_store.try_acquire(role, self.worker_id, self.lease_ttl_seconds)

        if not acquired:
            if self._held.get(role):
                logger.warning(
                    f"Lease {role} lost by {self.worker_id}",
                    extra={"role": role, "worker_id": self.worker_id}
                )
            self._held[role] = False
            self._stop_heartbeat(role)
            logger.debug(f"Lease {role} held by another worker")
            return False

        if not self._held.get(role):
            logger.info(
                f"Lease {role} acquired by {self.worker_id}",
                extra={"role": role, "worker_id": self.worker_id}
            )
        self._held[role] = True
        self._start_heartbeat(role)
        return True

    async def heartbeat(self, role: LeaseRole) -> bool:
        role = self._role(role)
        extended = await self.lease_store.heartbeat(role, self.worker_id, self.lease_ttl_seconds)
        if not extended:
            logger.warning(
                f"Heartbeat refused for lease {role}",
                extra={"role": role, "worker_id": self.worker_id}
            )
            self._held[role] = False
        return extended

    async def release(self, role: LeaseRole) -> bool:
        role = self._role(role)
        self._stop_heartbeat(role)
        self._held[role] = False
        released = await self.lease_store.release(role, self.worker_id)
        if released:
            logger.info(f"Lease {role} released by {self.worker_id}")
        return released

    async def release_all(self) -> None:
        for role in list(self._held.keys()):
            if self._held.get(role):
                try:
                    await self.release(role)
                except Exception as e:
                    logger.error(f"Failed to release lease {role}: {e}", exc_info=True)
        for role in list(self._heartbeat_tasks.keys()):
            self._stop_heartbeat(role)

    def _start_heartbeat(self, role: str) -> None:
        task = self._heartbeat_tasks.get(role)
        if task is not None and not task.done():
            return
        self._heartbeat_tasks[role] = asyncio.create_task(self._heartbeat_loop(role))

    def _stop_heartbeat(self, role: str) -> None:
        task = self._heartbeat_tasks.pop(role, None)
        if task is not None and not task.done():
            task.cancel()

    async def _heartbeat_loop(self, role: str) -> None:
        try:
            while self._held.get(role):
                await asyncio.sleep(self.heartbeat_interval)
                if not self._held.get(role):
                    break
                try:
                    if not await self.heartbeat(role):
                        break
                except Exception as e:
                    logger.error(f"Lease heartbeat error for {role}: {e}", exc_info=True)
        except asyncio.CancelledError:
            pass

    # ========== Claims ==========

    async def claim_schedules(self, batch_size: int) -> List[ScheduleRule]:
        return await self.durable_store.claim_due_schedules(
            self.worker_id, batch_size, self.claim_ttl_seconds
        )

    async def claim_reminders(self, batch_size: int) -> List[Reminder]:
        return await self.durable_store.claim_due_reminders(
            self.worker_id, batch_size, self.claim_ttl_seconds
        )

    @staticmethod
    def _role(role) -> str:
        return role.value if isinstance(role, LeaseRole) else str(role)


def build_worker_id(prefix: Optional[str] = None) -> str:
    """Host-and-pid worker identity, unique per process."""
    base = prefix or socket.gethostname()
    return f"{base}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
