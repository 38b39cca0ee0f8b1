"""
Scheduler Worker
Background worker that places scheduled check-in calls and reminder calls

Run as separate process:
    python -m carecall.workers.scheduler_worker

Several copies may run at once; only the holder of a role lease works
that role on a given tick, and each due row is claimed before it is
processed.
"""
import asyncio
import logging
import signal
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from carecall.core.config import ConfigManager, get_settings
from carecall.core.container import ServiceContainer, build_container
from carecall.core.exceptions import InvalidRecurrenceError, PlacementError
from carecall.domain.models.call_session import CallReason
from carecall.domain.models.lease import LeaseRole
from carecall.domain.models.line import AccessDenial
from carecall.domain.models.reminder import Reminder, ReminderEventType, ReminderStatus
from carecall.domain.models.schedule import ScheduleResult, ScheduleRule
from carecall.domain.services.lease_manager import LeaseManager, build_worker_id
from carecall.domain.services.recurrence import get_next_occurrence, get_next_reminder_occurrence_after
from carecall.domain.services.reminder_control import next_occurrence_updates
from carecall.utils.clock import utcnow


logger = logging.getLogger(__name__)

# Configure logging for worker
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


# Denials that suppress a scheduled run rather than fail it
SUPPRESSING_REASONS = ("quiet_hours", AccessDenial.DO_NOT_CALL.value)


class SchedulerWorker:
    """
    Background worker for schedules and reminders.

    Responsibilities:
    - Hold the schedules / reminders role leases
    - Claim due rows and place one call per occurrence
    - Record each outcome and move the row to its next occurrence
    - Retry failed placements within the schedule's retry window
    - Retry minute settlement for finished calls and unreported metered usage
    """

    # Worker configuration
    POLL_INTERVAL = 30.0  # Seconds between ticks
    BATCH_SIZE = 10  # Max rows claimed per role per tick
    MAX_CONSECUTIVE_ERRORS = 10
    RETRY_DELAY_MINUTES = 15
    USAGE_REPORT_BATCH_SIZE = 50

    def __init__(
        self,
        container: Optional[ServiceContainer] = None,
        lease_manager: Optional[LeaseManager] = None,
        config: Optional[Dict[str, Any]] = None
    ):
        self.container = container
        self.lease_manager = lease_manager

        config = config or {}
        self.poll_interval = config.get("poll_interval_seconds", self.POLL_INTERVAL)
        self.batch_size = config.get("batch_size", self.BATCH_SIZE)
        self.max_consecutive_errors = config.get("max_consecutive_errors", self.MAX_CONSECUTIVE_ERRORS)
        self.retry_delay_minutes = config.get("retry_delay_minutes", self.RETRY_DELAY_MINUTES)
        self.usage_report_batch_size = config.get("usage_report_batch_size", self.USAGE_REPORT_BATCH_SIZE)
        self._config = config

        self.running = False
        self.is_running = False  # a tick is in progress
        self._lease_store = None

        # Stats
        self._ticks = 0
        self._calls_placed = 0
        self._schedules_processed = 0
        self._reminders_processed = 0
        self._placement_failures = 0
        self._sessions_settled = 0
        self._usage_reported = 0

    async def initialize(self) -> None:
        """Build services and connect the lease store."""
        logger.info("Initializing Scheduler Worker...")
        settings = get_settings()

        if self.container is None:
            config_manager = ConfigManager(env=settings.environment)
            self._apply_config(config_manager.section("scheduler"))
            self.container = await build_container(settings, config_manager)

        if self.container.orchestrator is None:
            raise RuntimeError("Carrier is not configured; TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN must be set")

        if self.lease_manager is None:
            from carecall.infrastructure.storage.redis_lease_store import RedisLeaseStore
            prefix = self.container.config.get("redis.lease_key_prefix", "carecall:lease")
            self._lease_store = await RedisLeaseStore.from_url(settings.redis_url, key_prefix=prefix)
            self.lease_manager = LeaseManager(
                self._lease_store,
                self.container.store,
                worker_id=build_worker_id("scheduler"),
                lease_ttl_seconds=self._config.get("lease_ttl_seconds", 60),
                claim_ttl_seconds=self._config.get("claim_ttl_seconds", 120),
            )

        logger.info(f"Scheduler Worker initialized (worker_id={self.lease_manager.worker_id})")

    def _apply_config(self, config: Dict[str, Any]) -> None:
        self._config = {**config, **self._config}
        self.poll_interval = self._config.get("poll_interval_seconds", self.poll_interval)
        self.batch_size = self._config.get("batch_size", self.batch_size)
        self.max_consecutive_errors = self._config.get("max_consecutive_errors", self.max_consecutive_errors)
        self.retry_delay_minutes = self._config.get("retry_delay_minutes", self.retry_delay_minutes)
        self.usage_report_batch_size = self._config.get("usage_report_batch_size", self.usage_report_batch_size)

    async def run(self) -> None:
        """
        Main worker loop.

        Continuously:
        1. Acquire or renew role leases
        2. Claim and process due schedules and reminders
        3. Retry unsettled calls and unreported usage
        """
        await self.initialize()

        self.running = True
        consecutive_errors = 0

        logger.info("Scheduler Worker started - polling for due schedules and reminders")

        while self.running:
            try:
                await self.tick()
                consecutive_errors = 0
                await asyncio.sleep(self.poll_interval)

            except asyncio.CancelledError:
                logger.info("Worker received cancellation signal")
                break

            except Exception as e:
                consecutive_errors += 1
                logger.error(f"Worker error ({consecutive_errors}): {e}", exc_info=True)

                if consecutive_errors >= self.max_consecutive_errors:
                    logger.critical("Too many consecutive errors, stopping worker")
                    break

                await asyncio.sleep(min(5 * consecutive_errors, 60))

        await self.shutdown()

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        One scheduler pass.

        Returns:
            Counts of schedules, reminders, settled sessions and usage
            entries handled
        """
        result = {"schedules": 0, "reminders": 0, "sessions_settled": 0, "usage_reported": 0}
        if self.is_running:
            logger.debug("Previous tick still running, skipping")
            return result

        self.is_running = True
        self._ticks += 1
        try:
            if await self.lease_manager.try_acquire(LeaseRole.SCHEDULES):
                result["schedules"] = await self.process_schedules(now)

            if await self.lease_manager.try_acquire(LeaseRole.REMINDERS):
                result["reminders"] = await self.process_reminders(now)

            result["sessions_settled"] = await self.container.sessions.settle_pending(
                self.usage_report_batch_size
            )
            self._sessions_settled += result["sessions_settled"]

            result["usage_reported"] = await self.container.ledger.report_pending_usage(
                self.usage_report_batch_size
            )
            self._usage_reported += result["usage_reported"]
        finally:
            self.is_running = False

        return result

    # =========================================================================
    # Schedules
    # =========================================================================

    async def process_schedules(self, now: Optional[datetime] = None) -> int:
        schedules = await self.lease_manager.claim_schedules(self.batch_size)
        if not schedules:
            return 0

        logger.info(f"Claimed {len(schedules)} due schedules")
        for schedule in schedules:
            try:
                await self.process_schedule(schedule, now or utcnow())
            except Exception as e:
                # Claim expires and the row is retried by a later tick
                logger.error(f"Failed to process schedule {schedule.id}: {e}", exc_info=True)
            self._schedules_processed += 1
        return len(schedules)

    async def process_schedule(self, schedule: ScheduleRule, now: datetime) -> ScheduleResult:
        """Place the call for one claimed schedule and record the outcome."""
        store = self.container.store
        worker_id = self.lease_manager.worker_id
        next_run = self._next_schedule_run(schedule, now)

        line = await store.get_line(schedule.line_id)
        if line is None:
            logger.warning(f"Schedule {schedule.id} references missing line {schedule.line_id}")
            await store.complete_schedule_processing(
                schedule.id, worker_id, ScheduleResult.FAILED.value, next_run, reset_retry_count=True, now=now
            )
            return ScheduleResult.FAILED

        allowed, reason = await self.container.line_access.can_place_call(line, now)
        if not allowed:
            result = ScheduleResult.SUPPRESSED_QUIET_HOURS if reason in SUPPRESSING_REASONS else ScheduleResult.FAILED
            logger.info(
                f"Schedule {schedule.id} not placed: {reason}",
                extra={"schedule_id": schedule.id, "line_id": line.id, "reason": reason}
            )
            await store.complete_schedule_processing(
                schedule.id, worker_id, result.value, next_run, reset_retry_count=True, now=now
            )
            return result

        try:
            await self.container.orchestrator.place_outbound_call(
                line, CallReason.SCHEDULED, idempotency_key=schedule.idempotency_key
            )
        except PlacementError as e:
            self._placement_failures += 1
            should_retry, why = schedule.can_retry(self.retry_delay_minutes)
            if should_retry:
                retry_at = now + timedelta(minutes=self.retry_delay_minutes)
                logger.warning(
                    f"Schedule {schedule.id} placement failed, {why} at {retry_at.isoformat()}: {e}",
                    extra={"schedule_id": schedule.id, "line_id": line.id}
                )
                await store.increment_schedule_retry(schedule.id, worker_id, retry_at, now=now)
            else:
                logger.error(
                    f"Schedule {schedule.id} placement failed, no retry ({why}): {e}",
                    extra={"schedule_id": schedule.id, "line_id": line.id}
                )
                await store.complete_schedule_processing(
                    schedule.id, worker_id, ScheduleResult.FAILED.value, next_run, reset_retry_count=True, now=now
                )
            return ScheduleResult.FAILED

        self._calls_placed += 1
        await store.complete_schedule_processing(
            schedule.id, worker_id, ScheduleResult.SUCCESS.value, next_run, reset_retry_count=True, now=now
        )
        return ScheduleResult.SUCCESS

    @staticmethod
    def _next_schedule_run(schedule: ScheduleRule, now: datetime) -> Optional[datetime]:
        if schedule.one_off:
            return None
        try:
            return get_next_occurrence(schedule.days_of_week, schedule.time_of_day, schedule.timezone, now)
        except InvalidRecurrenceError as e:
            logger.error(f"Schedule {schedule.id} has no next run: {e}", extra={"schedule_id": schedule.id})
            return None

    # =========================================================================
    # Reminders
    # =========================================================================

    async def process_reminders(self, now: Optional[datetime] = None) -> int:
        reminders = await self.lease_manager.claim_reminders(self.batch_size)
        if not reminders:
            return 0

        logger.info(f"Claimed {len(reminders)} due reminders")
        for reminder in reminders:
            try:
                await self.process_reminder(reminder, now or utcnow())
            except Exception as e:
                logger.error(f"Failed to process reminder {reminder.id}: {e}", exc_info=True)
            self._reminders_processed += 1
        return len(reminders)

    async def process_reminder(self, reminder: Reminder, now: datetime) -> bool:
        """
        Deliver one claimed reminder occurrence.

        Returns:
            True if the call was placed
        """
        store = self.container.store
        delivered = False
        reason = "ok"

        line = await store.get_line(reminder.line_id)
        if line is None:
            reason = "line_not_found"
        else:
            allowed, reason = await self.container.line_access.can_place_call(line, now)
            if allowed:
                try:
                    await self.container.orchestrator.place_outbound_call(
                        line, CallReason.REMINDER, idempotency_key=reminder.idempotency_key, reminder=reminder
                    )
                    delivered = True
                    self._calls_placed += 1
                except PlacementError as e:
                    self._placement_failures += 1
                    reason = "placement_failed"
                    logger.error(
                        f"Reminder {reminder.id} placement failed: {e}",
                        extra={"reminder_id": reminder.id, "line_id": reminder.line_id}
                    )

        updates = self._reminder_outcome_updates(reminder, delivered, now)
        await store.complete_reminder_processing(reminder.id, self.lease_manager.worker_id, updates)

        event_type = ReminderEventType.DELIVERED if delivered else ReminderEventType.MISSED
        await store.insert_reminder_event({
            "reminder_id": reminder.id,
            "account_id": reminder.account_id,
            "line_id": reminder.line_id,
            "event_type": event_type.value,
            "details": {
                "reason": reason,
                "due_at": reminder.due_at.isoformat(),
                "next_due_at": updates["due_at"].isoformat() if "due_at" in updates else None,
            },
            "created_at": now,
        })

        if not delivered:
            logger.info(
                f"Reminder {reminder.id} missed: {reason}",
                extra={"reminder_id": reminder.id, "reason": reason}
            )
        return delivered

    @staticmethod
    def _reminder_outcome_updates(reminder: Reminder, delivered: bool, now: datetime) -> Dict[str, Any]:
        """
        Occurrence outcome for a reminder row.

        Recurring series move to their next future slot and stay
        scheduled; otherwise the reminder ends as sent or missed.
        """
        updates = next_occurrence_updates(reminder)
        next_due = updates.get("due_at")
        if next_due is not None and next_due <= now:
            # Worker was behind; do not replay occurrences already in the past
            next_due = get_next_reminder_occurrence_after(
                reminder.recurrence, reminder.scheduled_slot, reminder.timezone, now
            )
            if next_due is None:
                updates.pop("due_at")
            else:
                updates["due_at"] = next_due

        delivery_status = "delivered" if delivered else "missed"
        updates["last_delivery_status"] = delivery_status

        if "due_at" in updates:
            updates["occurrence_count"] = reminder.occurrence_count + 1
        else:
            updates["status"] = ReminderStatus.SENT.value if delivered else ReminderStatus.MISSED.value
        return updates

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        logger.info("Shutting down Scheduler Worker...")
        self.running = False

        if self.lease_manager is not None:
            await self.lease_manager.release_all()
        if self._lease_store is not None:
            await self._lease_store.close()
            self._lease_store = None

        logger.info(
            f"Scheduler Worker shutdown complete. "
            f"Calls placed: {self._calls_placed}, Placement failures: {self._placement_failures}"
        )

    def get_stats(self) -> dict:
        """Get worker statistics."""
        return {
            "running": self.running,
            "worker_id": self.lease_manager.worker_id if self.lease_manager else None,
            "ticks": self._ticks,
            "calls_placed": self._calls_placed,
            "schedules_processed": self._schedules_processed,
            "reminders_processed": self._reminders_processed,
            "placement_failures": self._placement_failures,
            "sessions_settled": self._sessions_settled,
            "usage_reported": self._usage_reported,
        }


async def main():
    """Entry point for running scheduler worker as separate process."""
    worker = SchedulerWorker()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        worker.running = False

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    finally:
        await worker.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
