"""
Workers Package
Background workers for scheduled and reminder calls
"""
from carecall.workers.scheduler_worker import SchedulerWorker

__all__ = [
    "SchedulerWorker",
]
