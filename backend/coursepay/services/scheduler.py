"""
APScheduler Configuration for Background Jobs

Runs the stale-payment sweeper on a fixed interval. The job is registered
at every startup, so an in-memory job store is enough.
"""
import logging
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor

logger = logging.getLogger(__name__)


class SweeperScheduler:
    """
    Singleton scheduler for CoursePay background jobs.
    """

    _instance: Optional["SweeperScheduler"] = None
    _scheduler: Optional[AsyncIOScheduler] = None

    def __new__(cls):
        """Singleton pattern to ensure only one scheduler instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        """Initialize scheduler if not already initialized."""
        if self._scheduler is None:
            self._initialize_scheduler()

    def _initialize_scheduler(self):
        """
        Configure APScheduler.

        Configuration:
        - AsyncIOScheduler so jobs run on the application's event loop
        - Coalesce: True (skip missed runs)
        - Max instances: 1 (a sweep never overlaps the previous one)
        """
        job_defaults = {
            'coalesce': True,  # Combine missed runs into one
            'max_instances': 1,
            'misfire_grace_time': 300  # 5 minutes grace period for misfires
        }

        self._scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone='UTC'
        )

        logger.info("APScheduler initialized with in-memory job store")

    @property
    def running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    def start(self):
        """
        Start the scheduler.

        Should be called during FastAPI app startup.
        """
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info(f"Scheduler started. Jobs: {len(self._scheduler.get_jobs())}")
        else:
            logger.warning("Scheduler already running")

    def shutdown(self, wait: bool = True):
        """
        Shutdown the scheduler gracefully.

        Args:
            wait: Wait for running jobs to complete before shutdown
        """
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info(f"Scheduler shutdown (wait={wait})")

    def add_interval_job(self, job_id: str, job_func, interval_minutes: float, **kwargs) -> str:
        """
        Add (or replace) a periodic job.

        Args:
            job_id: Unique job identifier
            job_func: Async function to execute periodically
            interval_minutes: How often to run job
            **kwargs: Additional arguments to pass to job_func

        Returns:
            Job ID
        """
        self._scheduler.add_job(
            job_func,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=job_id,
            name=job_id,
            replace_existing=True,
            kwargs=kwargs
        )
        logger.info(f"Added job: {job_id}, interval={interval_minutes}min")
        return job_id

    def get_job(self, job_id: str):
        return self._scheduler.get_job(job_id)

    def remove_job(self, job_id: str) -> bool:
        """
        Remove a job from the scheduler.

        Returns:
            True if job was found and removed, False otherwise
        """
        if self._scheduler.get_job(job_id) is None:
            return False
        self._scheduler.remove_job(job_id)
        logger.info(f"Removed job: {job_id}")
        return True


# ============================================================================
# Global Scheduler Instance
# ============================================================================

# Singleton instance - import this in other modules
scheduler = SweeperScheduler()
