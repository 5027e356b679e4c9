"""
Background Job Scheduler for Stageflow.

Two interval jobs drive the notification pipeline:
- ``notification_generation``: materialize date-rule notifications for
  every active project type
- ``notification_delivery``: deliver scheduled notifications that are due

Both jobs are safe to overlap with an operator-triggered run: generation
is insert-if-absent and delivery claims each row before sending.

A job failing ``job_failure_alert_threshold`` times within 24h is paused
and ops is alerted by email. Only one process should run the scheduler.
"""
import logging
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, NamedTuple, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from stageflow.core.config import settings
from stageflow.core.database import get_supabase_client
from stageflow.services.notifications import notification_service


logger = logging.getLogger(__name__)


GENERATION_JOB_ID = "notification_generation"
DELIVERY_JOB_ID = "notification_delivery"

FAILURE_WINDOW = timedelta(hours=24)


# ==========================================
# Job Failure Monitor
# ==========================================

class JobFailureMonitor:
    """
    Counts job failures over a rolling window and pauses a job that keeps
    failing, so a broken generation or delivery run does not fail silently.
    """

    def __init__(self, failure_threshold: int = 2, window: timedelta = FAILURE_WINDOW):
        self.failure_threshold = failure_threshold
        self.window = window
        self.failed_jobs: Dict[str, Deque[datetime]] = defaultdict(deque)
        self.paused_jobs: set = set()

    async def record_success(self, job_id: str) -> None:
        self.failed_jobs[job_id].clear()
        self.paused_jobs.discard(job_id)

    async def record_failure(self, job_id: str, error: str) -> bool:
        """
        Record a failed run.

        Returns:
            True when the job reached the threshold and should be paused
        """
        now = datetime.now(timezone.utc)
        failures = self.failed_jobs[job_id]
        failures.append(now)
        while failures and failures[0] <= now - self.window:
            failures.popleft()

        if len(failures) < self.failure_threshold:
            return False

        await self._send_critical_alert(job_id, len(failures), error)
        self.paused_jobs.add(job_id)
        return True

    async def _send_critical_alert(self, job_id: str, failure_count: int, error: str) -> None:
        logger.critical(f"Job {job_id} failed {failure_count} times within {self.window}, pausing it: {error}")

        if not settings.ops_escalation_email:
            return

        affected = "generated" if job_id == GENERATION_JOB_ID else "delivered"
        result = await notification_service.send_ops_alert(
            subject=f"🚨 {settings.app_name}: job '{job_id}' paused after {failure_count} failures",
            body=(
                f"The '{job_id}' job failed {failure_count} times in the last "
                f"{int(self.window.total_seconds() // 3600)} hours and has been paused.\n\n"
                f"Last error: {error}\n\n"
                f"Scheduled notifications are not being {affected} until the job is resumed.\n"
                f"Time: {datetime.now(timezone.utc).isoformat()}\n"
            ),
            to_email=settings.ops_escalation_email,
            to_name=settings.ops_escalation_name
        )
        if not result.success:
            logger.error(f"Failed to send ops alert for job {job_id}: {result.error}")

    def get_status(self) -> Dict[str, Any]:
        return {
            job_id: {
                "failure_count": len(failures),
                "last_failure": failures[-1].isoformat() if failures else None,
                "is_paused": job_id in self.paused_jobs
            }
            for job_id, failures in self.failed_jobs.items()
        }


job_monitor = JobFailureMonitor(failure_threshold=settings.job_failure_alert_threshold)


# ==========================================
# JOB BODIES
# ==========================================

async def _run_monitored(job_id: str, work: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
    """Run a job body and report the outcome to the failure monitor."""
    started = datetime.now(timezone.utc)

    try:
        result = await work()
    except Exception as e:
        logger.error(f"❌ Job {job_id} failed: {e}", exc_info=True)
        if await job_monitor.record_failure(job_id, str(e)):
            get_scheduler().pause(job_id)
        raise

    logger.info(f"Job {job_id} finished in {(datetime.now(timezone.utc) - started).total_seconds():.2f}s")
    await job_monitor.record_success(job_id)
    return result


async def notification_generation_job() -> Dict[str, Any]:
    """Generate date-rule notifications for every active project type."""
    from stageflow.services.notification_scheduler import NotificationScheduler

    async def work() -> Dict[str, Any]:
        db = get_supabase_client()
        notification_scheduler = NotificationScheduler(db=db)
        response = db.client.table("project_types").select("id").eq("is_active", True).execute()

        created = 0
        skipped = 0
        for row in response.data or []:
            result = notification_scheduler.generate(row["id"])
            created += result.created_count
            skipped += result.skipped_count

        if created:
            logger.info(f"🔍 Generation: {created} notification(s) created, {skipped} skipped")
        return {"created": created, "skipped": skipped}

    return await _run_monitored(GENERATION_JOB_ID, work)


async def notification_delivery_job() -> Dict[str, Any]:
    """Deliver scheduled notifications that are due."""
    from stageflow.services.notification_scheduler import NotificationScheduler

    async def work() -> Dict[str, Any]:
        result = await NotificationScheduler().process_due()
        if result.sent_count or result.failed_count:
            logger.info(f"📬 Delivery: {result.sent_count} sent, {result.failed_count} failed")
        return result.model_dump()

    return await _run_monitored(DELIVERY_JOB_ID, work)


class NotificationJob(NamedTuple):
    name: str
    func: Callable[[], Awaitable[Dict[str, Any]]]
    interval_minutes: int


# ==========================================
# SCHEDULER
# ==========================================

class NotificationJobScheduler:
    """Runs the notification jobs on an APScheduler ``AsyncIOScheduler``."""

    def __init__(self, monitor: Optional[JobFailureMonitor] = None):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.is_running = False
        self.job_monitor = monitor or job_monitor
        self.jobs_config: Dict[str, NotificationJob] = {
            GENERATION_JOB_ID: NotificationJob(
                "Notification Generation", notification_generation_job, settings.generation_interval_minutes
            ),
            DELIVERY_JOB_ID: NotificationJob(
                "Notification Delivery", notification_delivery_job, settings.process_due_interval_minutes
            ),
        }

    def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            # One run per job at a time; missed runs collapse into one
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 300},
            timezone=settings.scheduler_timezone
        )
        for job_id, job in self.jobs_config.items():
            self.scheduler.add_job(
                job.func,
                IntervalTrigger(minutes=job.interval_minutes),
                id=job_id,
                name=job.name,
                replace_existing=True
            )

        self.scheduler.start()
        self.is_running = True
        logger.info(
            "🚀 Notification scheduler started: "
            + ", ".join(f"{job_id} every {job.interval_minutes}m" for job_id, job in self.jobs_config.items())
        )

    def stop(self) -> None:
        if self.scheduler and self.is_running:
            self.scheduler.shutdown(wait=True)
            self.is_running = False
            logger.info("🛑 Notification scheduler stopped")

    def run_now(self, job_id: str) -> bool:
        """Bring a job's next run forward to now. False if it is not scheduled."""
        job = self.scheduler.get_job(job_id) if self.scheduler else None
        if job is None:
            logger.error(f"Cannot run job {job_id}: not scheduled")
            return False
        job.modify(next_run_time=datetime.now(timezone.utc))
        logger.info(f"Job {job_id} triggered manually")
        return True

    def pause(self, job_id: str) -> bool:
        if not self.scheduler:
            return False
        self.scheduler.pause_job(job_id)
        logger.warning(f"Paused job {job_id}")
        return True

    def resume(self, job_id: str) -> bool:
        if not self.scheduler:
            return False
        self.scheduler.resume_job(job_id)
        self.job_monitor.paused_jobs.discard(job_id)
        logger.info(f"Resumed job {job_id}")
        return True

    def get_health_status(self) -> Dict[str, Any]:
        """Scheduler state, next runs and failure counts for ``/health``."""
        failures = self.job_monitor.get_status()
        jobs = [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in (self.scheduler.get_jobs() if self.scheduler else [])
        ]

        return {
            "status": "degraded" if any(info["failure_count"] for info in failures.values()) else "healthy",
            "is_running": self.is_running,
            "jobs": jobs,
            "failures": failures,
            "paused_jobs": sorted(self.job_monitor.paused_jobs)
        }


scheduler = NotificationJobScheduler()


def get_scheduler() -> NotificationJobScheduler:
    """Get the global scheduler instance."""
    return scheduler
