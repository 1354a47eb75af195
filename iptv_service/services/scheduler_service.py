import logging
from collections.abc import Callable
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from iptv_service.config import settings
from iptv_service.errors import IptvError
from iptv_service.services.iptv_repository import IptvRepository


logger = logging.getLogger(__name__)

JOB_ID = "guide_refresh"


class GuideRefreshScheduler:
    """Scheduler for background guide refreshes"""

    def __init__(
        self,
        repository_provider: Callable[[], IptvRepository],
        cron: str | None = None,
        misfire_grace_sec: int | None = None,
    ):
        self.scheduler: AsyncIOScheduler | None = None
        self._repository_provider = repository_provider
        self._cron = cron or settings.guide_refresh_cron
        self._misfire_grace = (
            settings.guide_refresh_misfire_grace_sec if misfire_grace_sec is None else misfire_grace_sec
        )

    async def _refresh_job(self) -> None:
        """Refresh the guide when the cached one is older than the refresh threshold"""
        repository = self._repository_provider()
        if not repository.is_guide_stale_for_background_refresh():
            logger.debug("Cached guide is recent, skipping scheduled refresh")
            return

        logger.info("Scheduled guide refresh triggered")
        try:
            snapshot = await repository.refresh_guide_only()
        except IptvError as e:
            logger.error(f"Scheduled guide refresh failed: {e}")
            return
        except Exception as e:
            logger.error(f"Exception in scheduled guide refresh: {e}", exc_info=True)
            return

        if snapshot is None:
            logger.info("Scheduled guide refresh skipped or produced no data")
        else:
            logger.info(f"Scheduled guide refresh done: {len(snapshot.guide)} channels with guide")

    def start(self) -> None:
        """Start the scheduler with the guide refresh job"""
        if self.scheduler and self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        try:
            trigger = CronTrigger.from_crontab(self._cron)
        except (ValueError, KeyError) as exc:
            logger.error("Invalid cron expression '%s': %s", self._cron, exc)
            raise

        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.scheduler.add_job(
            self._refresh_job,
            trigger=trigger,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self._misfire_grace,
        )

        self.scheduler.start()
        next_time = self.get_next_run_time()
        logger.info(
            "Scheduler started. Next guide refresh: %s",
            next_time.isoformat() if next_time else "unknown",
        )

    def shutdown(self) -> None:
        """Shutdown the scheduler"""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler stopped")
            self.scheduler = None

    @property
    def running(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    def get_next_run_time(self) -> datetime | None:
        """Get next scheduled refresh time"""
        if not self.scheduler:
            return None
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None
