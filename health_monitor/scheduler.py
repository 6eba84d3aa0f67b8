"""Job scheduling for monitoring cycles and the daily sweep."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .alerting.messages import load_timezone


logger = structlog.get_logger(__name__)


class JobScheduler:
    """Manages scheduled jobs using APScheduler on the running event loop."""

    def __init__(self, timezone_name: str = "UTC"):
        self.timezone = load_timezone(timezone_name)
        self.scheduler = AsyncIOScheduler(timezone=self.timezone)
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.running = False

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return
        self.scheduler.start()
        self.running = True
        logger.info("Job scheduler started", jobs=len(self.jobs))

    def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Job scheduler stopped")

    def add_interval_job(
        self,
        job_id: str,
        func: Callable,
        seconds: float,
        args: Optional[tuple] = None,
        description: Optional[str] = None,
    ) -> None:
        """Add an interval job. Runs of one job never overlap."""
        if job_id in self.jobs:
            logger.warning("Job already exists, replacing", job_id=job_id)
            self.remove_job(job_id)

        job = self.scheduler.add_job(
            func=func,
            trigger=IntervalTrigger(seconds=float(seconds), timezone=self.timezone),
            id=job_id,
            args=args or (),
            name=description or job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.jobs[job_id] = {
            "job": job,
            "type": "interval",
            "seconds": float(seconds),
            "description": description,
            "added_at": datetime.now(timezone.utc),
        }
        logger.info("Added interval job", job_id=job_id, interval_seconds=seconds)

    def add_daily_job(
        self,
        job_id: str,
        func: Callable,
        *,
        hour: int,
        minute: int = 0,
        args: Optional[tuple] = None,
        description: Optional[str] = None,
    ) -> None:
        if job_id in self.jobs:
            logger.warning("Job already exists, replacing", job_id=job_id)
            self.remove_job(job_id)

        job = self.scheduler.add_job(
            func=func,
            trigger=CronTrigger(hour=int(hour), minute=int(minute), timezone=self.timezone),
            id=job_id,
            args=args or (),
            name=description or job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.jobs[job_id] = {
            "job": job,
            "type": "cron",
            "expression": f"{int(minute)} {int(hour)} * * *",
            "description": description,
            "added_at": datetime.now(timezone.utc),
        }
        logger.info("Added daily job", job_id=job_id, hour=hour, minute=minute)

    def remove_job(self, job_id: str) -> bool:
        if job_id not in self.jobs:
            logger.warning("Job not found", job_id=job_id)
            return False
        self.scheduler.remove_job(job_id)
        del self.jobs[job_id]
        logger.info("Removed job", job_id=job_id)
        return True

    def list_jobs(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for job_id, info in self.jobs.items():
            job = self.scheduler.get_job(job_id)
            next_run = getattr(job, "next_run_time", None) if job is not None else None
            out.append(
                {
                    "job_id": job_id,
                    "type": info["type"],
                    "description": info.get("description"),
                    "next_run": next_run.isoformat() if next_run else None,
                    "added_at": info["added_at"].isoformat(),
                }
            )
        return out
