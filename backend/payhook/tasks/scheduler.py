"""Periodic jobs: pending-event sweep, reconciliation, housekeeping

Each job has its own loop, so a failing job never stops the others. Database
work runs in a worker thread on a fresh session.
"""
import asyncio
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from payhook.core.config import settings
from payhook.core.logging import scheduler_logger
from payhook.core.metrics import scheduler_runs_counter
from payhook.db.session import SessionLocal
from payhook.services import audit_service
from payhook.services.event_processor import process_pending_events
from payhook.services.reconciliation_service import find_discrepancies
from payhook.tasks.housekeeping import run_housekeeping

logger = scheduler_logger

Job = Callable[[Session], Any]


def sweep_job(db: Session) -> Dict:
    return process_pending_events(db, limit=settings.SWEEP_BATCH_SIZE)


def reconciliation_job(db: Session) -> Dict:
    report = find_discrepancies(db, settings.RECONCILIATION_WINDOW_DAYS, actor="job:reconciliation")
    return {
        "window_days": report["window_days"],
        "total": report["total"],
        "paymentsWithoutEvent": len(report["paymentsWithoutEvent"]),
        "eventsWithoutPayment": len(report["eventsWithoutPayment"]),
        "statusMismatch": len(report["statusMismatch"]),
        "unidentifiedEvents": len(report["unidentifiedEvents"]),
    }


def default_jobs() -> Dict[str, Tuple[float, Job]]:
    return {
        "sweep": (settings.SWEEP_INTERVAL_SECONDS, sweep_job),
        "reconciliation": (settings.RECONCILIATION_INTERVAL_SECONDS, reconciliation_job),
        "housekeeping": (settings.HOUSEKEEPING_INTERVAL_SECONDS, run_housekeeping),
    }


class Scheduler:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        jobs: Optional[Dict[str, Tuple[float, Job]]] = None
    ):
        self._session_factory = session_factory or SessionLocal
        self._jobs = jobs if jobs is not None else default_jobs()
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def tasks(self) -> Dict[str, asyncio.Task]:
        return dict(self._tasks)

    def start(self):
        if self._tasks:
            return
        for name, (interval, job) in self._jobs.items():
            self._tasks[name] = asyncio.create_task(self._loop(name, interval, job), name=f"scheduler-{name}")
        logger.info(f"Scheduler started: {', '.join(self._tasks)}")

    async def stop(self):
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks = {}
        logger.info("Scheduler stopped")

    async def _loop(self, name: str, interval: float, job: Job):
        while True:
            try:
                await asyncio.sleep(interval)
                await self.run_job(name, job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in {name} loop: {e}", exc_info=True)

    async def run_job(self, name: str, job: Optional[Job] = None) -> bool:
        """Run one job now. Returns whether it succeeded; never raises."""
        job = job or self._jobs[name][1]
        try:
            result = await asyncio.to_thread(self._run_sync, name, job)
        except Exception as e:
            logger.error(f"Job {name} failed: {e}", exc_info=True)
            scheduler_runs_counter.labels(job=name, status="failure").inc()
            await asyncio.to_thread(self._record, audit_service.JOB_FAILED, name, {"error": str(e)})
            return False
        scheduler_runs_counter.labels(job=name, status="success").inc()
        logger.info(f"Job {name} completed: {result}")
        return True

    def _run_sync(self, name: str, job: Job) -> Any:
        db = self._session_factory()
        try:
            result = job(db)
            audit_service.log_action(
                db, audit_service.JOB_EXECUTED, "job", name,
                actor=f"job:{name}", metadata=result if isinstance(result, dict) else {"result": result},
                commit=True
            )
            return result
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _record(self, action: str, name: str, metadata: dict):
        db = self._session_factory()
        try:
            audit_service.log_action(db, action, "job", name, actor=f"job:{name}", metadata=metadata, commit=True)
        finally:
            db.close()
