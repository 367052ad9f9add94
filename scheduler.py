import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import SessionLocal, session_scope
from services import AuditReport, LedgerAuditService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.audit_interval_minutes = settings.audit_interval_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_audit(self, source: str = "manual") -> AuditReport:
        logger.info(f"ledger_audit_run: source={source}")
        with session_scope(self.session_factory) as session:
            report = LedgerAuditService(session).check()
        logger.info(
            f"ledger_audit_run: source={source} drifts={len(report.drifts)} "
            f"broken_transfers={len(report.broken_transfers)}"
        )
        return report

    def start(self) -> None:
        self._run_audit("startup")

        trigger = IntervalTrigger(minutes=self.audit_interval_minutes)
        self.scheduler.add_job(
            self._run_audit,
            trigger,
            args=["interval"],
            id="ledger_audit",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with ledger audit every {self.audit_interval_minutes} min"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
