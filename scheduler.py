import logging
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import session_scope
from errors import LedgerError
from models import Account, AccountStatus, AccountType
from services import BillingService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


def billing_owner_ids(session) -> list[int]:
    stmt = (
        select(Account.user_id)
        .where(
            Account.type == AccountType.credit_card,
            Account.status == AccountStatus.active,
        )
        .distinct()
        .order_by(Account.user_id)
    )
    return list(session.scalars(stmt).all())


def run_billing(
    factory: Optional[sessionmaker] = None, today: Optional[date] = None
) -> tuple[int, int]:
    """Generate due bills and flag overdue ones for every card owner.

    Returns ``(bills_created, bills_marked_overdue)``. One owner's failure is
    logged and does not stop the others.
    """
    created = overdue = 0
    with session_scope(factory) as session:
        owner_ids = billing_owner_ids(session)
    for user_id in owner_ids:
        with session_scope(factory) as session:
            service = BillingService(session, user_id)
            try:
                results = service.auto_generate(today)
                overdue += service.mark_overdue(today)
            except LedgerError as exc:
                logger.error(
                    f"scheduler_billing_failed: user_id={user_id}"
                    f" error={exc.code} detail={exc}"
                )
                continue
            created += sum(1 for result in results if result.created)
    return created, overdue


class SchedulerManager:
    """Runs billing in the background; bills are also generated on request."""

    jobs = (
        ("billing_daily", CronTrigger(hour=3, minute=15), 3600),
        ("billing_hourly_safety", IntervalTrigger(hours=1), 300),
    )

    def __init__(self, factory: Optional[sessionmaker] = None) -> None:
        self.factory = factory
        self.scheduler = BackgroundScheduler(timezone=get_settings().timezone)

    def _run_job(self, source: str = "manual") -> None:
        created, overdue = run_billing(self.factory)
        logger.info(
            f"scheduler_run: source={source} bills_created={created}"
            f" bills_overdue={overdue}"
        )

    def start(self) -> None:
        self._run_job("startup")
        for job_id, trigger, grace in self.jobs:
            self.scheduler.add_job(
                self._run_job,
                trigger,
                args=[job_id],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=grace,
            )
        self.scheduler.start()
        logger.info(f"scheduler_started: jobs={','.join(j[0] for j in self.jobs)}")

    def stop(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
