import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from core.date_helper import as_utc, today_in_billing_tz, utc_now
from core.get_db import AsyncSessionLocal
from core.locks import agreement_locks
from core.settings import settings
from models.enums import AgreementEventType, AgreementStatus
from repos.agreement_event_repo import AgreementEventRepo
from repos.agreement_repo import AgreementRepo
from schemas.schema import SweepFailure, SweepResult

from .notification_service import NotificationSender, PendingNotification
from .record_generator import RecordGeneratorService
from .reminder_service import ReminderService

logger = logging.getLogger("billing.sweep")


@dataclass
class AgreementSweepOutcome:
    agreement_id: UUID
    skipped: bool = False
    generated: int = 0
    overdue_transitioned: int = 0
    reminders_sent: int = 0
    notification_failures: int = 0
    completed: bool = False
    error: Optional[str] = None
    pending: List[PendingNotification] = field(default_factory=list)


class DailySweepService:
    """Generation, overdue marking, reminders and completion for every active agreement.

    Each agreement runs in its own session and transaction, concurrently up to
    ``SWEEP_CONCURRENCY``. A failure on one agreement is rolled back, logged
    and reported in ``SweepResult.failures``; the rest of the sweep carries on.
    """

    def __init__(
        self,
        session_factory=AsyncSessionLocal,
        notifier: NotificationSender | None = None,
        concurrency: int | None = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier or NotificationSender()
        self.concurrency = concurrency or settings.SWEEP_CONCURRENCY

    async def run(
        self, as_of: Optional[date] = None, now: Optional[datetime] = None
    ) -> SweepResult:
        now = as_utc(now) if now is not None else utc_now()
        today = as_of or today_in_billing_tz(now)

        async with self.session_factory() as db:
            agreement_ids = await AgreementRepo(db).list_ids_by_status(
                [AgreementStatus.ACTIVE]
            )

        logger.info(f"Daily sweep for {today} over {len(agreement_ids)} agreement(s)")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(agreement_id):
            async with semaphore:
                return await self._isolated(agreement_id, today, now)

        outcomes = await asyncio.gather(*(guarded(i) for i in agreement_ids))

        result = SweepResult(as_of=today)
        for outcome in outcomes:
            if outcome.error is not None:
                result.failures.append(
                    SweepFailure(agreement_id=outcome.agreement_id, error=outcome.error)
                )
                continue
            if outcome.skipped:
                result.skipped += 1
                continue
            result.processed += 1
            result.generated += outcome.generated
            result.overdue_transitioned += outcome.overdue_transitioned
            result.reminders_sent += outcome.reminders_sent
            result.notification_failures += outcome.notification_failures
            result.completed += int(outcome.completed)

        logger.info(
            f"Daily sweep for {today} done: processed={result.processed} "
            f"generated={result.generated} overdue={result.overdue_transitioned} "
            f"reminders={result.reminders_sent} "
            f"notification_failures={result.notification_failures} "
            f"completed={result.completed} failures={len(result.failures)}"
        )
        return result

    async def _isolated(self, agreement_id: UUID, today: date, now: datetime):
        try:
            return await self.process_agreement(agreement_id, today, now)
        except Exception as e:
            logger.exception(f"Sweep failed for agreement {agreement_id}")
            return AgreementSweepOutcome(agreement_id=agreement_id, error=str(e) or repr(e))

    async def process_agreement(
        self, agreement_id: UUID, today: date, now: datetime
    ) -> AgreementSweepOutcome:
        outcome = AgreementSweepOutcome(agreement_id=agreement_id)

        async with self.session_factory() as db:
            repo = AgreementRepo(db)
            async with agreement_locks.hold(agreement_id):
                try:
                    agreement = await repo.get_for_update(agreement_id)
                    # status may have changed since the id list was read
                    if agreement is None or agreement.status != AgreementStatus.ACTIVE:
                        await repo.db_rollback()
                        outcome.skipped = True
                        return outcome

                    inserted = RecordGeneratorService(db).generate_locked(agreement, today)
                    reminders = ReminderService(db, self.notifier).evaluate_locked(
                        agreement, today, now
                    )
                    outcome.generated = len(inserted)
                    outcome.overdue_transitioned = len(reminders.transitioned)
                    outcome.pending = reminders.pending

                    ledger = repo.to_ledger(agreement)
                    if (
                        agreement.end_date is not None
                        and agreement.end_date < today
                        and not ledger.outstanding_records()
                    ):
                        agreement.status = AgreementStatus.COMPLETED
                        AgreementEventRepo(db).add(
                            agreement.id,
                            AgreementEventType.STATUS_CHANGED,
                            old_value={"status": AgreementStatus.ACTIVE.value},
                            new_value={
                                "status": AgreementStatus.COMPLETED.value,
                                "reason": "end_date passed and ledger settled",
                            },
                        )
                        outcome.completed = True
                        logger.info(f"Agreement {agreement.reference} completed")

                    await repo.db_commit()
                except Exception:
                    await repo.db_rollback()
                    raise

        if outcome.pending:
            sent, failed = await self.notifier.dispatch(outcome.pending)
            outcome.reminders_sent = sent
            outcome.notification_failures = failed
        return outcome
