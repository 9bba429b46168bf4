import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple
from uuid import UUID

from core.date_helper import as_utc, days_between, today_in_billing_tz, utc_now
from core.errors import AgreementNotFound, NoOutstandingBalance, TooSoon, not_active
from core.locks import agreement_locks
from core.settings import settings
from models.enums import AgreementStatus, NotificationKind
from models.ledger import LedgerState, PaymentRecordState, mark_overdue_if_past_due
from models.models import Agreement
from repos.agreement_repo import AgreementRepo
from schemas.schema import ReminderAck

from .notification_service import NotificationSender, PendingNotification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReminderDecision:
    period_key: str
    kind: NotificationKind
    days: int


@dataclass
class ReminderOutcome:
    transitioned: Tuple[str, ...] = ()
    pending: List[PendingNotification] = field(default_factory=list)
    skipped_cooldown: bool = False


def reminder_for(record: PaymentRecordState, today: date) -> Optional[ReminderDecision]:
    """Which reminder, if any, a single record earns today.

    Partially paid records follow the same day offsets as unpaid ones; only
    the amount quoted differs.
    """
    if not record.is_outstanding:
        return None

    days_until_due = days_between(today, record.due_date)
    if days_until_due > 0:
        if days_until_due in settings.UPCOMING_REMINDER_DAYS:
            return ReminderDecision(record.period_key, NotificationKind.UPCOMING_DUE, days_until_due)
        return None
    if days_until_due == 0:
        return ReminderDecision(record.period_key, NotificationKind.DUE_TODAY, 0)

    days_overdue = -days_until_due
    if (
        days_overdue <= settings.OVERDUE_DAILY_DAYS
        or days_overdue % settings.OVERDUE_WEEKLY_INTERVAL == 0
    ):
        return ReminderDecision(record.period_key, NotificationKind.OVERDUE, days_overdue)
    return None


def plan_reminders(ledger: LedgerState, today: date) -> List[ReminderDecision]:
    decisions = []
    for record in ledger.records:
        decision = reminder_for(record, today)
        if decision is not None:
            decisions.append(decision)
    return decisions


def reminded_today(agreement: Agreement, today: date) -> bool:
    """Whether a sweep already queued reminders for this billing day or a later one.

    Manual reminders keep their own cool-down on ``last_reminder_sent_at``
    and do not count here.
    """
    last_day = agreement.last_sweep_reminded_on
    return last_day is not None and last_day >= today


class ReminderService:
    def __init__(self, db, notifier: NotificationSender | None = None):
        self.db = db
        self.agreement_repo = AgreementRepo(db)
        self.notifier = notifier or NotificationSender()

    def evaluate_locked(
        self, agreement: Agreement, today: date, now: datetime
    ) -> ReminderOutcome:
        """Flip past-due records to Overdue and queue today's reminders.

        Runs on an agreement already loaded under its lock. Reminders are
        queued, not sent; the caller dispatches them after commit.
        """
        ledger = self.agreement_repo.to_ledger(agreement)
        overdue = mark_overdue_if_past_due(ledger, today)
        if overdue.transitioned:
            self.agreement_repo.save_ledger(agreement, overdue.ledger)
            logger.info(
                f"Marked {len(overdue.transitioned)} record(s) overdue on {agreement.reference}"
            )

        outcome = ReminderOutcome(transitioned=overdue.transitioned)
        if agreement.status != AgreementStatus.ACTIVE:
            return outcome
        if reminded_today(agreement, today):
            outcome.skipped_cooldown = True
            return outcome

        for decision in plan_reminders(overdue.ledger, today):
            outcome.pending.append(
                PendingNotification(
                    kind=decision.kind,
                    agreement=agreement,
                    record=overdue.ledger.record_for(decision.period_key),
                    context={"days": decision.days},
                )
            )
        if outcome.pending:
            agreement.last_sweep_reminded_on = today
            agreement.last_reminder_sent_at = now
        return outcome

    async def trigger_manual_reminder(
        self, agreement_id: UUID, now: Optional[datetime] = None
    ) -> ReminderAck:
        now = as_utc(now) if now is not None else utc_now()
        today = today_in_billing_tz(now)
        cooldown = timedelta(hours=settings.MANUAL_REMINDER_COOLDOWN_HOURS)

        async with agreement_locks.hold(agreement_id):
            agreement = await self.agreement_repo.get_for_update(agreement_id)
            if agreement is None:
                await self.agreement_repo.db_rollback()
                raise AgreementNotFound(agreement_id=str(agreement_id))

            status = agreement.status
            if status != AgreementStatus.ACTIVE:
                await self.agreement_repo.db_rollback()
                raise not_active(status)

            ledger = self.agreement_repo.to_ledger(agreement)
            overdue = mark_overdue_if_past_due(ledger, today)
            outstanding = overdue.ledger.outstanding_records()
            if not outstanding:
                await self.agreement_repo.db_rollback()
                raise NoOutstandingBalance()

            last_sent = as_utc(agreement.last_reminder_sent_at)
            if last_sent is not None and now - last_sent < cooldown:
                await self.agreement_repo.db_rollback()
                raise TooSoon(last_sent, last_sent + cooldown, now)

            if overdue.transitioned:
                self.agreement_repo.save_ledger(agreement, overdue.ledger)

            total = overdue.ledger.outstanding_balance()
            # delivered under the lock; cool-down check and timestamp write stay atomic
            sent = await self.notifier.send(
                NotificationKind.CONSOLIDATED,
                agreement,
                records=outstanding,
                total=total,
            )
            if sent:
                agreement.last_reminder_sent_at = now
            await self.agreement_repo.db_commit()

        if sent:
            logger.info(f"Manual reminder sent for agreement {agreement.reference}")
            message = (
                f"Reminder sent for {len(outstanding)} outstanding payment(s)"
            )
        else:
            logger.error(f"Manual reminder delivery failed for agreement {agreement.reference}")
            message = "Reminder could not be delivered. Please try again later."

        return ReminderAck(
            agreement_id=agreement.id,
            sent=sent,
            outstanding_count=len(outstanding),
            outstanding_amount=total,
            last_reminder_sent_at=agreement.last_reminder_sent_at,
            message=message,
        )
