import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from core.date_helper import iter_billing_periods, today_in_billing_tz
from core.errors import AgreementNotFound, not_active
from core.locks import agreement_locks
from models.enums import AgreementEventType, AgreementStatus, PaymentRecordStatus
from models.ledger import LedgerState, allocate_credit, upsert_if_absent
from models.models import Agreement
from repos.agreement_event_repo import AgreementEventRepo
from repos.agreement_repo import AgreementRepo

logger = logging.getLogger(__name__)


def generate_missing_records(
    ledger: LedgerState,
    start_date: date,
    period_amount: Decimal,
    today: date,
    as_of: Optional[date] = None,
    end_date: Optional[date] = None,
) -> Tuple[LedgerState, List[str]]:
    """Insert every missing period up to ``as_of`` and settle new ones from credit.

    Credit left over by an earlier over-payment is spent on the newly
    inserted records straight away, oldest first.
    """
    inserted = []
    for period in iter_billing_periods(start_date, as_of or today, end_date):
        initial_status = (
            PaymentRecordStatus.OVERDUE
            if period.due_date < today
            else PaymentRecordStatus.PENDING
        )
        result = upsert_if_absent(
            ledger, period.period_key, period_amount, period.due_date, initial_status
        )
        if result.inserted:
            inserted.append(period.period_key)
        ledger = result.ledger
    if inserted:
        ledger = allocate_credit(ledger, today).ledger
    return ledger, inserted


class RecordGeneratorService:
    def __init__(self, db):
        self.db = db
        self.agreement_repo = AgreementRepo(db)
        self.event_repo = AgreementEventRepo(db)

    def generate_locked(self, agreement: Agreement, today: date) -> List[str]:
        """Insert missing records on an agreement already loaded under its lock."""
        if agreement.status != AgreementStatus.ACTIVE:
            return []

        ledger = self.agreement_repo.to_ledger(agreement)
        ledger, inserted = generate_missing_records(
            ledger,
            agreement.start_date,
            agreement.period_amount,
            today,
            end_date=agreement.end_date,
        )
        if not inserted:
            return []

        self.agreement_repo.save_ledger(agreement, ledger)
        self.event_repo.add(
            agreement.id,
            AgreementEventType.RECORDS_GENERATED,
            new_value={"period_keys": inserted, "as_of": today.isoformat()},
        )
        logger.info(
            f"Generated {len(inserted)} record(s) for agreement {agreement.reference}"
        )
        return inserted

    async def generate_for_agreement(
        self, agreement_id: UUID, now: Optional[datetime] = None
    ) -> Tuple[Agreement, List[str]]:
        today = today_in_billing_tz(now)
        async with agreement_locks.hold(agreement_id):
            agreement = await self.agreement_repo.get_for_update(agreement_id)
            if agreement is None:
                await self.agreement_repo.db_rollback()
                raise AgreementNotFound(agreement_id=str(agreement_id))
            status = agreement.status
            if status != AgreementStatus.ACTIVE:
                await self.agreement_repo.db_rollback()
                raise not_active(status)

            inserted = self.generate_locked(agreement, today)
            await self.agreement_repo.db_commit()
        return agreement, inserted
