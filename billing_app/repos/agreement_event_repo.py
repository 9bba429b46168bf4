from typing import List
from uuid import UUID

from sqlalchemy import select

from models.enums import AgreementEventType
from models.models import AgreementEvent


class AgreementEventRepo:
    def __init__(self, db):
        self.db = db

    def add(
        self,
        agreement_id: UUID,
        event: AgreementEventType,
        old_value: dict | None = None,
        new_value: dict | None = None,
    ) -> AgreementEvent:
        # committed together with the ledger change it describes
        entry = AgreementEvent(
            agreement_id=agreement_id,
            event=event,
            old_value=old_value,
            new_value=new_value,
        )
        self.db.add(entry)
        return entry

    async def list_for_agreement(self, agreement_id: UUID) -> List[AgreementEvent]:
        result = await self.db.execute(
            select(AgreementEvent)
            .where(AgreementEvent.agreement_id == agreement_id)
            .order_by(AgreementEvent.id)
        )
        return list(result.scalars().all())

    async def exists(self, agreement_id: UUID, event: AgreementEventType) -> bool:
        stmt = select(AgreementEvent.id).where(
            AgreementEvent.agreement_id == agreement_id,
            AgreementEvent.event == event,
        )
        result = await self.db.execute(stmt)
        return result.first() is not None
