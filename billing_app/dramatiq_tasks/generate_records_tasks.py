import logging
from uuid import UUID

import dramatiq

from core.errors import BillingError
from core.get_db import AsyncSessionLocal
from services.record_generator import RecordGeneratorService

logger = logging.getLogger(__name__)


def create_generate_records_task():
    @dramatiq.actor(
        actor_name="generate_agreement_records",
        queue_name="billing_records",
        max_retries=3,
        time_limit=600_000,
        throws=(BillingError,),
    )
    async def generate_agreement_records(agreement_id: str):
        async with AsyncSessionLocal() as db:
            agreement, inserted = await RecordGeneratorService(
                db
            ).generate_for_agreement(UUID(agreement_id))
        logger.info(
            f"On-demand generation for {agreement.reference}: {len(inserted)} new record(s)"
        )
        return inserted

    return generate_agreement_records
