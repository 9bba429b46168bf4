import logging
from datetime import date

import dramatiq

from services.sweep_service import DailySweepService

logger = logging.getLogger("billing.sweep")


def create_daily_sweep_task():
    @dramatiq.actor(
        actor_name="run_daily_billing_sweep",
        queue_name="billing_sweep",
        max_retries=3,
        time_limit=3_600_000,
    )
    async def run_daily_billing_sweep(as_of: str | None = None):
        result = await DailySweepService().run(
            as_of=date.fromisoformat(as_of) if as_of else None
        )
        if result.failures:
            logger.warning(
                f"Daily sweep for {result.as_of} finished with "
                f"{len(result.failures)} failed agreement(s)"
            )
        return result.model_dump(mode="json")

    return run_daily_billing_sweep
