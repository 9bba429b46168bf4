"""Worker entry point.

``dramatiq app`` (run from inside ``billing_app/``) starts the actors and the
daily cron. ``python app.py sweep [YYYY-MM-DD]`` runs one sweep in-process and
``python app.py generate <agreement-id>`` queues on-demand record generation.
"""

import asyncio
import logging
import sys
from datetime import date

logging.basicConfig(level=logging.INFO)

from dramatiq_worker.dramatiq_app import dramatiq_app  # noqa: E402
from services.sweep_service import DailySweepService  # noqa: E402

logger = logging.getLogger("startup")

broker = dramatiq_app.broker


async def run_sweep_once(as_of: date | None = None):
    result = await DailySweepService().run(as_of=as_of)
    logger.info(result.model_dump_json(indent=2))
    return result


def queue_generation(agreement_id: str):
    message = dramatiq_app.delay("generate_agreement_records", agreement_id)
    logger.info(f"Queued record generation for {agreement_id} ({message.message_id})")
    return message


if __name__ == "__main__":
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "sweep":
        as_of = date.fromisoformat(sys.argv[2]) if len(sys.argv) > 2 else None
        asyncio.run(run_sweep_once(as_of))
    elif command == "generate" and len(sys.argv) > 2:
        queue_generation(sys.argv[2])
    else:
        dramatiq_app.connect()
