import logging

import dramatiq
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from dramatiq.brokers.redis import RedisBroker
from dramatiq.middleware import (
    AgeLimit,
    AsyncIO,
    Callbacks,
    Pipelines,
    Retries,
    TimeLimit,
)

from core.settings import settings
from dramatiq_tasks.billing_sweep_tasks import create_daily_sweep_task
from dramatiq_tasks.generate_records_tasks import create_generate_records_task

logger = logging.getLogger(__name__)


class DramatiqManager:
    def __init__(self, start_scheduler: bool = True):
        self.REDIS_URL = settings.DRAMATIQ_REDIS_URL

        self.broker = RedisBroker(url=self.REDIS_URL)

        self.broker.add_middleware(AgeLimit(max_age=3600000))
        self.broker.add_middleware(TimeLimit(time_limit=3600000))
        self.broker.add_middleware(Retries(max_retries=5))
        self.broker.add_middleware(Pipelines())
        self.broker.add_middleware(Callbacks())
        self.broker.add_middleware(AsyncIO())

        dramatiq.set_broker(self.broker)

        self._register_tasks()

        self.scheduler = BackgroundScheduler(timezone="UTC")
        self._register_cron_jobs()
        if start_scheduler:
            self.scheduler.start()

    def _register_tasks(self):
        create_daily_sweep_task()
        create_generate_records_task()

    def _register_cron_jobs(self):
        self.scheduler.add_job(
            func=lambda: self.broker.get_actor("run_daily_billing_sweep").send(),
            trigger=CronTrigger(
                hour=settings.SWEEP_CRON_HOUR, minute=settings.SWEEP_CRON_MINUTE
            ),
            id="run-daily-billing-sweep",
            replace_existing=True,
        )

    def connect(self):
        logger.info(f"Connecting to Dramatiq broker: {self.REDIS_URL}")
        try:
            self.broker.client.ping()
            logger.info("Dramatiq connected successfully.")
        except Exception:
            logger.exception("Dramatiq connection failed")

    def delay(self, actor_name: str, *args, **kwargs):
        actor = self.broker.get_actor(actor_name)
        return actor.send(*args, **kwargs)


dramatiq_app = DramatiqManager()
