import os
from typing import Any

from celery import Celery
from celery.utils.log import get_task_logger

from . import notify

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
celery_app = Celery("incubator", broker=CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or os.getenv("TESTING") == "1"
)

logger = get_task_logger(__name__)


@celery_app.task
def deliver_notification(recipients: list[str], template_key: str, data: dict[str, Any]) -> int:
    sent = notify.notify(recipients, template_key, data)
    logger.info("Delivered %s notification to %s recipient(s)", template_key, sent)
    return sent


def enqueue_notification(recipients: list[str], template_key: str, data: dict[str, Any]):
    if celery_app.conf.task_always_eager:
        deliver_notification(recipients, template_key, data)
    else:
        deliver_notification.delay(recipients, template_key, data)
