"""
Celery tasks for the invoice submission pipeline.

submission_tick_task runs one worker tick; beat schedules it every tick_interval_ms
(CELERY_BEAT_SCHEDULE). Use this or the run_submission_worker command, not both.
"""

import logging
from typing import Any

from celery import shared_task

from invoicing.services.invoice_store import StoreUnavailable
from invoicing.services.pipeline_config import PipelineConfig
from invoicing.services.submission_worker import SubmissionWorker

logger = logging.getLogger("invoicing")


@shared_task(bind=True, name="invoicing.submission_tick_task")
def submission_tick_task(self) -> dict[str, Any]:
    """
    Run one submission tick.
    Returns {"success": True, **TickResult} or {"success": False, "error": str} when the store is down.
    """
    worker = SubmissionWorker(PipelineConfig.from_settings())
    try:
        result = worker.tick()
    except StoreUnavailable as e:
        logger.error("submission_tick_task: store unavailable: %s", e)
        return {"success": False, "error": str(e)}
    return {"success": True, **result.as_dict()}
