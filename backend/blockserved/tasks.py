from __future__ import annotations

import logging

from blockserved.celery_app import celery_app
from blockserved.core.context import get_context
from blockserved.db.session import SessionLocal
from blockserved.services import issuance, reconciliation
from blockserved.services.records import RecordStore

logger = logging.getLogger(__name__)


def _get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@celery_app.task(name="blockserved.tasks.reconcile_notices", bind=True, soft_time_limit=3600, time_limit=3660)
def reconcile_notices(self, start: int = 1, end: int | None = None, mode: str = "ownership"):
    for db in _get_db():
        task_id = getattr(self.request, "id", None)
        logger.info("task_start name=reconcile_notices task_id=%s start=%s end=%s mode=%s", task_id, start, end, mode)
        report = reconciliation.reconcile(get_context(), RecordStore(db), start, end, mode=mode)
        logger.info(
            "task_done name=reconcile_notices task_id=%s inserted=%s updated=%s skipped=%s",
            task_id,
            len(report.inserted),
            len(report.updated),
            len(report.skipped),
        )
        return {"status": "success", "report": report.as_dict()}


@celery_app.task(name="blockserved.tasks.retry_submission", bind=True, soft_time_limit=300, time_limit=330)
def retry_submission(self, submission_id: int):
    for db in _get_db():
        task_id = getattr(self.request, "id", None)
        logger.info("task_start name=retry_submission task_id=%s submission_id=%s", task_id, submission_id)
        result = issuance.retry_submission(get_context(), RecordStore(db), submission_id)
        logger.info("task_done name=retry_submission task_id=%s ok=%s reason=%s", task_id, result.ok, result.reason)
        return {
            "status": "success" if result.ok else "failed",
            "reason": result.reason,
            "tx_ids": result.tx_ids,
            "record_ids": result.record_ids,
            "record_write_failed": result.record_write_failed,
        }
