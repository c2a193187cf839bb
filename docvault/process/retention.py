"""
DocVault Retention: scheduled purge of expired trash.

Trash roots older than ``trash.retention_days`` are purged through the same
path as a manual purge, so blobs are removed before rows.

Runs either:
    - from Celery Beat (``docvault.process.retention.sweep_trash_task``),
      scheduled by ``trash.sweep_schedule`` (cron, UTC)
    - from the CLI: ``docvault sweep``
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from celery import Celery

from docvault.engine.config import DocVaultConfig, get_config
from docvault.engine.errors import ConfigError
from docvault.engine.logging import log, log_system_event

logger = logging.getLogger("docvault.process.retention")

SWEEP_TASK_NAME = "docvault.process.retention.sweep_trash_task"


class RetentionSweeper:
    """Runs one retention sweep over a RepositoryService."""

    def __init__(self, service: Any, retention_days: int = 30):
        self._service = service
        self._retention_days = retention_days

    def run(self) -> Dict[str, Any]:
        start = time.monotonic()
        result = self._service.sweep_trash(self._retention_days)
        summary = {
            "retention_days": self._retention_days,
            "purged": len(result.purged_ids),
            "failed_roots": result.failed_roots,
            "duration_ms": round((time.monotonic() - start) * 1000, 2),
        }
        log(log_system_event(
            "retention_sweep",
            level="ERROR" if result.failed_roots else "INFO",
            details=summary,
        ))
        logger.info(
            f"Retention sweep: purged {summary['purged']} node(s), "
            f"{len(result.failed_roots)} root(s) failed"
        )
        return summary


# ---------------------------------------------------------------------------
# Celery app (configured from docvault.yaml)
# ---------------------------------------------------------------------------

_celery_app: Optional[Celery] = None


def get_celery_app() -> Celery:
    """Get or create the Celery app singleton."""
    global _celery_app
    if _celery_app is None:
        _celery_app = _create_celery_app()
        # Workers must know the beat task before the first message arrives
        get_sweep_task()
    return _celery_app


def _create_celery_app() -> Celery:
    try:
        config = get_config()
    except ConfigError as e:
        logger.warning(f"Using default Celery settings: {e}")
        config = DocVaultConfig()

    app = Celery("docvault", broker=config.celery.broker, backend=config.celery.result_backend)
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_default_queue="maintenance",
        task_acks_late=True,
        worker_prefetch_multiplier=1,
    )
    app.conf.beat_schedule = build_beat_schedule(config.trash.sweep_schedule)
    return app


def build_beat_schedule(cron_expr: str) -> Dict[str, Any]:
    """
    Beat entry for the retention sweep.

    Raises:
        ConfigError: the cron expression does not have five fields.
    """
    from celery.schedules import crontab

    parts = cron_expr.strip().split()
    if len(parts) != 5:
        raise ConfigError(f"Invalid trash.sweep_schedule cron expression: '{cron_expr}'")
    return {
        "docvault-trash-retention": {
            "task": SWEEP_TASK_NAME,
            "schedule": crontab(
                minute=parts[0],
                hour=parts[1],
                day_of_month=parts[2],
                month_of_year=parts[3],
                day_of_week=parts[4],
            ),
            "options": {"queue": "maintenance"},
        }
    }


def run_sweep(config: Optional[DocVaultConfig] = None) -> Dict[str, Any]:
    """Build a service from config and run one sweep."""
    from docvault.repository.service import RepositoryService

    config = config or get_config()
    service = RepositoryService.from_config(config)
    try:
        return RetentionSweeper(service, config.trash.retention_days).run()
    finally:
        service.close()


# Lazy-bind the task (avoids importing the repository at module level)
_sweep_task = None


def get_sweep_task():
    """Get or create the retention sweep Celery task."""
    global _sweep_task
    if _sweep_task is None:
        celery_app = get_celery_app()

        @celery_app.task(name=SWEEP_TASK_NAME)
        def sweep_trash_task() -> Dict[str, Any]:
            """Celery Beat task: purge trash older than the retention window."""
            return run_sweep()

        _sweep_task = sweep_trash_task
    return _sweep_task
