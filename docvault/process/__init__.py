"""DocVault background processing: Celery-scheduled trash retention."""

from docvault.process.retention import (  # noqa: F401
    RetentionSweeper,
    build_beat_schedule,
    get_celery_app,
    get_sweep_task,
    run_sweep,
)

__all__ = [
    "RetentionSweeper",
    "build_beat_schedule",
    "get_celery_app",
    "get_sweep_task",
    "run_sweep",
]
