"""Background workers for webhook-service.

Each worker is a standalone module exporting a single async task function
compatible with :class:`backend_common.worker.WorkerTask`.
"""
from __future__ import annotations

from backend_common.worker import BackgroundWorker, WorkerTask

from webhook_service.settings import settings
from webhook_service.workers.delivery_purge import webhook_delivery_purge

worker = BackgroundWorker(
    interval_seconds=settings.worker_interval_seconds,
    tasks=[
        WorkerTask(name="webhook_delivery_purge", fn=webhook_delivery_purge),
    ],
)

start_background_worker = worker.start
stop_background_worker = worker.stop

__all__ = [
    "worker",
    "start_background_worker",
    "stop_background_worker",
]
