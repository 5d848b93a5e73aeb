"""Upload notification pipeline module."""

from services.upload_registry.app.pipeline.sweeper import ExpirySweeper
from services.upload_registry.app.pipeline.worker import ReconcilerWorker

__all__ = ["ExpirySweeper", "ReconcilerWorker"]
