"""
Job runners for the activity intelligence feature.
"""

from .queue_worker import QueueWorker, QueueWorkerMetrics

__all__ = ["QueueWorker", "QueueWorkerMetrics"]
