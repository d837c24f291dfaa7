"""
Retry and deferral primitives.

Classes:
    ExponentialBackoff: Delay calculation for retry loops
    DeferredNotificationQueue: Durable queue of quiet-hours deferrals
    DeferredNotification: One deferred dispatch
"""

from src.queues.backoff import ExponentialBackoff
from src.queues.deferred import DeferredNotification, DeferredNotificationQueue

__all__ = ["DeferredNotification", "DeferredNotificationQueue", "ExponentialBackoff"]
