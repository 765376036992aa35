"""Ingestion and scheduling: stack/queue sources, message handlers,
the reconciler and the beat-as-poller scheduler service."""

from g8r.scheduling.backend import ThreadSchedulerBackend
from g8r.scheduling.messages import ConvergenceRequest, MessageHandlerRegistry
from g8r.scheduling.reconciler import Reconciler
from g8r.scheduling.service import ReconciliationScheduler, SchedulerHealth, SchedulerStats
from g8r.scheduling.sources import (
    GitSource,
    InMemoryQueueSource,
    LocalSource,
    MemoryBroker,
    QueueMessage,
    QueueSource,
    SourceFactory,
    StackSource,
)

__all__ = [
    "ConvergenceRequest",
    "GitSource",
    "InMemoryQueueSource",
    "LocalSource",
    "MemoryBroker",
    "MessageHandlerRegistry",
    "QueueMessage",
    "QueueSource",
    "Reconciler",
    "ReconciliationScheduler",
    "SchedulerHealth",
    "SchedulerStats",
    "SourceFactory",
    "StackSource",
    "ThreadSchedulerBackend",
]
