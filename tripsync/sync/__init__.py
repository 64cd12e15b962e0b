"""Local-first synchronization engine."""

from tripsync.sync.merge import ConflictResolver
from tripsync.sync.queue import MutationQueue, RetryPolicy
from tripsync.sync.reconciler import RealtimeReconciler
from tripsync.sync.triggers import SyncTriggers

__all__ = [
    "ConflictResolver",
    "MutationQueue",
    "RealtimeReconciler",
    "RetryPolicy",
    "SyncTriggers",
]
