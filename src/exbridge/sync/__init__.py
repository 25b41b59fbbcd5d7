"""Sync engine: watermark tracking, the retry ledger and the orchestrator."""

from exbridge.sync.ledger import ChangeLedger
from exbridge.sync.orchestrator import DEPENDENCIES, CycleState, SyncOrchestrator
from exbridge.sync.state import SyncStateTracker

__all__ = [
    "DEPENDENCIES",
    "ChangeLedger",
    "CycleState",
    "SyncOrchestrator",
    "SyncStateTracker",
]
