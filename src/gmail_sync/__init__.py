"""Gmail Sync - Resumable batch synchronization of a Gmail mailbox into SQLite."""

from gmail_sync.core.models import (
    Communication,
    Contact,
    NormalizedMessage,
    SyncError,
    SyncOptions,
    SyncProgress,
    SyncStatus,
)
from gmail_sync.pipeline.orchestrator import SyncOrchestrator
from gmail_sync.pipeline.service import GmailSyncService

__all__ = [
    "Communication",
    "Contact",
    "GmailSyncService",
    "NormalizedMessage",
    "SyncError",
    "SyncOptions",
    "SyncOrchestrator",
    "SyncProgress",
    "SyncStatus",
]
