"""
QuickBooks Online Sync Engine

Bidirectional, multi-tenant synchronization of customers, items, invoices
and payments between an ERP data store and QuickBooks Online.

Features:
- Dependency-ordered orchestration with per-entity retry
- Resumable, paginated sync sessions under a soft deadline
- Per-tenant sliding window rate limiting (450 calls/minute)
- Retry with exponential backoff for transient API errors
- Signed webhook ingestion with idempotent event recording
- Durable priority job queue with backoff and coalescing

Quick Start:
    pip install qbo-sync-engine
    qbo-sync test --tenant acme     # Verify connection
    qbo-sync sync --tenant acme     # Run full sync
    qbo-sync worker                 # Process queued jobs
"""

from qbo_sync.client import (
    QBOClient,
    QBOAPIError,
    QBOAuthError,
    QBONotFoundError,
    QBORateLimitError,
    QBOServerError,
    QBOValidationError,
)
from qbo_sync.config import SyncSettings, load_settings
from qbo_sync.conflicts import ConflictStrategy
from qbo_sync.engine import SyncEngine
from qbo_sync.entities import EntityKind
from qbo_sync.errors import (
    ConfigurationError,
    MissingCredentialError,
    SyncError,
)
from qbo_sync.orchestrator import OrchestrationResult, SyncOrchestrator, SyncRequest
from qbo_sync.rate_limiter import SlidingWindowRateLimiter
from qbo_sync.retry import RetryConfig, execute
from qbo_sync.sessions import SessionManager, SyncSession
from qbo_sync.state import JsonFileSyncStore
from qbo_sync.store import InMemorySyncStore, SyncStore
from qbo_sync.sync_queue import QueueProcessor, SyncQueue, SyncQueueJob
from qbo_sync.webhooks import WebhookIngestor
from qbo_sync.workers import create_worker

__version__ = "1.0.0"
__all__ = [
    # Engine
    "SyncEngine",
    "SyncSettings",
    "load_settings",

    # Orchestration
    "SyncOrchestrator",
    "SyncRequest",
    "OrchestrationResult",
    "ConflictStrategy",
    "EntityKind",
    "create_worker",

    # Sessions and queue
    "SessionManager",
    "SyncSession",
    "SyncQueue",
    "SyncQueueJob",
    "QueueProcessor",
    "WebhookIngestor",

    # API client
    "QBOClient",
    "QBOAPIError",
    "QBOAuthError",
    "QBONotFoundError",
    "QBORateLimitError",
    "QBOServerError",
    "QBOValidationError",
    "SlidingWindowRateLimiter",
    "RetryConfig",
    "execute",

    # Persistence
    "SyncStore",
    "InMemorySyncStore",
    "JsonFileSyncStore",

    # Errors
    "SyncError",
    "ConfigurationError",
    "MissingCredentialError",
]
