"""
Wires the engine's components together from settings.
"""

from datetime import timedelta

import httpx
import structlog

from qbo_sync.client import QBOClient
from qbo_sync.config import SyncSettings
from qbo_sync.credentials import CredentialProvider, StoreCredentialProvider
from qbo_sync.orchestrator import SyncOrchestrator
from qbo_sync.rate_limiter import SlidingWindowRateLimiter
from qbo_sync.sessions import SessionManager
from qbo_sync.state import JsonFileSyncStore
from qbo_sync.store import SyncStore
from qbo_sync.sync_queue import QueueProcessor, SyncQueue
from qbo_sync.webhooks import WebhookIngestor

logger = structlog.get_logger(__name__)


class SyncEngine:
    """
    One process-wide set of engine components.

    The rate limiter is shared by every tenant's calls made through this
    engine, so all work for a process should go through one instance.

    Example:
        async with SyncEngine(load_settings()) as engine:
            result = await engine.orchestrator.run(SyncRequest(tenant_id="t1"))
    """

    def __init__(
        self,
        settings: SyncSettings | None = None,
        store: SyncStore | None = None,
        credentials: CredentialProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            settings: Tunables (defaults if None)
            store: Persistence (JSON state file at `settings.state_file` if None)
            credentials: Token source (the store's `connections` table if None)
            transport: Custom httpx transport for the QBO client
        """
        self.settings = settings or SyncSettings()
        self.store = store if store is not None else JsonFileSyncStore(self.settings.state_file)
        self.credentials = credentials or StoreCredentialProvider(
            self.store, default_environment=self.settings.environment
        )

        self.rate_limiter = SlidingWindowRateLimiter(
            max_requests=self.settings.rate_limit_max_requests,
            window_seconds=self.settings.rate_limit_window_seconds,
            margin_seconds=self.settings.rate_limit_margin_seconds,
        )
        self.client = QBOClient(
            self.credentials,
            rate_limiter=self.rate_limiter,
            retry_config=self.settings.retry_config,
            timeout=self.settings.request_timeout,
            transport=transport,
            api_log=self.store if self.settings.api_log_enabled else None,
        )

        self.sessions = SessionManager(self.store)
        self.queue = SyncQueue(self.store, max_retries=self.settings.job_max_retries)
        self.orchestrator = SyncOrchestrator(
            self.store,
            self.client,
            self.sessions,
            queue=self.queue,
            batch_size=self.settings.batch_size,
            execution_time_limit=self.settings.execution_time_limit,
        )
        self.processor = QueueProcessor(
            self.queue,
            self.orchestrator,
            self.sessions,
            max_jobs=self.settings.queue_max_jobs,
            max_concurrent=self.settings.queue_max_concurrent,
            stale_after=timedelta(seconds=self.settings.stale_session_seconds),
            poll_interval=self.settings.queue_poll_interval,
        )
        self.ingestor = WebhookIngestor(
            self.store,
            self.queue,
            verifier_token=self.settings.webhook_verifier_token,
        )

        logger.debug(
            "Sync engine ready",
            environment=self.settings.environment,
            store=type(self.store).__name__,
        )

    async def __aenter__(self) -> "SyncEngine":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()
