"""
QuickBooks Online API Client

Async HTTP client shared by every tenant, with:
- Per-tenant sliding window rate limiting
- Retry with exponential backoff and jitter for transient errors (429, 5xx, network)
- Connection pooling
- Request/response logging
- Query helpers for paginated SELECT and COUNT
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from qbo_sync.credentials import Credential, CredentialProvider
from qbo_sync.errors import (
    QBOAPIError,
    QBOAuthError,
    QBONotFoundError,
    QBORateLimitError,
    QBOServerError,
    QBOValidationError,
)
from qbo_sync.rate_limiter import SlidingWindowRateLimiter
from qbo_sync.retry import RetryConfig, execute
from qbo_sync.store import SyncStore

logger = structlog.get_logger(__name__)

API_LOG_TABLE = "qbo_api_log"

__all__ = [
    "QBOClient",
    "QBOAPIError",
    "QBOAuthError",
    "QBONotFoundError",
    "QBORateLimitError",
    "QBOServerError",
    "QBOValidationError",
    "build_query",
    "quote",
]

BASE_URLS = {
    "sandbox": "https://sandbox-quickbooks.api.intuit.com",
    "production": "https://quickbooks.api.intuit.com",
}

MINOR_VERSION = "65"


def quote(value: Any) -> str:
    """Quote a literal for a QBO query."""
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


def build_query(
    entity_name: str,
    where: str | None = None,
    start_position: int | None = None,
    max_results: int | None = None,
    count: bool = False,
) -> str:
    """
    Build a QBO query.

    `start_position` is 1-based, as the API expects.
    """
    query = f"SELECT {'COUNT(*)' if count else '*'} FROM {entity_name}"
    if where:
        query += f" WHERE {where}"
    if start_position is not None:
        query += f" STARTPOSITION {start_position}"
    if max_results is not None:
        query += f" MAXRESULTS {max_results}"
    return query


def ids_filter(ids: Iterable[str]) -> str:
    """WHERE clause selecting records by QBO id."""
    return f"Id IN ({', '.join(quote(i) for i in ids)})"


def _fault_message(response: httpx.Response) -> str:
    """Extract the first error from a QBO Fault body."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]

    fault = data.get("Fault") or data.get("fault") or {}
    errors = fault.get("Error") or fault.get("error") or []
    if not errors:
        return response.text[:200]

    error = errors[0]
    message = error.get("Message") or error.get("message") or "QuickBooks error"
    detail = error.get("Detail") or error.get("detail")
    code = error.get("code")
    if detail and detail != message:
        message = f"{message}: {detail}"
    if code:
        message = f"{message} (code {code})"
    return message


class QBOClient:
    """
    QuickBooks Online API client.

    Every call resolves the tenant's credential, waits for a rate limiter
    slot and runs through the retry engine. One attempt of the retry
    engine is exactly one HTTP request.

    Example:
        async with QBOClient(credentials) as client:
            customers = await client.query(tenant_id, "Customer", max_results=100)
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        retry_config: RetryConfig | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        api_log: SyncStore | None = None,
    ):
        """
        Initialize the client.

        Args:
            credentials: Resolves tenant → access token and realm
            rate_limiter: Shared per-tenant limiter (450 calls/minute default)
            retry_config: Backoff settings for transient errors
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
            sleep: Coroutine used for retry backoff
            api_log: Store receiving one `qbo_api_log` row per HTTP request
        """
        self.credentials = credentials
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self.api_log = api_log
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

        # Request counters for observability
        self._request_count = 0
        self._error_count = 0

    async def __aenter__(self) -> "QBOClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Clean up HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client, creating if needed."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
                headers={"User-Agent": "qbo-sync/1.0", "Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    def _raise_for_status(self, response: httpx.Response, path: str) -> None:
        status = response.status_code
        if status < 400:
            return

        self._error_count += 1

        if status == 429:
            raise QBORateLimitError(
                "Rate limit exceeded - will retry",
                status_code=429,
                response_body=response.text[:500],
            )
        if status in (401, 403):
            raise QBOAuthError(
                "Authentication failed - reconnect QuickBooks",
                status_code=status,
                response_body=response.text[:500],
            )
        if status == 404:
            raise QBONotFoundError(f"Resource not found: {path}", status_code=404)
        if status == 400:
            raise QBOValidationError(
                _fault_message(response),
                status_code=400,
                response_body=response.text[:500],
            )
        if status >= 500:
            raise QBOServerError(
                f"Server error {status} - will retry",
                status_code=status,
                response_body=response.text[:500],
            )
        raise QBOAPIError(
            f"API error: {_fault_message(response)}",
            status_code=status,
            response_body=response.text[:500],
        )

    async def _make_request(
        self,
        tenant_id: str,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make a rate-limited, retrying request against the tenant's company.

        `path` is relative to /v3/company/<realm>.
        """
        credential = await self.credentials.get_credential(tenant_id)
        url = self._url(credential, path)
        request_params = dict(params or {})
        request_params["minorversion"] = MINOR_VERSION
        headers = {"Authorization": f"Bearer {credential.access_token}"}
        log = logger.bind(tenant_id=tenant_id, method=method, path=path)

        async def attempt() -> dict[str, Any]:
            await self.rate_limiter.acquire(tenant_id)

            self._request_count += 1
            request_id = self._request_count
            log.debug("API request", request_id=request_id)

            start_time = time.monotonic()
            status_code = None
            try:
                response = await self.client.request(
                    method, url, params=request_params, json=json, headers=headers
                )
                status_code = response.status_code
                elapsed = time.monotonic() - start_time

                log.debug(
                    "API response",
                    request_id=request_id,
                    status_code=status_code,
                    elapsed_ms=round(elapsed * 1000),
                )

                self._raise_for_status(response, path)

                try:
                    data = response.json()
                except ValueError as e:
                    raise QBOAPIError(f"Invalid JSON response: {e}") from e

                # QBO reports some validation failures with 200 and a Fault body
                if isinstance(data, dict) and "Fault" in data:
                    self._error_count += 1
                    raise QBOValidationError(
                        _fault_message(response),
                        status_code=400,
                        response_body=response.text[:500],
                    )
            except (QBOAPIError, httpx.HTTPError) as e:
                await self._record_call(
                    tenant_id, credential, method, path, status_code,
                    time.monotonic() - start_time, str(e),
                )
                raise

            await self._record_call(
                tenant_id, credential, method, path, status_code, elapsed, None
            )
            return data

        return await execute(attempt, self.retry_config, sleep=self._sleep, log=log)

    async def _record_call(
        self,
        tenant_id: str,
        credential: Credential,
        method: str,
        path: str,
        status_code: int | None,
        elapsed: float,
        error: str | None,
    ) -> None:
        """Write one `qbo_api_log` row. A failed write is logged, never raised."""
        if self.api_log is None:
            return
        try:
            await self.api_log.insert(API_LOG_TABLE, {
                "tenant_id": tenant_id,
                "realm_id": credential.realm_id,
                "method": method,
                "endpoint": path,
                "status_code": status_code,
                "duration_ms": round(elapsed * 1000),
                "success": error is None,
                "error_message": error,
                "created_at": datetime.now(timezone.utc),
            })
        except Exception as e:
            logger.warning(
                "Failed to record API call",
                tenant_id=tenant_id,
                endpoint=path,
                error=str(e),
            )

    @staticmethod
    def _url(credential: Credential, path: str) -> str:
        base = BASE_URLS[credential.environment]
        return f"{base}/v3/company/{credential.realm_id}/{path.lstrip('/')}"

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def query(
        self,
        tenant_id: str,
        entity_name: str,
        *,
        start_position: int = 1,
        max_results: int = 100,
        where: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch one page of records.

        Args:
            entity_name: QBO entity ("Customer", "Invoice", ...)
            start_position: 1-based position of the first record
            max_results: Page size (QBO caps this at 1000)
            where: Optional WHERE clause without the keyword
        """
        query = build_query(entity_name, where, start_position, max_results)
        data = await self._make_request(tenant_id, "GET", "query", params={"query": query})
        records = data.get("QueryResponse", {}).get(entity_name, [])
        logger.debug(
            "Fetched page",
            tenant_id=tenant_id,
            entity=entity_name,
            start_position=start_position,
            count=len(records),
        )
        return records

    async def count(self, tenant_id: str, entity_name: str, where: str | None = None) -> int:
        """Total records matching `where`."""
        query = build_query(entity_name, where, count=True)
        data = await self._make_request(tenant_id, "GET", "query", params={"query": query})
        return int(data.get("QueryResponse", {}).get("totalCount", 0))

    async def get(self, tenant_id: str, entity_name: str, entity_id: str) -> dict[str, Any]:
        """Fetch a single record by QBO id."""
        data = await self._make_request(tenant_id, "GET", f"{entity_name.lower()}/{entity_id}")
        return data.get(entity_name, data)

    async def save(
        self,
        tenant_id: str,
        entity_name: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Create or update a record.

        An update must carry `Id` and the current `SyncToken`; QBO rejects
        a stale token with 400, so concurrent external edits are never
        silently overwritten.
        """
        data = await self._make_request(
            tenant_id, "POST", entity_name.lower(), json=payload
        )
        return data.get(entity_name, data)

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_stats(self, tenant_id: str | None = None) -> dict[str, Any]:
        """Get client statistics for monitoring."""
        stats: dict[str, Any] = {
            "request_count": self._request_count,
            "error_count": self._error_count,
            "error_rate": round(self._error_count / max(1, self._request_count), 4),
            "rate_limiter": self.rate_limiter.get_global_stats(),
        }
        if tenant_id is not None:
            stats["tenant_rate_limit"] = self.rate_limiter.get_stats(tenant_id)
        return stats

    async def health_check(self, tenant_id: str) -> dict[str, Any]:
        """Verify API connectivity and credentials."""
        try:
            credential = await self.credentials.get_credential(tenant_id)
            data = await self._make_request(
                tenant_id, "GET", f"companyinfo/{credential.realm_id}"
            )
            return {
                "status": "healthy",
                "company": data.get("CompanyInfo", {}).get("CompanyName", "unknown"),
                "realm_id": credential.realm_id,
            }
        except QBOAuthError:
            return {"status": "auth_error", "message": "QuickBooks rejected the access token"}
        except Exception as e:
            return {"status": "error", "message": str(e)}
