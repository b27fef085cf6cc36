"""
Backend data service for marketplace listings.

Defines the operations the sync core consumes (BackendDataService) and an
async implementation over the managed Postgres REST API (PostgREST) plus
its realtime change feed.

Features:
- Connection pooling with httpx
- Exponential backoff retry on connection failures
- Circuit breaker shared across requests
- Request correlation IDs forwarded as X-Request-ID
"""
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from iskomarket.config import BackendConfig, RealtimeConfig, config
from iskomarket.exceptions import (
    BackendAPIError,
    BackendConnectionError,
    BackendDataError,
    ListingNotFoundError,
    PartialRecordError,
)
from iskomarket.models import (
    CAMPUS_CATEGORY_PREFIX,
    ChangeKind,
    CountScope,
    Listing,
    ListingChange,
    ListingFilter,
    newest_first,
)
from iskomarket.observability import Timer, get_correlation_id, get_logger
from iskomarket.realtime import RealtimeChannel
from iskomarket.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    RetryConfig,
    retry_with_backoff,
)

logger = get_logger(__name__)

ChangeHandler = Callable[[ListingChange], Awaitable[None]]
Unsubscribe = Callable[[], Awaitable[None]]
QueryParams = List[Tuple[str, str]]

SELLER_COLUMNS = "id,username,avatar_url,credit_score,is_trusted_member"
MARKETPLACE_FILTERS: QueryParams = [
    ("is_sold", "eq.false"),
    ("is_hidden", "eq.false"),
    ("is_deleted", "eq.false"),
    ("is_cvsu_only", "eq.false"),
]
AVAILABLE_CLAUSE = "or(is_available.is.null,is_available.eq.true)"

_CONTENT_RANGE = re.compile(r"^(?:\d+-\d+|\*)/(\d+|\*)$")

RETRY_CONFIG = RetryConfig(max_attempts=3, base_delay=0.5, max_delay=4.0)
CIRCUIT_BREAKER_CONFIG = CircuitBreakerConfig(failure_threshold=5, recovery_timeout=30.0)


class BackendDataService(Protocol):
    """Operations the listing sync core needs from the backend."""

    async def fetch_listings(self, listing_filter: Optional[ListingFilter] = None) -> List[Listing]:
        """Public path: unsold marketplace rows passing the visibility rule. May under-return."""

    async def fetch_listings_broad(self) -> List[Listing]:
        """Alternate path that can surface rows the public path hides."""

    async def fetch_listing_by_id(self, listing_id: str) -> Listing:
        """Enriched single record; raises ListingNotFoundError if absent or restricted."""

    async def count_listings(self, scope: CountScope) -> int:
        """Row count for one access path (diagnostics only)."""

    async def subscribe_listing_changes(
        self,
        on_insert: ChangeHandler,
        on_update: ChangeHandler,
        on_delete: ChangeHandler,
    ) -> Unsubscribe:
        """Start the change feed; returns an async unsubscribe callable."""


def parse_content_range(header: Optional[str]) -> Optional[int]:
    """Extract the total from a PostgREST Content-Range header ("0-9/42", "*/0")."""
    if not header:
        return None
    match = _CONTENT_RANGE.match(header.strip())
    if not match or match.group(1) == "*":
        return None
    return int(match.group(1))


class SupabaseBackend:
    """
    Async listing backend over PostgREST + realtime.

    Usage:
        async with SupabaseBackend() as backend:
            listings = await backend.fetch_listings()
    """

    def __init__(
        self,
        backend_config: Optional[BackendConfig] = None,
        realtime_config: Optional[RealtimeConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.config = backend_config or config.backend
        self.realtime_config = realtime_config or config.realtime
        self._client: Optional[httpx.AsyncClient] = None
        self._circuit_breaker = circuit_breaker or CircuitBreaker(config=CIRCUIT_BREAKER_CONFIG)

        if not self.config.url:
            raise ValueError("SUPABASE_URL is required")
        if not self.config.anon_key:
            raise ValueError("SUPABASE_ANON_KEY is required")

    def _auth_headers(self, privileged: bool = False) -> Dict[str, str]:
        key = self.config.service_key if privileged and self.config.service_key else self.config.anon_key
        return {"apikey": key, "Authorization": f"Bearer {key}"}

    async def connect(self) -> None:
        """Create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.rest_url,
                headers={"Accept": "application/json"},
                timeout=self.config.request_timeout,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SupabaseBackend":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ═══════════════════════════════════════════════════════════════════════════
    # TRANSPORT
    # ═══════════════════════════════════════════════════════════════════════════

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[QueryParams] = None,
        headers: Optional[Dict[str, str]] = None,
        privileged: bool = False,
    ) -> httpx.Response:
        """
        Make a request with retry and circuit breaker.

        Raises:
            BackendConnectionError: Network/timeout errors
            BackendAPIError: Backend returned an error response
            CircuitOpenError: Circuit breaker is open
        """
        if not await self._circuit_breaker.can_execute():
            raise CircuitOpenError(
                f"Backend circuit open, {method} {path} rejected",
                retry_in=self._circuit_breaker.retry_in,
            )

        try:
            response = await retry_with_backoff(
                self._do_request,
                method, path, params, headers, privileged,
                config=RETRY_CONFIG,
                retryable_exceptions=(BackendConnectionError,),
            )
        except BackendConnectionError:
            await self._circuit_breaker.record_failure()
            raise
        except BackendAPIError as e:
            if e.status_code is not None and e.status_code >= 500:
                await self._circuit_breaker.record_failure()
            else:
                await self._circuit_breaker.record_success()
            raise

        await self._circuit_breaker.record_success()
        return response

    async def _do_request(
        self,
        method: str,
        path: str,
        params: Optional[QueryParams],
        headers: Optional[Dict[str, str]],
        privileged: bool,
    ) -> httpx.Response:
        """Execute a single HTTP request (called by retry wrapper)."""
        if not self._client:
            await self.connect()

        request_headers = self._auth_headers(privileged)
        if headers:
            request_headers.update(headers)
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Request-ID"] = correlation_id

        try:
            with Timer(f"backend_{method.lower()}_{path.strip('/')}", logger):
                response = await self._client.request(
                    method, path, params=params, headers=request_headers
                )
        except httpx.TimeoutException as e:
            raise BackendConnectionError(
                f"Request timeout after {self.config.request_timeout}s",
                details=f"{method} {path}",
                retry_after=5,
            ) from e
        except httpx.RequestError as e:
            raise BackendConnectionError(f"Request failed: {method} {path}", details=str(e)) from e

        if response.status_code >= 400:
            raise self._api_error(response, path)
        return response

    @staticmethod
    def _api_error(response: httpx.Response, path: str) -> BackendAPIError:
        error_code = None
        details = response.text[:500]
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error_code = body.get("code")
            details = body.get("message") or details

        logger.debug(
            f"Backend error {response.status_code} on {path}",
            extra={"status_code": response.status_code, "error_code": error_code},
        )
        return BackendAPIError(
            f"Backend returned {response.status_code}",
            details=details,
            status_code=response.status_code,
            error_code=error_code,
        )

    @staticmethod
    def _rows(response: httpx.Response, path: str) -> List[Dict[str, Any]]:
        try:
            body = response.json()
        except ValueError as e:
            raise BackendDataError(f"Invalid JSON from {path}", details=str(e)) from e
        if not isinstance(body, list):
            raise BackendDataError(
                f"Unexpected response from {path}",
                expected="list",
                got=type(body).__name__,
            )
        return body

    # ═══════════════════════════════════════════════════════════════════════════
    # QUERY BUILDING
    # ═══════════════════════════════════════════════════════════════════════════

    @property
    def _table_path(self) -> str:
        return f"/{self.config.listings_table}"

    @property
    def _enriched_select(self) -> str:
        return (
            f"*,seller:{self.config.users_table}!seller_id({SELLER_COLUMNS}),"
            f"category:{self.config.categories_table}(id,name)"
        )

    def _primary_params(
        self,
        listing_filter: Optional[ListingFilter] = None,
        excluded_categories: Sequence[str] = (),
    ) -> QueryParams:
        params: QueryParams = list(MARKETPLACE_FILTERS)
        clauses = [AVAILABLE_CLAUSE]

        if excluded_categories:
            params.append(("category_id", f"not.in.({','.join(excluded_categories)})"))

        if listing_filter:
            if listing_filter.category_id:
                params.append(("category_id", f"eq.{listing_filter.category_id}"))
            if listing_filter.min_price is not None:
                params.append(("price", f"gte.{listing_filter.min_price}"))
            if listing_filter.max_price is not None:
                params.append(("price", f"lte.{listing_filter.max_price}"))
            if listing_filter.seller_id:
                params.append(("seller_id", f"eq.{listing_filter.seller_id}"))
            if listing_filter.search:
                term = listing_filter.search.replace(",", " ").replace("(", " ").replace(")", " ").strip()
                if term:
                    clauses.append(f"or(title.ilike.*{term}*,description.ilike.*{term}*)")

        params.append(("and", f"({','.join(clauses)})"))
        return params

    # ═══════════════════════════════════════════════════════════════════════════
    # LISTING READS
    # ═══════════════════════════════════════════════════════════════════════════

    async def _campus_category_ids(self) -> List[str]:
        """
        Resolve the campus-only category IDs kept off the marketplace feed.

        A failed lookup is logged and skips the category exclusion; the
        per-row is_cvsu_only flag still applies.
        """
        path = f"/{self.config.categories_table}"
        try:
            response = await self._request(
                "GET", path,
                params=[("select", "id"), ("name", f"ilike.{CAMPUS_CATEGORY_PREFIX}*")],
            )
            rows = self._rows(response, path)
        except (BackendAPIError, BackendDataError) as e:
            logger.warning(f"Could not resolve campus categories for exclusion: {e}")
            return []
        return [str(row["id"]) for row in rows if isinstance(row, dict) and row.get("id") is not None]

    async def fetch_listings(self, listing_filter: Optional[ListingFilter] = None) -> List[Listing]:
        params = [("select", self._enriched_select)]
        params.extend(self._primary_params(listing_filter, await self._campus_category_ids()))
        params.append(("order", "created_at.desc"))

        response = await self._request("GET", self._table_path, params=params)
        return [Listing.from_row(row) for row in self._rows(response, self._table_path)]

    async def fetch_listings_broad(self) -> List[Listing]:
        """
        Try the broad view first, then the raw table without joins.

        The raw fallback excludes only soft-deleted rows so that deleted
        listings cannot leak through when the view is unavailable.
        """
        view_path = f"/{self.config.broad_view}"
        try:
            response = await self._request(
                "GET", view_path,
                params=[("select", "*"), ("limit", str(self.config.broad_limit))],
                privileged=True,
            )
            rows = self._rows(response, view_path)
            if rows:
                return newest_first(Listing.from_row(row) for row in rows)
        except (BackendAPIError, BackendDataError) as e:
            logger.warning(f"Broad view {self.config.broad_view} unavailable: {e}")

        response = await self._request(
            "GET", self._table_path,
            params=[
                ("select", "*"),
                ("is_deleted", "eq.false"),
                ("order", "created_at.desc"),
                ("limit", str(self.config.broad_limit)),
            ],
            privileged=True,
        )
        return [Listing.from_row(row) for row in self._rows(response, self._table_path)]

    async def fetch_listing_by_id(self, listing_id: str) -> Listing:
        try:
            response = await self._request(
                "GET", self._table_path,
                params=[("select", self._enriched_select), ("id", f"eq.{listing_id}")],
                headers={"Accept": "application/vnd.pgrst.object+json"},
            )
        except BackendAPIError as e:
            if e.status_code == 406 or e.error_code == "PGRST116":
                raise ListingNotFoundError(listing_id, details=e.details) from e
            raise

        if not response.content:
            raise ListingNotFoundError(listing_id, status_code=response.status_code)
        try:
            row = response.json()
        except ValueError as e:
            raise BackendDataError(f"Invalid JSON for listing {listing_id}", details=str(e)) from e
        if not isinstance(row, dict) or row.get("id") is None:
            raise BackendDataError(
                f"Unexpected response for listing {listing_id}",
                expected="object",
                got=type(row).__name__,
            )

        listing = Listing.from_row(row)
        if not listing.is_enriched:
            raise PartialRecordError(listing_id)
        return listing

    async def count_listings(self, scope: CountScope) -> int:
        if scope is CountScope.PRIMARY:
            path, privileged = self._table_path, False
            params = self._primary_params(excluded_categories=await self._campus_category_ids())
        elif scope is CountScope.BROAD:
            path, params, privileged = f"/{self.config.broad_view}", [], True
        else:
            path, params, privileged = self._table_path, [], True

        response = await self._request(
            "HEAD", path,
            params=[("select", "id")] + params,
            headers={"Prefer": "count=exact"},
            privileged=privileged,
        )
        total = parse_content_range(response.headers.get("content-range"))
        if total is None:
            raise BackendDataError(
                f"Missing row count for {scope.value}",
                expected="Content-Range with total",
                got=response.headers.get("content-range"),
            )
        return total

    # ═══════════════════════════════════════════════════════════════════════════
    # REALTIME
    # ═══════════════════════════════════════════════════════════════════════════

    async def subscribe_listing_changes(
        self,
        on_insert: ChangeHandler,
        on_update: ChangeHandler,
        on_delete: ChangeHandler,
    ) -> Unsubscribe:
        """
        Join the change feed for the listings table.

        Raises:
            SubscriptionError: the channel could not be joined
        """
        handlers = {
            ChangeKind.INSERT: on_insert,
            ChangeKind.UPDATE: on_update,
            ChangeKind.DELETE: on_delete,
        }

        async def route(change: ListingChange) -> None:
            await handlers[change.kind](change)

        channel = RealtimeChannel(
            url=self.config.realtime_url,
            api_key=self.config.anon_key,
            table=self.config.listings_table,
            on_change=route,
            schema=self.realtime_config.schema,
            heartbeat_interval=self.realtime_config.heartbeat_interval,
            join_timeout=self.realtime_config.join_timeout,
        )
        await channel.start()
        return channel.stop


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_backend_instance: Optional[SupabaseBackend] = None


def get_backend() -> SupabaseBackend:
    """Get singleton backend instance."""
    global _backend_instance
    if _backend_instance is None:
        _backend_instance = SupabaseBackend()
    return _backend_instance


async def close_backend() -> None:
    global _backend_instance
    if _backend_instance is not None:
        await _backend_instance.close()
        _backend_instance = None
