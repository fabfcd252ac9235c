"""LeMedia web application API client.

Async client for the request-management API the bot fronts. Every call is
authenticated with the linked user's own API token (bearer), so permissions
and per-user scoping are enforced by the web app.

Endpoints used:
- GET   /api/tmdb/search               title search (movies and TV)
- POST  /api/v1/request                submit a request
- GET   /api/v1/request                own requests / pending requests (admin)
- PATCH /api/v1/request/<id>           approve or deny (admin)
- GET   /api/admin/status/health       service health snapshot (admin)
- GET   /api/tmdb/<type>/popular       trending titles
- GET   /api/library/recent            recently added library items
"""

import asyncio
from enum import Enum
from typing import Any

import httpx
import structlog
from pydantic import BaseModel

from src.config import settings

logger = structlog.get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

SEARCH_LIMIT = 5
TRENDING_LIMIT = 8
MY_REQUESTS_TAKE = 8
PENDING_TAKE = 10
RECENT_TAKE = 10

# Base delay between retries (multiplied by attempt number)
API_RETRY_DELAY = 0.5
RETRYABLE_STATUS_CODES = (502, 503, 504)

# Library media status meaning "available in the media server"
MEDIA_STATUS_AVAILABLE = 5


# =============================================================================
# Exceptions
# =============================================================================


class LeMediaError(Exception):
    """Base exception for LeMedia API errors."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class LeMediaAuthError(LeMediaError):
    """Raised when the API token is rejected (401/403)."""

    pass


class LeMediaUnavailableError(LeMediaError):
    """Raised when the API cannot be reached or answers with a server error."""

    pass


# =============================================================================
# Data Models
# =============================================================================


class RequestOutcome(str, Enum):
    """Result of submitting a request."""

    SUBMITTED = "submitted"
    ALREADY_REQUESTED = "already_requested"
    FAILED = "failed"


class SubmitResult(BaseModel):
    """Outcome of POST /api/v1/request."""

    outcome: RequestOutcome
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == RequestOutcome.SUBMITTED


class ActionResult(BaseModel):
    """Outcome of an admin approve/deny action."""

    ok: bool
    message: str = ""


class SearchResult(BaseModel):
    """Movie or TV search hit."""

    id: int
    media_type: str  # "movie" or "tv"
    title: str
    year: int | None = None
    overview: str | None = None
    poster_path: str | None = None
    request_status: str | None = None
    available: bool = False
    vote_average: float | None = None


class TrendingItem(BaseModel):
    """Popular movie or TV show."""

    id: int
    media_type: str
    title: str
    year: int | None = None
    vote_average: float | None = None
    overview: str | None = None


class RequestItem(BaseModel):
    """A media request as listed by the API."""

    id: str
    title: str
    status: str
    request_type: str
    created_at: str = ""
    tmdb_id: int | None = None


class ServiceDetail(BaseModel):
    """Health of one configured service."""

    name: str
    type: str
    healthy: bool
    enabled: bool = True
    status_text: str | None = None
    queue_size: int = 0
    failed_count: int = 0


class NewStuffItem(BaseModel):
    """Recently added library item."""

    id: int
    title: str
    year: str = ""
    type: str = "movie"
    available: bool = False


# =============================================================================
# Parsing helpers
# =============================================================================


def _parse_year(item: dict[str, Any]) -> int | None:
    """Extract the year from release_date or first_air_date."""
    date = item.get("release_date") or item.get("first_air_date")
    if not date:
        return None
    try:
        return int(str(date)[:4])
    except ValueError:
        return None


def _parse_vote(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return round(float(value), 1)


def _parse_request(item: dict[str, Any], default_status: str) -> RequestItem:
    media = item.get("media") or {}
    tmdb_id = item.get("tmdbId", item.get("tmdb_id"))
    return RequestItem(
        id=str(item.get("id")),
        title=item.get("title") or media.get("title") or "Unknown",
        status=item.get("statusText") or item.get("status") or default_status,
        request_type=(
            item.get("mediaType")
            or item.get("requestType")
            or item.get("request_type")
            or item.get("type")
            or "unknown"
        ),
        created_at=item.get("createdAt") or item.get("created_at") or "",
        tmdb_id=int(tmdb_id) if tmdb_id is not None else None,
    )


def _error_message(response: httpx.Response, default: str) -> str:
    """Extract a human-readable error from a JSON error body."""
    try:
        body = response.json()
    except ValueError:
        return default
    if not isinstance(body, dict):
        return default
    return str(body.get("message") or body.get("error") or default)


# =============================================================================
# LeMedia Client
# =============================================================================


class LeMediaClient:
    """Async client for the LeMedia API.

    Example:
        async with LeMediaClient(api_token) as api:
            results = await api.search("Dune")
            outcome = await api.submit_request(results[0].media_type, results[0].id)
    """

    def __init__(
        self,
        api_token: str,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
    ):
        """Initialize LeMedia client.

        Args:
            api_token: Per-user API token (plaintext)
            base_url: API base URL. Uses settings.internal_app_base_url if None.
            timeout: Request timeout in seconds. Uses settings.api_timeout if None.
            max_retries: Extra attempts on transient failures. Uses
                settings.api_max_retries if None; the scheduler passes 0.
        """
        self._api_token = api_token
        self._base_url = (base_url or settings.internal_app_base_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.api_timeout
        self._max_retries = max_retries if max_retries is not None else settings.api_max_retries
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "LeMediaClient":
        """Enter async context manager."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_token}",
            },
        )
        return self

    async def __aexit__(
        self,
        _exc_type: Any,
        _exc_val: Any,
        _exc_tb: Any,
    ) -> None:
        """Exit async context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client, ensuring it's initialized.

        Raises:
            RuntimeError: If client not initialized (not in context manager)
        """
        if self._client is None:
            raise RuntimeError("LeMediaClient must be used as async context manager")
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send a request, retrying connection errors, timeouts and 502/503/504.

        Returns:
            The final response, whatever its status

        Raises:
            LeMediaUnavailableError: Transport failure after all attempts
        """
        attempts = self._max_retries + 1
        last_error: Exception | None = None

        for attempt in range(attempts):
            try:
                response = await self.client.request(method, path, params=params, json=json)
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                last_error = e
                if attempt < attempts - 1:
                    logger.warning(
                        "lemedia_retry",
                        path=path,
                        attempt=attempt + 1,
                        max_retries=self._max_retries,
                        error=str(e),
                    )
                    await asyncio.sleep(API_RETRY_DELAY * (attempt + 1))
                    continue
                logger.warning("lemedia_unreachable", path=path, error=str(e))
                raise LeMediaUnavailableError(f"Cannot reach LeMedia API: {e}") from e
            except httpx.HTTPError as e:
                logger.warning("lemedia_http_error", path=path, error=str(e))
                raise LeMediaUnavailableError(f"HTTP error: {e}") from e

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < attempts - 1:
                logger.warning(
                    "lemedia_retry",
                    path=path,
                    attempt=attempt + 1,
                    max_retries=self._max_retries,
                    status=response.status_code,
                )
                await asyncio.sleep(API_RETRY_DELAY * (attempt + 1))
                continue
            return response

        # Only reachable with attempts == 0
        raise LeMediaUnavailableError("No response received from LeMedia API") from last_error

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET a JSON document, mapping error statuses to exceptions.

        Raises:
            LeMediaAuthError: Token rejected (401/403)
            LeMediaUnavailableError: Transport failure or 5xx
            LeMediaError: Other non-2xx statuses or invalid JSON
        """
        response = await self._request("GET", path, params=params)
        status = response.status_code

        if status in (401, 403):
            raise LeMediaAuthError(f"LeMedia rejected the API token ({status})", status)
        if status >= 500:
            raise LeMediaUnavailableError(f"LeMedia API error {status}", status)
        if status >= 400:
            raise LeMediaError(f"LeMedia API error {status} for {path}", status)

        try:
            return response.json()
        except ValueError as e:
            raise LeMediaError(f"Invalid JSON from {path}") from e

    # =========================================================================
    # Search and requests
    # =========================================================================

    async def search(self, query: str) -> list[SearchResult]:
        """Search movies and TV shows by title.

        Args:
            query: Free-text title

        Returns:
            Up to 5 movie/TV results (people and other types are dropped)
        """
        data = await self._get_json("/api/tmdb/search", params={"q": query, "type": "all"})

        # Shape is either {results: {results: [...]}} or {results: [...]}
        outer = data.get("results") if isinstance(data, dict) else None
        if isinstance(outer, dict):
            raw = outer.get("results")
        else:
            raw = outer
        if not isinstance(raw, list):
            raw = []

        results = []
        for item in raw:
            if not isinstance(item, dict) or item.get("media_type") not in ("movie", "tv"):
                continue
            available = item.get("available_in_jellyfin")
            if available is None:
                available = item.get("available")
            results.append(
                SearchResult(
                    id=item["id"],
                    media_type=item["media_type"],
                    title=item.get("title") or item.get("name") or "Unknown",
                    year=_parse_year(item),
                    overview=item.get("overview"),
                    poster_path=item.get("poster_path"),
                    request_status=item.get("request_status"),
                    available=bool(available),
                    vote_average=_parse_vote(item.get("vote_average")),
                )
            )
            if len(results) >= SEARCH_LIMIT:
                break

        logger.info("lemedia_search", query=query, results_count=len(results))
        return results

    async def submit_request(self, media_type: str, tmdb_id: int) -> SubmitResult:
        """Submit a movie or TV request.

        A 409 maps to ALREADY_REQUESTED rather than a failure.
        """
        response = await self._request(
            "POST",
            "/api/v1/request",
            json={"mediaType": media_type, "mediaId": tmdb_id},
        )
        if response.status_code == 409:
            return SubmitResult(outcome=RequestOutcome.ALREADY_REQUESTED, message="already_requested")
        if response.is_success:
            logger.info("lemedia_request_submitted", media_type=media_type, tmdb_id=tmdb_id)
            return SubmitResult(outcome=RequestOutcome.SUBMITTED, message="success")

        message = _error_message(response, "Request failed")
        logger.warning(
            "lemedia_request_failed",
            media_type=media_type,
            tmdb_id=tmdb_id,
            status=response.status_code,
            message=message,
        )
        return SubmitResult(outcome=RequestOutcome.FAILED, message=message)

    async def get_my_requests(self) -> list[RequestItem]:
        """List the token owner's most recent requests."""
        data = await self._get_json("/api/v1/request", params={"take": MY_REQUESTS_TAKE})
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return []
        return [_parse_request(item, "unknown") for item in results if isinstance(item, dict)]

    async def get_pending_requests(self) -> list[RequestItem]:
        """List requests awaiting approval (admin)."""
        data = await self._get_json(
            "/api/v1/request", params={"filter": "pending", "take": PENDING_TAKE}
        )
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return []
        return [_parse_request(item, "pending") for item in results if isinstance(item, dict)]

    async def set_request_status(self, request_id: str, status: str) -> ActionResult:
        """Approve or deny a request (admin).

        Args:
            request_id: Request identifier
            status: "approved" or "denied"
        """
        if status not in ("approved", "denied"):
            raise ValueError(f"Unsupported request status: {status}")

        response = await self._request(
            "PATCH",
            f"/api/v1/request/{request_id}",
            json={"status": status},
        )
        if response.is_success:
            logger.info("lemedia_request_status_set", request_id=request_id, status=status)
            return ActionResult(ok=True, message=status)

        message = _error_message(response, "Failed")
        logger.warning(
            "lemedia_request_status_failed",
            request_id=request_id,
            status=status,
            http_status=response.status_code,
        )
        return ActionResult(ok=False, message=message)

    async def approve_request(self, request_id: str) -> ActionResult:
        return await self.set_request_status(request_id, "approved")

    async def deny_request(self, request_id: str) -> ActionResult:
        return await self.set_request_status(request_id, "denied")

    # =========================================================================
    # Admin status
    # =========================================================================

    async def get_service_health(self) -> list[ServiceDetail]:
        """Get health of all enabled services (admin).

        The top-level ``jellyfin`` flag becomes a "Jellyfin" entry.
        """
        data = await self._get_json("/api/admin/status/health")
        if not isinstance(data, dict):
            return []

        services: list[ServiceDetail] = []
        if data.get("jellyfin") is not None:
            services.append(
                ServiceDetail(name="Jellyfin", type="jellyfin", healthy=bool(data["jellyfin"]))
            )

        details = data.get("serviceDetails")
        for svc in details if isinstance(details, list) else []:
            if not isinstance(svc, dict) or not svc.get("enabled"):
                continue
            services.append(
                ServiceDetail(
                    name=svc.get("name") or svc.get("type") or "Unknown",
                    type=svc.get("type") or "unknown",
                    healthy=bool(svc.get("healthy")),
                    status_text=svc.get("statusText"),
                    queue_size=svc.get("queueSize") or 0,
                    failed_count=svc.get("failedCount") or 0,
                )
            )
        return services

    # =========================================================================
    # Discovery
    # =========================================================================

    async def get_trending(self, media_type: str) -> list[TrendingItem]:
        """Get popular movies or TV shows.

        Args:
            media_type: "movie" or "tv"
        """
        if media_type not in ("movie", "tv"):
            raise ValueError(f"Unsupported media type: {media_type}")

        data = await self._get_json(f"/api/tmdb/{media_type}/popular")
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return []

        return [
            TrendingItem(
                id=item["id"],
                media_type=media_type,
                title=item.get("title") or item.get("name") or "Unknown",
                year=_parse_year(item),
                vote_average=_parse_vote(item.get("vote_average")),
                overview=item.get("overview"),
            )
            for item in results[:TRENDING_LIMIT]
            if isinstance(item, dict)
        ]

    async def get_recently_added(self) -> list[NewStuffItem]:
        """Get recently added library items."""
        data = await self._get_json("/api/library/recent", params={"take": RECENT_TAKE})
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []

        return [
            NewStuffItem(
                id=item["id"],
                title=item.get("title") or "Unknown",
                year=str(item.get("year") or ""),
                type=item.get("type") or "movie",
                available=(
                    item.get("mediaStatus") == MEDIA_STATUS_AVAILABLE
                    or item.get("statusBadge") == "Available"
                ),
            )
            for item in items
            if isinstance(item, dict)
        ]
