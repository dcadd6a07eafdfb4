"""Source knowledge-base API client with rate limiting and retry logic."""

import asyncio
import logging

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kb_governance.config import settings
from kb_governance.source.exceptions import (
    ArticleNotFoundError,
    RateLimitError,
    SourceError,
    SourceUnavailableError,
)
from kb_governance.source.models import (
    ArticlePage,
    ArticleRecord,
    Ticket,
    TicketRequest,
)

logger = logging.getLogger(__name__)

# Only published articles are mirrored
PUBLISHED_STATUS = 1


class SourceClient:
    """Async client for the source help desk API (articles and tickets)."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        requests_per_second: float | None = None,
        timeout: float | None = None,
        max_attempts: int = 5,
        backoff: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.SOURCE_API_URL).rstrip("/")
        self.token = token if token is not None else settings.SOURCE_API_TOKEN
        self.requests_per_second = requests_per_second or settings.SOURCE_REQUESTS_PER_SECOND
        self.timeout = timeout or settings.SOURCE_TIMEOUT
        self.max_attempts = max_attempts
        self.backoff = backoff
        self._transport = transport
        self._last_request_time: float = 0.0
        self._rate_lock = asyncio.Lock()

    async def _rate_limit(self) -> None:
        """Enforce rate limiting between requests."""
        async with self._rate_lock:
            min_interval = 1.0 / self.requests_per_second
            now = asyncio.get_running_loop().time()
            elapsed = now - self._last_request_time
            if elapsed < min_interval:
                await asyncio.sleep(min_interval - elapsed)
            self._last_request_time = asyncio.get_running_loop().time()

    async def _send(
        self,
        method: str,
        endpoint: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> httpx.Response:
        """Make a single authenticated request."""
        await self._rate_limit()

        query = {"token": self.token}
        if params:
            query.update(params)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.request(
                    method,
                    f"{self.base_url}{endpoint}",
                    params=query,
                    json=json,
                    headers={"Accept": "application/json"},
                )
            except httpx.TransportError as e:
                raise SourceUnavailableError(f"{type(e).__name__} calling {endpoint}") from e

        if response.status_code == 429:
            retry_after = int(response.headers.get("Retry-After", 60))
            logger.warning(f"Rate limited. Waiting {retry_after}s...")
            raise RateLimitError(retry_after)
        if response.status_code >= 500:
            raise SourceUnavailableError(
                f"Source returned {response.status_code} for {endpoint}",
                status_code=response.status_code,
            )
        return response

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> httpx.Response:
        """Make a request, retrying transient failures with exponential backoff."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((SourceUnavailableError, RateLimitError)),
            wait=wait_exponential(multiplier=self.backoff, min=2 * self.backoff, max=60),
            stop=stop_after_attempt(self.max_attempts),
            reraise=True,
        ):
            with attempt:
                return await self._send(method, endpoint, params=params, json=json)
        raise SourceError(f"No response for {endpoint}")  # pragma: no cover

    async def fetch_article(self, article_id: int) -> ArticleRecord:
        """Fetch one full article.

        Raises:
            ArticleNotFoundError: the source answered 404
            SourceError: any other failure after retries
        """
        response = await self._request("GET", f"/article/{article_id}")
        if response.status_code == 404:
            raise ArticleNotFoundError(article_id)
        if response.is_error:
            raise SourceError(
                f"Fetching article {article_id} failed with {response.status_code}",
                status_code=response.status_code,
            )
        data = response.json()
        if not data:
            raise ArticleNotFoundError(article_id)
        return ArticleRecord.from_api(data)

    async def search_articles(self, page: int, page_size: int) -> ArticlePage:
        """Fetch one page (1-based) of the published article summary feed."""
        response = await self._request(
            "GET",
            "/kb/article",
            params={"page": page, "pageSize": page_size, "status": PUBLISHED_STATUS},
        )
        if response.is_error:
            raise SourceError(
                f"Article search page {page} failed with {response.status_code}",
                status_code=response.status_code,
            )
        return ArticlePage.from_api(response.json(), page=page, page_size=page_size)

    async def create_ticket(self, request: TicketRequest) -> Ticket:
        """Open a ticket in the help desk."""
        response = await self._request("POST", "/tickets", json=request.to_api())
        if response.is_error:
            raise SourceError(
                f"Ticket creation failed with {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        ticket = Ticket.from_api(response.json())
        logger.info(f"Ticket created: id={ticket.id} protocol={ticket.protocol}")
        return ticket

    async def check_connection(self) -> bool:
        """Return True if the search endpoint answers."""
        try:
            await self.search_articles(page=1, page_size=1)
            return True
        except SourceError as e:
            logger.warning(f"Source connection check failed: {e}")
            return False
