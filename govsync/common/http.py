import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from govsync.common.errors import PermanentUpstreamError, TransientUpstreamError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Rate limiter for API requests.

    Caps the number of requests in flight and enforces a minimum spacing
    between consecutive request starts.
    """

    def __init__(self, max_concurrency: int = 1, min_interval: float = 0.0):
        self.semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self.min_interval = max(0.0, min_interval)
        self.last_request_time = 0.0
        self._spacing_lock = asyncio.Lock()

    async def __aenter__(self):
        """Enter the async context manager."""
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit the async context manager."""
        self.release()

    async def acquire(self):
        """Acquire a request slot, waiting out the minimum interval."""
        await self.semaphore.acquire()
        try:
            async with self._spacing_lock:
                elapsed = time.monotonic() - self.last_request_time
                if elapsed < self.min_interval:
                    wait_time = self.min_interval - elapsed
                    logger.debug(f"Waiting {wait_time:.3f} seconds before next request")
                    await asyncio.sleep(wait_time)
                self.last_request_time = time.monotonic()
        except BaseException:
            self.semaphore.release()
            raise

    def release(self):
        """Release a request slot."""
        self.semaphore.release()


class RequestClient:
    """Retrying JSON client for one upstream provider.

    429 and 5xx responses, timeouts and connection errors are retried with
    linear backoff; any other 4xx is raised immediately. The rate limiter is
    held only while an attempt is in flight, never during backoff.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        max_retries: int = 3,
        timeout: float = 10.0,
        min_interval: float = 0.0,
        backoff_step: float = 0.8,
        backoff_cap: float = 5.0,
        max_concurrency: int = 4,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.max_retries = max(0, max_retries)
        self.timeout = timeout
        self.backoff_step = backoff_step
        self.backoff_cap = backoff_cap
        self.rate_limiter = RateLimiter(max_concurrency, min_interval)
        self.session = session
        self._owns_session = False
        self.request_count = 0

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self):
        if self.session is None:
            self.session = aiohttp.ClientSession()
            self._owns_session = True

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None
            self._owns_session = False

    def backoff_delay(self, attempt: int) -> float:
        """Linear backoff for the given zero-based attempt."""
        return min(self.backoff_cap, self.backoff_step * (attempt + 1))

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        if not endpoint.startswith("/"):
            endpoint = f"/{endpoint}"
        return f"{self.base_url}{endpoint}"

    async def _attempt(self, method: str, url: str, params: Optional[Dict], payload: Any, as_text: bool = False) -> Any:
        async with self.rate_limiter:
            self.request_count += 1
            async with asyncio.timeout(self.timeout):
                async with self.session.request(
                    method,
                    url,
                    params=params,
                    json=payload,
                    headers=self.headers
                ) as response:
                    if response.status >= 400:
                        body = await response.text()
                        raise aiohttp.ClientResponseError(
                            response.request_info,
                            response.history,
                            status=response.status,
                            message=body[:200]
                        )
                    if as_text:
                        return await response.text()
                    return await response.json(content_type=None)

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        payload: Any = None,
        as_text: bool = False,
    ) -> Any:
        """Make a request, retrying transient failures.

        Returns the decoded JSON body, or the raw text when `as_text` is set.

        Raises:
            PermanentUpstreamError: for 4xx responses other than 429 and
                undecodable bodies.
            TransientUpstreamError: when every retry failed.
        """
        if self.session is None:
            await self.open()
        url = self._url(endpoint)
        last_error: Optional[BaseException] = None
        last_status: Optional[int] = None

        for attempt in range(self.max_retries + 1):
            try:
                return await self._attempt(method, url, params, payload, as_text)
            except aiohttp.ClientResponseError as e:
                if e.status != 429 and e.status < 500:
                    raise PermanentUpstreamError(self.name, endpoint, e.status, e.message) from e
                last_error, last_status = e, e.status
            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_error, last_status = e, None
            except ValueError as e:
                raise PermanentUpstreamError(self.name, endpoint, None, f"undecodable body: {e}") from e

            if attempt >= self.max_retries:
                break
            wait_time = self.backoff_delay(attempt)
            reason = last_status if last_status is not None else type(last_error).__name__
            logger.warning(
                f"{self.name} request {endpoint} failed ({reason}), "
                f"retrying in {wait_time:.1f}s ({attempt + 1}/{self.max_retries})"
            )
            await asyncio.sleep(wait_time)

        logger.error(f"Max retries exceeded for {self.name} request {endpoint}")
        raise TransientUpstreamError(self.name, endpoint, last_status, str(last_error or "request failed"))

    async def get(self, endpoint: str, params: Optional[Dict] = None) -> Any:
        return await self.request("GET", endpoint, params=params)

    async def get_text(self, endpoint: str, params: Optional[Dict] = None) -> str:
        return await self.request("GET", endpoint, params=params, as_text=True)

    async def post(self, endpoint: str, payload: Any = None, params: Optional[Dict] = None) -> Any:
        return await self.request("POST", endpoint, params=params, payload=payload if payload is not None else {})

    async def iter_pages(
        self,
        endpoint: str,
        page_size: int,
        max_pages: int,
        params: Optional[Dict] = None,
    ) -> AsyncIterator[List[Dict]]:
        """Yield count/page pages newest-first until an empty or short page."""
        for page in range(1, max_pages + 1):
            query = dict(params or {})
            query.update({"count": page_size, "page": page, "order": "desc"})
            rows = await self.get(endpoint, params=query)
            if not isinstance(rows, list) or not rows:
                return
            yield rows
            if len(rows) < page_size:
                return

    async def paginate(
        self,
        endpoint: str,
        page_size: int,
        max_pages: int,
        params: Optional[Dict] = None,
    ) -> List[Dict]:
        """Collect every page of a count/page endpoint."""
        rows: List[Dict] = []
        async for chunk in self.iter_pages(endpoint, page_size, max_pages, params):
            rows.extend(chunk)
        return rows

    async def paginate_offset(
        self,
        endpoint: str,
        limit: int,
        max_rows: int,
        params: Optional[Dict] = None,
    ) -> List[Dict]:
        """Collect rows of a limit/offset endpoint until a short page or max_rows."""
        rows: List[Dict] = []
        offset = 0
        while offset < max_rows:
            query = dict(params or {})
            query.update({"limit": limit, "offset": offset})
            chunk = await self.get(endpoint, params=query)
            if not isinstance(chunk, list) or not chunk:
                break
            rows.extend(chunk)
            if len(chunk) < limit:
                break
            offset += len(chunk)
        return rows
