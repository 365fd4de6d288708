#!/usr/bin/env python3
"""
Tumblr v1 JSON feed client.

Fetches one page of a blog's ``/api/read/json`` feed, decodes whatever
content-encoding the server used, strips the JavaScript assignment wrapper
and returns a FeedPage. Timeouts and connection resets are retried with a
fixed (optionally exponential) delay; HTTP status failures and malformed
payloads surface immediately.

API reference (v1):
    start  - post offset to start from (default 0)
    num    - number of posts to return (default 20, maximum 50)
    type   - text, quote, photo, link, chat, video or audio
    id     - a specific post id; use instead of start, num or type
    filter - 'text' (plain text only) or 'none' (no post-processing)
    tagged - only posts with this tag
"""

import errno
import gzip
import json
import zlib
from asyncio import TimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

from aiohttp import (
    ClientError,
    ClientOSError,
    ClientPayloadError,
    ClientSession,
    ClientTimeout,
    ServerDisconnectedError,
)

from config import config, get_logger, FEED_PAGE_SIZE_CEILING
from errors import (
    ConnectionResetFetchError,
    FetchError,
    FetchTimeoutError,
    HttpStatusError,
    MalformedPayloadError,
)
from telemetry import trace_span
from utils import RetryHelper

logger = get_logger("feed_client")

FEED_PATH = "api/read/json"
ENVELOPE_PREFIX = "var tumblr_api_read = "

# Rendered button markup the feed embeds in every post
UI_BUTTON_FIELDS = ("like-button", "reblog-button")


@dataclass
class FeedPage:
    """One page of the remote feed."""

    posts: List[Dict[str, Any]] = field(default_factory=list)
    start_offset: int = 0
    total_count: int = 0
    url: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.start_offset + len(self.posts) < self.total_count


def build_feed_url(
    base_url: str,
    offset: int = 0,
    page_size: int = FEED_PAGE_SIZE_CEILING,
    post_type: Optional[str] = None,
    tag: Optional[str] = None,
    filter: Optional[str] = None,
    post_id: Optional[str] = None,
) -> str:
    """Build the feed request URL. Same inputs always yield the same URL."""
    if post_id and (offset or post_type):
        raise ValueError("post_id cannot be combined with offset or post_type")
    if offset < 0:
        raise ValueError("offset must be >= 0")

    api_url = base_url if base_url.endswith('/') else base_url + '/'
    api_url += FEED_PATH

    params = []
    if post_id:
        params.append(("id", str(post_id)))
    else:
        if offset:
            params.append(("start", str(offset)))
        params.append(("num", str(max(1, min(int(page_size), FEED_PAGE_SIZE_CEILING)))))
        if post_type:
            params.append(("type", post_type))
    if filter:
        params.append(("filter", filter))
    if tag and not post_id:
        params.append(("tagged", tag))

    return f"{api_url}?{urlencode(params, quote_via=quote)}"


def decode_body(raw: bytes, content_encoding: Optional[str] = None) -> str:
    """Undo the response content-encoding and decode the body as UTF-8."""
    encoding = (content_encoding or "").strip().lower()
    try:
        if encoding in ("", "identity"):
            data = raw
        elif encoding in ("gzip", "x-gzip"):
            data = gzip.decompress(raw)
        elif encoding == "deflate":
            try:
                data = zlib.decompress(raw)
            except zlib.error:
                # Some servers send raw deflate without the zlib header
                data = zlib.decompress(raw, -zlib.MAX_WBITS)
        else:
            raise MalformedPayloadError(f"Unsupported content encoding: {content_encoding}")
    except (OSError, EOFError, zlib.error) as e:
        raise MalformedPayloadError(f"Could not decode {encoding} body: {e}") from e
    return data.decode("utf-8", errors="replace")


def _coerce_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_envelope(text: str, requested_offset: int = 0, url: Optional[str] = None) -> FeedPage:
    """Parse a ``var tumblr_api_read = {...};`` body into a FeedPage."""
    body = (text or "").strip()
    if not body:
        raise MalformedPayloadError("Missing content", url)

    if body.startswith(ENVELOPE_PREFIX):
        body = body[len(ENVELOPE_PREFIX):]
        end = body.rfind(';')
        if end != -1:
            body = body[:end]

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise MalformedPayloadError(f"Feed body is not valid JSON: {e}", url) from e

    if not isinstance(data, dict):
        raise MalformedPayloadError("Feed envelope is not an object", url)

    posts = data.get("posts") or []
    if not isinstance(posts, list) or not all(isinstance(p, dict) for p in posts):
        raise MalformedPayloadError("Feed 'posts' is not a list of objects", url)

    for post in posts:
        for name in UI_BUTTON_FIELDS:
            post.pop(name, None)

    start = _coerce_int(data.get("posts-start"), requested_offset)
    total = _coerce_int(data.get("posts-total"), start + len(posts))
    return FeedPage(posts=posts, start_offset=start, total_count=total, url=url)


def _format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    os_error = getattr(error, 'os_error', None)
    err_no = getattr(os_error, 'errno', None) or getattr(error, 'errno', None)
    if err_no is not None:
        parts.append(f"errno={err_no}")
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


def _is_connection_reset(error: ClientError) -> bool:
    if isinstance(error, (ServerDisconnectedError, ClientPayloadError)):
        return True
    if isinstance(error, ClientOSError):
        os_error = getattr(error, 'os_error', None)
        err_no = getattr(os_error, 'errno', None) or error.errno
        return err_no in (errno.ECONNRESET, errno.EPIPE, errno.ECONNABORTED)
    return False


class FeedClient:
    """Fetches feed pages over a shared aiohttp session."""

    def __init__(
        self,
        session: Optional[ClientSession] = None,
        *,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        exponential_backoff: Optional[bool] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self.user_agent = user_agent or config.USER_AGENT
        self.retry_helper = RetryHelper(
            max_attempts=max_attempts if max_attempts is not None else config.FETCH_MAX_ATTEMPTS,
            delay=retry_delay if retry_delay is not None else config.FETCH_RETRY_DELAY,
            exponential=config.FETCH_BACKOFF_EXPONENTIAL if exponential_backoff is None else exponential_backoff,
            max_delay=config.FETCH_MAX_RETRY_DELAY,
        )

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            # Decoding is done in decode_body so every encoding goes through one path
            self._session = ClientSession(auto_decompress=False, headers={'User-Agent': self.user_agent})
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "FeedClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @trace_span(
        "feed.fetch_page",
        tracer_name="feed_client",
        attr_from_args=lambda self, base_url, offset=0, *args, **kwargs: {
            "feed.base_url": base_url,
            "feed.offset": int(offset or 0),
        },
    )
    async def fetch_page(
        self,
        base_url: str,
        offset: int = 0,
        page_size: Optional[int] = None,
        post_type: Optional[str] = None,
        tag: Optional[str] = None,
        filter: Optional[str] = None,
        post_id: Optional[str] = None,
    ) -> FeedPage:
        """Fetch and decode one feed page.

        Raises:
            FetchError: Subclass describing the failure once retries, if any,
                are exhausted.
        """
        url = build_feed_url(
            base_url,
            offset=offset,
            page_size=page_size or config.FEED_PAGE_SIZE,
            post_type=post_type,
            tag=tag,
            filter=filter,
            post_id=post_id,
        )
        logger.debug(f"Feed URL: {url}")
        text = await self._download(url)
        return parse_envelope(text, requested_offset=offset, url=url)

    async def fetch_post(self, base_url: str, post_id: str, filter: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Fetch a single post by id, or None if the feed does not return it."""
        page = await self.fetch_page(base_url, post_id=post_id, filter=filter)
        for post in page.posts:
            if str(post.get("id")) == str(post_id):
                return post
        return page.posts[0] if page.posts else None

    async def _download(self, url: str) -> str:
        attempts = self.retry_helper.max_attempts
        for attempt in range(attempts):
            try:
                return await self._request(url)
            except FetchError as e:
                if not e.retryable:
                    raise
                if not self.retry_helper.should_retry(attempt):
                    logger.error(f"Failed to fetch {url} after {attempt + 1} attempts: {e}")
                    raise
                logger.warning(
                    "Retry %d/%d for %s due to error: %s",
                    attempt + 1,
                    attempts - 1,
                    url,
                    e,
                )
                await self.retry_helper.sleep_for_attempt(attempt)
        raise RuntimeError(f"Retry loop exited unexpectedly for {url}")

    async def _request(self, url: str) -> str:
        """Perform a single GET and classify any failure."""
        session = await self._get_session()
        try:
            async with session.get(url, timeout=ClientTimeout(total=self.timeout)) as response:
                if not 200 <= response.status < 300:
                    raise HttpStatusError(response.status, url)
                raw = await response.read()
                content_encoding = response.headers.get('Content-Encoding')
        except TimeoutError as e:
            raise FetchTimeoutError(f"Timed out after {self.timeout}s", url) from e
        except ConnectionResetError as e:
            raise ConnectionResetFetchError(f"Connection reset: {e}", url) from e
        except ClientError as e:
            detail = _format_client_error(e)
            if _is_connection_reset(e):
                raise ConnectionResetFetchError(detail, url) from e
            raise FetchError(detail, url) from e
        return decode_body(raw, content_encoding)
