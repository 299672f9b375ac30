"""Notion blog sync service.

Mirrors a public Notion page or database into blog posts/pages whose content
is sanitized HTML (see notion_html). Exposed three ways:
- notion_sync / notion_content: MCP tools
- POST /api/notion/sync, GET /api/notion/content, GET /api/notion/page/{id}:
  HTTP endpoints (--http mode)
- sync_notion(): the cached entry point, for embedding

Page URL: --page-url or NOTION_PAGE_URL. Private pages need a token_v2
cookie value passed via --token-file.
"""

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import quote, urlparse

import httpx
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from notion_html import (
    RecordMap,
    Row,
    blocks_to_html,
    extract_rows,
    find_oembed_urls,
    map_image_url,
    parse_record_map,
    rich_text_to_plain,
)

logger = logging.getLogger("notion-sync")

# Seconds a sync result is served from cache before refetching
REVALIDATE_SECONDS = 300

# Sync requests per client per window
RATE_LIMIT_MAX = 10
RATE_LIMIT_WINDOW = 60.0  # seconds

ADMIN_COOKIE = "ezblog_auth"

SYNC_FAILED_MESSAGE = "Failed to sync from Notion. Please check the URL and try again."


# =============================================================================
# Async HTTP Client
# =============================================================================

# Semaphore to bound concurrent requests to Notion during row fan-out
_notion_semaphore: Optional[asyncio.Semaphore] = None
_async_client: Optional[httpx.AsyncClient] = None

MAX_CONCURRENT_REQUESTS = 10


def _get_semaphore() -> asyncio.Semaphore:
    """Get or create the request-limiting semaphore."""
    global _notion_semaphore
    if _notion_semaphore is None:
        _notion_semaphore = asyncio.Semaphore(MAX_CONCURRENT_REQUESTS)
    return _notion_semaphore


async def _get_async_client() -> httpx.AsyncClient:
    """Get or create the async HTTP client."""
    global _async_client
    if _async_client is None or _async_client.is_closed:
        _async_client = httpx.AsyncClient(timeout=30.0)
    return _async_client


def _http_error_detail(e: Exception, max_len: int = 300) -> str:
    """Describe an exception for server-side logs.

    HTTP status errors include (truncated) response text.
    """
    if isinstance(e, httpx.HTTPStatusError) and e.response is not None:
        return f"HTTP {e.response.status_code}: {e.response.text[:max_len]}"
    return f"{type(e).__name__}: {e}"


# =============================================================================
# Configuration
# =============================================================================

# Optional token_v2 cookie (set via --token-file CLI arg)
_notion_token: Optional[str] = None

# Page or database to mirror (set via --page-url or NOTION_PAGE_URL)
_page_url: Optional[str] = os.environ.get("NOTION_PAGE_URL") or None


# =============================================================================
# Errors
# =============================================================================


class NotionSyncError(Exception):
    """Base error for sync failures. The message is safe to show to clients."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        """Convert to error response dict."""
        return {"error": self.message}


class InvalidNotionUrlError(NotionSyncError, ValueError):
    """The URL is not on an allowed Notion host or carries no page id."""

    status_code = 400


class RateLimitedError(NotionSyncError):
    """The caller's rate-limit gate refused the request."""

    status_code = 429

    def __init__(self, message: str = "Too many requests. Please try again later."):
        super().__init__(message)


class NotionFetchError(NotionSyncError):
    """Fetching from Notion failed and no cached result was available."""

    status_code = 500

    def __init__(self, message: str = SYNC_FAILED_MESSAGE):
        super().__init__(message)


# =============================================================================
# URL Validation
# =============================================================================

ALLOWED_NOTION_HOSTS = {"notion.so", "www.notion.so"}

PAGE_ID_PATTERN = re.compile(
    r'([0-9a-f]{32}|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$',
    re.IGNORECASE
)


def is_allowed_notion_url(url: Any) -> bool:
    """Check that a URL points at Notion before anything is fetched.

    Allowed: http(s) on notion.so, www.notion.so or any *.notion.site.
    """
    if not isinstance(url, str) or not url:
        return False
    try:
        parsed = urlparse(url.strip())
        host = (parsed.hostname or "").lower()
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https"):
        return False
    return host in ALLOWED_NOTION_HOSTS or host.endswith(".notion.site")


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Args:
        uuid_str: UUID with or without dashes.

    Returns:
        UUID in format xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def resolve_page_id(url: str) -> str:
    """Extract the page id from a Notion URL.

    Handles formats like:
    - https://www.notion.so/workspace/Page-Title-abc123def456...
    - https://team.notion.site/abc123def456...?v=...
    - https://www.notion.so/0b5c6f3e-....

    Returns:
        Dashed, lower-case page UUID.

    Raises:
        InvalidNotionUrlError: If the trailing path segment carries no id.
    """
    try:
        path = urlparse(url.strip()).path
    except (AttributeError, ValueError):
        raise InvalidNotionUrlError("Invalid Notion page URL")

    segment = path.rstrip("/").split("/")[-1]
    match = PAGE_ID_PATTERN.search(segment)
    if not match:
        raise InvalidNotionUrlError("Invalid Notion page URL")
    return normalize_uuid(match.group(1))


# =============================================================================
# Notion Record Map Client
# =============================================================================

NOTION_API_BASE = "https://www.notion.so/api/v3"

PAGE_CHUNK_LIMIT = 100
MAX_PAGE_CHUNKS = 50

# Rounds of syncRecordValues for child blocks missing after paging
MAX_SYNC_ROUNDS = 3
SYNC_BATCH_SIZE = 100

COLLECTION_VIEW_TYPES = {"collection_view", "collection_view_page"}


async def _notion_request_async(endpoint: str, payload: dict) -> dict:
    """POST to a public /api/v3 endpoint.

    Uses a semaphore to limit concurrent requests. No retries: errors
    propagate to the caller.
    """
    sem = _get_semaphore()
    client = await _get_async_client()

    headers = {
        "Content-Type": "application/json",
        "User-Agent": "notion-blog-sync/0.1",
    }
    if _notion_token:
        headers["Cookie"] = f"token_v2={_notion_token}"

    url = f"{NOTION_API_BASE}/{endpoint}"

    async with sem:
        response = await client.post(url, headers=headers, json=payload)
        response.raise_for_status()
        return response.json()


def _merge_record_map(target: dict, chunk: Any) -> None:
    """Merge a record map chunk into target, table by table."""
    if not isinstance(chunk, dict):
        return
    for table, records in chunk.items():
        if isinstance(records, dict):
            target.setdefault(table, {}).update(records)


async def load_page_chunks_async(page_id: str) -> dict:
    """Fetch a page's record map by paging through loadPageChunk."""
    cursor: dict = {"stack": []}
    record_map: dict = {}

    for chunk_number in range(MAX_PAGE_CHUNKS):
        data = await _notion_request_async("loadPageChunk", {
            "page": {"id": page_id},
            "limit": PAGE_CHUNK_LIMIT,
            "cursor": cursor,
            "chunkNumber": chunk_number,
            "verticalColumns": False,
        })

        chunk = data.get("recordMap") or {}
        if not chunk.get("block"):
            break
        _merge_record_map(record_map, chunk)

        new_cursor = data.get("cursor") or {}
        if not new_cursor.get("stack") or new_cursor == cursor:
            break
        cursor = new_cursor

    return record_map


async def query_collection_async(collection_id: str, view_id: str) -> tuple[dict, list[str]]:
    """Query a database view for its rows.

    Returns:
        (record map chunk, row block ids).
    """
    data = await _notion_request_async("queryCollection", {
        "collection": {"id": collection_id},
        "collectionView": {"id": view_id},
        "loader": {
            "type": "reducer",
            "reducers": {
                "collection_group_results": {
                    "type": "results",
                    "limit": 999,
                }
            },
            "searchQuery": "",
            "userTimeZone": "UTC",
        },
    })

    result = data.get("result") or {}
    group_results = (result.get("reducerResults") or {}).get("collection_group_results") or {}
    block_ids = [b for b in group_results.get("blockIds") or [] if isinstance(b, str)]
    return data.get("recordMap") or {}, block_ids


async def sync_record_values_async(pointers: list[tuple[str, str]]) -> dict:
    """Fetch individual records by (table, id) pointer, in batches."""
    record_map: dict = {}
    for start in range(0, len(pointers), SYNC_BATCH_SIZE):
        batch = pointers[start:start + SYNC_BATCH_SIZE]
        data = await _notion_request_async("syncRecordValues", {
            "requests": [
                {"pointer": {"table": table, "id": record_id}, "version": -1}
                for table, record_id in batch
            ]
        })
        _merge_record_map(record_map, data.get("recordMap"))
    return record_map


def _collection_pointer(record_map: RecordMap, block_id: str) -> tuple[Optional[str], list[str]]:
    """Return (collection id, view ids) of a collection view block."""
    block = record_map.get(block_id)
    if block is None:
        return None, []
    pointer = block.format.get("collection_pointer")
    collection_id = block.raw.get("collection_id")
    if not collection_id and isinstance(pointer, dict):
        collection_id = pointer.get("id")
    view_ids = [v for v in block.raw.get("view_ids") or [] if isinstance(v, str)]
    return collection_id if isinstance(collection_id, str) else None, view_ids


def _missing_pointers(record_map: RecordMap, page_id: str, row_ids: list[str]) -> list[tuple[str, str]]:
    """List records referenced from the page but absent from the record map.

    Child and linked pages contribute their own record only; their content
    belongs to a separate fetch.
    """
    missing: dict[tuple[str, str], None] = {}

    def want(table: str, record_id: Any) -> None:
        if not isinstance(record_id, str) or not record_id:
            return
        if table == "block" and record_id in record_map.blocks:
            return
        if table == "collection" and record_id in record_map.collections:
            return
        missing[(table, record_id)] = None

    for block in record_map.blocks.values():
        if not block.alive or (block.type == "page" and block.id != page_id):
            continue
        for child_id in block.content:
            want("block", child_id)
        for pointer_key in ("transclusion_reference_pointer", "alias_pointer"):
            pointer = block.format.get(pointer_key)
            if isinstance(pointer, dict):
                want("block", pointer.get("id"))
        if block.type in COLLECTION_VIEW_TYPES:
            collection_id, _ = _collection_pointer(record_map, block.id)
            want("collection", collection_id)

    for row_id in row_ids:
        want("block", row_id)

    return list(missing)


async def get_page_async(page_id: str) -> dict:
    """Fetch the complete raw record map for a page or database.

    Pages through loadPageChunk, queries the first view of every database
    on the page, then fills in referenced records that are still missing.

    Args:
        page_id: Dashed page UUID.

    Returns:
        Raw record map dict (block / collection / collection_view tables).

    Raises:
        httpx.HTTPError: On any failed request.
    """
    raw = await load_page_chunks_async(page_id)
    record_map = parse_record_map(raw)

    queries = []
    for block in record_map.blocks.values():
        if block.type not in COLLECTION_VIEW_TYPES or not block.alive:
            continue
        collection_id, view_ids = _collection_pointer(record_map, block.id)
        if collection_id and view_ids:
            queries.append(query_collection_async(collection_id, view_ids[0]))

    row_ids: list[str] = []
    if queries:
        for chunk, block_ids in await asyncio.gather(*queries):
            _merge_record_map(raw, chunk)
            row_ids.extend(block_ids)

    for _ in range(MAX_SYNC_ROUNDS):
        pointers = _missing_pointers(parse_record_map(raw), page_id, row_ids)
        if not pointers:
            break
        logger.debug(f"Fetching {len(pointers)} missing records for {page_id}")
        _merge_record_map(raw, await sync_record_values_async(pointers))

    return raw


# =============================================================================
# oEmbed Prefetch
# =============================================================================

OEMBED_ENDPOINTS = (
    ("spotify.com", "https://open.spotify.com/oembed?url="),
    ("soundcloud.com", "https://soundcloud.com/oembed?format=json&url="),
)

# Process-wide, keyed by source URL. Only successful lookups are stored.
_oembed_cache: dict[str, str] = {}


def oembed_endpoint(url: str) -> Optional[str]:
    """Return the oEmbed request URL for a Spotify/SoundCloud link."""
    host = (urlparse(url).hostname or "").lower()
    for domain, endpoint in OEMBED_ENDPOINTS:
        if host == domain or host.endswith("." + domain):
            return f"{endpoint}{quote(url, safe='')}"
    return None


async def fetch_oembed_html(url: str) -> Optional[str]:
    """Fetch a provider's embed HTML for url, or None if it has none."""
    endpoint = oembed_endpoint(url)
    if endpoint is None:
        return None
    client = await _get_async_client()
    response = await client.get(endpoint)
    response.raise_for_status()
    html = response.json().get("html")
    return html if isinstance(html, str) and html else None


async def prefetch_oembeds(urls: list[str]) -> dict[str, str]:
    """Resolve oEmbed HTML for urls, fetching uncached ones concurrently.

    Failures are logged and not cached, so a later sync retries them.

    Returns:
        Mapping of URL → embed HTML for every URL that has one.
    """
    pending = [url for url in dict.fromkeys(urls) if url not in _oembed_cache]
    if pending:
        results = await asyncio.gather(
            *(fetch_oembed_html(url) for url in pending),
            return_exceptions=True
        )
        for url, result in zip(pending, results):
            if isinstance(result, Exception):
                logger.warning(f"oEmbed lookup failed for {url}: {_http_error_detail(result)}")
            elif result:
                _oembed_cache[url] = result

    return {url: _oembed_cache[url] for url in urls if url in _oembed_cache}


async def render_page_html(record_map: RecordMap, page_id: str) -> str:
    """Prefetch a page's embeds, then render it to sanitized HTML."""
    embeds = await prefetch_oembeds(find_oembed_urls(record_map))
    return blocks_to_html(record_map, page_id, embeds)


# =============================================================================
# Row Conversion
# =============================================================================

EXCERPT_KEYS = ("summary", "excerpt", "description", "subtitle", "intro")
TAG_KEYS = ("tags", "categories", "labels")
PUBLISHED_AT_KEYS = ("date", "published_date", "publishedat", "publish date", "created")
COVER_IMAGE_KEYS = ("hero image", "heroimage", "hero_image", "cover", "image", "thumbnail", "banner")
COVER_SIZE_KEYS = ("hero size", "herosize", "hero_size")
COVER_ALT_KEYS = ("hero alt text", "hero alt", "heroalttext", "hero_alt_text", "alt text", "alttext")
SLUG_KEYS = ("slug", "url", "permalink")
CONTENT_TYPE_KEYS = ("type", "contenttype", "content type")


@dataclass
class ConvertedPost:
    """A post or page built from one Notion page."""
    notion_id: str
    title: str
    slug: str
    content: str
    excerpt: str = ""
    cover_image: str = ""
    cover_image_size: Optional[str] = None  # "big", "small" or unset
    cover_image_alt: str = ""
    tags: list[str] = field(default_factory=list)
    status: str = "draft"
    published_at: Optional[str] = None
    content_type: str = "post"

    def to_dict(self) -> dict:
        """Serialize with the camelCase keys storage expects."""
        result = {
            "notionId": self.notion_id,
            "title": self.title,
            "slug": self.slug,
            "excerpt": self.excerpt,
            "content": self.content,
            "coverImage": self.cover_image,
        }
        if self.cover_image_size:
            result["coverImageSize"] = self.cover_image_size
        result.update({
            "coverImageAlt": self.cover_image_alt,
            "tags": list(self.tags),
            "status": self.status,
            "publishedAt": self.published_at,
            "contentType": self.content_type,
        })
        return result


@dataclass
class SyncResult:
    """Posts and pages from one sync. kind is "page" or "database"."""
    kind: str
    posts: list[ConvertedPost] = field(default_factory=list)
    pages: list[ConvertedPost] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "posts": [p.to_dict() for p in self.posts],
            "pages": [p.to_dict() for p in self.pages],
        }


def _first_present(props: dict, keys: tuple[str, ...], default: Any = None) -> Any:
    """Return the first value under keys that is not None, "" or False."""
    for key in keys:
        value = props.get(key)
        if value is not None and value != "" and value is not False:
            return value
    return default


def slugify(title: str) -> str:
    """Lower-case title with non-alphanumeric runs collapsed to one hyphen."""
    return re.sub(r'[^a-z0-9]+', '-', title.lower()).strip('-')


def row_to_post(row: Row, content: str) -> ConvertedPost:
    """Derive a post from a database row's properties and rendered content.

    Schemas are user-authored, so most fields are read from the first of
    several alternately named properties.
    """
    props = row.properties
    title = props.get("title") or "Untitled"

    slug = _first_present(props, SLUG_KEYS) or slugify(title)

    type_value = str(_first_present(props, CONTENT_TYPE_KEYS, "post")).lower()
    content_type = "page" if type_value == "page" else "post"

    status_value = str(props.get("status") or "").lower()
    is_published = status_value == "published" or props.get("published") is True

    tags = _first_present(props, TAG_KEYS, [])
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",") if t.strip()]
    elif not isinstance(tags, list):
        tags = []

    size_value = str(_first_present(props, COVER_SIZE_KEYS, "")).lower()
    cover_image_size = size_value if size_value in ("big", "small") else None

    return ConvertedPost(
        notion_id=row.id,
        title=title,
        slug=str(slug),
        content=content,
        excerpt=str(_first_present(props, EXCERPT_KEYS, "")),
        cover_image=str(_first_present(props, COVER_IMAGE_KEYS, "")),
        cover_image_size=cover_image_size,
        cover_image_alt=str(_first_present(props, COVER_ALT_KEYS, "")),
        tags=[str(t) for t in tags],
        status="published" if is_published else "draft",
        published_at=_first_present(props, PUBLISHED_AT_KEYS),
        content_type=content_type,
    )


async def convert_row_async(row: Row) -> ConvertedPost:
    """Fetch a database row's own page and convert it."""
    record_map = parse_record_map(await get_page_async(row.id))
    content = await render_page_html(record_map, row.id)
    return row_to_post(row, content)


async def convert_single_page_async(record_map: RecordMap, page_id: str) -> ConvertedPost:
    """Convert a standalone page into one published post."""
    block = record_map.get(page_id)
    if block is None:
        raise NotionFetchError(f"Page {page_id} missing from record map")

    title = rich_text_to_plain(block.properties.get("title")) or "Untitled"
    cover = block.format.get("page_cover")
    return ConvertedPost(
        notion_id=page_id,
        title=title,
        slug=slugify(title),
        content=await render_page_html(record_map, page_id),
        cover_image=map_image_url(cover, page_id) if isinstance(cover, str) else "",
        status="published",
        published_at=datetime.now(timezone.utc).isoformat(),
        content_type="post",
    )


async def fetch_notion_data(page_url: str) -> SyncResult:
    """Fetch and convert a Notion page or database (uncached).

    A database's rows are fetched concurrently. Rows that fail are logged
    and left out; the rest of the sync continues.

    Args:
        page_url: Notion page or database URL.

    Returns:
        SyncResult with posts and pages partitioned by content type.

    Raises:
        InvalidNotionUrlError: If the URL carries no page id.
        httpx.HTTPError: If the top-level fetch fails.
    """
    page_id = resolve_page_id(page_url)
    record_map = parse_record_map(await get_page_async(page_id))

    if not record_map.has_collection:
        post = await convert_single_page_async(record_map, page_id)
        return SyncResult(kind="page", posts=[post], pages=[])

    rows = extract_rows(record_map)
    logger.info(f"Syncing {len(rows)} rows from database {page_id}")

    results = await asyncio.gather(
        *(convert_row_async(row) for row in rows),
        return_exceptions=True
    )

    items = []
    for row, result in zip(rows, results):
        if isinstance(result, Exception):
            logger.error(
                f"Failed to process row {row.id} ({row.properties.get('title')!r}): "
                f"{_http_error_detail(result)}"
            )
            continue
        items.append(result)

    return SyncResult(
        kind="database",
        posts=[item for item in items if item.content_type == "post"],
        pages=[item for item in items if item.content_type == "page"],
    )


# =============================================================================
# Sync Cache
# =============================================================================


@dataclass
class CacheEntry:
    page_id: str
    result: SyncResult
    fetched_at: float  # epoch seconds


class SyncCache:
    """Single-slot cache of the last successful sync.

    A hit needs the same page id and an age below the revalidation window.
    The entry outlives the window so it can be served stale on failure.
    """

    def __init__(self, ttl: float = REVALIDATE_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.clock = clock
        self._entry: Optional[CacheEntry] = None

    def age(self, entry: CacheEntry) -> float:
        return max(0.0, self.clock() - entry.fetched_at)

    def get_fresh(self, page_id: str) -> Optional[CacheEntry]:
        entry = self.get_stale(page_id)
        if entry is not None and self.age(entry) < self.ttl:
            return entry
        return None

    def get_stale(self, page_id: str) -> Optional[CacheEntry]:
        if self._entry is not None and self._entry.page_id == page_id:
            return self._entry
        return None

    def store(self, page_id: str, result: SyncResult) -> CacheEntry:
        self._entry = CacheEntry(page_id=page_id, result=result, fetched_at=self.clock())
        return self._entry

    @property
    def entry(self) -> Optional[CacheEntry]:
        return self._entry

    def clear(self) -> None:
        self._entry = None


_sync_cache = SyncCache()
_sync_lock: Optional[asyncio.Lock] = None


def _get_sync_lock() -> asyncio.Lock:
    """Get or create the lock serializing cache checks and fetches."""
    global _sync_lock
    if _sync_lock is None:
        _sync_lock = asyncio.Lock()
    return _sync_lock


def clear_caches() -> None:
    """Drop the sync result, oEmbed lookups and the sync lock."""
    global _sync_lock
    _sync_cache.clear()
    _oembed_cache.clear()
    _sync_lock = None


def _cached_payload(entry: CacheEntry, source: str) -> dict:
    age = _sync_cache.age(entry)
    return {
        "success": True,
        **entry.result.to_dict(),
        "source": source,
        "cacheAge": round(age),
        "revalidateIn": max(0, round(_sync_cache.ttl - age)),
    }


async def sync_notion(page_url: str, may_proceed: Optional[Callable[[], bool]] = None) -> dict:
    """Sync a Notion page or database, serving from cache when fresh.

    At most one fetch runs at a time; callers arriving during a fetch get
    its cached result.

    Args:
        page_url: Notion page or database URL.
        may_proceed: Optional gate (e.g. a rate limiter) asked before any work.

    Returns:
        Payload dict: success, type, posts, pages, source ("cache",
        "notion" or "stale-cache"), cacheAge, revalidateIn.

    Raises:
        RateLimitedError: If may_proceed refuses.
        InvalidNotionUrlError: If the URL is not a Notion page URL.
        NotionFetchError: If fetching fails and nothing is cached for the page.
    """
    if may_proceed is not None and not may_proceed():
        raise RateLimitedError()

    if not is_allowed_notion_url(page_url):
        raise InvalidNotionUrlError("Invalid URL. Only Notion URLs are allowed.")
    page_id = resolve_page_id(page_url)

    async with _get_sync_lock():
        entry = _sync_cache.get_fresh(page_id)
        if entry is not None:
            return _cached_payload(entry, "cache")

        try:
            result = await fetch_notion_data(page_url)
        except Exception as e:
            logger.error(f"Notion sync failed for {page_id}: {_http_error_detail(e)}")
            stale = _sync_cache.get_stale(page_id)
            if stale is not None:
                logger.warning(f"Serving stale cache for {page_id}")
                return _cached_payload(stale, "stale-cache")
            raise NotionFetchError() from e

        entry = _sync_cache.store(page_id, result)
        logger.info(
            f"Synced {page_id}: {len(result.posts)} posts, {len(result.pages)} pages ({result.kind})"
        )
        return _cached_payload(entry, "notion")


async def get_content() -> tuple[dict, int]:
    """Content for the configured page URL, with its HTTP status."""
    if not _page_url:
        return {"posts": [], "pages": [], "source": "none", "message": "No Notion URL configured"}, 200
    try:
        return await sync_notion(_page_url), 200
    except NotionSyncError as e:
        return {"posts": [], "pages": [], "source": "error", **e.to_dict()}, e.status_code


# =============================================================================
# Rate Limiting
# =============================================================================


@dataclass
class _RateLimitEntry:
    count: int
    reset_at: float


class RateLimiter:
    """Fixed-window request counter per client identity."""

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX,
        window: float = RATE_LIMIT_WINDOW,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_requests = max_requests
        self.window = window
        self.clock = clock
        self._entries: dict[str, _RateLimitEntry] = {}

    def check(self, key: str) -> bool:
        """Count a request for key. False if the window's quota is used up."""
        now = self.clock()
        entry = self._entries.get(key)

        if entry is None or now > entry.reset_at:
            self._entries[key] = _RateLimitEntry(count=1, reset_at=now + self.window)
            return True

        if entry.count >= self.max_requests:
            return False

        entry.count += 1
        return True

    def reset(self) -> None:
        self._entries.clear()


_rate_limiter = RateLimiter()


def client_identity(headers) -> str:
    """Rate-limit key: first x-forwarded-for address, then x-real-ip."""
    forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    return forwarded or headers.get("x-real-ip") or "unknown"


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP("notion-blog-sync", host="127.0.0.1", port=2052)


@mcp.tool()
async def notion_sync(page_url: str) -> dict:
    """Sync posts and pages from a Notion page or database.

    Args:
        page_url: Public Notion URL (notion.so or *.notion.site).

    Returns:
        {success, type, posts, pages, source, cacheAge, revalidateIn}, or
        {error, status} on failure. Each post's content is sanitized HTML.
    """
    try:
        return await sync_notion(page_url, may_proceed=lambda: _rate_limiter.check("mcp"))
    except NotionSyncError as e:
        return {**e.to_dict(), "status": e.status_code}


@mcp.tool()
async def notion_content() -> dict:
    """Return cached content for the configured Notion URL.

    Returns:
        {posts, pages, source, ...}. source is "none" when no URL is
        configured and "error" when the fetch failed with nothing cached.
    """
    payload, status = await get_content()
    if status != 200:
        payload["status"] = status
    return payload


# =============================================================================
# HTTP Endpoints
# =============================================================================


async def sync_endpoint(request: Request) -> JSONResponse:
    """POST /api/notion/sync with {"pageUrl": ...}. Requires the admin cookie."""
    if not _rate_limiter.check(client_identity(request.headers)):
        return JSONResponse(RateLimitedError().to_dict(), status_code=429)

    if request.cookies.get(ADMIN_COOKIE) != "true":
        return JSONResponse({"error": "Authentication required"}, status_code=401)

    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid request body"}, status_code=400)

    page_url = body.get("pageUrl") if isinstance(body, dict) else None
    if not page_url or not isinstance(page_url, str):
        return JSONResponse({"error": "Page URL is required"}, status_code=400)

    try:
        payload = await sync_notion(page_url)
    except NotionSyncError as e:
        return JSONResponse(e.to_dict(), status_code=e.status_code)
    except Exception:
        logger.exception("Unexpected error during Notion sync")
        return JSONResponse({"error": SYNC_FAILED_MESSAGE}, status_code=500)

    return JSONResponse(payload)


async def content_endpoint(request: Request) -> JSONResponse:
    """GET /api/notion/content: cached content of the configured page."""
    payload, status = await get_content()
    return JSONResponse(payload, status_code=status)


async def page_endpoint(request: Request) -> JSONResponse:
    """GET /api/notion/page/{page_id}: the raw record map for one page."""
    raw_id = request.path_params.get("page_id", "")
    if not raw_id:
        return JSONResponse({"error": "Page ID is required"}, status_code=400)

    match = PAGE_ID_PATTERN.search(raw_id)
    if not match:
        return JSONResponse({"error": "Invalid page ID", "success": False}, status_code=400)
    page_id = normalize_uuid(match.group(1))

    try:
        record_map = await get_page_async(page_id)
    except Exception as e:
        logger.error(f"Notion page fetch failed for {page_id}: {_http_error_detail(e)}")
        return JSONResponse({"error": "Failed to fetch Notion page", "success": False}, status_code=500)

    return JSONResponse({"recordMap": record_map, "pageId": page_id, "success": True})


async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    entry = _sync_cache.entry
    return JSONResponse({
        "status": "ok",
        "page_url": _page_url,
        "token_loaded": _notion_token is not None,
        "cache_age": round(_sync_cache.age(entry)) if entry else None,
    })


def create_app():
    """Build the HTTP app: MCP streamable HTTP plus the JSON endpoints."""
    app = mcp.streamable_http_app()
    app.add_route("/health", health_endpoint, methods=["GET"])
    app.add_route("/api/notion/sync", sync_endpoint, methods=["POST"])
    app.add_route("/api/notion/content", content_endpoint, methods=["GET"])
    app.add_route("/api/notion/page/{page_id}", page_endpoint, methods=["GET"])
    return app


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run the Notion blog sync server.

    Supports two transport modes:
    - stdio (default): MCP tools only
    - http: MCP plus the JSON endpoints on --host/--port

    Usage:
        notion-blog-sync --page-url https://team.notion.site/Blog-<id>
        notion-blog-sync --http --port 2052
    """
    import argparse

    parser = argparse.ArgumentParser(description="Notion Blog Sync Server")
    parser.add_argument(
        "--page-url",
        default=os.environ.get("NOTION_PAGE_URL"),
        help="Notion page or database to serve at /api/notion/content (default: $NOTION_PAGE_URL)"
    )
    parser.add_argument(
        "--token-file",
        help="Path to file containing a Notion token_v2 cookie (only for non-public pages)"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server instead of stdio"
    )
    parser.add_argument("--host", default="127.0.0.1", help="HTTP bind address")
    parser.add_argument("--port", type=int, default=2052, help="HTTP port")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    global _notion_token, _page_url
    if args.token_file:
        token_path = Path(args.token_file).expanduser()
        if not token_path.exists():
            logger.error(f"Token file not found: {token_path}")
            raise SystemExit(1)
        _notion_token = token_path.read_text().strip()
        if not _notion_token:
            logger.error("Token file is empty")
            raise SystemExit(1)
        logger.info(f"Notion token loaded from {token_path}")

    _page_url = args.page_url or None
    if _page_url and not is_allowed_notion_url(_page_url):
        logger.error(f"Not a Notion URL: {_page_url}")
        raise SystemExit(1)
    if not _page_url:
        logger.warning("No page URL configured; /api/notion/content will be empty")

    if args.http:
        import uvicorn

        logger.info(f"Starting Notion blog sync server on http://{args.host}:{args.port}")
        uvicorn.run(create_app(), host=args.host, port=args.port, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
