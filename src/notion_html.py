"""Notion record map → sanitized HTML.

Pure, synchronous conversion of Notion's public record maps (the block graph
returned by the /api/v3 endpoints) into embeddable HTML:

- parse_record_map: boundary parsing into Block/Collection/RecordMap
- rich_text_to_plain / rich_text_to_html: rich text flattening
- sanitize_html: allow-list sanitizer applied once per page
- BlockRenderer / render_block / blocks_to_html: the recursive block renderer
- extract_rows: database rows projected through the collection schema

Nothing in this module performs I/O. Provider metadata (oEmbed HTML) is
fetched beforehand and passed in as a plain mapping.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional
from urllib.parse import parse_qs, quote, urlparse

from bs4 import BeautifulSoup
from bs4.element import PreformattedString, Tag

logger = logging.getLogger("notion-html")

# Deeper nesting renders as nothing
MAX_RENDER_DEPTH = 32

NOTION_SITE = "https://www.notion.so"


# =============================================================================
# Record Map Parsing
# =============================================================================


@dataclass
class Block:
    """One block record from a record map."""
    id: str
    type: str
    properties: dict = field(default_factory=dict)
    format: dict = field(default_factory=dict)
    content: list[str] = field(default_factory=list)
    parent_id: Optional[str] = None
    parent_table: Optional[str] = None
    alive: bool = True
    raw: dict = field(default_factory=dict)  # The full record, for rarely used fields


@dataclass
class Collection:
    """A database: its name and property schema (property id → {name, type})."""
    id: str
    name: str = ""
    schema: dict[str, dict] = field(default_factory=dict)


@dataclass
class RecordMap:
    """Parsed record map. Lookups never raise."""
    blocks: dict[str, Block] = field(default_factory=dict)
    collections: dict[str, Collection] = field(default_factory=dict)
    collection_views: dict[str, dict] = field(default_factory=dict)

    def get(self, block_id: Optional[str]) -> Optional[Block]:
        if not block_id:
            return None
        return self.blocks.get(block_id)

    @property
    def has_collection(self) -> bool:
        return bool(self.collections)


def _unwrap_record(entry: Any) -> dict:
    """Return the record inside a record map entry.

    Handles both {"value": {...}} and the double-wrapped
    {"value": {"value": {...}, "role": ...}} shape.
    """
    if not isinstance(entry, dict):
        return {}
    value = entry.get("value", entry)
    if isinstance(value, dict) and isinstance(value.get("value"), dict) and "role" in value:
        value = value["value"]
    return value if isinstance(value, dict) else {}


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_id_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def parse_block(block_id: str, record: dict) -> Block:
    """Build a Block from a raw record, defaulting every missing field."""
    block_type = record.get("type")
    return Block(
        id=str(record.get("id") or block_id),
        type=block_type if isinstance(block_type, str) else "",
        properties=_as_dict(record.get("properties")),
        format=_as_dict(record.get("format")),
        content=_as_id_list(record.get("content")),
        parent_id=record.get("parent_id") if isinstance(record.get("parent_id"), str) else None,
        parent_table=record.get("parent_table") if isinstance(record.get("parent_table"), str) else None,
        alive=record.get("alive") is not False,
        raw=record,
    )


def parse_record_map(raw: Any) -> RecordMap:
    """Parse a raw record map into typed records.

    Args:
        raw: The record map dict as returned by Notion (or anything else).

    Returns:
        A RecordMap. Malformed entries are skipped; this never raises.
    """
    record_map = RecordMap()
    if not isinstance(raw, dict):
        return record_map

    for block_id, entry in _as_dict(raw.get("block")).items():
        record = _unwrap_record(entry)
        if record:
            record_map.blocks[block_id] = parse_block(block_id, record)

    for collection_id, entry in _as_dict(raw.get("collection")).items():
        record = _unwrap_record(entry)
        if not record:
            continue
        schema = {
            prop_id: prop_def
            for prop_id, prop_def in _as_dict(record.get("schema")).items()
            if isinstance(prop_def, dict)
        }
        record_map.collections[collection_id] = Collection(
            id=str(record.get("id") or collection_id),
            name=rich_text_to_plain(record.get("name")),
            schema=schema,
        )

    for view_id, entry in _as_dict(raw.get("collection_view")).items():
        record = _unwrap_record(entry)
        if record:
            record_map.collection_views[view_id] = record

    return record_map


# =============================================================================
# Rich Text
# =============================================================================


def rich_text_to_plain(value: Any) -> str:
    """Flatten Notion rich text to plain text.

    Rich text is a list of segments like [["Hello", [["b"]]], [" world"]];
    only the literal text (first element) of each segment is kept.
    """
    if not value:
        return ""
    if isinstance(value, str):
        return value
    if not isinstance(value, list):
        return ""

    parts = []
    for segment in value:
        if isinstance(segment, str):
            parts.append(segment)
        elif isinstance(segment, list) and segment and segment[0]:
            parts.append(str(segment[0]))
    return "".join(parts)


def rich_text_to_html(value: Any) -> str:
    """Flatten rich text and escape it for insertion into HTML."""
    return html.escape(rich_text_to_plain(value), quote=True)


def _first_value(value: Any) -> str:
    """Return value[0][0] of a property as a string, or ""."""
    if not isinstance(value, list) or not value or not isinstance(value[0], list) or not value[0]:
        return ""
    first = value[0][0]
    return first if isinstance(first, str) else ""


def _escape_attr(value: Any) -> str:
    return html.escape(str(value or ""), quote=True)


# =============================================================================
# Sanitizer
# =============================================================================

ALLOWED_TAGS = frozenset({
    'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
    'p', 'br', 'hr',
    'ul', 'ol', 'li',
    'blockquote', 'pre', 'code',
    'a', 'img',
    'strong', 'em', 'b', 'i', 'u', 's', 'del',
    'table', 'thead', 'tbody', 'tr', 'th', 'td',
    'div', 'span',
    'iframe', 'video', 'source', 'object', 'embed', 'audio',
    'aside', 'nav', 'details', 'summary',
    'figure', 'figcaption',
    'input', 'label',
    'script', 'button', 'noscript',
})

ALLOWED_ATTRIBUTES = {
    'a': {'href', 'title', 'target', 'rel'},
    'img': {'src', 'alt', 'width', 'height', 'loading'},
    'iframe': {
        'src', 'width', 'height', 'frameborder', 'allow', 'allowfullscreen',
        'style', 'class', 'scrolling', 'loading', 'referrerpolicy', 'sandbox',
        'title', 'name', 'webkitallowfullscreen', 'mozallowfullscreen',
    },
    'video': {'src', 'controls', 'width', 'height', 'poster', 'autoplay', 'loop', 'muted', 'playsinline'},
    'audio': {'src', 'controls', 'autoplay', 'loop', 'muted', 'preload'},
    'source': {'src', 'type'},
    'object': {'data', 'type', 'width', 'height'},
    'embed': {'src', 'type', 'width', 'height'},
    'details': {'open'},
    'input': {'type', 'checked', 'disabled'},
    'label': {'for'},
    'button': {'type', 'title', 'aria-label'},
    'script': {'src', 'async', 'charset'},
}

GLOBAL_ATTRIBUTES = frozenset({'class', 'id', 'style', 'aria-hidden'})

URL_ATTRIBUTES = frozenset({'href', 'src', 'data', 'poster'})

ALLOWED_SCHEMES = frozenset({'http', 'https', 'mailto'})

# Dropped together with their content instead of being unwrapped
NON_TEXT_TAGS = frozenset({'style', 'textarea', 'option', 'title', 'template'})

ALLOWED_IFRAME_HOSTNAMES = frozenset({
    # Design & prototyping
    'www.figma.com', 'figma.com',
    'www.canva.com', 'canva.com',
    'excalidraw.com',
    'app.abstract.com',
    'invis.io', 'projects.invisionapp.com',
    'framer.com', 'www.framer.com',
    # Video
    'www.youtube.com', 'youtube.com', 'www.youtube-nocookie.com',
    'player.vimeo.com', 'vimeo.com',
    'www.loom.com', 'loom.com',
    # Audio
    'open.spotify.com', 'w.soundcloud.com',
    # Collaboration & whiteboards
    'miro.com', 'www.miro.com',
    'whimsical.com', 'www.whimsical.com',
    'www.lucidchart.com', 'lucidchart.com',
    'app.mural.co',
    # Google
    'www.google.com', 'maps.google.com', 'docs.google.com', 'drive.google.com',
    'calendar.google.com',
    # Code
    'codepen.io', 'gist.github.com', 'codesandbox.io', 'replit.com', 'stackblitz.com',
    # Social
    'twitter.com', 'platform.twitter.com', 'publish.twitter.com',
    # Forms & surveys
    'typeform.com', 'www.typeform.com', 'form.typeform.com',
    'tally.so', 'airtable.com',
    # Project management
    'trello.com', 'www.trello.com',
    'asana.com', 'app.asana.com',
    'app.clickup.com', 'clickup.com',
    'notion.so', 'www.notion.so',
    # Communication
    'discord.com', 'slack.com',
    # Storage & documents
    'onedrive.live.com', 'www.dropbox.com',
    # CRM & support
    'share.hsforms.com', 'app.hubspot.com',
    # Misc
    'calendly.com', 'www.calendly.com',
})

# Embed widget loaders; any other script is removed
ALLOWED_SCRIPT_HOSTNAMES = frozenset({'platform.twitter.com'})

_SCHEME_PATTERN = re.compile(r'^([a-zA-Z][a-zA-Z0-9+.\-]*):')
_IGNORED_URL_CHARS = re.compile(r'[\x00-\x20\x7f]+')
_UNSAFE_STYLE = re.compile(r'expression\s*\(|javascript:', re.IGNORECASE)


def _is_allowed_url(value: str) -> bool:
    """Check a URL attribute against the allowed schemes.

    Protocol-relative and scheme-less relative URLs are allowed.
    """
    url = _IGNORED_URL_CHARS.sub('', value)
    if url.startswith('//'):
        return True
    match = _SCHEME_PATTERN.match(url)
    if not match:
        return True
    return match.group(1).lower() in ALLOWED_SCHEMES


def _url_hostname(value: str) -> Optional[str]:
    url = value.strip()
    if url.startswith('//'):
        url = 'https:' + url
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https'):
        return None
    return parsed.hostname


def _sanitize_attributes(tag: Tag) -> None:
    allowed = ALLOWED_ATTRIBUTES.get(tag.name, set())
    for name in list(tag.attrs):
        attr = name.lower()
        if attr not in allowed and attr not in GLOBAL_ATTRIBUTES:
            del tag.attrs[name]
            continue
        value = tag.attrs[name]
        if attr in URL_ATTRIBUTES and not _is_allowed_url(str(value)):
            del tag.attrs[name]
        elif attr == 'style' and _UNSAFE_STYLE.search(str(value)):
            del tag.attrs[name]


def _sanitize_children(parent: Tag) -> None:
    for child in list(parent.children):
        if isinstance(child, Tag):
            _sanitize_tag(child)
        elif isinstance(child, PreformattedString):
            # Comments, doctypes, CDATA, processing instructions
            child.extract()


def _sanitize_tag(tag: Tag) -> None:
    name = (tag.name or '').lower()

    if name not in ALLOWED_TAGS:
        if name in NON_TEXT_TAGS:
            tag.decompose()
            return
        _sanitize_children(tag)
        tag.unwrap()
        return

    _sanitize_attributes(tag)

    if name == 'iframe':
        host = _url_hostname(str(tag.get('src', '')))
        if host not in ALLOWED_IFRAME_HOSTNAMES:
            tag.decompose()
            return
    elif name == 'script':
        host = _url_hostname(str(tag.get('src', '')))
        if host not in ALLOWED_SCRIPT_HOSTNAMES:
            tag.decompose()
            return
        tag.clear()
        return
    elif name == 'input' and str(tag.get('type', '')).lower() != 'checkbox':
        tag.decompose()
        return

    _sanitize_children(tag)


def sanitize_html(fragment: str) -> str:
    """Apply the allow-list policy to an HTML string.

    Disallowed tags are unwrapped (their text survives), disallowed
    attributes and URL schemes are removed, and iframes or scripts pointing
    at hosts outside the allow-lists are dropped entirely.

    Args:
        fragment: Assembled HTML for a page.

    Returns:
        HTML containing only allow-listed tags, attributes and hosts.
    """
    if not fragment:
        return ""
    soup = BeautifulSoup(fragment, "html.parser")
    _sanitize_children(soup)
    return str(soup)


class PageHtmlBuilder:
    """Collects rendered fragments for one page and sanitizes them on build.

    The only way to get page HTML out of this module, so every page passes
    through sanitize_html exactly once.
    """

    def __init__(self):
        self._parts: list[str] = []

    def append(self, fragment: str) -> None:
        if fragment:
            self._parts.append(fragment)

    def build(self) -> str:
        return sanitize_html("".join(self._parts))


# =============================================================================
# URL Helpers
# =============================================================================


def _host_matches(url: str, *domains: str) -> bool:
    """True if the URL's hostname is one of domains or a subdomain of one."""
    host = urlparse(url).hostname or ""
    return any(host == d or host.endswith("." + d) for d in domains)


def is_http_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://"))


YOUTUBE_PATH_PREFIXES = ("/shorts/", "/live/")


def _is_notion_hosted(url: str) -> bool:
    """True for attachment: URLs and Notion's private S3 URLs."""
    return (
        url.startswith("attachment:")
        or "secure.notion-static.com" in url
        or "prod-files-secure" in url
    )


def map_image_url(url: str, block_id: str) -> str:
    """Map a Notion-hosted image URL to its public image proxy.

    attachment: URLs and Notion's private S3 URLs are only viewable through
    www.notion.so/image with the owning block as permission record.
    Relative Notion paths get the site prefix. Other URLs pass through.
    """
    if not url:
        return ""
    if url.startswith("/"):
        return f"{NOTION_SITE}{url}"
    if _is_notion_hosted(url):
        return f"{NOTION_SITE}/image/{quote(url, safe='')}?table=block&id={block_id}&cache=v2"
    return url


def map_file_url(url: str, block_id: str) -> str:
    """Map a Notion-hosted video, audio, PDF or file to its signed URL.

    www.notion.so/signed redirects to a short-lived S3 URL; the image proxy
    only serves images.
    """
    if not url:
        return ""
    if url.startswith("/"):
        return f"{NOTION_SITE}{url}"
    if _is_notion_hosted(url):
        return f"{NOTION_SITE}/signed/{quote(url, safe='')}?table=block&id={block_id}"
    return url


def youtube_embed_url(url: str) -> Optional[str]:
    """Return the embed URL for a YouTube watch/short/live/share link."""
    parsed = urlparse(url)
    host = parsed.hostname or ""
    video_id = None
    if host == "youtu.be" or host.endswith(".youtu.be"):
        video_id = parsed.path.lstrip("/").split("/")[0]
    elif _host_matches(url, "youtube.com", "youtube-nocookie.com"):
        if parsed.path.startswith("/embed/"):
            return url
        prefix = next((p for p in YOUTUBE_PATH_PREFIXES if parsed.path.startswith(p)), None)
        if prefix:
            video_id = parsed.path[len(prefix):].split("/")[0]
        else:
            video_id = (parse_qs(parsed.query).get("v") or [None])[0]
    if not video_id:
        return None
    return f"https://www.youtube.com/embed/{video_id}"


def vimeo_embed_url(url: str) -> Optional[str]:
    """Return the player URL for a Vimeo link.

    The video id is the first all-digit path segment, so channel and
    showcase paths work. Unlisted links (vimeo.com/<id>/<hash>) carry the
    hash as the player's h parameter.
    """
    parsed = urlparse(url)
    if parsed.hostname == "player.vimeo.com":
        return url
    if not _host_matches(url, "vimeo.com"):
        return None
    segments = [s for s in parsed.path.split("/") if s]
    index = next((i for i, s in enumerate(segments) if s.isdigit()), None)
    if index is None:
        return None
    video_id = segments[index]
    unlisted_hash = segments[index + 1] if index + 1 < len(segments) else ""
    if unlisted_hash.isalnum():
        return f"https://player.vimeo.com/video/{video_id}?h={unlisted_hash}"
    return f"https://player.vimeo.com/video/{video_id}"


def figma_embed_url(url: str) -> str:
    if "embed_host" in url:
        return url
    return f"https://www.figma.com/embed?embed_host=notion&url={quote(url, safe='')}"


def miro_embed_url(url: str) -> str:
    if "miro.com/app/board/" not in url:
        return url
    board_id = url.split("board/", 1)[1].split("?")[0]
    return f"https://miro.com/app/embed/{board_id}"


def google_maps_embed_url(url: str) -> str:
    if "/embed" in url or "output=embed" in url:
        return url
    return f"https://maps.google.com/maps?q={quote(url, safe='')}&output=embed"


def is_oembed_provider(url: str) -> bool:
    """Spotify and SoundCloud links are embedded from their oEmbed HTML."""
    return _host_matches(url, "spotify.com", "soundcloud.com")


# =============================================================================
# Block Renderer
# =============================================================================

# Block types that are rendered as list items and coalesced with siblings
LIST_TAGS = {
    'bulleted_list': 'ul',
    'bulleted_list_item': 'ul',
    'numbered_list': 'ol',
    'numbered_list_item': 'ol',
}

# Block types whose source URL may point at an oEmbed provider
OEMBED_BLOCK_TYPES = {'audio', 'video', 'embed'}

EMBED_FAMILY = (
    'embed', 'maps', 'figma', 'typeform', 'codepen', 'gist', 'abstract',
    'invision', 'framer', 'whimsical', 'mural', 'loom',
)

VIDEO_IFRAME_ALLOW = "accelerometer; autoplay; clipboard-write; encrypted-media; gyroscope; picture-in-picture"

DATABASE_PLACEHOLDER = (
    '<div class="notion-database-placeholder">'
    '<p>📊 This content contains an embedded database.</p>'
    '<p>View in Notion for the full interactive experience.</p>'
    '</div>'
)

BlockRenderFn = Callable[["BlockRenderer", Block, int], str]

BLOCK_RENDERERS: dict[str, BlockRenderFn] = {}


def _renders(*block_types: str):
    """Register a renderer function for one or more block types."""
    def register(fn: BlockRenderFn) -> BlockRenderFn:
        for block_type in block_types:
            BLOCK_RENDERERS[block_type] = fn
        return fn
    return register


def block_source(block: Block) -> str:
    """Find a block's source URL in any of the places Notion stores it."""
    candidates = (
        _first_value(block.properties.get("source")),
        block.format.get("display_source"),
        block.format.get("source"),
        block.format.get("uri"),
        _first_value(block.raw.get("source")),
        _first_value(block.properties.get("link")),
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return ""


def _find_any_url(block: Block) -> str:
    """Return the block's source URL, or the first http(s) string found anywhere
    in its properties/format."""
    source = block_source(block)
    if is_http_url(source):
        return source

    stack: list[Any] = [block.properties, block.format]
    while stack:
        value = stack.pop(0)
        if is_http_url(value):
            return value
        if isinstance(value, dict):
            stack.extend(value.values())
        elif isinstance(value, list):
            stack.extend(value)
    return ""


def _iframe_16x9(src: str, allow: str = "") -> str:
    allow_attr = f' allow="{_escape_attr(allow)}"' if allow else ""
    return (
        '<div class="notion-embed notion-aspect-video">'
        f'<iframe src="{_escape_attr(src)}" class="notion-embed-frame" frameborder="0"{allow_attr} allowfullscreen></iframe>'
        '</div>'
    )


def _iframe_fixed(src: str, height: int, extra: str = "") -> str:
    return (
        '<div class="notion-embed">'
        f'<iframe src="{_escape_attr(src)}" width="100%" height="{height}" frameborder="0"{extra}></iframe>'
        '</div>'
    )


def _link_card(url: str, label: str, css_class: str = "notion-link-card") -> str:
    return (
        f'<a href="{_escape_attr(url)}" target="_blank" rel="noopener noreferrer" class="{css_class}">'
        f'<span>{html.escape(label)}</span></a>'
    )


def _external_audio_card(url: str) -> str:
    provider = "Spotify" if _host_matches(url, "spotify.com") else "SoundCloud"
    return (
        f'<a href="{_escape_attr(url)}" target="_blank" rel="noopener noreferrer" class="notion-audio-card">'
        f'<span class="notion-audio-provider">{provider}</span>'
        f'<span class="notion-audio-link">Open in {provider} ↗</span></a>'
    )


def _tweet_embed(url: str, label: str = "") -> str:
    return (
        '<div class="notion-tweet"><blockquote class="twitter-tweet">'
        f'<a href="{_escape_attr(url)}">{html.escape(label)}</a></blockquote>'
        '<script async src="https://platform.twitter.com/widgets.js" charset="utf-8"></script></div>'
    )


class BlockRenderer:
    """Renders blocks of one record map to HTML fragments.

    Holds the record map, the oEmbed lookup and the current render path
    (for cycle detection). Fragments are not sanitized here; use
    blocks_to_html for page output.
    """

    def __init__(self, record_map: RecordMap, embeds: Optional[Mapping[str, str]] = None):
        self.record_map = record_map
        self.embeds: Mapping[str, str] = embeds or {}
        self._path: set[str] = set()

    def render(self, block_id: str, depth: int = 0) -> str:
        """Render one block and its nested children."""
        block = self.record_map.get(block_id)
        if block is None or not block.alive:
            return ""
        if depth >= MAX_RENDER_DEPTH or block.id in self._path:
            logger.warning(f"Skipping block {block.id} ({block.type}): nesting too deep or cyclic")
            return ""

        list_tag = LIST_TAGS.get(block.type)
        self._path.add(block.id)
        try:
            if list_tag:
                return f"<{list_tag}>{self._render_list_item(block, depth)}</{list_tag}>"
            return self._dispatch(block, depth)
        except Exception as e:
            logger.warning(f"Failed to render block {block.id} ({block.type}): {type(e).__name__}: {e}")
            return ""
        finally:
            self._path.discard(block.id)

    def render_children(self, block_ids: list[str], depth: int) -> str:
        """Render sibling blocks in order, grouping adjacent list items.

        Consecutive bulleted (or numbered) items share a single <ul> (<ol>).
        """
        parts = []
        open_tag = None
        for block_id in block_ids:
            block = self.record_map.get(block_id)
            list_tag = LIST_TAGS.get(block.type) if block and block.alive else None

            if list_tag != open_tag and open_tag:
                parts.append(f"</{open_tag}>")
                open_tag = None

            if list_tag:
                item = self._render_list_item_safely(block, depth)
                if not item:
                    continue
                if open_tag is None:
                    parts.append(f"<{list_tag}>")
                    open_tag = list_tag
                parts.append(item)
            else:
                parts.append(self.render(block_id, depth))

        if open_tag:
            parts.append(f"</{open_tag}>")
        return "".join(parts)

    def _render_list_item_safely(self, block: Block, depth: int) -> str:
        if depth >= MAX_RENDER_DEPTH or block.id in self._path:
            logger.warning(f"Skipping block {block.id} ({block.type}): nesting too deep or cyclic")
            return ""
        self._path.add(block.id)
        try:
            return self._render_list_item(block, depth)
        except Exception as e:
            logger.warning(f"Failed to render block {block.id} ({block.type}): {type(e).__name__}: {e}")
            return ""
        finally:
            self._path.discard(block.id)

    def _render_list_item(self, block: Block, depth: int) -> str:
        text = rich_text_to_html(block.properties.get("title"))
        children = self.render_children(block.content, depth + 1)
        return f"<li>{text}{children}</li>"

    def _dispatch(self, block: Block, depth: int) -> str:
        renderer = BLOCK_RENDERERS.get(block.type)
        if renderer is None:
            return _render_unknown(self, block, depth)
        return renderer(self, block, depth)

    def children_html(self, block: Block, depth: int) -> str:
        return self.render_children(block.content, depth + 1)

    def is_rendering(self, block_id: str) -> bool:
        """True if block_id is an ancestor on the current render path."""
        return block_id in self._path

    def oembed_html(self, url: str) -> Optional[str]:
        if not url:
            return None
        return self.embeds.get(url)


# --- Text blocks -------------------------------------------------------------


def _heading(tag: str) -> BlockRenderFn:
    def render(renderer: BlockRenderer, block: Block, depth: int) -> str:
        text = rich_text_to_html(block.properties.get("title"))
        if not text:
            return ""
        heading = f"<{tag}>{text}</{tag}>"
        if block.format.get("toggleable") and block.content:
            children = renderer.children_html(block, depth)
            return f'<details class="notion-toggle"><summary>{heading}</summary>{children}</details>'
        return heading
    return render


# Headings are demoted one level: the page title is the <h1>
_renders("header", "heading_1")(_heading("h2"))
_renders("sub_header", "heading_2")(_heading("h3"))
_renders("sub_sub_header", "heading_3")(_heading("h4"))


@_renders("text", "paragraph")
def _render_paragraph(renderer: BlockRenderer, block: Block, depth: int) -> str:
    text = rich_text_to_html(block.properties.get("title"))
    children = renderer.children_html(block, depth) if block.content else ""
    paragraph = f"<p>{text}</p>" if text else ""
    if children:
        return f'{paragraph}<div class="notion-indent">{children}</div>'
    return paragraph


@_renders("to_do")
def _render_to_do(renderer: BlockRenderer, block: Block, depth: int) -> str:
    text = rich_text_to_html(block.properties.get("title"))
    checked = _first_value(block.properties.get("checked")) == "Yes"
    if checked:
        box = '<input type="checkbox" checked disabled />'
        label = f'<span class="notion-to-do-checked"><s>{text}</s></span>'
    else:
        box = '<input type="checkbox" disabled />'
        label = f'<span>{text}</span>'
    children = renderer.children_html(block, depth) if block.content else ""
    if children:
        children = f'<div class="notion-indent">{children}</div>'
    return f'<div class="notion-to-do"><label>{box} {label}</label>{children}</div>'


@_renders("quote")
def _render_quote(renderer: BlockRenderer, block: Block, depth: int) -> str:
    text = rich_text_to_html(block.properties.get("title"))
    children = renderer.children_html(block, depth) if block.content else ""
    return f"<blockquote>{text}{children}</blockquote>"


@_renders("code")
def _render_code(renderer: BlockRenderer, block: Block, depth: int) -> str:
    code = rich_text_to_html(block.properties.get("title"))
    language = _first_value(block.properties.get("language")) or "Plain Text"
    language_class = re.sub(r'[^a-z0-9]+', '-', language.lower()).strip('-')
    return (
        '<div class="notion-code">'
        '<div class="notion-code-header">'
        f'<span class="notion-code-language">{html.escape(language)}</span>'
        '<button type="button" class="notion-code-copy" aria-label="Copy code">Copy</button>'
        '</div>'
        f'<pre><code class="language-{language_class}">{code}</code></pre>'
        '</div>'
    )


@_renders("divider")
def _render_divider(renderer: BlockRenderer, block: Block, depth: int) -> str:
    return "<hr />"


@_renders("equation")
def _render_equation(renderer: BlockRenderer, block: Block, depth: int) -> str:
    expression = html.escape(_first_value(block.properties.get("title")))
    if not expression:
        return ""
    return f'<div class="notion-equation">{expression}</div>'


@_renders("callout")
def _render_callout(renderer: BlockRenderer, block: Block, depth: int) -> str:
    text = rich_text_to_html(block.properties.get("title"))
    children = renderer.children_html(block, depth) if block.content else ""
    body = text + children if text else children
    if not body:
        return ""

    icon = block.format.get("page_icon") or "💡"
    if is_http_url(icon) or str(icon).startswith("/"):
        icon_html = f'<img src="{_escape_attr(map_image_url(icon, block.id))}" alt="" width="24" height="24" />'
    else:
        icon_html = html.escape(str(icon))
    return (
        '<aside class="notion-callout">'
        f'<span class="notion-callout-icon">{icon_html}</span>'
        f'<div class="notion-callout-text">{body}</div>'
        '</aside>'
    )


@_renders("toggle")
def _render_toggle(renderer: BlockRenderer, block: Block, depth: int) -> str:
    title = rich_text_to_html(block.properties.get("title"))
    children = renderer.children_html(block, depth) if block.content else ""
    if not children:
        children = '<p class="notion-toggle-empty">Empty toggle</p>'
    return (
        '<details class="notion-toggle">'
        f'<summary>{title}</summary>'
        f'<div class="notion-toggle-content">{children}</div>'
        '</details>'
    )


@_renders("breadcrumb")
def _render_breadcrumb(renderer: BlockRenderer, block: Block, depth: int) -> str:
    return ""


@_renders("table_of_contents")
def _render_table_of_contents(renderer: BlockRenderer, block: Block, depth: int) -> str:
    # Populated client-side from the rendered headings
    return (
        '<nav class="notion-table-of-contents">'
        '<p>Table of Contents</p>'
        '</nav>'
    )


# --- Layout and transclusion -------------------------------------------------


@_renders("column_list")
def _render_column_list(renderer: BlockRenderer, block: Block, depth: int) -> str:
    columns = []
    for column_id in block.content:
        column = renderer.record_map.get(column_id)
        if column is None or not column.alive:
            continue
        content = renderer.render_children(column.content, depth + 2)
        columns.append(f'<div class="notion-column">{content}</div>')
    if not columns:
        return ""
    return f'<div class="notion-columns">{"".join(columns)}</div>'


@_renders("column")
def _render_column(renderer: BlockRenderer, block: Block, depth: int) -> str:
    content = renderer.children_html(block, depth)
    return f'<div class="notion-column">{content}</div>' if content else ""


@_renders("transclusion_container")
def _render_synced_container(renderer: BlockRenderer, block: Block, depth: int) -> str:
    return renderer.children_html(block, depth)


@_renders("transclusion_reference")
def _render_synced_reference(renderer: BlockRenderer, block: Block, depth: int) -> str:
    pointer = _as_dict(block.format.get("transclusion_reference_pointer"))
    target = renderer.record_map.get(pointer.get("id"))
    if target is not None and not renderer.is_rendering(target.id):
        return renderer.render_children(target.content, depth + 1)
    return renderer.children_html(block, depth)


# --- Pages, links and databases ---------------------------------------------


def _page_link(renderer: BlockRenderer, page_id: str) -> str:
    if not page_id:
        return ""
    target = renderer.record_map.get(page_id)
    title = "Linked Page"
    icon = "📄"
    if target is not None:
        title = rich_text_to_plain(target.properties.get("title")) or title
        target_icon = target.format.get("page_icon")
        if isinstance(target_icon, str) and target_icon and not is_http_url(target_icon):
            icon = target_icon
    href = f"{NOTION_SITE}/{page_id.replace('-', '')}"
    return (
        f'<a href="{_escape_attr(href)}" target="_blank" rel="noopener noreferrer" class="notion-page-link">'
        f'<span>{html.escape(icon)}</span><span>{html.escape(title)}</span><span>↗</span></a>'
    )


@_renders("alias", "link_to_page")
def _render_alias(renderer: BlockRenderer, block: Block, depth: int) -> str:
    pointer = _as_dict(block.format.get("alias_pointer"))
    page_id = pointer.get("id") or block.raw.get("page_id") or ""
    return _page_link(renderer, page_id if isinstance(page_id, str) else "")


@_renders("page")
def _render_child_page(renderer: BlockRenderer, block: Block, depth: int) -> str:
    return _page_link(renderer, block.id)


@_renders("collection_view", "collection_view_page")
def _render_collection_view(renderer: BlockRenderer, block: Block, depth: int) -> str:
    return DATABASE_PLACEHOLDER


@_renders("table")
def _render_table(renderer: BlockRenderer, block: Block, depth: int) -> str:
    if block.format.get("collection_id") or block.raw.get("collection_id"):
        return DATABASE_PLACEHOLDER
    if not block.content:
        return ""

    column_order = block.format.get("table_block_column_order") or []
    column_header = bool(block.format.get("table_block_column_header"))
    row_header = bool(block.format.get("table_block_row_header"))

    rows = []
    row_index = 0
    for row_id in block.content:
        row = renderer.record_map.get(row_id)
        if row is None or row.type != "table_row" or not row.alive:
            continue
        if column_order:
            cells = [row.properties.get(column_id) for column_id in column_order]
        else:
            cells = row.properties.get("cells") or list(row.properties.values())

        cell_html = []
        for cell_index, cell in enumerate(cells):
            is_header = (column_header and row_index == 0) or (row_header and cell_index == 0)
            tag = "th" if is_header else "td"
            cell_html.append(f"<{tag}>{rich_text_to_html(cell)}</{tag}>")
        rows.append(f"<tr>{''.join(cell_html)}</tr>")
        row_index += 1

    if not rows:
        return ""
    return f'<div class="notion-table"><table><tbody>{"".join(rows)}</tbody></table></div>'


# --- Media -------------------------------------------------------------------


@_renders("image")
def _render_image(renderer: BlockRenderer, block: Block, depth: int) -> str:
    source = (
        block.format.get("display_source")
        or _first_value(block.properties.get("source"))
        or _first_value(block.raw.get("source"))
    )
    if not source or not isinstance(source, str):
        return ""
    src = map_image_url(source, block.id)

    caption = (
        rich_text_to_html(block.properties.get("caption"))
        or rich_text_to_html(block.format.get("caption"))
        or html.escape(str(block.format.get("block_caption") or ""))
        or rich_text_to_html(block.raw.get("caption"))
    )
    figcaption = f"<figcaption>{caption}</figcaption>" if caption else ""
    return (
        '<figure class="notion-image">'
        f'<img src="{_escape_attr(src)}" alt="{caption}" loading="lazy" />'
        f'{figcaption}</figure>'
    )


@_renders("video")
def _render_video(renderer: BlockRenderer, block: Block, depth: int) -> str:
    source = _first_value(block.properties.get("source")) or block.format.get("display_source") or ""
    if not source or not isinstance(source, str):
        return ""

    embedded = renderer.oembed_html(source)
    if embedded:
        return f'<div class="notion-embed">{embedded}</div>'

    embed_url = youtube_embed_url(source) or vimeo_embed_url(source)
    if embed_url:
        return _iframe_16x9(embed_url, allow=VIDEO_IFRAME_ALLOW)

    src = map_file_url(source, block.id)
    return f'<video src="{_escape_attr(src)}" controls class="notion-video"></video>'


@_renders("audio")
def _render_audio(renderer: BlockRenderer, block: Block, depth: int) -> str:
    source = _first_value(block.properties.get("source")) or block.format.get("display_source") or ""
    if not source or not isinstance(source, str):
        return ""
    if is_oembed_provider(source):
        return _render_provider_audio(renderer, source)
    src = map_file_url(source, block.id)
    return f'<audio src="{_escape_attr(src)}" controls class="notion-audio"></audio>'


def _render_provider_audio(renderer: BlockRenderer, url: str) -> str:
    embedded = renderer.oembed_html(url)
    if embedded:
        return f'<div class="notion-embed">{embedded}</div>'
    return _external_audio_card(url)


@_renders("tweet")
def _render_tweet(renderer: BlockRenderer, block: Block, depth: int) -> str:
    source = _first_value(block.properties.get("source"))
    if not source:
        return ""
    return _tweet_embed(source)


@_renders("bookmark")
def _render_bookmark(renderer: BlockRenderer, block: Block, depth: int) -> str:
    link = _first_value(block.properties.get("link"))
    if not link:
        return ""
    title = rich_text_to_html(block.properties.get("title")) or html.escape(link)
    description = rich_text_to_html(block.properties.get("description"))
    cover = block.format.get("bookmark_cover")

    description_html = f'<div class="notion-bookmark-description">{description}</div>' if description else ""
    cover_html = ""
    if isinstance(cover, str) and cover:
        cover_html = (
            '<div class="notion-bookmark-cover">'
            f'<img src="{_escape_attr(map_image_url(cover, block.id))}" alt="{title}" loading="lazy" />'
            '</div>'
        )
    return (
        f'<a href="{_escape_attr(link)}" target="_blank" rel="noopener noreferrer" class="notion-bookmark">'
        '<div class="notion-bookmark-body">'
        f'<div class="notion-bookmark-title">{title}</div>'
        f'{description_html}'
        f'<div class="notion-bookmark-link">{html.escape(link)}</div>'
        '</div>'
        f'{cover_html}</a>'
    )


@_renders(*EMBED_FAMILY)
def _render_embed(renderer: BlockRenderer, block: Block, depth: int) -> str:
    source = block_source(block)
    if not source:
        logger.debug(f"Embed block {block.id} ({block.type}) has no source")
        return ""

    if is_oembed_provider(source):
        embedded = renderer.oembed_html(source)
        if embedded:
            return f'<div class="notion-embed">{embedded}</div>'

    if _host_matches(source, "figma.com"):
        return _iframe_16x9(figma_embed_url(source))
    return _iframe_16x9(source)


@_renders("drive", "google_drive")
def _render_drive(renderer: BlockRenderer, block: Block, depth: int) -> str:
    drive = _as_dict(block.format.get("drive_properties"))
    source = (
        _first_value(block.properties.get("source"))
        or block.format.get("display_source")
        or drive.get("url")
    )
    if not source or not isinstance(source, str):
        return ""
    return _iframe_fixed(source, 500, " allowfullscreen")


@_renders("pdf")
def _render_pdf(renderer: BlockRenderer, block: Block, depth: int) -> str:
    source = _first_value(block.properties.get("source")) or block.format.get("display_source")
    if not source or not isinstance(source, str):
        return ""
    src = _escape_attr(map_file_url(source, block.id))
    return (
        '<div class="notion-pdf">'
        f'<object data="{src}" type="application/pdf" width="100%" height="600">'
        f'<p>Unable to display PDF file. <a href="{src}">Download</a> instead.</p>'
        '</object></div>'
    )


@_renders("file")
def _render_file(renderer: BlockRenderer, block: Block, depth: int) -> str:
    source = _first_value(block.properties.get("source")) or block.format.get("display_source")
    if not source or not isinstance(source, str):
        return ""
    caption = (
        rich_text_to_plain(block.properties.get("caption"))
        or rich_text_to_plain(block.properties.get("title"))
        or source.split("?")[0].rstrip("/").split("/")[-1]
        or "Download File"
    )
    return _link_card(map_file_url(source, block.id), caption, "notion-file")


@_renders("miro")
def _render_miro(renderer: BlockRenderer, block: Block, depth: int) -> str:
    source = _first_value(block.properties.get("source")) or block.format.get("display_source")
    if not source or not isinstance(source, str):
        return ""
    return _iframe_fixed(
        miro_embed_url(source), 500,
        ' scrolling="no" allow="fullscreen; clipboard-read; clipboard-write" allowfullscreen',
    )


@_renders("excalidraw")
def _render_excalidraw(renderer: BlockRenderer, block: Block, depth: int) -> str:
    source = _first_value(block.properties.get("source")) or block.format.get("display_source")
    if not source or not isinstance(source, str):
        return ""
    return _iframe_fixed(source, 500)


# --- Unknown block types -----------------------------------------------------


def _fallback_figma(renderer: BlockRenderer, url: str) -> str:
    return _iframe_16x9(figma_embed_url(url))


def _fallback_google_maps(renderer: BlockRenderer, url: str) -> str:
    return _iframe_fixed(
        google_maps_embed_url(url), 450,
        ' allowfullscreen loading="lazy" referrerpolicy="no-referrer-when-downgrade"',
    )


def _fallback_tweet(renderer: BlockRenderer, url: str) -> str:
    return _tweet_embed(url, "View Tweet")


def _fallback_loom(renderer: BlockRenderer, url: str) -> str:
    return _iframe_16x9(url.replace("/share/", "/embed/"))


def _fallback_link(renderer: BlockRenderer, url: str) -> str:
    return _link_card(url, url)


def _is_google_maps(url: str) -> bool:
    parsed = urlparse(url)
    if parsed.hostname == "maps.google.com":
        return True
    return _host_matches(url, "google.com") and parsed.path.startswith("/maps")


# Tried in order; the first matching predicate renders the URL
FALLBACK_EMBEDS: list[tuple[Callable[[str], bool], Callable[[BlockRenderer, str], str]]] = [
    (lambda url: _host_matches(url, "figma.com"), _fallback_figma),
    (_is_google_maps, _fallback_google_maps),
    (lambda url: _host_matches(url, "twitter.com", "x.com"), _fallback_tweet),
    (lambda url: _host_matches(url, "spotify.com"), _render_provider_audio),
    (lambda url: _host_matches(url, "soundcloud.com"), _render_provider_audio),
    (lambda url: _host_matches(url, "loom.com"), _fallback_loom),
    (lambda url: True, _fallback_link),
]


def _render_unknown(renderer: BlockRenderer, block: Block, depth: int) -> str:
    """Best-effort rendering for block types without a dedicated rule."""
    logger.debug(
        f"Unknown block type {block.type!r} ({block.id}); "
        f"properties={list(block.properties)} format={list(block.format)}"
    )

    url = _find_any_url(block)
    if url:
        for matches, render_url in FALLBACK_EMBEDS:
            if matches(url):
                return render_url(renderer, url)

    text = rich_text_to_html(block.properties.get("title"))
    if text:
        return f"<p>{text}</p>"
    return ""


# =============================================================================
# Page Rendering
# =============================================================================


def render_block(
    record_map: RecordMap,
    block_id: str,
    embeds: Optional[Mapping[str, str]] = None
) -> str:
    """Render one block (and its children) to an unsanitized HTML fragment."""
    return BlockRenderer(record_map, embeds).render(block_id)


def blocks_to_html(
    record_map: RecordMap,
    page_id: str,
    embeds: Optional[Mapping[str, str]] = None
) -> str:
    """Render a page's content blocks to sanitized HTML.

    Args:
        record_map: Parsed record map containing the page and its blocks.
        page_id: ID of the page block whose content is rendered.
        embeds: oEmbed HTML keyed by source URL (see find_oembed_urls).

    Returns:
        Sanitized HTML, or "" if the page is not in the record map.
    """
    page = record_map.get(page_id)
    if page is None:
        return ""

    renderer = BlockRenderer(record_map, embeds)
    builder = PageHtmlBuilder()
    builder.append(renderer.render_children(page.content, depth=0))
    return builder.build()


def find_oembed_urls(record_map: RecordMap) -> list[str]:
    """List the distinct Spotify/SoundCloud URLs used by audio, video and
    embed blocks, in block-map order."""
    urls: list[str] = []
    for block in record_map.blocks.values():
        if block.type not in OEMBED_BLOCK_TYPES:
            continue
        source = block_source(block)
        if is_http_url(source) and is_oembed_provider(source) and source not in urls:
            urls.append(source)
    return urls


# =============================================================================
# Database Rows
# =============================================================================


@dataclass
class Row:
    """A database row: page id plus properties keyed by lower-cased name."""
    id: str
    properties: dict[str, Any] = field(default_factory=dict)


def _date_start(value: Any) -> Optional[str]:
    try:
        date_data = value[0][1][0][1]
    except (IndexError, KeyError, TypeError):
        return None
    if not isinstance(date_data, dict):
        return None
    return date_data.get("start_date") or None


def _file_url(value: Any) -> Optional[str]:
    try:
        url = value[0][1][0][1]
    except (IndexError, KeyError, TypeError):
        return None
    return url if isinstance(url, str) and url else None


def _number(value: Any) -> Optional[float | int]:
    text = _first_value(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return None


def extract_property(prop_type: str, value: Any, row_id: str) -> tuple[bool, Any]:
    """Convert a raw property value by its schema type.

    Returns:
        (has_value, value). has_value is False when the property type is not
        extracted, or when Notion stores no value for select-like properties.
    """
    if prop_type in ("title", "text", "rich_text"):
        return True, rich_text_to_plain(value)
    if prop_type in ("select", "status"):
        if not value:
            return False, None
        return True, _first_value(value)
    if prop_type == "multi_select":
        if not value:
            return False, None
        return True, [t.strip() for t in _first_value(value).split(",") if t.strip()]
    if prop_type == "date":
        if not value:
            return False, None
        return True, _date_start(value)
    if prop_type == "checkbox":
        return True, _first_value(value) == "Yes"
    if prop_type in ("url", "email", "phone_number"):
        return True, _first_value(value)
    if prop_type == "number":
        return True, _number(value)
    if prop_type == "file":
        url = _file_url(value)
        if url is None:
            return False, None
        return True, map_image_url(url, row_id)
    return False, None


def extract_rows(record_map: RecordMap) -> list[Row]:
    """Project the database's page blocks through its collection schema.

    Rows without a title are dropped.
    """
    if not record_map.collections or not record_map.blocks:
        return []

    collection = next(iter(record_map.collections.values()))
    rows = []

    for block_id, block in record_map.blocks.items():
        if block.type != "page" or block.parent_table != "collection" or not block.alive:
            continue
        if block.parent_id and block.parent_id != collection.id:
            continue

        row = Row(id=block_id)
        for prop_id, prop_def in collection.schema.items():
            name = prop_def.get("name")
            if not isinstance(name, str) or not name:
                continue
            prop_type = prop_def.get("type", "")
            has_value, value = extract_property(prop_type, block.properties.get(prop_id), block_id)
            if not has_value:
                continue
            key = "title" if prop_type == "title" else name.lower()
            row.properties[key] = value

        if row.properties.get("title"):
            rows.append(row)
        else:
            logger.debug(f"Dropping untitled row {block_id} (properties: {list(block.properties)})")

    logger.debug(f"Extracted {len(rows)} rows from collection {collection.id}")
    return rows
