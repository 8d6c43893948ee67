"""Prompt Book MCP server: manage prompt collections stored in Notion databases.

Each prompt is a page in a Notion database ("prompt book") with a Name title,
a Type select, a Tags multi-select and a free-text body. Tools:
- list_prompts / search_prompts_by_title / get_prompts_by_tag / get_prompts_by_type
- read_prompt: page body decoded from Notion blocks to Markdown-like text
- add_prompt / update_prompt: body encoded into paragraph blocks (2000 char limit)
- list_all_types / list_all_tags / create_prompt_database
- list_prompt_books / add_prompt_book / activate_prompt_book / remove_prompt_book

Token: --token-file <path> CLI argument, or NOTION_TOKEN. Books live in a JSON
config file (--config, PROMPT_BOOK_CONFIG, or ~/.config/prompt-book-mcp/books.json).
"""

import asyncio
import json
import logging
import os
import random
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("prompt-book-mcp")

# =============================================================================
# Constants
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

# Retry configuration (HTTP 429 only)
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)

PAGE_SIZE = 100  # Notion maximum for paginated endpoints
MAX_BLOCK_TEXT_LENGTH = 2000  # Notion limit per rich text content
MAX_CHILDREN_PER_REQUEST = 100  # Notion limit per create/append call

DATABASE_ERROR_MESSAGE = (
    "Database ID is empty or invalid. Please use the create_prompt_database "
    "tool to create a new prompt database."
)


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Compute exponential backoff delay with jitter for rate limiting.

    Args:
        attempt: Current retry attempt number (0-indexed).
        retry_after: Optional Retry-After header value from server.

    Returns:
        Delay in seconds, including random jitter.
    """
    base_delay = RETRY_BASE_DELAY * (2 ** attempt)
    if retry_after is not None:
        base_delay = max(retry_after, base_delay)
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


# =============================================================================
# Errors
# =============================================================================


class PromptBookError(Exception):
    """Base class for errors raised by the Notion client and prompt operations."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        resource: str | None = None
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.resource = resource


class NotFoundError(PromptBookError):
    """Target page/database/block does not exist or is not shared with the token."""


class RemoteFailure(PromptBookError):
    """Any other failure reported by (or while talking to) the Notion API."""


class InvalidPromptTypeError(PromptBookError):
    """Prompt type is not one of the database's Type select options."""

    def __init__(self, prompt_type: str, valid_types: list[str]):
        super().__init__(
            f'Invalid type "{prompt_type}". Valid types are: {", ".join(valid_types)}.'
        )
        self.prompt_type = prompt_type
        self.valid_types = valid_types


class UnknownBookError(PromptBookError):
    """No prompt book is registered under the given name."""


class PartialUpdateFailure(PromptBookError):
    """Content replacement failed after the page had already been modified.

    Nothing is rolled back: the page keeps whatever the completed deletes and
    appends left behind.
    """

    def __init__(
        self,
        page_id: str,
        stage: str,
        deleted: int,
        existing: int,
        appended: int,
        cause: PromptBookError
    ):
        super().__init__(
            f"Content of {page_id} partially updated: failed during {stage} "
            f"after deleting {deleted}/{existing} old blocks and appending "
            f"{appended} new blocks: {cause}",
            status_code=cause.status_code,
            code=cause.code,
        )
        self.page_id = page_id
        self.stage = stage
        self.deleted = deleted
        self.existing = existing
        self.appended = appended
        self.cause = cause


class InvalidParamsError(ToolError):
    """Required tool input missing or malformed (raised before any remote call)."""


# =============================================================================
# ID Handling
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)
URL_TRAILING_ID_PATTERN = re.compile(r'([0-9a-f]{32}|[0-9a-f-]{36})$', re.IGNORECASE)


def resolve_notion_id(ref: str) -> str:
    """Turn a UUID (with or without dashes) or a Notion URL into a dashed UUID.

    Anything else is returned stripped but otherwise unchanged, so the API
    gets to reject it with a proper error.
    """
    ref = ref.strip()
    if ref.startswith("http"):
        match = NOTION_URL_PATTERN.match(ref)
        if match:
            id_match = URL_TRAILING_ID_PATTERN.search(match.group(1))
            if id_match:
                ref = id_match.group(1)
    if not UUID_PATTERN.match(ref):
        return ref
    clean = ref.replace('-', '').lower()
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


# =============================================================================
# Notion API Client
# =============================================================================

_RESOURCE_NAMES = {"pages": "page", "databases": "database", "blocks": "block"}


def _classify_error(response: httpx.Response, endpoint: str) -> PromptBookError:
    """Map an error response to NotFoundError or RemoteFailure.

    Notion error bodies look like {"object": "error", "status": 404,
    "code": "object_not_found", "message": "..."}.
    """
    code = None
    message = response.text[:300]
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = body.get("code")
        message = body.get("message") or message

    resource = _RESOURCE_NAMES.get(endpoint.strip("/").split("/")[0])
    if response.status_code == 404 or code == "object_not_found":
        return NotFoundError(message, response.status_code, code, resource)
    return RemoteFailure(
        f"HTTP {response.status_code}: {message}", response.status_code, code, resource
    )


class NotionClient:
    """Async Notion API client bound to one integration token.

    All remote errors leave this class as NotFoundError or RemoteFailure.
    """

    def __init__(self, token: str, http_client: Optional[httpx.AsyncClient] = None):
        self._token = token
        self._http = http_client

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=30.0)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()

    async def request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None
    ) -> dict:
        """Make an authenticated request, retrying on HTTP 429 with backoff."""
        client = await self._get_http()
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }
        url = f"{NOTION_API_BASE}{endpoint}"
        kwargs: dict[str, Any] = {}
        if method in ("POST", "PATCH"):
            kwargs["json"] = json_body or {}

        for attempt in range(MAX_RETRIES):
            try:
                response = await client.request(
                    method, url, headers=headers, params=params, **kwargs
                )
            except httpx.HTTPError as e:
                raise RemoteFailure(f"{type(e).__name__}: {e}") from e

            if response.status_code == 429 and attempt < MAX_RETRIES - 1:
                delay = _compute_retry_delay(attempt, _parse_retry_after(response))
                logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)
                continue

            if response.is_error:
                raise _classify_error(response, endpoint)
            return response.json()

    async def query_database(self, database_id: str, body: dict) -> dict:
        return await self.request("POST", f"/databases/{database_id}/query", json_body=body)

    async def list_children(
        self,
        block_id: str,
        page_size: int = PAGE_SIZE,
        start_cursor: Optional[str] = None
    ) -> dict:
        params: dict[str, Any] = {"page_size": page_size}
        if start_cursor:
            params["start_cursor"] = start_cursor
        return await self.request("GET", f"/blocks/{block_id}/children", params=params)

    async def retrieve_page(self, page_id: str) -> dict:
        return await self.request("GET", f"/pages/{page_id}")

    async def retrieve_database(self, database_id: str) -> dict:
        return await self.request("GET", f"/databases/{database_id}")

    async def create_page(
        self,
        database_id: str,
        properties: dict,
        children: list[dict]
    ) -> dict:
        body = {
            "parent": {"database_id": database_id},
            "properties": properties,
            "children": children,
        }
        return await self.request("POST", "/pages", json_body=body)

    async def create_database(self, page_id: str, title: str, properties: dict) -> dict:
        body = {
            "parent": {"type": "page_id", "page_id": page_id},
            "title": [{"type": "text", "text": {"content": title}}],
            "properties": properties,
        }
        return await self.request("POST", "/databases", json_body=body)

    async def append_children(self, block_id: str, children: list[dict]) -> dict:
        return await self.request(
            "PATCH", f"/blocks/{block_id}/children", json_body={"children": children}
        )

    async def delete_block(self, block_id: str) -> dict:
        return await self.request("DELETE", f"/blocks/{block_id}")

    async def update_page_properties(self, page_id: str, properties: dict) -> dict:
        return await self.request(
            "PATCH", f"/pages/{page_id}", json_body={"properties": properties}
        )


# =============================================================================
# Pagination
# =============================================================================

PageFetcher = Callable[[Optional[str], int], Awaitable[dict]]


async def collect_paginated(fetch_page: PageFetcher, page_size: int = PAGE_SIZE) -> list[dict]:
    """Follow next_cursor until the remote reports no more results.

    Args:
        fetch_page: Called as fetch_page(start_cursor, page_size); returns a
            Notion list response ({"results", "has_more", "next_cursor"}).
        page_size: Records requested per page.

    Returns:
        Every result, in the order the remote returned them. Errors from
        fetch_page propagate; nothing is returned for a failed walk.
    """
    results: list[dict] = []
    start_cursor: Optional[str] = None

    while True:
        response = await fetch_page(start_cursor, page_size)
        results.extend(response.get("results", []))

        if not response.get("has_more"):
            break
        start_cursor = response.get("next_cursor")
        if not start_cursor:
            # has_more without a cursor would loop forever
            logger.warning(
                f"Pagination stopped after {len(results)} results: has_more set but no next_cursor"
            )
            break

    return results


async def query_all_pages(
    client: NotionClient,
    database_id: str,
    query: Optional[dict] = None
) -> list[dict]:
    """Query every row of a database. `query` (filter, sorts) passes through as-is."""

    async def fetch_page(start_cursor: Optional[str], page_size: int) -> dict:
        body = dict(query or {})
        body["page_size"] = page_size
        if start_cursor:
            body["start_cursor"] = start_cursor
        return await client.query_database(database_id, body)

    return await collect_paginated(fetch_page)


async def fetch_all_children(client: NotionClient, block_id: str) -> list[dict]:
    """Fetch the immediate children of a block or page, across all pages."""

    async def fetch_page(start_cursor: Optional[str], page_size: int) -> dict:
        return await client.list_children(block_id, page_size, start_cursor)

    return await collect_paginated(fetch_page)


# =============================================================================
# Block Model
# =============================================================================


class BlockKind(Enum):
    """Notion block types understood by the codec. Anything else is UNKNOWN."""
    PARAGRAPH = "paragraph"
    HEADING_1 = "heading_1"
    HEADING_2 = "heading_2"
    HEADING_3 = "heading_3"
    BULLETED_LIST_ITEM = "bulleted_list_item"
    NUMBERED_LIST_ITEM = "numbered_list_item"
    CODE = "code"
    QUOTE = "quote"
    DIVIDER = "divider"
    TOGGLE = "toggle"
    TO_DO = "to_do"
    CALLOUT = "callout"
    TABLE = "table"
    TABLE_ROW = "table_row"
    IMAGE = "image"
    BOOKMARK = "bookmark"
    EMBED = "embed"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    PDF = "pdf"
    LINK_PREVIEW = "link_preview"
    EQUATION = "equation"
    SYNCED_BLOCK = "synced_block"
    TEMPLATE = "template"
    LINK_TO_PAGE = "link_to_page"
    CHILD_PAGE = "child_page"
    CHILD_DATABASE = "child_database"
    COLUMN_LIST = "column_list"
    COLUMN = "column"
    UNKNOWN = "unknown"

    @classmethod
    def from_notion(cls, type_name: str) -> "BlockKind":
        try:
            return cls(type_name)
        except ValueError:
            return cls.UNKNOWN


HEADING_KINDS = {BlockKind.HEADING_1, BlockKind.HEADING_2, BlockKind.HEADING_3}
LIST_KINDS = {BlockKind.BULLETED_LIST_ITEM, BlockKind.NUMBERED_LIST_ITEM}

# Media blocks: url is either inline ("url") or a file object (external/file)
MEDIA_KINDS = {
    BlockKind.IMAGE, BlockKind.BOOKMARK, BlockKind.EMBED, BlockKind.VIDEO,
    BlockKind.AUDIO, BlockKind.FILE, BlockKind.PDF, BlockKind.LINK_PREVIEW,
}

# Page references rendered as notion:// links
PAGE_LINK_KINDS = {BlockKind.LINK_TO_PAGE, BlockKind.CHILD_PAGE, BlockKind.CHILD_DATABASE}


@dataclass
class Block:
    """One node of a Notion page's content tree."""
    id: str
    kind: BlockKind
    type_name: str  # Notion's own type string (kept for UNKNOWN blocks)
    rich_text: list[str] = field(default_factory=list)
    has_children: bool = False
    # Kind-specific payload
    checked: Optional[bool] = None  # to_do
    language: Optional[str] = None  # code
    cells: list[list[str]] = field(default_factory=list)  # table_row
    url: Optional[str] = None  # media
    caption: list[str] = field(default_factory=list)  # media
    name: Optional[str] = None  # file name for file-like media
    expression: Optional[str] = None  # equation
    icon: Optional[str] = None  # callout emoji
    title: Optional[str] = None  # child_page / child_database
    target_type: Optional[str] = None  # page links: "page" or "database"
    target_id: Optional[str] = None  # page links
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def text(self) -> str:
        return "".join(self.rich_text)


def rich_text_runs(rich_text: Optional[list[dict]]) -> list[str]:
    """Extract the plain text of each run of a Notion rich_text array."""
    runs = []
    for item in rich_text or []:
        text = item.get("plain_text")
        if text is None:
            text = (item.get("text") or {}).get("content", "")
        runs.append(text)
    return runs


def _media_url(data: dict) -> Optional[str]:
    if "url" in data:
        return data["url"]
    # File objects: {"type": "external", "external": {"url": ...}} or "file"
    source_type = data.get("type")
    if source_type:
        return (data.get(source_type) or {}).get("url")
    return None


def _emoji_icon(icon: Optional[dict]) -> Optional[str]:
    if icon and icon.get("type") == "emoji":
        return icon.get("emoji")
    return None


def parse_block(raw: dict) -> Block:
    """Parse a Notion API block object into a Block."""
    type_name = raw.get("type", "unsupported")
    kind = BlockKind.from_notion(type_name)
    data = raw.get(type_name) or {}

    block = Block(
        id=raw.get("id", ""),
        kind=kind,
        type_name=type_name,
        rich_text=rich_text_runs(data.get("rich_text")),
        has_children=bool(raw.get("has_children")),
        raw=raw,
    )

    if kind is BlockKind.TO_DO:
        block.checked = bool(data.get("checked"))
    elif kind is BlockKind.CODE:
        block.language = data.get("language") or ""
    elif kind is BlockKind.TABLE_ROW:
        block.cells = [rich_text_runs(cell) for cell in data.get("cells", [])]
    elif kind in MEDIA_KINDS:
        block.url = _media_url(data)
        block.caption = rich_text_runs(data.get("caption"))
        block.name = data.get("name")
    elif kind is BlockKind.EQUATION:
        block.expression = data.get("expression", "")
    elif kind is BlockKind.CALLOUT:
        block.icon = _emoji_icon(data.get("icon"))
    elif kind is BlockKind.LINK_TO_PAGE:
        target_key = data.get("type", "page_id")
        block.target_type = target_key.removesuffix("_id")
        block.target_id = data.get(target_key)
    elif kind in (BlockKind.CHILD_PAGE, BlockKind.CHILD_DATABASE):
        block.title = data.get("title")
        block.target_type = "page" if kind is BlockKind.CHILD_PAGE else "database"
        block.target_id = block.id

    return block


def parse_blocks(raw_blocks: list[dict]) -> list[Block]:
    return [parse_block(raw) for raw in raw_blocks]


# =============================================================================
# Block → Text Decoding
# =============================================================================

# Async capability: block id -> ordered child blocks
ChildFetcher = Callable[[str], Awaitable[list[Block]]]

# (depth, list kind) -> next number to emit
ListContext = dict[tuple[int, BlockKind], int]

INDENT = "  "

HEADING_MARKERS = {
    BlockKind.HEADING_1: "# ",
    BlockKind.HEADING_2: "## ",
    BlockKind.HEADING_3: "### ",
}

MEDIA_LABELS = {
    BlockKind.IMAGE: "Image",
    BlockKind.BOOKMARK: "Bookmark",
    BlockKind.EMBED: "Embed",
    BlockKind.VIDEO: "Video",
    BlockKind.AUDIO: "Audio",
    BlockKind.FILE: "File",
    BlockKind.PDF: "PDF",
    BlockKind.LINK_PREVIEW: "Link preview",
}

BACKTICK_RUN_PATTERN = re.compile(r'`+')


@dataclass
class _DecodePass:
    """State shared by every level of one top-level decode."""
    fetch_children: ChildFetcher
    list_context: ListContext


def make_children_fetcher(client: NotionClient) -> ChildFetcher:
    """Bind fetch_all_children + parse_blocks to a client for the decoder."""

    async def fetch_children(block_id: str) -> list[Block]:
        return parse_blocks(await fetch_all_children(client, block_id))

    return fetch_children


async def _decode_sequence(blocks: list[Block], depth: int, state: _DecodePass) -> str:
    parts = []
    current_list: Optional[tuple[BlockKind, int]] = None

    for block in blocks:
        if block.kind is BlockKind.NUMBERED_LIST_ITEM and current_list != (block.kind, depth):
            # New numbered run at this depth
            state.list_context[(depth, block.kind)] = 1

        renderer = _RENDERERS.get(block.kind, _render_unknown)
        parts.append(await renderer(block, depth, state))

        current_list = (block.kind, depth) if block.kind in LIST_KINDS else None

    return "".join(parts)


async def _children_text(
    block: Block,
    depth: int,
    state: _DecodePass,
    always: bool = False
) -> str:
    """Decode a block's children at `depth` (fetched only when it has any)."""
    if not (block.has_children or always):
        return ""
    children = await state.fetch_children(block.id)
    return await _decode_sequence(children, depth, state)


async def _render_paragraph(block: Block, depth: int, state: _DecodePass) -> str:
    indent = INDENT * depth
    return f"{indent}{block.text}\n\n" + await _children_text(block, depth + 1, state)


async def _render_heading(block: Block, depth: int, state: _DecodePass) -> str:
    # Toggleable headings carry children
    indent = INDENT * depth
    marker = HEADING_MARKERS[block.kind]
    return f"{indent}{marker}{block.text}\n\n" + await _children_text(block, depth + 1, state)


async def _render_bulleted(block: Block, depth: int, state: _DecodePass) -> str:
    indent = INDENT * depth
    return f"{indent}• {block.text}\n" + await _children_text(block, depth + 1, state)


async def _render_numbered(block: Block, depth: int, state: _DecodePass) -> str:
    indent = INDENT * depth
    key = (depth, BlockKind.NUMBERED_LIST_ITEM)
    number = state.list_context.get(key, 1)
    state.list_context[key] = number + 1
    return f"{indent}{number}. {block.text}\n" + await _children_text(block, depth + 1, state)


def _code_fence(code: str) -> str:
    """Backtick fence longer than any backtick run inside the code."""
    longest = max((len(run) for run in BACKTICK_RUN_PATTERN.findall(code)), default=0)
    return "`" * max(3, longest + 1)


async def _render_code(block: Block, depth: int, state: _DecodePass) -> str:
    indent = INDENT * depth
    code = block.text
    fence = _code_fence(code)
    language = "" if block.language == "plain text" else block.language or ""
    return f"{indent}{fence}{language}\n{code}\n{indent}{fence}\n\n"


async def _render_quote(block: Block, depth: int, state: _DecodePass) -> str:
    indent = INDENT * depth
    return f"{indent}> {block.text}\n\n" + await _children_text(block, depth + 1, state)


async def _render_divider(block: Block, depth: int, state: _DecodePass) -> str:
    return f"{INDENT * depth}---\n\n"


async def _render_toggle(block: Block, depth: int, state: _DecodePass) -> str:
    indent = INDENT * depth
    children = await _children_text(block, depth + 1, state, always=True)
    return f"{indent}**{block.text}**\n{children}\n"


async def _render_to_do(block: Block, depth: int, state: _DecodePass) -> str:
    indent = INDENT * depth
    mark = "x" if block.checked else " "
    return f"{indent}- [{mark}] {block.text}\n" + await _children_text(block, depth + 1, state)


async def _render_callout(block: Block, depth: int, state: _DecodePass) -> str:
    indent = INDENT * depth
    icon = f"{block.icon} " if block.icon else ""
    return f"{indent}> {icon}{block.text}\n\n" + await _children_text(block, depth + 1, state)


def _table_cell(runs: list[str]) -> str:
    return "".join(runs).replace("|", "\\|").replace("\n", " ")


def _table_row_line(row: Block, indent: str) -> str:
    return f"{indent}| " + " | ".join(_table_cell(cell) for cell in row.cells) + " |"


async def _render_table(block: Block, depth: int, state: _DecodePass) -> str:
    """Markdown table; the first row is always treated as the header."""
    indent = INDENT * depth
    rows = [
        row for row in await state.fetch_children(block.id)
        if row.kind is BlockKind.TABLE_ROW
    ]
    if not rows:
        return ""

    lines = [_table_row_line(rows[0], indent)]
    lines.append(f"{indent}|" + " --- |" * len(rows[0].cells))
    lines.extend(_table_row_line(row, indent) for row in rows[1:])
    return "\n".join(lines) + "\n\n"


async def _render_table_row(block: Block, depth: int, state: _DecodePass) -> str:
    # Only reached for a row outside a table
    return _table_row_line(block, INDENT * depth) + "\n"


async def _render_media(block: Block, depth: int, state: _DecodePass) -> str:
    indent = INDENT * depth
    label = "".join(block.caption) or block.name or MEDIA_LABELS[block.kind]
    url = block.url or ""
    if block.kind is BlockKind.IMAGE:
        return f"{indent}![{label}]({url})\n\n"
    return f"{indent}[{label}]({url})\n\n"


async def _render_equation(block: Block, depth: int, state: _DecodePass) -> str:
    indent = INDENT * depth
    return f"{indent}$$\n{indent}{block.expression or ''}\n{indent}$$\n\n"


async def _render_inline_children(block: Block, depth: int, state: _DecodePass) -> str:
    # synced_block, column_list, column: no marker, children at the same depth
    return await _children_text(block, depth, state)


async def _render_page_link(block: Block, depth: int, state: _DecodePass) -> str:
    indent = INDENT * depth
    label = block.title or "Linked page"
    return f"{indent}[{label}](notion://{block.target_type or 'page'}/{block.target_id or ''})\n\n"


async def _render_template(block: Block, depth: int, state: _DecodePass) -> str:
    indent = INDENT * depth
    return f"{indent}*Template: {block.text}*\n\n" + await _children_text(block, depth + 1, state)


async def _render_unknown(block: Block, depth: int, state: _DecodePass) -> str:
    # Nothing to show for the block itself, but nested content is kept
    return await _children_text(block, depth, state)


_RENDERERS: dict[BlockKind, Callable[[Block, int, _DecodePass], Awaitable[str]]] = {
    BlockKind.PARAGRAPH: _render_paragraph,
    BlockKind.HEADING_1: _render_heading,
    BlockKind.HEADING_2: _render_heading,
    BlockKind.HEADING_3: _render_heading,
    BlockKind.BULLETED_LIST_ITEM: _render_bulleted,
    BlockKind.NUMBERED_LIST_ITEM: _render_numbered,
    BlockKind.CODE: _render_code,
    BlockKind.QUOTE: _render_quote,
    BlockKind.DIVIDER: _render_divider,
    BlockKind.TOGGLE: _render_toggle,
    BlockKind.TO_DO: _render_to_do,
    BlockKind.CALLOUT: _render_callout,
    BlockKind.TABLE: _render_table,
    BlockKind.TABLE_ROW: _render_table_row,
    **{kind: _render_media for kind in MEDIA_KINDS},
    BlockKind.EQUATION: _render_equation,
    BlockKind.SYNCED_BLOCK: _render_inline_children,
    BlockKind.COLUMN_LIST: _render_inline_children,
    BlockKind.COLUMN: _render_inline_children,
    **{kind: _render_page_link for kind in PAGE_LINK_KINDS},
    BlockKind.TEMPLATE: _render_template,
    BlockKind.UNKNOWN: _render_unknown,
}


async def decode_blocks_to_text(
    blocks: list[Block],
    fetch_children: ChildFetcher,
    depth: int = 0,
    list_context: Optional[ListContext] = None
) -> str:
    """Render an ordered block tree as Markdown-like text.

    Children are fetched through `fetch_children` one subtree at a time, so
    output order always follows the tree. Numbered-list counters live in
    `list_context`, which is created here unless passed in and is shared by
    every recursive level of this call only.

    Args:
        blocks: Top-level blocks, in page order.
        fetch_children: Async callable returning a block's children.
        depth: Indentation level of `blocks` (two spaces per level).
        list_context: Filled in with the numbering counters used; each new
            numbered run still starts at 1.

    Returns:
        The decoded text. Same tree in, same text out.
    """
    state = _DecodePass(
        fetch_children=fetch_children,
        list_context={} if list_context is None else list_context,
    )
    return await _decode_sequence(blocks, depth, state)


# =============================================================================
# Text → Block Encoding
# =============================================================================

PARAGRAPH_BREAK = "\n\n"
SENTENCE_BREAKS = (". ", "! ", "? ")


def utf16_length(text: str) -> int:
    """Length in UTF-16 code units, the unit Notion's text limits count in."""
    return len(text.encode("utf-16-le")) // 2


def _utf16_window(text: str, max_units: int) -> int:
    """Longest prefix length (in str indexes) that fits in max_units UTF-16 units."""
    units = 0
    for index, char in enumerate(text):
        # Characters outside the BMP take a surrogate pair
        units += 2 if ord(char) > 0xFFFF else 1
        if units > max_units:
            return index
    return len(text)


def _find_break_point(text: str, max_length: int) -> int:
    """Index to cut `text` at so that text[:index] fits in max_length units.

    Delimiters must sit entirely inside the window and start past its
    midpoint; they stay with the preceding chunk.
    """
    window = _utf16_window(text, max_length)
    if window == 0:
        # A single surrogate pair wider than the limit cannot be split
        return 1
    midpoint = max_length / 2

    def past_midpoint(index: int) -> bool:
        return index >= 0 and utf16_length(text[:index]) > midpoint

    paragraph = text.rfind(PARAGRAPH_BREAK, 0, window)
    if past_midpoint(paragraph):
        return paragraph + len(PARAGRAPH_BREAK)

    sentence = max(text.rfind(marker, 0, window) for marker in SENTENCE_BREAKS)
    if past_midpoint(sentence):
        return sentence + 2

    space = text.rfind(" ", 0, window)
    if past_midpoint(space):
        return space + 1

    return window


def split_text_into_chunks(text: str, max_length: int = MAX_BLOCK_TEXT_LENGTH) -> list[str]:
    """Split text into chunks of at most max_length UTF-16 code units.

    Prefers paragraph breaks, then sentence ends, then spaces. Joining the
    chunks gives back `text` exactly, and a surrogate pair is never split
    (with max_length 1 such a pair becomes a two-unit chunk of its own).

    Raises:
        ValueError: If max_length is not positive.
    """
    if max_length <= 0:
        raise ValueError(f"max_length must be positive, got {max_length}")

    chunks = []
    remaining = text
    while _utf16_window(remaining, max_length) < len(remaining):
        cut = _find_break_point(remaining, max_length)
        chunks.append(remaining[:cut])
        remaining = remaining[cut:]
    if remaining or not chunks:
        chunks.append(remaining)

    if len(chunks) > 1:
        logger.info(f"Split text into {len(chunks)} chunks (original length: {len(text)})")
    return chunks


def paragraph_block(content: str) -> dict:
    return {
        "object": "block",
        "type": "paragraph",
        "paragraph": {
            "rich_text": [{"type": "text", "text": {"content": content}}],
        },
    }


def encode_text_to_blocks(text: str, max_chunk_length: int = MAX_BLOCK_TEXT_LENGTH) -> list[dict]:
    """Encode text as paragraph blocks, one per chunk."""
    return [paragraph_block(chunk) for chunk in split_text_into_chunks(text, max_chunk_length)]


# =============================================================================
# Prompt Records & Properties
# =============================================================================

NAME_PROPERTY = "Name"
TYPE_PROPERTY = "Type"
TAGS_PROPERTY = "Tags"

PROMPT_DATABASE_TITLE = "GAI Prompt Book"
PROMPT_DATABASE_PROPERTIES = {
    NAME_PROPERTY: {"title": {}},
    TYPE_PROPERTY: {
        "select": {
            "options": [
                {"name": "Coding", "color": "pink"},
                {"name": "Image Generation", "color": "green"},
                {"name": "Conversation", "color": "brown"},
            ],
        },
    },
    TAGS_PROPERTY: {"multi_select": {"options": []}},
}


@dataclass
class PromptRecord:
    """Projection of a prompt page's properties."""
    id: str
    title: str
    type: Optional[str] = None
    tags: Optional[list[str]] = None
    url: Optional[str] = None

    def to_dict(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}


def extract_prompt_record(page: dict, show_all_fields: bool = False) -> PromptRecord:
    """Build a PromptRecord from a Notion page object.

    Tags and url are only filled in when show_all_fields is set.
    """
    props = page.get("properties") or {}

    title_prop = props.get(NAME_PROPERTY) or {}
    title = "".join(rich_text_runs(title_prop.get("title")))

    type_select = (props.get(TYPE_PROPERTY) or {}).get("select")
    prompt_type = type_select.get("name") if type_select else None

    record = PromptRecord(id=page.get("id", ""), title=title, type=prompt_type)

    if show_all_fields:
        tags = (props.get(TAGS_PROPERTY) or {}).get("multi_select")
        if tags is not None:
            record.tags = [tag.get("name", "") for tag in tags]
        record.url = page.get("url")

    return record


def build_prompt_properties(
    name: Optional[str] = None,
    prompt_type: Optional[str] = None,
    tags: Optional[list[str]] = None
) -> dict:
    """Notion property payload for the fields that are not None."""
    properties: dict[str, Any] = {}
    if name is not None:
        properties[NAME_PROPERTY] = {"title": [{"text": {"content": name}}]}
    if prompt_type is not None:
        properties[TYPE_PROPERTY] = {"select": {"name": prompt_type}}
    if tags is not None:
        properties[TAGS_PROPERTY] = {"multi_select": [{"name": tag} for tag in tags]}
    return properties


def schema_option_names(database: dict, property_name: str, property_type: str) -> list[str]:
    """Option names of a select/multi_select property in a database schema."""
    prop = (database.get("properties") or {}).get(property_name) or {}
    options = (prop.get(property_type) or {}).get("options") or []
    return [option.get("name", "") for option in options]


# =============================================================================
# Prompt Operations
# =============================================================================


async def list_prompt_records(
    client: NotionClient,
    database_id: str,
    query: Optional[dict] = None,
    show_all_fields: bool = False
) -> list[PromptRecord]:
    pages = await query_all_pages(client, database_id, query)
    return [extract_prompt_record(page, show_all_fields) for page in pages]


def title_filter(query: str) -> dict:
    return {"filter": {"property": NAME_PROPERTY, "title": {"contains": query}}}


def tag_filter(tag: str) -> dict:
    return {"filter": {"property": TAGS_PROPERTY, "multi_select": {"contains": tag}}}


def type_filter(prompt_type: str) -> dict:
    return {"filter": {"property": TYPE_PROPERTY, "select": {"equals": prompt_type}}}


async def read_prompt_text(client: NotionClient, prompt_id: str) -> str:
    """Fetch a prompt page's block tree and decode it to text.

    The page itself is retrieved first so a missing prompt fails as a page
    NotFoundError rather than a block one.
    """
    await client.retrieve_page(prompt_id)
    blocks = parse_blocks(await fetch_all_children(client, prompt_id))
    return await decode_blocks_to_text(blocks, make_children_fetcher(client))


async def list_prompt_types(client: NotionClient, database_id: str) -> list[str]:
    database = await client.retrieve_database(database_id)
    return schema_option_names(database, TYPE_PROPERTY, "select")


async def list_prompt_tags(client: NotionClient, database_id: str) -> list[str]:
    database = await client.retrieve_database(database_id)
    return schema_option_names(database, TAGS_PROPERTY, "multi_select")


async def _check_prompt_type(client: NotionClient, database_id: str, prompt_type: str) -> None:
    valid_types = await list_prompt_types(client, database_id)
    if prompt_type not in valid_types:
        raise InvalidPromptTypeError(prompt_type, valid_types)


def _batches(blocks: list[dict], size: int = MAX_CHILDREN_PER_REQUEST) -> list[list[dict]]:
    return [blocks[i:i + size] for i in range(0, len(blocks), size)]


async def create_prompt(
    client: NotionClient,
    database_id: str,
    name: str,
    detailed_prompt: str,
    prompt_type: str,
    tags: Optional[list[str]] = None
) -> str:
    """Create a prompt page and return its id.

    Notion takes at most 100 children with the page; the rest are appended
    right after. If those appends fail the page exists with a truncated body
    and PartialUpdateFailure is raised.
    """
    logger.info(f"Adding prompt with content length: {len(detailed_prompt)}")
    await _check_prompt_type(client, database_id, prompt_type)

    blocks = encode_text_to_blocks(detailed_prompt)
    first, rest = blocks[:MAX_CHILDREN_PER_REQUEST], blocks[MAX_CHILDREN_PER_REQUEST:]
    properties = build_prompt_properties(name, prompt_type, tags or [])
    page = await client.create_page(database_id, properties, first)
    page_id = page["id"]

    appended = len(first)
    for batch in _batches(rest):
        try:
            await client.append_children(page_id, batch)
        except PromptBookError as e:
            logger.error(f"Prompt {page_id} created with {appended}/{len(blocks)} blocks: {e}")
            raise PartialUpdateFailure(page_id, "append", 0, 0, appended, e) from e
        appended += len(batch)

    return page_id


async def replace_page_content(client: NotionClient, page_id: str, text: str) -> int:
    """Replace all of a page's blocks with `text` encoded as paragraphs.

    Every existing child is deleted with its own call, then the new blocks
    are appended. There is no transaction: a failure once the page has been
    touched raises PartialUpdateFailure and leaves the page as it is. A
    failure before anything changed propagates unchanged.

    Returns:
        Number of blocks appended.
    """
    new_blocks = encode_text_to_blocks(text)
    existing = await fetch_all_children(client, page_id)
    logger.info(
        f"Replacing content of {page_id}: deleting {len(existing)} blocks, "
        f"appending {len(new_blocks)}"
    )

    deleted = 0
    for block in existing:
        try:
            await client.delete_block(block["id"])
        except PromptBookError as e:
            if deleted == 0:
                raise
            logger.error(f"Delete failed on {page_id} after {deleted}/{len(existing)} blocks: {e}")
            raise PartialUpdateFailure(page_id, "delete", deleted, len(existing), 0, e) from e
        deleted += 1

    appended = 0
    for batch in _batches(new_blocks):
        try:
            await client.append_children(page_id, batch)
        except PromptBookError as e:
            if deleted == 0 and appended == 0:
                raise
            logger.error(f"Append failed on {page_id} after {appended}/{len(new_blocks)} blocks: {e}")
            raise PartialUpdateFailure(page_id, "append", deleted, len(existing), appended, e) from e
        appended += len(batch)

    return appended


async def update_prompt_page(
    client: NotionClient,
    database_id: str,
    prompt_id: str,
    name: Optional[str] = None,
    detailed_prompt: Optional[str] = None,
    prompt_type: Optional[str] = None,
    tags: Optional[list[str]] = None
) -> None:
    """Update a prompt's properties and/or replace its content."""
    await client.retrieve_page(prompt_id)

    if prompt_type is not None:
        await _check_prompt_type(client, database_id, prompt_type)

    properties = build_prompt_properties(name, prompt_type, tags)
    if properties:
        await client.update_page_properties(prompt_id, properties)

    if detailed_prompt is not None:
        logger.info(f"Updating prompt with content length: {len(detailed_prompt)}")
        await replace_page_content(client, prompt_id, detailed_prompt)


async def provision_prompt_database(client: NotionClient, page_id: str) -> str:
    """Create an empty prompt database under a page and return its id."""
    database = await client.create_database(
        page_id, PROMPT_DATABASE_TITLE, PROMPT_DATABASE_PROPERTIES
    )
    logger.info(f"Created prompt database {database['id']} under page {page_id}")
    return database["id"]


# =============================================================================
# Prompt Book Configuration
# =============================================================================

DEFAULT_CONFIG_PATH = Path("~/.config/prompt-book-mcp/books.json")
FALLBACK_BOOK_NAME = "default"


@dataclass(frozen=True)
class PromptBook:
    """A named Notion database used as a prompt source."""
    name: str
    database_id: str
    token: Optional[str] = None  # None: use the server's default token


@dataclass
class BookConfig:
    """Contents of the books config file."""
    books: dict[str, PromptBook] = field(default_factory=dict)
    active_book: Optional[str] = None

    def to_dict(self) -> dict:
        books = {}
        for name, book in self.books.items():
            entry = {"database_id": book.database_id}
            if book.token:
                entry["token"] = book.token
            books[name] = entry
        return {"active_book": self.active_book, "books": books}

    @classmethod
    def from_dict(cls, data: dict) -> "BookConfig":
        if not isinstance(data, dict):
            raise ValueError("Book config must be a JSON object")
        books = {}
        for name, entry in (data.get("books") or {}).items():
            if not isinstance(entry, dict) or not entry.get("database_id"):
                raise ValueError(f"Book '{name}' has no database_id")
            books[name] = PromptBook(name, entry["database_id"], entry.get("token"))
        active = data.get("active_book")
        if active is not None and active not in books:
            logger.warning(f"Active book '{active}' is not defined; ignoring it")
            active = None
        return cls(books=books, active_book=active)


def load_book_config(path: Path) -> BookConfig:
    """Read the books file. A missing file is an empty config."""
    if not path.exists():
        return BookConfig()
    return BookConfig.from_dict(json.loads(path.read_text(encoding="utf-8")))


def save_book_config(config: BookConfig, path: Path) -> None:
    """Write the books file via a temp file so readers never see half of it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(json.dumps(config.to_dict(), indent=2) + "\n", encoding="utf-8")
    tmp_path.replace(path)


class BookStore:
    """Owns the book config and writes every change back to disk.

    Callers take a PromptBook snapshot at the start of an operation and use
    it throughout; the store is never re-read mid-operation.
    """

    def __init__(
        self,
        config: BookConfig,
        path: Optional[Path] = None,
        fallback: Optional[PromptBook] = None
    ):
        self._config = config
        self._path = path
        self._fallback = fallback

    @classmethod
    def open(cls, path: Path, fallback_database_id: Optional[str] = None) -> "BookStore":
        config = load_book_config(path)
        fallback = None
        if not config.books and fallback_database_id:
            fallback = PromptBook(FALLBACK_BOOK_NAME, fallback_database_id)
        logger.info(f"Loaded {len(config.books)} prompt books from {path}")
        return cls(config, path, fallback)

    def snapshot(self) -> BookConfig:
        books = dict(self._config.books)
        active = self._config.active_book
        if self._fallback and not books:
            books[self._fallback.name] = self._fallback
            active = self._fallback.name
        return BookConfig(books=books, active_book=active)

    def active_book(self) -> Optional[PromptBook]:
        snapshot = self.snapshot()
        if snapshot.active_book is None:
            return None
        return snapshot.books[snapshot.active_book]

    def _save(self) -> None:
        if self._path is not None:
            save_book_config(self._config, self._path)

    def add_book(
        self,
        name: str,
        database_id: str,
        token: Optional[str] = None,
        activate: bool = False
    ) -> PromptBook:
        book = PromptBook(name, database_id, token)
        self._config.books[name] = book
        if activate or self._config.active_book is None:
            self._config.active_book = name
        self._save()
        return book

    def activate(self, name: str) -> PromptBook:
        book = self._config.books.get(name)
        if book is None:
            raise UnknownBookError(f"No prompt book named '{name}'")
        self._config.active_book = name
        self._save()
        return book

    def remove_book(self, name: str) -> PromptBook:
        book = self._config.books.pop(name, None)
        if book is None:
            raise UnknownBookError(f"No prompt book named '{name}'")
        if self._config.active_book == name:
            self._config.active_book = next(iter(self._config.books), None)
        self._save()
        return book


# =============================================================================
# Tool Error Messages
# =============================================================================


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format an error with optional hint and reference."""
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "no_database": "Create one with create_prompt_database, or register one with add_prompt_book.",
    "no_token": "Pass --token-file <path> on the command line or set NOTION_TOKEN.",
    "prompt_not_found": "Use list_prompts or search_prompts_by_title to find the prompt ID.",
    "invalid_type": "Use the list_all_types tool to see available types.",
    "partial_update": "The prompt content is incomplete. Run update_prompt again with the full content.",
    "unknown_book": "Use list_prompt_books to see registered books.",
    "page_not_found": "Check the page ID and that the page is shared with the integration.",
}


def _require(value: Any, message: str) -> None:
    if not value:
        raise InvalidParamsError(_error("INVALID_PARAMS", message))


def _tool_error(action: str, e: PromptBookError, prompt_id: str | None = None) -> ToolError:
    """Turn a PromptBookError into the ToolError shown to the agent."""
    if isinstance(e, InvalidPromptTypeError):
        return ToolError(_error("INVALID_TYPE", e.message, hint=HINTS["invalid_type"]))
    if isinstance(e, PartialUpdateFailure):
        return ToolError(_error(
            "PARTIAL_UPDATE", e.message, hint=HINTS["partial_update"], ref=e.page_id
        ))
    if isinstance(e, UnknownBookError):
        return ToolError(_error("UNKNOWN_BOOK", e.message, hint=HINTS["unknown_book"]))
    if isinstance(e, NotFoundError):
        if prompt_id is not None and e.resource != "database":
            return ToolError(_error(
                "PROMPT_NOT_FOUND",
                f'Prompt with ID "{prompt_id}" not found.',
                hint=HINTS["prompt_not_found"],
            ))
        return ToolError(_error("DATABASE_NOT_FOUND", DATABASE_ERROR_MESSAGE))
    logger.error(f"Error {action}: {e}")
    return ToolError(_error("REMOTE_ERROR", f"Error {action}: {e}"))


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP("prompt-book-mcp", host="127.0.0.1", port=2053)

_default_token: Optional[str] = None
_book_store: Optional[BookStore] = None
_clients: dict[str, NotionClient] = {}


def _config_path() -> Path:
    return Path(os.environ.get("PROMPT_BOOK_CONFIG", str(DEFAULT_CONFIG_PATH))).expanduser()


def _get_book_store() -> BookStore:
    """Get or open the book store (main() opens it with CLI settings)."""
    global _book_store
    if _book_store is None:
        _book_store = BookStore.open(_config_path(), os.environ.get("NOTION_DATABASE_ID"))
    return _book_store


def _get_client(token: str) -> NotionClient:
    client = _clients.get(token)
    if client is None:
        client = _clients[token] = NotionClient(token)
    return client


def _token_for(book: Optional[PromptBook]) -> str:
    token = (book.token if book else None) or _default_token or os.environ.get("NOTION_TOKEN")
    if not token:
        raise ToolError(_error("NO_TOKEN", "No Notion token configured", hint=HINTS["no_token"]))
    return token


def _active_context() -> tuple[NotionClient, PromptBook]:
    """Snapshot the active book and get a client for it."""
    book = _get_book_store().active_book()
    if book is None or not book.database_id:
        raise ToolError(_error("NO_DATABASE", DATABASE_ERROR_MESSAGE, hint=HINTS["no_database"]))
    return _get_client(_token_for(book)), book


def _prompts_json(records: list[PromptRecord]) -> str:
    return json.dumps(
        {"prompts": [record.to_dict() for record in records], "count": len(records)},
        indent=2,
        ensure_ascii=False,
    )


def _json(payload: dict) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


@mcp.tool()
async def list_prompts(show_all_fields: bool = False) -> str:
    """List all prompts in the active prompt book.

    Args:
        show_all_fields: If true, also shows tags and url. Default shows only
            id, title and type.
    """
    client, book = _active_context()
    try:
        records = await list_prompt_records(
            client, book.database_id, show_all_fields=show_all_fields
        )
    except PromptBookError as e:
        raise _tool_error("listing prompts", e) from e
    return _prompts_json(records)


@mcp.tool()
async def search_prompts_by_title(query: str) -> str:
    """Search prompts whose title contains the query.

    Args:
        query: Search query for prompt titles.
    """
    _require(query, "Search query is required")
    client, book = _active_context()
    try:
        records = await list_prompt_records(
            client, book.database_id, title_filter(query), show_all_fields=True
        )
    except PromptBookError as e:
        raise _tool_error("searching prompts by title", e) from e
    return _prompts_json(records)


@mcp.tool()
async def get_prompts_by_tag(tag: str) -> str:
    """Get prompts carrying a tag.

    Args:
        tag: Tag to filter prompts by.
    """
    _require(tag, "Tag is required")
    client, book = _active_context()
    try:
        records = await list_prompt_records(
            client, book.database_id, tag_filter(tag), show_all_fields=True
        )
    except PromptBookError as e:
        raise _tool_error("getting prompts by tag", e) from e
    return _prompts_json(records)


@mcp.tool()
async def get_prompts_by_type(type: str) -> str:
    """Get prompts of a type.

    Args:
        type: Type to filter prompts by (e.g. "Coding", "Image Generation",
            "Conversation").
    """
    _require(type, "Type is required")
    client, book = _active_context()
    try:
        records = await list_prompt_records(
            client, book.database_id, type_filter(type), show_all_fields=True
        )
    except PromptBookError as e:
        raise _tool_error("getting prompts by type", e) from e
    return _prompts_json(records)


@mcp.tool()
async def read_prompt(prompt_id: str) -> str:
    """Read the content of a prompt as Markdown-like text.

    Args:
        prompt_id: ID (or Notion URL) of the prompt to read.
    """
    _require(prompt_id, "Prompt ID is required")
    client, _book = _active_context()
    page_id = resolve_notion_id(prompt_id)
    try:
        return await read_prompt_text(client, page_id)
    except PromptBookError as e:
        raise _tool_error("reading prompt", e, prompt_id=prompt_id) from e


@mcp.tool()
async def list_all_types() -> str:
    """List all prompt types defined in the active prompt book."""
    client, book = _active_context()
    try:
        types = await list_prompt_types(client, book.database_id)
    except PromptBookError as e:
        raise _tool_error("listing all types", e) from e
    return _json({"types": types, "count": len(types)})


@mcp.tool()
async def list_all_tags() -> str:
    """List all tags defined in the active prompt book."""
    client, book = _active_context()
    try:
        tags = await list_prompt_tags(client, book.database_id)
    except PromptBookError as e:
        raise _tool_error("listing all tags", e) from e
    return _json({"tags": tags, "count": len(tags)})


@mcp.tool()
async def create_prompt_database(page_id: str, book_name: str = FALLBACK_BOOK_NAME) -> str:
    """Create a new prompt database and make it the active prompt book.

    Args:
        page_id: ID (or Notion URL) of the page where the database will be created.
        book_name: Name to register the new database under (default "default").
    """
    _require(page_id, "Page ID is required")
    _require(book_name, "Book name is required")
    store = _get_book_store()
    current = store.active_book()
    client = _get_client(_token_for(current))
    try:
        database_id = await provision_prompt_database(client, resolve_notion_id(page_id))
    except NotFoundError as e:
        # 404 here means the parent page, not a prompt database
        raise ToolError(_error(
            "PAGE_NOT_FOUND",
            f"Error creating prompt database: {e.message}",
            hint=HINTS["page_not_found"],
            ref=page_id,
        )) from e
    except PromptBookError as e:
        raise _tool_error("creating prompt database", e) from e

    store.add_book(book_name, database_id, token=current.token if current else None, activate=True)
    return _json({
        "message": "Prompt database created successfully",
        "database_id": database_id,
        "book": book_name,
    })


@mcp.tool()
async def add_prompt(
    name: str,
    detailed_prompt: str,
    type: str,
    tags: Optional[list[str]] = None
) -> str:
    """Add a new prompt to the active prompt book.

    Args:
        name: Name of the prompt.
        detailed_prompt: The detailed content of the prompt (any length).
        type: Type of the prompt. Use list_all_types to check existing types.
        tags: Optional list of tags for the prompt.
    """
    _require(name, "Name is required")
    _require(detailed_prompt, "Detailed prompt content is required")
    _require(type, "Type is required")
    client, book = _active_context()
    try:
        prompt_id = await create_prompt(
            client, book.database_id, name, detailed_prompt, type, tags
        )
    except PromptBookError as e:
        raise _tool_error("adding prompt", e) from e
    return _json({"message": "Prompt added successfully", "prompt_id": prompt_id})


@mcp.tool()
async def update_prompt(
    prompt_id: str,
    name: Optional[str] = None,
    detailed_prompt: Optional[str] = None,
    type: Optional[str] = None,
    tags: Optional[list[str]] = None
) -> str:
    """Update an existing prompt. Content updates replace the whole body.

    Args:
        prompt_id: ID (or Notion URL) of the prompt to update.
        name: New name (optional).
        detailed_prompt: New detailed content (optional).
        type: New type (optional). Use list_all_types to check existing types.
        tags: New list of tags (optional).
    """
    _require(prompt_id, "Prompt ID is required")
    if name is None and detailed_prompt is None and type is None and tags is None:
        raise InvalidParamsError(_error(
            "INVALID_PARAMS",
            "At least one update parameter (name, detailed_prompt, type, or tags) must be provided",
        ))
    client, book = _active_context()
    try:
        await update_prompt_page(
            client,
            book.database_id,
            resolve_notion_id(prompt_id),
            name=name,
            detailed_prompt=detailed_prompt,
            prompt_type=type,
            tags=tags,
        )
    except PromptBookError as e:
        raise _tool_error("updating prompt", e, prompt_id=prompt_id) from e
    return _json({"message": "Prompt updated successfully", "prompt_id": prompt_id})


@mcp.tool()
def list_prompt_books() -> str:
    """List registered prompt books and which one is active."""
    snapshot = _get_book_store().snapshot()
    books = [
        {
            "name": book.name,
            "database_id": book.database_id,
            "active": book.name == snapshot.active_book,
            "own_token": book.token is not None,
        }
        for book in snapshot.books.values()
    ]
    return _json({"books": books, "active_book": snapshot.active_book, "count": len(books)})


@mcp.tool()
def add_prompt_book(name: str, database_id: str, activate: bool = False) -> str:
    """Register an existing Notion database as a prompt book.

    Args:
        name: Name for the book.
        database_id: ID (or Notion URL) of the database.
        activate: Make it the active book (the first book is always activated).
    """
    _require(name, "Book name is required")
    _require(database_id, "Database ID is required")
    store = _get_book_store()
    book = store.add_book(name, resolve_notion_id(database_id), activate=activate)
    return _json({
        "message": "Prompt book added",
        "book": book.name,
        "active_book": store.snapshot().active_book,
    })


@mcp.tool()
def activate_prompt_book(name: str) -> str:
    """Switch the active prompt book.

    Args:
        name: Name of a registered book.
    """
    _require(name, "Book name is required")
    try:
        book = _get_book_store().activate(name)
    except UnknownBookError as e:
        raise _tool_error("activating prompt book", e) from e
    return _json({"message": "Prompt book activated", "active_book": book.name})


@mcp.tool()
def remove_prompt_book(name: str) -> str:
    """Unregister a prompt book. The Notion database itself is left untouched.

    Args:
        name: Name of a registered book.
    """
    _require(name, "Book name is required")
    store = _get_book_store()
    try:
        store.remove_book(name)
    except UnknownBookError as e:
        raise _tool_error("removing prompt book", e) from e
    return _json({
        "message": "Prompt book removed",
        "book": name,
        "active_book": store.snapshot().active_book,
    })


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    book = _get_book_store().active_book()
    token_loaded = bool((book.token if book else None) or _default_token or os.environ.get("NOTION_TOKEN"))
    return JSONResponse({
        "status": "ok",
        "token_loaded": token_loaded,
        "active_book": book.name if book else None,
    })


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run the Prompt Book MCP server.

    Supports two transport modes:
    - stdio (default): launched directly by an MCP client
    - http: standalone server on port 2053

    Usage:
        prompt-book-mcp --token-file ~/.notion_token
        prompt-book-mcp --token-file ~/.notion_token --http
    """
    import argparse

    parser = argparse.ArgumentParser(description="Prompt Book MCP Server")
    parser.add_argument(
        "--token-file",
        help="Path to file containing Notion API token (default: NOTION_TOKEN env var)"
    )
    parser.add_argument(
        "--config",
        help=f"Path to the prompt books JSON file (default: {DEFAULT_CONFIG_PATH})"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server on localhost:2053 instead of stdio"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    global _default_token, _book_store
    if args.token_file:
        token_path = Path(args.token_file).expanduser()
        if not token_path.exists():
            logger.error(f"Token file not found: {token_path}")
            raise SystemExit(1)
        _default_token = token_path.read_text().strip()
        if not _default_token:
            logger.error("Token file is empty")
            raise SystemExit(1)
        logger.info(f"Notion token loaded from {token_path}")
    elif not os.environ.get("NOTION_TOKEN"):
        logger.warning("No --token-file and no NOTION_TOKEN; only books with their own token will work")

    config_path = Path(args.config).expanduser() if args.config else _config_path()
    try:
        _book_store = BookStore.open(config_path, os.environ.get("NOTION_DATABASE_ID"))
    except ValueError as e:
        logger.error(f"Invalid book config {config_path}: {e}")
        raise SystemExit(1)

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info("Starting Prompt Book MCP server on http://127.0.0.1:2053")
        uvicorn.run(app, host="127.0.0.1", port=2053, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
