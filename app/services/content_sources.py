"""Where a due prompt is read from and where the user's reply is written back.

Two implementations share one interface so the scheduler and the reply
router never branch on the source kind:

* ``OwnedContentSource``: prompt rows stored in our own database.
* ``NotionContentSource``: pages in the user's Notion database, reached
  through the public REST API with a per-user integration token.

Both raise ``ContentNotFound`` when nothing is due and ``SourceUnavailable``
when the store cannot be reached, which the scheduler treats differently.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError

import db
from app.types.delivery_contract import ContentItem
from app.types.errors import ConfigurationError, ContentNotFound, SourceUnavailable
from config import settings

_LOGGER = logging.getLogger(__name__)

REPLY_SEPARATOR = "\n\n---\n\n"
REPLY_MARKER = "Reply: "
NOTION_TEXT_LIMIT = 2000
_APPEND_ATTEMPTS = 3


class ContentSource(ABC):
    @abstractmethod
    async def fetch_due(self, user_id: str, day: date, slot: str) -> ContentItem:
        """Return the prompt for ``user_id`` on ``day`` / ``slot``."""

    @abstractmethod
    async def append_reply(self, item_id: str, text: str) -> None:
        """Add ``text`` to the item's replies without losing earlier ones."""


# ──────────────────────────────────────────────────────────────────────────
# Owned prompts (our database)
# ──────────────────────────────────────────────────────────────────────────


class OwnedContentSource(ContentSource):
    async def fetch_due(self, user_id: str, day: date, slot: str) -> ContentItem:
        try:
            row = await db.fetch_owned_prompt(user_id, day, slot)
        except SQLAlchemyError as exc:
            raise SourceUnavailable(f"prompt store error: {exc.__class__.__name__}")
        if row is None or not any((e or "").strip() for e in (row.entries or [])):
            raise ContentNotFound(f"No {slot} prompt found for {day.isoformat()}")
        entries = [e for e in row.entries if e and e.strip()]
        numbered = "\n".join(f"{i}. {e}" for i, e in enumerate(entries, start=1))
        return ContentItem(
            id=row.id,
            topic=row.theme or row.name or "Daily Prompt",
            entries=[numbered],
        )

    async def append_reply(self, item_id: str, text: str) -> None:
        try:
            for _ in range(_APPEND_ATTEMPTS):
                row = await db.get_owned_prompt(item_id)
                if row is None:
                    raise ContentNotFound(f"prompt {item_id} no longer exists")
                existing = row.response
                updated = f"{existing}{REPLY_SEPARATOR}{text}" if existing else text
                if await db.append_owned_response(item_id, existing, updated):
                    return
                _LOGGER.info("Concurrent reply on prompt %s, re-reading", item_id)
        except SQLAlchemyError as exc:
            raise SourceUnavailable(f"prompt store error: {exc.__class__.__name__}")
        raise SourceUnavailable(f"prompt {item_id} kept changing while saving reply")


# ──────────────────────────────────────────────────────────────────────────
# Notion
# ──────────────────────────────────────────────────────────────────────────


def _plain_text(rich_text: list[dict] | None) -> str:
    return "".join((rt or {}).get("plain_text", "") for rt in (rich_text or []))


def page_title(page: dict) -> str:
    """Text of the page's title-typed property, whatever it is named."""
    for prop in (page.get("properties") or {}).values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            return _plain_text(prop.get("title"))
    return ""


def page_topic(page: dict) -> str:
    props = page.get("properties") or {}
    for name in ("Topic", "Week"):
        prop = props.get(name)
        if isinstance(prop, dict):
            text = _plain_text(prop.get("rich_text"))
            if text.strip():
                return text
    return page_title(page) or "Daily Prompt"


def select_page_for_slot(pages: list[dict], slot: str) -> dict | None:
    """Pages whose title mentions the slot; the most recently edited wins."""
    keyword = slot.lower()
    matches = [
        p for p in pages
        if isinstance(p, dict) and keyword in page_title(p).lower()
    ]
    if not matches:
        return None
    return max(matches, key=lambda p: p.get("last_edited_time") or "")


def blocks_to_entries(blocks: list[dict]) -> list[str]:
    entries: list[str] = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind not in ("paragraph", "bulleted_list_item", "numbered_list_item"):
            continue
        text = _plain_text((block.get(kind) or {}).get("rich_text"))
        if not text.strip():
            continue
        entries.append(f"• {text}" if kind == "bulleted_list_item" else text)
    return entries


def reply_block(text: str) -> dict[str, Any]:
    content = f"{REPLY_MARKER}{text}"
    chunks = [
        content[i:i + NOTION_TEXT_LIMIT]
        for i in range(0, len(content), NOTION_TEXT_LIMIT)
    ] or [REPLY_MARKER]
    return {
        "object": "block",
        "type": "paragraph",
        "paragraph": {
            "rich_text": [{"type": "text", "text": {"content": c}} for c in chunks],
        },
    }


class NotionContentSource(ContentSource):
    def __init__(
        self,
        token: str,
        database_id: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not token or not database_id:
            raise ConfigurationError("Notion token and database id are required")
        self._token = token
        self._database_id = database_id
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=settings.NOTION_API_BASE,
            timeout=settings.EXTERNAL_CALL_TIMEOUT,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Notion-Version": settings.NOTION_VERSION,
                "Content-Type": "application/json",
            },
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            raise SourceUnavailable(f"Notion {method} {path} timed out")
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"Notion unreachable: {exc.__class__.__name__}")

        if resp.status_code in (401, 403):
            raise ConfigurationError("Notion rejected the integration token")
        if resp.status_code == 404:
            raise ContentNotFound(f"Notion object not found: {path}")
        if resp.status_code >= 400:
            raise SourceUnavailable(f"Notion answered HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            raise SourceUnavailable("Notion returned a non-JSON body")
        if not isinstance(data, dict):
            raise SourceUnavailable("Invalid response structure from Notion API")
        return data

    async def query_pages(self, day: date) -> list[dict]:
        body = {
            "filter": {"property": "Date", "date": {"equals": day.isoformat()}},
            "sorts": [{"timestamp": "last_edited_time", "direction": "descending"}],
        }
        data = await self._request("POST", f"/databases/{self._database_id}/query", json=body)
        results = data.get("results")
        if not isinstance(results, list):
            raise SourceUnavailable("Invalid response structure from Notion API")
        return results

    async def page_entries(self, page_id: str) -> list[str]:
        blocks: list[dict] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"page_size": 100}
            if cursor:
                params["start_cursor"] = cursor
            data = await self._request("GET", f"/blocks/{page_id}/children", params=params)
            results = data.get("results")
            if not isinstance(results, list):
                break
            blocks.extend(results)
            cursor = data.get("next_cursor")
            if not data.get("has_more") or not cursor:
                break
        return blocks_to_entries(blocks)

    async def fetch_due(self, user_id: str, day: date, slot: str) -> ContentItem:
        page = select_page_for_slot(await self.query_pages(day), slot)
        if page is None:
            raise ContentNotFound(f"No {slot} prompt found for {day.isoformat()}")
        item = ContentItem(
            id=page["id"],
            topic=page_topic(page),
            entries=await self.page_entries(page["id"]),
        )
        if item.is_empty:
            raise ContentNotFound("Prompt page is empty")
        return item

    async def append_reply(self, item_id: str, text: str) -> None:
        await self._request(
            "PATCH",
            f"/blocks/{item_id}/children",
            json={"children": [reply_block(text)]},
        )


def content_source_for(config: "db.DeliveryConfig") -> ContentSource:
    """Pick the variant named by ``config.content_source``."""
    if config.content_source == "owned":
        return OwnedContentSource()
    if config.content_source == "external":
        if not config.external_token or not config.external_database_id:
            raise ConfigurationError("external content source selected but Notion credentials are missing")
        return NotionContentSource(config.external_token, config.external_database_id)
    raise ConfigurationError(f"unknown content source '{config.content_source}'")
