"""Thread catalog -- companion-owned threads merged with local annotations.

Threads live in the companion process; this module lists and reads them
through it and overlays what is stored locally (title overrides, pins,
archive flags, workspace links).

Older companion builds reject the ``query`` parameter of ``thread/list`` or
lack ``thread/read``.  The catalog remembers the first rejection and from
then on filters locally / falls back to ``thread/resume``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loguru import logger

from godex.control_plane.companion import CompanionRequestError
from godex.control_plane.extract import dig, extract_list_items, extract_next_cursor, normalize_timestamp
from godex.control_plane.models.api import ThreadDetailResponse, ThreadListResponse, ThreadMetaUpdate
from godex.control_plane.models.thread import ThreadMeta, ThreadMetaPatch, ThreadSummary, WorkspaceThread
from godex.control_plane.store.base import now_iso

if TYPE_CHECKING:
    from godex.control_plane.companion import CompanionProcessManager
    from godex.control_plane.store.base import Store

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
UNTITLED = "(untitled)"


class ThreadNotFoundError(LookupError):
    """Raised when a thread id is empty or unknown to the companion."""


# -- Pure helpers --------------------------------------------------------------


def _first(item: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


def normalize_thread_item(item: Any, title_override: str | None = None) -> ThreadSummary | None:
    """Map one ``thread/list`` entry to a summary.  ``None`` if it has no id."""
    if not isinstance(item, dict):
        return None
    thread_id = _first(item, "id", "thread_id", "threadId")
    if not isinstance(thread_id, str) or not thread_id:
        return None
    preview = _first(item, "preview", "title")
    preview = preview if isinstance(preview, str) else None
    raw_updated = _first(item, "updatedAt", "updated_at", "updated", "modifiedAt")
    updated_at = normalize_timestamp(raw_updated)
    if updated_at is None and isinstance(raw_updated, str):
        updated_at = raw_updated
    return ThreadSummary(
        thread_id=thread_id,
        title=title_override or preview or UNTITLED,
        updated_at=updated_at,
        summary=preview,
    )


def merge_thread_list(
    items: list[Any],
    meta: list[ThreadMeta],
    links: list[WorkspaceThread],
    include_archived: bool = False,
) -> list[ThreadSummary]:
    """Overlay local annotations onto remote thread entries.

    Archived threads are dropped unless *include_archived*; pinned threads
    come first, otherwise the remote order is kept.
    """
    meta_by_id = {entry.thread_id: entry for entry in meta}
    attached: dict[str, list[str]] = {}
    for link in links:
        attached.setdefault(link.thread_id, []).append(link.workspace_id)

    merged = []
    for item in items:
        raw_id = _first(item, "id", "thread_id", "threadId") if isinstance(item, dict) else None
        local = meta_by_id.get(raw_id) if isinstance(raw_id, str) else None
        summary = normalize_thread_item(item, local.title_override if local else None)
        if summary is None:
            continue
        if local is not None:
            if local.archived and not include_archived:
                continue
            summary.pinned = local.pinned
            summary.archived = local.archived
            summary.last_seen_at = local.last_seen_at
        summary.attached_workspace_ids = attached.get(summary.thread_id, [])
        merged.append(summary)

    merged.sort(key=lambda entry: not entry.pinned)
    return merged


def _matches(item: Any, query: str) -> bool:
    if not isinstance(item, dict):
        return False
    needle = query.lower()
    return any(needle in str(item.get(key) or "").lower() for key in ("preview", "title"))


# -- Catalog -------------------------------------------------------------------


class ThreadCatalog:
    """Companion-backed thread listing and reading.

    Instantiated once during app lifespan; holds the remembered capability
    flags for the companion it talks to.
    """

    def __init__(self, companion: CompanionProcessManager, store: Store) -> None:
        self._companion = companion
        self._store = store
        self._search_supported: bool | None = None
        self._read_supported: bool | None = None

    @property
    def search_supported(self) -> bool | None:
        return self._search_supported

    @property
    def read_supported(self) -> bool | None:
        return self._read_supported

    # -- List ------------------------------------------------------------------

    async def list_threads(
        self,
        *,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        cursor: str | None = None,
        query: str | None = None,
        include_archived: bool = False,
    ) -> ThreadListResponse:
        """List threads, merged with local annotations.

        *offset* skips entries across as many companion pages as needed.
        Raises the companion errors unchanged.
        """
        limit = max(1, min(limit, MAX_LIMIT))
        offset = max(0, offset)
        search = (query or "").strip() or None

        if search and self._search_supported is not False:
            try:
                result = await self._fetch_page(limit, cursor, search)
                self._search_supported = True
            except CompanionRequestError as exc:
                logger.info("thread/list rejected query ({}); filtering locally from now on", exc.message)
                self._search_supported = False
                result = await self._fetch_page(limit, cursor, None)
        else:
            result = await self._fetch_page(limit, cursor, search if self._search_supported else None)

        items = extract_list_items(result)
        next_cursor = extract_next_cursor(result)

        if offset > 0:
            page: list[Any] = []
            skipped = 0
            page_items = items
            while skipped < offset and page_items:
                for item in page_items:
                    if skipped < offset:
                        skipped += 1
                    elif len(page) < limit:
                        page.append(item)
                if len(page) >= limit:
                    next_cursor = None
                    break
                if not next_cursor:
                    break
                result = await self._fetch_page(limit, next_cursor, search if self._search_supported else None)
                next_cursor = extract_next_cursor(result)
                page_items = extract_list_items(result)
        else:
            page = items[:limit]

        if search and self._search_supported is False:
            page = [item for item in page if _matches(item, search)]

        meta = await self._store.list_thread_meta()
        links = await self._store.list_workspace_threads()
        return ThreadListResponse(
            data=merge_thread_list(page, meta, links, include_archived),
            next_cursor=next_cursor,
        )

    async def _fetch_page(self, limit: int, cursor: str | None, search: str | None) -> Any:
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        if search:
            params["query"] = search
        return await self._companion.request("thread/list", params)

    # -- Read ------------------------------------------------------------------

    async def read_thread(self, thread_id: str) -> ThreadDetailResponse:
        """Read a thread (``thread/read``, falling back to ``thread/resume``)."""
        thread_id = thread_id.strip()
        if not thread_id:
            raise ThreadNotFoundError(thread_id)

        params = {"threadId": thread_id}
        if self._read_supported is not False:
            try:
                result = await self._companion.request("thread/read", params)
                self._read_supported = True
            except CompanionRequestError as exc:
                logger.info("thread/read unavailable ({}); using thread/resume from now on", exc.message)
                self._read_supported = False
                result = await self._companion.request("thread/resume", params)
        else:
            result = await self._companion.request("thread/resume", params)

        await self._store.upsert_thread_meta(thread_id, ThreadMetaPatch(last_seen_at=now_iso()))

        return ThreadDetailResponse(
            thread=_thread_payload(result),
            items=_either(result, "items"),
            turns=_either(result, "turns"),
            has_more=_either(result, "has_more"),
        )

    # -- Local annotations -----------------------------------------------------

    async def update_meta(self, thread_id: str, body: ThreadMetaUpdate) -> ThreadMeta:
        """Apply a local title/pin/archive change.  Blank titles clear the override."""
        thread_id = thread_id.strip()
        if not thread_id:
            raise ThreadNotFoundError(thread_id)
        patch = ThreadMetaPatch()
        fields = body.model_fields_set
        if "title_override" in fields:
            patch.title_override = (body.title_override or "").strip() or None
        if "pinned" in fields and body.pinned is not None:
            patch.pinned = body.pinned
        if "archived" in fields and body.archived is not None:
            patch.archived = body.archived
        return await self._store.upsert_thread_meta(thread_id, patch)


def _either(result: Any, key: str) -> Any:
    value = dig(result, (key,))
    return value if value is not None else dig(result, ("data", key))


def _thread_payload(result: Any) -> Any:
    thread = dig(result, ("thread",)) or dig(result, ("data", "thread"))
    if thread is None:
        if isinstance(result, dict) and result.get("threadId"):
            thread = result
        else:
            thread = dig(result, ("data",)) or result
    if not isinstance(thread, dict):
        return thread
    raw_updated = _first(thread, "updatedAt", "updated_at", "updated")
    return {**thread, "updated_at": normalize_timestamp(raw_updated) or thread.get("updated_at")}
