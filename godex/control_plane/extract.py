"""Field extraction from loosely-typed companion payloads.

The companion's messages are not schema-stable: the same value may arrive as
``threadId``, ``thread_id`` or ``thread.id`` depending on the method and the
companion version.  Each public function here walks an ordered list of key
paths against an untyped payload and returns the first match of the
expected type.  No function raises on unexpected shapes.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

KeyPath = tuple[str, ...]

# Anything below this is treated as epoch seconds, above as milliseconds.
_EPOCH_MS_THRESHOLD = 1_000_000_000_000

_THREAD_ID_PATHS: Sequence[KeyPath] = (
    ("params", "threadId"),
    ("params", "thread_id"),
    ("params", "thread", "id"),
    ("params", "thread", "thread_id"),
)

_TURN_ID_PATHS: Sequence[KeyPath] = (
    ("params", "turnId"),
    ("params", "turn_id"),
    ("params", "turn", "id"),
    ("params", "turn", "turn_id"),
)

_DELTA_PATHS: Sequence[KeyPath] = (
    ("params", "delta"),
    ("params", "delta", "text"),
    ("params", "delta", "content"),
    ("params", "delta", "content", "text"),
)

_MESSAGE_PATHS: Sequence[KeyPath] = (
    ("params", "text"),
    ("params", "message", "text"),
    ("params", "message", "content"),
    ("params", "item", "content"),
)

_TURN_STATUS_PATHS: Sequence[KeyPath] = (
    ("params", "status"),
    ("params", "turn", "status"),
)

_SUMMARY_PATHS: Sequence[KeyPath] = (
    ("params", "status"),
    ("params", "reason"),
    ("params", "state"),
)

_LIST_ITEM_PATHS: Sequence[KeyPath] = (("threads",), ("items",), ("data",))
_NEXT_CURSOR_PATHS: Sequence[KeyPath] = (("nextCursor",), ("next_cursor",))


def dig(payload: Any, path: Iterable[str]) -> Any:
    """Follow *path* through nested dicts.  Returns ``None`` when it breaks."""
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def first_string(payload: Any, paths: Sequence[KeyPath]) -> str | None:
    """First non-empty string found along *paths*."""
    for path in paths:
        value = dig(payload, path)
        if isinstance(value, str) and value:
            return value
    return None


# -- Identity ------------------------------------------------------------------


def extract_thread_id(message: Any) -> str | None:
    return first_string(message, _THREAD_ID_PATHS)


def extract_turn_id(message: Any) -> str | None:
    return first_string(message, _TURN_ID_PATHS)


def extract_result_turn_id(result: Any) -> str | None:
    """Turn id from a ``turn/start`` result (flat, or nested under ``turn``)."""
    return (
        extract_turn_id({"params": result})
        or extract_turn_id({"params": dig(result, ("turn",))})
        or extract_turn_id({"params": dig(result, ("data", "turn"))})
    )


# -- Text ----------------------------------------------------------------------


def extract_delta_text(message: Any) -> str | None:
    return first_string(message, _DELTA_PATHS)


def extract_message_text(message: Any) -> str | None:
    text = first_string(message, _MESSAGE_PATHS)
    if text is not None:
        return text
    content = dig(message, ("params", "item", "content"))
    if isinstance(content, list):
        joined = "".join(
            entry["text"] for entry in content if isinstance(entry, dict) and isinstance(entry.get("text"), str)
        )
        if joined:
            return joined
    return None


def extract_turn_status(message: Any) -> str | None:
    return first_string(message, _TURN_STATUS_PATHS)


def summarize_notification(message: Any) -> str:
    """One-line ``[method] status`` rendering of a notification."""
    method = dig(message, ("method",))
    if not isinstance(method, str) or not method:
        method = "notification"
    summary = first_string(message, _SUMMARY_PATHS)
    if summary:
        return f"[{method}] {summary}"
    return f"[{method}]"


# -- Listing -------------------------------------------------------------------


def extract_list_items(result: Any) -> list[Any]:
    for path in _LIST_ITEM_PATHS:
        value = dig(result, path)
        if value is not None:
            return list(value) if isinstance(value, list) else []
    return []


def extract_next_cursor(result: Any) -> str | None:
    return first_string(result, _NEXT_CURSOR_PATHS)


# -- Timestamps ----------------------------------------------------------------


def normalize_timestamp(value: Any) -> str | None:
    """Render epoch seconds/ms, numeric strings or ISO strings as UTC ISO-8601.

    Returns ``None`` for anything that cannot be interpreted.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return _from_epoch(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.isdigit():
        return _from_epoch(int(text))
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00") if text.endswith("Z") else text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return _render(parsed)


def _from_epoch(value: float) -> str | None:
    seconds = value / 1000 if value >= _EPOCH_MS_THRESHOLD else value
    try:
        return _render(datetime.fromtimestamp(seconds, tz=UTC))
    except (OverflowError, OSError, ValueError):
        return None


def _render(moment: datetime) -> str:
    moment = moment.astimezone(UTC)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"
