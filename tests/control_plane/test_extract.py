"""Unit tests for companion payload field extraction."""

from __future__ import annotations

import pytest

from godex.control_plane.extract import (
    dig,
    extract_delta_text,
    extract_list_items,
    extract_message_text,
    extract_next_cursor,
    extract_result_turn_id,
    extract_thread_id,
    extract_turn_id,
    extract_turn_status,
    normalize_timestamp,
    summarize_notification,
)


def test_dig() -> None:
    payload = {"a": {"b": {"c": 1}}}
    assert dig(payload, ("a", "b", "c")) == 1
    assert dig(payload, ("a", "x", "c")) is None
    assert dig("not a dict", ("a",)) is None


@pytest.mark.parametrize(
    "message",
    [
        {"params": {"threadId": "t1"}},
        {"params": {"thread_id": "t1"}},
        {"params": {"thread": {"id": "t1"}}},
    ],
)
def test_extract_thread_id_variants(message: dict) -> None:
    assert extract_thread_id(message) == "t1"


def test_extract_ids_ignore_non_strings() -> None:
    assert extract_thread_id({"params": {"threadId": 5}}) is None
    assert extract_turn_id({"params": {"turnId": ""}}) is None
    assert extract_turn_id(None) is None
    assert extract_turn_id({"params": {"turn": {"id": "u1"}}}) == "u1"


def test_extract_result_turn_id() -> None:
    assert extract_result_turn_id({"turnId": "u1"}) == "u1"
    assert extract_result_turn_id({"turn": {"id": "u2"}}) == "u2"
    assert extract_result_turn_id({"data": {"turn": {"id": "u3"}}}) == "u3"
    assert extract_result_turn_id({}) is None


def test_extract_delta_text() -> None:
    assert extract_delta_text({"params": {"delta": "hel"}}) == "hel"
    assert extract_delta_text({"params": {"delta": {"text": "lo"}}}) == "lo"
    assert extract_delta_text({"params": {"delta": {"content": {"text": "!"}}}}) == "!"
    assert extract_delta_text({"params": {}}) is None


def test_extract_message_text() -> None:
    assert extract_message_text({"params": {"text": "done"}}) == "done"
    assert extract_message_text({"params": {"message": {"content": "ok"}}}) == "ok"
    content = [{"type": "text", "text": "a"}, {"type": "image"}, {"type": "text", "text": "b"}]
    assert extract_message_text({"params": {"item": {"content": content}}}) == "ab"
    assert extract_message_text({"params": {"item": {"content": []}}}) is None


def test_extract_turn_status() -> None:
    assert extract_turn_status({"params": {"status": "failed"}}) == "failed"
    assert extract_turn_status({"params": {"turn": {"status": "completed"}}}) == "completed"


def test_summarize_notification() -> None:
    assert summarize_notification({"method": "turn/started"}) == "[turn/started]"
    assert summarize_notification({"method": "turn/completed", "params": {"status": "ok"}}) == "[turn/completed] ok"
    assert summarize_notification({"params": {"reason": "x"}}) == "[notification] x"


def test_extract_list_items_and_cursor() -> None:
    assert extract_list_items({"threads": [1, 2]}) == [1, 2]
    assert extract_list_items({"items": [3]}) == [3]
    assert extract_list_items({"data": [4]}) == [4]
    assert extract_list_items({"data": "nope"}) == []
    assert extract_list_items(None) == []

    assert extract_next_cursor({"nextCursor": "c2"}) == "c2"
    assert extract_next_cursor({"next_cursor": "c3"}) == "c3"
    assert extract_next_cursor({"nextCursor": None}) is None


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (1_700_000_000, "2023-11-14T22:13:20.000Z"),
        (1_700_000_000_123, "2023-11-14T22:13:20.123Z"),
        ("1700000000", "2023-11-14T22:13:20.000Z"),
        ("2024-05-01T12:00:00Z", "2024-05-01T12:00:00.000Z"),
        ("2024-05-01T14:00:00+02:00", "2024-05-01T12:00:00.000Z"),
        ("2024-05-01T12:00:00", "2024-05-01T12:00:00.000Z"),
    ],
)
def test_normalize_timestamp(value: object, expected: str) -> None:
    assert normalize_timestamp(value) == expected


@pytest.mark.parametrize("value", [None, True, "", "yesterday", {"at": 1}])
def test_normalize_timestamp_rejects(value: object) -> None:
    assert normalize_timestamp(value) is None
