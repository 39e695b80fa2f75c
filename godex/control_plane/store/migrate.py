"""Upgrade legacy JSON documents to the current shape.

Older releases persisted ``sessions`` (now ``workspaces``) with a
``notify_mode`` field, runs keyed by ``session_id`` and a flat
``threads_map``.  ``migrate_legacy_data`` rewrites such a document into::

    {
        "workspaces": [...],
        "runs": [...],
        "run_events": {run_id: [...]},
        "thread_meta": [...],
        "workspace_threads": [...],
    }

It is a pure function: the input is not mutated, and a document that is
already current comes back unchanged apart from missing collections being
filled in.
"""

from __future__ import annotations

import copy
from typing import Any

from godex.control_plane.models.enums import DEFAULT_NOTIFY_POLICY, WorkspaceStatus
from godex.control_plane.models.workspace import normalize_notify_policy
from godex.control_plane.store.base import now_iso

CURRENT_KEYS = ("workspaces", "runs", "run_events", "thread_meta", "workspace_threads")


def empty_document() -> dict[str, Any]:
    return {"workspaces": [], "runs": [], "run_events": {}, "thread_meta": [], "workspace_threads": []}


def is_legacy(raw: dict[str, Any]) -> bool:
    if "sessions" in raw or "threads_map" in raw:
        return True
    if any("session_id" in run for run in raw.get("runs") or []):
        return True
    return any("notify_mode" in ws or "notify_policy" not in ws for ws in raw.get("workspaces") or [])


def migrate_legacy_data(raw: dict[str, Any]) -> dict[str, Any]:
    """Return a current-shape copy of *raw*."""
    data = copy.deepcopy(raw) if isinstance(raw, dict) else {}
    result = empty_document()

    workspaces = list(data.get("workspaces") or [])
    known_ids = {ws.get("id") for ws in workspaces}
    for session in data.get("sessions") or []:
        if session.get("id") not in known_ids:
            workspaces.append(session)
            known_ids.add(session.get("id"))
    result["workspaces"] = [_migrate_workspace(ws) for ws in workspaces]

    result["runs"] = [_migrate_run(run) for run in data.get("runs") or []]

    run_events = data.get("run_events") or {}
    result["run_events"] = {run_id: list(events) for run_id, events in run_events.items()}

    thread_meta = {meta["thread_id"]: meta for meta in data.get("thread_meta") or [] if meta.get("thread_id")}
    links = list(data.get("workspace_threads") or [])
    linked = {(link.get("workspace_id"), link.get("thread_id")) for link in links}

    for entry in _iter_threads_map(data.get("threads_map")):
        thread_id = entry.get("thread_id")
        if not thread_id:
            continue
        if thread_id not in thread_meta:
            thread_meta[thread_id] = {
                "thread_id": thread_id,
                "title_override": entry.get("title_override"),
                "last_seen_at": entry.get("last_seen_at"),
                "pinned": bool(entry.get("pinned", False)),
                "archived": bool(entry.get("archived", False)),
            }
        workspace_id = entry.get("repo_session_id") or entry.get("workspace_id")
        if workspace_id and (workspace_id, thread_id) not in linked:
            links.append({
                "workspace_id": workspace_id,
                "thread_id": thread_id,
                "created_at": entry.get("created_at")
                or entry.get("last_seen_at")
                or _workspace_created_at(result["workspaces"], workspace_id)
                or now_iso(),
            })
            linked.add((workspace_id, thread_id))

    result["thread_meta"] = list(thread_meta.values())
    result["workspace_threads"] = links
    return result


# -- Helpers -------------------------------------------------------------------


def _migrate_workspace(ws: dict[str, Any]) -> dict[str, Any]:
    ws = dict(ws)
    policy = ws.pop("notify_mode", None)
    if "notify_policy" not in ws or ws["notify_policy"] is None:
        ws["notify_policy"] = policy if policy is not None else DEFAULT_NOTIFY_POLICY.value
    ws["notify_policy"] = normalize_notify_policy(ws["notify_policy"]).value
    ws.setdefault("status", WorkspaceStatus.IDLE.value)
    ws.setdefault("default_thread_id", None)
    ws.setdefault("test_command_override", None)
    return ws


def _migrate_run(run: dict[str, Any]) -> dict[str, Any]:
    run = dict(run)
    session_id = run.pop("session_id", None)
    if run.get("workspace_id") is None:
        run["workspace_id"] = session_id
    return run


def _iter_threads_map(threads_map: Any) -> list[dict[str, Any]]:
    """Accept both the list form and the ``{thread_id: entry}`` form."""
    if isinstance(threads_map, dict):
        return [{"thread_id": key, **value} for key, value in threads_map.items() if isinstance(value, dict)]
    if isinstance(threads_map, list):
        return [entry for entry in threads_map if isinstance(entry, dict)]
    return []


def _workspace_created_at(workspaces: list[dict[str, Any]], workspace_id: str) -> str | None:
    for ws in workspaces:
        if ws.get("id") == workspace_id:
            return ws.get("created_at")
    return None
