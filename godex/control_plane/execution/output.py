"""Run output normalisation.

Every managed chunk flows through ``normalize_chunk``: ANSI stripping, then
(for conversational ``message`` runs) banner/noise line filtering.  A chunk
that is blank afterwards is dropped without consuming a sequence number.

``NeedsInputTracker`` carries the sticky "needs input" flag for one run, and
``build_summary`` / ``truncate_summary`` derive the one-line notification
summary from the persisted events.
"""

from __future__ import annotations

import codecs
import re
from collections.abc import Iterable

from godex.control_plane.models.enums import RunType, WorkspaceStatus

SNIPPET_LENGTH = 200
SUMMARY_MAX_LENGTH = 160
SUMMARY_EVENT_LIMIT = 200

# Raw escape sequences: CSI (colours, cursor movement) and OSC (titles,
# hyperlinks) terminated by BEL or ST.
_ANSI_RAW_RE = re.compile(r"\x1B\][^\x07\x1B]*(?:\x07|\x1B\\)|\x1B\[[0-?]*[ -/]*[@-~]|\x1B[@-Z\\-_]")
# Escapes that arrive as literal text, e.g. JSON-encoded tool output.
_ANSI_LITERAL_RE = re.compile(r"\\(?:u001[bB]|x1[bB])\[[0-9;]*[A-Za-z]")

_LINE_SPLIT_RE = re.compile(r"\r?\n")
_WHITESPACE_RE = re.compile(r"\s+")
_ERROR_LINE_RE = re.compile(r"(error|failed|exception)", re.IGNORECASE)

MESSAGE_NOISE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^openai codex",
        r"^-+$",
        r"^workdir:",
        r"^model:",
        r"^provider:",
        r"^approval:",
        r"^sandbox:",
        r"^reasoning",
        r"^session id:",
        r"^config:",
        r"^mcp:",
        r"^mcp\s+startup",
        r"^mcp\s+.*starting",
        r"^mcp\s+.*ready",
        r"^mcp\s+.*failed",
    )
)

NEEDS_INPUT_PHRASES: tuple[str, ...] = ("i need", "confirm", "choose", "unable to proceed")

_USER_MARKERS = frozenset({"user"})
_ASSISTANT_MARKERS = frozenset({"assistant", "thinking", "codex"})


def strip_ansi(text: str) -> str:
    """Remove raw and literally-escaped ANSI sequences."""
    return _ANSI_LITERAL_RE.sub("", _ANSI_RAW_RE.sub("", text))


def filter_message_noise(text: str) -> str:
    """Drop agent CLI banner lines.  Blank lines are kept."""
    kept = []
    for line in _LINE_SPLIT_RE.split(text):
        trimmed = line.strip()
        if trimmed and any(pattern.search(trimmed) for pattern in MESSAGE_NOISE_PATTERNS):
            continue
        kept.append(line)
    return "\n".join(kept)


def normalize_chunk(text: str, run_type: str) -> str | None:
    """Clean one chunk of managed output.  Returns ``None`` when nothing is left."""
    if not text:
        return None
    cleaned = strip_ansi(text)
    if run_type == RunType.MESSAGE:
        cleaned = filter_message_noise(cleaned)
    if not cleaned.strip():
        return None
    return cleaned


def snippet_of(text: str) -> str:
    return text[-SNIPPET_LENGTH:]


class ChunkDecoder:
    """Incremental UTF-8 decoder for one output stream.

    Multi-byte characters split across reads are held back until complete.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def decode(self, data: bytes) -> str:
        return self._decoder.decode(data)

    def flush(self) -> str:
        return self._decoder.decode(b"", final=True)


class NeedsInputTracker:
    """Sticky per-run "needs input" detector.

    Conversational runs attribute each line to a speaker: a line that is
    exactly ``user`` switches to user mode, ``assistant`` / ``thinking`` /
    ``codex`` switch back.  Only assistant lines are matched, so the user's
    own echoed prompt never trips the flag.  The speaker mode carries over
    between chunks of the same run.  Other runs match the whole chunk.
    """

    def __init__(self, *, conversational: bool) -> None:
        self.conversational = conversational
        self.detected = False
        self._user_mode = False

    def feed(self, text: str) -> bool:
        """Scan a chunk and return the (sticky) flag."""
        if self.detected:
            if self.conversational:
                self._track_speaker(text)
            return True
        if self.conversational:
            self.detected = self._scan_conversation(text)
        else:
            lower = text.lower()
            self.detected = any(phrase in lower for phrase in NEEDS_INPUT_PHRASES)
        return self.detected

    def _scan_conversation(self, text: str) -> bool:
        found = False
        for line in _LINE_SPLIT_RE.split(text):
            lower = line.strip().lower()
            if not lower:
                continue
            if lower in _USER_MARKERS:
                self._user_mode = True
                continue
            if lower in _ASSISTANT_MARKERS:
                self._user_mode = False
                continue
            if not self._user_mode and not found:
                found = any(phrase in lower for phrase in NEEDS_INPUT_PHRASES)
        return found

    def _track_speaker(self, text: str) -> None:
        for line in _LINE_SPLIT_RE.split(text):
            lower = line.strip().lower()
            if lower in _USER_MARKERS:
                self._user_mode = True
            elif lower in _ASSISTANT_MARKERS:
                self._user_mode = False


def derive_workspace_status(exit_code: int | None, needs_input: bool) -> WorkspaceStatus:
    if exit_code != 0:
        return WorkspaceStatus.FAILED
    if needs_input:
        return WorkspaceStatus.NEEDS_INPUT
    return WorkspaceStatus.IDLE


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def build_summary(chunks: Iterable[str], status: WorkspaceStatus) -> str:
    """Pick the line that best describes how a run ended.

    Failed runs prefer the last line mentioning an error; otherwise the last
    non-empty line wins.
    """
    lines = [
        cleaned
        for chunk in chunks
        for line in _LINE_SPLIT_RE.split(chunk)
        if (cleaned := collapse_whitespace(strip_ansi(line)))
    ]
    if not lines:
        return ""
    if status == WorkspaceStatus.FAILED:
        for line in reversed(lines):
            if _ERROR_LINE_RE.search(line):
                return line
    return lines[-1]


def truncate_summary(text: str, max_length: int = SUMMARY_MAX_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
