from __future__ import annotations

"""
Maintain a session-scoped transcript buffer for the live assistant.

Design intent:
- Accept interim recognition results and replace them in place until the turn is finalized.
- Keep finalized entries immutable and append-only.
- Expose a bounded recent window for prompting and the full text for end-of-session analysis.
"""

import re
from dataclasses import dataclass
from typing import Sequence

from veritas.internal_core.contracts import TranscriptEntry

_WS_RE = re.compile(r"\s+")
_LINE_PREFIX_RE = re.compile(r"^\[(?P<speaker>[^\]]{1,64})\]\s*(?P<text>.*)$")

ASSISTANT_SPEAKER = "Veritas"


def _normalize_text(text: str) -> str:
    return _WS_RE.sub(" ", (text or "").strip())


def format_entry_line(entry: TranscriptEntry) -> str:
    return f"[{entry.speaker}] {_normalize_text(entry.text)}"


def split_entry_line(line: str) -> tuple[str, str]:
    """Split "[speaker] text" back into (speaker, text); unlabeled lines get an empty speaker."""
    match = _LINE_PREFIX_RE.match((line or "").strip())
    if not match:
        return "", _normalize_text(line)
    return match.group("speaker").strip(), _normalize_text(match.group("text"))


@dataclass(frozen=True)
class TranscriptAppendResult:
    entry: TranscriptEntry
    finalized: bool
    replaced_interim: bool


class TranscriptBuffer:
    def __init__(self, *, window_size: int = 15) -> None:
        self._window_size = max(1, int(window_size))
        self._entries: list[TranscriptEntry] = []
        self._interim: TranscriptEntry | None = None

    @property
    def window_size(self) -> int:
        return self._window_size

    @property
    def interim(self) -> TranscriptEntry | None:
        return self._interim

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries = []
        self._interim = None

    def append(self, entry: TranscriptEntry) -> TranscriptAppendResult:
        text = _normalize_text(entry.text)
        normalized = entry.model_copy(update={"text": text})
        replaced = self._interim is not None and self._interim.speaker == entry.speaker

        if not entry.is_final:
            # A different speaker's interim supersedes the stale one as well.
            self._interim = normalized
            return TranscriptAppendResult(entry=normalized, finalized=False, replaced_interim=replaced)

        self._interim = None
        if not text:
            return TranscriptAppendResult(entry=normalized, finalized=False, replaced_interim=replaced)

        self._entries.append(normalized)
        return TranscriptAppendResult(entry=normalized, finalized=True, replaced_interim=replaced)

    def append_assistant(self, text: str) -> None:
        if not _normalize_text(text):
            return
        self.append(TranscriptEntry(speaker=ASSISTANT_SPEAKER, text=text, is_final=True))

    def entries(self) -> list[TranscriptEntry]:
        return list(self._entries)

    def recent_window(self, size: int | None = None) -> list[TranscriptEntry]:
        limit = self._window_size if size is None else max(1, int(size))
        return list(self._entries[-limit:])

    def window_text(self, size: int | None = None) -> str:
        return render_lines(self.recent_window(size))

    def full_text(self) -> str:
        return render_lines(self._entries)


def render_lines(entries: Sequence[TranscriptEntry]) -> str:
    return "\n".join(format_entry_line(entry) for entry in entries)
