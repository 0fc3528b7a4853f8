"""Bounded per-session store of recent terminal output."""

from __future__ import annotations

from agent_autopilot.engine.classifier import clean_output, split_incomplete_escape


class SessionBuffer:
    """Fixed-capacity buffer holding raw and cleaned output side by side.

    Both forms evict oldest content first and never exceed `capacity` chars.
    The raw form is kept for snapshots; the cleaned form feeds the classifier.
    `written` counts every cleaned char ever appended, so positions taken from
    it stay comparable after eviction.
    """

    def __init__(self, capacity: int = 100_000) -> None:
        if capacity <= 0:
            raise ValueError("buffer capacity must be positive")
        self.capacity = capacity
        self._raw = ""
        self._clean = ""
        self._carry = ""
        self._written = 0

    def append(self, raw_chunk: str) -> str:
        """Append one raw chunk; returns the cleaned text that was added."""
        if not raw_chunk:
            return ""
        self._raw = (self._raw + raw_chunk)[-self.capacity:]
        complete, self._carry = split_incomplete_escape(self._carry + raw_chunk)
        cleaned = clean_output(complete)
        self._append_clean(cleaned)
        return cleaned

    def append_marker(self, marker: str) -> None:
        """Append engine-authored text to the cleaned form only."""
        self._append_clean(marker)

    def _append_clean(self, text: str) -> None:
        if not text:
            return
        self._written += len(text)
        self._clean = (self._clean + text)[-self.capacity:]

    @property
    def written(self) -> int:
        return self._written

    @property
    def text(self) -> str:
        """Cleaned form, oldest first."""
        return self._clean

    def tail(self, chars: int) -> str:
        return self._clean[-chars:] if chars > 0 else ""

    def since(self, offset: int) -> str:
        """Cleaned text written after position `offset` (still retained)."""
        dropped = self._written - len(self._clean)
        start = max(0, offset - dropped)
        return self._clean[start:]

    def snapshot(self, tail_chars: int = 4000) -> str:
        """Read-only copy of the recent cleaned output."""
        return str(self.tail(tail_chars))

    def raw_snapshot(self, tail_chars: int = 4000) -> str:
        return self._raw[-tail_chars:] if tail_chars > 0 else ""

    def clear(self) -> None:
        self._raw = ""
        self._clean = ""
        self._carry = ""

    def __len__(self) -> int:
        return len(self._clean)
