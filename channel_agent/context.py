"""
Per-channel conversation history, kept in memory for the reply oracle.
"""

from __future__ import annotations

from collections import defaultdict, deque

from channel_agent.types import ConversationRecord

DEFAULT_HISTORY_LIMIT = 10


class ConversationContextStore:
    """Bounded, strictly FIFO history per channel. Not persisted."""

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._limit = limit
        self._history: dict[str, deque[ConversationRecord]] = defaultdict(
            lambda: deque(maxlen=self._limit)
        )

    @property
    def limit(self) -> int:
        return self._limit

    def append(self, channel_id: str, record: ConversationRecord) -> None:
        self._history[channel_id].append(record)

    def recent(self, channel_id: str) -> list[ConversationRecord]:
        """Most-recent-last copy of the channel's history."""
        history = self._history.get(channel_id)
        return list(history) if history else []

    def replace(self, channel_id: str, records: list[ConversationRecord]) -> None:
        """Reset the channel's history to ``records`` (oldest first)."""
        if records:
            self._history[channel_id] = deque(records, maxlen=self._limit)
        else:
            self._history.pop(channel_id, None)

    def __len__(self) -> int:
        return len(self._history)
