import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple


DEFAULT_MAX_ENTRIES = 500
DEFAULT_TRIM_COUNT = 100


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    message: str

    def __str__(self) -> str:
        return f"[{self.timestamp}] {self.message}"

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "message": self.message, "line": str(self)}


class LogBuffer:
    """Shared bounded log of supervisor and process output.

    Lines from backend processes carry their role's display name inline, e.g.
    ``[Code Assistant] listening on 8000``; ``snapshot(tag=...)`` filters on it.
    Once the buffer grows past ``max_entries`` the oldest ``trim_count`` entries
    are dropped in one go.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        trim_count: int = DEFAULT_TRIM_COUNT,
        on_append: Optional[Callable[[LogEntry], None]] = None,
    ) -> None:
        self.max_entries = max(1, max_entries)
        self.trim_count = min(max(1, trim_count), self.max_entries)
        self.on_append = on_append
        self._entries: List[LogEntry] = []
        self._lock = threading.Lock()

    def append(self, line: str) -> LogEntry:
        entry = LogEntry(timestamp=utc_now(), message=str(line))
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self.max_entries:
                del self._entries[: self.trim_count]
        if self.on_append is not None:
            self.on_append(entry)
        return entry

    def snapshot(self, tag: Optional[str] = None) -> Tuple[LogEntry, ...]:
        with self._lock:
            entries = tuple(self._entries)
        if tag:
            marker = f"[{tag}]"
            entries = tuple(e for e in entries if marker in e.message)
        return entries

    def lines(self, tag: Optional[str] = None) -> List[str]:
        return [str(entry) for entry in self.snapshot(tag)]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
