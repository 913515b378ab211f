import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Iterator, List, Optional

DEFAULT_MAX_LINES = 500


class LogLevel(Enum):
    SYSTEM = "system"
    ERROR = "error"
    OUTPUT = "output"


_PREFIXES = {
    LogLevel.SYSTEM: "[系统] ",
    LogLevel.ERROR: "[错误] ",
    LogLevel.OUTPUT: "",
}


@dataclass
class LogEntry:
    level: LogLevel
    text: str
    timestamp: float = field(default_factory=time.time)

    def render(self) -> str:
        return f"{_PREFIXES[self.level]}{self.text}"


class LogBuffer:
    """Bounded display log; the oldest line is evicted once full."""

    def __init__(
        self,
        max_lines: int = DEFAULT_MAX_LINES,
        on_append: Optional[Callable[[LogEntry], None]] = None,
        on_clear: Optional[Callable[[], None]] = None,
    ):
        if max_lines < 1:
            raise ValueError("max_lines must be positive")
        self.max_lines = max_lines
        self.on_append = on_append
        self.on_clear = on_clear
        self._entries: Deque[LogEntry] = deque(maxlen=max_lines)

    def append(self, text: str, level: LogLevel = LogLevel.OUTPUT) -> LogEntry:
        entry = LogEntry(level=level, text=text.rstrip("\r\n"))
        self._entries.append(entry)
        if self.on_append:
            self.on_append(entry)
        return entry

    def system(self, text: str) -> LogEntry:
        return self.append(text, LogLevel.SYSTEM)

    def error(self, text: str) -> LogEntry:
        return self.append(text, LogLevel.ERROR)

    def clear(self) -> None:
        self._entries.clear()
        if self.on_clear:
            self.on_clear()

    def lines(self) -> List[str]:
        return [e.render() for e in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(list(self._entries))
