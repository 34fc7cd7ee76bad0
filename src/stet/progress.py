"""Run statistics and event sinks for progress and findings."""

import json
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO


@dataclass
class ReviewStats:
    """Statistics for one pipeline run."""

    total_hunks: int = 0
    completed: int = 0
    findings: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.start_time

    @property
    def hunks_per_second(self) -> float:
        if self.elapsed_seconds == 0:
            return 0
        return self.completed / self.elapsed_seconds

    @property
    def eta_seconds(self) -> float:
        if self.hunks_per_second == 0:
            return 0
        return (self.total_hunks - self.completed) / self.hunks_per_second

    @staticmethod
    def format_time(seconds: float) -> str:
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            return f"{seconds / 60:.1f}m"
        else:
            return f"{seconds / 3600:.1f}h"


class EventSink:
    """Receives pipeline events. The base implementation discards them."""

    def emit(self, event: dict) -> None:
        pass

    def progress(self, msg: str) -> None:
        self.emit({"type": "progress", "msg": msg})

    def finding(self, data: dict) -> None:
        self.emit({"type": "finding", "data": data})

    def done(self) -> None:
        self.emit({"type": "done"})

    def hunk_status(self, file_path: str, status: str, completed: int, total: int) -> None:
        """Per-hunk status line; not part of the event stream."""


class NDJSONSink(EventSink):
    """Writes one JSON object per line to a stream."""

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream if stream is not None else sys.stdout

    def emit(self, event: dict) -> None:
        self.stream.write(json.dumps(event, ensure_ascii=False) + "\n")
        self.stream.flush()


class CollectingSink(EventSink):
    """Keeps every event in memory."""

    def __init__(self):
        self.events: list[dict] = []

    def emit(self, event: dict) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e.get("type") == event_type]


class ConsoleSink(EventSink):
    """Human-readable progress on a terminal stream; findings are printed by the caller."""

    def __init__(self, stats: ReviewStats, stream: TextIO | None = None, max_filename_len: int = 30):
        self.stats = stats
        self.stream = stream if stream is not None else sys.stderr
        self._max_filename_len = max_filename_len

    def _truncate_filename(self, filename: str) -> str:
        """Truncate filename while preserving extension for readability.

        For long filenames, shows: "start...end.ext"
        """
        if len(filename) <= self._max_filename_len:
            return filename
        path = Path(filename)
        ext = path.suffix
        name = path.stem
        if ext:
            available = self._max_filename_len - len(ext) - 3  # 3 for "..."
            if available > 6:
                half = available // 2
                return f"{name[:half]}...{name[-half:]}{ext}"
        return f"{filename[: self._max_filename_len - 3]}..."

    def hunk_status(self, file_path: str, status: str, completed: int, total: int) -> None:
        self.stats.completed = completed
        self.stats.total_hunks = total
        pct = (completed / total * 100) if total > 0 else 0
        eta = self.stats.format_time(self.stats.eta_seconds)
        elapsed = self.stats.format_time(self.stats.elapsed_seconds)
        filename = self._truncate_filename(Path(file_path).name)
        self.stream.write(
            f"\r[{pct:5.1f}%] {completed}/{total} hunks | "
            f"Elapsed: {elapsed} | ETA: {eta} | "
            f"{status}: {filename:<{self._max_filename_len}}"
        )
        self.stream.flush()

    def emit(self, event: dict) -> None:
        kind = event.get("type")
        if kind == "progress":
            self.stream.write(f"\n{event.get('msg', '')}")
            self.stream.flush()
        elif kind == "done":
            self.stream.write("\n")
            self.stream.flush()
