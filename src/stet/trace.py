"""Optional plain-text trace of partition and per-hunk pipeline decisions."""

from typing import TextIO


class Tracer:
    """Writes labelled sections to a stream. A tracer without a stream is a no-op."""

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream

    @property
    def enabled(self) -> bool:
        return self.stream is not None

    def section(self, title: str) -> None:
        if self.stream is None:
            return
        self.stream.write(f"\n=== {title} ===\n")
        self.stream.flush()

    def printf(self, text: str) -> None:
        if self.stream is None:
            return
        self.stream.write(text if text.endswith("\n") else text + "\n")
        self.stream.flush()


NULL_TRACER = Tracer()
