"""
Stream helpers: line scanning over byte chunks, prefixed writers and the
pipe-and-queue pump used to render container output.
"""
import io
import queue
import re
import threading
from typing import Callable, Iterable, Iterator, List, Optional, TextIO

_LINE_BREAK = re.compile(rb"\r\n|\n|\r")


def iter_lines(chunks: Iterable[bytes]) -> Iterator[bytes]:
    """
    Splits a chunked byte stream on ``\\n`` or ``\\r`` and yields non-empty lines.
    A trailing partial line is yielded when the stream ends.
    """
    buffer = b""
    for chunk in chunks:
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        buffer += chunk
        parts = _LINE_BREAK.split(buffer)
        buffer = parts.pop()
        for part in parts:
            if part.strip():
                yield part
    if buffer.strip():
        yield buffer


def write_text(stream: Optional[TextIO], data) -> None:
    if stream is None or not data:
        return
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    stream.write(data)
    flush = getattr(stream, "flush", None)
    if flush is not None:
        flush()


class PrefixWriter(io.TextIOBase):
    """
    Text stream that prefixes every line written to the wrapped stream.
    """
    def __init__(self, target: TextIO, prefix: str):
        self.target = target
        self.prefix = prefix
        self._at_line_start = True

    def write(self, text: str) -> int:
        if not self.prefix:
            self.target.write(text)
            return len(text)
        out = []
        for piece in text.splitlines(keepends=True):
            if self._at_line_start:
                out.append(self.prefix)
            out.append(piece)
            self._at_line_start = piece.endswith(("\n", "\r"))
        self.target.write("".join(out))
        return len(text)

    def flush(self) -> None:
        flush = getattr(self.target, "flush", None)
        if flush is not None:
            flush()


class TeeWriter(io.TextIOBase):
    """Writes to several streams; closing the tee leaves its targets open."""
    def __init__(self, *targets: TextIO):
        self.targets = targets

    def write(self, text: str) -> int:
        for target in self.targets:
            target.write(text)
        return len(text)

    def flush(self) -> None:
        for target in self.targets:
            flush = getattr(target, "flush", None)
            if flush is not None:
                flush()


class QueueWriter(io.TextIOBase):
    """
    Writer end of a pipe: complete lines are put on a queue, ``close`` puts a sentinel.
    """
    def __init__(self, sink: "queue.Queue[Optional[str]]"):
        self._sink = sink
        self._partial = ""

    def write(self, text: str) -> int:
        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")
        data = self._partial + text
        lines = data.splitlines(keepends=True)
        self._partial = ""
        if lines and not lines[-1].endswith(("\n", "\r")):
            self._partial = lines.pop()
        for line in lines:
            self._sink.put(line.rstrip("\r\n"))
        return len(text)

    def close(self) -> None:
        if self._partial:
            self._sink.put(self._partial)
            self._partial = ""
        self._sink.put(None)
        super().close()


class OutputPump:
    """
    Decouples container output from its sink: writers feed a queue, a drain thread
    renders each line to a callback and keeps a captured copy.

    Example:
        pump = OutputPump(lambda line: logger.info(line))
        pump.start()
        ctx.stdout = pump.writer
        ...
        output = pump.close()
    """
    def __init__(self, render: Optional[Callable[[str], None]] = None):
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue()
        self.writer = QueueWriter(self._queue)
        self.render = render
        self.lines: List[str] = []
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "OutputPump":
        self._thread = threading.Thread(target=self._drain, daemon=True)
        self._thread.start()
        return self

    def _drain(self) -> None:
        while True:
            line = self._queue.get()
            if line is None:
                return
            self.lines.append(line)
            if self.render is not None:
                self.render(line)

    def close(self) -> str:
        """Closes the writer, waits for the drain thread and returns the captured text."""
        if not self.writer.closed:
            self.writer.close()
        if self._thread is not None:
            self._thread.join()
        return "\n".join(self.lines)
