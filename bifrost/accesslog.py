"""Access log: renders a template of ``$`` variables for every finished request."""

from __future__ import annotations

import enum
import logging
import os
import re
import sys
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional, TextIO, Union

from bifrost import timecache, variable
from bifrost.request import HTTP_START, RequestContext

logger = logging.getLogger(__name__)

RFC3339 = "RFC3339"

_VARIABLE = re.compile(r"\$\w+(?:[._-]\w+)*", re.ASCII)
_GRPC_CONTENT_TYPE = "application/grpc"
_DEFAULT_BUFFER_SIZE = 64 * variable.KB
_DEFAULT_FLUSH = timedelta(minutes=1)
_CLIENT_DISCONNECTED = "client disconnected"


class EscapeType(str, enum.Enum):
    """How variable values are escaped before they are written."""

    DEFAULT = "default"
    JSON = "json"
    NONE = "none"


@dataclass
class AccessLogOptions:
    """Configuration of one access log."""

    output: str = ""
    template: str = ""
    time_format: str = ""
    escape: Union[EscapeType, str] = EscapeType.NONE
    buffer_size: int = 0
    flush: timedelta = timedelta(0)


class BufferedLogger:
    """Collects log lines in memory and writes them out in batches."""

    def __init__(self, options: AccessLogOptions) -> None:
        self._owns_stream = False
        self._stream: Optional[TextIO]
        output = options.output.lower()
        if output == "":
            self._stream = None
        elif output == "stderr":
            self._stream = sys.stderr
        else:
            fd = os.open(options.output, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o600)
            self._stream = os.fdopen(fd, "a", encoding="utf-8")
            self._owns_stream = True

        self.buffer_size = options.buffer_size if options.buffer_size > 0 else _DEFAULT_BUFFER_SIZE
        self.flush_interval = options.flush if options.flush.total_seconds() > 0 else _DEFAULT_FLUSH

        self._chunks: list[str] = []
        self._size = 0
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._flusher = threading.Thread(
            target=self._periodic_flush, name="accesslog-flush", daemon=True
        )
        self._flusher.start()

    def write(self, line: str) -> None:
        """Buffer ``line``; write the buffer out once it is full."""
        with self._lock:
            self._chunks.append(line)
            self._size += len(line.encode("utf-8", errors="surrogateescape"))
            if self._size >= self.buffer_size:
                self._drain()

    def _drain(self) -> None:
        if self._stream is not None and self._chunks:
            self._stream.write("".join(self._chunks))
            self._stream.flush()
        self._chunks.clear()
        self._size = 0

    def flush(self) -> None:
        """Write out everything buffered and sync it to disk."""
        with self._lock:
            self._drain()
            if self._owns_stream and self._stream is not None:
                os.fsync(self._stream.fileno())

    def _periodic_flush(self) -> None:
        while not self._stopped.wait(self.flush_interval.total_seconds()):
            try:
                self.flush()
            except OSError as exc:
                logger.debug("failed to flush access log: %s", exc)

    def close(self) -> None:
        """Stop the periodic flush, write out the buffer and close the file."""
        self._stopped.set()
        self._flusher.join(timeout=1.0)
        try:
            self.flush()
        finally:
            if self._owns_stream and self._stream is not None:
                self._stream.close()
                self._stream = None

    def __enter__(self) -> "BufferedLogger":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def parse_directives(content: str) -> list[str]:
    """Return the ``$`` variables in ``content``, longest first, then alphabetically."""
    return sorted(_VARIABLE.findall(content), key=lambda name: (-len(name), name))


def _escape_string(s: str) -> str:
    parts = []
    for byte in s.encode("utf-8", errors="surrogateescape"):
        if byte in (0x22, 0x5C) or byte < 32 or byte > 126:
            parts.append(f"\\x{byte:x}")
        else:
            parts.append(chr(byte))
    return "".join(parts)


_JSON_ESCAPES = {code: f"\\u00{code:02X}" for code in range(32)}
_JSON_ESCAPES.update(
    {
        ord('"'): '\\"',
        ord("\\"): "\\\\",
        ord("\n"): "\\n",
        ord("\r"): "\\r",
        ord("\t"): "\\t",
        ord("\b"): "\\b",
        ord("\f"): "\\f",
    }
)


def _escape_json(s: str) -> str:
    return s.translate(_JSON_ESCAPES)


def escape(s: str, escape_type: Union[EscapeType, str]) -> str:
    """Escape ``s`` as ``escape_type`` asks; unknown types leave it unchanged."""
    if not s:
        return s
    try:
        kind = EscapeType(escape_type) if escape_type else EscapeType.NONE
    except ValueError:
        return s
    if kind is EscapeType.DEFAULT:
        return _escape_string(s)
    if kind is EscapeType.JSON:
        return _escape_json(s)
    return s


def _format_time(when: datetime, time_format: str) -> str:
    if time_format == RFC3339:
        text = when.isoformat(timespec="seconds")
        return text[:-6] + "Z" if text.endswith("+00:00") else text
    return when.strftime(time_format)


class AccessLogTracer:
    """Writes one line per finished request, rendered from a template."""

    def __init__(self, options: AccessLogOptions) -> None:
        self.options = replace(
            options,
            time_format=options.time_format or RFC3339,
            template=" ".join(options.template.split()) + "\n",
        )
        self.match_vars = parse_directives(self.options.template)
        unique = list(dict.fromkeys(self.match_vars))
        self._pattern = (
            re.compile("|".join(re.escape(name) for name in unique)) if unique else None
        )
        self.writer = BufferedLogger(self.options)

    def start(self, c: RequestContext) -> RequestContext:
        """Nothing is recorded when a request starts; the context is returned as is."""
        return c

    def finish(self, c: RequestContext) -> None:
        """Render the template for ``c`` and write the line."""
        values = self._build_replacements(c)
        if values is None:
            return
        if self._pattern is None:
            line = self.options.template
        else:
            line = self._pattern.sub(lambda m: values[m.group(0)], self.options.template)
        self.writer.write(line)

    def close(self) -> None:
        """Flush the log and close its file; standard error is only flushed."""
        if self.options.output.lower() == "stderr":
            self.writer.flush()
            return
        self.writer.close()

    def _build_replacements(self, c: RequestContext) -> Optional[dict[str, str]]:
        stats = c.trace_stats
        if stats is None or stats.get_event(HTTP_START) is None:
            return None

        values: dict[str, str] = {}
        for key in self.match_vars:
            if key in values:
                continue
            if key == variable.TIME:
                values[key] = _format_time(timecache.now(), self.options.time_format)
            elif key == variable.HTTP_REQUEST_BODY:
                if c.request.content_type == _GRPC_CONTENT_TYPE:
                    values[key] = ""
                else:
                    body = c.request.body.decode("utf-8", errors="surrogateescape")
                    values[key] = escape(body, self.options.escape)
            elif key == variable.HTTP_RESPONSE_STATUS_CODE:
                status = c.response.status_code
                if stats.error == _CLIENT_DISCONNECTED:
                    status = 499
                values[key] = str(status)
            else:
                value = variable.get_string(key, c)
                values[key] = escape(value, self.options.escape) if value else value
        return values