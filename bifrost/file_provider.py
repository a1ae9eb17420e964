"""Configuration provider that reads files and watches them for changes."""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

ChangeFunc = Callable[[], None]

_DEFAULT_EXTENSIONS = (".yaml", ".yml", ".json")
_QUIET_PERIOD = 0.9
_POLL_INTERVAL = 0.1


class Provider(Protocol):
    """A source of configuration that reports when it changes."""

    def watch(self) -> None: ...

    def set_on_changed(self, func: Optional[ChangeFunc]) -> None: ...


@dataclass
class ContentInfo:
    """The text of one configuration file and where it was read from."""

    content: str
    path: str


@dataclass
class FileProviderOptions:
    """Which paths to read and which file extensions count."""

    enabled: bool = False
    paths: list[str] = field(default_factory=list)
    extensions: list[str] = field(default_factory=list)


def _extension(path: str) -> str:
    name = os.path.basename(path)
    dot = name.rfind(".")
    return name[dot:] if dot >= 0 else ""


def _walk_files(path: str) -> Iterator[str]:
    """Yield files under ``path`` depth first, in lexical order."""
    if not os.path.isdir(path):
        os.stat(path)
        yield path
        return
    with os.scandir(path) as entries:
        children = sorted(entries, key=lambda entry: entry.name)
    for entry in children:
        if entry.is_dir():
            yield from _walk_files(entry.path)
        else:
            yield entry.path


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, mark: Callable[[], None], only: Optional[str] = None) -> None:
        super().__init__()
        self._mark = mark
        self._only = only

    def _relevant(self, event: FileSystemEvent) -> bool:
        if self._only is None:
            return True
        paths = {os.path.abspath(str(event.src_path))}
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.add(os.path.abspath(str(dest)))
        return self._only in paths

    def on_created(self, event: FileSystemEvent) -> None:
        if self._relevant(event):
            self._mark()

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._relevant(event):
            self._mark()

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._relevant(event):
            self._mark()


class FileProvider:
    """Reads configuration files from a set of paths and watches them."""

    def __init__(self, options: Optional[FileProviderOptions] = None) -> None:
        options = options or FileProviderOptions()
        self.options = FileProviderOptions(
            enabled=options.enabled,
            paths=list(options.paths),
            extensions=list(options.extensions) or list(_DEFAULT_EXTENSIONS),
        )
        self.on_changed: Optional[ChangeFunc] = None
        self._observer: Optional[Observer] = None
        self._debouncer: Optional[threading.Thread] = None
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._pending = False
        self._last_change = 0.0

    def reset(self) -> None:
        """Forget every path."""
        self.options.paths.clear()

    def add(self, path: str) -> None:
        """Add another file or directory to read."""
        self.options.paths.append(path)

    def open(self) -> list[ContentInfo]:
        """Read every file with a known extension under the configured paths."""
        self.options.paths = list(dict.fromkeys(self.options.paths))
        contents = []
        for root in self.options.paths:
            for path in _walk_files(root):
                ext = _extension(path)
                if not ext or ext not in self.options.extensions:
                    continue
                with open(path, encoding="utf-8") as handle:
                    contents.append(ContentInfo(content=handle.read(), path=path))
        return contents

    def set_on_changed(self, func: Optional[ChangeFunc]) -> None:
        """Call ``func`` after the watched files have changed."""
        self.on_changed = func

    def _mark_changed(self) -> None:
        with self._lock:
            self._pending = True
            self._last_change = time.monotonic()

    def watch(self) -> None:
        """Start watching the paths; changes are reported after a quiet period."""
        paths = list(dict.fromkeys(self.options.paths))
        if not paths:
            return
        for path in paths:
            os.stat(path)
        self.close()

        observer = Observer()
        for path in paths:
            if os.path.isdir(path):
                observer.schedule(_ChangeHandler(self._mark_changed), path, recursive=True)
            else:
                full = os.path.abspath(path)
                observer.schedule(
                    _ChangeHandler(self._mark_changed, only=full),
                    os.path.dirname(full),
                    recursive=False,
                )
        self._stopped.clear()
        observer.start()
        self._observer = observer
        self._debouncer = threading.Thread(
            target=self._debounce, name="file-provider-watch", daemon=True
        )
        self._debouncer.start()

    def _debounce(self) -> None:
        while not self._stopped.wait(_POLL_INTERVAL):
            with self._lock:
                due = self._pending and time.monotonic() - self._last_change >= _QUIET_PERIOD
                if due:
                    self._pending = False
            if due and self.on_changed is not None:
                try:
                    self.on_changed()
                except Exception as exc:
                    logger.error("fail to change in file provider: %s", exc)

    def close(self) -> None:
        """Stop watching."""
        self._stopped.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None
        if self._debouncer is not None:
            self._debouncer.join(timeout=5.0)
            self._debouncer = None

    def __enter__(self) -> "FileProvider":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()