"""Zero-downtime restarts: hand listening sockets over to a new process."""

from __future__ import annotations

import enum
import json
import logging
import os
import signal
import socket
import subprocess
import sys
import threading
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_PID_FILE = "./logs/bifrost.pid"
DEFAULT_UPGRADE_SOCK = "./logs/bifrost.sock"

UPGRADE_ENV = "UPGRADE"
LISTENERS_ENV = "LISTENERS"

_FIRST_INHERITED_FD = 3
_ACCEPT_POLL = 0.2
_SHUTDOWN_TICK = 1.0
_SHUTDOWN_TIMEOUT = 10.0
_KILL_GRACE = 0.1
_MAX_PID = 2**31 - 1


class _State(enum.Enum):
    DEFAULT = 0
    WAITING = 1
    STOPPED = 2


@dataclass
class ZeroOptions:
    """Where the upgrade socket and PID file live, and how to restart.

    ``command`` is the command line started for the new process; when it is
    not given, the running program is started again with its own arguments.
    """

    upgrade_sock: str = ""
    pid_file: str = ""
    command: Optional[list[str]] = None

    def pid_file_path(self) -> str:
        """Return the PID file path, or the default one."""
        return self.pid_file or DEFAULT_PID_FILE

    def upgrade_sock_path(self) -> str:
        """Return the upgrade socket path, or the default one."""
        return self.upgrade_sock or DEFAULT_UPGRADE_SOCK


@dataclass
class _ListenInfo:
    key: str
    sock: socket.socket = field(repr=False)


def _restart_command(options: ZeroOptions) -> list[str]:
    if options.command:
        return list(options.command)
    return [sys.executable, *sys.argv]


def _resolve(network: str, address: str) -> tuple[int, Any]:
    if network == "unix":
        return socket.AF_UNIX, address

    families = {"tcp": socket.AF_UNSPEC, "tcp4": socket.AF_INET, "tcp6": socket.AF_INET6}
    if network not in families:
        raise ValueError(f"unsupported network {network!r}")

    host, sep, port_text = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text) if port_text else 0
    except ValueError:
        raise ValueError(f"invalid port in address {address!r}") from None

    infos = socket.getaddrinfo(
        host or None, port, families[network], socket.SOCK_STREAM, 0, socket.AI_PASSIVE
    )
    if not infos:
        raise OSError(f"cannot resolve address {address!r}")
    infos.sort(key=lambda info: 0 if info[0] == socket.AF_INET else 1)
    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr


def _listen(network: str, address: str) -> socket.socket:
    family, sockaddr = _resolve(network, address)
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if family != socket.AF_UNIX:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(sockaddr)
        sock.listen(socket.SOMAXCONN)
    except OSError:
        sock.close()
        raise
    return sock


def _format_address(sock: socket.socket) -> str:
    name = sock.getsockname()
    if sock.family == socket.AF_UNIX:
        return name.decode() if isinstance(name, bytes) else str(name)
    if sock.family == socket.AF_INET6:
        return f"[{name[0]}]:{name[1]}"
    return f"{name[0]}:{name[1]}"


def _process_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


class ZeroDownTime:
    """Keeps listening sockets and passes them on to a freshly started process."""

    def __init__(self, options: Optional[ZeroOptions] = None) -> None:
        self.options = options or ZeroOptions()
        self._lock = threading.Lock()
        self._load_lock = threading.Lock()
        self._loaded = False
        self._listeners: list[_ListenInfo] = []
        self._state = _State.DEFAULT
        self._stop_waiting = threading.Event()
        self._shutdown_done = threading.Event()

    def close(self) -> None:
        """Close every listener and stop waiting for upgrades."""
        with self._lock:
            infos = list(self._listeners)
            waiting = self._state is _State.WAITING
        for info in infos:
            with suppress(OSError):
                info.sock.close()
        if waiting:
            self._stop_waiting.set()
            self._shutdown_done.wait()

    def upgrade(self) -> None:
        """Ask the running process to start its successor."""
        path = self.options.upgrade_sock_path()
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as conn:
                conn.connect(path)
        except OSError as exc:
            raise ConnectionError(f"failed to connect to upgrade socket: {exc}") from exc

    def is_upgraded(self) -> bool:
        """Tell whether this process was started by an upgrade."""
        return os.environ.get(UPGRADE_ENV, "") != ""

    def listener(self, network: str, address: str) -> socket.socket:
        """Return a listening socket for ``address``, reusing an inherited one."""
        self._load_inherited()

        with self._lock:
            for info in self._listeners:
                if info.key == address:
                    logger.info("get listener from cache addr=%s", address)
                    return info.sock

        try:
            sock = _listen(network, address)
        except OSError as exc:
            logger.error(
                "failed to create listener error=%s addr=%s network=%s", exc, address, network
            )
            raise

        with self._lock:
            self._listeners.append(_ListenInfo(key=_format_address(sock), sock=sock))
        return sock

    def _load_inherited(self) -> None:
        with self._load_lock:
            if self._loaded:
                return
            self._loaded = True
            if not self.is_upgraded():
                return

            raw = os.environ.get(LISTENERS_ENV, "")
            if not raw:
                return
            try:
                entries = json.loads(raw)
            except json.JSONDecodeError as exc:
                logger.error("failed to unmarshal LISTENERS error=%s", exc)
                return
            if not isinstance(entries, list):
                logger.error("failed to unmarshal LISTENERS: not a list")
                return

            inherited = []
            for index, entry in enumerate(entries):
                if not isinstance(entry, dict):
                    continue
                key = str(entry.get("key", ""))
                fd = entry.get("fd", _FIRST_INHERITED_FD + index)
                try:
                    sock = socket.socket(fileno=int(fd))
                except (OSError, ValueError, TypeError) as exc:
                    logger.error("failed to create file listener error=%s fd=%s", exc, fd)
                    continue
                inherited.append(_ListenInfo(key=key, sock=sock))
                logger.info("file listener is created addr=%s fd=%s", key, fd)

            with self._lock:
                self._listeners.extend(inherited)

    def wait_for_upgrade(self) -> None:
        """Serve upgrade requests until :meth:`close` is called."""
        with self._lock:
            if self._state is not _State.DEFAULT:
                raise RuntimeError(
                    "state is not default and cannot be upgraded, "
                    f"state={self._state.value}"
                )
            self._state = _State.WAITING
        self._stop_waiting.clear()
        self._shutdown_done.clear()

        self._write_pid()

        path = self.options.upgrade_sock_path()
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            server.bind(path)
            server.listen()
        except OSError as exc:
            server.close()
            with self._lock:
                self._state = _State.DEFAULT
            raise ConnectionError(f"failed to open upgrade socket: {exc}") from exc

        server.settimeout(_ACCEPT_POLL)
        logger.info("unix socket is created path=%s", path)
        acceptor = threading.Thread(
            target=self._accept_loop, args=(server,), name="zero-upgrade", daemon=True
        )
        acceptor.start()

        try:
            self._stop_waiting.wait()
            logger.info("stop waiting for upgrade signal pid=%d", os.getpid())
        finally:
            self._stop_waiting.set()
            acceptor.join()
            server.close()
            with suppress(OSError):
                os.unlink(path)
            with self._lock:
                self._state = _State.STOPPED
            self._shutdown_done.set()

    def _accept_loop(self, server: socket.socket) -> None:
        while not self._stop_waiting.is_set():
            try:
                conn, _ = server.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if server.fileno() == -1:
                    logger.info("unix socket is closed pid=%d", os.getpid())
                    break
                logger.info("failed to accept upgrade connection error=%s", exc)
                continue
            conn.close()
            try:
                self._spawn_child()
            except Exception as exc:
                logger.error("failed to start child process error=%s", exc)

    def _spawn_child(self) -> None:
        with self._lock:
            infos = list(self._listeners)

        fds: list[int] = []
        entries: list[dict[str, Any]] = []
        try:
            for info in infos:
                try:
                    fd = os.dup(info.sock.fileno())
                except OSError as exc:
                    logger.error("failed to get listener file error=%s", exc)
                    continue
                fds.append(fd)
                entries.append({"key": info.key, "fd": fd})

            logger.info("listeners count=%d", len(fds))
            env = dict(os.environ)
            env[UPGRADE_ENV] = "1"
            env[LISTENERS_ENV] = json.dumps(entries, separators=(",", ":"))
            subprocess.Popen(
                _restart_command(self.options),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                pass_fds=tuple(fds),
            )
        finally:
            for fd in fds:
                with suppress(OSError):
                    os.close(fd)

    def shutdown(self) -> None:
        """Terminate the process named in the PID file, killing it after a timeout."""
        path = self.options.pid_file_path()
        with open(path, encoding="utf-8") as handle:
            text = handle.read()
        try:
            pid = int(text)
        except ValueError:
            logger.error("pid is invalid: %r", text)
            raise ValueError(f"pid is invalid: {text!r}") from None
        if not 0 < pid <= _MAX_PID:
            raise ValueError(f"pid is invalid: {text!r}")

        try:
            os.kill(pid, signal.SIGTERM)
            deadline = time.monotonic() + _SHUTDOWN_TIMEOUT
            while time.monotonic() < deadline:
                time.sleep(_SHUTDOWN_TICK)
                if not _process_exists(pid):
                    return

            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                return
            time.sleep(_KILL_GRACE)
            if not _process_exists(pid):
                return
            raise TimeoutError("process did not terminate within the timeout period")
        finally:
            with suppress(OSError):
                os.remove(path)

    def _write_pid(self) -> None:
        try:
            fd = os.open(
                self.options.pid_file_path(), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
        except OSError as exc:
            logger.error("failed to write PID file error=%s", exc)

    def __enter__(self) -> "ZeroDownTime":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()