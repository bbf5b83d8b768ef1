"""Run the share WSGI app on a local HTTP server in a background thread."""

from __future__ import annotations

import errno
import logging
import socket
import threading
from socketserver import ThreadingMixIn
from typing import Callable
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

logger = logging.getLogger(__name__)

_MAX_TRIES = 10


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: object) -> None:
        logger.debug("share http: " + format, *args)


class _ThreadingServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _ThreadingServer6(_ThreadingServer):
    address_family = socket.AF_INET6


def is_addr_in_use(err: BaseException | None) -> bool:
    """Report whether *err* means the listen address is already taken."""
    if err is None:
        return False
    if isinstance(err, OSError) and err.errno == errno.EADDRINUSE:
        return True
    s = str(err).lower()
    return "address already in use" in s or "only one usage" in s


class Loopback:
    """Starts the share server on demand and stops it on close."""

    def __init__(
        self,
        app: Callable,
        host: str = "127.0.0.1",
        port: int = 0,
        clipboard_host: str | None = None,
    ) -> None:
        self.app = app
        self.host = host
        self.port = port
        self.clipboard_host = clipboard_host
        self._lock = threading.Lock()
        self._server: WSGIServer | None = None
        self._thread: threading.Thread | None = None
        self._base_url = ""

    def _clip_host(self) -> str:
        if self.clipboard_host:
            return self.clipboard_host
        if self.host in ("", "0.0.0.0", "::"):
            return "127.0.0.1"
        return self.host

    def ensure_running(self) -> str:
        """Start the server if needed and return its base URL (no trailing slash)."""
        with self._lock:
            if self._server is not None:
                return self._base_url
            server_cls = _ThreadingServer6 if ":" in self.host else _ThreadingServer
            last_err: OSError | None = None
            for offset in range(_MAX_TRIES):
                port = self.port + offset
                if port > 65535:
                    break
                try:
                    server = make_server(self.host, port, self.app,
                                         server_class=server_cls, handler_class=_QuietHandler)
                except OSError as exc:
                    last_err = exc
                    if is_addr_in_use(exc):
                        continue
                    raise OSError(f"share loopback listen {self.host}:{port}: {exc}") from exc
                eff_port = server.server_address[1]
                clip = self._clip_host()
                if ":" in clip:
                    clip = f"[{clip}]"
                self._base_url = f"http://{clip}:{eff_port}"
                self._server = server
                self._thread = threading.Thread(target=server.serve_forever, daemon=True)
                self._thread.start()
                return self._base_url
            raise OSError(
                f"share loopback: exhausted port tries from {self.port}: "
                f"{last_err or 'no listen port'}"
            )

    def close(self) -> None:
        """Stop the server started by ensure_running, if any."""
        with self._lock:
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None
            self._base_url = ""
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=5)