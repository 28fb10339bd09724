"""Development server for Siren.

Serves the output tree over HTTP and pushes reload messages over a websocket:
- Injects a reload script into HTML responses.
- Rejects directory listings and missing paths with a 404 (serving 404.html when present).
- Sends no-cache headers so the browser always sees the latest build.

Both listeners run on daemon threads; ``start`` and ``notify_reload`` return
immediately so the watch coordinator is never blocked by network I/O.

Key classes:
- DevServer: Starts the listeners and broadcasts reloads.
- _ReloadHandler: HTTP request handler that injects the reload script and enforces 404s.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import threading
import webbrowser
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import websockets

from .html_utils import inject_before_body_end, reload_script

logger = logging.getLogger(__name__)


class _ReloadHandler(SimpleHTTPRequestHandler):
    """HTTP request handler that injects the live reload script into HTML pages.

    Attributes:
        reload_script: Markup appended to every HTML response.
    """

    reload_script = reload_script(3001)

    def end_headers(self):
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        super().end_headers()

    def log_message(self, format, *args):  # noqa: A002 - signature fixed by BaseHTTPRequestHandler
        logger.debug("%s - %s", self.address_string(), format % args)

    def list_directory(self, path):  # pragma: no cover - exercised via send_head
        return self._serve_404()

    def _serve_html(self, path: Path, status: int) -> None:
        content = inject_before_body_end(path.read_text(encoding="utf-8"), self.reload_script)
        encoded = content.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)

    def _serve_404(self):
        """Serve 404.html (when present) with the reload script and a 404 status."""
        error_page = Path(self.directory) / "404.html"
        if error_page.exists():
            self._serve_html(error_page, 404)
        else:
            self.send_error(404, "File not found")
        return None

    def send_head(self):
        path = Path(self.translate_path(self.path))
        if path.is_dir():
            path = path / "index.html"
        if not path.is_file():
            return self._serve_404()
        if path.suffix == ".html":
            self._serve_html(path, 200)
            return None
        return super().send_head()


class DevServer:
    """Static file server with live reload.

    Attributes:
        root_dir: Directory served over HTTP (the output tree).
        http_port: Port for the HTTP server.
        ws_port: Port for websocket reload connections.
        open_browser: Whether to open the site once the server is up.
    """

    def __init__(
        self,
        root_dir: Path,
        http_port: int = 3000,
        ws_port: int | None = None,
        open_browser: bool = False,
    ):
        self.root_dir = root_dir
        self.http_port = http_port
        self.ws_port = ws_port if ws_port is not None else http_port + 1
        self.open_browser = open_browser
        self._reload_script = reload_script(self.ws_port)
        self._httpd: ThreadingHTTPServer | None = None
        self._ws_clients: set = set()
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def url(self) -> str:
        return f"http://localhost:{self.http_port}"

    def start(self) -> None:
        """Bind the HTTP listener and start both servers in the background."""
        self.root_dir.mkdir(parents=True, exist_ok=True)
        handler_cls = type(
            "_ReloadHandlerWithPort",
            (_ReloadHandler,),
            {"reload_script": self._reload_script},
        )
        handler = functools.partial(handler_cls, directory=str(self.root_dir))
        self._httpd = ThreadingHTTPServer(("", self.http_port), handler)
        threading.Thread(target=self._httpd.serve_forever, daemon=True).start()
        self._loop = asyncio.new_event_loop()
        threading.Thread(target=self._start_ws, daemon=True).start()
        logger.info("Serving %s at %s", self.root_dir, self.url)
        if self.open_browser:
            webbrowser.open(self.url)

    def stop(self) -> None:
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
            self._httpd = None
        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._loop.stop)

    def _start_ws(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._run_ws_server())
        except OSError as exc:
            logger.error("WebSocket server failed to start (port %s): %s", self.ws_port, exc)
        except RuntimeError:
            # stop() ends the loop before the server future completes.
            logger.debug("WebSocket server stopped")

    async def _run_ws_server(self) -> None:  # pragma: no cover - integration path
        async with websockets.serve(self._ws_handler, "0.0.0.0", self.ws_port):
            await asyncio.Future()

    async def _ws_handler(self, websocket):
        self._ws_clients.add(websocket)
        try:
            await websocket.wait_closed()
        finally:
            self._ws_clients.discard(websocket)

    def notify_reload(self) -> None:
        """Tell every connected browser to reload. Returns immediately."""
        if self._loop is None or not self._loop.is_running():
            logger.debug("Reload requested before the websocket server started")
            return
        message = json.dumps({"type": "reload"})
        asyncio.run_coroutine_threadsafe(self._async_broadcast(message), self._loop)
        logger.info("Reloading browsers")

    async def _async_broadcast(self, message: str):
        stale = set()
        for ws in list(self._ws_clients):
            try:
                await ws.send(message)
            except Exception:
                stale.add(ws)
        self._ws_clients.difference_update(stale)
