import asyncio
import io
import logging
from pathlib import Path

from siren.html_utils import inject_before_body_end, reload_script
from siren.protocols import ReloadNotifier, StaticServer
from siren.server import DevServer, _ReloadHandler


def make_handler(directory: Path, path: str):
    handler = _ReloadHandler.__new__(_ReloadHandler)
    handler.path = path
    handler.directory = str(directory)
    handler.command = "GET"
    handler.request_version = "HTTP/1.1"
    handler.server_version = ""
    handler.sys_version = ""
    handler._headers_buffer = []
    handler.headers = {}
    handler.rfile = io.BytesIO(b"")
    handler.wfile = io.BytesIO()
    handler.codes = []
    handler.sent_headers = {}
    handler.send_response = lambda code, message=None: handler.codes.append(code)
    handler.send_header = lambda key, value: handler.sent_headers.__setitem__(key, value)
    handler.end_headers = lambda: None
    handler.send_error = lambda code, message=None: handler.codes.append(("error", code))
    return handler


def test_inject_before_body_end():
    assert inject_before_body_end("<body>hi</BODY>", "<x>") == "<body>hi<x></BODY>"
    assert inject_before_body_end("<p>no body</p>", "<x>") == "<p>no body</p><x>"
    assert inject_before_body_end("</body><body></body>", "<x>") == "</body><body><x></body>"


def test_reload_script_targets_port():
    assert ":4001" in reload_script(4001)
    assert "location.reload()" in reload_script(4001)


def test_reload_handler_injects_script(tmp_path):
    (tmp_path / "index.html").write_text("<html><body>Hello</body></html>", encoding="utf-8")
    handler = make_handler(tmp_path, "/index.html")
    result = _ReloadHandler.send_head(handler)
    body = handler.wfile.getvalue()
    assert result is None
    assert handler.codes == [200]
    assert b"new WebSocket" in body
    assert body.index(b"new WebSocket") < body.index(b"</body>")
    assert handler.sent_headers["Content-Length"] == str(len(body))


def test_directory_serves_index(tmp_path):
    (tmp_path / "blog").mkdir()
    (tmp_path / "blog" / "index.html").write_text("<body>Blog</body>", encoding="utf-8")
    handler = make_handler(tmp_path, "/blog/")
    _ReloadHandler.send_head(handler)
    assert handler.codes == [200]
    assert b"Blog" in handler.wfile.getvalue()


def test_missing_path_uses_custom_404(tmp_path):
    (tmp_path / "404.html").write_text("<body>oops</body>", encoding="utf-8")
    handler = make_handler(tmp_path, "/missing")
    result = _ReloadHandler.send_head(handler)
    assert result is None
    assert handler.codes == [404]
    assert b"oops" in handler.wfile.getvalue()


def test_missing_path_without_404_page(tmp_path):
    handler = make_handler(tmp_path, "/missing")
    _ReloadHandler.send_head(handler)
    assert handler.codes == [("error", 404)]


def test_directory_without_index_is_404(tmp_path):
    (tmp_path / "empty").mkdir()
    handler = make_handler(tmp_path, "/empty/")
    _ReloadHandler.send_head(handler)
    assert handler.codes == [("error", 404)]


def test_send_head_falls_back_for_assets(tmp_path):
    (tmp_path / "style.css").write_text("body{}", encoding="utf-8")
    handler = make_handler(tmp_path, "/style.css")
    result = _ReloadHandler.send_head(handler)
    try:
        assert result is not None
        assert result.read() == b"body{}"
    finally:
        result.close()


def test_dev_server_ports(tmp_path):
    server = DevServer(tmp_path, http_port=5055)
    assert server.ws_port == 5056
    assert server.url == "http://localhost:5055"
    explicit = DevServer(tmp_path, http_port=5055, ws_port=6000)
    assert ":6000" in explicit._reload_script


def test_dev_server_satisfies_protocols(tmp_path):
    server = DevServer(tmp_path)
    assert isinstance(server, StaticServer)
    assert isinstance(server, ReloadNotifier)


def test_async_broadcast_drops_stale_clients():
    server = DevServer(Path("."))

    class GoodWS:
        def __init__(self):
            self.messages = []

        async def send(self, msg):
            self.messages.append(msg)

    class BadWS:
        async def send(self, msg):
            raise ConnectionError("gone")

    good = GoodWS()
    bad = BadWS()
    server._ws_clients = {good, bad}
    asyncio.run(server._async_broadcast('{"type": "reload"}'))
    assert good.messages == ['{"type": "reload"}']
    assert server._ws_clients == {good}


def test_notify_reload_before_start_is_noop(tmp_path):
    server = DevServer(tmp_path)
    server.notify_reload()
    server.stop()


def test_notify_reload_schedules_broadcast(monkeypatch, tmp_path):
    server = DevServer(tmp_path)
    called = {}

    class RunningLoop:
        def is_running(self):
            return True

    def fake_runner(coro, loop):
        called["loop"] = loop
        asyncio.run(coro)

    server._loop = RunningLoop()
    monkeypatch.setattr("siren.server.asyncio.run_coroutine_threadsafe", fake_runner)
    server.notify_reload()
    assert called["loop"] is server._loop


def test_ws_handler_tracks_clients(tmp_path):
    server = DevServer(tmp_path)

    class DummyWS:
        async def wait_closed(self):
            assert self in server._ws_clients

    ws = DummyWS()
    asyncio.run(server._ws_handler(ws))
    assert ws not in server._ws_clients


def test_ws_start_failure_is_logged(monkeypatch, tmp_path, caplog):
    server = DevServer(tmp_path, http_port=5055, ws_port=5057)

    async def fake_run():
        raise OSError("bind error")

    monkeypatch.setattr(server, "_run_ws_server", fake_run)
    server._loop = asyncio.new_event_loop()
    try:
        with caplog.at_level(logging.ERROR, logger="siren"):
            server._start_ws()
    finally:
        server._loop.close()
        asyncio.set_event_loop(None)
    assert "failed to start" in caplog.text


def test_start_and_stop(monkeypatch, tmp_path):
    opened = []
    monkeypatch.setattr("siren.server.webbrowser.open", lambda url: opened.append(url))
    monkeypatch.setattr(DevServer, "_start_ws", lambda self: None)
    server = DevServer(tmp_path / "public", http_port=0, open_browser=True)
    server.start()
    try:
        assert (tmp_path / "public").is_dir()
        assert opened == [server.url]
    finally:
        server.stop()
    assert server._httpd is None
