from __future__ import annotations

import socket
import time
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlsplit

import pytest

import urlfetcher


ROUTES = {
    "/redirect": (302, b"moved", [("Location", "/target")]),
    "/target": (200, b"target", []),
    "/html": (
        200,
        b"<!doctype html>\n<HTML><body>needle</body></HTML>\n",
        [("Content-Type", "text/html")],
    ),
    "/empty": (200, b"  \n\t", []),
    "/missing": (404, b"not found", []),
    "/error": (500, b"boom", []),
    "/cookies": (200, b"ok", [("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")]),
}


class StubHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def _handle(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        payload = self.rfile.read(length) if length else b""
        path = urlsplit(self.path).path
        self.server.hits.append(
            {
                "method": self.command,
                "target": self.path,
                "path": path,
                "headers": dict(self.headers.items()),
                "body": payload,
                "time": time.monotonic(),
            }
        )
        status, body, headers = ROUTES.get(path, (200, b"hello", []))
        self.send_response(status)
        for k, v in headers:
            self.send_header(k, v)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    do_GET = _handle
    do_POST = _handle
    do_PUT = _handle

    def log_message(self, format, *args) -> None:
        pass


@pytest.fixture
def http_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), StubHandler)
    server.hits = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
    thread.join()


@pytest.fixture
def base_url(http_server) -> str:
    return f"http://127.0.0.1:{http_server.server_port}"


@pytest.fixture
def closed_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def session():
    s = urlfetcher.build_session()
    yield s
    s.close()


@pytest.fixture
def limiter() -> urlfetcher.RateLimiter:
    return urlfetcher.RateLimiter(0)


@pytest.fixture
def trickle_url():
    """Server that sends headers promptly, then one body byte every 0.1s."""
    listener = socket.socket()
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    stop = threading.Event()

    def serve() -> None:
        try:
            conn, _ = listener.accept()
        except OSError:
            return
        with conn:
            conn.recv(65536)
            try:
                conn.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 1000\r\n\r\n")
                for _ in range(1000):
                    if stop.wait(0.1):
                        break
                    conn.sendall(b"x")
            except OSError:
                pass

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{listener.getsockname()[1]}/slow"
    stop.set()
    listener.close()
    thread.join(timeout=5)
