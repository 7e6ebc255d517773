import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from socks5_server import Socks5Server


class SimpleHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        body = b'{"ok": true, "path": "%s"}' % self.path.encode('utf-8')
        self.send_response(200)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        # suppress default logging
        return


@pytest.fixture
def origin_server():
    """Local HTTP server so the end-to-end tests never need the outside network."""
    httpd = HTTPServer(('127.0.0.1', 0), SimpleHandler)
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    yield httpd.server_address[1]
    httpd.shutdown()
    httpd.server_close()


@pytest.fixture
def socket_pair():
    a, b = socket.socketpair()
    a.settimeout(5.0)
    b.settimeout(5.0)
    yield a, b
    a.close()
    b.close()


@pytest.fixture
def start_socks_server():
    """Factory running a Socks5Server on a free loopback port in a background thread."""
    servers = []

    def start(backend=None, **kwargs):
        server = Socks5Server(backend, host='127.0.0.1', port=0, **kwargs)
        server.bind()
        t = threading.Thread(target=server.start, daemon=True)
        t.start()
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.stop()


@pytest.fixture
def closed_port():
    """A loopback port with nothing listening on it."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('127.0.0.1', 0))
    port = s.getsockname()[1]
    s.close()
    return port

