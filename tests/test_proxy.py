"""
Tests for the proxying of requests with no local file to an upstream,
which is a stub `http.server` running in a background thread.
"""

import asyncio
import base64
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Iterator, NamedTuple

import pytest
from conftest import ServerThread, fetch, freePort, rawRequest

from vitrine.client import Connection, ConnectionPool, ConnectionTarget
from vitrine.services.proxy import stripHopByHop


class Exchange(NamedTuple):
	method: str
	path: str
	headers: dict[str, str]
	client: tuple[str, int]


class UpstreamHandler(BaseHTTPRequestHandler):
	protocol_version = "HTTP/1.1"
	server: "UpstreamServer"

	def log_message(self, format: str, *args: Any) -> None:
		pass

	def record(self) -> None:
		self.server.exchanges.append(
			Exchange(
				self.command,
				self.path,
				{k.lower(): v for k, v in self.headers.items()},
				self.client_address,
			)
		)

	def reply(self, status: int, body: bytes, **headers: str) -> None:
		self.send_response(status)
		self.send_header("Content-Type", "text/plain")
		self.send_header("Content-Length", str(len(body)))
		for k, v in headers.items():
			self.send_header(k.replace("_", "-"), v)
		self.end_headers()
		if self.command != "HEAD":
			self.wfile.write(body)

	def do_GET(self) -> None:
		self.record()
		if self.path == "/teapot":
			self.reply(418, b"short and stout")
		elif self.path == "/chunked":
			self.send_response(200)
			self.send_header("Content-Type", "text/plain")
			self.send_header("Transfer-Encoding", "chunked")
			self.end_headers()
			self.wfile.write(b"5\r\nHello\r\n7\r\n, world\r\n0\r\n\r\n")
		else:
			self.reply(200, b"upstream:" + self.path.encode(), X_Upstream="yes", Keep_Alive="timeout=5")

	def do_HEAD(self) -> None:
		self.record()
		self.send_response(200)
		self.send_header("Content-Length", "42")
		self.end_headers()

	def do_POST(self) -> None:
		self.record()
		body = self.rfile.read(int(self.headers.get("Content-Length") or 0))
		self.reply(201, body)


class UpstreamServer(ThreadingHTTPServer):
	daemon_threads = True

	def __init__(self) -> None:
		super().__init__(("127.0.0.1", 0), UpstreamHandler)
		self.exchanges: list[Exchange] = []

	@property
	def url(self) -> str:
		return f"http://127.0.0.1:{self.server_address[1]}"


@pytest.fixture
def upstream() -> Iterator[UpstreamServer]:
	server = UpstreamServer()
	thread = threading.Thread(target=server.serve_forever, daemon=True)
	thread.start()
	yield server
	server.shutdown()
	server.server_close()
	thread.join(timeout=5.0)


class TestRelay:
	def test_get(
		self, serve: Callable[..., ServerThread], upstream: UpstreamServer
	) -> None:
		server = serve(proxy=upstream.url)
		res = fetch(server.port, "/api/users?page=2")
		assert res.status == 200
		assert res.body == b"upstream:/api/users?page=2"
		assert res.headers["x-upstream"] == "yes"
		assert "keep-alive" not in res.headers
		(exchange,) = upstream.exchanges
		assert exchange.method == "GET"
		assert exchange.path == "/api/users?page=2"
		assert exchange.headers["host"] == f"127.0.0.1:{upstream.server_address[1]}"

	def test_local_files_are_not_proxied(
		self, serve: Callable[..., ServerThread], upstream: UpstreamServer
	) -> None:
		server = serve(proxy=upstream.url)
		assert fetch(server.port, "/hello.txt").body == b"Hello, world!\n"
		assert upstream.exchanges == []

	def test_status_is_relayed(
		self, serve: Callable[..., ServerThread], upstream: UpstreamServer
	) -> None:
		server = serve(proxy=upstream.url)
		res = fetch(server.port, "/teapot")
		assert res.status == 418
		assert res.body == b"short and stout"

	def test_post_body(
		self, serve: Callable[..., ServerThread], upstream: UpstreamServer
	) -> None:
		server = serve(proxy=upstream.url)
		res = fetch(server.port, "/api/items", method="POST", body=b'{"name": "x"}')
		assert res.status == 201
		assert res.body == b'{"name": "x"}'
		assert upstream.exchanges[0].headers["content-length"] == "13"

	def test_chunked_response(
		self, serve: Callable[..., ServerThread], upstream: UpstreamServer
	) -> None:
		server = serve(proxy=upstream.url)
		res = fetch(server.port, "/chunked")
		assert res.status == 200
		assert res.body == b"Hello, world"

	def test_head(
		self, serve: Callable[..., ServerThread], upstream: UpstreamServer
	) -> None:
		server = serve(proxy=upstream.url)
		res = fetch(server.port, "/api/head", method="HEAD")
		assert res.status == 200
		assert res.headers["content-length"] == "42"
		assert res.body == b""

	def test_hop_by_hop_headers(
		self, serve: Callable[..., ServerThread], upstream: UpstreamServer
	) -> None:
		server = serve(proxy=upstream.url)
		fetch(
			server.port,
			"/api/headers",
			headers={
				"X-Custom": "1",
				"Proxy-Authorization": "Basic abc",
				"Connection": "X-Drop",
				"X-Drop": "1",
			},
		)
		headers = upstream.exchanges[0].headers
		assert headers["x-custom"] == "1"
		assert "proxy-authorization" not in headers
		assert "x-drop" not in headers

	def test_authorization_is_not_forwarded(
		self, serve: Callable[..., ServerThread], upstream: UpstreamServer
	) -> None:
		server = serve(proxy=upstream.url, auth="user:pass")
		token = base64.b64encode(b"user:pass").decode("ascii")
		res = fetch(server.port, "/api/me", headers={"Authorization": f"Basic {token}"})
		assert res.status == 200
		assert "authorization" not in upstream.exchanges[0].headers

	def test_connection_reuse(
		self, serve: Callable[..., ServerThread], upstream: UpstreamServer
	) -> None:
		"""Sequential requests go through the same upstream connection."""
		server = serve(proxy=upstream.url)
		for i in range(3):
			assert fetch(server.port, f"/api/{i}").status == 200
		clients = {_.client for _ in upstream.exchanges}
		assert len(upstream.exchanges) == 3
		assert len(clients) == 1


class TestFailures:
	def test_upstream_down(self, serve: Callable[..., ServerThread]) -> None:
		server = serve(proxy=f"http://127.0.0.1:{freePort()}")
		res = fetch(server.port, "/api/users")
		assert res.status == 502
		# The server keeps serving
		assert fetch(server.port, "/hello.txt").status == 200

	def test_absolute_target(
		self, serve: Callable[..., ServerThread], upstream: UpstreamServer
	) -> None:
		server = serve(proxy=upstream.url)
		res = rawRequest(
			server.port,
			b"GET http://example.com/x HTTP/1.1\r\nHost: example.com\r\nConnection: close\r\n\r\n",
		)
		assert res.startswith(b"HTTP/1.1 400 ")
		assert upstream.exchanges == []

	def test_no_upstream(self, serve: Callable[..., ServerThread]) -> None:
		server = serve()
		assert fetch(server.port, "/api/users").status == 404


class TestHeaders:
	def test_strip_hop_by_hop(self) -> None:
		headers = stripHopByHop(
			{
				"Connection": "keep-alive, X-Private",
				"Keep-Alive": "timeout=5",
				"Transfer-Encoding": "chunked",
				"X-Private": "1",
				"Content-Type": "text/plain",
			}
		)
		assert headers == {"Content-Type": "text/plain"}


TARGET: ConnectionTarget = ConnectionTarget("upstream.test", 80, False)


class FakeStream:
	"""Stands for both the reader and the writer of a pooled connection."""

	def __init__(self) -> None:
		self.closed: bool = False

	def at_eof(self) -> bool:
		return False

	def is_closing(self) -> bool:
		return self.closed

	def close(self) -> None:
		self.closed = True


def connection(idle: float) -> Connection:
	stream = FakeStream()
	return Connection(
		TARGET,
		stream,  # type: ignore[arg-type]
		stream,  # type: ignore[arg-type]
		idle=idle,
		until=time.monotonic() + idle,
	)


class TestPool:
	def test_reuse(self) -> None:
		pool = ConnectionPool()
		cxn = connection(30.0)
		assert pool.release(cxn)
		assert len(pool) == 1
		assert asyncio.run(pool.checkout(TARGET)) is cxn
		assert len(pool) == 0
		assert cxn.uses == 1

	def test_not_reusable(self) -> None:
		pool = ConnectionPool()
		cxn = connection(30.0)
		assert not pool.release(cxn, False)
		assert cxn.writer.is_closing()
		assert len(pool) == 0

	def test_expired_connections_are_closed(self) -> None:
		"""An expired connection is closed on the next checkout, even when a
		valid one was released after it."""
		pool = ConnectionPool()
		stale = connection(0.01)
		pool.release(stale)
		time.sleep(0.05)
		fresh = connection(30.0)
		pool.release(fresh)
		assert len(pool) == 2
		assert asyncio.run(pool.checkout(TARGET)) is fresh
		assert stale.writer.is_closing()
		assert len(pool) == 0
		pool.release(fresh)
		assert len(pool) == 1


# EOF
