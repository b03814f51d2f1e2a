"""
pytest configuration and fixtures.
"""

import http.client
import os
import socket
import sys
import threading
from pathlib import Path
from typing import Callable, Iterator, NamedTuple

import pytest

# Add src/py to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src" / "py"))

from vitrine.config import ServerConfig  # NOQA: E402
from vitrine.server import Server  # NOQA: E402

BIG_CSS: bytes = b"body { color: red; margin: 0px; }\n" * 200
IMAGE: bytes = bytes(range(256)) * 16


@pytest.fixture
def site(tmp_path: Path) -> Path:
	"""A directory to serve, with text, binary and nested content."""
	root = tmp_path / "site"
	root.mkdir()
	(root / "hello.txt").write_bytes(b"Hello, world!\n")
	(root / "big.css").write_bytes(BIG_CSS)
	(root / "image.png").write_bytes(IMAGE)
	(root / "a" / "b" / "y").mkdir(parents=True)
	(root / "a" / "b" / "x.txt").write_bytes(b"x")
	(root / "withindex").mkdir()
	(root / "withindex" / "index.html").write_bytes(b"<h1>Index</h1>")
	(root / "weird").mkdir()
	(root / "weird" / "<b>&\"name\".txt").write_bytes(b"weird")
	(tmp_path / "secret.txt").write_bytes(b"secret")
	return root


@pytest.fixture
def makeConfig(site: Path) -> Callable[..., ServerConfig]:
	def make(**options: object) -> ServerConfig:
		options.setdefault("host", "127.0.0.1")
		options.setdefault("port", 0)
		options.setdefault("logRequests", False)
		return ServerConfig.Make(str(site), **options)  # type: ignore[arg-type]

	return make


class ServerThread:
	"""Runs a server in a background thread, on an ephemeral port."""

	def __init__(self, config: ServerConfig):
		self.server = Server(config)
		self.thread = threading.Thread(target=self.run, daemon=True)

	def run(self) -> None:
		import asyncio

		asyncio.run(self.server.serve())

	@property
	def port(self) -> int:
		assert self.server.port is not None
		return self.server.port

	def start(self) -> "ServerThread":
		self.thread.start()
		if not self.server.ready.wait(5.0):
			raise RuntimeError("Server failed to start")
		return self

	def stop(self) -> None:
		self.server.stop()
		self.thread.join(timeout=5.0)


@pytest.fixture
def serve(makeConfig: Callable[..., ServerConfig]) -> Iterator[Callable[..., ServerThread]]:
	"""Starts servers with the given options, stopping them after the test."""
	servers: list[ServerThread] = []

	def start(**options: object) -> ServerThread:
		server = ServerThread(makeConfig(**options)).start()
		servers.append(server)
		return server

	yield start
	for server in servers:
		server.stop()


class Response(NamedTuple):
	status: int
	# Header names are lowercase
	headers: dict[str, str]
	body: bytes


def fetch(
	port: int,
	path: str,
	method: str = "GET",
	headers: dict[str, str] | None = None,
	body: bytes | None = None,
	connection: http.client.HTTPConnection | None = None,
) -> Response:
	cxn = connection or http.client.HTTPConnection("127.0.0.1", port, timeout=5.0)
	try:
		cxn.request(method, path, body=body, headers=headers or {})
		res = cxn.getresponse()
		data = res.read()
		return Response(res.status, {k.lower(): v for k, v in res.getheaders()}, data)
	finally:
		if connection is None:
			cxn.close()


def rawRequest(port: int, payload: bytes, timeout: float = 5.0) -> bytes:
	"""Sends the raw payload and returns everything received until the
	server closes the connection."""
	with socket.create_connection(("127.0.0.1", port), timeout=timeout) as sock:
		sock.sendall(payload)
		chunks: list[bytes] = []
		while chunk := sock.recv(65_536):
			chunks.append(chunk)
		return b"".join(chunks)


def freePort() -> int:
	with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
		s.bind(("127.0.0.1", 0))
		return s.getsockname()[1]


def touch(path: Path, mtime_ns: int) -> None:
	os.utime(path, ns=(mtime_ns, mtime_ns))


# EOF
