"""
Tests for response framing and the body writer.
"""

import asyncio
import gzip
from pathlib import Path
from typing import AsyncIterator

import pytest

from vitrine.http.model import (
	HTTPBodyBlob,
	HTTPBodyFile,
	HTTPBodyWriter,
	HTTPHeaders,
	HTTPRequest,
	HTTPResponse,
	TruncatedBody,
	headername,
	headertokens,
)
from vitrine.utils.codec import GZipEncoder


class MemoryWriter(HTTPBodyWriter):
	def __init__(self) -> None:
		super().__init__()
		self.data: bytearray = bytearray()

	async def _writeBytes(self, chunk: bytes) -> bool:
		self.data += chunk
		self.written += len(chunk)
		return True


async def parts() -> AsyncIterator[bytes | str]:
	yield "Hello"
	yield b", "
	yield "world"


def send(response: HTTPResponse, keepAlive: bool = True) -> bytes:
	async def run() -> bytes:
		writer = MemoryWriter()
		transform = response.frame(keepAlive=keepAlive)
		await writer.write(response.head())
		if response.hasBody:
			await writer.prepare(transform).write(response.body)
		return bytes(writer.data)

	return asyncio.run(run())


class TestHeaders:
	def test_headername(self) -> None:
		assert headername("content-type") == "Content-Type"
		assert headername("X-CUSTOM-HEADER") == "X-Custom-Header"

	def test_headertokens(self) -> None:
		assert headertokens("Keep-Alive, Upgrade ,") == {"keep-alive", "upgrade"}
		assert headertokens(None) == set()


class TestFraming:
	def test_blob(self) -> None:
		res = HTTPResponse.Create(content="Hello", contentType="text/plain")
		data = send(res)
		assert data.startswith(b"HTTP/1.1 200 OK\r\n")
		assert b"Content-Length: 5\r\n" in data
		assert b"Transfer-Encoding" not in data
		assert data.endswith(b"\r\n\r\nHello")
		assert not res.shouldClose

	def test_stream_is_chunked(self) -> None:
		res = HTTPResponse.Create(content=parts())
		data = send(res)
		assert b"Transfer-Encoding: chunked\r\n" in data
		assert data.endswith(b"\r\n\r\n5\r\nHello\r\n2\r\n, \r\n5\r\nworld\r\n0\r\n\r\n")

	def test_stream_over_http10(self) -> None:
		res = HTTPResponse.Create(content=parts(), protocol="HTTP/1.0")
		data = send(res)
		assert data.startswith(b"HTTP/1.0 200 OK\r\n")
		assert b"Connection: close\r\n" in data
		assert data.endswith(b"\r\n\r\nHello, world")
		assert res.shouldClose

	def test_compressed_file(self, tmp_path: Path) -> None:
		path = tmp_path / "data.txt"
		payload = b"compress me please " * 1_000
		path.write_bytes(payload)
		res = HTTPResponse.Create(
			content=HTTPBodyFile(str(path), len(payload), 1_000),
			headers={"Content-Encoding": "gzip"},
			transform=GZipEncoder(),
		)
		data = send(res)
		head, _, body = data.partition(b"\r\n\r\n")
		assert b"Content-Length" not in head
		chunks = bytearray()
		while True:
			size, _, body = body.partition(b"\r\n")
			n = int(size, 16)
			if not n:
				break
			chunks += body[:n]
			body = body[n + 2 :]
		assert gzip.decompress(bytes(chunks)) == payload

	def test_empty(self) -> None:
		data = send(HTTPResponse.Create(status=200))
		assert b"Content-Length: 0\r\n" in data

	def test_no_body_statuses(self) -> None:
		res = HTTPResponse.Create(content="ignored", status=204)
		data = send(res)
		assert b"Content-Length" not in data
		assert data.endswith(b"\r\n\r\n")
		assert not res.hasBody

	def test_connection_close(self) -> None:
		res = HTTPResponse.Create(content="bye")
		assert b"Connection: close\r\n" in send(res, keepAlive=False)
		assert res.shouldClose

	def test_http10_keep_alive(self) -> None:
		res = HTTPResponse.Create(content="hi", protocol="HTTP/1.0")
		assert b"Connection: keep-alive\r\n" in send(res)

	def test_repeated_header_lines(self) -> None:
		res = HTTPResponse.Create(content="", headers={"Set-Cookie": ["a=1", "b=2"]})
		head = res.head()
		assert b"Set-Cookie: a=1\r\nSet-Cookie: b=2\r\n" in head


class TestWriter:
	def test_file_shorter_than_announced(self, tmp_path: Path) -> None:
		path = tmp_path / "short.txt"
		path.write_bytes(b"short")

		async def run() -> None:
			await MemoryWriter().write(HTTPBodyFile(str(path), 100))

		with pytest.raises(TruncatedBody):
			asyncio.run(run())

	def test_file_longer_than_announced(self, tmp_path: Path) -> None:
		"""Exactly the announced size is sent, even if the file grew."""
		path = tmp_path / "long.txt"
		path.write_bytes(b"0123456789")

		async def run() -> bytes:
			writer = MemoryWriter()
			await writer.write(HTTPBodyFile(str(path), 4, chunkSize=3))
			return bytes(writer.data)

		assert asyncio.run(run()) == b"0123"

	def test_stream_is_closed_on_failure(self) -> None:
		closed: list[bool] = []

		async def stream() -> AsyncIterator[bytes]:
			try:
				yield b"first"
				yield b"second"
			finally:
				closed.append(True)

		class FailingWriter(MemoryWriter):
			async def _writeBytes(self, chunk: bytes) -> bool:
				raise ConnectionResetError("gone")

		async def run() -> None:
			await FailingWriter().write(HTTPResponse.Create(content=stream()).body)

		with pytest.raises(ConnectionResetError):
			asyncio.run(run())
		assert closed == [True]


class TestRequest:
	def test_body(self) -> None:
		class Reader:
			def __init__(self, data: bytes) -> None:
				self.data = data

			async def read(self, size: int, timeout: float | None = None) -> bytes:
				chunk, self.data = self.data[:size], self.data[size:]
				return chunk

		request = HTTPRequest(
			"POST",
			"/form",
			"",
			HTTPHeaders({"Content-Length": "10"}, contentLength=10),
			body=HTTPBodyBlob(b"0123", 4, 6),
		)
		request._reader = Reader(b"456789")  # type: ignore[assignment]

		async def run() -> bytes:
			return b"".join([_ async for _ in request.iterBody(size=4)])

		assert asyncio.run(run()) == b"0123456789"
		assert request.bodyRemaining == 0

	def test_client_closed_during_body(self) -> None:
		class Reader:
			async def read(self, size: int, timeout: float | None = None) -> bytes:
				return b""

		request = HTTPRequest(
			"POST", "/", "", HTTPHeaders({}, contentLength=4), body=HTTPBodyBlob(b"", 0, 4)
		)
		request._reader = Reader()  # type: ignore[assignment]

		async def run() -> None:
			async for _ in request.iterBody():
				pass

		with pytest.raises(ConnectionResetError):
			asyncio.run(run())

	def test_close_callback_runs_once(self) -> None:
		calls: list[HTTPResponse] = []
		res = HTTPResponse.Create(content="x").onClose(calls.append)
		res.close()
		res.close()
		assert calls == [res]


# EOF
