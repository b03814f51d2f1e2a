import asyncio
import ssl
import time
from dataclasses import dataclass
from typing import AsyncIterator, NamedTuple, TypeVar

import certifi

from .http.model import (
	HTTPHeaders,
	HTTPResponseLine,
	THeaderValue,
	headertokens,
	headervalue,
)
from .http.parser import HTTPParseError, parseResponseHead
from .http.status import HTTP_NO_BODY
from .utils.io import EOL, HEADER_ENCODING
from .utils.logging import debug, logged
from .utils.uri import URI

ConnectionT = TypeVar("ConnectionT", bound="Connection")

# --
# A low level async HTTP/1.1 client, used to relay requests upstream over
# pooled connections.

# -----------------------------------------------------------------------------
#
# SSL
#
# -----------------------------------------------------------------------------

SSL_CLIENT_CONTEXT: ssl.SSLContext = ssl.create_default_context(
	ssl.Purpose.SERVER_AUTH, cafile=certifi.where()
)

# -----------------------------------------------------------------------------
#
# CONNECTION POOLING
#
# -----------------------------------------------------------------------------


class ClientError(Exception):
	"""The upstream response could not be read."""


class ConnectionTarget(NamedTuple):
	"""The host, port and transport of a connection. This is used as keys
	for connection pools, hence the NamedTuple."""

	host: str
	port: int
	ssl: bool

	@staticmethod
	def FromURI(uri: URI) -> "ConnectionTarget":
		return ConnectionTarget(uri.host, uri.port, uri.ssl)


CONNECTION_IDLE: float = 30.0


@dataclass
class Connection:
	"""Wraps an underlying HTTP(S) connection with its target
	information."""

	target: ConnectionTarget
	reader: asyncio.StreamReader
	writer: asyncio.StreamWriter
	idle: float
	until: float | None
	# The number of exchanges done on this connection
	uses: int = 0

	def close(self: ConnectionT) -> ConnectionT:
		"""Closes the writer."""
		self.writer.close()
		self.until = None
		return self

	@property
	def isValid(self) -> bool:
		"""Tells if the connection can still be used: it has not expired and
		the upstream did not close it."""
		return bool(
			self.until
			and time.monotonic() <= self.until
			and not self.reader.at_eof()
			and not self.writer.is_closing()
		)

	def touch(self: ConnectionT) -> ConnectionT:
		"""Touches the connection, bumping its `until` time."""
		self.until = time.monotonic() + self.idle
		return self

	@staticmethod
	async def Make(
		target: ConnectionTarget,
		*,
		timeout: float | None = None,
		idle: float | None = None,
	) -> "Connection":
		reader, writer = await asyncio.wait_for(
			asyncio.open_connection(
				host=target.host,
				port=target.port,
				ssl=SSL_CLIENT_CONTEXT if target.ssl else None,
			),
			timeout=timeout,
		)
		idle = idle or CONNECTION_IDLE
		return Connection(
			target,
			reader,
			writer,
			idle=idle,
			until=time.monotonic() + idle,
		)


class ConnectionPool:
	"""A pool of idle connections, each worker having its own. A connection
	is either checked out (used by exactly one exchange) or idle in the
	pool, never both."""

	def __init__(self, idle: float | None = None):
		self.connections: dict[ConnectionTarget, list[Connection]] = {}
		self.idle: float = idle or CONNECTION_IDLE

	async def checkout(
		self, target: ConnectionTarget, *, timeout: float | None = None
	) -> Connection:
		"""Returns an idle connection to the target, or a new one."""
		# Expired connections may sit under valid ones, and would otherwise
		# never be closed.
		self.clean()
		cxns = self.connections.get(target)
		# We look for connections, which must be valid. If not valid,
		# then we close the connection, or return a new one.
		while cxns:
			c = cxns.pop()
			if c.isValid:
				logged(debug) and debug(
					"Reusing upstream connection", Host=target.host, Port=target.port
				)
				return c
			else:
				c.close()
		return await Connection.Make(target, timeout=timeout, idle=self.idle)

	def release(self, connection: Connection, reusable: bool = True) -> bool:
		"""Returns the connection to the pool when it can be reused, closes it
		otherwise."""
		connection.uses += 1
		if reusable and connection.isValid:
			connection.touch()
			self.connections.setdefault(connection.target, []).append(connection)
			return True
		else:
			connection.close()
			return False

	def clean(self) -> "ConnectionPool":
		"""Closes and removes the connections that are no longer valid."""
		for k in list(self.connections):
			cl = self.connections[k]
			for c in [_ for _ in cl if not _.isValid]:
				cl.remove(c)
				c.close()
			if not cl:
				del self.connections[k]
		return self

	def close(self) -> "ConnectionPool":
		"""Closes all the idle connections."""
		for cl in self.connections.values():
			while cl:
				cl.pop().close()
		self.connections.clear()
		return self

	def __len__(self) -> int:
		return sum(len(_) for _ in self.connections.values())


# -----------------------------------------------------------------------------
#
# HTTP CLIENT
#
# -----------------------------------------------------------------------------


class HTTPClient:
	"""Reads and writes HTTP/1.1 messages on a connection."""

	@staticmethod
	async def SendHead(
		cxn: Connection,
		method: str,
		target: str,
		headers: dict[str, THeaderValue],
		*,
		timeout: float | None = None,
	) -> None:
		lines: list[str] = [f"{method} {target} HTTP/1.1"]
		for k, v in headers.items():
			if isinstance(v, list):
				lines.extend(f"{k}: {_}" for _ in v)
			else:
				lines.append(f"{k}: {v}")
		lines.append("")
		lines.append("")
		cxn.writer.write("\r\n".join(lines).encode(HEADER_ENCODING))
		await asyncio.wait_for(cxn.writer.drain(), timeout=timeout)

	@staticmethod
	async def SendBody(
		cxn: Connection, body: AsyncIterator[bytes], *, timeout: float | None = None
	) -> int:
		sent: int = 0
		async for chunk in body:
			cxn.writer.write(chunk)
			sent += len(chunk)
			await asyncio.wait_for(cxn.writer.drain(), timeout=timeout)
		return sent

	@staticmethod
	async def ReadHead(
		cxn: Connection, *, timeout: float | None = None
	) -> tuple[HTTPResponseLine, HTTPHeaders]:
		"""Reads the response head, skipping interim (`1xx`) responses."""
		while True:
			try:
				data = await asyncio.wait_for(
					cxn.reader.readuntil(EOL + EOL), timeout=timeout
				)
			except asyncio.IncompleteReadError as e:
				raise ClientError("Upstream closed the connection") from e
			except asyncio.LimitOverrunError as e:
				raise ClientError("Upstream response head is too large") from e
			try:
				line, headers = parseResponseHead(data[: -len(EOL + EOL)])
			except HTTPParseError as e:
				raise ClientError(str(e)) from e
			if 100 <= line.status < 200 and line.status != 101:
				continue
			return line, headers

	@staticmethod
	def HasBody(method: str, status: int) -> bool:
		return method != "HEAD" and status not in HTTP_NO_BODY

	@staticmethod
	def IsReusable(method: str, line: HTTPResponseLine, headers: HTTPHeaders) -> bool:
		"""Tells if the connection can be reused once the body is read, which
		requires a delimited body and no `Connection: close`."""
		tokens = headertokens(headervalue(headers.headers.get("Connection")))
		if line.protocol == "HTTP/1.0":
			if "keep-alive" not in tokens:
				return False
		elif "close" in tokens:
			return False
		return (
			not HTTPClient.HasBody(method, line.status)
			or headers.contentLength is not None
			or HTTPClient.IsChunked(headers)
		)

	@staticmethod
	def IsChunked(headers: HTTPHeaders) -> bool:
		return "chunked" in headertokens(
			headervalue(headers.headers.get("Transfer-Encoding"))
		)

	@staticmethod
	async def IterBody(
		cxn: Connection,
		method: str,
		line: HTTPResponseLine,
		headers: HTTPHeaders,
		*,
		size: int = 64_000,
		timeout: float | None = None,
	) -> AsyncIterator[bytes]:
		"""Iterates on the (decoded) response body, as framed by the
		response head."""
		reader = cxn.reader
		if not HTTPClient.HasBody(method, line.status):
			return
		elif HTTPClient.IsChunked(headers):
			while True:
				size_line = await asyncio.wait_for(reader.readline(), timeout=timeout)
				if not size_line.endswith(b"\n"):
					raise ClientError("Upstream closed the connection in a chunk")
				try:
					n = int(size_line.split(b";", 1)[0].strip(), 16)
				except ValueError as e:
					raise ClientError(f"Invalid chunk size: {size_line!r}") from e
				if n == 0:
					# Trailers are read and dropped
					while (
						await asyncio.wait_for(reader.readline(), timeout=timeout)
					).strip():
						pass
					return
				try:
					chunk = await asyncio.wait_for(
						reader.readexactly(n + len(EOL)), timeout=timeout
					)
				except asyncio.IncompleteReadError as e:
					raise ClientError("Upstream closed the connection in a chunk") from e
				yield chunk[:n]
		elif headers.contentLength is not None:
			left: int = headers.contentLength
			while left > 0:
				chunk = await asyncio.wait_for(
					reader.read(min(size, left)), timeout=timeout
				)
				if not chunk:
					raise ClientError(f"Upstream closed the connection {left} bytes short")
				left -= len(chunk)
				yield chunk
		else:
			# The body ends with the connection
			while chunk := await asyncio.wait_for(reader.read(size), timeout=timeout):
				yield chunk


# EOF
