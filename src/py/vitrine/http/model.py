import asyncio
import inspect
from abc import ABC, abstractmethod
from enum import Enum
from typing import (
	Any,
	AsyncIterator,
	Callable,
	NamedTuple,
	TypeAlias,
	Union,
)

from ..utils.codec import BytesTransform, ChunkedEncoder, PipelineCodec
from ..utils.io import DEFAULT_ENCODING, HEADER_ENCODING, asBytes
from .api import ResponseFactory
from .status import HTTP_NO_BODY, HTTP_STATUS

THeaderValue: TypeAlias = str | list[str]

# -----------------------------------------------------------------------------
#
# HELPERS
#
# -----------------------------------------------------------------------------


def normalizeHeaderName(name: str) -> str:
	return "-".join(_.capitalize() for _ in name.split("-"))


# Names are looked up here first. Only these are kept, as any other name
# comes from a client and would grow the table without bounds.
HEADER_NAMES: dict[str, str] = {
	_.lower(): normalizeHeaderName(_)
	for _ in (
		"accept",
		"accept-encoding",
		"access-control-allow-headers",
		"access-control-allow-methods",
		"access-control-allow-origin",
		"access-control-max-age",
		"access-control-request-headers",
		"access-control-request-method",
		"authorization",
		"cache-control",
		"connection",
		"content-encoding",
		"content-length",
		"content-type",
		"cookie",
		"etag",
		"host",
		"if-modified-since",
		"if-none-match",
		"keep-alive",
		"last-modified",
		"origin",
		"proxy-authenticate",
		"proxy-authorization",
		"range",
		"referer",
		"set-cookie",
		"te",
		"trailer",
		"transfer-encoding",
		"upgrade",
		"user-agent",
		"vary",
		"www-authenticate",
		"x-forwarded-for",
		"x-forwarded-host",
		"x-forwarded-proto",
	)
}


def headername(name: str) -> str:
	"""Normalizes the header name as `Kebab-Case`."""
	return HEADER_NAMES.get(name) or HEADER_NAMES.get(name.lower()) or normalizeHeaderName(name)


def headervalue(value: THeaderValue | None) -> str | None:
	"""Returns repeated header values as a single comma-separated value."""
	return ", ".join(value) if isinstance(value, list) else value


def headertokens(value: str | None) -> set[str]:
	"""Returns the lowercase tokens of a comma-separated header value, like
	`Connection: keep-alive, Upgrade`."""
	return {_.strip().lower() for _ in value.split(",") if _.strip()} if value else set()


# -----------------------------------------------------------------------------
#
# DATA MODEL
#
# -----------------------------------------------------------------------------


class HTTPRequestLine(NamedTuple):
	"""Represents a request status line"""

	method: str
	path: str
	query: str
	protocol: str


class HTTPResponseLine(NamedTuple):
	"""Represents a response status line"""

	protocol: str
	status: int
	message: str


class HTTPHeaders(NamedTuple):
	"""Wraps HTTP headers, keeping key information for response/request processing."""

	headers: dict[str, THeaderValue]
	contentType: str | None = None
	contentLength: int | None = None


class HTTPProcessingStatus(Enum):
	"""Parser outcomes that are not a request"""

	BadFormat = 1


# What the parser produces
HTTPAtom: TypeAlias = Union[HTTPProcessingStatus, "HTTPRequest"]

# -----------------------------------------------------------------------------
#
# ERRORS
#
# -----------------------------------------------------------------------------


class TruncatedBody(IOError):
	"""The body ended before the announced length was sent."""


# Errors raised when the peer goes away while we're writing. These are
# expected and never a server fault.
CLIENT_DISCONNECTED: tuple[type[Exception], ...] = (
	ConnectionResetError,
	BrokenPipeError,
	ConnectionAbortedError,
)

# -----------------------------------------------------------------------------
#
# BODY
#
# -----------------------------------------------------------------------------


class HTTPBodyBlob(NamedTuple):
	"""Represents a part (or a whole) body as bytes."""

	payload: bytes = b""
	length: int = 0
	# The number of bytes of the body that were not available yet
	remaining: int | None = None

	@staticmethod
	def FromBytes(data: bytes) -> "HTTPBodyBlob":
		return HTTPBodyBlob(payload=data, length=len(data))


class HTTPBodyFile(NamedTuple):
	"""Represents an HTTP body read from a file. Exactly `size` bytes are
	sent, which is the size the response head announced."""

	path: str
	size: int
	chunkSize: int = 64_000


class HTTPBodyAsyncStream(NamedTuple):
	"""An HTTP body that is generated from an asynchronous stream."""

	stream: AsyncIterator[bytes | str]


# The different types of bodies that are managed
THTTPBody: TypeAlias = HTTPBodyBlob | HTTPBodyFile | HTTPBodyAsyncStream


class HTTPBodyReader(ABC):
	"""A base class for being able to read a request body, typically from a
	socket."""

	@abstractmethod
	async def read(self, size: int, timeout: float | None = None) -> bytes: ...


class HTTPBodyWriter(ABC):
	"""Writes response heads and bodies. Bodies go through the writer's
	transform (compression, chunked framing), and each write waits for
	the underlying transport to drain, so that a slow client pauses the
	producer instead of growing a buffer."""

	__slots__ = ["transform", "written"]

	def __init__(self, transform: BytesTransform | None = None) -> None:
		self.transform: BytesTransform | None = transform
		self.written: int = 0

	def prepare(self, transform: BytesTransform | None) -> "HTTPBodyWriter":
		"""Sets the transform for the next body."""
		self.transform = transform
		return self

	async def write(self, body: THTTPBody | bytes | None) -> bool:
		"""Writes the given type of body."""
		if isinstance(body, bytes):
			return await self._writeBytes(body)
		elif isinstance(body, HTTPBodyBlob):
			await self._write(body.payload)
			return await self.flush()
		elif isinstance(body, HTTPBodyFile):
			await self._writeFile(body)
			return await self.flush()
		elif isinstance(body, HTTPBodyAsyncStream):
			try:
				async for _ in body.stream:
					await self._write(asBytes(_))
				return await self.flush()
			finally:
				# The stream may hold resources (a directory handle, an
				# upstream connection) that an early exit must release.
				aclose = getattr(body.stream, "aclose", None)
				if aclose:
					await aclose()
		elif body is None:
			return True
		else:
			raise ValueError(f"Unsupported body format: {body}")

	async def flush(self) -> bool:
		if self.transform:
			chunk = self.transform.flush()
			if chunk:
				await self._writeBytes(chunk)
		return True

	async def _writeFile(self, body: HTTPBodyFile) -> bool:
		loop = asyncio.get_running_loop()
		left: int = body.size
		with open(body.path, "rb") as f:
			while left > 0:
				# Reads happen off the loop, so that a slow disk doesn't stall
				# the other connections.
				chunk = await loop.run_in_executor(
					None, f.read, min(body.chunkSize, left)
				)
				if not chunk:
					raise TruncatedBody(
						f"File ended {left} bytes short of its announced size: {body.path}"
					)
				left -= len(chunk)
				await self._write(chunk)
		return True

	async def _write(self, chunk: bytes) -> bool:
		if self.transform:
			data = self.transform.feed(chunk)
			return await self._writeBytes(data) if data else True
		else:
			return await self._writeBytes(chunk)

	@abstractmethod
	async def _writeBytes(self, chunk: bytes) -> bool: ...


# -----------------------------------------------------------------------------
#
# REQUESTS
#
# -----------------------------------------------------------------------------


class HTTPRequest(ResponseFactory["HTTPResponse"]):
	"""Represents an HTTP requests, which also acts as a factory for
	responses."""

	__slots__ = [
		"protocol",
		"method",
		"path",
		"query",
		"_headers",
		"_body",
		"_reader",
		"_remaining",
		"_started",
	]

	def __init__(
		self,
		method: str,
		path: str,
		query: str,
		headers: HTTPHeaders,
		body: HTTPBodyBlob | None = None,
		protocol: str = "HTTP/1.1",
	):
		super().__init__()
		self.method: str = method
		self.path: str = path
		self.query: str = query
		self.protocol: str = protocol
		self._headers: HTTPHeaders = headers
		self._body: HTTPBodyBlob | None = body
		self._reader: HTTPBodyReader | None = None
		self._remaining: int = (body.remaining or 0) if body else 0
		self._started: bool = False

	@property
	def headers(self) -> dict[str, THeaderValue]:
		return self._headers.headers

	def header(self, name: str) -> str | None:
		return headervalue(self._headers.headers.get(headername(name)))

	@property
	def target(self) -> str:
		"""The request target, as it appeared in the request line."""
		return f"{self.path}?{self.query}" if self.query else self.path

	@property
	def contentType(self) -> str | None:
		return self._headers.contentType

	@property
	def contentLength(self) -> int | None:
		return self._headers.contentLength

	@property
	def keepAlive(self) -> bool:
		"""Tells if the client wants the connection kept open."""
		tokens = headertokens(self.header("Connection"))
		if self.protocol == "HTTP/1.0":
			return "keep-alive" in tokens
		else:
			return "close" not in tokens

	@property
	def bodyRemaining(self) -> int:
		"""The number of body bytes that are still unread on the connection."""
		return self._remaining

	async def iterBody(
		self, size: int = 64_000, timeout: float | None = None
	) -> AsyncIterator[bytes]:
		"""Iterates on the request body, reading from the connection the
		part that was not received with the head."""
		if not self._started:
			self._started = True
			if self._body and self._body.payload:
				yield self._body.payload
		while self._remaining > 0:
			if not self._reader:
				raise RuntimeError("Request has no reader, can't read body")
			chunk = await self._reader.read(min(size, self._remaining), timeout)
			if not chunk:
				raise ConnectionResetError(
					"Client closed the connection before sending the whole body"
				)
			self._remaining -= len(chunk)
			yield chunk

	def respond(
		self,
		content: Any = None,
		contentType: str | None = None,
		contentLength: int | None = None,
		status: int = 200,
		headers: dict[str, str] | None = None,
		message: str | None = None,
	) -> "HTTPResponse":
		return HTTPResponse.Create(
			status=status,
			message=message,
			content=content,
			contentType=contentType,
			contentLength=contentLength,
			protocol=self.protocol,
			headers=headers,
		)

	def __str__(self) -> str:
		return f"Request({self.method} {self.target} {self.protocol})"


# -----------------------------------------------------------------------------
#
# RESPONSE
#
# -----------------------------------------------------------------------------


class HTTPResponse:
	"""An HTTP response."""

	@staticmethod
	def Create(
		content: Any = None,
		contentType: str | None = None,
		contentLength: int | None = None,
		headers: dict[str, str] | dict[str, THeaderValue] | None = None,
		status: int = 200,
		message: str | None = None,
		protocol: str = "HTTP/1.1",
		transform: BytesTransform | None = None,
	) -> "HTTPResponse":
		"""Factory method to create HTTP response objects."""
		updated_headers: dict[str, THeaderValue] = {}
		body: THTTPBody | None = None
		if content is None:
			pass
		elif isinstance(content, str):
			body = HTTPBodyBlob.FromBytes(content.encode(DEFAULT_ENCODING))
		elif isinstance(content, bytes):
			body = HTTPBodyBlob.FromBytes(content)
		elif isinstance(content, (HTTPBodyBlob, HTTPBodyFile, HTTPBodyAsyncStream)):
			body = content
		elif inspect.isasyncgen(content) or hasattr(content, "__aiter__"):
			body = HTTPBodyAsyncStream(content)
		else:
			raise ValueError(f"Unsupported content {type(content)}:{content}")
		# Blobs have a known length, unless they are transformed.
		if isinstance(body, HTTPBodyBlob) and contentLength is None and not transform:
			contentLength = body.length
		if contentType is not None:
			updated_headers["Content-Type"] = contentType
		if contentLength is not None:
			updated_headers["Content-Length"] = str(contentLength)
		merged: dict[str, THeaderValue] = {
			headername(k): v for k, v in (headers or {}).items()
		}
		merged.update(updated_headers)
		return HTTPResponse(
			protocol=protocol,
			status=status,
			message=message or HTTP_STATUS.get(status, "Unknown status"),
			headers=HTTPHeaders(
				merged,
				contentType=headervalue(merged.get("Content-Type")),
				contentLength=contentLength,
			),
			body=body,
			transform=transform,
		)

	__slots__ = [
		"protocol",
		"status",
		"message",
		"headers",
		"body",
		"transform",
		"shouldClose",
		"_onClose",
	]

	def __init__(
		self,
		protocol: str,
		status: int,
		message: str | None,
		headers: HTTPHeaders,
		body: THTTPBody | None = None,
		*,
		transform: BytesTransform | None = None,
		shouldClose: bool = False,
	):
		self.protocol: str = protocol
		self.status: int = status
		self.message: str | None = message
		self.headers: HTTPHeaders = headers
		self.body: THTTPBody | None = body
		# The content coding applied to the body, if any
		self.transform: BytesTransform | None = transform
		self._onClose: Callable[[HTTPResponse], None] | None = None
		self.shouldClose: bool = shouldClose

	@property
	def hasBody(self) -> bool:
		return self.body is not None and self.status not in HTTP_NO_BODY

	def getHeader(self, name: str) -> str | None:
		return headervalue(self.headers.headers.get(headername(name)))

	def setHeader(self, name: str, value: str | int | None) -> "HTTPResponse":
		if value is None:
			self.headers.headers.pop(headername(name), None)
		else:
			self.headers.headers[headername(name)] = str(value)
		return self

	def setHeaders(self, headers: dict[str, str | int | None]) -> "HTTPResponse":
		for k, v in headers.items():
			self.setHeader(k, v)
		return self

	def frame(self, *, keepAlive: bool = True) -> BytesTransform | None:
		"""Sets the headers that frame the message on the connection
		(`Content-Length`, `Transfer-Encoding`, `Connection`) and returns the
		transform to apply to the body when writing it."""
		headers = self.headers.headers
		transform: BytesTransform | None = None
		if self.status in HTTP_NO_BODY:
			headers.pop("Transfer-Encoding", None)
			if self.status != 304:
				headers.pop("Content-Length", None)
		elif self.body is None:
			headers.setdefault("Content-Length", "0")
		elif "Content-Length" in headers:
			transform = self.transform
		elif self.protocol == "HTTP/1.1":
			headers["Transfer-Encoding"] = "chunked"
			transform = (
				PipelineCodec([self.transform, ChunkedEncoder()])
				if self.transform
				else ChunkedEncoder()
			)
		else:
			# An HTTP/1.0 body of unknown length ends with the connection
			keepAlive = False
			transform = self.transform
		if not keepAlive:
			self.shouldClose = True
			headers["Connection"] = "close"
		elif self.protocol == "HTTP/1.0":
			headers["Connection"] = "keep-alive"
		return transform

	def head(self) -> bytes:
		"""Serializes the head as a payload."""
		message: str = self.message or HTTP_STATUS.get(self.status, "Unknown status")
		lines: list[str] = [f"{self.protocol} {self.status} {message}"]
		for k, v in self.headers.headers.items():
			if isinstance(v, list):
				lines.extend(f"{k}: {_}" for _ in v)
			else:
				lines.append(f"{k}: {v}")
		lines.append("")
		lines.append("")
		return "\r\n".join(lines).encode(HEADER_ENCODING)

	def onClose(
		self, callback: Callable[["HTTPResponse"], None] | None
	) -> "HTTPResponse":
		self._onClose = callback
		return self

	def close(self) -> None:
		"""Runs the close callback, once."""
		callback, self._onClose = self._onClose, None
		if callback:
			callback(self)

	def __str__(self) -> str:
		return f"Response({self.protocol} {self.status} {self.message} {self.headers.headers})"


# EOF
