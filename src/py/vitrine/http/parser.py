from typing import Iterator, Literal

from ..utils.io import EOL, HEADER_ENCODING, LineParser, LineTooLong
from .model import (
	HTTPAtom,
	HTTPBodyBlob,
	HTTPHeaders,
	HTTPProcessingStatus,
	HTTPRequest,
	HTTPRequestLine,
	HTTPResponseLine,
	THeaderValue,
	headername,
)

PROTOCOLS: frozenset[str] = frozenset(("HTTP/1.0", "HTTP/1.1"))

# Headers that can't be folded into a comma-separated value
HEADERS_REPEATED: frozenset[str] = frozenset(("Set-Cookie",))


class HTTPParseError(ValueError):
	pass


class RequestLineParser:
	"""Parses an HTTP request line."""

	__slots__ = ["line", "value"]

	def __init__(self) -> None:
		self.line: LineParser = LineParser()
		self.value: HTTPRequestLine | None = None

	def flush(self) -> HTTPRequestLine | None:
		res = self.value
		self.reset()
		return res

	def reset(self) -> "RequestLineParser":
		self.line.reset()
		self.value = None
		return self

	def feed(self, chunk: bytes, start: int = 0) -> tuple[bool | None, int]:
		line, read = self.line.feed(chunk, start)
		if line is None:
			return None, read
		elif not line:
			# Empty lines before a request line are ignored
			return None, read
		else:
			self.value = self.Parse(line)
			return True, read

	@staticmethod
	def Parse(line: bytes) -> HTTPRequestLine:
		try:
			ln = line.decode("utf8")
		except UnicodeDecodeError as e:
			raise HTTPParseError(f"Request line is not valid UTF-8: {line!r}") from e
		parts = ln.split(" ")
		if len(parts) != 3 or not parts[0] or not parts[1] or parts[2] not in PROTOCOLS:
			raise HTTPParseError(f"Malformed request line: {ln!r}")
		method, target, protocol = parts
		p: list[str] = target.split("?", 1)
		return HTTPRequestLine(method, p[0], p[1] if len(p) > 1 else "", protocol)

	def __str__(self) -> str:
		return f"RequestLineParser({self.value})"


class HeadersParser:
	__slots__ = ["headers", "contentType", "contentLength", "line"]

	def __init__(self) -> None:
		self.line: LineParser = LineParser()
		self.headers: dict[str, THeaderValue] = {}
		self.contentType: str | None = None
		self.contentLength: int | None = None

	def flush(self) -> HTTPHeaders:
		res = HTTPHeaders(self.headers, self.contentType, self.contentLength)
		self.reset()
		return res

	def reset(self) -> "HeadersParser":
		self.line.reset()
		self.headers = {}
		self.contentType = None
		self.contentLength = None
		return self

	def feed(
		self, chunk: bytes, start: int = 0
	) -> tuple[str | Literal[False] | None, int]:
		"""Feeds data from chunk, starting at `start` offset. Returns
		a value and the next start offset. When the value is `None`, no
		header has been extracted, when the value is `False` it's an empty
		line, and when the value is a string, it's the name of the header
		that was added."""
		line, read = self.line.feed(chunk, start)
		if line is None:
			return None, read
		elif line:
			return self.add(line.decode(HEADER_ENCODING)), read
		else:
			# An empty line denotes the end of headers
			return False, read

	def add(self, ln: str) -> str | None:
		"""Adds the header in the given line, returning its normalized name."""
		i = ln.find(":")
		if i <= 0:
			# Obsolete line folding and junk lines are ignored
			return None
		h = ln[:i].strip().lower()
		v = ln[i + 1 :].strip()
		if h == "content-length":
			# A request with an ambiguous length can't be delimited safely
			if not v.isdigit() or (
				self.contentLength is not None and self.contentLength != int(v)
			):
				raise HTTPParseError(f"Invalid Content-Length: {v!r}")
			self.contentLength = int(v)
		elif h == "content-type":
			self.contentType = v
		n: str = headername(h)
		existing = self.headers.get(n)
		if existing is None:
			self.headers[n] = v
		elif n in HEADERS_REPEATED:
			self.headers[n] = (
				existing + [v] if isinstance(existing, list) else [existing, v]
			)
		elif n != "Content-Length":
			self.headers[n] = f"{existing}, {v}"
		return n

	def __str__(self) -> str:
		return f"HeadersParser({self.headers})"


class HTTPParser:
	"""A stateful HTTP request parser, fed with chunks as they are read from
	the connection. Pipelined requests in the same chunk are yielded in
	order. When a request body is not fully available in the chunk, the
	request is yielded with the remaining length set on its body, and the
	rest of the chunk is considered part of that body."""

	def __init__(self) -> None:
		self.message: RequestLineParser = RequestLineParser()
		self.headers: HeadersParser = HeadersParser()
		self.parser: RequestLineParser | HeadersParser = self.message
		self.requestLine: HTTPRequestLine | None = None

	@property
	def isIdle(self) -> bool:
		"""Tells if the parser is between requests, with nothing buffered."""
		return self.parser is self.message and self.message.line.isEmpty

	def reset(self) -> "HTTPParser":
		self.message.reset()
		self.headers.reset()
		self.parser = self.message
		self.requestLine = None
		return self

	def feed(self, chunk: bytes) -> Iterator[HTTPAtom]:
		size: int = len(chunk)
		offset: int = 0
		while offset < size:
			try:
				ln, read = self.parser.feed(chunk, offset)
			except (HTTPParseError, LineTooLong):
				self.reset()
				yield HTTPProcessingStatus.BadFormat
				return
			offset += read
			if ln is None:
				continue
			elif self.parser is self.message:
				self.requestLine = self.message.flush()
				self.parser = self.headers
			elif ln is False:
				line = self.requestLine
				headers = self.headers.flush()
				self.parser = self.message
				self.requestLine = None
				if line is None:
					yield HTTPProcessingStatus.BadFormat
					return
				expected: int = headers.contentLength or 0
				available: int = min(expected, size - offset)
				payload: bytes = chunk[offset : offset + available]
				offset += available
				yield HTTPRequest(
					method=line.method,
					path=line.path,
					query=line.query,
					headers=headers,
					protocol=line.protocol,
					body=HTTPBodyBlob(payload, available, expected - available),
				)


def parseResponseHead(data: bytes) -> tuple[HTTPResponseLine, HTTPHeaders]:
	"""Parses a response head (status line and headers, as terminated by an
	empty line), as received from an upstream server."""
	lines = data.split(EOL)
	status = lines[0].decode(HEADER_ENCODING).split(" ", 2)
	if (
		len(status) < 2
		or not status[0].startswith("HTTP/")
		or not status[1].isdigit()
		or len(status[1]) != 3
	):
		raise HTTPParseError(f"Malformed response status line: {lines[0]!r}")
	headers = HeadersParser()
	for line in lines[1:]:
		if line:
			headers.add(line.decode(HEADER_ENCODING))
	return (
		HTTPResponseLine(
			status[0], int(status[1]), status[2] if len(status) > 2 else ""
		),
		headers.flush(),
	)


# EOF
