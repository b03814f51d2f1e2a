DEFAULT_ENCODING: str = "utf8"
# Header values are ISO-8859-1 on the wire, which decodes any byte.
HEADER_ENCODING: str = "latin-1"
EOL: bytes = b"\r\n"
LINE_LIMIT: int = 64_000


class LineTooLong(ValueError):
	pass


def asBytes(value: str | bytes | bytearray | None) -> bytes:
	if isinstance(value, bytes):
		return value
	elif isinstance(value, bytearray):
		return bytes(value)
	elif isinstance(value, str):
		return value.encode(DEFAULT_ENCODING)
	elif value is None:
		return b""
	else:
		raise ValueError(f"Expected bytes or str, got: {value}")


class LineParser:
	"""Incrementally extracts `eol`-terminated lines from fed chunks. Lines
	longer than `limit` raise `LineTooLong`, so that a client can't make us
	buffer an unbounded head."""

	__slots__ = ["buffer", "line", "eol", "eolsize", "offset", "limit"]

	def __init__(self, limit: int = LINE_LIMIT) -> None:
		self.buffer: bytearray = bytearray()
		self.line: bytes | None = None
		self.offset: int = 0
		self.eol: bytes = EOL
		self.eolsize: int = len(EOL)
		self.limit: int = limit

	@property
	def isEmpty(self) -> bool:
		return not self.buffer

	def reset(self, eol: bytes = EOL) -> "LineParser":
		self.buffer.clear()
		self.line = None
		self.offset = 0
		self.eol = eol
		self.eolsize = len(eol)
		return self

	def flush(self) -> bytes | None:
		return self.line

	def feed(self, chunk: bytes, start: int = 0) -> tuple[bytes | None, int]:
		"""Returns the matching line and how many bytes were read in chunk from start. When line is None,
		then the whole chunk has been processed."""
		pos = len(self.buffer)
		self.buffer += chunk[start:]
		end = self.buffer.find(self.eol, self.offset)
		if end == -1:
			if len(self.buffer) > self.limit:
				raise LineTooLong(f"Line exceeds {self.limit} bytes")
			self.offset = max(0, len(self.buffer) - self.eolsize + 1)
			return None, len(chunk) - start
		else:
			if end > self.limit:
				raise LineTooLong(f"Line exceeds {self.limit} bytes")
			self.line = bytes(self.buffer[:end])
			self.buffer.clear()
			self.offset = 0
			return self.line, (end - pos) + self.eolsize


# EOF
