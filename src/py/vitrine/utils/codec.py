import zlib
from abc import ABC, abstractmethod
from mypy_extensions import mypyc_attr


# NOTE: Transforms are subclassed from interpreted code (tests, third
# parties), which compiled classes forbid unless allowed explicitly.
@mypyc_attr(allow_interpreted_subclasses=True)
class BytesTransform(ABC):
	"""An abstract bytes transform."""

	@abstractmethod
	def feed(self, chunk: bytes) -> bytes | None:
		"""Feeds bytes to the transform, may return a value."""

	@abstractmethod
	def flush(self) -> bytes | None:
		"""Ends the transform, returning any bytes still held. For chunked
		encodings this produces the terminating chunk."""


class PipelineCodec(BytesTransform):
	"""Composes transforms, the output of one feeding the next."""

	__slots__ = ["transforms"]

	def __init__(self, transforms: list[BytesTransform]):
		super().__init__()
		self.transforms: list[BytesTransform] = transforms

	def feed(self, chunk: bytes) -> bytes | None:
		res: bytes | None = chunk
		for t in self.transforms:
			if not res:
				return None
			else:
				res = t.feed(res)
		return res or None

	def flush(self) -> bytes | None:
		# Each transform is flushed in turn, its remainder being fed to the
		# next one before that one is flushed.
		pending: bytes = b""
		for t in self.transforms:
			out = bytearray()
			if pending and (fed := t.feed(pending)):
				out += fed
			if tail := t.flush():
				out += tail
			pending = bytes(out)
		return pending or None


class GZipEncoder(BytesTransform):
	"""Encode bytes as Gzip"""

	__slots__ = ["compressor"]

	def __init__(self, level: int = 6) -> None:
		super().__init__()
		self.compressor = zlib.compressobj(level=level, wbits=zlib.MAX_WBITS | 16)

	def feed(self, chunk: bytes) -> bytes | None:
		return self.compressor.compress(chunk) or None

	def flush(self) -> bytes | None:
		return self.compressor.flush() or None


class DeflateEncoder(BytesTransform):
	"""Encodes bytes as the HTTP `deflate` coding, which is the zlib format
	(RFC 1950), not raw deflate."""

	__slots__ = ["compressor"]

	def __init__(self, level: int = 6) -> None:
		super().__init__()
		self.compressor = zlib.compressobj(level=level, wbits=zlib.MAX_WBITS)

	def feed(self, chunk: bytes) -> bytes | None:
		return self.compressor.compress(chunk) or None

	def flush(self) -> bytes | None:
		return self.compressor.flush() or None


# SEE: https://httpwg.org/specs/rfc9112.html#chunked.encoding
class ChunkedEncoder(BytesTransform):
	"""Frames each fed chunk as an HTTP/1.1 chunk, the flush producing the
	last (empty) chunk."""

	__slots__ = ["ended"]

	def __init__(self) -> None:
		super().__init__()
		self.ended: bool = False

	def feed(self, chunk: bytes) -> bytes | None:
		if not chunk:
			return None
		return b"%X\r\n%s\r\n" % (len(chunk), chunk)

	def flush(self) -> bytes | None:
		if self.ended:
			return None
		self.ended = True
		return b"0\r\n\r\n"


# EOF
