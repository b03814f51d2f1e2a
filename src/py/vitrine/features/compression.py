from typing import TYPE_CHECKING, Callable, NamedTuple

from ..http.model import HTTPRequest
from ..utils.codec import BytesTransform, DeflateEncoder, GZipEncoder
from ..utils.files import isTextual

if TYPE_CHECKING:
	from ..config import ServerConfig


class Encoding(NamedTuple):
	"""A content coding, and how to create its transform."""

	name: str
	factory: Callable[[], BytesTransform]

	def transform(self) -> BytesTransform:
		return self.factory()


# Supported codings, in order of preference.
ENCODINGS: tuple[Encoding, ...] = (
	Encoding("gzip", GZipEncoder),
	Encoding("deflate", DeflateEncoder),
)


def parseAcceptEncoding(value: str | None) -> dict[str, float]:
	"""Parses an `Accept-Encoding` header into a map of coding to quality.
	Malformed quality values count as `0`."""
	res: dict[str, float] = {}
	if not value:
		return res
	for item in value.split(","):
		params = item.split(";")
		coding = params[0].strip().lower()
		if not coding:
			continue
		q: float = 1.0
		for param in params[1:]:
			k, _, v = param.partition("=")
			if k.strip().lower() == "q":
				try:
					q = float(v.strip())
				except ValueError:
					q = 0.0
		res[coding] = q
	return res


class CompressionNegotiator:
	"""Decides if and how a response body is compressed. Only textual
	content sized within the configured bounds is compressed: tiny payloads
	don't gain anything, and very large ones would hog the worker."""

	def __init__(self, config: "ServerConfig"):
		self.enabled: bool = config.compression
		self.minSize: int = config.compressionMinSize
		self.maxSize: int = config.compressionMaxSize

	def isCompressible(self, contentType: str, size: int) -> bool:
		return (
			self.enabled
			and isTextual(contentType)
			and self.minSize < size < self.maxSize
		)

	def negotiate(
		self, request: HTTPRequest, contentType: str, size: int
	) -> Encoding | None:
		if not self.isCompressible(contentType, size):
			return None
		accepted = parseAcceptEncoding(request.header("Accept-Encoding"))
		wildcard = accepted.get("*")
		for encoding in ENCODINGS:
			q = accepted.get(encoding.name, wildcard)
			if q is not None and q > 0:
				return encoding
		return None


# EOF
