from typing import TYPE_CHECKING

from ..http.model import HTTPRequest, HTTPResponse
from ..utils.files import isTextual
from .paths import FileInfo

if TYPE_CHECKING:
	from ..config import ServerConfig

# Text and markup are revalidated on every request, as they change the most.
MAX_AGE_TEXT: int = 0
MAX_AGE_BINARY: int = 3_600


def etag(info: FileInfo) -> str:
	"""Returns the weak entity tag for a file. The same size and modification
	time always give the same tag."""
	return f'W/"{info.size}-{info.modifiedTime}"'


class CacheValidator:
	"""Decides between a `304 Not Modified` and a full response, and sets the
	caching headers of full responses."""

	def __init__(self, config: "ServerConfig"):
		self.maxAge: int | None = config.maxAge

	def cacheControl(self, contentType: str) -> str:
		if self.maxAge is not None:
			age = self.maxAge
		else:
			age = MAX_AGE_TEXT if isTextual(contentType) else MAX_AGE_BINARY
		return f"public, max-age={age}"

	def headers(self, info: FileInfo, contentType: str) -> dict[str, str]:
		return {"ETag": etag(info), "Cache-Control": self.cacheControl(contentType)}

	def isFresh(self, request: HTTPRequest, info: FileInfo) -> bool:
		"""Tells if the client's copy is current. This is a strict equality
		on the tag, lists of tags and `*` are not matched."""
		return request.header("If-None-Match") == etag(info)

	def validate(
		self, request: HTTPRequest, info: FileInfo, contentType: str
	) -> HTTPResponse | None:
		"""Returns a `304` response when the client's copy is current, or `None`
		when the full response needs to be sent."""
		if self.isFresh(request, info):
			return request.notModified(self.headers(info, contentType))
		else:
			return None


# EOF
