import asyncio
import os
from html import escape
from typing import TYPE_CHECKING, AsyncIterator
from urllib.parse import quote

from ..features.caching import CacheValidator
from ..features.compression import CompressionNegotiator
from ..features.paths import PathResolver, ResolvedPath
from ..http.model import HTTPBodyFile, HTTPRequest, HTTPResponse
from ..utils.files import contentType
from ..utils.logging import exception

if TYPE_CHECKING:
	from ..config import ServerConfig

LISTING_ERROR: str = "</ul><p>Error listing directory</p>"
# The number of directory entries read per executor call
LISTING_BATCH: int = 256

LISTING_CSS: str = """
:root{font-family:sans-serif;font-size:14px;line-height:1.35em;padding:20px;background:#F0F0F0;}
ul{padding:0px 20px;margin:1.25em 0em;}
li{padding:0px 10px;margin:0.5em 0em;}
"""


def displayName(name: str) -> str:
	"""Returns a printable version of a filename, which may hold undecodable
	bytes."""
	return name.encode("utf8", "surrogateescape").decode("utf8", "replace")


def readEntries(
	entries: "os._ScandirIterator[str]", count: int = LISTING_BATCH
) -> list[tuple[str, bool]]:
	"""Reads up to `count` `(name, isDirectory)` pairs from the iterator."""
	res: list[tuple[str, bool]] = []
	for entry in entries:
		try:
			isdir = entry.is_dir()
		except OSError:
			isdir = False
		res.append((entry.name, isdir))
		if len(res) >= count:
			break
	return res


class FileService:
	"""Serves the files and directories of the root."""

	def __init__(self, config: "ServerConfig", resolver: PathResolver | None = None):
		self.config: "ServerConfig" = config
		self.resolver: PathResolver = resolver or PathResolver(config.root)
		self.cache: CacheValidator = CacheValidator(config)
		self.compression: CompressionNegotiator = CompressionNegotiator(config)

	def serveFile(self, request: HTTPRequest, resolved: ResolvedPath) -> HTTPResponse:
		"""Responds with the given file, which is sent in chunks, compressed
		when the client supports it and the content is worth compressing, or
		with a `304` when the client's copy is current."""
		info = resolved.stat
		ct = contentType(resolved.path)
		not_modified = self.cache.validate(request, info, ct)
		if not_modified:
			return not_modified
		headers = self.cache.headers(info, ct)
		encoding = None
		if self.compression.isCompressible(ct, info.size):
			headers["Vary"] = "Accept-Encoding"
			encoding = self.compression.negotiate(request, ct, info.size)
		if encoding:
			headers["Content-Encoding"] = encoding.name
		return HTTPResponse.Create(
			content=HTTPBodyFile(str(resolved.path), info.size, self.config.chunkSize),
			contentType=ct,
			# The compressed length is only known once it is sent
			contentLength=None if encoding else info.size,
			headers=headers,
			protocol=request.protocol,
			transform=encoding.transform() if encoding else None,
		)

	def listDirectory(
		self, request: HTTPRequest, resolved: ResolvedPath
	) -> HTTPResponse:
		if not self.config.listing:
			return request.forbidden("403 Forbidden: directory listing is disabled")
		return request.respondHTML(
			self.iterListing(resolved),
			headers={"Cache-Control": "no-cache"},
		)

	async def iterListing(self, resolved: ResolvedPath) -> AsyncIterator[str]:
		"""Streams the HTML listing of the directory, entry by entry, as they
		are read from the filesystem."""
		url = resolved.urlPath
		base = url.rstrip("/")
		title = escape(url or "/")
		yield (
			f'<!DOCTYPE html><html><head><meta charset="utf-8"><title>Index of {title}</title>'
			f"<style>{LISTING_CSS}</style></head><body><h1>📂 {title}</h1><ul>"
		)
		if base:
			parent = base.rsplit("/", 1)[0] + "/"
			yield f'<li><a href="{escape(quote(parent))}">⬆️ Parent Directory</a></li>'
		loop = asyncio.get_running_loop()
		try:
			entries = await loop.run_in_executor(None, os.scandir, resolved.path)
			try:
				while batch := await loop.run_in_executor(None, readEntries, entries):
					yield "".join(self.renderEntry(base, n, d) for n, d in batch)
			finally:
				entries.close()
		except OSError as e:
			exception(e, "Could not list directory", Path=url)
			yield f"{LISTING_ERROR}</body></html>"
			return
		yield "</ul></body></html>"

	def renderEntry(self, base: str, name: str, isDirectory: bool) -> str:
		suffix = "/" if isDirectory else ""
		href = quote(f"{base}/{name}", errors="surrogateescape") + suffix
		return f'<li><a href="{escape(href)}">{escape(displayName(name))}{suffix}</a></li>'


# EOF
