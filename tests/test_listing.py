"""
Tests for the streamed HTML directory listings.
"""

import asyncio
from pathlib import Path
from typing import Callable

from vitrine.config import ServerConfig
from vitrine.features.paths import FileInfo, PathResolver, ResolvedPath
from vitrine.http.model import HTTPHeaders, HTTPRequest
from vitrine.services.files import LISTING_ERROR, FileService


def listing(service: FileService, resolved: ResolvedPath) -> str:
	async def collect() -> str:
		return "".join([_ async for _ in service.iterListing(resolved)])

	return asyncio.run(collect())


def service(makeConfig: Callable[..., ServerConfig], **options: object) -> FileService:
	return FileService(makeConfig(**options))


class TestListing:
	def test_entries(self, makeConfig: Callable[..., ServerConfig]) -> None:
		files = service(makeConfig)
		html = listing(files, files.resolver.resolve("/a/b/"))
		assert html.startswith("<!DOCTYPE html>")
		assert html.endswith("</ul></body></html>")
		assert '<a href="/a/b/x.txt">x.txt</a>' in html
		assert '<a href="/a/b/y/">y/</a>' in html
		assert '<a href="/a/">' in html

	def test_root_has_no_parent(self, makeConfig: Callable[..., ServerConfig]) -> None:
		files = service(makeConfig)
		html = listing(files, files.resolver.resolve("/"))
		assert "Parent Directory" not in html
		assert '<a href="/hello.txt">hello.txt</a>' in html
		assert '<a href="/a/">a/</a>' in html

	def test_names_are_escaped(self, makeConfig: Callable[..., ServerConfig]) -> None:
		files = service(makeConfig)
		html = listing(files, files.resolver.resolve("/weird/"))
		assert "<b>" not in html
		assert "&lt;b&gt;&amp;&quot;name&quot;.txt" in html
		assert 'href="/weird/%3Cb%3E%26%22name%22.txt"' in html

	def test_unreadable_directory(
		self, site: Path, makeConfig: Callable[..., ServerConfig]
	) -> None:
		"""A directory that can't be read ends the listing with an error
		marker, as the head was already sent."""
		files = service(makeConfig)
		gone = ResolvedPath(site / "gone", FileInfo(0, 0, True), "/gone/")
		html = listing(files, gone)
		assert html.endswith(f"{LISTING_ERROR}</body></html>")

	def test_disabled(self, makeConfig: Callable[..., ServerConfig]) -> None:
		files = service(makeConfig, listing=False)
		resolved = PathResolver(files.config.root).resolve("/a/")
		res = files.listDirectory(HTTPRequest("GET", "/a/", "", HTTPHeaders({})), resolved)
		assert res.status == 403


# EOF
