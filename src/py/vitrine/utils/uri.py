from typing import NamedTuple
from urllib.parse import urlsplit

DEFAULT_PORTS: dict[str, int] = {"http": 80, "https": 443}


class URI(NamedTuple):
	"""An absolute HTTP(S) URI, as used to designate an upstream server."""

	scheme: str
	host: str
	port: int
	path: str = ""
	query: str = ""

	@classmethod
	def Parse(cls, link: "URI|str") -> "URI":
		"""Parses an `http://` or `https://` link, raising `ValueError` when
		it is not one."""
		if isinstance(link, URI):
			return link
		res = urlsplit(link.strip())
		scheme = res.scheme.lower()
		if scheme not in DEFAULT_PORTS:
			raise ValueError(f"Unsupported URI scheme, expected http or https: {link}")
		if not res.hostname:
			raise ValueError(f"URI has no host: {link}")
		# NOTE: `res.port` raises `ValueError` for an invalid port
		port = res.port
		return URI(
			scheme=scheme,
			host=res.hostname,
			port=DEFAULT_PORTS[scheme] if port is None else port,
			path=res.path.rstrip("/"),
			query=res.query,
		)

	@property
	def ssl(self) -> bool:
		return self.scheme == "https"

	@property
	def netloc(self) -> str:
		"""The value of a `Host` header designating this URI."""
		host = f"[{self.host}]" if ":" in self.host else self.host
		return host if self.port == DEFAULT_PORTS[self.scheme] else f"{host}:{self.port}"

	def join(self, path: str, query: str = "") -> str:
		"""Returns the request target for `path` (and `query`) relative to
		this URI's path."""
		target = f"{self.path}{path}" if path.startswith("/") else f"{self.path}/{path}"
		q = "&".join(_ for _ in (self.query, query) if _)
		return f"{target}?{q}" if q else target

	def __str__(self) -> str:
		return f"{self.scheme}://{self.netloc}{self.path}{'?' + self.query if self.query else ''}"


# EOF
