import os
import ssl
from os import getenv
from typing import NamedTuple

from .utils.io import DEFAULT_ENCODING  # NOQA: F401
from .utils.uri import URI

PORT: int = int(getenv("PORT", 8000))

# When serving a directory, we want it to be accessible from everywhere by default
HOST: str = getenv("HOST", "0.0.0.0")  # nosec: B104

LOG_REQUESTS: bool = getenv("VITRINE_LOG_REQUESTS", "1") == "1"


class ConfigError(ValueError):
	"""Raised when the configuration can't be used to start a server."""


class Credentials(NamedTuple):
	username: str
	password: str

	@staticmethod
	def Parse(value: "str|Credentials|tuple[str, str]") -> "Credentials":
		if isinstance(value, Credentials):
			return value
		elif isinstance(value, tuple):
			return Credentials(*value)
		user, sep, password = value.partition(":")
		if not sep or not user:
			raise ConfigError("Credentials are expected as USER:PASSWORD")
		return Credentials(user, password)

	def __repr__(self) -> str:
		# The password never ends up in logs or tracebacks
		return f"Credentials(username={self.username!r}, password='***')"


TUNABLES: frozenset[str] = frozenset(
	(
		"logRequests",
		"chunkSize",
		"compressionMinSize",
		"compressionMaxSize",
		"timeout",
		"keepalive",
		"proxyTimeout",
		"backlog",
		"restartBackoff",
	)
)


class ServerConfig(NamedTuple):
	"""The configuration of a server, built once with `Make` and then passed
	as-is to every component."""

	root: str
	host: str = HOST
	port: int = PORT
	cert: str | None = None
	key: str | None = None
	# Overrides the `max-age` derived from the content type
	maxAge: int | None = None
	compression: bool = True
	listing: bool = True
	autoIndex: bool = True
	cors: bool = False
	proxy: URI | None = None
	auth: Credentials | None = None
	# 0 or 1 serves from this process, more forks workers
	workers: int = 0
	quiet: bool = False
	logRequests: bool = LOG_REQUESTS
	# Tunables
	chunkSize: int = 64_000
	compressionMinSize: int = 1_024
	compressionMaxSize: int = 8_000_000
	timeout: float = 30.0
	keepalive: float = 5.0
	proxyTimeout: float = 10.0
	backlog: int = 1_024
	restartBackoff: float = 0.0

	@property
	def tls(self) -> bool:
		return bool(self.cert and self.key)

	def sslContext(self) -> ssl.SSLContext | None:
		"""Loads the TLS certificate and key, if configured."""
		if not self.tls:
			return None
		ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
		try:
			ctx.load_cert_chain(self.cert or "", self.key)
		except (OSError, ssl.SSLError) as e:
			raise ConfigError(f"Could not load TLS certificate and key: {e}") from e
		return ctx

	@staticmethod
	def Make(
		root: str = ".",
		*,
		host: str = HOST,
		port: int = PORT,
		cert: str | None = None,
		key: str | None = None,
		maxAge: int | None = None,
		compression: bool = True,
		listing: bool = True,
		autoIndex: bool = True,
		cors: bool = False,
		proxy: "str|URI|None" = None,
		auth: "str|Credentials|tuple[str, str]|None" = None,
		workers: int = 0,
		quiet: bool = False,
		**tunables: float | int | bool,
	) -> "ServerConfig":
		"""Validates and normalizes the given options, raising `ConfigError`
		when they can't be used."""
		path = os.path.realpath(os.path.expanduser(root))
		if not os.path.isdir(path):
			raise ConfigError(f"Root is not a directory: {root}")
		if not 0 <= port <= 65535:
			raise ConfigError(f"Invalid port: {port}")
		if bool(cert) != bool(key):
			raise ConfigError("TLS requires both a certificate and a key")
		for p in (cert, key):
			if p and not os.path.isfile(p):
				raise ConfigError(f"TLS file not found: {p}")
		if maxAge is not None and maxAge < 0:
			raise ConfigError(f"Invalid max-age: {maxAge}")
		if workers < 0:
			raise ConfigError(f"Invalid worker count: {workers}")
		upstream: URI | None = None
		if proxy:
			try:
				upstream = URI.Parse(proxy)
			except ValueError as e:
				raise ConfigError(f"Invalid proxy URL: {e}") from e
		unknown = set(tunables) - TUNABLES
		if unknown:
			raise ConfigError(f"Unknown options: {', '.join(sorted(unknown))}")
		return ServerConfig(
			root=path,
			host=host,
			port=port,
			cert=cert,
			key=key,
			maxAge=maxAge,
			compression=compression,
			listing=listing,
			autoIndex=autoIndex,
			cors=cors,
			proxy=upstream,
			auth=Credentials.Parse(auth) if auth else None,
			workers=workers,
			quiet=quiet,
			**tunables,  # type: ignore[arg-type]
		)


# EOF
