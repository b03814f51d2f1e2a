import asyncio
import re
from typing import TYPE_CHECKING, AsyncIterator

from ..client import (
	ClientError,
	Connection,
	ConnectionPool,
	ConnectionTarget,
	HTTPClient,
)
from ..http.model import (
	HTTPHeaders,
	HTTPRequest,
	HTTPResponse,
	HTTPResponseLine,
	THeaderValue,
	headername,
	headertokens,
	headervalue,
)
from ..utils.logging import debug, logged, warning
from ..utils.uri import URI

if TYPE_CHECKING:
	from ..config import ServerConfig

# SEE: https://httpwg.org/specs/rfc9110.html#field.connection
HOP_BY_HOP: frozenset[str] = frozenset(
	(
		"Connection",
		"Keep-Alive",
		"Proxy-Authenticate",
		"Proxy-Authorization",
		"Proxy-Connection",
		"Te",
		"Trailer",
		"Transfer-Encoding",
		"Upgrade",
	)
)

# Control characters and spaces can't appear in a request target
RE_INVALID_TARGET: re.Pattern[str] = re.compile(r"[\x00-\x20\x7f]")

# Errors that denote an upstream failure, as opposed to a server fault
UPSTREAM_ERRORS: tuple[type[Exception], ...] = (
	ClientError,
	OSError,
	asyncio.TimeoutError,
	ValueError,
)


class ProxyError(Exception):
	"""The upstream could not be reached, or its response could not be
	read."""

	status: int = 502


class BadProxyRequest(ProxyError):
	"""The request can't be forwarded upstream."""

	status = 400


def stripHopByHop(headers: dict[str, THeaderValue]) -> dict[str, THeaderValue]:
	"""Returns the end-to-end headers, removing the hop-by-hop ones as well
	as the ones listed in the `Connection` header."""
	listed = {headername(_) for _ in headertokens(headervalue(headers.get("Connection")))}
	return {
		k: v for k, v in headers.items() if k not in HOP_BY_HOP and k not in listed
	}


class ProxyService:
	"""Forwards requests to the upstream server and relays its response,
	streaming the bodies both ways. Upstream connections are taken from
	the pool for exactly one exchange, and returned to it once the response
	body has been fully relayed."""

	def __init__(self, config: "ServerConfig", pool: ConnectionPool | None = None):
		if config.proxy is None:
			raise ValueError("Proxy service requires an upstream URL")
		self.upstream: URI = config.proxy
		self.pool: ConnectionPool = pool or ConnectionPool()
		self.timeout: float = config.proxyTimeout
		self.chunkSize: int = config.chunkSize
		self.stripAuthorization: bool = config.auth is not None
		self.connectionTarget: ConnectionTarget = ConnectionTarget.FromURI(
			self.upstream
		)

	def target(self, request: HTTPRequest) -> str:
		"""Returns the upstream request target for the given request, raising
		`BadProxyRequest` when it can't be forwarded."""
		path = request.path
		if not path.startswith("/") or path.startswith("//"):
			raise BadProxyRequest(f"Request target can't be proxied: {request.target}")
		if RE_INVALID_TARGET.search(request.target):
			raise BadProxyRequest(f"Request target is malformed: {request.target!r}")
		return self.upstream.join(path, request.query)

	def requestHeaders(self, request: HTTPRequest) -> dict[str, THeaderValue]:
		headers = stripHopByHop(request.headers)
		headers["Host"] = self.upstream.netloc
		if self.stripAuthorization:
			# Credentials for this server are not for the upstream
			headers.pop("Authorization", None)
		headers["Connection"] = "keep-alive"
		return headers

	async def exchange(
		self, request: HTTPRequest, target: str, headers: dict[str, THeaderValue]
	) -> HTTPResponse:
		hasBody: bool = bool(request.contentLength)
		# A stale pooled connection is only noticed when we use it, in which
		# case the request is retried once on a new connection, unless its
		# body was already consumed.
		attempts: int = 1 if hasBody else 2
		for attempt in range(attempts):
			try:
				cxn = await self.pool.checkout(
					self.connectionTarget, timeout=self.timeout
				)
			except UPSTREAM_ERRORS as e:
				raise ProxyError(f"Could not connect to upstream {self.upstream}: {e}") from e
			try:
				await HTTPClient.SendHead(
					cxn, request.method, target, headers, timeout=self.timeout
				)
				if hasBody:
					await HTTPClient.SendBody(
						cxn,
						request.iterBody(self.chunkSize, self.timeout),
						timeout=self.timeout,
					)
				line, head = await HTTPClient.ReadHead(cxn, timeout=self.timeout)
			except UPSTREAM_ERRORS as e:
				reused = cxn.uses > 0
				self.pool.release(cxn, False)
				if reused and attempt + 1 < attempts:
					logged(debug) and debug(
						"Retrying on a new upstream connection", Error=str(e)
					)
					continue
				raise ProxyError(f"Upstream request failed: {e}") from e
			except BaseException:
				self.pool.release(cxn, False)
				raise
			else:
				return self.response(request, cxn, line, head)
		# The loop either returns or raises
		raise ProxyError("Upstream request failed")

	def response(
		self,
		request: HTTPRequest,
		cxn: Connection,
		line: HTTPResponseLine,
		head: HTTPHeaders,
	) -> HTTPResponse:
		reusable = HTTPClient.IsReusable(request.method, line, head)
		hasBody = HTTPClient.HasBody(request.method, line.status)
		completed: bool = not hasBody

		async def body() -> AsyncIterator[bytes]:
			nonlocal completed
			async for chunk in HTTPClient.IterBody(
				cxn,
				request.method,
				line,
				head,
				size=self.chunkSize,
				timeout=self.timeout,
			):
				yield chunk
			completed = True

		headers = stripHopByHop(head.headers)
		if HTTPClient.IsChunked(head):
			# The body is decoded, its length is given by our own framing
			headers.pop("Content-Length", None)
		res = HTTPResponse.Create(
			content=body() if hasBody else None,
			status=line.status,
			message=line.message or None,
			headers=headers,
			protocol=request.protocol,
		)
		# The connection goes back to the pool only once the whole body has
		# been relayed.
		return res.onClose(lambda _: self.pool.release(cxn, reusable and completed))

	async def relay(self, request: HTTPRequest) -> HTTPResponse:
		"""Forwards the request upstream and returns the response to relay,
		its body streamed from the upstream connection."""
		target = self.target(request)
		headers = self.requestHeaders(request)
		res = await self.exchange(request, target, headers)
		logged(debug) and debug(
			"Proxied request",
			Method=request.method,
			Path=request.path,
			Upstream=str(self.upstream),
			Status=res.status,
		)
		return res

	def close(self) -> None:
		if len(self.pool):
			logged(debug) and debug("Closing upstream connections", Count=len(self.pool))
		self.pool.close()


def logUpstreamError(request: HTTPRequest, error: ProxyError) -> None:
	warning(
		"Upstream request failed",
		Method=request.method,
		Path=request.path,
		Error=str(error),
	)


# EOF
