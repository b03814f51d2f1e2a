from enum import Enum
from typing import TYPE_CHECKING

from .client import ConnectionPool
from .features.auth import AuthGate
from .features.cors import preflight, setCORSHeaders
from .features.paths import (
	ForbiddenPath,
	MalformedPath,
	PathNotFound,
	PathResolver,
	ResolvedPath,
)
from .http.model import HTTPRequest, HTTPResponse
from .services.files import FileService
from .services.proxy import ProxyError, ProxyService, logUpstreamError
from .utils.logging import debug, exception, logged

if TYPE_CHECKING:
	from .config import ServerConfig


class DispatchState(Enum):
	Authenticating = "authenticating"
	Resolving = "resolving"
	Streaming = "streaming"
	Listing = "listing"
	Proxying = "proxying"
	Responding304 = "responding304"
	RespondingError = "respondingError"


class Dispatcher:
	"""Turns a request into a response: the auth gate first, then the
	path resolution, which leads to a file, a listing, the upstream or an
	error. The response body is not sent here, so any failure in this
	process can still be turned into a `500`."""

	def __init__(self, config: "ServerConfig", pool: ConnectionPool | None = None):
		self.config: "ServerConfig" = config
		self.auth: AuthGate = AuthGate(config)
		self.resolver: PathResolver = PathResolver(config.root)
		self.files: FileService = FileService(config, self.resolver)
		self.proxy: ProxyService | None = (
			ProxyService(config, pool or ConnectionPool()) if config.proxy else None
		)

	def trace(self, state: DispatchState, request: HTTPRequest) -> DispatchState:
		logged(debug) and debug(
			"Dispatch", State=state.name, Method=request.method, Path=request.path
		)
		return state

	async def process(self, request: HTTPRequest) -> HTTPResponse:
		"""Returns the response for the request, never raising."""
		try:
			res = await self.dispatch(request)
		except Exception as e:
			self.trace(DispatchState.RespondingError, request)
			exception(
				e, "Could not process request", Method=request.method, Path=request.path
			)
			res = self.decorate(request.fail())
		return res

	async def dispatch(self, request: HTTPRequest) -> HTTPResponse:
		self.trace(DispatchState.Authenticating, request)
		if denied := self.auth.check(request):
			self.trace(DispatchState.RespondingError, request)
			return self.decorate(denied)
		if request.method == "OPTIONS" and self.config.cors:
			return preflight(request)
		self.trace(DispatchState.Resolving, request)
		try:
			resolved = self.resolver.resolve(request.path)
		except (MalformedPath, ForbiddenPath) as e:
			self.trace(DispatchState.RespondingError, request)
			logged(debug) and debug(
				"Rejected request path", Path=request.path, Reason=str(e)
			)
			return self.decorate(request.error(e.status))
		except PathNotFound:
			return await self.fallback(request)
		if resolved.stat.isDirectory:
			index = self.resolver.indexOf(resolved) if self.config.autoIndex else None
			if index is None:
				self.trace(DispatchState.Listing, request)
				return self.decorate(self.files.listDirectory(request, resolved))
			resolved = index
		return self.decorate(self.serve(request, resolved))

	def serve(self, request: HTTPRequest, resolved: ResolvedPath) -> HTTPResponse:
		res = self.files.serveFile(request, resolved)
		self.trace(
			DispatchState.Responding304 if res.status == 304 else DispatchState.Streaming,
			request,
		)
		return res

	async def fallback(self, request: HTTPRequest) -> HTTPResponse:
		"""Handles requests for which there's no local file."""
		if not self.proxy:
			self.trace(DispatchState.RespondingError, request)
			return self.decorate(request.notFound())
		self.trace(DispatchState.Proxying, request)
		try:
			return await self.proxy.relay(request)
		except ProxyError as e:
			self.trace(DispatchState.RespondingError, request)
			if e.status >= 500:
				logUpstreamError(request, e)
			return self.decorate(request.error(e.status))

	def decorate(self, response: HTTPResponse) -> HTTPResponse:
		"""Adds the headers common to locally produced responses."""
		return setCORSHeaders(response) if self.config.cors else response

	def close(self) -> None:
		if self.proxy:
			self.proxy.close()


# EOF
