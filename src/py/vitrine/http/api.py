from abc import ABC, abstractmethod
from typing import Any, Generic, TypeVar

from .status import HTTP_STATUS

T = TypeVar("T")

# -----------------------------------------------------------------------------
#
# API
#
# -----------------------------------------------------------------------------

# --
# == HTTP Request Response API
#
# Defines the high level API functions (orthogonal to the underlying model)
# to create responses from a request.


class ResponseFactory(ABC, Generic[T]):
	@abstractmethod
	def respond(
		self,
		content: Any = None,
		contentType: str | None = None,
		contentLength: int | None = None,
		status: int = 200,
		headers: dict[str, str] | None = None,
		message: str | None = None,
	) -> T: ...

	def empty(
		self,
		status: int = 204,
		headers: dict[str, str] | None = None,
	) -> T:
		return self.respond(
			content=None,
			contentType=None,
			status=status,
			headers=headers,
		)

	def error(
		self,
		status: int,
		content: str | None = None,
		contentType: str = "text/plain; charset=utf-8",
		headers: dict[str, str] | None = None,
	) -> T:
		message = HTTP_STATUS.get(status, "Server Error")
		return self.respond(
			content=f"{status} {message}" if content is None else content,
			contentType=contentType,
			status=status,
			message=message,
			headers=headers,
		)

	def notAuthorized(
		self,
		content: str | None = None,
		*,
		challenge: str | None = None,
	) -> T:
		return self.error(
			401,
			content,
			headers={"WWW-Authenticate": challenge} if challenge else None,
		)

	def forbidden(self, content: str | None = None) -> T:
		return self.error(403, content)

	def notFound(self, content: str | None = None) -> T:
		return self.error(404, content)

	def notModified(self, headers: dict[str, str] | None = None) -> T:
		return self.respond(content=None, status=304, headers=headers)

	def fail(
		self,
		content: str | None = None,
		*,
		status: int = 500,
	) -> T:
		return self.error(status, content)

	def respondHTML(
		self, html: Any, status: int = 200, headers: dict[str, str] | None = None
	) -> T:
		return self.respond(
			content=html,
			contentType="text/html; charset=utf-8",
			status=status,
			headers=headers,
		)


# EOF
