import base64
import binascii
import hmac
from typing import TYPE_CHECKING

from ..http.model import HTTPRequest, HTTPResponse

if TYPE_CHECKING:
	from ..config import ServerConfig

REALM: str = "vitrine"
CHALLENGE: str = f'Basic realm="{REALM}", charset="UTF-8"'


class AuthGate:
	"""Checks HTTP Basic credentials when they are configured. A missing
	header gets a challenge, wrong credentials don't, so that the response
	doesn't tell which of the username or the password failed."""

	def __init__(self, config: "ServerConfig"):
		self.credentials = config.auth

	@property
	def enabled(self) -> bool:
		return self.credentials is not None

	@staticmethod
	def Decode(header: str) -> tuple[str, str] | None:
		"""Decodes the `user:password` of a `Basic` authorization value,
		returning `None` when it can't be decoded."""
		scheme, _, token = header.strip().partition(" ")
		if scheme.lower() != "basic":
			return None
		try:
			decoded = base64.b64decode(token.strip(), validate=True).decode("utf8")
		except (binascii.Error, UnicodeDecodeError):
			return None
		user, sep, password = decoded.partition(":")
		return (user, password) if sep else None

	def check(self, request: HTTPRequest) -> HTTPResponse | None:
		"""Returns `None` when the request may proceed, or the `401`
		response to send."""
		if self.credentials is None:
			return None
		header = request.header("Authorization")
		if not header or header.split(" ", 1)[0].lower() != "basic":
			return request.notAuthorized(challenge=CHALLENGE)
		decoded = self.Decode(header)
		if decoded is None:
			return request.notAuthorized()
		user, password = decoded
		# Both are always compared, in constant time
		matches = hmac.compare_digest(
			user.encode("utf8"), self.credentials.username.encode("utf8")
		) & hmac.compare_digest(
			password.encode("utf8"), self.credentials.password.encode("utf8")
		)
		return None if matches else request.notAuthorized()


# EOF
