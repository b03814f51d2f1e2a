import os
import re
import stat
from pathlib import Path
from typing import NamedTuple
from urllib.parse import unquote

from ..utils.logging import debug, logged

INDEX_FILE: str = "index.html"

# A `%` that does not start a two-digit hexadecimal escape
RE_BAD_ESCAPE: re.Pattern[str] = re.compile(r"%(?![0-9A-Fa-f]{2})")

# -----------------------------------------------------------------------------
#
# ERRORS
#
# -----------------------------------------------------------------------------


class ResolutionError(Exception):
	"""Base class for request paths that can't be mapped to a local file."""

	status: int = 500

	def __init__(self, message: str, path: str):
		super().__init__(message)
		self.path: str = path


class MalformedPath(ResolutionError):
	"""The request path is not a valid percent-encoded path."""

	status = 400


class ForbiddenPath(ResolutionError):
	"""The request path designates something outside of the root, or that
	we're not allowed to read."""

	status = 403


class PathNotFound(ResolutionError):
	"""Nothing exists at the request path. This is not a failure, as the
	request may be handled upstream."""

	status = 404


# -----------------------------------------------------------------------------
#
# MODEL
#
# -----------------------------------------------------------------------------


class FileInfo(NamedTuple):
	size: int
	# Modification time, in nanoseconds
	modifiedTime: int
	isDirectory: bool

	@staticmethod
	def FromStat(st: os.stat_result) -> "FileInfo":
		return FileInfo(
			size=st.st_size,
			modifiedTime=st.st_mtime_ns,
			isDirectory=stat.S_ISDIR(st.st_mode),
		)


class ResolvedPath(NamedTuple):
	"""A filesystem path that is guaranteed to be within the served root."""

	path: Path
	stat: FileInfo
	# The decoded request path this was resolved from
	urlPath: str


# -----------------------------------------------------------------------------
#
# RESOLVER
#
# -----------------------------------------------------------------------------


class PathResolver:
	"""Maps request paths to files within the root directory. Every path
	that is returned has been checked to be the root or one of its
	descendants, both once normalized and once its symlinks are resolved."""

	def __init__(self, root: str | Path):
		self.root: str = os.path.realpath(root)
		self.prefix: str = (
			self.root if self.root.endswith(os.sep) else self.root + os.sep
		)

	def contains(self, path: str) -> bool:
		return path == self.root or path.startswith(self.prefix)

	@staticmethod
	def Decode(path: str) -> str:
		"""Strictly percent-decodes the given path, raising `MalformedPath`
		for invalid escapes, invalid UTF-8 or NUL bytes."""
		if RE_BAD_ESCAPE.search(path):
			raise MalformedPath("Invalid percent-encoding in path", path)
		try:
			decoded = unquote(path, errors="strict")
		except UnicodeDecodeError as e:
			raise MalformedPath("Path is not valid UTF-8", path) from e
		if "\0" in decoded:
			raise MalformedPath("Path contains a NUL byte", path)
		return decoded

	def resolve(self, requestPath: str) -> ResolvedPath:
		decoded = self.Decode(requestPath)
		path = os.path.normpath(os.path.join(self.root, decoded.lstrip("/")))
		if not self.contains(path):
			raise ForbiddenPath("Path is outside of the root", requestPath)
		# Symlinks may point outside of the root as well
		real = os.path.realpath(path)
		if not self.contains(real):
			raise ForbiddenPath("Path links outside of the root", requestPath)
		try:
			st = os.stat(real)
		except (FileNotFoundError, NotADirectoryError) as e:
			raise PathNotFound("Path does not exist", requestPath) from e
		except PermissionError as e:
			raise ForbiddenPath("Path is not accessible", requestPath) from e
		if not (stat.S_ISREG(st.st_mode) or stat.S_ISDIR(st.st_mode)):
			# Devices, FIFOs and sockets are never served
			raise ForbiddenPath("Path is not a regular file", requestPath)
		logged(debug) and debug("Path resolved", Path=decoded, Resolved=real)
		return ResolvedPath(Path(real), FileInfo.FromStat(st), decoded)

	def indexOf(self, resolved: ResolvedPath) -> ResolvedPath | None:
		"""Returns the index file of the given directory, if it has one."""
		path = resolved.path / INDEX_FILE
		real = os.path.realpath(path)
		if not self.contains(real):
			return None
		try:
			st = os.stat(real)
		except OSError:
			return None
		return (
			ResolvedPath(Path(real), FileInfo.FromStat(st), resolved.urlPath)
			if stat.S_ISREG(st.st_mode)
			else None
		)


# EOF
