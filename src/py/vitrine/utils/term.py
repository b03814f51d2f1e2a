from typing import ClassVar, TextIO
import os

# SEE: https://no-color.org/
NO_COLOR: bool = "NO_COLOR" in os.environ
FORCE_COLOR: bool = "FORCE_COLOR" in os.environ


def hasColor(stream: TextIO | None) -> bool:
	"""Tells if ANSI colours should be written to the given stream."""
	if FORCE_COLOR:
		return True
	elif NO_COLOR or stream is None:
		return False
	else:
		isatty = getattr(stream, "isatty", None)
		return bool(isatty and isatty())


class Term:
	BOLD: ClassVar[str] = "\033[1m"
	RESET: ClassVar[str] = "\033[0m"

	@staticmethod
	def Color(color: int, enabled: bool = True) -> str:
		return f"\033[0;38;5;{color}m" if enabled else ""

	@staticmethod
	def Bold(enabled: bool = True) -> str:
		return Term.BOLD if enabled else ""

	@staticmethod
	def Reset(enabled: bool = True) -> str:
		return Term.RESET if enabled else ""


# EOF
