import sys
import time
import inspect
from abc import ABC, abstractmethod
from enum import Enum
from typing import NamedTuple, Any, TextIO, TypeAlias
from contextvars import ContextVar
from .term import Term, hasColor

# --
# # Logging
#
# Structured log entries (a message plus key/value context) delivered to a
# `LogSink`. The sink is selected through a context variable, so that
# workers, tests and the quiet mode can each swap their own without the
# pipeline knowing about the console.

TValue: TypeAlias = str | int | float | bool | bytes | list[Any] | tuple[Any, ...] | dict[str, Any] | None

LogOrigin: ContextVar[str] = ContextVar("LogOrigin", default="vitrine")


class LogType(Enum):
	Message = 0  # A general information message
	Event = 20  # An event


class LogLevel(Enum):
	Debug = 0
	Info = 10
	Warning = 30  # A Warning
	Error = 40  # A managed error
	Exception = 50  # An un-managed error


LOG_LEVEL_COLOR = {
	LogLevel.Debug: 31,
	LogLevel.Info: 75,
	LogLevel.Warning: 202,
	LogLevel.Error: 160,
	LogLevel.Exception: 124,
}


class LogEntry(NamedTuple):
	origin: str
	time: float
	type: LogType = LogType.Message
	level: LogLevel = LogLevel.Info
	message: str | None = None
	name: str | None = None
	value: TValue = None
	context: dict[str, TValue] | None = None
	icon: str | None = None
	stack: list[str] | None = None


TStack: TypeAlias = list[str]


def callstack(offset: int = 1) -> list[str]:
	"""Returns a list of function/method names on the call stack.
	For methods, the class name is included as 'ClassName.methodName'."""
	return [
		(
			f"{_.frame.f_locals['self'].__class__.__qualname__}.{_.function}"
			if "self" in _.frame.f_locals
			else (
				f"{_.frame.f_locals['cls'].__qualname__}.{_.function}"
				if "cls" in _.frame.f_locals
				else _.function
			)
		).replace("<lambda>", "λ")
		for _ in reversed(inspect.stack()[offset:])
	]


def formatData(value: Any, *, colors: bool = False) -> str:
	if value is None or value == () or value == [] or value == {}:
		return "◌"
	elif isinstance(value, dict):
		return " ".join(
			f"{Term.Bold(colors)}{k}{Term.Reset(colors)}={formatData(v, colors=colors)}"
			for k, v in value.items()
		)
	elif isinstance(value, list) or isinstance(value, tuple):
		return ",".join(formatData(v, colors=colors) for v in value)
	elif isinstance(value, str):
		return repr(value) if " " in value else value
	elif isinstance(value, bool):
		return "✓" if value else "✗"
	elif isinstance(value, float):
		return f"{value:0.2f}"
	else:
		return str(value)


def formatEntry(entry: LogEntry, *, colors: bool = False) -> str:
	"""Formats the entry as one or more terminal lines."""
	clr: str = Term.Color(LOG_LEVEL_COLOR[entry.level], colors)
	bold: str = Term.Bold(colors)
	reset: str = Term.Reset(colors)
	icon: str = f" {entry.icon}" if entry.icon else ""
	if entry.level is LogLevel.Exception:
		lines = [f"{clr}!!! EXCP [{entry.origin}] {entry.message}{reset}"]
		if entry.context:
			lines.append(f"{clr}... {formatData(entry.context, colors=colors)}{reset}")
		lines.extend(f"{clr}... {_}{reset}" for _ in entry.stack or ())
		return "\n".join(lines) + "\n"
	elif entry.type == LogType.Event:
		res = f"{clr}{bold}[{entry.origin}] {entry.name}{reset} {formatData(entry.value, colors=colors)} {formatData(entry.context, colors=colors)}{reset}\n"
	else:
		code: str = f" {entry.value}" if entry.value is not None else ""
		res = f"{clr}{bold}[{entry.origin}]{reset}{icon}{code} {entry.message} {formatData(entry.context, colors=colors)}{reset}\n"
	if entry.stack:
		res += f"{clr}  {' ' * len(entry.origin)} {'→'.join(entry.stack)}{reset}\n"
	return res


# -----------------------------------------------------------------------------
#
# SINKS
#
# -----------------------------------------------------------------------------


class LogSink(ABC):
	"""Receives log entries. Sinks may buffer, in which case `flush` must be
	called before the process exits."""

	def __init__(self, level: LogLevel = LogLevel.Info) -> None:
		self.level: LogLevel = level

	def accepts(self, level: LogLevel) -> bool:
		return level.value >= self.level.value

	@abstractmethod
	def write(self, entry: LogEntry) -> None: ...

	@abstractmethod
	def flush(self) -> None: ...


class StreamSink(LogSink):
	"""Writes formatted entries to a text stream (`stderr` by default),
	holding at most `capacity` lines before flushing. Warnings and anything
	above are flushed right away."""

	def __init__(
		self,
		stream: TextIO | None = None,
		*,
		capacity: int = 64,
		level: LogLevel = LogLevel.Info,
		colors: bool | None = None,
	) -> None:
		super().__init__(level)
		self._stream: TextIO | None = stream
		self.capacity: int = max(1, capacity)
		self.colors: bool | None = colors
		self.buffer: list[str] = []

	@property
	def stream(self) -> TextIO:
		# We look up stderr lazily, as it may be swapped (tests, daemons).
		return self._stream or sys.stderr

	def write(self, entry: LogEntry) -> None:
		colors = hasColor(self.stream) if self.colors is None else self.colors
		self.buffer.append(formatEntry(entry, colors=colors))
		if (
			len(self.buffer) >= self.capacity
			or entry.level.value >= LogLevel.Warning.value
		):
			self.flush()

	def flush(self) -> None:
		if not self.buffer:
			return
		lines = "".join(self.buffer)
		self.buffer.clear()
		stream = self.stream
		stream.write(lines)
		stream.flush()


class MemorySink(LogSink):
	"""Keeps entries in a bounded list, used to inspect what was logged."""

	def __init__(self, capacity: int = 1_000, level: LogLevel = LogLevel.Debug) -> None:
		super().__init__(level)
		self.capacity: int = capacity
		self.entries: list[LogEntry] = []

	def write(self, entry: LogEntry) -> None:
		self.entries.append(entry)
		if len(self.entries) > self.capacity:
			del self.entries[0 : len(self.entries) - self.capacity]

	def flush(self) -> None:
		pass


class NullSink(LogSink):
	def __init__(self) -> None:
		super().__init__(LogLevel.Exception)

	def accepts(self, level: LogLevel) -> bool:
		return False

	def write(self, entry: LogEntry) -> None:
		pass

	def flush(self) -> None:
		pass


DEFAULT_SINK: LogSink = StreamSink()
LogOutput: ContextVar[LogSink] = ContextVar("LogOutput", default=DEFAULT_SINK)


def sink() -> LogSink:
	"""Returns the sink active in the current context."""
	return LogOutput.get()


def setSink(value: LogSink) -> LogSink:
	"""Sets the sink for the current context, flushing the previous one."""
	previous = LogOutput.get()
	if previous is not value:
		previous.flush()
	LogOutput.set(value)
	return value


def send(entry: LogEntry) -> LogEntry:
	output = LogOutput.get()
	if output.accepts(entry.level):
		output.write(entry)
	return entry


# -----------------------------------------------------------------------------
#
# API
#
# -----------------------------------------------------------------------------


def entry(
	*,
	origin: str | None = None,
	at: float | None = None,
	type: LogType = LogType.Message,
	level: LogLevel = LogLevel.Info,
	message: str | None = None,
	name: str | None = None,
	value: TValue = None,
	context: dict[str, TValue],
	icon: str | None = None,
	stack: TStack | bool | None = None,
) -> LogEntry:
	return LogEntry(
		origin=origin or LogOrigin.get(),
		time=time.time() if at is None else at,
		type=type,
		level=level,
		message=message,
		name=name,
		value=value,
		context=context,
		icon=icon,
		stack=callstack(2) if stack is True else stack if stack else None,
	)


def debug(
	message: str,
	*,
	origin: str | None = None,
	at: float | None = None,
	icon: str | None = None,
	stack: TStack | bool | None = None,
	**context: TValue,
) -> LogEntry:
	return send(
		entry(
			message=message,
			level=LogLevel.Debug,
			origin=origin,
			at=at,
			context=context,
			icon=icon,
			stack=stack,
		)
	)


def info(
	message: str,
	*,
	origin: str | None = None,
	at: float | None = None,
	icon: str | None = None,
	stack: TStack | bool | None = None,
	**context: TValue,
) -> LogEntry:
	return send(
		entry(
			message=message,
			origin=origin,
			at=at,
			context=context,
			icon=icon,
			stack=stack,
		)
	)


def warning(
	message: str,
	*,
	origin: str | None = None,
	at: float | None = None,
	icon: str | None = None,
	stack: TStack | bool | None = None,
	**context: TValue,
) -> LogEntry:
	return send(
		entry(
			message=message,
			level=LogLevel.Warning,
			origin=origin,
			at=at,
			context=context,
			icon=icon,
			stack=stack,
		)
	)


def error(
	message: str,
	code: int | str | None,
	*,
	origin: str | None = None,
	at: float | None = None,
	icon: str | None = None,
	stack: TStack | bool | None = None,
	**context: TValue,
) -> LogEntry:
	return send(
		entry(
			message=message,
			value=code,
			level=LogLevel.Error,
			origin=origin,
			at=at,
			context=context,
			icon=icon,
			stack=stack,
		)
	)


def event(
	event: str,
	value: Any = None,
	*,
	origin: str | None = None,
	at: float | None = None,
	stack: TStack | bool | None = None,
	**context: TValue,
) -> LogEntry:
	return send(
		entry(
			name=event,
			value=value,
			type=LogType.Event,
			origin=origin,
			at=at,
			context=context,
			stack=stack,
		)
	)


def exception(
	exception: BaseException,
	message: str | None = None,
	**context: TValue,
) -> BaseException:
	"""Logs the exception along with its traceback. Returns the exception so
	that this can be used as `raise exception(e)`."""
	try:
		frames: list[str] = []
		tb = exception.__traceback__
		while tb:
			code = tb.tb_frame.f_code
			frames.append(
				f"in {code.co_name:15s} at {tb.tb_lineno:4d} in {code.co_filename}"
			)
			tb = tb.tb_next
		send(
			LogEntry(
				origin=LogOrigin.get(),
				time=time.time(),
				level=LogLevel.Exception,
				message=(
					f"{message}: [{exception.__class__.__name__}] {exception}"
					if message
					else f"[{exception.__class__.__name__}] {exception}"
				),
				context=context or None,
				stack=frames,
			)
		)
	except Exception:  # nosec: B110
		# Swallow all exceptions so that this function can be called from an exception
		# handler safely, such as in the implementation of logging/logging sinks.
		pass
	return exception


LOGGED_LEVELS: dict[Any, LogLevel] = {
	debug: LogLevel.Debug,
	info: LogLevel.Info,
	event: LogLevel.Info,
	warning: LogLevel.Warning,
	error: LogLevel.Error,
	exception: LogLevel.Exception,
}


def logged(item: Any) -> bool:
	"""Takes one of the logging function, and tells if it is currently
	supported. This is used to guard against running the whole entry
	building when not necessary."""
	return LogOutput.get().accepts(LOGGED_LEVELS.get(item, LogLevel.Info))


# EOF
