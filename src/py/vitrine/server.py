import asyncio
import socket
import threading
from signal import SIGINT, SIGTERM
from typing import Any

from .client import CONNECTION_IDLE, ClientError, ConnectionPool
from .config import ServerConfig
from .dispatcher import Dispatcher
from .http.model import (
	CLIENT_DISCONNECTED,
	HTTPBodyAsyncStream,
	HTTPBodyReader,
	HTTPBodyWriter,
	HTTPProcessingStatus,
	HTTPRequest,
	HTTPResponse,
	THTTPBody,
)
from .http.parser import HTTPParser
from .utils.limits import LimitType, unlimit
from .utils.logging import (
	LogLevel,
	LogOrigin,
	StreamSink,
	debug,
	event,
	exception,
	info,
	logged,
	setSink,
	sink,
	warning,
)

# How often buffered log entries are written out, and expired upstream
# connections closed
HOUSEKEEPING_INTERVAL: float = 1.0
READ_SIZE: int = 64_000

SERVER_ERROR: bytes = (
	b"HTTP/1.1 500 Internal Server Error\r\n"
	b"Content-Type: text/plain; charset=utf-8\r\n"
	b"Content-Length: 25\r\n"
	b"Connection: close\r\n"
	b"\r\n"
	b"500 Internal Server Error"
)

BAD_REQUEST: bytes = (
	b"HTTP/1.1 400 Bad Request\r\n"
	b"Content-Type: text/plain; charset=utf-8\r\n"
	b"Content-Length: 15\r\n"
	b"Connection: close\r\n"
	b"\r\n"
	b"400 Bad Request"
)


class StreamBodyReader(HTTPBodyReader):
	"""Reads request bodies from an asyncio stream."""

	__slots__ = ["reader"]

	def __init__(self, reader: asyncio.StreamReader) -> None:
		self.reader: asyncio.StreamReader = reader

	async def read(self, size: int, timeout: float | None = None) -> bytes:
		return await asyncio.wait_for(self.reader.read(size), timeout=timeout)


class StreamBodyWriter(HTTPBodyWriter):
	"""Writes to an asyncio stream. Each write waits for the transport
	buffer to drain, for at most `timeout` seconds."""

	__slots__ = ["writer", "timeout"]

	def __init__(self, writer: asyncio.StreamWriter, timeout: float | None) -> None:
		super().__init__()
		self.writer: asyncio.StreamWriter = writer
		self.timeout: float | None = timeout

	async def _writeBytes(self, chunk: bytes) -> bool:
		if chunk:
			self.writer.write(chunk)
			self.written += len(chunk)
			await asyncio.wait_for(self.writer.drain(), timeout=self.timeout)
		return True


def onLoopException(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
	e = context.get("exception")
	if e:
		exception(e)
	else:
		warning("Event loop error", Message=context.get("message"))


class Server:
	"""Accepts connections and processes their requests, one at a time
	on each connection, in the order they were received."""

	def __init__(self, config: ServerConfig, dispatcher: Dispatcher | None = None):
		self.config: ServerConfig = config
		self.dispatcher: Dispatcher = dispatcher or Dispatcher(
			config, ConnectionPool(idle=CONNECTION_IDLE)
		)
		self.connections: set[asyncio.Task[Any]] = set()
		# Set once the server accepts connections
		self.ready: threading.Event = threading.Event()
		self.port: int | None = None
		self._loop: asyncio.AbstractEventLoop | None = None
		self._stopping: asyncio.Event | None = None

	@property
	def isStopping(self) -> bool:
		return bool(self._stopping and self._stopping.is_set())

	# =========================================================================
	# CONNECTIONS
	# =========================================================================

	async def onConnection(
		self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
	) -> None:
		task = asyncio.current_task()
		if task:
			self.connections.add(task)
		if (sock := writer.get_extra_info("socket")) and sock.family != socket.AF_UNIX:
			sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
		parser: HTTPParser = HTTPParser()
		body_reader: StreamBodyReader = StreamBodyReader(reader)
		body_writer: StreamBodyWriter = StreamBodyWriter(writer, self.config.timeout)
		keep_alive: bool = True
		requests: int = 0
		try:
			while keep_alive and not self.isStopping:
				# Idle connections are kept for `keepalive`, partial requests
				# for `timeout`.
				timeout = (
					self.config.keepalive
					if requests and parser.isIdle
					else self.config.timeout
				)
				try:
					data = await asyncio.wait_for(reader.read(READ_SIZE), timeout=timeout)
				except asyncio.TimeoutError:
					if not parser.isIdle:
						logged(debug) and debug("Client timed out", Requests=requests)
					break
				if not data:
					break
				for atom in parser.feed(data):
					if atom is HTTPProcessingStatus.BadFormat:
						logged(debug) and debug("Malformed request", Requests=requests)
						await body_writer.write(BAD_REQUEST)
						keep_alive = False
						break
					elif isinstance(atom, HTTPRequest):
						atom._reader = body_reader
						requests += 1
						keep_alive = await self.onRequest(atom, body_writer)
						if not keep_alive:
							break
		except CLIENT_DISCONNECTED as e:
			logged(debug) and debug("Client disconnected", Error=str(e))
		except asyncio.TimeoutError:
			logged(debug) and debug("Client stalled", Requests=requests)
		except Exception as e:
			exception(e, "Connection failed")
		finally:
			if task:
				self.connections.discard(task)
			# NOTE: The above loop takes care of keep alive, so we always close
			# the connection on exit.
			writer.close()
			try:
				await writer.wait_closed()
			except OSError as e:
				logged(debug) and debug("Connection closed with error", Error=str(e))

	async def onRequest(self, request: HTTPRequest, writer: HTTPBodyWriter) -> bool:
		"""Processes the request and sends its response, returning `True` if
		the connection can be used for another request."""
		if request.header("Transfer-Encoding"):
			# Chunked request bodies are not supported, and the connection
			# can't be resynchronized after them.
			res = request.error(411)
			await self.sendResponse(request, res, writer, keepAlive=False)
			return False
		res = await self.dispatcher.process(request)
		keep_alive = request.keepAlive and not self.isStopping
		if self.config.logRequests:
			event(request.method, request.path, Status=res.status)
		if not await self.sendResponse(request, res, writer, keepAlive=keep_alive):
			return False
		if request.bodyRemaining:
			# The unread body is skipped, so that the next request can be read
			async for _ in request.iterBody(timeout=self.config.timeout):
				pass
		return not res.shouldClose

	async def sendResponse(
		self,
		request: HTTPRequest,
		response: HTTPResponse,
		writer: HTTPBodyWriter,
		*,
		keepAlive: bool = True,
	) -> bool:
		"""Sends the response head and body. Once the head is sent, a failure
		can only abort the connection, which is what a `False` return value
		means."""
		res: HTTPResponse = response
		sent: int = writer.written
		try:
			transform = res.frame(keepAlive=keepAlive)
			await writer.write(res.head())
			if request.method != "HEAD" and res.hasBody:
				await writer.prepare(transform).write(res.body)
			else:
				await self.discard(res.body)
			return True
		except CLIENT_DISCONNECTED as e:
			# Client did an early close
			logged(debug) and debug(
				"Client disconnected", Method=request.method, Path=request.path, Error=str(e)
			)
		except asyncio.TimeoutError:
			logged(debug) and debug(
				"Client stopped reading", Method=request.method, Path=request.path
			)
		except ClientError as e:
			warning(
				"Upstream response aborted",
				Method=request.method,
				Path=request.path,
				Error=str(e),
			)
		except Exception as e:
			exception(
				e, "Could not send response", Method=request.method, Path=request.path
			)
			if writer.written == sent:
				warning(
					"Server did not send a response",
					Method=request.method,
					Path=request.path,
				)
				try:
					await writer.write(SERVER_ERROR)
				except CLIENT_DISCONNECTED:
					pass
		finally:
			writer.prepare(None)
			try:
				res.close()
			except Exception as e:
				# NOTE: close handler failed
				exception(e)
		return False

	async def discard(self, body: THTTPBody | None) -> None:
		"""Releases a body that is not sent."""
		if isinstance(body, HTTPBodyAsyncStream):
			aclose = getattr(body.stream, "aclose", None)
			if aclose:
				await aclose()

	# =========================================================================
	# LIFECYCLE
	# =========================================================================

	@staticmethod
	def Bind(config: ServerConfig) -> socket.socket:
		"""Binds and listens to the configured address, the socket being then
		shared by all workers."""
		family = socket.AF_INET6 if ":" in config.host else socket.AF_INET
		sock = socket.socket(family, socket.SOCK_STREAM)
		sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
		try:
			sock.bind((config.host, config.port))
		except OSError:
			sock.close()
			raise
		# The argument is the backlog of connections that will be accepted before
		# they are refused.
		sock.listen(config.backlog)
		sock.setblocking(False)
		return sock

	async def housekeeping(self) -> None:
		while True:
			await asyncio.sleep(HOUSEKEEPING_INTERVAL)
			sink().flush()
			if self.dispatcher.proxy:
				self.dispatcher.proxy.pool.clean()

	async def serve(self, sock: socket.socket | None = None) -> None:
		"""Main server coroutine, serving until `stop()` is called or a stop
		signal is received."""
		loop = asyncio.get_running_loop()
		self._loop = loop
		self._stopping = asyncio.Event()
		owned: bool = sock is None
		listening: socket.socket = self.Bind(self.config) if sock is None else sock
		server = await asyncio.start_server(
			self.onConnection,
			sock=listening,
			ssl=self.config.sslContext(),
			limit=READ_SIZE,
		)
		self.port = listening.getsockname()[1]
		# Signal handlers can only be set from the main thread
		signals: bool = threading.current_thread() is threading.main_thread()
		if signals:
			loop.add_signal_handler(SIGINT, self.stop)
			loop.add_signal_handler(SIGTERM, self.stop)
		loop.set_exception_handler(onLoopException)
		info(
			"Vitrine server listening",
			icon="🚀",
			Host=self.config.host,
			Port=self.port,
			Root=self.config.root,
			TLS=self.config.tls,
		)
		flusher = loop.create_task(self.housekeeping())
		self.ready.set()
		try:
			await self._stopping.wait()
		finally:
			info("Server stopping…", Connections=len(self.connections))
			server.close()
			for task in list(self.connections):
				task.cancel()
			await asyncio.gather(*self.connections, return_exceptions=True)
			await server.wait_closed()
			flusher.cancel()
			await asyncio.gather(flusher, return_exceptions=True)
			self.dispatcher.close()
			if signals:
				loop.remove_signal_handler(SIGINT)
				loop.remove_signal_handler(SIGTERM)
			if owned:
				listening.close()
			self.ready.clear()
			sink().flush()

	def stop(self) -> None:
		"""Stops the server, from any thread."""
		loop, stopping = self._loop, self._stopping
		if not (loop and stopping) or loop.is_closed():
			return
		try:
			running = asyncio.get_running_loop()
		except RuntimeError:
			running = None
		if running is loop:
			stopping.set()
		else:
			loop.call_soon_threadsafe(stopping.set)


def configureLogging(config: ServerConfig) -> None:
	"""Quiet servers only log warnings and errors."""
	if config.quiet:
		setSink(StreamSink(level=LogLevel.Warning))


def serveWorker(config: ServerConfig, sock: socket.socket, index: int = 0) -> None:
	"""Entry point of worker processes, serving on the inherited socket."""
	LogOrigin.set(f"worker-{index}")
	try:
		asyncio.run(Server(config).serve(sock))
	except KeyboardInterrupt:
		pass
	finally:
		sink().flush()


def run(config: ServerConfig) -> None:
	"""High level function to run the server, forking workers when more
	than one is configured."""
	configureLogging(config)
	unlimit(LimitType.Files)
	if config.workers > 1:
		# Imported here as the supervisor depends on this module
		from .workers import Supervisor

		Supervisor(config, serveWorker).run()
	else:
		try:
			asyncio.run(Server(config).serve())
		except KeyboardInterrupt:
			event("ManualShutdown")
	event("EOK")
	sink().flush()


# EOF
