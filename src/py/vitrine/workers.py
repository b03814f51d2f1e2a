import multiprocessing
import os
import signal
import socket
import threading
import time
from dataclasses import dataclass
from multiprocessing.connection import wait
from multiprocessing.process import BaseProcess
from typing import Any, Callable, NamedTuple

from .config import ServerConfig
from .server import Server, serveWorker
from .utils.logging import debug, exception, info, logged, sink, warning

TWorkerTarget = Callable[[ServerConfig, socket.socket, int], None]

# Seconds given to workers to stop before they're killed
STOP_GRACE: float = 5.0
# Workers that lived less than this are considered crashing
MIN_UPTIME: float = 1.0
MAX_BACKOFF: float = 30.0


def runWorker(
	target: TWorkerTarget, config: ServerConfig, sock: socket.socket, index: int
) -> None:
	# Workers get their own process group, so that a terminal Ctrl-C only
	# reaches the supervisor, which then stops them.
	os.setpgrp()
	target(config, sock, index)


class WorkerExit(NamedTuple):
	"""Describes the termination of a worker."""

	index: int
	pid: int | None
	exitcode: int | None
	uptime: float


@dataclass
class WorkerHandle:
	index: int
	process: BaseProcess
	started: float

	@property
	def pid(self) -> int | None:
		return self.process.pid

	@property
	def isAlive(self) -> bool:
		return self.process.is_alive()


class Supervisor:
	"""Forks workers that serve on a socket bound once by the supervisor,
	and replaces the ones that exit. Worker exits are published as `exit`
	events, to which `respawn` is subscribed."""

	def __init__(
		self,
		config: ServerConfig,
		target: TWorkerTarget | None = None,
		*,
		sock: socket.socket | None = None,
		grace: float = STOP_GRACE,
		minUptime: float = MIN_UPTIME,
		maxBackoff: float = MAX_BACKOFF,
	):
		self.config: ServerConfig = config
		self.target: TWorkerTarget = target or serveWorker
		self.count: int = max(1, config.workers)
		self.context = multiprocessing.get_context("fork")
		self.socket: socket.socket | None = sock
		self.ownsSocket: bool = sock is None
		self.grace: float = grace
		self.minUptime: float = minUptime
		self.maxBackoff: float = maxBackoff
		self.workers: dict[int, WorkerHandle] = {}
		self.handlers: dict[str, list[Callable[[Any], None]]] = {}
		# Restarts that are delayed, by worker index
		self.pending: dict[int, float] = {}
		self.backoff: dict[int, float] = {}
		self.isRunning: bool = False
		self.on("exit", self.respawn)

	@property
	def port(self) -> int | None:
		return self.socket.getsockname()[1] if self.socket else None

	# =========================================================================
	# EVENTS
	# =========================================================================

	def on(self, name: str, callback: Callable[[Any], None]) -> "Supervisor":
		self.handlers.setdefault(name, []).append(callback)
		return self

	def off(self, name: str, callback: Callable[[Any], None]) -> "Supervisor":
		handlers = self.handlers.get(name)
		if handlers and callback in handlers:
			handlers.remove(callback)
		return self

	def emit(self, name: str, value: Any) -> None:
		for callback in list(self.handlers.get(name) or ()):
			try:
				callback(value)
			except Exception as e:
				exception(e, f"Supervisor '{name}' handler failed")

	# =========================================================================
	# WORKERS
	# =========================================================================

	def spawn(self, index: int) -> WorkerHandle:
		if self.socket is None:
			raise RuntimeError("Supervisor is not started, no socket to share")
		# Buffered entries would otherwise be written by the child as well
		sink().flush()
		process = self.context.Process(
			target=runWorker,
			args=(self.target, self.config, self.socket, index),
			name=f"vitrine-worker-{index}",
		)
		process.start()
		handle = WorkerHandle(index, process, time.monotonic())
		self.workers[index] = handle
		info("Worker started", Worker=index, PID=process.pid)
		return handle

	def restartDelay(self, exit: WorkerExit) -> float:
		"""Returns how long to wait before restarting the worker. Restarts are
		immediate unless a backoff is configured, in which case workers that
		crash right after starting are restarted with a doubling delay."""
		base = self.config.restartBackoff
		if base <= 0 or exit.uptime >= self.minUptime:
			self.backoff.pop(exit.index, None)
			return 0.0
		previous = self.backoff.get(exit.index)
		delay = min(self.maxBackoff, previous * 2 if previous else base)
		self.backoff[exit.index] = delay
		return delay

	def respawn(self, exit: WorkerExit) -> None:
		if not self.isRunning:
			return
		delay = self.restartDelay(exit)
		if delay > 0:
			warning("Worker restart delayed", Worker=exit.index, Delay=delay)
			self.pending[exit.index] = time.monotonic() + delay
		else:
			self.spawn(exit.index)

	def start(self) -> "Supervisor":
		if self.socket is None:
			self.socket = Server.Bind(self.config)
		self.isRunning = True
		info(
			"Vitrine supervisor starting",
			icon="🚀",
			Workers=self.count,
			Host=self.config.host,
			Port=self.port,
		)
		for index in range(self.count):
			self.spawn(index)
		return self

	def reap(self, handle: WorkerHandle) -> WorkerExit:
		handle.process.join()
		self.workers.pop(handle.index, None)
		return WorkerExit(
			handle.index,
			handle.pid,
			handle.process.exitcode,
			time.monotonic() - handle.started,
		)

	def poll(self, timeout: float = 1.0) -> list[WorkerExit]:
		"""Waits at most `timeout` for workers to exit, emitting an `exit`
		event for each, and runs the delayed restarts that are due."""
		if self.pending:
			timeout = max(0.0, min(timeout, min(self.pending.values()) - time.monotonic()))
		sentinels = {_.process.sentinel: _ for _ in self.workers.values()}
		if sentinels:
			ready = wait(list(sentinels), timeout=timeout)
		else:
			time.sleep(timeout)
			ready = []
		exits: list[WorkerExit] = []
		for sentinel in ready:
			exit = self.reap(sentinels[sentinel])  # type: ignore[index]
			if self.isRunning:
				warning(
					"Worker exited",
					Worker=exit.index,
					PID=exit.pid,
					ExitCode=exit.exitcode,
					Uptime=round(exit.uptime, 3),
				)
			exits.append(exit)
			self.emit("exit", exit)
		now = time.monotonic()
		for index, due in list(self.pending.items()):
			if due <= now:
				del self.pending[index]
				if self.isRunning:
					self.spawn(index)
		return exits

	def run(self) -> None:
		"""Starts the workers and supervises them until a stop signal is
		received."""
		previous: dict[int, Any] = {}
		if threading.current_thread() is threading.main_thread():
			for sig in (signal.SIGINT, signal.SIGTERM):
				previous[sig] = signal.signal(sig, self.onSignal)
		try:
			self.start()
			while self.isRunning:
				self.poll()
		finally:
			self.stop()
			for sig, handler in previous.items():
				signal.signal(sig, handler)

	def onSignal(self, signum: int, frame: Any) -> None:
		logged(debug) and debug("Supervisor received signal", Signal=signum)
		self.isRunning = False

	def stop(self, grace: float | None = None) -> list[WorkerExit]:
		"""Stops all workers: they're sent `SIGTERM`, and killed if they did
		not exit within the grace period. Workers are not respawned."""
		self.isRunning = False
		self.off("exit", self.respawn)
		self.pending.clear()
		handles = list(self.workers.values())
		for handle in handles:
			if handle.isAlive:
				handle.process.terminate()
		deadline = time.monotonic() + (self.grace if grace is None else grace)
		for handle in handles:
			handle.process.join(max(0.0, deadline - time.monotonic()))
			if handle.isAlive:
				warning("Worker did not stop, killing it", Worker=handle.index)
				handle.process.kill()
		exits = [self.reap(_) for _ in handles]
		for exit in exits:
			self.emit("exit", exit)
		if self.socket and self.ownsSocket:
			self.socket.close()
			self.socket = None
		if exits:
			info("Vitrine supervisor stopped", Workers=len(exits))
		sink().flush()
		return exits


# EOF
