"""
Tests for the supervision of forked workers.
"""

import os
import signal
import time
from typing import Callable, Iterator

import pytest
from conftest import fetch

from vitrine.config import ServerConfig
from vitrine.workers import Supervisor, WorkerExit


def pollUntil(
	supervisor: Supervisor, predicate: Callable[[], bool], timeout: float = 10.0
) -> bool:
	deadline = time.monotonic() + timeout
	while not predicate():
		if time.monotonic() > deadline:
			return False
		supervisor.poll(0.1)
	return True


@pytest.fixture
def supervise(
	makeConfig: Callable[..., ServerConfig],
) -> Iterator[Callable[..., Supervisor]]:
	supervisors: list[Supervisor] = []

	def create(*, minUptime: float = 1.0, **options: object) -> Supervisor:
		options.setdefault("workers", 2)
		supervisor = Supervisor(makeConfig(**options), grace=2.0, minUptime=minUptime)
		supervisors.append(supervisor)
		return supervisor

	yield create
	for supervisor in supervisors:
		supervisor.stop()


class TestSupervisor:
	def test_workers_serve(self, supervise: Callable[..., Supervisor]) -> None:
		supervisor = supervise().start()
		assert supervisor.port
		assert len(supervisor.workers) == 2
		for _ in range(4):
			res = fetch(supervisor.port, "/hello.txt")
			assert res.status == 200
			assert res.body == b"Hello, world!\n"

	def test_respawn(self, supervise: Callable[..., Supervisor]) -> None:
		"""A killed worker is replaced, and the others keep serving."""
		supervisor = supervise()
		exits: list[WorkerExit] = []
		supervisor.on("exit", exits.append)
		supervisor.start()
		victim = supervisor.workers[0]
		sibling = supervisor.workers[1]
		assert victim.pid is not None
		os.kill(victim.pid, signal.SIGKILL)
		assert pollUntil(supervisor, lambda: bool(exits))
		assert exits[0].index == 0
		assert exits[0].pid == victim.pid
		assert exits[0].exitcode == -signal.SIGKILL
		assert supervisor.workers[0].pid != victim.pid
		assert supervisor.workers[1] is sibling
		assert fetch(supervisor.port, "/hello.txt").status == 200  # type: ignore[arg-type]

	def test_delayed_respawn(self, supervise: Callable[..., Supervisor]) -> None:
		"""With a backoff, workers that die young are restarted later."""
		supervisor = supervise(restartBackoff=0.2, minUptime=60.0).start()
		victim = supervisor.workers[1]
		assert victim.pid is not None
		os.kill(victim.pid, signal.SIGKILL)
		assert pollUntil(supervisor, lambda: 1 not in supervisor.workers)
		assert 1 in supervisor.pending
		assert pollUntil(supervisor, lambda: 1 in supervisor.workers)
		assert supervisor.workers[1].pid != victim.pid
		assert not supervisor.pending

	def test_stop(self, supervise: Callable[..., Supervisor]) -> None:
		supervisor = supervise().start()
		handles = list(supervisor.workers.values())
		exits = supervisor.stop()
		assert len(exits) == 2
		assert all(not _.isAlive for _ in handles)
		# Stopped workers are not replaced
		assert supervisor.workers == {}
		assert supervisor.socket is None
		assert not supervisor.isRunning

	def test_workers_have_their_own_process_group(
		self, supervise: Callable[..., Supervisor]
	) -> None:
		"""Signals sent to the supervisor's group don't reach the workers."""
		supervisor = supervise().start()
		pids = [_.pid for _ in supervisor.workers.values()]
		assert all(pids)

		def separated() -> bool:
			return all(os.getpgid(_) == _ for _ in pids)  # type: ignore[arg-type]

		assert pollUntil(supervisor, separated)
		assert os.getpgrp() not in {os.getpgid(_) for _ in pids}  # type: ignore[arg-type]

	def test_events(self, supervise: Callable[..., Supervisor]) -> None:
		supervisor = supervise()
		seen: list[object] = []
		supervisor.on("custom", seen.append)
		supervisor.emit("custom", 1)
		supervisor.off("custom", seen.append)
		supervisor.emit("custom", 2)
		assert seen == [1]

	def test_failing_handler(self, supervise: Callable[..., Supervisor]) -> None:
		"""A failing handler does not prevent the others from running."""
		supervisor = supervise()
		seen: list[object] = []

		def fail(value: object) -> None:
			raise RuntimeError("handler failed")

		supervisor.on("custom", fail).on("custom", seen.append)
		supervisor.emit("custom", 1)
		assert seen == [1]


class TestRestartDelay:
	def test_immediate_by_default(self, supervise: Callable[..., Supervisor]) -> None:
		supervisor = supervise()
		assert supervisor.restartDelay(WorkerExit(0, 1, 1, 0.01)) == 0.0

	def test_backoff(self, makeConfig: Callable[..., ServerConfig]) -> None:
		supervisor = Supervisor(
			makeConfig(workers=2, restartBackoff=0.5), minUptime=1.0, maxBackoff=2.0
		)
		crash = WorkerExit(0, 1, 1, 0.01)
		assert [supervisor.restartDelay(crash) for _ in range(4)] == [0.5, 1.0, 2.0, 2.0]
		# Other workers have their own backoff
		assert supervisor.restartDelay(WorkerExit(1, 2, 1, 0.01)) == 0.5
		# A worker that lived long enough resets it
		assert supervisor.restartDelay(WorkerExit(0, 3, 0, 5.0)) == 0.0
		assert supervisor.restartDelay(crash) == 0.5


# EOF
