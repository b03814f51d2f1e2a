from typing import NamedTuple
from enum import Enum
import resource


class LimitType(Enum):
	Files = resource.RLIMIT_NOFILE
	Processes = resource.RLIMIT_NPROC


REASONABLE_LIMITS: dict[LimitType, int] = {
	# Each connection holds a socket, and possibly a file and an upstream
	# socket.
	LimitType.Files: 10 * 10240,
	LimitType.Processes: 4096,
}


class Limit(NamedTuple):
	type: LimitType
	soft: int
	hard: int


def limit(scope: LimitType) -> Limit:
	return Limit(scope, *resource.getrlimit(scope.value))


def unlimit(scope: LimitType, *, maximum: int | None = 0) -> int | bool:
	"""Raises the soft limit for `scope` up to the hard limit, capped to a
	reasonable maximum. Returns the new limit, or `False` when it can't be
	changed."""
	lm = limit(scope)
	if lm.soft == resource.RLIM_INFINITY:
		return lm.soft
	# Darwin reports huge (or infinite) hard limits that overflow when set.
	cap = REASONABLE_LIMITS.get(scope) if maximum == 0 else maximum
	target = lm.hard if lm.hard != resource.RLIM_INFINITY else (cap or lm.soft)
	if cap:
		target = min(cap, target)
	if target <= lm.soft:
		return lm.soft
	try:
		resource.setrlimit(scope.value, (target, lm.hard))
		return target
	except (ValueError, OSError):
		return False


# EOF
