import resource
from enum import Enum
from typing import NamedTuple


class LimitType(Enum):
	Files = resource.RLIMIT_NOFILE


# Each connection and each open content source holds a descriptor
REASONABLE_LIMITS: dict[LimitType, int] = {
	LimitType.Files: 10 * 10240,
}


class Limit(NamedTuple):
	type: LimitType
	soft: int
	hard: int


def limit(scope: LimitType) -> Limit:
	return Limit(scope, *resource.getrlimit(scope.value))


def unlimit(
	scope: LimitType, ratio: float = 1.0, *, maximum: int | None = 0
) -> int | bool:
	"""Raises the soft limit towards the hard limit, returning the new
	limit or `False` when it could not be changed."""
	lm = limit(scope)
	hard = lm.hard if lm.hard != resource.RLIM_INFINITY else None
	maximum = REASONABLE_LIMITS.get(scope) if maximum == 0 else maximum
	try:
		target = (
			int(lm.soft + ratio * (hard - lm.soft)) if hard is not None else maximum or lm.soft
		)
		# Some systems have really high limits that lead to OverflowErrors
		if maximum:
			target = min(maximum, target)
		if lm.soft == resource.RLIM_INFINITY or target <= lm.soft:
			# Never lowers the current limit
			return lm.soft
		resource.setrlimit(scope.value, (target, lm.hard))
		return target
	except (ValueError, OSError):
		return False


# EOF
