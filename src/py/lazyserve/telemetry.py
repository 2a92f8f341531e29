import time
from bisect import bisect_left
from contextvars import Token
from itertools import count
from threading import Lock
from typing import Iterator

from .utils.logging import LogSpan, TPrimitive, debug, logged, metric

# --
# Telemetry is surfaced through the logging module: metrics are logged as
# `Metric` entries and spans as debug messages tagged with the span id, so
# that any log sink doubles as a metrics and tracing sink.

# -----------------------------------------------------------------------------
#
# METRICS
#
# -----------------------------------------------------------------------------

# Exponential buckets in seconds, from 50ms to ~1.7 minutes
LATENCY_BUCKETS: tuple[float, ...] = tuple(0.05 * 2**i for i in range(12))


class LatencyHistogram:
	"""A thread-safe histogram of durations, with one series per label."""

	def __init__(
		self,
		name: str = "gw_first_content_block_bytes_received_seconds",
		buckets: tuple[float, ...] = LATENCY_BUCKETS,
	):
		self.name: str = name
		self.buckets: tuple[float, ...] = tuple(sorted(buckets))
		self.lock: Lock = Lock()
		# Per label: per-bucket counts, the last one being `+Inf`
		self.counts: dict[str, list[int]] = {}
		self.sums: dict[str, float] = {}

	def observe(self, label: str, seconds: float) -> None:
		i = bisect_left(self.buckets, seconds)
		with self.lock:
			if label not in self.counts:
				self.counts[label] = [0] * (len(self.buckets) + 1)
				self.sums[label] = 0.0
			self.counts[label][i] += 1
			self.sums[label] += seconds
		metric(self.name, seconds, Namespace=label)

	def count(self, label: str) -> int:
		with self.lock:
			return sum(self.counts.get(label, ()))

	def sum(self, label: str) -> float:
		with self.lock:
			return self.sums.get(label, 0.0)

	def cumulative(self, label: str) -> list[tuple[float, int]]:
		"""Returns `(upper bound, count)` pairs, the way they are exported."""
		with self.lock:
			counts = list(self.counts.get(label, [0] * (len(self.buckets) + 1)))
		res: list[tuple[float, int]] = []
		total: int = 0
		for bound, n in zip(self.buckets + (float("inf"),), counts):
			total += n
			res.append((bound, total))
		return res

	@property
	def labels(self) -> list[str]:
		with self.lock:
			return list(self.counts)


# -----------------------------------------------------------------------------
#
# TRACING
#
# -----------------------------------------------------------------------------


class Span:
	"""A named, timed unit of work. Spans must be ended exactly once, which
	the context manager takes care of."""

	IDS: Iterator[int] = count(1)

	def __init__(self, name: str, attributes: dict[str, TPrimitive] | None = None):
		self.id: int = next(Span.IDS)
		self.name: str = name
		self.attributes: dict[str, TPrimitive] = dict(attributes or {})
		self.started: float = time.monotonic()
		self.ended: float | None = None
		self.token: Token[str | int | None] | None = LogSpan.set(self.id)

	@property
	def isEnded(self) -> bool:
		return self.ended is not None

	@property
	def duration(self) -> float | None:
		return None if self.ended is None else self.ended - self.started

	def setAttribute(self, name: str, value: TPrimitive) -> "Span":
		self.attributes[name] = value
		return self

	def end(self) -> None:
		if self.ended is not None:
			return
		self.ended = time.monotonic()
		logged(debug) and debug(
			f"Span {self.name} ended",
			Duration=self.duration,
			**self.attributes,
		)
		if self.token is not None:
			try:
				LogSpan.reset(self.token)
			except ValueError:
				# Ended from another context than the one that started it
				pass
			self.token = None

	def __enter__(self) -> "Span":
		return self

	def __exit__(self, *args) -> None:
		self.end()


class Tracer:
	def start(self, name: str, **attributes: TPrimitive) -> Span:
		return Span(name, attributes)


# EOF
