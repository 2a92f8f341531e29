import pytest

from lazyserve.telemetry import LatencyHistogram, Tracer
from lazyserve.utils.logging import LogSpan


def test_histogram() -> None:
	histogram = LatencyHistogram(buckets=(1.0, 0.1))
	histogram.observe("ipfs", 0.05)
	histogram.observe("ipfs", 0.5)
	histogram.observe("ipfs", 5.0)
	histogram.observe("ipns", 0.1)
	assert histogram.labels == ["ipfs", "ipns"]
	assert histogram.count("ipfs") == 3
	assert histogram.sum("ipfs") == pytest.approx(5.55)
	assert histogram.cumulative("ipfs") == [(0.1, 1), (1.0, 2), (float("inf"), 3)]
	# Bounds are inclusive
	assert histogram.cumulative("ipns") == [(0.1, 1), (1.0, 1), (float("inf"), 1)]


def test_histogram_unknown_label() -> None:
	histogram = LatencyHistogram(buckets=(1.0,))
	assert histogram.count("nope") == 0
	assert histogram.cumulative("nope") == [(1.0, 0), (float("inf"), 0)]


def test_span_sets_log_span() -> None:
	assert LogSpan.get() is None
	with Tracer().start("Gateway.ServeFile", path="/ipfs/Qm") as span:
		assert LogSpan.get() == span.id
		assert not span.isEnded
	assert span.isEnded
	assert span.duration is not None and span.duration >= 0
	assert LogSpan.get() is None


def test_span_ends_once() -> None:
	span = Tracer().start("Work")
	span.end()
	ended = span.ended
	span.end()
	assert span.ended == ended


def test_span_ids_are_unique() -> None:
	tracer = Tracer()
	a = tracer.start("a")
	b = tracer.start("b")
	assert a.id != b.id
	b.end()
	a.end()


# EOF
