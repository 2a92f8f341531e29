import io

import pytest

from lazyserve.utils import logging
from lazyserve.utils.logging import (
	LogLevel,
	LogSpan,
	LogType,
	debug,
	error,
	exception,
	formatEntry,
	logged,
	metric,
	setLevel,
)


@pytest.fixture
def stream(monkeypatch: pytest.MonkeyPatch) -> io.StringIO:
	output = io.StringIO()
	monkeypatch.setattr(logging, "ERR", output)
	monkeypatch.setattr(logging, "LOG_LEVEL", LogLevel.Info)
	return output


def test_levels(stream: io.StringIO) -> None:
	assert not logged(debug)
	assert debug("Hidden") is None
	assert logged(error)
	previous = setLevel(LogLevel.Debug)
	assert previous is LogLevel.Info
	assert logged(debug)
	entry = debug("Shown", Path="/ipfs/Qm")
	assert entry is not None and entry.level is LogLevel.Debug
	assert "Shown" in stream.getvalue()
	assert "Hidden" not in stream.getvalue()


def test_entries_carry_the_span(stream: io.StringIO) -> None:
	token = LogSpan.set(7)
	try:
		entry = error("Content has no known size", 502, Path="/ipfs/Qm")
	finally:
		LogSpan.reset(token)
	assert entry.span == 7
	assert entry.value == 502
	line = formatEntry(entry)
	assert "[lazyserve@7]" in line
	assert "Content has no known size (502)" in line
	assert stream.getvalue().count("\n") == 1


def test_metric(stream: io.StringIO) -> None:
	assert metric("latency", 0.5) is None
	setLevel(LogLevel.Debug)
	entry = metric("latency", 0.5, Namespace="ipfs")
	assert entry is not None and entry.type is LogType.Metric
	assert "latency" in stream.getvalue()


def test_exception(stream: io.StringIO) -> None:
	try:
		raise ValueError("broken")
	except ValueError as e:
		assert exception(e, "Handler failed") is e
	lines = stream.getvalue().splitlines()
	assert lines[0] == "!!! EXCP Handler failed: [ValueError] broken"
	assert lines[1].startswith("... in test_exception")


# EOF
