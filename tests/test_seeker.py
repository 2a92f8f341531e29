import io

import pytest

from lazyserve.content.seeker import LazySeeker
from lazyserve.model import (
	BytesSource,
	ChunkedSource,
	ContentError,
	InvalidOffset,
	SeekError,
)

DATA: bytes = bytes(range(256)) * 40


def chunked(data: bytes, size: int = 1000, declared: int | None = None) -> ChunkedSource:
	return ChunkedSource(
		lambda: (data[i : i + size] for i in range(0, len(data), size)),
		len(data) if declared is None else declared,
	)


def test_read_everything() -> None:
	seeker = LazySeeker(chunked(DATA), len(DATA), chunkSize=777)
	assert seeker.read() == DATA
	assert seeker.tell() == len(DATA)
	assert seeker.read(10) == b""
	assert seeker.opens == 1


@pytest.mark.parametrize(
	"start,offset,whence,expected",
	[
		(0, 100, io.SEEK_SET, 100),
		(0, 0, io.SEEK_SET, 0),
		(500, 100, io.SEEK_CUR, 600),
		(500, -100, io.SEEK_CUR, 400),
		(0, 0, io.SEEK_END, len(DATA)),
		(0, -10, io.SEEK_END, len(DATA) - 10),
		(9000, -9000, io.SEEK_CUR, 0),
	],
)
def test_seek_then_read(start: int, offset: int, whence: int, expected: int) -> None:
	seeker = LazySeeker(chunked(DATA), len(DATA))
	seeker.seek(start)
	assert seeker.seek(offset, whence) == expected
	assert seeker.read(50) == DATA[expected : expected + 50]


def test_seek_does_not_open() -> None:
	seeker = LazySeeker(chunked(DATA), len(DATA))
	seeker.seek(0, io.SEEK_END)
	seeker.seek(100)
	assert seeker.opens == 0


def test_forward_seek_discards() -> None:
	seeker = LazySeeker(chunked(DATA), len(DATA))
	assert seeker.read(10) == DATA[:10]
	seeker.seek(5000)
	assert seeker.read(10) == DATA[5000:5010]
	assert seeker.opens == 1
	assert seeker.discarded == 4990


def test_backward_seek_reopens() -> None:
	seeker = LazySeeker(chunked(DATA), len(DATA))
	seeker.seek(5000)
	assert seeker.read(10) == DATA[5000:5010]
	seeker.seek(100)
	assert seeker.read(10) == DATA[100:110]
	assert seeker.opens == 2
	assert seeker.reopens == 1
	assert seeker.discarded == 5100


def test_reads_are_bounded_by_chunks() -> None:
	seeker = LazySeeker(chunked(DATA), len(DATA))
	# Like any raw stream, a read may return less than asked
	data = seeker.read(5000)
	assert data == DATA[: len(data)]
	assert 0 < len(data) <= 5000


def test_invalid_offsets() -> None:
	seeker = LazySeeker(BytesSource(DATA), len(DATA))
	with pytest.raises(InvalidOffset):
		seeker.seek(-1)
	with pytest.raises(InvalidOffset):
		seeker.seek(1, io.SEEK_END)
	# Invalid offsets are value errors as well
	with pytest.raises(ValueError):
		seeker.seek(len(DATA) + 1)
	with pytest.raises(SeekError):
		seeker.seek(0, 7)
	assert seeker.tell() == 0


def test_truncated_source() -> None:
	seeker = LazySeeker(chunked(b"abc", declared=10), 10)
	with pytest.raises(ContentError):
		seeker.read()


def test_truncated_source_skipping() -> None:
	seeker = LazySeeker(chunked(b"abc", declared=10), 10)
	seeker.seek(5)
	with pytest.raises(ContentError):
		seeker.read(1)


def test_readinto() -> None:
	seeker = LazySeeker(BytesSource(DATA), len(DATA))
	seeker.seek(300)
	buffer = bytearray(16)
	assert seeker.readinto(buffer) == 16
	assert bytes(buffer) == DATA[300:316]


def test_close_releases_reader() -> None:
	closed: list[bool] = []

	def chunks():
		try:
			yield DATA
		finally:
			closed.append(True)

	seeker = LazySeeker(ChunkedSource(chunks, len(DATA)), len(DATA))
	seeker.read(10)
	seeker.close()
	assert closed == [True]
	assert seeker.closed
	with pytest.raises(ValueError):
		seeker.read(1)


# EOF
