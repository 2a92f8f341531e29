import os
from abc import ABC, abstractmethod
from io import BytesIO
from pathlib import Path
from typing import Callable, ClassVar, Iterable, Iterator, NamedTuple, Protocol

from .config import IMMUTABLE_NAMESPACES

# -----------------------------------------------------------------------------
#
# ERRORS
#
# -----------------------------------------------------------------------------


class ContentError(IOError):
	"""Base class for everything that can go wrong while reading content.
	All of these are fatal for the request they occur in."""


class UnknownSize(ContentError):
	"""The content source can't tell how many bytes it holds."""


class DetectionError(ContentError):
	"""The content could not be read while sniffing its type."""


class RewindError(ContentError):
	"""The content could not be rewound after sniffing its type."""


class SeekError(ContentError, ValueError):
	"""A seek could not be satisfied."""


class InvalidOffset(SeekError):
	"""A seek targets a position outside of `[0, size]`."""


class RangeError(ContentError, ValueError):
	"""A `Range` header is malformed or can't be satisfied."""

	def __init__(self, message: str, *, overlaps: bool = True):
		super().__init__(message)
		# When False, none of the ranges overlap the content.
		self.overlaps: bool = overlaps


# -----------------------------------------------------------------------------
#
# DATA MODEL
#
# -----------------------------------------------------------------------------


class ContentPath(NamedTuple):
	"""The logical path under which some content was requested, like
	`/ipfs/<id>/image.png`. Only used for naming, labels and caching policy."""

	value: str

	@property
	def segments(self) -> list[str]:
		return [_ for _ in self.value.split("/") if _]

	@property
	def namespace(self) -> str:
		segments = self.segments
		return segments[0] if segments else ""

	@property
	def name(self) -> str:
		segments = self.segments
		return segments[-1] if segments else ""

	@property
	def mutable(self) -> bool:
		return self.namespace not in IMMUTABLE_NAMESPACES

	def __str__(self) -> str:
		return self.value


class ContentDescriptor(NamedTuple):
	"""What is known about the content served by a request, computed once."""

	name: str
	size: int
	contentType: str
	modTime: float | None = None


class ResponseOutcome(NamedTuple):
	"""Tells what a response ended up being. `bytesTransmitted` is only
	true when at least one body byte was written."""

	status: int
	bytesTransmitted: bool


# -----------------------------------------------------------------------------
#
# SOURCES
#
# -----------------------------------------------------------------------------


class SequentialReader(Protocol):
	"""A forward-only reader, as returned by `ContentSource.open()`."""

	def read(self, size: int = -1) -> bytes: ...

	def close(self) -> None: ...


class ContentSource(ABC):
	"""A sized source of bytes that can only be read sequentially. Each
	call to `open()` returns a fresh reader starting at offset 0, which
	is the only way to go back."""

	isSymlink: ClassVar[bool] = False

	@abstractmethod
	def size(self) -> int:
		"""Returns the total size in bytes, raises `UnknownSize` otherwise."""

	@abstractmethod
	def open(self) -> SequentialReader:
		"""Returns a new reader positioned at the start of the content."""

	def close(self) -> None:
		pass


class BytesSource(ContentSource):
	"""Content that is already in memory."""

	def __init__(self, data: bytes):
		self.data: bytes = data

	def size(self) -> int:
		return len(self.data)

	def open(self) -> SequentialReader:
		return BytesIO(self.data)


class FileSource(ContentSource):
	"""A local file."""

	def __init__(self, path: Path | str):
		self.path: Path = path if isinstance(path, Path) else Path(path)

	def size(self) -> int:
		try:
			return self.path.stat().st_size
		except OSError as e:
			raise UnknownSize(f"Can't stat file: {self.path.name}") from e

	@property
	def modTime(self) -> float | None:
		try:
			return self.path.stat().st_mtime
		except OSError:
			return None

	def open(self) -> SequentialReader:
		try:
			return open(self.path, "rb")
		except OSError as e:
			raise ContentError(f"Can't open file: {self.path.name}") from e


class SymlinkSource(ContentSource):
	"""A symbolic link, whose content is the path it points to. The
	target itself is never followed."""

	isSymlink: ClassVar[bool] = True

	def __init__(self, target: str):
		self.target: str = target
		self.data: bytes = os.fsencode(target)

	def size(self) -> int:
		return len(self.data)

	def open(self) -> SequentialReader:
		return BytesIO(self.data)


class ChunkReader:
	"""Turns an iterator of chunks into a `SequentialReader`."""

	__slots__ = ["chunks", "buffer", "closed", "onClose"]

	def __init__(
		self,
		chunks: Iterable[bytes],
		onClose: Callable[[], None] | None = None,
	):
		self.chunks: Iterator[bytes] | None = iter(chunks)
		self.buffer: bytearray = bytearray()
		self.closed: bool = False
		self.onClose: Callable[[], None] | None = onClose

	def _fill(self) -> bool:
		"""Buffers the next non-empty chunk, returns False at the end."""
		while self.chunks is not None:
			try:
				chunk = next(self.chunks)
			except StopIteration:
				self.chunks = None
				return False
			if chunk:
				self.buffer += chunk
				return True
		return False

	def read(self, size: int = -1) -> bytes:
		if self.closed:
			raise ValueError("Read from a closed reader")
		if size < 0:
			while self._fill():
				pass
			res = bytes(self.buffer)
			self.buffer.clear()
			return res
		if not self.buffer:
			self._fill()
		res = bytes(self.buffer[:size])
		del self.buffer[:size]
		return res

	def close(self) -> None:
		if self.closed:
			return
		self.closed = True
		self.buffer.clear()
		chunks, self.chunks = self.chunks, None
		# Generators get a chance to release what they hold
		if chunks is not None and hasattr(chunks, "close"):
			chunks.close()
		if self.onClose:
			self.onClose()


class ChunkedSource(ContentSource):
	"""Content produced as a sequence of chunks (typically blocks from a
	block store), where `chunks()` can be called again to restart from
	the beginning."""

	def __init__(
		self,
		chunks: Callable[[], Iterable[bytes]],
		size: int | None = None,
	):
		self.chunks: Callable[[], Iterable[bytes]] = chunks
		self._size: int | None = size

	def size(self) -> int:
		if self._size is None:
			raise UnknownSize("Chunked content has no declared size")
		return self._size

	def open(self) -> SequentialReader:
		return ChunkReader(self.chunks())


# EOF
