import io
from typing import Any

from ..config import CHUNK_SIZE
from ..model import ContentError, ContentSource, InvalidOffset, SeekError, SequentialReader
from ..utils.logging import debug, logged

# --
# == Lazy Seeker
#
# Content sources can only be read forward, from the start. The lazy seeker
# presents them as a regular seekable stream: seeking only moves a logical
# cursor, and the underlying reader is realigned on the next read, either by
# skipping bytes (forward) or by re-opening the source and skipping from the
# start (backward). Requests that never read the body (HEAD, 304, 416) never
# touch the source at all.


class LazySeeker(io.RawIOBase):
	"""A seekable, read-only stream over a forward-only `ContentSource` of
	known size."""

	def __init__(
		self, source: ContentSource, size: int, *, chunkSize: int = CHUNK_SIZE
	):
		super().__init__()
		if size < 0:
			raise ValueError(f"Content size can't be negative: {size}")
		self.source: ContentSource = source
		self.chunkSize: int = chunkSize
		# Logical position, as seen by the callers
		self.offset: int = 0
		# Position of the underlying reader
		self.realOffset: int = 0
		self.reader: SequentialReader | None = None
		self.opens: int = 0
		self.discarded: int = 0
		self._size: int = size

	@property
	def size(self) -> int:
		return self._size

	@property
	def reopens(self) -> int:
		"""How many times the source had to be opened again to go back."""
		return max(0, self.opens - 1)

	def readable(self) -> bool:
		return True

	def seekable(self) -> bool:
		return True

	def tell(self) -> int:
		return self.offset

	def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
		if self.closed:
			raise ValueError("Seek on a closed stream")
		match whence:
			case io.SEEK_SET:
				target = offset
			case io.SEEK_CUR:
				target = self.offset + offset
			case io.SEEK_END:
				target = self._size + offset
			case _:
				raise SeekError(f"Invalid whence: {whence}")
		if target < 0 or target > self._size:
			raise InvalidOffset(
				f"Invalid seek offset {target}, content has {self._size} bytes"
			)
		self.offset = target
		return target

	def read(self, size: int | None = -1) -> bytes:
		if self.closed:
			raise ValueError("Read from a closed stream")
		if size is None or size < 0:
			return self.readall()
		remaining: int = self._size - self.offset
		if remaining <= 0 or size == 0:
			return b""
		reader = self._realign()
		try:
			data = reader.read(min(size, remaining))
		except ContentError:
			raise
		except OSError as e:
			raise ContentError(f"Content read failed at offset {self.offset}: {e}") from e
		if not data:
			raise ContentError(
				f"Content ended at offset {self.realOffset}, expected {self._size} bytes"
			)
		n = len(data)
		self.realOffset += n
		self.offset += n
		return data

	def readall(self) -> bytes:
		res = bytearray()
		while chunk := self.read(self.chunkSize):
			res += chunk
		return bytes(res)

	def readinto(self, buffer: Any) -> int:
		view = memoryview(buffer).cast("B")
		data = self.read(len(view))
		n = len(data)
		view[:n] = data
		return n

	def close(self) -> None:
		# May be called by the finalizer of a partially initialized instance
		reader = getattr(self, "reader", None)
		if reader is not None:
			self.reader = None
			reader.close()
		super().close()

	def _realign(self) -> SequentialReader:
		"""Makes sure the underlying reader is at the logical offset."""
		if self.reader is not None and self.offset < self.realOffset:
			logged(debug) and debug(
				"Re-opening content to seek backward",
				Offset=self.offset,
				Position=self.realOffset,
			)
			self.reader.close()
			self.reader = None
		if self.reader is None:
			try:
				self.reader = self.source.open()
			except ContentError:
				raise
			except OSError as e:
				raise ContentError(f"Content could not be opened: {e}") from e
			self.opens += 1
			self.realOffset = 0
		while self.realOffset < self.offset:
			try:
				chunk = self.reader.read(
					min(self.chunkSize, self.offset - self.realOffset)
				)
			except ContentError:
				raise
			except OSError as e:
				raise ContentError(
					f"Content read failed while skipping to offset {self.offset}: {e}"
				) from e
			if not chunk:
				raise ContentError(
					f"Content ended at offset {self.realOffset} while skipping to {self.offset}"
				)
			self.realOffset += len(chunk)
			self.discarded += len(chunk)
		return self.reader


# EOF
