import io
import secrets
from email.utils import formatdate, parsedate_to_datetime
from enum import Enum
from typing import BinaryIO, Iterator, NamedTuple

from ..config import CHUNK_SIZE
from ..http.model import HTTPRequest, ResponseWriter
from ..model import ContentError, DetectionError, RangeError, ResponseOutcome, RewindError
from ..utils.logging import warning
from .types import resolveContentType

# -----------------------------------------------------------------------------
#
# CONDITIONS
#
# -----------------------------------------------------------------------------
# Preconditions are evaluated following RFC 7232 section 6. Validators are
# the `Etag` header already set on the response (by whoever computed it) and
# the modification time of the content.
#
# SEE: https://www.rfc-editor.org/rfc/rfc7232#section-6


class Condition(Enum):
	Unset = 0
	Met = 1
	Failed = 2


def isZeroTime(modTime: float | None) -> bool:
	return modTime is None or modTime <= 0


def formatHTTPDate(t: float) -> str:
	return formatdate(t, usegmt=True)


def parseHTTPDate(value: str) -> float | None:
	"""Parses any of the three HTTP date formats, returning a timestamp."""
	try:
		return parsedate_to_datetime(value).timestamp()
	except (TypeError, ValueError, IndexError):
		return None


def scanETag(s: str) -> tuple[str, str]:
	"""Scans an entity tag at the start of `s`, returning the tag (including
	quotes and weak prefix) and the remainder, or empty strings when `s`
	doesn't start with a valid tag."""
	s = s.lstrip(" \t")
	start: int = 2 if s.startswith("W/") else 0
	if len(s) - start < 2 or s[start] != '"':
		return "", ""
	for i in range(start + 1, len(s)):
		c = ord(s[i])
		if c == 0x21 or 0x23 <= c <= 0x7E or c >= 0x80:
			continue
		elif c == 0x22:
			return s[: i + 1], s[i + 1 :]
		else:
			return "", ""
	return "", ""


def etagStrongMatch(a: str, b: str | None) -> bool:
	return bool(b) and a == b and a[0] == '"'


def etagWeakMatch(a: str, b: str | None) -> bool:
	return b is not None and a.removeprefix("W/") == b.removeprefix("W/")


def iterETags(value: str) -> Iterator[str]:
	"""Iterates on the tags of a comma separated list, yielding `*` as-is."""
	while value:
		value = value.lstrip(" \t")
		if not value:
			break
		elif value[0] == ",":
			value = value[1:]
		elif value[0] == "*":
			yield "*"
			value = value[1:]
		else:
			etag, value = scanETag(value)
			if not etag:
				break
			yield etag


def checkIfMatch(writer: ResponseWriter, request: HTTPRequest) -> Condition:
	im = request.header("If-Match")
	if im is None:
		return Condition.Unset
	current = writer.header("Etag")
	for etag in iterETags(im):
		if etag == "*" or etagStrongMatch(etag, current):
			return Condition.Met
	return Condition.Failed


def checkIfUnmodifiedSince(request: HTTPRequest, modTime: float | None) -> Condition:
	ius = request.header("If-Unmodified-Since")
	if not ius or isZeroTime(modTime):
		return Condition.Unset
	t = parseHTTPDate(ius)
	if t is None:
		return Condition.Unset
	# HTTP dates have a one second resolution
	return Condition.Met if int(modTime or 0) <= t else Condition.Failed


def checkIfNoneMatch(writer: ResponseWriter, request: HTTPRequest) -> Condition:
	inm = request.header("If-None-Match")
	if inm is None:
		return Condition.Unset
	current = writer.header("Etag")
	for etag in iterETags(inm):
		if etag == "*" or etagWeakMatch(etag, current):
			return Condition.Failed
	return Condition.Met


def checkIfModifiedSince(request: HTTPRequest, modTime: float | None) -> Condition:
	if request.method not in ("GET", "HEAD"):
		return Condition.Unset
	ims = request.header("If-Modified-Since")
	if not ims or isZeroTime(modTime):
		return Condition.Unset
	t = parseHTTPDate(ims)
	if t is None:
		return Condition.Unset
	return Condition.Failed if int(modTime or 0) <= t else Condition.Met


def checkIfRange(
	writer: ResponseWriter, request: HTTPRequest, modTime: float | None
) -> Condition:
	if request.method not in ("GET", "HEAD"):
		return Condition.Unset
	ir = request.header("If-Range")
	if not ir:
		return Condition.Unset
	etag, _ = scanETag(ir)
	if etag:
		return (
			Condition.Met
			if etagStrongMatch(etag, writer.header("Etag"))
			else Condition.Failed
		)
	# The If-Range value is typically the ETag value, but it may also be
	# the modtime date.
	if isZeroTime(modTime):
		return Condition.Failed
	t = parseHTTPDate(ir)
	if t is None:
		return Condition.Failed
	return Condition.Met if int(t) == int(modTime or 0) else Condition.Failed


def writeNotModified(writer: ResponseWriter) -> None:
	# RFC 7232 section 4.1: a sender SHOULD NOT generate representation
	# metadata other than the validators.
	writer.setHeaders(
		{"Content-Type": None, "Content-Length": None, "Content-Encoding": None}
	)
	if writer.header("Etag"):
		writer.setHeader("Last-Modified", None)
	writer.writeHead(304)


def checkPreconditions(
	writer: ResponseWriter, request: HTTPRequest, modTime: float | None
) -> tuple[bool, str]:
	"""Evaluates the conditional headers, writing a 304/412 response when
	they say so. Returns whether a response was written and the range
	header that remains applicable."""
	ch = checkIfMatch(writer, request)
	if ch is Condition.Unset:
		ch = checkIfUnmodifiedSince(request, modTime)
	if ch is Condition.Failed:
		writer.setHeader("Content-Length", 0)
		writer.writeHead(412)
		return True, ""
	match checkIfNoneMatch(writer, request):
		case Condition.Failed:
			if request.method in ("GET", "HEAD"):
				writeNotModified(writer)
			else:
				writer.setHeader("Content-Length", 0)
				writer.writeHead(412)
			return True, ""
		case Condition.Unset:
			if checkIfModifiedSince(request, modTime) is Condition.Failed:
				writeNotModified(writer)
				return True, ""
	range_header = request.header("Range") or ""
	if range_header and checkIfRange(writer, request, modTime) is Condition.Failed:
		range_header = ""
	return False, range_header


# -----------------------------------------------------------------------------
#
# RANGES
#
# -----------------------------------------------------------------------------
# SEE: https://www.rfc-editor.org/rfc/rfc7233


class ByteRange(NamedTuple):
	"""A satisfiable byte range of the content."""

	start: int
	length: int

	@property
	def end(self) -> int:
		"""Offset of the last byte (inclusive)."""
		return self.start + self.length - 1

	def contentRange(self, size: int) -> str:
		return f"bytes {self.start}-{self.end}/{size}"

	def mimeHeader(self, contentType: str, size: int) -> bytes:
		"""The headers of this range's part in a multipart response."""
		return (
			f"Content-Range: {self.contentRange(size)}\r\n"
			f"Content-Type: {contentType}\r\n"
			"\r\n"
		).encode("latin-1")


def parseOffset(value: str) -> int | None:
	"""Parses a non-negative decimal integer, strictly."""
	return int(value) if value and value.isascii() and value.isdigit() else None


def parseRange(value: str, size: int) -> list[ByteRange]:
	"""Parses a `Range` header for content of the given size. Returns an
	empty list when there is no header, raises `RangeError` when the header
	is invalid or none of its ranges overlap the content."""
	if not value:
		return []
	prefix = "bytes="
	if not value.startswith(prefix):
		raise RangeError("invalid range")
	ranges: list[ByteRange] = []
	no_overlap: bool = False
	for item in value[len(prefix) :].split(","):
		item = item.strip(" \t")
		if not item:
			continue
		if "-" not in item:
			raise RangeError("invalid range")
		start_text, end_text = (_.strip(" \t") for _ in item.split("-", 1))
		if not start_text:
			# A suffix range: the last N bytes of the content
			suffix = parseOffset(end_text)
			if suffix is None:
				raise RangeError("invalid range")
			suffix = min(suffix, size)
			if suffix == 0:
				# An empty suffix selects no byte
				no_overlap = True
				continue
			ranges.append(ByteRange(size - suffix, suffix))
		else:
			start = parseOffset(start_text)
			if start is None:
				raise RangeError("invalid range")
			if start >= size:
				# The range begins after the end of the content
				no_overlap = True
				continue
			if not end_text:
				ranges.append(ByteRange(start, size - start))
			else:
				end = parseOffset(end_text)
				if end is None or start > end:
					raise RangeError("invalid range")
				end = min(end, size - 1)
				ranges.append(ByteRange(start, end - start + 1))
	if no_overlap and not ranges:
		raise RangeError("invalid range: failed to overlap", overlaps=False)
	return ranges


class MultipartRanges:
	"""Lays out a `multipart/byteranges` body so that its exact size is known
	before anything is read."""

	def __init__(
		self,
		ranges: list[ByteRange],
		contentType: str,
		size: int,
		boundary: str | None = None,
	):
		self.ranges: list[ByteRange] = ranges
		self.boundary: str = boundary or secrets.token_hex(30)
		delimiter: bytes = f"--{self.boundary}\r\n".encode("ascii")
		self.heads: list[bytes] = [
			(b"\r\n" if i else b"") + delimiter + r.mimeHeader(contentType, size)
			for i, r in enumerate(ranges)
		]
		self.tail: bytes = f"\r\n--{self.boundary}--\r\n".encode("ascii")

	@property
	def contentType(self) -> str:
		return f"multipart/byteranges; boundary={self.boundary}"

	@property
	def size(self) -> int:
		return (
			sum(len(_) for _ in self.heads)
			+ sum(_.length for _ in self.ranges)
			+ len(self.tail)
		)

	def iterBody(self, content: BinaryIO, chunkSize: int = CHUNK_SIZE) -> Iterator[bytes]:
		for head, r in zip(self.heads, self.ranges):
			yield head
			yield from iterRange(content, r.start, r.length, chunkSize)
		yield self.tail


def iterRange(
	content: BinaryIO, start: int, length: int, chunkSize: int = CHUNK_SIZE
) -> Iterator[bytes]:
	"""Yields exactly `length` bytes of content starting at `start`."""
	content.seek(start)
	left: int = length
	while left > 0:
		chunk = content.read(min(chunkSize, left))
		if not chunk:
			raise ContentError(
				f"Content ended {left} bytes early, at offset {start + length - left}"
			)
		left -= len(chunk)
		yield chunk


def contentSize(content: BinaryIO) -> int:
	size = content.seek(0, io.SEEK_END)
	content.seek(0, io.SEEK_SET)
	return size


# -----------------------------------------------------------------------------
#
# SERVE CONTENT
#
# -----------------------------------------------------------------------------


def serveContent(
	writer: ResponseWriter,
	request: HTTPRequest,
	name: str,
	modTime: float | None,
	content: BinaryIO,
	*,
	chunkSize: int = CHUNK_SIZE,
) -> ResponseOutcome:
	"""Replies to the request with the given seekable content, handling
	conditional requests, byte ranges and HEAD. The `Etag` header, when
	set on the writer, is used as the validator, and the `Content-Type`
	header is resolved from the name and content when not already set.

	The returned outcome tells if any body byte was actually sent."""
	if not isZeroTime(modTime):
		writer.setHeader("Last-Modified", formatHTTPDate(modTime or 0))
	done, range_header = checkPreconditions(writer, request, modTime)
	if done:
		return ResponseOutcome(writer.status or 304, False)

	ctype: str | None = writer.header("Content-Type")
	if ctype is None:
		try:
			ctype = resolveContentType(name, content)
		except (DetectionError, RewindError) as e:
			writer.error(str(e), 500)
			return ResponseOutcome(500, False)
		writer.setHeader("Content-Type", ctype)

	try:
		size = contentSize(content)
	except (OSError, ValueError):
		writer.error("seeker can't seek", 500)
		return ResponseOutcome(500, False)

	code: int = 200
	send_size: int = size
	body: Iterator[bytes]
	try:
		ranges = parseRange(range_header, size)
	except RangeError as e:
		if not e.overlaps:
			writer.setHeader("Content-Range", f"bytes */{size}")
		writer.error(str(e), 416)
		return ResponseOutcome(416, False)
	if sum(_.length for _ in ranges) > size:
		# Overlapping ranges larger than the content are ignored
		ranges = []
	if len(ranges) == 1:
		r = ranges[0]
		try:
			content.seek(r.start)
		except (OSError, ValueError) as e:
			writer.error(str(e), 416)
			return ResponseOutcome(416, False)
		code = 206
		send_size = r.length
		writer.setHeader("Content-Range", r.contentRange(size))
		body = iterRange(content, r.start, r.length, chunkSize)
	elif len(ranges) > 1:
		multipart = MultipartRanges(ranges, ctype, size)
		code = 206
		send_size = multipart.size
		writer.setHeader("Content-Type", multipart.contentType)
		body = multipart.iterBody(content, chunkSize)
	else:
		body = iterRange(content, 0, size, chunkSize)

	writer.setHeader("Accept-Ranges", "bytes")
	if not writer.header("Content-Encoding"):
		writer.setHeader("Content-Length", send_size)
	writer.writeHead(code)

	if request.method == "HEAD":
		return ResponseOutcome(writer.status or code, False)
	written: int = 0
	try:
		for chunk in body:
			written += writer.write(chunk)
	except ConnectionError as e:
		# The client went away
		warning(
			"Client disconnected during transfer",
			Error=str(e),
			Written=written,
			Expected=send_size,
		)
	# The writer may have changed the status
	return ResponseOutcome(writer.status or code, written > 0)


# EOF
