from typing import Iterator, Literal

from .model import (
	HTTPAtom,
	HTTPHeaders,
	HTTPProcessingStatus,
	HTTPRequest,
	HTTPRequestLine,
	headername,
	parseQuery,
)

EOL: bytes = b"\r\n"

# Request and header lines longer than that are rejected
MAX_LINE: int = 16_384


class LineTooLong(ValueError):
	pass


class LineParser:
	"""Accumulates chunks until a CRLF is found, so that lines can be split
	across chunks."""

	__slots__ = ["buffer", "line", "offset", "limit"]

	def __init__(self, limit: int = MAX_LINE) -> None:
		self.buffer: bytearray = bytearray()
		self.line: bytes | None = None
		# Where to resume looking for the delimiter
		self.offset: int = 0
		self.limit: int = limit

	def reset(self) -> "LineParser":
		self.buffer.clear()
		self.line = None
		self.offset = 0
		return self

	def feed(self, chunk: bytes, start: int = 0) -> tuple[bytes | None, int]:
		"""Returns the line (without its delimiter) if one was completed,
		and how many bytes of `chunk` were consumed from `start`."""
		pos = len(self.buffer)
		self.buffer += chunk[start:]
		end = self.buffer.find(EOL, self.offset)
		if (len(self.buffer) if end == -1 else end) > self.limit:
			raise LineTooLong(f"Line exceeds {self.limit} bytes")
		elif end == -1:
			# The delimiter may straddle two chunks
			self.offset = max(0, len(self.buffer) - len(EOL) + 1)
			return None, len(chunk) - start
		else:
			self.line = bytes(self.buffer[:end])
			self.buffer.clear()
			self.offset = 0
			return self.line, (end - pos) + len(EOL)


# First byte of a TLS record, sent by clients trying TLS on a plain port
TLS_HANDSHAKE: int = 0x16


def parseRequestLine(line: bytes) -> HTTPRequestLine | None:
	"""Parses `METHOD target PROTOCOL`, returning `None` when malformed."""
	try:
		text: str = line.decode("ascii")
	except UnicodeDecodeError:
		return None
	parts: list[str] = text.split(" ")
	if len(parts) != 3 or not all(parts):
		return None
	method, target, protocol = parts
	path, _, query = target.partition("?")
	return HTTPRequestLine(method, path, query, protocol)


class MessageParser:
	"""Parses an HTTP request line, skipping TLS handshakes."""

	__slots__ = ["line", "value", "skipping"]

	def __init__(self) -> None:
		self.line: LineParser = LineParser()
		self.value: HTTPRequestLine | HTTPProcessingStatus | None = None
		# Bytes left in the TLS record being skipped
		self.skipping: int = 0

	def flush(self) -> HTTPRequestLine | HTTPProcessingStatus | None:
		res = self.value
		self.reset()
		return res

	def reset(self) -> "MessageParser":
		self.line.reset()
		self.value = None
		self.skipping = 0
		return self

	def feed(self, chunk: bytes, start: int = 0) -> tuple[bool | None, int]:
		available: int = len(chunk) - start
		if self.skipping:
			read = min(available, self.skipping)
			self.skipping -= read
			return None, read
		elif (
			available >= 5 and chunk[start] == TLS_HANDSHAKE and not self.line.buffer
		):
			# The record length follows the type and version
			self.skipping = 5 + (chunk[start + 3] << 8) + chunk[start + 4]
			return self.feed(chunk, start)
		line, read = self.line.feed(chunk, start)
		if not line:
			# Empty lines between requests are ignored
			return None, read
		self.value = parseRequestLine(line) or HTTPProcessingStatus.BadFormat
		return True, read


class HeadersParser:
	"""Parses header lines up to the empty line ending them."""

	__slots__ = ["line", "headers", "contentLength"]

	def __init__(self) -> None:
		self.line: LineParser = LineParser()
		self.headers: dict[str, str] = {}
		self.contentLength: int | None = None

	def flush(self) -> HTTPHeaders:
		res = HTTPHeaders(self.headers, contentLength=self.contentLength)
		self.reset()
		return res

	def reset(self) -> "HeadersParser":
		self.line.reset()
		self.headers = {}
		self.contentLength = None
		return self

	def feed(
		self, chunk: bytes, start: int = 0
	) -> tuple[str | Literal[False] | None, int]:
		"""Returns the name of the header that was read, `False` for the
		empty line ending the headers, `None` if no line was complete or
		the line was not a header, along with how many bytes were read."""
		line, read = self.line.feed(chunk, start)
		if line is None:
			return None, read
		elif not line:
			return False, read
		# Header values are ISO-8859-1 at most
		name, colon, value = line.decode("latin-1").partition(":")
		if not colon:
			return None, read
		key: str = headername(name.strip())
		self.headers[key] = value = value.strip()
		if key == "Content-Length":
			self.contentLength = int(value) if value.isdigit() else None
		return key, read


class BodyLengthParser:
	"""Skips the body of a request with `Content-Length` set. The served
	methods don't use request bodies, so they're not kept."""

	__slots__ = ["expected", "read"]

	def __init__(self) -> None:
		self.expected: int = 0
		self.read: int = 0

	def reset(self, length: int = 0) -> "BodyLengthParser":
		self.expected = length
		self.read = 0
		return self

	def feed(self, chunk: bytes, start: int = 0) -> tuple[bool | None, int]:
		left: int = len(chunk) - start
		to_read: int = min(left, self.expected - self.read)
		self.read += to_read
		return (True if self.read >= self.expected else None), to_read


class HTTPParser:
	"""A stateful HTTP request parser, fed with chunks as they come. The
	request line, the headers and the body each have their parser, which
	keeps partial data between chunks."""

	def __init__(self) -> None:
		self.message: MessageParser = MessageParser()
		self.headers: HeadersParser = HeadersParser()
		self.body: BodyLengthParser = BodyLengthParser()
		self.parser: MessageParser | HeadersParser | BodyLengthParser = self.message
		self.requestLine: HTTPRequestLine | None = None
		self.request: HTTPRequest | None = None

	def reset(self) -> "HTTPParser":
		self.parser = self.message.reset()
		self.headers.reset()
		self.requestLine = None
		self.request = None
		return self

	def feed(self, chunk: bytes) -> Iterator[HTTPAtom]:
		"""Yields the parts of the requests found in the chunk. Parsing
		stops at the first `BadFormat`, as message boundaries are lost."""
		offset: int = 0
		while offset < len(chunk):
			try:
				value, read = self.parser.feed(chunk, offset)
			except LineTooLong:
				yield HTTPProcessingStatus.BadFormat
				return
			offset += read
			if value is None:
				continue
			elif self.parser is self.message:
				line = self.message.flush()
				if not isinstance(line, HTTPRequestLine):
					yield HTTPProcessingStatus.BadFormat
					return
				yield line
				self.requestLine = line
				self.parser = self.headers
			elif self.parser is self.headers:
				if value is not False:
					continue
				headers = self.headers.flush()
				yield headers
				if self.requestLine is None or "Transfer-Encoding" in headers.headers:
					# Chunked request bodies are not supported
					yield HTTPProcessingStatus.BadFormat
					return
				self.request = self.createRequest(self.requestLine, headers)
				if headers.contentLength:
					self.parser = self.body.reset(headers.contentLength)
					yield HTTPProcessingStatus.Body
				else:
					yield self.flush()
			else:
				yield self.flush()

	def flush(self) -> HTTPRequest:
		request = self.request
		self.reset()
		if request is None:
			raise RuntimeError("Parser has no request to flush")
		return request

	@staticmethod
	def createRequest(line: HTTPRequestLine, headers: HTTPHeaders) -> HTTPRequest:
		return HTTPRequest(
			method=line.method,
			path=line.path,
			query=parseQuery(line.query) if line.query else None,
			headers=headers,
			protocol=line.protocol,
		)


# EOF
