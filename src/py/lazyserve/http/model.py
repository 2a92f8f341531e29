from abc import ABC, abstractmethod
from enum import Enum
from typing import NamedTuple, TypeAlias, Union
from urllib.parse import unquote, unquote_plus

from ..utils.logging import warning
from .status import HTTP_STATUS

# -----------------------------------------------------------------------------
#
# HELPERS
#
# -----------------------------------------------------------------------------

# Normalized header names, by lowercase name
HEADER_NAMES: dict[str, str] = {}


def headername(name: str) -> str:
	"""Normalizes the header name as `Kebab-Case`."""
	key: str = name.lower()
	if (normalized := HEADER_NAMES.get(key)) is None:
		normalized = HEADER_NAMES[key] = "-".join(
			_.capitalize() for _ in key.split("-")
		)
	return normalized


def parseQuery(text: str) -> dict[str, str]:
	"""Parses a query string, the last value winning for repeated keys."""
	res: dict[str, str] = {}
	for item in text.split("&"):
		if item:
			key, _, value = item.partition("=")
			res[unquote_plus(key)] = unquote_plus(value)
	return res


# -----------------------------------------------------------------------------
#
# DATA MODEL
#
# -----------------------------------------------------------------------------


class HTTPRequestLine(NamedTuple):
	method: str
	path: str
	query: str
	protocol: str


class HTTPHeaders(NamedTuple):
	"""The headers of a message, with the ones that drive parsing
	extracted."""

	headers: dict[str, str]
	contentLength: int | None = None


class HTTPProcessingStatus(Enum):
	"""What the parser reports besides the parts of requests."""

	# A request body follows, and is being skipped
	Body = 1
	# The request can't be parsed, the connection can't be reused
	BadFormat = 2


# What the parser produces, as it goes through a request
HTTPAtom: TypeAlias = Union[
	HTTPRequestLine,
	HTTPHeaders,
	HTTPProcessingStatus,
	"HTTPRequest",
]

# -----------------------------------------------------------------------------
#
# REQUESTS
#
# -----------------------------------------------------------------------------


class HTTPRequest:
	"""Represents an HTTP request. Only the head is kept, as the served
	methods have no body."""

	__slots__ = ["protocol", "method", "path", "query", "_headers"]

	@staticmethod
	def Create(
		method: str,
		path: str,
		headers: dict[str, str] | None = None,
		*,
		protocol: str = "HTTP/1.1",
	) -> "HTTPRequest":
		"""Creates a request from a path that may include a query string."""
		p: list[str] = path.split("?", 1)
		return HTTPRequest(
			method=method,
			path=p[0],
			query=parseQuery(p[1]) if len(p) > 1 else None,
			headers=HTTPHeaders(
				{headername(k): v for k, v in headers.items()} if headers else {}
			),
			protocol=protocol,
		)

	def __init__(
		self,
		method: str,
		path: str,
		query: dict[str, str] | None,
		headers: HTTPHeaders,
		protocol: str = "HTTP/1.1",
	):
		self.method: str = method
		self.path: str = path
		self.query: dict[str, str] | None = query
		self.protocol: str = protocol
		self._headers: HTTPHeaders = headers

	@property
	def headers(self) -> dict[str, str]:
		return self._headers.headers

	@property
	def contentLength(self) -> int | None:
		return self._headers.contentLength

	@property
	def localPath(self) -> str:
		"""The path, with percent-encoded characters decoded."""
		return unquote(self.path)

	def header(self, name: str) -> str | None:
		return self._headers.headers.get(headername(name))

	def param(self, name: str, default: str | None = None) -> str | None:
		return self.query.get(name, default) if self.query else default

	def __repr__(self) -> str:
		return f"<HTTPRequest {self.method} {self.path} {self.protocol}>"


# -----------------------------------------------------------------------------
#
# RESPONSE
#
# -----------------------------------------------------------------------------


class HTTPResponse:
	"""An HTTP response."""

	__slots__ = ["protocol", "status", "message", "headers", "body"]

	def __init__(
		self,
		protocol: str,
		status: int,
		message: str | None,
		headers: HTTPHeaders,
		body: bytes | None = None,
	):
		self.protocol: str = protocol
		self.status: int = status
		self.message: str | None = message
		self.headers: HTTPHeaders = headers
		self.body: bytes | None = body

	def getHeader(self, name: str) -> str | None:
		return self.headers.headers.get(headername(name))

	def head(self) -> bytes:
		"""The status line and headers, up to the empty line that precedes
		the body."""
		reason: str = self.message or HTTP_STATUS.get(self.status, "Unknown status")
		lines: list[str] = [f"{self.protocol} {self.status} {reason}"]
		lines.extend(f"{headername(k)}: {v}" for k, v in self.headers.headers.items())
		# Values are latin-1 at most, non-ASCII names in `Content-Disposition`
		# being RFC 5987 encoded.
		return "".join(f"{_}\r\n" for _ in lines).encode("latin-1") + b"\r\n"

	def __repr__(self) -> str:
		return f"<HTTPResponse {self.status} {self.headers.headers}>"


# -----------------------------------------------------------------------------
#
# WRITERS
#
# -----------------------------------------------------------------------------
# Responses are produced through writers: headers can be changed until the
# head is written, then the body is written in chunks. This lets content be
# streamed from a worker without building the response upfront.


class ResponseWriter(ABC):
	"""The capability to send a response."""

	@property
	@abstractmethod
	def headers(self) -> dict[str, str]: ...

	@property
	@abstractmethod
	def status(self) -> int | None:
		"""The status that was sent, `None` until the head is written."""

	@abstractmethod
	def writeHead(self, status: int) -> None: ...

	@abstractmethod
	def write(self, data: bytes) -> int:
		"""Writes body bytes, sending a `200` head first if none was sent."""

	def header(self, name: str) -> str | None:
		return self.headers.get(headername(name))

	def setHeader(self, name: str, value: str | int | None) -> "ResponseWriter":
		if value is None:
			self.headers.pop(headername(name), None)
		else:
			self.headers[headername(name)] = str(value)
		return self

	def setHeaders(self, headers: dict[str, str | int | None]) -> "ResponseWriter":
		for k, v in headers.items():
			self.setHeader(k, v)
		return self

	@property
	def isHeadSent(self) -> bool:
		return self.status is not None

	def error(self, message: str, status: int) -> None:
		"""Replies with the given plain text message and status."""
		payload: bytes = f"{message}\n".encode("utf-8")
		self.setHeaders(
			{
				"Content-Type": "text/plain; charset=utf-8",
				"X-Content-Type-Options": "nosniff",
				"Content-Length": len(payload),
			}
		)
		self.writeHead(status)
		self.write(payload)


class BaseResponseWriter(ResponseWriter):
	"""Keeps headers and status, subclasses actually send the bytes."""

	def __init__(self, protocol: str = "HTTP/1.1", *, method: str = "GET") -> None:
		self.protocol: str = protocol
		# Responses to HEAD requests keep their headers but send no body
		self.method: str = method
		self._headers: dict[str, str] = {}
		self._status: int | None = None

	@property
	def headers(self) -> dict[str, str]:
		return self._headers

	@property
	def status(self) -> int | None:
		return self._status

	def writeHead(self, status: int) -> None:
		if self._status is not None:
			warning(
				"Response head was already written",
				Status=self._status,
				Ignored=status,
			)
			return
		self._status = status
		self._writeHead(
			HTTPResponse(
				protocol=self.protocol,
				status=status,
				message=HTTP_STATUS.get(status),
				headers=HTTPHeaders(dict(self._headers)),
			)
		)

	def write(self, data: bytes) -> int:
		if self._status is None:
			self.writeHead(200)
		if data and self.method != "HEAD":
			self._writeBytes(data)
		return len(data)

	@abstractmethod
	def _writeHead(self, response: HTTPResponse) -> None: ...

	@abstractmethod
	def _writeBytes(self, data: bytes) -> None: ...


class BufferedResponseWriter(BaseResponseWriter):
	"""Collects the response in memory."""

	def __init__(self, protocol: str = "HTTP/1.1", *, method: str = "GET") -> None:
		super().__init__(protocol, method=method)
		self.sent: HTTPResponse | None = None
		self.body: bytearray = bytearray()

	def _writeHead(self, response: HTTPResponse) -> None:
		self.sent = response

	def _writeBytes(self, data: bytes) -> None:
		self.body += data

	def response(self) -> HTTPResponse:
		"""Returns the response as it was sent."""
		if self.sent is None:
			raise RuntimeError("No response was written")
		return HTTPResponse(
			protocol=self.sent.protocol,
			status=self.sent.status,
			message=self.sent.message,
			headers=self.sent.headers,
			body=bytes(self.body) if self.body else None,
		)


class HTTPBodyWriter(ABC):
	"""Writes raw response bytes to a client connection."""

	__slots__ = ["shouldClose"]

	def __init__(self) -> None:
		self.shouldClose: bool = False

	async def write(self, data: bytes | None) -> bool:
		if data is None:
			return True
		return await self._writeBytes(data)

	@abstractmethod
	async def _writeBytes(self, chunk: bytes) -> bool: ...


# EOF
