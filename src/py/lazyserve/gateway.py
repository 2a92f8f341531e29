import time
from typing import Callable, Protocol

from .config import CHUNK_SIZE, SNIFF_SIZE
from .content.seeker import LazySeeker
from .content.serve import serveContent
from .content.types import resolveContentType
from .headers import addCacheControlHeaders, addContentDispositionHeader
from .http.model import HTTPRequest, ResponseWriter
from .model import (
	ContentDescriptor,
	ContentError,
	ContentPath,
	ContentSource,
	ResponseOutcome,
	UnknownSize,
)
from .telemetry import LatencyHistogram, Tracer
from .utils.logging import TPrimitive, debug, error, logged

# -----------------------------------------------------------------------------
#
# COLLABORATORS
#
# -----------------------------------------------------------------------------


class MetricsSink(Protocol):
	def observe(self, label: str, seconds: float) -> None: ...


class SpanLike(Protocol):
	def setAttribute(self, name: str, value: TPrimitive) -> "SpanLike": ...

	def end(self) -> None: ...


class TracingSink(Protocol):
	def start(self, name: str, **attributes: TPrimitive) -> SpanLike: ...


# Sets the caching headers, returns the modification time (if any)
CacheControlPolicy = Callable[
	[ResponseWriter, HTTPRequest, ContentPath, str], float | None
]
# Sets the disposition header, returns the name of the content
DispositionPolicy = Callable[[ResponseWriter, HTTPRequest, ContentPath], str]


# -----------------------------------------------------------------------------
#
# WRITERS
#
# -----------------------------------------------------------------------------


class StatusResponseWriter(ResponseWriter):
	"""Decorates a writer so that a `200` becomes a `301` when a `Location`
	header was set. The body is still sent, for clients that don't follow
	redirects."""

	def __init__(self, writer: ResponseWriter):
		self.writer: ResponseWriter = writer

	@property
	def headers(self) -> dict[str, str]:
		return self.writer.headers

	@property
	def status(self) -> int | None:
		return self.writer.status

	def writeHead(self, status: int) -> None:
		if status == 200 and self.writer.header("Location"):
			status = 301
		self.writer.writeHead(status)

	def write(self, data: bytes) -> int:
		if not self.writer.isHeadSent:
			self.writeHead(200)
		return self.writer.write(data)


# -----------------------------------------------------------------------------
#
# GATEWAY
#
# -----------------------------------------------------------------------------


class Gateway:
	"""Serves content sources over HTTP, with the caching, naming and
	telemetry policies given as collaborators."""

	def __init__(
		self,
		*,
		metrics: MetricsSink | None = None,
		tracer: TracingSink | None = None,
		cacheControl: CacheControlPolicy = addCacheControlHeaders,
		contentDisposition: DispositionPolicy = addContentDispositionHeader,
		chunkSize: int = CHUNK_SIZE,
		sniffSize: int = SNIFF_SIZE,
	):
		self.metrics: MetricsSink = metrics or LatencyHistogram()
		self.tracer: TracingSink = tracer or Tracer()
		self.cacheControl: CacheControlPolicy = cacheControl
		self.contentDisposition: DispositionPolicy = contentDisposition
		self.chunkSize: int = chunkSize
		self.sniffSize: int = sniffSize

	def serveFile(
		self,
		writer: ResponseWriter,
		request: HTTPRequest,
		contentPath: ContentPath,
		contentID: str,
		source: ContentSource,
		begin: float,
	) -> ResponseOutcome:
		"""Sends the content of `source`, requested as `contentPath` and
		identified by `contentID`. The `begin` timestamp (from
		`time.monotonic()`) is when the request started, and is used to
		measure the latency of successful transfers."""
		span = self.tracer.start("Gateway.ServeFile", path=str(contentPath))
		try:
			outcome = self._serveFile(writer, request, contentPath, contentID, source, begin)
			span.setAttribute("status", outcome.status)
			return outcome
		finally:
			source.close()
			span.end()

	def _serveFile(
		self,
		writer: ResponseWriter,
		request: HTTPRequest,
		contentPath: ContentPath,
		contentID: str,
		source: ContentSource,
		begin: float,
	) -> ResponseOutcome:
		mod_time = self.cacheControl(writer, request, contentPath, contentID)
		name = self.contentDisposition(writer, request, contentPath)

		try:
			size = source.size()
		except UnknownSize as e:
			error("Content has no known size", 502, Path=str(contentPath), Error=str(e))
			writer.error("cannot serve files with unknown sizes", 502)
			return ResponseOutcome(502, False)

		content = LazySeeker(source, size, chunkSize=self.chunkSize)
		try:
			try:
				ctype = resolveContentType(
					name, content, isSymlink=source.isSymlink, sniffSize=self.sniffSize
				)
			except ContentError as e:
				error(
					"Content type resolution failed", 500, Path=str(contentPath), Error=str(e)
				)
				writer.error(str(e), 500)
				return ResponseOutcome(500, False)
			descriptor = ContentDescriptor(name, size, ctype, mod_time)
			# An explicit type prevents clients from sniffing on their side
			writer.setHeader("Content-Type", descriptor.contentType)

			try:
				outcome = serveContent(
					StatusResponseWriter(writer),
					request,
					descriptor.name,
					descriptor.modTime,
					content,
					chunkSize=self.chunkSize,
				)
			except ContentError as e:
				if writer.isHeadSent:
					# Too late to report, the connection needs to be dropped
					error("Content failed mid-transfer", 500, Path=str(contentPath), Error=str(e))
					raise
				writer.error(str(e), 500)
				return ResponseOutcome(500, False)

			if outcome.bytesTransmitted:
				self.metrics.observe(contentPath.namespace, time.monotonic() - begin)
			logged(debug) and debug(
				"Content served",
				Path=str(contentPath),
				Status=outcome.status,
				Size=descriptor.size,
				Type=descriptor.contentType,
				Opens=content.opens,
				Discarded=content.discarded,
			)
			return outcome
		finally:
			content.close()


# EOF
