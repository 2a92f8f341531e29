import time

import pytest

from lazyserve.gateway import Gateway, StatusResponseWriter
from lazyserve.http.model import BufferedResponseWriter, HTTPRequest, ResponseWriter
from lazyserve.model import (
	BytesSource,
	ChunkedSource,
	ContentError,
	ContentPath,
	ContentSource,
	ResponseOutcome,
	SequentialReader,
	SymlinkSource,
)
from lazyserve.telemetry import Span, Tracer
from lazyserve.utils.logging import TPrimitive

DATA: bytes = bytes(range(256)) * 4


class RecordingMetrics:
	def __init__(self) -> None:
		self.observations: list[tuple[str, float]] = []

	def observe(self, label: str, seconds: float) -> None:
		self.observations.append((label, seconds))


class RecordingTracer(Tracer):
	def __init__(self) -> None:
		self.spans: list[Span] = []

	def start(self, name: str, **attributes: TPrimitive) -> Span:
		span = super().start(name, **attributes)
		self.spans.append(span)
		return span


class CountingSource(ContentSource):
	def __init__(self, source: ContentSource):
		self.source: ContentSource = source
		self.opens: int = 0
		self.closed: bool = False

	def size(self) -> int:
		return self.source.size()

	def open(self) -> SequentialReader:
		self.opens += 1
		return self.source.open()

	def close(self) -> None:
		self.closed = True


class BrokenSource(ContentSource):
	def size(self) -> int:
		return 100

	def open(self) -> SequentialReader:
		raise ContentError("block is unavailable")


class DisconnectingWriter(BufferedResponseWriter):
	"""Lets the first body chunk through, then the client goes away."""

	def _writeBytes(self, data: bytes) -> None:
		if self.body:
			raise ConnectionResetError("Connection reset by peer")
		super()._writeBytes(data)


class Fixture:
	def __init__(self, **options) -> None:
		self.metrics = RecordingMetrics()
		self.tracer = RecordingTracer()
		self.gateway = Gateway(metrics=self.metrics, tracer=self.tracer, **options)

	def serve(
		self,
		path: str,
		source: ContentSource,
		headers: dict[str, str] | None = None,
		*,
		method: str = "GET",
		writer: BufferedResponseWriter | None = None,
	) -> tuple[BufferedResponseWriter, ResponseOutcome]:
		writer = writer or BufferedResponseWriter()
		outcome = self.gateway.serveFile(
			writer,
			HTTPRequest.Create(method, path, headers),
			ContentPath(path.split("?", 1)[0]),
			"QmContent",
			source,
			time.monotonic(),
		)
		return writer, outcome

	@property
	def span(self) -> Span:
		assert len(self.tracer.spans) == 1
		return self.tracer.spans[0]


@pytest.fixture
def fixture() -> Fixture:
	return Fixture(chunkSize=100)


def test_range_records_metric(fixture: Fixture) -> None:
	writer, outcome = fixture.serve(
		"/ipfs/QmContent/data.bin", BytesSource(DATA), {"Range": "bytes=0-99"}
	)
	assert outcome == ResponseOutcome(206, True)
	assert writer.header("Content-Range") == "bytes 0-99/1024"
	assert bytes(writer.body) == DATA[:100]
	assert writer.header("Etag") == '"QmContent"'
	assert writer.header("Cache-Control") == "public, max-age=29030400, immutable"
	assert writer.header("Last-Modified") is None
	assert [_[0] for _ in fixture.metrics.observations] == ["ipfs"]
	assert fixture.metrics.observations[0][1] >= 0


def test_not_modified_has_no_metric(fixture: Fixture) -> None:
	source = CountingSource(BytesSource(DATA))
	writer, outcome = fixture.serve(
		"/ipfs/QmContent/data.bin", source, {"If-None-Match": '"QmContent"'}
	)
	assert outcome == ResponseOutcome(304, False)
	assert not writer.body
	assert fixture.metrics.observations == []
	assert source.opens == 0


def test_unknown_size(fixture: Fixture) -> None:
	source = CountingSource(ChunkedSource(lambda: iter([DATA])))
	writer, outcome = fixture.serve("/ipfs/QmContent/data.bin", source)
	assert outcome == ResponseOutcome(502, False)
	assert writer.status == 502
	assert bytes(writer.body) == b"cannot serve files with unknown sizes\n"
	assert fixture.metrics.observations == []
	assert source.opens == 0
	assert source.closed
	assert fixture.span.isEnded


def test_detection_failure(fixture: Fixture) -> None:
	writer, outcome = fixture.serve("/ipfs/QmContent/blob", BrokenSource())
	assert outcome == ResponseOutcome(500, False)
	assert bytes(writer.body).startswith(b"cannot detect content-type:")
	assert fixture.metrics.observations == []
	assert fixture.span.isEnded


def test_sniffed_content_type(fixture: Fixture) -> None:
	writer, outcome = fixture.serve(
		"/ipfs/QmContent/page", BytesSource(b"<html><body>Hi</body></html>")
	)
	assert outcome == ResponseOutcome(200, True)
	assert writer.header("Content-Type") == "text/html"
	assert bytes(writer.body) == b"<html><body>Hi</body></html>"


def test_symlink(fixture: Fixture) -> None:
	writer, outcome = fixture.serve("/ipfs/QmContent/link.jpg", SymlinkSource("photo.jpg"))
	assert outcome.status == 200
	assert writer.header("Content-Type") == "inode/symlink"
	assert bytes(writer.body) == b"photo.jpg"


def test_mutable_namespace(fixture: Fixture) -> None:
	writer, outcome = fixture.serve("/ipns/example.com/notes.txt", BytesSource(b"notes"))
	assert outcome.status == 200
	assert writer.header("Cache-Control") is None
	assert writer.header("Last-Modified")
	assert writer.header("Content-Type") == "text/plain"
	assert fixture.metrics.observations[0][0] == "ipns"


def test_content_disposition(fixture: Fixture) -> None:
	writer, _ = fixture.serve(
		"/ipfs/QmContent?filename=report.pdf&download=true", BytesSource(DATA)
	)
	assert writer.header("Content-Disposition") == 'attachment; filename="report.pdf"'
	# The type follows the requested name
	assert writer.header("Content-Type") == "application/pdf"


def test_redirect_status() -> None:
	def cacheControl(
		writer: ResponseWriter, request: HTTPRequest, path: ContentPath, cid: str
	) -> float | None:
		writer.setHeader("Location", "https://example.com/")
		return None

	fixture = Fixture(cacheControl=cacheControl)
	writer, outcome = fixture.serve("/ipfs/QmContent/data.bin", BytesSource(DATA))
	assert outcome == ResponseOutcome(301, True)
	assert writer.status == 301
	# The body is still sent along the redirect
	assert bytes(writer.body) == DATA


def test_status_writer_passes_through() -> None:
	inner = BufferedResponseWriter()
	writer = StatusResponseWriter(inner)
	writer.setHeader("Location", "/elsewhere")
	writer.writeHead(404)
	assert inner.status == 404
	plain = StatusResponseWriter(BufferedResponseWriter())
	plain.write(b"data")
	assert plain.status == 200


def test_failure_mid_transfer(fixture: Fixture) -> None:
	source = CountingSource(ChunkedSource(lambda: iter([DATA[:200]]), 1024))
	writer = BufferedResponseWriter()
	with pytest.raises(ContentError):
		fixture.serve("/ipfs/QmContent/data.bin", source, writer=writer)
	assert writer.status == 200
	assert fixture.metrics.observations == []
	assert source.closed
	assert fixture.span.isEnded


def test_client_disconnect(fixture: Fixture) -> None:
	writer, outcome = fixture.serve(
		"/ipfs/QmContent/data.bin", BytesSource(DATA), writer=DisconnectingWriter()
	)
	assert outcome == ResponseOutcome(200, True)
	assert bytes(writer.body) == DATA[:100]
	assert len(fixture.metrics.observations) == 1


def test_span(fixture: Fixture) -> None:
	fixture.serve("/ipfs/QmContent/data.bin", BytesSource(DATA))
	span = fixture.span
	assert span.name == "Gateway.ServeFile"
	assert span.attributes["path"] == "/ipfs/QmContent/data.bin"
	assert span.attributes["status"] == 200
	assert span.isEnded


# EOF
