import asyncio
import socket
import threading
import time
from pathlib import Path
from typing import Iterator

import httpx
import pytest

from lazyserve.http.model import HTTPRequest
from lazyserve.server import AIOSocketServer, ServerOptions, cannedResponse, isPersistent
from lazyserve.service import DirectoryResolver, FileGateway

DATA: bytes = bytes(range(256)) * 100


def freePort() -> int:
	with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
		s.bind(("127.0.0.1", 0))
		return s.getsockname()[1]


def waitForPort(port: int, timeout: float = 5.0) -> None:
	deadline = time.monotonic() + timeout
	while time.monotonic() < deadline:
		try:
			with socket.create_connection(("127.0.0.1", port), timeout=0.5):
				return
		except OSError:
			time.sleep(0.05)
	raise RuntimeError(f"Server did not start on port {port}")


@pytest.fixture
def server(tmp_path: Path) -> Iterator[str]:
	(tmp_path / "data.bin").write_bytes(DATA)
	stopped = threading.Event()
	options = ServerOptions(
		host="127.0.0.1",
		port=freePort(),
		polling=0.1,
		logRequests=False,
		condition=lambda: not stopped.is_set(),
		stopSignals=False,
	)
	handler = FileGateway({"files": DirectoryResolver(tmp_path)})
	thread = threading.Thread(
		target=asyncio.run, args=(AIOSocketServer.Serve(handler, options),), daemon=True
	)
	thread.start()
	waitForPort(options.port)
	yield f"http://127.0.0.1:{options.port}"
	stopped.set()
	thread.join(5)


def test_serve_over_http(server: str) -> None:
	with httpx.Client(base_url=server) as client:
		full = client.get("/files/data.bin")
		assert full.status_code == 200
		assert full.content == DATA
		assert full.headers["accept-ranges"] == "bytes"
		# The connection is kept alive between requests
		partial = client.get("/files/data.bin", headers={"Range": "bytes=100-199"})
		assert partial.status_code == 206
		assert partial.headers["content-range"] == f"bytes 100-199/{len(DATA)}"
		assert partial.content == DATA[100:200]
		head = client.head("/files/data.bin")
		assert head.status_code == 200
		assert head.headers["content-length"] == str(len(DATA))
		cached = client.get(
			"/files/data.bin", headers={"If-None-Match": full.headers["etag"]}
		)
		assert cached.status_code == 304
		assert client.get("/files/missing.bin").status_code == 404
		assert client.delete("/files/data.bin").status_code == 405


def test_bad_request(server: str) -> None:
	port = int(server.rsplit(":", 1)[1])
	with socket.create_connection(("127.0.0.1", port), timeout=5) as s:
		s.sendall(b"GARBAGE\r\n\r\n")
		data = s.recv(1024)
	assert data.startswith(b"HTTP/1.1 400 Bad Request")


def test_head_error_keeps_connection_usable(server: str) -> None:
	port = int(server.rsplit(":", 1)[1])
	with socket.create_connection(("127.0.0.1", port), timeout=5) as s:
		s.sendall(
			b"HEAD /files/data.bin HTTP/1.1\r\nHost: x\r\nRange: bytes=999999-\r\n\r\n"
			b"GET /files/data.bin HTTP/1.1\r\nHost: x\r\nRange: bytes=0-9\r\n"
			b"Connection: close\r\n\r\n"
		)
		data = b""
		while chunk := s.recv(4096):
			data += chunk
	first, rest = data.split(b"\r\n\r\n", 1)
	assert first.startswith(b"HTTP/1.1 416")
	# The second response follows the head of the first one
	assert rest.startswith(b"HTTP/1.1 206")
	assert rest.endswith(b"\r\n\r\n" + DATA[:10])


def test_canned_responses() -> None:
	assert cannedResponse(204) == b"HTTP/1.1 204 No Content\r\nConnection: close\r\n\r\n"
	head, body = cannedResponse(400, "Bad request").split(b"\r\n\r\n", 1)
	assert body == b"Bad request\r\n"
	assert f"Content-Length: {len(body)}".encode() in head


def test_persistent_connections() -> None:
	assert isPersistent(HTTPRequest.Create("GET", "/"))
	assert not isPersistent(HTTPRequest.Create("GET", "/", {"Connection": "close"}))
	assert not isPersistent(HTTPRequest.Create("GET", "/", protocol="HTTP/1.0"))


# EOF
