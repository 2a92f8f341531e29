from typing import Iterator

import httpx

from .model import ChunkReader, ContentError, ContentSource, SequentialReader, UnknownSize
from .utils.logging import debug, logged

# --
# Remote content, fetched from an HTTP upstream. Each `open()` is a new
# streaming GET, so going back means downloading again from the start.


def iterResponse(response: httpx.Response) -> Iterator[bytes]:
	"""Iterates on the body of a streamed response, reporting transport
	failures as content errors."""
	try:
		yield from response.iter_bytes()
	except httpx.HTTPError as e:
		raise ContentError(f"Upstream transfer failed: {e}") from e


class HTTPSource(ContentSource):
	"""A remote object. The size is taken from a `HEAD` request unless
	given upfront, and the body is only fetched when read."""

	def __init__(self, url: str, *, client: httpx.Client, size: int | None = None):
		self.url: str = url
		self.client: httpx.Client = client
		self._size: int | None = size
		self.responses: list[httpx.Response] = []

	def head(self) -> httpx.Response:
		try:
			return self.client.head(self.url)
		except httpx.HTTPError as e:
			raise UnknownSize(f"Upstream HEAD failed: {e}") from e

	def size(self) -> int:
		if self._size is None:
			response = self.head()
			if response.status_code >= 400:
				raise UnknownSize(f"Upstream HEAD failed with status {response.status_code}")
			length = response.headers.get("content-length")
			if not (length and length.isdigit()):
				raise UnknownSize("Upstream did not give a Content-Length")
			self._size = int(length)
		return self._size

	def open(self) -> SequentialReader:
		logged(debug) and debug("Fetching upstream content", URL=self.url)
		try:
			response = self.client.send(self.client.build_request("GET", self.url), stream=True)
		except httpx.HTTPError as e:
			raise ContentError(f"Upstream GET failed: {e}") from e
		if response.status_code != 200:
			response.close()
			raise ContentError(f"Upstream GET failed with status {response.status_code}")
		self.responses.append(response)
		return ChunkReader(iterResponse(response), onClose=response.close)

	def close(self) -> None:
		while self.responses:
			self.responses.pop().close()


# EOF
