import os
import posixpath
import time
from pathlib import Path
from typing import NamedTuple, Protocol, Union
from urllib.parse import quote

import httpx

from .config import UPSTREAM_TIMEOUT
from .gateway import Gateway
from .http.model import HTTPRequest, ResponseWriter
from .model import ContentPath, ContentSource, FileSource, ResponseOutcome, SymlinkSource
from .sources import HTTPSource
from .utils.logging import debug, logged, warning

# -----------------------------------------------------------------------------
#
# RESOLVERS
#
# -----------------------------------------------------------------------------


class Resolved(NamedTuple):
	"""Content found for a path: its identifier (the entity tag) and its
	source."""

	contentID: str
	source: ContentSource


class Resolver(Protocol):
	def resolve(self, path: str) -> Resolved | None:
		"""Returns the content at the given path, relative to the namespace,
		or `None` when there is none."""


class DirectoryResolver:
	"""Resolves paths to files under a local directory. Symbolic links are
	served as links (their target path, typed `inode/symlink`) and never
	followed."""

	def __init__(self, root: str | Path | None = None):
		self.root: Path = (
			root if isinstance(root, Path) else Path(root or ".")
		).absolute()

	def resolvePath(self, path: Union[str, Path]) -> Path | None:
		has_slash = isinstance(path, str) and path.endswith("/")
		local_path = Path(os.path.normpath(self.root.joinpath(path)))
		if not local_path.parts[: len(parts := self.root.parts)] == parts:
			return None
		if not local_path.is_symlink() and local_path.is_dir():
			index_path = local_path / "index.html"
			if not has_slash and index_path.exists():
				return index_path
			else:
				return local_path
		else:
			return local_path

	def resolve(self, path: str) -> Resolved | None:
		local_path = self.resolvePath(path)
		if local_path is None:
			warning("Path is outside of the root", Path=path, Root=str(self.root))
			return None
		try:
			st = local_path.lstat()
		except OSError:
			return None
		# Files have no content address, their identity is derived from
		# their inode and last change.
		content_id = f"{st.st_ino:x}-{st.st_size:x}-{st.st_mtime_ns:x}"
		if local_path.is_symlink():
			return Resolved(content_id, SymlinkSource(os.readlink(local_path)))
		elif local_path.is_file():
			return Resolved(content_id, FileSource(local_path))
		else:
			return None


class UpstreamResolver:
	"""Resolves paths to objects served by an upstream HTTP server. A `HEAD`
	request tells if the object exists, and gives its size and entity tag."""

	def __init__(
		self,
		base: str,
		*,
		client: httpx.Client | None = None,
		timeout: float = UPSTREAM_TIMEOUT,
	):
		self.base: str = base.rstrip("/")
		self.isClientOwned: bool = client is None
		self.client: httpx.Client = client or httpx.Client(
			timeout=timeout, follow_redirects=True
		)

	def url(self, path: str) -> str:
		return f"{self.base}/{quote(path.lstrip('/'))}"

	def resolve(self, path: str) -> Resolved | None:
		url = self.url(path)
		try:
			response = self.client.head(url)
		except httpx.HTTPError as e:
			# The source will fail to give its size, and the gateway will
			# report it.
			warning("Upstream is unreachable", URL=url, Error=str(e))
			return Resolved(path, HTTPSource(url, client=self.client))
		if response.status_code in (404, 410):
			return None
		length = response.headers.get("content-length")
		size = (
			int(length)
			if response.status_code < 400 and length and length.isdigit()
			else None
		)
		etag = response.headers.get("etag")
		content_id = etag.removeprefix("W/").strip('"') if etag else path
		logged(debug) and debug("Resolved upstream", URL=url, Size=size, ID=content_id)
		return Resolved(content_id, HTTPSource(url, client=self.client, size=size))

	def close(self) -> None:
		if self.isClientOwned:
			self.client.close()


# -----------------------------------------------------------------------------
#
# HANDLER
#
# -----------------------------------------------------------------------------


class FileGateway:
	"""The request handler, mapping `/<namespace>/<path>` to the resolver
	registered for the namespace."""

	METHODS: tuple[str, ...] = ("GET", "HEAD")

	def __init__(
		self,
		resolvers: dict[str, Resolver],
		gateway: Gateway | None = None,
	):
		self.resolvers: dict[str, Resolver] = resolvers
		self.gateway: Gateway = gateway or Gateway()

	def __call__(self, writer: ResponseWriter, request: HTTPRequest) -> ResponseOutcome:
		begin = time.monotonic()
		if request.method not in self.METHODS:
			writer.setHeader("Allow", ", ".join(self.METHODS))
			writer.error("method not allowed", 405)
			return ResponseOutcome(405, False)
		content_path = ContentPath(posixpath.normpath(request.localPath or "/"))
		resolver = self.resolvers.get(content_path.namespace)
		resolved = (
			resolver.resolve("/".join(content_path.segments[1:])) if resolver else None
		)
		if resolved is None:
			writer.error(f"not found: {content_path}", 404)
			return ResponseOutcome(404, False)
		return self.gateway.serveFile(
			writer,
			request,
			content_path,
			resolved.contentID,
			resolved.source,
			begin,
		)

	def close(self) -> None:
		for resolver in self.resolvers.values():
			if close := getattr(resolver, "close", None):
				close()


# EOF
