import posixpath
import re
import time
from urllib.parse import quote

from .http.model import HTTPRequest, ResponseWriter
from .model import ContentPath

# --
# Default header policies for content served by identifier: the identifier
# is the entity tag, immutable namespaces are cached forever, and the
# download name comes from the query or the path.

IMMUTABLE_CACHE_CONTROL: str = "public, max-age=29030400, immutable"

# Namespaces where the segment after the namespace is a root identifier
# (like `/ipns/example.com`) rather than a file name.
ROOT_NAMESPACES: tuple[str, ...] = ("ipfs", "ipns")

NON_ASCII = re.compile(r"[^\x00-\x7f]")

# Characters kept as-is when escaping a path segment
SEGMENT_SAFE: str = "$&+,:;=@"


def etag(contentID: str) -> str:
	return f'"{contentID}"'


def addCacheControlHeaders(
	writer: ResponseWriter,
	request: HTTPRequest,
	contentPath: ContentPath,
	contentID: str,
) -> float | None:
	"""Sets `Etag` and `Cache-Control`, returning the modification time to
	announce, if any."""
	writer.setHeader("Etag", etag(contentID))
	if contentPath.mutable:
		# Mutable content has no known modification time, we use now so that
		# browsers apply their caching heuristics.
		return time.time()
	else:
		writer.setHeader("Cache-Control", IMMUTABLE_CACHE_CONTROL)
		# No `Last-Modified`, superseded by `Cache-Control`
		return None


def contentDisposition(filename: str, dispositionType: str) -> str:
	"""Formats a `Content-Disposition` value, with an RFC 5987 `filename*`
	when the name is not plain ASCII."""
	ascii_name = quote(NON_ASCII.sub("_", filename), safe=SEGMENT_SAFE)
	utf8_name = quote(filename, safe=SEGMENT_SAFE)
	if ascii_name == utf8_name:
		return f'{dispositionType}; filename="{utf8_name}"'
	else:
		return f"{dispositionType}; filename=\"{ascii_name}\"; filename*=UTF-8''{utf8_name}"


def filenameOf(contentPath: ContentPath) -> str:
	"""The file name implied by the content path, empty when the path only
	designates a root."""
	path = posixpath.normpath(contentPath.value) if contentPath.value else ""
	if contentPath.namespace in ROOT_NAMESPACES and path.count("/") <= 2:
		return ""
	return posixpath.basename(path)


def addContentDispositionHeader(
	writer: ResponseWriter,
	request: HTTPRequest,
	contentPath: ContentPath,
) -> str:
	"""Sets `Content-Disposition` when a `filename` parameter is given, and
	returns the name of the served content."""
	if filename := request.param("filename"):
		disposition = "attachment" if request.param("download") == "true" else "inline"
		writer.setHeader("Content-Disposition", contentDisposition(filename, disposition))
		return filename
	return filenameOf(contentPath)


# EOF
