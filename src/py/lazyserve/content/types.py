import codecs
import json
import mimetypes
import os
from typing import BinaryIO

import filetype

from ..config import SNIFF_SIZE
from ..model import DetectionError, RewindError

mimetypes.init()

# Compression suffixes are reported as encodings by `mimetypes`, and would
# otherwise not resolve to a type.
MIME_TYPES: dict[str, str] = dict(
	bz2="application/x-bzip2",
	gz="application/x-gzip",
	xz="application/x-xz",
	zst="application/zstd",
)

SYMLINK_TYPE: str = "inode/symlink"
DEFAULT_TYPE: str = "application/octet-stream"

# SEE: https://mimesniff.spec.whatwg.org/#identifying-a-resource-with-an-unknown-mime-type
HTML_SIGNATURES: tuple[bytes, ...] = (
	b"<!DOCTYPE HTML",
	b"<HTML",
	b"<HEAD",
	b"<SCRIPT",
	b"<IFRAME",
	b"<H1",
	b"<DIV",
	b"<FONT",
	b"<TABLE",
	b"<A",
	b"<STYLE",
	b"<TITLE",
	b"<B",
	b"<BODY",
	b"<BR",
	b"<P",
	b"<!--",
)

TEXT_BOMS: tuple[tuple[bytes, str], ...] = (
	(codecs.BOM_UTF8, "text/plain; charset=utf-8"),
	(codecs.BOM_UTF16_BE, "text/plain; charset=utf-16be"),
	(codecs.BOM_UTF16_LE, "text/plain; charset=utf-16le"),
)

# Control characters that never appear in text
BINARY_BYTES: frozenset[int] = frozenset(
	list(range(0x00, 0x09)) + [0x0B] + list(range(0x0E, 0x1B)) + list(range(0x1C, 0x20))
)

WHITESPACE: bytes = b"\t\n\x0c\r "


def contentType(name: str) -> str | None:
	"""Guesses the content type from the extension of the given name, using
	the system registry."""
	# Leading dots are not extensions, so `.bashrc` has none
	ext: str = os.path.splitext(name)[1]
	if not ext:
		return None
	elif res := MIME_TYPES.get(ext[1:].lower()):
		return res
	else:
		return (
			mimetypes.guess_type(f"file{ext}", strict=False)[0]
			or mimetypes.guess_type(f"file{ext.lower()}", strict=False)[0]
		)


def isText(data: bytes) -> bool:
	return not any(_ in BINARY_BYTES for _ in data)


def isUTF8(data: bytes) -> bool:
	"""Tells if the data is valid UTF-8, tolerating a truncated trailing
	sequence as the data is typically a prefix."""
	try:
		codecs.getincrementaldecoder("utf-8")().decode(data, final=False)
		return True
	except UnicodeDecodeError:
		return False


def sniffMarkup(data: bytes) -> str | None:
	text = data.lstrip(WHITESPACE)
	upper = text[:64].upper()
	for sig in HTML_SIGNATURES:
		if upper.startswith(sig):
			n = len(sig)
			# The signature must be followed by a tag-terminating byte
			if len(text) > n and text[n] in b" >":
				return "text/html; charset=utf-8"
	if upper.startswith(b"<SVG") or upper.startswith(b"<?XML") and b"<svg" in text:
		return "image/svg+xml"
	elif upper.startswith(b"<?XML"):
		return "text/xml; charset=utf-8"
	return None


def sniffJSON(data: bytes) -> str | None:
	text = data.strip(WHITESPACE)
	if not text or text[0] not in b"{[":
		return None
	try:
		json.loads(text)
	except ValueError:
		# May just be a truncated prefix, in which case it's text
		return None
	return "application/json"


def sniff(data: bytes) -> str:
	"""Detects the content type from the first bytes of some content. This
	always returns a type, falling back to `application/octet-stream` once
	every detection has failed."""
	if not data:
		return "text/plain"
	if kind := filetype.guess(data):
		return kind.mime
	for bom, ctype in TEXT_BOMS:
		if data.startswith(bom):
			return ctype
	if not isText(data):
		return DEFAULT_TYPE
	elif ctype := sniffMarkup(data) or sniffJSON(data):
		return ctype
	elif isUTF8(data):
		return "text/plain; charset=utf-8"
	else:
		return "text/plain"


def normalize(ctype: str) -> str:
	"""Strips the parameters of HTML content types so that clients decide
	on the encoding themselves."""
	return "text/html" if ctype.startswith("text/html;") else ctype


def peek(content: BinaryIO, size: int) -> bytes:
	"""Reads up to `size` bytes, tolerating short reads."""
	data = bytearray()
	while len(data) < size:
		chunk = content.read(size - len(data))
		if not chunk:
			break
		data += chunk
	return bytes(data)


def resolveContentType(
	name: str,
	content: BinaryIO,
	*,
	isSymlink: bool = False,
	sniffSize: int = SNIFF_SIZE,
) -> str:
	"""Returns the content type for the content with the given name,
	the content being positioned at offset 0. The type is derived from the
	name when possible, otherwise from the content, which is rewound
	afterwards. Raises `DetectionError` or `RewindError`."""
	if isSymlink:
		# The target is not what we'd be sniffing, so we don't look further.
		return SYMLINK_TYPE
	if ctype := contentType(name):
		return normalize(ctype)
	try:
		data = peek(content, sniffSize)
	except (OSError, ValueError) as e:
		raise DetectionError(f"cannot detect content-type: {e}") from e
	ctype = sniff(data)
	try:
		content.seek(0)
	except (OSError, ValueError) as e:
		raise RewindError("seeker can't seek") from e
	return normalize(ctype)


# EOF
