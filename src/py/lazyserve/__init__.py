from .http.model import HTTPRequest, ResponseWriter, BufferedResponseWriter  # NOQA: F401
from .model import (  # NOQA: F401
	ContentError,
	ContentPath,
	ContentSource,
	ResponseOutcome,
	BytesSource,
	FileSource,
	SymlinkSource,
	ChunkedSource,
)
from .gateway import Gateway, StatusResponseWriter  # NOQA: F401
from .service import FileGateway, DirectoryResolver, UpstreamResolver  # NOQA: F401
from .server import run  # NOQA: F401


# EOF
