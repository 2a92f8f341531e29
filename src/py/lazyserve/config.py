from os import getenv

PORT: int = int(getenv("PORT", 8000))

# If we're starting in a development environment, we want it to be accessible from everywhere
HOST: str = getenv("HOST", "0.0.0.0")  # nosec: B104

LOG_REQUESTS: bool = getenv("LAZYSERVE_LOG_REQUESTS", "1") == "1"

# How many bytes of content are inspected when the type can't be told
# from the name.
SNIFF_SIZE: int = int(getenv("LAZYSERVE_SNIFF_SIZE", 3072))

# Size of the chunks read from content sources, both when copying to the
# client and when skipping forward.
CHUNK_SIZE: int = int(getenv("LAZYSERVE_CHUNK_SIZE", 64_000))

# Namespaces whose content never changes for a given path, and can be
# cached forever.
IMMUTABLE_NAMESPACES: tuple[str, ...] = tuple(
	_.strip() for _ in getenv("LAZYSERVE_IMMUTABLE", "ipfs").split(",") if _.strip()
)

UPSTREAM_TIMEOUT: float = float(getenv("LAZYSERVE_UPSTREAM_TIMEOUT", 30.0))

# EOF
