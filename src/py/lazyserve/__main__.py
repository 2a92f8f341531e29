import argparse
import sys

from . import config
from .gateway import Gateway
from .server import run
from .service import DirectoryResolver, FileGateway, Resolver, UpstreamResolver
from .telemetry import LatencyHistogram
from .utils.logging import LogLevel, info, setLevel


def main(args: list[str] | None = None) -> None:
	parser = argparse.ArgumentParser(
		prog="lazyserve",
		description="Serves files and remote objects with lazy range support",
		formatter_class=argparse.ArgumentDefaultsHelpFormatter,
	)
	source = parser.add_mutually_exclusive_group()
	source.add_argument(
		"-r",
		"--root",
		action="store",
		dest="root",
		help="Serves files from this local directory",
		default=".",
	)
	source.add_argument(
		"-u",
		"--upstream",
		action="store",
		dest="upstream",
		help="Serves objects from this base URL",
	)
	parser.add_argument(
		"-n",
		"--namespace",
		action="store",
		dest="namespace",
		help="The first path segment under which content is served",
		default="files",
	)
	parser.add_argument(
		"-H",
		"--host",
		action="store",
		dest="host",
		help="Specifies the host to bind to",
		default=config.HOST,
	)
	parser.add_argument(
		"-p",
		"--port",
		action="store",
		dest="port",
		type=int,
		help="Specifies the port",
		default=config.PORT,
	)
	parser.add_argument(
		"-d",
		"--debug",
		action="store_true",
		dest="debug",
		help="Logs debug messages and metrics",
	)
	options = parser.parse_args(sys.argv[1:] if args is None else args)
	if options.debug:
		setLevel(LogLevel.Debug)

	resolver: Resolver = (
		UpstreamResolver(options.upstream)
		if options.upstream
		else DirectoryResolver(options.root)
	)
	handler = FileGateway(
		{options.namespace: resolver}, Gateway(metrics=LatencyHistogram())
	)
	info(
		"Starting lazyserve",
		Namespace=options.namespace,
		Source=options.upstream or options.root,
	)
	try:
		run(handler, host=options.host, port=options.port)
	finally:
		handler.close()


if __name__ == "__main__":
	main()

# EOF
