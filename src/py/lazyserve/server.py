import asyncio
import errno
import socket
import threading
from dataclasses import dataclass
from signal import SIGINT, SIGTERM
from typing import Any, Callable, NamedTuple

from .config import HOST, LOG_REQUESTS, PORT
from .http.model import (
	BaseResponseWriter,
	HTTPBodyWriter,
	HTTPProcessingStatus,
	HTTPRequest,
	HTTPResponse,
	ResponseWriter,
)
from .http.parser import HTTPParser
from .http.status import HTTP_STATUS
from .utils.limits import LimitType, unlimit
from .utils.logging import debug, error, event, exception, info, logged, warning

# A handler replies to a request through the writer. It is run in a worker
# thread, so it can block on content sources.
Handler = Callable[[ResponseWriter, HTTPRequest], Any]


@dataclass(slots=True)
class ServerState:
	isRunning: bool = True

	def stop(self) -> None:
		info("Server stopping…")
		self.isRunning = False

	def onException(
		self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
	) -> None:
		if e := context.get("exception"):
			exception(e)


class ServerOptions(NamedTuple):
	host: str = "0.0.0.0"  # nosec: B104
	port: int = 8000
	# Connections beyond that are refused by the system
	backlog: int = 10_000
	# Maximum time for a client to accept a chunk of the response
	timeout: float = 10.0
	# How often the accept loop checks the stop condition
	polling: float = 1.0
	readsize: int = 4_096
	# Idle clients are disconnected after that many seconds
	keepalive: float = 3_600
	logRequests: bool = True
	condition: Callable[[], bool] | None = None
	stopSignals: bool = True


OPTIONS: ServerOptions = ServerOptions()


def cannedResponse(status: int, message: str | None = None) -> bytes:
	"""A complete response sent by the server itself, after which the
	connection is closed."""
	body: bytes = f"{message}\r\n".encode("ascii") if message else b""
	lines: list[str] = [
		f"HTTP/1.1 {status} {HTTP_STATUS.get(status, 'Unknown status')}",
		"Connection: close",
	]
	if body:
		lines += ["Content-Type: text/plain", f"Content-Length: {len(body)}"]
	return ("\r\n".join(lines) + "\r\n\r\n").encode("ascii") + body


NO_RESPONSE: bytes = cannedResponse(204)
BAD_REQUEST: bytes = cannedResponse(400, "Bad request")
HANDLER_FAILED: bytes = cannedResponse(500, "Internal server error: Request not sent")

# Statuses for which a response never has a body
NO_BODY_STATUSES: frozenset[int] = frozenset((204, 304))


def isPersistent(request: HTTPRequest) -> bool:
	"""Tells if the connection can be reused once the request is answered."""
	return (
		request.protocol != "HTTP/1.0"
		and (request.header("Connection") or "").lower() != "close"
	)


# -----------------------------------------------------------------------------
#
# WRITERS
#
# -----------------------------------------------------------------------------


class SocketBodyWriter(HTTPBodyWriter):
	"""Sends bytes on a non-blocking client socket, from the event loop."""

	def __init__(
		self,
		client: socket.socket,
		loop: asyncio.AbstractEventLoop,
	) -> None:
		super().__init__()
		self.client: socket.socket = client
		self.loop: asyncio.AbstractEventLoop = loop

	async def _writeBytes(self, chunk: bytes) -> bool:
		await self.loop.sock_sendall(self.client, chunk)
		return True


class AIOResponseWriter(BaseResponseWriter):
	"""A response writer used from a worker thread, sending through the
	body writer on the event loop. Each write blocks until the bytes are
	handed to the socket, so slow clients slow down the content reads."""

	def __init__(
		self,
		writer: HTTPBodyWriter,
		loop: asyncio.AbstractEventLoop,
		*,
		timeout: float = OPTIONS.timeout,
		method: str = "GET",
	) -> None:
		super().__init__(method=method)
		self.writer: HTTPBodyWriter = writer
		self.loop: asyncio.AbstractEventLoop = loop
		self.timeout: float = timeout
		self.sent: HTTPResponse | None = None
		self.written: int = 0

	def _send(self, data: bytes) -> None:
		future = asyncio.run_coroutine_threadsafe(self.writer.write(data), self.loop)
		try:
			future.result(self.timeout)
		except TimeoutError as e:
			future.cancel()
			raise ConnectionError("Client did not accept data in time") from e

	def _writeHead(self, response: HTTPResponse) -> None:
		self.sent = response
		self._send(response.head())

	def _writeBytes(self, data: bytes) -> None:
		self._send(data)
		self.written += len(data)

	def isComplete(self, method: str) -> bool:
		"""Tells if the response is delimited, so that the connection can be
		reused for the next request."""
		if self.sent is None:
			return False
		elif method == "HEAD" or self.sent.status in NO_BODY_STATUSES:
			return True
		length = self.sent.getHeader("Content-Length")
		return length is not None and length.isdigit() and int(length) == self.written


# -----------------------------------------------------------------------------
#
# SERVER
#
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ClientStats:
	received: int = 0
	requests: int = 0
	responses: int = 0


# NOTE: Requests are read and responses written on the event loop, while
# handlers run in worker threads.
class AIOSocketServer:
	"""Serves HTTP/1.1 from a listening socket, with one task per client."""

	@staticmethod
	async def Receive(
		client: socket.socket,
		buffer: bytearray,
		loop: asyncio.AbstractEventLoop,
		timeout: float,
	) -> int | None:
		"""Waits for the next payload from the client, returning how many
		bytes were received, or `None` if the client stayed idle."""
		try:
			return await asyncio.wait_for(
				loop.sock_recv_into(client, buffer), timeout=timeout
			)
		except TimeoutError:
			return None

	@classmethod
	async def OnClient(
		cls,
		handler: Handler,
		client: socket.socket,
		*,
		loop: asyncio.AbstractEventLoop,
		options: ServerOptions,
	) -> None:
		"""Answers the requests of a client until it goes away, stays idle
		or the connection can't be reused."""
		buffer = bytearray(options.readsize)
		parser = HTTPParser()
		writer = SocketBodyWriter(client, loop)
		stats = ClientStats()
		try:
			while not writer.shouldClose:
				n = await cls.Receive(client, buffer, loop, options.keepalive)
				if n is None:
					logged(debug) and debug("Client is idle", Client=f"{id(client):x}")
					break
				elif n == 0:
					if stats.received and not stats.requests:
						warning(
							"Client disconnected before sending a request",
							Received=stats.received,
						)
					break
				stats.received += n
				# The payload may hold more than one request when the client
				# pipelines them.
				for atom in parser.feed(bytes(buffer[:n])):
					if atom is HTTPProcessingStatus.BadFormat:
						warning("Malformed request", Requests=stats.requests)
						await writer.write(BAD_REQUEST)
						writer.shouldClose = True
					elif isinstance(atom, HTTPRequest):
						stats.requests += 1
						if await cls.SendResponse(atom, handler, writer, loop, options):
							stats.responses += 1
						if not isPersistent(atom):
							writer.shouldClose = True
					if writer.shouldClose:
						break
			if stats.responses != stats.requests:
				warning(
					"Requests left without response",
					Requests=stats.requests,
					Responses=stats.responses,
				)
		except ConnectionError as e:
			logged(debug) and debug("Client connection lost", Error=str(e))
		except Exception as e:
			exception(e)
		finally:
			client.close()

	@staticmethod
	async def SendResponse(
		request: HTTPRequest,
		handler: Handler,
		writer: HTTPBodyWriter,
		loop: asyncio.AbstractEventLoop,
		options: ServerOptions = OPTIONS,
	) -> bool:
		"""Runs the handler for the request in a worker thread, returning
		`True` when a response was sent. The body writer is flagged to close
		when the response could not be completed."""
		if options.logRequests:
			event(request.method, request.path)
		response = AIOResponseWriter(
			writer, loop, timeout=options.timeout, method=request.method
		)
		try:
			await asyncio.to_thread(handler, response, request)
		except ConnectionError as e:
			logged(debug) and debug("Client went away", Path=request.path, Error=str(e))
			writer.shouldClose = True
			return response.isHeadSent
		except Exception as e:
			exception(e, f"Handler failed for {request.method} {request.path}")
			writer.shouldClose = True
			if not response.isHeadSent:
				await writer.write(HANDLER_FAILED)
			return response.isHeadSent
		if not response.isHeadSent:
			warning(
				"Handler did not send a response",
				Method=request.method,
				Path=request.path,
			)
			await writer.write(NO_RESPONSE)
			writer.shouldClose = True
		elif not response.isComplete(request.method):
			# The client can't know where the response ends
			writer.shouldClose = True
		return True

	@staticmethod
	def Listen(options: ServerOptions) -> socket.socket:
		"""Creates the non-blocking listening socket."""
		server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
		server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
		server.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
		try:
			server.bind((options.host, options.port))
		except OSError:
			server.close()
			error(f"Unable to bind to {options.host}:{options.port}", "HOSTPORTERR")
			raise
		server.listen(options.backlog)
		server.setblocking(False)
		return server

	@classmethod
	async def Serve(
		cls,
		handler: Handler,
		options: ServerOptions = OPTIONS,
	) -> None:
		"""Accepts clients until a stop signal is received or the
		`condition` of the options turns false."""
		server = cls.Listen(options)
		loop = asyncio.get_running_loop()
		state = ServerState()
		# Signal handlers can only be installed from the main thread
		if (
			options.stopSignals
			and threading.current_thread() is threading.main_thread()
		):
			for sig in (SIGINT, SIGTERM):
				loop.add_signal_handler(sig, state.stop)
		loop.set_exception_handler(state.onException)
		info(
			"Lazyserve listening",
			icon="🚀",
			Host=options.host,
			Port=options.port,
		)

		clients: set[asyncio.Task[None]] = set()
		try:
			while state.isRunning and (options.condition is None or options.condition()):
				try:
					client, _ = await asyncio.wait_for(
						loop.sock_accept(server), timeout=options.polling
					)
				except TimeoutError:
					continue
				except OSError as e:
					if e.errno == errno.EMFILE:
						# Out of descriptors until some clients go away
						warning("Too many open files", Clients=len(clients))
						await asyncio.sleep(0.1)
					else:
						exception(e)
					continue
				task = loop.create_task(
					cls.OnClient(handler, client, loop=loop, options=options)
				)
				clients.add(task)
				task.add_done_callback(clients.discard)
		finally:
			server.close()
			for task in clients:
				task.cancel()
			await asyncio.gather(*clients, return_exceptions=True)


def run(
	handler: Handler,
	*,
	host: str = HOST,
	port: int = PORT,
	backlog: int = OPTIONS.backlog,
	condition: Callable[[], bool] | None = None,
	timeout: float = OPTIONS.timeout,
	polling: float = OPTIONS.polling,
	logRequests: bool = LOG_REQUESTS,
	keepalive: float = OPTIONS.keepalive,
) -> None:
	"""Runs the server until it is stopped, serving every request with
	`handler`."""
	unlimit(LimitType.Files)
	try:
		asyncio.run(
			AIOSocketServer.Serve(
				handler,
				ServerOptions(
					host=host,
					port=port,
					backlog=backlog,
					timeout=timeout,
					polling=polling,
					keepalive=keepalive,
					logRequests=logRequests,
					condition=condition,
				),
			)
		)
	except KeyboardInterrupt:
		event("ManualShutdown")
	event("EOK")


# EOF
