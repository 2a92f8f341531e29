import os
import sys
import time
from contextvars import ContextVar
from enum import Enum
from typing import Any, NamedTuple, TypeAlias

# --
# Structured logging. Every entry is a `LogEntry` tuple written to stderr
# as a single line, with its context rendered as `key=value` pairs.

ERR = sys.stderr

# SEE: https://no-color.org/
COLOR: bool = "FORCE_COLOR" in os.environ or (
	"NO_COLOR" not in os.environ and ERR.isatty()
)
BOLD: str = "\033[1m" if COLOR else ""
RESET: str = "\033[0m" if COLOR else ""


def color(code: int) -> str:
	return f"\033[0;38;5;{code}m" if COLOR else ""


# Values that can be attached to a log entry as context
TPrimitive: TypeAlias = (
	bool | int | float | str | bytes | None | list[Any] | tuple[Any, ...] | dict[str, Any]
)

# The component emitting the entries
LogOrigin: ContextVar[str] = ContextVar("LogOrigin", default="lazyserve")
# The span the entries belong to, if any
LogSpan: ContextVar[str | int | None] = ContextVar("LogSpan", default=None)


class LogType(Enum):
	Message = 0
	Metric = 10  # A data point
	Event = 20


class LogLevel(Enum):
	Debug = 0
	Info = 10
	Warning = 30
	Error = 40  # A managed error
	Exception = 50  # An un-managed error


LEVEL_COLORS: dict[LogLevel, int] = {
	LogLevel.Debug: 31,
	LogLevel.Info: 75,
	LogLevel.Warning: 202,
	LogLevel.Error: 160,
	LogLevel.Exception: 124,
}

# Entries below that level are neither built nor sent
LOG_LEVEL: LogLevel = LogLevel.Info


class LogEntry(NamedTuple):
	origin: str
	time: float
	type: LogType = LogType.Message
	level: LogLevel = LogLevel.Info
	message: str | None = None
	name: str | None = None
	value: TPrimitive | None = None
	context: dict[str, TPrimitive] | None = None
	icon: str | None = None
	span: str | int | None = None


def formatValue(value: Any) -> str:
	if value is None or value == () or value == [] or value == {}:
		return "◌"
	elif isinstance(value, dict):
		return " ".join(f"{BOLD}{k}{RESET}={formatValue(v)}" for k, v in value.items())
	elif isinstance(value, (list, tuple)):
		return ",".join(formatValue(_) for _ in value)
	elif isinstance(value, str):
		return repr(value) if " " in value else value
	elif isinstance(value, bool):
		return "✓" if value else "✗"
	elif isinstance(value, float):
		return f"{value:0.4f}" if value < 1.0 else f"{value:0.2f}"
	else:
		return str(value)


def formatEntry(entry: LogEntry) -> str:
	"""Renders the entry as a line, without its trailing newline."""
	span: str = f"@{entry.span}" if entry.span is not None else ""
	prefix: str = f"{color(LEVEL_COLORS[entry.level])}{BOLD}[{entry.origin}{span}]"
	context: str = formatValue(entry.context)
	if entry.type is LogType.Message:
		icon: str = f" {entry.icon}" if entry.icon else ""
		code: str = f" ({entry.value})" if entry.value is not None else ""
		return f"{prefix}{RESET}{icon} {entry.message}{code} {context}{RESET}"
	else:
		return f"{prefix} {entry.name}{RESET} {formatValue(entry.value)} {context}{RESET}"


def send(entry: LogEntry) -> LogEntry:
	if entry.level.value >= LOG_LEVEL.value:
		ERR.write(f"{formatEntry(entry)}\n")
		ERR.flush()
	return entry


def log(
	level: LogLevel,
	*,
	type: LogType = LogType.Message,
	message: str | None = None,
	name: str | None = None,
	value: TPrimitive | None = None,
	icon: str | None = None,
	context: dict[str, TPrimitive],
) -> LogEntry:
	return send(
		LogEntry(
			origin=LogOrigin.get(),
			time=time.time(),
			type=type,
			level=level,
			message=message,
			name=name,
			value=value,
			context=context,
			icon=icon,
			span=LogSpan.get(),
		)
	)


def logged(item: Any) -> bool:
	"""Tells if the given logging function currently produces output, so
	that callers can skip building expensive entries, as in
	`logged(debug) and debug(…)`."""
	return LOGGED_LEVELS.get(item, LogLevel.Info).value >= LOG_LEVEL.value


def debug(
	message: str, *, icon: str | None = None, **context: TPrimitive
) -> LogEntry | None:
	if not logged(debug):
		return None
	return log(LogLevel.Debug, message=message, icon=icon, context=context)


def info(message: str, *, icon: str | None = None, **context: TPrimitive) -> LogEntry:
	return log(LogLevel.Info, message=message, icon=icon, context=context)


def warning(message: str, *, icon: str | None = None, **context: TPrimitive) -> LogEntry:
	return log(LogLevel.Warning, message=message, icon=icon, context=context)


def error(
	message: str,
	code: int | str | None,
	*,
	icon: str | None = None,
	**context: TPrimitive,
) -> LogEntry:
	"""Logs a managed error, `code` being an HTTP status or an error
	identifier."""
	return log(LogLevel.Error, message=message, value=code, icon=icon, context=context)


def event(event: str, value: Any = None, **context: TPrimitive) -> LogEntry:
	return log(LogLevel.Info, type=LogType.Event, name=event, value=value, context=context)


def metric(name: str, value: int | float, **context: TPrimitive) -> LogEntry | None:
	"""Logs a data point, which is how metrics sinks surface observations."""
	if not logged(metric):
		return None
	return log(
		LogLevel.Debug, type=LogType.Metric, name=name, value=value, context=context
	)


def exception(
	exception: BaseException,
	message: str | None = None,
) -> BaseException:
	"""Writes the exception and its traceback, one frame per line."""
	try:
		span = LogSpan.get()
		lines: list[str] = [
			" ".join(
				_
				for _ in (
					f"!!! EXCP{f' @{span}' if span is not None else ''}",
					f"{message}:" if message else "",
					f"[{exception.__class__.__name__}] {exception}",
				)
				if _
			)
		]
		tb = exception.__traceback__
		while tb:
			code = tb.tb_frame.f_code
			lines.append(
				f"... in {code.co_name:15s} at {tb.tb_lineno:4d} in {code.co_filename}"
			)
			tb = tb.tb_next
		ERR.write("\n".join(lines) + "\n")
		ERR.flush()
	except Exception:  # nosec: B110
		# This is called from exception handlers, so it must never raise.
		pass
	return exception


def setLevel(level: LogLevel) -> LogLevel:
	"""Sets the minimum level of the entries sent, returning the previous
	one."""
	global LOG_LEVEL
	previous = LOG_LEVEL
	LOG_LEVEL = level
	return previous


LOGGED_LEVELS: dict[Any, LogLevel] = {
	debug: LogLevel.Debug,
	metric: LogLevel.Debug,
	info: LogLevel.Info,
	event: LogLevel.Info,
	warning: LogLevel.Warning,
	error: LogLevel.Error,
}


# EOF
