"""Logging configuration.

This module wraps the :mod:`structlog` framework to provide structured logging for
clients and services. A chain of "processors" (callables) filters or transforms events
produced by log statements.

Components log through the async methods of a bound logger (``ainfo``, ``aerror``,
...), which run the processor chain in the default executor and keep the event loop
responsive.

Note:
    An *unbound* logger is a proxy that borrows its configuration from the global
    configuration set by :func:`natsrpc.log.configure`. Once a logger is bound by
    calling ``bind``, the global configuration is copied into the logger's local state
    and frozen. Prefer bound loggers in loops, since unbound loggers perform some
    introspection on every call.
"""

import functools
import logging
import typing
from collections.abc import MutableMapping
from typing import Any, Callable, Literal, Union

import orjson as json
import structlog
import structlog.processors
from structlog.typing import FilteringBoundLogger as Logger

from .exception import RpcError

__all__ = [
    'LEVELS',
    'Logger',
    'configure',
    'get_level_num',
    'get_logger',
]


Event = MutableMapping[str, Any]
ProcessorReturnType = Union[Event, str, bytes]
Processor = Callable[[Any, str, Event], ProcessorReturnType]
LEVELS: list[str] = ['debug', 'info', 'warning', 'error', 'critical']
"""Log severity levels, in ascending order of severity.

============ ================================= =========================================
Level        Description                       Example
============ ================================= =========================================
``debug``    Frequent, low-level tracing.      A call is issued.
``info``     Normal operation (default level). A durable method is registered.
``warning``  Unusual or anomalous events.      A call is retried (nobody responded).
``error``    Failure mode.                     A handler raised an exception.
``critical`` Cannot continue running.          Not used by the library itself.
============ ================================= =========================================
"""


def get_logger(*factory_args: Any, **context: Any) -> Logger:
    """Get an unbound logger.

    Parameters:
        factory_args: Positional arguments passed to the logger factory.
        context: Contextual variables added to every event produced by this logger.
    """
    return typing.cast(Logger, structlog.get_logger(*factory_args, **context))


@functools.lru_cache(maxsize=16)
def get_level_num(level_name: str, /, *, default: int = logging.DEBUG) -> int:
    """Translate a :mod:`logging` level name into its numeric value.

    Parameters:
        level_name: A case-insensitive name, such as ``'DEBUG'``.
        default: The numeric level to return if the name is invalid.

    Example:
        >>> get_level_num('INFO')
        20
        >>> assert get_level_num('DNE') == logging.DEBUG == 10
    """
    level = getattr(logging, level_name.upper(), None)
    return level if isinstance(level, int) else default


def _add_exc_context(_logger: Any, _method: str, event: Event, /) -> Event:
    """A processor to add the context of an :class:`RpcError` to the event.

    When the keys of the exception context clash with those of the event, the event's
    entries take priority.
    """
    exception = event.get('exc_info')
    if isinstance(exception, RpcError):
        event = {'error_code': exception.code, **exception.context, **event}
    return event


def configure(
    *,
    fmt: Literal['json', 'pretty'] = 'json',
    level: str = 'INFO',
) -> None:
    """Configure :mod:`structlog` with the desired log format and filtering.

    Parameters:
        fmt: The format of events written to standard output.
        level: The minimum log level (inclusive) that should be processed.

    For development, we recommend the ``'pretty'`` log format, which is human-readable
    and renders exception tracebacks but cannot be parsed. In production, we recommend
    the ``'json'`` format, which produces events in `jsonlines <https://jsonlines.org/>`_
    format (required entries shown):

    .. code-block:: json

        {"event":"Service registered","level":"info","timestamp":"2021-06-29T21:04:15Z"}
    """
    logging.captureWarnings(True)
    renderers: list[Processor] = []
    logger_factory: Callable[..., Union[structlog.PrintLogger, structlog.BytesLogger]]
    if fmt == 'pretty':
        renderers.append(structlog.dev.ConsoleRenderer(pad_event_to=40))
        logger_factory = structlog.PrintLoggerFactory()
    else:
        renderers.append(structlog.processors.format_exc_info)
        renderers.append(structlog.processors.JSONRenderer(serializer=json.dumps))
        logger_factory = structlog.BytesLoggerFactory()

    structlog.configure(
        cache_logger_on_first_use=True,
        wrapper_class=structlog.make_filtering_bound_logger(get_level_num(level)),
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _add_exc_context,
            structlog.processors.TimeStamper(fmt='iso'),
            *renderers,
        ],
        logger_factory=logger_factory,
    )
