"""Expose handlers to remote callers.

A *runner* owns one subscription and one task (a worker) that processes the
subscription's messages one at a time, in delivery order. Runners for different
subscriptions run concurrently and share nothing but the broker.

* :class:`ServiceRunner` serves one method over a plain queue-group subscription.
* :class:`DurableServiceRunner` serves one method from a stream through a durable
  consumer, acknowledging every delivery it settles.
* :class:`EventSubscription` dispatches fire-and-forget events and never replies.

A method handler takes exactly one argument, the sequence of call arguments. Use
:func:`positional` or a :class:`Handler` subclass to expose ordinary functions whose
parameters are positional.
"""

import abc
import asyncio
import enum
import functools
import inspect
import types
import typing
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, TypeVar, Union

from . import envelope
from .broker import (
    AckPolicy,
    Broker,
    ConsumerRecord,
    LogMessage,
    Message,
    StreamOptions,
    Subscription,
)
from .envelope import EMPTY, Err, Ok
from .exception import MalformedPayloadError, ProvisioningError
from .log import Logger, get_logger
from .provision import StreamProvisioner
from .registry import SubscriptionRegistry
from .subject import durable_name_for, subject_for

__all__ = [
    'DurableServiceRunner',
    'EventHandler',
    'EventSubscription',
    'Handler',
    'MethodHandler',
    'Runner',
    'RunnerState',
    'ServiceRunner',
    'bind_handlers',
    'positional',
    'route',
]

MethodHandler = Callable[[list[Any]], Any]
EventHandler = Callable[[Any], Any]
RunnerType = TypeVar('RunnerType', bound='Runner')


class RunnerState(enum.Enum):
    """The lifecycle of a runner.

    State Diagram::

        start [-> PROVISIONING]? -> SUBSCRIBING -> RUNNING -> DRAINING -> CLOSED

    A runner whose setup fails, or whose subscription ends on its own, moves straight
    to ``CLOSED``.
    """

    PROVISIONING = enum.auto()
    SUBSCRIBING = enum.auto()
    RUNNING = enum.auto()
    DRAINING = enum.auto()
    CLOSED = enum.auto()


def positional(func: Callable[..., Any], /) -> MethodHandler:
    """Adapt a function with positional parameters to the method handler contract.

    Example:
        >>> add = positional(lambda a, b: a + b)
        >>> add([1, 2])
        3
    """
    if inspect.iscoroutinefunction(func):

        async def async_adapter(args: list[Any], /) -> Any:
            return await func(*args)

        return async_adapter

    def adapter(args: list[Any], /) -> Any:
        return func(*args)

    return adapter


async def invoke(
    handler: Callable[[Any], Any],
    arg: Any,
    /,
    *,
    timeout: Optional[float],
) -> Any:
    """Call a handler with a single argument.

    If the handler is synchronous (possibly blocking), the default executor performs
    the call.

    Raises:
        asyncio.TimeoutError: If the handler ran longer than ``timeout`` seconds.
        Exception: Whatever the handler raised.
    """
    if inspect.iscoroutinefunction(handler):
        call = handler(arg)
    else:
        call = asyncio.to_thread(handler, arg)
    result = await asyncio.wait_for(call, timeout)
    if inspect.isawaitable(result):
        result = await asyncio.wait_for(result, timeout)
    return result


def as_arguments(payload: Any, /) -> list[Any]:
    """Normalize a decoded request payload into an argument sequence.

    Example:
        >>> as_arguments([1, 2]), as_arguments({'a': 1}), as_arguments(EMPTY)
        ([1, 2], [{'a': 1}], [])
    """
    if payload is EMPTY:
        return []
    return payload if isinstance(payload, list) else [payload]


Method = Callable[..., Any]


class RemoteMethod(Protocol):
    """A remotely callable method (any signature, any return value)."""

    __remote__: str

    def __call__(self, /, *args: Any, **kwargs: Any) -> Any:
        ...


@typing.overload
def route(method_or_name: str, /) -> Callable[[Method], RemoteMethod]:
    ...


@typing.overload
def route(method_or_name: Method, /) -> RemoteMethod:
    ...


def route(
    method_or_name: Union[str, Method],
    /,
) -> Union[RemoteMethod, Callable[[Method], RemoteMethod]]:
    """Decorator for marking a method of a :class:`Handler` as remotely callable.

    Parameters:
        method_or_name: Either the method to be registered or the name it should be
            registered under. If the former, the method name is exposed.

    Returns:
        Either an identity decorator (if a name was provided) or the method provided.
    """
    if isinstance(method_or_name, str):

        def decorator(method: Method) -> RemoteMethod:
            remote_method = typing.cast(RemoteMethod, method)
            remote_method.__remote__ = typing.cast(str, method_or_name)
            return remote_method

        return decorator
    remote_method = typing.cast(RemoteMethod, method_or_name)
    remote_method.__remote__ = method_or_name.__name__
    return remote_method


class Handler:
    """An object whose bound methods are exposed as one service.

    Define a handler by subclassing :class:`Handler` and applying the :func:`route`
    decorator:

    >>> class MathHandler(Handler):
    ...     @route
    ...     async def add(self, a: int, b: int) -> int:
    ...         return a + b
    ...     @route('square-root')
    ...     def sqrt(self, n: float) -> float:
    ...         return n ** 0.5
    >>> sorted(MathHandler().handlers())
    ['add', 'square-root']
    """

    @functools.cached_property
    def _method_table(self) -> dict[str, types.MethodType]:
        """A mapping of method names to (possibly coroutine) bound methods."""
        # Need to use the class to avoid calling `getattr(...)` on this property.
        funcs = inspect.getmembers(self.__class__, inspect.isfunction)
        funcs = [(attr, func) for attr, func in funcs if hasattr(func, '__remote__')]
        return {func.__remote__: getattr(self, attr) for attr, func in funcs}

    def bind(self, name: str, /) -> MethodHandler:
        """Get the method handler for one routed method.

        Raises:
            KeyError: If no method is routed under this name.
        """
        return positional(self._method_table[name])

    def handlers(self) -> dict[str, MethodHandler]:
        """Method handlers for every routed method, keyed by exposed name."""
        return {name: self.bind(name) for name in self._method_table}


@dataclass(eq=False)  # type: ignore[misc]
class Runner(abc.ABC):  # https://github.com/python/mypy/issues/5374
    """Processes the messages of one subscription with a dedicated worker.

    Runners are hashable by identity so that a :class:`SubscriptionRegistry` can hold
    them. A started runner registers itself and unregisters once its worker exits.

    Parameters:
        broker: An open broker.
        subject: The subject to subscribe to.
        handler: Called once per message.
        registry: The registry tracking this runner.
        handler_timeout: Maximum duration (in seconds) to run the handler for. ``None``
            for no limit.
        drain_timeout: Maximum duration (in seconds) to wait for in-flight work when
            draining, after which the worker is cancelled.
        logger: A logger instance.
    """

    broker: Broker
    subject: str
    handler: Callable[[Any], Any]
    registry: SubscriptionRegistry = field(default_factory=SubscriptionRegistry)
    handler_timeout: Optional[float] = None
    drain_timeout: float = 30
    logger: Logger = field(default_factory=get_logger)
    state: RunnerState = field(default=RunnerState.SUBSCRIBING, init=False)
    subscription: Optional[Subscription] = field(default=None, init=False, repr=False)
    worker: Optional[asyncio.Task[None]] = field(default=None, init=False, repr=False)

    async def start(self: RunnerType, /) -> RunnerType:
        """Subscribe and start the worker.

        Raises:
            ProvisioningError: If a durable runner's stream or consumer could not be set
                up.
        """
        try:
            self.subscription = await self._subscribe()
        except BaseException:
            self.state = RunnerState.CLOSED
            raise
        self.state = RunnerState.RUNNING
        self.registry.register(self)
        self.worker = asyncio.create_task(self._process_forever(), name=self.subject)
        await self.logger.ainfo('Subscribed', subject=self.subject, runner=type(self).__name__)
        return self

    @abc.abstractmethod
    async def _subscribe(self, /) -> Subscription:
        """Open the subscription this runner processes."""

    @abc.abstractmethod
    async def handle_message(self, message: Message, /) -> None:
        """Process one message.

        Raises:
            Exception: If processing failed in a way the runner did not handle itself
                (for example, the broker rejected an acknowledgement). The worker logs
                the failure and moves on to the next message.
        """

    async def _process_forever(self, /, *, cooldown: float = 0.01) -> None:
        """Process messages until the subscription ends."""
        assert self.subscription is not None
        logger = self.logger.bind(subject=self.subject)
        try:
            async for message in self.subscription:
                try:
                    await self.handle_message(message)
                except Exception as exc:
                    await logger.aerror('Runner failed to process message', exc_info=exc)
                    await asyncio.sleep(cooldown)
        except Exception as exc:
            await logger.aerror('Subscription failed', exc_info=exc)
        finally:
            self.state = RunnerState.CLOSED
            self.registry.unregister(self)

    async def drain(self, /) -> None:
        """Stop intake, let in-flight messages finish, then release the subscription.

        The whole drain, including the broker flushing buffered messages, is bounded by
        ``drain_timeout``. After that the worker is cancelled.

        Raises:
            Exception: If the broker could not drain the subscription. The caller may
                fall back to :meth:`unsubscribe`.
        """
        if self.state is RunnerState.CLOSED or not self.subscription or not self.worker:
            return
        self.state = RunnerState.DRAINING
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.drain_timeout
        try:
            await asyncio.wait_for(self.subscription.drain(), self.drain_timeout)
        except asyncio.TimeoutError:
            pending = {self.worker}
        else:
            remaining = max(0, deadline - loop.time())
            _, pending = await asyncio.wait({self.worker}, timeout=remaining)
        if pending:
            await self.logger.awarning(
                'Drain timed out, cancelling worker',
                subject=self.subject,
                timeout=self.drain_timeout,
            )
            await self._cancel_worker()
        self.state = RunnerState.CLOSED
        self.registry.unregister(self)

    async def unsubscribe(self, /) -> None:
        """Release the subscription immediately, cancelling any in-flight message."""
        if self.state is RunnerState.CLOSED or not self.subscription:
            return
        self.state = RunnerState.DRAINING
        try:
            await self.subscription.unsubscribe()
        finally:
            await self._cancel_worker()
            self.state = RunnerState.CLOSED
            self.registry.unregister(self)

    async def _cancel_worker(self, /) -> None:
        if self.worker and not self.worker.done():
            self.worker.cancel()
            await asyncio.wait({self.worker})


@dataclass(eq=False)
class MethodRunner(Runner):
    """Serves one remote method: decodes, dispatches, replies, and settles.

    Every message is answered with an :class:`~natsrpc.envelope.Ok` or
    :class:`~natsrpc.envelope.Err` envelope if it carries a reply address. A handler
    failure is converted into an error reply and never stops the runner.
    """

    async def handle_message(self, message: Message, /) -> None:
        logger = self.logger.bind(subject=self.subject, reply=message.reply)
        await logger.adebug('Runner received message')
        try:
            payload = envelope.decode(message.data)
        except ValueError as exc:
            await logger.awarning('Received malformed payload', exc_info=exc)
            malformed = Err('malformed payload', MalformedPayloadError.__name__, str(exc))
            await self._reply(message, malformed, logger)
            await self.settle(message, success=True)
            return
        try:
            result = await invoke(
                self.handler,
                as_arguments(payload),
                timeout=self.handler_timeout,
            )
        except Exception as exc:
            await logger.aerror('Handler failed', exc_info=exc)
            await self._reply(message, Err.from_exception(exc), logger)
            await self.settle(message, success=False)
        else:
            await self._reply(message, Ok(result), logger)
            await self.settle(message, success=True)

    async def _reply(
        self,
        message: Message,
        outcome: envelope.Envelope,
        logger: Logger,
        /,
    ) -> None:
        """Publish a reply, if requested. Failures are logged, never raised."""
        if not message.reply:
            return
        try:
            data = envelope.encode(outcome)
        except TypeError as exc:
            data = envelope.encode(Err.from_exception(exc))
        try:
            await self.broker.publish(message.reply, data)
        except Exception as exc:
            await logger.aerror('Unable to send reply', exc_info=exc)

    async def settle(self, message: Message, /, *, success: bool) -> None:
        """Settle a processed message with the broker.

        Parameters:
            message: The processed message.
            success: Whether the message was handled (a malformed message counts as
                handled, since redelivering it cannot help).
        """


@dataclass(eq=False)
class ServiceRunner(MethodRunner):
    """Serves one method over a plain subscription.

    Parameters:
        queue: The queue group. Instances in the same group share the load.
    """

    queue: Optional[str] = None

    @classmethod
    def for_method(
        cls,
        broker: Broker,
        service: str,
        method: str,
        handler: MethodHandler,
        /,
        **options: Any,
    ) -> 'ServiceRunner':
        """Build a runner for ``<service>.<method>``, queue-grouped by service name."""
        if not options.get('queue'):
            options['queue'] = service
        return cls(broker, subject_for(service, method), handler, **options)

    async def _subscribe(self, /) -> Subscription:
        return await self.broker.subscribe(self.subject, queue=self.queue)


@dataclass(eq=False)
class DurableServiceRunner(MethodRunner):
    """Serves one method from a stream through a durable consumer.

    Every instance of a service attaches to the same durable consumer, so restarts and
    replicas resume from a shared position instead of creating divergent cursors.

    Deliveries are acknowledged after the handler succeeds and, by default, also after
    it fails: the error reply, not redelivery, reports the failure. This avoids endless
    redelivery of messages that fail deterministically, but means a failed message is
    dropped if nobody observes the reply. Set ``nak_on_error`` to have the broker
    redeliver failed messages instead.

    Parameters:
        durable_name: The durable consumer name.
        provisioner: Ensures the stream and consumer exist.
        stream_options: Configuration used if the stream must be created.
        queue: A queue group for load-balanced delivery across instances. A consumer
            without a queue group accepts only one bound subscription.
        nak_on_error: Negatively acknowledge messages whose handler failed.
        max_ack_pending: The maximum number of unacknowledged deliveries in flight.
    """

    durable_name: str = ''
    provisioner: Optional[StreamProvisioner] = None
    stream_options: Optional[StreamOptions] = None
    queue: Optional[str] = None
    nak_on_error: bool = False
    max_ack_pending: Optional[int] = None
    consumer: Optional[ConsumerRecord] = field(default=None, init=False, repr=False)

    def __post_init__(self, /) -> None:
        self.state = RunnerState.PROVISIONING
        if not self.durable_name:
            raise ValueError('durable name must be nonempty')
        if self.provisioner is None:
            self.provisioner = StreamProvisioner(self.broker, logger=self.logger)

    @classmethod
    def for_method(
        cls,
        broker: Broker,
        service: str,
        method: str,
        handler: MethodHandler,
        /,
        **options: Any,
    ) -> 'DurableServiceRunner':
        """Build a runner for ``<service>.<method>`` with its deterministic durable name.

        Instances of a service bind to the shared consumer through a queue group named
        after the service, unless another queue is given.
        """
        if not options.get('queue'):
            options['queue'] = service
        options.setdefault('durable_name', durable_name_for(service, method))
        return cls(broker, subject_for(service, method), handler, **options)

    async def _subscribe(self, /) -> Subscription:
        if not self.provisioner:  # pragma: no cover; always initialized by `__post_init__`
            raise ValueError('provisioner is not initialized')
        self.state = RunnerState.PROVISIONING
        record = await self.provisioner.ensure_stream(self.subject, self.stream_options)
        self.state = RunnerState.SUBSCRIBING
        consumer = ConsumerRecord(
            durable_name=self.durable_name,
            subject=self.subject,
            stream=record.name,
            queue=self.queue,
            ack_policy=AckPolicy.EXPLICIT,
            max_ack_pending=self.max_ack_pending,
        )
        await self.provisioner.ensure_consumer(consumer)
        try:
            subscription = await self.broker.subscribe_durable(consumer)
        except Exception as exc:
            raise ProvisioningError(
                'unable to bind durable consumer',
                stream=record.name,
                durable_name=self.durable_name,
            ) from exc
        self.consumer = consumer
        return subscription

    async def settle(self, message: Message, /, *, success: bool) -> None:
        if not isinstance(message, LogMessage):
            return
        if success or not self.nak_on_error:
            await message.ack()
        else:
            await message.nak()
            await self.logger.adebug(
                'Negatively acknowledged message',
                subject=self.subject,
                sequence=message.sequence,
            )


@dataclass(eq=False)
class EventSubscription(Runner):
    """Dispatches fire-and-forget events to a handler.

    The handler receives the decoded payload (``None`` for an empty payload). Handler
    failures and malformed payloads are logged and otherwise ignored.

    Parameters:
        queue: A queue group. Each event is delivered to only one member.
    """

    queue: Optional[str] = None

    async def _subscribe(self, /) -> Subscription:
        return await self.broker.subscribe(self.subject, queue=self.queue)

    async def handle_message(self, message: Message, /) -> None:
        logger = self.logger.bind(subject=self.subject)
        try:
            payload = envelope.decode(message.data)
        except ValueError as exc:
            await logger.awarning('Received malformed event', exc_info=exc)
            return
        try:
            await invoke(
                self.handler,
                None if payload is EMPTY else payload,
                timeout=self.handler_timeout,
            )
        except Exception as exc:
            await logger.aerror('Event handler failed', exc_info=exc)


def bind_handlers(
    handler: Union[Handler, Mapping[str, Callable[..., Any]]],
    /,
) -> dict[str, MethodHandler]:
    """Adapt a :class:`Handler` or a mapping of positional functions into method handlers."""
    if isinstance(handler, Handler):
        return handler.handlers()
    return {name: positional(func) for name, func in handler.items()}
