"""The messaging facade: register services, issue calls, and exchange events.

Example:
    >>> async def main():
    ...     async with Bus(NatsBroker()) as bus:
    ...         await bus.service('math', {'add': lambda a, b: a + b})
    ...         assert await bus.call('math', 'add', 1, 2) == 3
"""

import asyncio
import contextlib
import types
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from . import envelope
from .broker import Broker, NatsBroker, Retention, Storage, StreamOptions
from .client import CallOptions, Client
from .log import Logger, get_logger
from .provision import StreamProvisioner
from .registry import SubscriptionRegistry
from .service import (
    DurableServiceRunner,
    EventHandler,
    EventSubscription,
    Handler,
    MethodHandler,
    ServiceRunner,
    bind_handlers,
)
from .subject import subject_for

__all__ = ['Bus']

ServiceHandler = Union[Handler, Mapping[str, Callable[..., Any]]]


@dataclass
class Bus:
    """Owns a broker connection and everything that depends on it.

    Entering the bus opens the broker. Exiting it drains every live subscription (so
    that in-flight requests finish) before closing the broker.

    Parameters:
        broker: The broker to open and close.
        call_options: The default call options.
        stream_options: Configuration for streams created on demand.
        logger: A logger instance.
    """

    broker: Broker
    call_options: CallOptions = CallOptions()
    stream_options: StreamOptions = StreamOptions()
    logger: Logger = field(default_factory=get_logger)
    registry: SubscriptionRegistry = field(init=False, repr=False)
    provisioner: StreamProvisioner = field(init=False, repr=False)
    client: Client = field(init=False, repr=False)
    stack: contextlib.AsyncExitStack = field(
        default_factory=contextlib.AsyncExitStack,
        init=False,
        repr=False,
    )

    def __post_init__(self, /) -> None:
        self.registry = SubscriptionRegistry(logger=self.logger)
        self.provisioner = StreamProvisioner(
            self.broker,
            self.stream_options,
            logger=self.logger,
        )
        self.client = Client(
            self.broker,
            self.call_options,
            provisioner=self.provisioner,
            registry=self.registry,
            logger=self.logger,
        )

    async def __aenter__(self, /) -> 'Bus':
        await self.stack.__aenter__()
        await self.stack.enter_async_context(self.broker)
        self.stack.push_async_callback(self.registry.drain_all)
        await self.logger.adebug('Bus opened', broker=type(self.broker).__name__)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[types.TracebackType],
        /,
    ) -> Optional[bool]:
        return await self.stack.__aexit__(exc_type, exc, traceback)

    @classmethod
    def from_options(cls, options: Mapping[str, Any], /) -> 'Bus':
        """Build a bus backed by NATS from command-line options.

        Options that are missing or ``None`` take their defaults.
        """
        broker = NatsBroker(
            servers=options.get('server') or NatsBroker.servers,
            name=options.get('name'),
        )
        call_options = CallOptions().merge(
            timeout=options.get('timeout'),
            retries=options.get('retries'),
            retry_delay=options.get('retry_delay'),
            max_retry_delay=options.get('max_retry_delay'),
        )
        stream_options: dict[str, Any] = {
            'replicas': options.get('stream_replicas'),
            'max_age': options.get('stream_max_age'),
            'max_bytes': options.get('stream_max_bytes'),
            'max_msgs': options.get('stream_max_msgs'),
            'no_ack': options.get('stream_no_ack'),
        }
        if retention := options.get('stream_retention'):
            stream_options['retention'] = Retention(retention)
        if storage := options.get('stream_storage'):
            stream_options['storage'] = Storage(storage)
        stream_options = {
            key: value for key, value in stream_options.items() if value is not None
        }
        return cls(broker, call_options, StreamOptions(**stream_options))

    async def register_method(
        self,
        service: str,
        method: str,
        handler: MethodHandler,
        /,
        *,
        queue: Optional[str] = None,
        handler_timeout: Optional[float] = None,
    ) -> ServiceRunner:
        """Serve one method over a plain (ephemeral) subscription.

        Parameters:
            service: The service name.
            method: The method name.
            handler: Receives the list of call arguments.
            queue: The queue group. Defaults to the service name.
            handler_timeout: Maximum duration (in seconds) of one handler invocation.
        """
        runner = ServiceRunner.for_method(
            self.broker,
            service,
            method,
            handler,
            queue=queue,
            registry=self.registry,
            handler_timeout=handler_timeout,
            logger=self.logger,
        )
        return await runner.start()

    async def service(
        self,
        service: str,
        handler: ServiceHandler,
        /,
        **options: Any,
    ) -> list[ServiceRunner]:
        """Serve every method of a :class:`Handler` or a mapping of functions.

        Functions in a mapping take the call arguments as positional parameters.
        Keyword options are those of :meth:`register_method`.
        """
        return list(
            await asyncio.gather(
                *(
                    self.register_method(service, method, method_handler, **options)
                    for method, method_handler in bind_handlers(handler).items()
                )
            )
        )

    async def call(
        self,
        service: Optional[str],
        method: str,
        /,
        *args: Any,
        options: Optional[CallOptions] = None,
        **overrides: Any,
    ) -> Any:
        """Call a remote method and wait for the result.

        Parameters:
            service: The service name, or ``None`` to address the method by its bare
                name.
            method: The method name.
            args: JSON-serializable arguments.
            options: Overrides the bus's default call options.
            overrides: Individual options (``timeout``, ``retries``, ...) to replace.

        Raises:
            CallTimeoutError: No reply arrived in time.
            NoRespondersError: Nobody responded after all retries.
            RemoteError: The remote handler failed.
        """
        options = (options or self.call_options).merge(**overrides)
        return await self.client.call(subject_for(service, method), list(args), options)

    async def register_durable_method(
        self,
        service: str,
        method: str,
        handler: MethodHandler,
        /,
        *,
        queue: Optional[str] = None,
        stream_options: Optional[StreamOptions] = None,
        nak_on_error: bool = False,
        handler_timeout: Optional[float] = None,
    ) -> DurableServiceRunner:
        """Serve one method from its stream through a shared durable consumer.

        Every instance serving the method joins a queue group, named after the service
        unless ``queue`` is given, so that instances share the consumer's position.

        Raises:
            ProvisioningError: If the stream or consumer could not be set up.
        """
        runner = DurableServiceRunner.for_method(
            self.broker,
            service,
            method,
            handler,
            provisioner=self.provisioner,
            stream_options=stream_options,
            queue=queue,
            nak_on_error=nak_on_error,
            registry=self.registry,
            handler_timeout=handler_timeout,
            logger=self.logger,
        )
        await runner.start()
        await self.logger.ainfo(
            'Durable method registered',
            subject=runner.subject,
            durable_name=runner.durable_name,
        )
        return runner

    async def durable_service(
        self,
        service: str,
        handler: ServiceHandler,
        /,
        **options: Any,
    ) -> list[DurableServiceRunner]:
        """Serve every method of a service durably.

        Methods are registered independently: one method failing to provision does not
        prevent the others from being served.

        Raises:
            ProvisioningError: The first registration failure, after every method was
                attempted.
        """
        results = await asyncio.gather(
            *(
                self.register_durable_method(service, method, method_handler, **options)
                for method, method_handler in bind_handlers(handler).items()
            ),
            return_exceptions=True,
        )
        runners, failures = [], []
        for result in results:
            if isinstance(result, BaseException):
                failures.append(result)
            else:
                runners.append(result)
        if failures:
            await self.logger.aerror(
                'Some durable methods failed to register',
                service=service,
                failed=len(failures),
                registered=len(runners),
            )
            raise failures[0]
        return runners

    async def call_persistent(
        self,
        service: Optional[str],
        method: str,
        /,
        *args: Any,
        options: Optional[CallOptions] = None,
        stream_options: Optional[StreamOptions] = None,
        **overrides: Any,
    ) -> Any:
        """Call a durable method through its stream and wait for the result.

        Raises:
            ProvisioningError: The stream could not be ensured.
            CallTimeoutError: No reply arrived in time.
            RemoteError: The remote handler failed.
        """
        options = (options or self.call_options).merge(**overrides)
        return await self.client.call_persistent(
            subject_for(service, method),
            list(args),
            options,
            stream_options,
        )

    async def emit(self, subject: str, payload: Any = None, /) -> None:
        """Publish an event without waiting for any handler."""
        await self.broker.publish(subject, envelope.encode(payload))

    async def subscribe(
        self,
        subject: str,
        handler: EventHandler,
        /,
        *,
        queue: Optional[str] = None,
        handler_timeout: Optional[float] = None,
    ) -> EventSubscription:
        """Dispatch events published on a subject to a handler.

        Call ``unsubscribe`` or ``drain`` on the returned subscription to stop
        receiving events.
        """
        subscription = EventSubscription(
            self.broker,
            subject,
            handler,
            registry=self.registry,
            handler_timeout=handler_timeout,
            logger=self.logger,
            queue=queue,
        )
        return await subscription.start()

    async def drain(self, /) -> None:
        """Gracefully stop every subscription opened through this bus."""
        await self.registry.drain_all()
