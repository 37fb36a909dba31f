"""The publish/subscribe transport consumed by the remote call layer.

Much like :mod:`asyncio`'s transports and protocols, the remote call layer is divided
into two halves:

* This module, the low-level half, moves discrete binary messages. :class:`Broker` is
  the contract: subject-based publish/subscribe, request/reply, and a persistent log
  facility (streams and durable consumers). :class:`NatsBroker` implements the contract
  with `nats-py <https://github.com/nats-io/nats.py>`_ (NATS core and JetStream).
* The high-level half (:mod:`natsrpc.client`, :mod:`natsrpc.service`) implements
  request/response semantics on top of any :class:`Broker`.

Payloads are opaque to a broker. A broker reports two conditions the high-level half
must tell apart, :class:`RequestTimeoutError` and :class:`NoSubscribersError`. Every
other transport failure propagates as whatever the underlying library raised.
"""

import abc
import enum
import types
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from typing import Any, Final, Optional, TypeVar

import nats
import nats.errors
import nats.js
import nats.js.api
import nats.js.errors
from nats.aio.client import Client as NatsClient
from nats.aio.msg import Msg

from .exception import RpcError

__all__ = [
    'AckPolicy',
    'Broker',
    'BrokerError',
    'ConsumerRecord',
    'LogMessage',
    'LogNotFoundError',
    'Message',
    'NatsBroker',
    'NoSubscribersError',
    'PublishAck',
    'REPLY_TO_HEADER',
    'RequestTimeoutError',
    'Retention',
    'Storage',
    'StreamOptions',
    'StreamRecord',
    'Subscription',
]

REPLY_TO_HEADER: Final[str] = 'Natsrpc-Reply-To'
"""Header carrying the reply address of a message published into a log.

A log delivers messages with its own acknowledgement subject in the transport's reply
field, so the caller's reply address cannot travel there.
"""


class BrokerError(RpcError):
    """Condition reported by a broker."""


class RequestTimeoutError(BrokerError):
    """A request was delivered, but no reply arrived in time."""


class NoSubscribersError(BrokerError):
    """A request was not delivered because nobody is subscribed to the subject."""


class LogNotFoundError(BrokerError):
    """A stream or durable consumer does not exist."""


class Retention(str, enum.Enum):
    """When a stream discards messages."""

    LIMITS = 'limits'
    INTEREST = 'interest'
    WORK_QUEUE = 'workqueue'


class Storage(str, enum.Enum):
    FILE = 'file'
    MEMORY = 'memory'


class AckPolicy(str, enum.Enum):
    NONE = 'none'
    ALL = 'all'
    EXPLICIT = 'explicit'


@dataclass(frozen=True)
class StreamOptions:
    """Configuration for a newly created stream.

    Parameters:
        replicas: The number of replicas the broker keeps.
        retention: The retention policy.
        storage: The storage backend.
        max_age: Maximum age (in seconds) of stored messages. ``None`` for no limit.
        max_bytes: Maximum total size of stored messages. ``None`` for no limit.
        max_msgs: Maximum number of stored messages. ``None`` for no limit.
        no_ack: Whether the stream should not acknowledge published messages. With
            acknowledgements, a plain request on a captured subject would be answered
            by the stream itself, so messages carrying a reply address need this set.
    """

    replicas: int = 1
    retention: Retention = Retention.LIMITS
    storage: Storage = Storage.FILE
    max_age: Optional[float] = None
    max_bytes: Optional[int] = None
    max_msgs: Optional[int] = None
    no_ack: bool = True


@dataclass(frozen=True)
class StreamRecord:
    """A durable log bound to one or more subjects."""

    name: str
    subjects: tuple[str, ...]
    options: StreamOptions = StreamOptions()


@dataclass(frozen=True)
class ConsumerRecord:
    """A durable read cursor into a stream.

    Parameters:
        durable_name: The cursor's persistent name. Instances sharing a name share the
            cursor.
        subject: The subject the cursor filters on.
        stream: The stream name.
        queue: A queue group for spreading deliveries across instances.
        ack_policy: How the broker expects deliveries to be acknowledged.
        max_ack_pending: The maximum number of unacknowledged deliveries in flight.
    """

    durable_name: str
    subject: str
    stream: str
    queue: Optional[str] = None
    ack_policy: AckPolicy = AckPolicy.EXPLICIT
    max_ack_pending: Optional[int] = None


@dataclass(frozen=True)
class PublishAck:
    """The log's acknowledgement of a published message."""

    stream: str
    sequence: Optional[int] = None


@dataclass
class Message:
    """An inbound message.

    Parameters:
        subject: The subject the message was published to.
        data: The payload.
        reply: The address a reply should be published to, if any.
        headers: Message headers.
    """

    subject: str
    data: bytes
    reply: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass  # type: ignore[misc]
class LogMessage(Message, abc.ABC):  # https://github.com/python/mypy/issues/5374
    """A message delivered from a stream to a durable consumer.

    Every delivery must eventually be settled with :meth:`ack` or :meth:`nak`.
    Unsettled or negatively acknowledged deliveries are redelivered.
    """

    sequence: Optional[int] = None

    @abc.abstractmethod
    async def ack(self, /) -> None:
        """Acknowledge the message. The broker will not redeliver it."""

    @abc.abstractmethod
    async def nak(self, /) -> None:
        """Negatively acknowledge the message. The broker will redeliver it."""


class Subscription(abc.ABC):
    """A live stream of inbound messages.

    Iteration ends once the subscription is drained or unsubscribed.
    """

    def __aiter__(self, /) -> 'Subscription':
        return self

    @abc.abstractmethod
    async def __anext__(self, /) -> Message:
        """Wait for the next message."""

    @abc.abstractmethod
    async def drain(self, /) -> None:
        """Stop receiving new messages. Already buffered messages are still delivered."""

    @abc.abstractmethod
    async def unsubscribe(self, /) -> None:
        """Stop receiving messages immediately, discarding any buffered ones."""


BrokerType = TypeVar('BrokerType', bound='Broker')


class Broker(abc.ABC):
    """A publish/subscribe transport with a persistent log facility.

    A broker supports the async context manager protocol (reusable) for opening and
    closing the underlying connection. A single open broker is shared by every client
    and service of a process, so all operations must be safe to invoke concurrently.
    """

    async def __aenter__(self: BrokerType, /) -> BrokerType:
        if self.closed:
            await self.open()
        return self

    async def __aexit__(
        self,
        _exc_type: Optional[type[BaseException]],
        _exc: Optional[BaseException],
        _traceback: Optional[types.TracebackType],
        /,
    ) -> None:
        if not self.closed:
            await self.close()

    @abc.abstractmethod
    async def open(self, /) -> None:
        """Open the connection."""

    @abc.abstractmethod
    async def close(self, /) -> None:
        """Flush pending messages and close the connection."""

    @property
    @abc.abstractmethod
    def closed(self, /) -> bool:
        """Whether the connection is closed."""

    @abc.abstractmethod
    async def publish(
        self,
        subject: str,
        data: bytes,
        /,
        *,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Publish a message without waiting for a reply."""

    @abc.abstractmethod
    async def request(self, subject: str, data: bytes, /, *, timeout: float) -> Message:
        """Publish a message and wait for the first reply.

        Raises:
            RequestTimeoutError: If no reply arrives within ``timeout`` seconds.
            NoSubscribersError: If nobody is subscribed to the subject.
        """

    @abc.abstractmethod
    async def subscribe(self, subject: str, /, *, queue: Optional[str] = None) -> Subscription:
        """Subscribe to a subject.

        Parameters:
            subject: The subject to subscribe to.
            queue: A queue group. Each message is delivered to only one member.
        """

    @abc.abstractmethod
    def new_inbox(self, /) -> str:
        """Generate a unique reply address."""

    @abc.abstractmethod
    async def stream_info(self, name: str, /) -> StreamRecord:
        """Look up a stream.

        Raises:
            LogNotFoundError: If the stream does not exist.
        """

    @abc.abstractmethod
    async def add_stream(self, record: StreamRecord, /) -> None:
        """Create a stream. Fails if a conflicting stream already exists."""

    @abc.abstractmethod
    async def consumer_info(self, stream: str, durable_name: str, /) -> ConsumerRecord:
        """Look up a durable consumer.

        Raises:
            LogNotFoundError: If the stream or consumer does not exist.
        """

    @abc.abstractmethod
    async def add_consumer(self, consumer: ConsumerRecord, /) -> None:
        """Create a durable consumer."""

    @abc.abstractmethod
    async def publish_to_log(
        self,
        subject: str,
        data: bytes,
        /,
        *,
        stream: str,
        reply_to: Optional[str] = None,
    ) -> PublishAck:
        """Append a message to a stream and wait for the stream's acknowledgement.

        The reply address, if any, is attached as the :data:`REPLY_TO_HEADER` header.
        """

    @abc.abstractmethod
    async def subscribe_durable(self, consumer: ConsumerRecord, /) -> Subscription:
        """Bind to an existing durable consumer. Yields :class:`LogMessage` instances."""


@dataclass
class _NatsLogMessage(LogMessage):
    raw: Optional[Msg] = field(default=None, repr=False)

    @classmethod
    def wrap(cls, msg: Msg, /) -> '_NatsLogMessage':
        headers = dict(msg.headers or {})
        return cls(
            subject=msg.subject,
            data=msg.data,
            reply=headers.get(REPLY_TO_HEADER) or None,
            headers=headers,
            sequence=msg.metadata.sequence.stream,
            raw=msg,
        )

    async def ack(self, /) -> None:
        if self.raw:
            await self.raw.ack()

    async def nak(self, /) -> None:
        if self.raw:
            await self.raw.nak()


def _wrap_core(msg: Msg, /) -> Message:
    return Message(
        subject=msg.subject,
        data=msg.data,
        reply=msg.reply or None,
        headers=dict(msg.headers or {}),
    )


class _NatsSubscription(Subscription):
    def __init__(self, sub: Any, /, *, durable: bool = False) -> None:
        self.sub = sub
        self.messages = sub.messages
        self.durable = durable

    async def __anext__(self, /) -> Message:
        msg = await self.messages.__anext__()
        return _NatsLogMessage.wrap(msg) if self.durable else _wrap_core(msg)

    async def drain(self, /) -> None:
        await self.sub.drain()

    async def unsubscribe(self, /) -> None:
        await self.sub.unsubscribe()


@dataclass
class NatsBroker(Broker):
    """A broker backed by a NATS server with JetStream enabled.

    Parameters:
        servers: Server URLs, such as ``nats://localhost:4222``.
        name: The connection name reported to the server.
        options: Other keyword arguments passed to :func:`nats.connect`.
    """

    servers: Collection[str] = ('nats://localhost:4222',)
    name: Optional[str] = None
    options: dict[str, Any] = field(default_factory=dict)
    client: Optional[NatsClient] = field(default=None, init=False, repr=False)
    jetstream: Optional[nats.js.JetStreamContext] = field(
        default=None,
        init=False,
        repr=False,
    )

    @property
    def nc(self, /) -> NatsClient:
        if not self.client or self.client.is_closed:
            raise BrokerError('connection is not open', servers=list(self.servers))
        return self.client

    @property
    def js(self, /) -> nats.js.JetStreamContext:
        if not self.jetstream:
            raise BrokerError('connection is not open', servers=list(self.servers))
        return self.jetstream

    async def open(self, /) -> None:
        kwargs = dict(self.options)
        if self.name:
            kwargs.setdefault('name', self.name)
        self.client = await nats.connect(servers=list(self.servers), **kwargs)
        self.jetstream = self.client.jetstream()

    async def close(self, /) -> None:
        if self.client and not self.client.is_closed:
            await self.client.drain()
        self.jetstream = None

    @property
    def closed(self, /) -> bool:
        return self.client.is_closed if self.client else True

    async def publish(
        self,
        subject: str,
        data: bytes,
        /,
        *,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        await self.nc.publish(subject, data, headers=dict(headers) if headers else None)

    async def request(self, subject: str, data: bytes, /, *, timeout: float) -> Message:
        try:
            msg = await self.nc.request(subject, data, timeout=timeout)
        except nats.errors.NoRespondersError as exc:
            raise NoSubscribersError('no responders', subject=subject) from exc
        except nats.errors.TimeoutError as exc:
            raise RequestTimeoutError(
                'request timed out',
                subject=subject,
                timeout=timeout,
            ) from exc
        return _wrap_core(msg)

    async def subscribe(self, subject: str, /, *, queue: Optional[str] = None) -> Subscription:
        return _NatsSubscription(await self.nc.subscribe(subject, queue=queue or ''))

    def new_inbox(self, /) -> str:
        return self.nc.new_inbox()

    async def stream_info(self, name: str, /) -> StreamRecord:
        try:
            info = await self.js.stream_info(name)
        except nats.js.errors.NotFoundError as exc:
            raise LogNotFoundError('stream not found', stream=name) from exc
        config = info.config
        options = StreamOptions(
            replicas=config.num_replicas or 1,
            retention=Retention(config.retention.value if config.retention else 'limits'),
            storage=Storage(config.storage.value if config.storage else 'file'),
            max_age=config.max_age,
            max_bytes=config.max_bytes,
            max_msgs=config.max_msgs,
            no_ack=bool(config.no_ack),
        )
        return StreamRecord(config.name or name, tuple(config.subjects or ()), options)

    async def add_stream(self, record: StreamRecord, /) -> None:
        options = record.options
        config = nats.js.api.StreamConfig(
            name=record.name,
            subjects=list(record.subjects),
            retention=nats.js.api.RetentionPolicy(options.retention.value),
            storage=nats.js.api.StorageType(options.storage.value),
            num_replicas=options.replicas,
            max_age=options.max_age,
            max_bytes=options.max_bytes,
            max_msgs=options.max_msgs,
            no_ack=options.no_ack,
        )
        await self.js.add_stream(config)

    async def consumer_info(self, stream: str, durable_name: str, /) -> ConsumerRecord:
        try:
            info = await self.js.consumer_info(stream, durable_name)
        except nats.js.errors.NotFoundError as exc:
            raise LogNotFoundError(
                'consumer not found',
                stream=stream,
                durable_name=durable_name,
            ) from exc
        config = info.config
        return ConsumerRecord(
            durable_name=config.durable_name or durable_name,
            subject=config.filter_subject or '',
            stream=stream,
            queue=config.deliver_group,
            ack_policy=AckPolicy(config.ack_policy.value if config.ack_policy else 'explicit'),
            max_ack_pending=config.max_ack_pending,
        )

    async def add_consumer(self, consumer: ConsumerRecord, /) -> None:
        config = nats.js.api.ConsumerConfig(
            durable_name=consumer.durable_name,
            filter_subject=consumer.subject,
            ack_policy=nats.js.api.AckPolicy(consumer.ack_policy.value),
            deliver_subject=self.nc.new_inbox(),
            deliver_group=consumer.queue,
            max_ack_pending=consumer.max_ack_pending,
        )
        await self.js.add_consumer(consumer.stream, config)

    async def publish_to_log(
        self,
        subject: str,
        data: bytes,
        /,
        *,
        stream: str,
        reply_to: Optional[str] = None,
    ) -> PublishAck:
        headers = {REPLY_TO_HEADER: reply_to} if reply_to else None
        ack = await self.js.publish(subject, data, stream=stream, headers=headers)
        return PublishAck(ack.stream, ack.seq)

    async def subscribe_durable(self, consumer: ConsumerRecord, /) -> Subscription:
        sub = await self.js.subscribe(
            consumer.subject,
            queue=consumer.queue,
            durable=consumer.durable_name,
            stream=consumer.stream,
            manual_ack=True,
        )
        return _NatsSubscription(sub, durable=True)
