import asyncio
import collections
import dataclasses
import itertools
from typing import Any, Mapping, Optional

import orjson as json
import pytest

from natsrpc import log
from natsrpc.broker import (
    REPLY_TO_HEADER,
    Broker,
    BrokerError,
    ConsumerRecord,
    LogMessage,
    LogNotFoundError,
    Message,
    NoSubscribersError,
    PublishAck,
    RequestTimeoutError,
    StreamRecord,
    Subscription,
)
from natsrpc.bus import Bus
from natsrpc.client import CallOptions


def matches(pattern: str, subject: str) -> bool:
    pattern_tokens, subject_tokens = pattern.split('.'), subject.split('.')
    for i, token in enumerate(pattern_tokens):
        if token == '>':
            return len(subject_tokens) > i
        if i >= len(subject_tokens) or token not in ('*', subject_tokens[i]):
            return False
    return len(pattern_tokens) == len(subject_tokens)


@dataclasses.dataclass(eq=False)
class FakeSubscription(Subscription):
    broker: 'FakeBroker'
    subject: str
    queue: Optional[str] = None
    consumer: Optional[ConsumerRecord] = None
    buffer: asyncio.Queue = dataclasses.field(default_factory=asyncio.Queue)
    closed: bool = False

    async def __anext__(self) -> Message:
        message = await self.buffer.get()
        if message is None:
            raise StopAsyncIteration
        return message

    def deliver(self, message: Message):
        if not self.closed:
            self.buffer.put_nowait(message)

    async def drain(self):
        self.broker.detach(self)
        self.closed = True
        self.buffer.put_nowait(None)

    async def unsubscribe(self):
        self.broker.detach(self)
        self.closed = True
        while not self.buffer.empty():
            self.buffer.get_nowait()
        self.buffer.put_nowait(None)


@dataclasses.dataclass
class FakeLogMessage(LogMessage):
    stream: str = ''
    settlements: list[str] = dataclasses.field(default_factory=list)
    ack_error: Optional[Exception] = None

    async def ack(self):
        if self.ack_error:
            raise self.ack_error
        self.settlements.append('ack')

    async def nak(self):
        self.settlements.append('nak')


@dataclasses.dataclass
class FakeBroker(Broker):
    """An in-memory broker with queue groups, streams, and durable consumers.

    Publishing to a subject captured by a stream appends to the stream, like a
    log-enabled server does. Negatively acknowledged messages are not redelivered.
    """

    is_closed: bool = True
    subscriptions: list[FakeSubscription] = dataclasses.field(default_factory=list)
    streams: dict[str, StreamRecord] = dataclasses.field(default_factory=dict)
    logs: dict[str, list[tuple[int, Message]]] = dataclasses.field(
        default_factory=lambda: collections.defaultdict(list),
    )
    consumers: dict[tuple[str, str], ConsumerRecord] = dataclasses.field(default_factory=dict)
    backlogs: dict[tuple[str, str], list[FakeLogMessage]] = dataclasses.field(
        default_factory=lambda: collections.defaultdict(list),
    )
    published: list[Message] = dataclasses.field(default_factory=list)
    deliveries: list[FakeLogMessage] = dataclasses.field(default_factory=list)
    counter: Any = dataclasses.field(default_factory=itertools.count)
    rotation: Any = dataclasses.field(default_factory=itertools.count)

    async def open(self):
        self.is_closed = False

    async def close(self):
        for subscription in list(self.subscriptions):
            await subscription.drain()
        self.is_closed = True

    @property
    def closed(self) -> bool:
        return self.is_closed

    def detach(self, subscription: FakeSubscription):
        if subscription in self.subscriptions:
            self.subscriptions.remove(subscription)

    def route(self, message: Message):
        groups: dict[Optional[str], list[FakeSubscription]] = collections.defaultdict(list)
        for subscription in self.subscriptions:
            if subscription.consumer is None and matches(subscription.subject, message.subject):
                groups[subscription.queue].append(subscription)
        for subscription in groups.pop(None, []):
            subscription.deliver(message)
        for members in groups.values():
            members[next(self.rotation) % len(members)].deliver(message)

    def has_responders(self, subject: str) -> bool:
        return any(
            subscription.consumer is None and matches(subscription.subject, subject)
            for subscription in self.subscriptions
        )

    def capturing(self, subject: str) -> list[StreamRecord]:
        return [
            record
            for record in self.streams.values()
            if any(matches(pattern, subject) for pattern in record.subjects)
        ]

    async def publish(self, subject, data, /, *, headers=None):
        message = Message(subject, data, None, dict(headers or {}))
        self.published.append(message)
        for record in self.capturing(subject):
            self.append(record.name, message)
        self.route(message)

    async def request(self, subject, data, /, *, timeout):
        """Send a request. Streams that acknowledge messages answer like a responder."""
        acking = [record for record in self.capturing(subject) if not record.options.no_ack]
        if not acking and not self.has_responders(subject):
            raise NoSubscribersError('no responders', subject=subject)
        inbox = self.new_inbox()
        subscription = await self.subscribe(inbox)
        try:
            message = Message(subject, data, inbox)
            self.published.append(message)
            for record in self.capturing(subject):
                sequence = self.append(record.name, message)
                if record in acking:
                    ack = json.dumps({'stream': record.name, 'seq': sequence})
                    subscription.deliver(Message(inbox, ack))
            self.route(message)
            return await asyncio.wait_for(subscription.__anext__(), timeout)
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError('request timed out', subject=subject) from exc
        finally:
            await subscription.unsubscribe()

    async def subscribe(self, subject, /, *, queue=None):
        subscription = FakeSubscription(self, subject, queue)
        self.subscriptions.append(subscription)
        return subscription

    def new_inbox(self):
        return f'_INBOX.{next(self.counter)}'

    async def stream_info(self, name, /):
        if name not in self.streams:
            raise LogNotFoundError('stream not found', stream=name)
        return self.streams[name]

    async def add_stream(self, record, /):
        if record.name in self.streams:
            raise BrokerError('stream name already in use', stream=record.name)
        self.streams[record.name] = record

    async def consumer_info(self, stream, durable_name, /):
        if (stream, durable_name) not in self.consumers:
            raise LogNotFoundError('consumer not found', durable_name=durable_name)
        return self.consumers[stream, durable_name]

    async def add_consumer(self, consumer, /):
        if consumer.stream not in self.streams:
            raise LogNotFoundError('stream not found', stream=consumer.stream)
        key = consumer.stream, consumer.durable_name
        self.consumers[key] = consumer
        for sequence, message in self.logs[consumer.stream]:
            if matches(consumer.subject, message.subject):
                self.backlogs[key].append(self.make_delivery(consumer, sequence, message))

    def make_delivery(self, consumer, sequence, message) -> FakeLogMessage:
        delivery = FakeLogMessage(
            message.subject,
            message.data,
            message.headers.get(REPLY_TO_HEADER),
            message.headers,
            sequence,
            stream=consumer.stream,
        )
        self.deliveries.append(delivery)
        return delivery

    def append(self, stream: str, message: Message) -> int:
        log_entries = self.logs[stream]
        sequence = len(log_entries) + 1
        log_entries.append((sequence, message))
        for key, consumer in self.consumers.items():
            if consumer.stream == stream and matches(consumer.subject, message.subject):
                self.backlogs[key].append(self.make_delivery(consumer, sequence, message))
        self.flush()
        return sequence

    def flush(self):
        for key, backlog in self.backlogs.items():
            members = [
                subscription
                for subscription in self.subscriptions
                if subscription.consumer
                and (subscription.consumer.stream, subscription.consumer.durable_name) == key
            ]
            while members and backlog:
                members[next(self.rotation) % len(members)].deliver(backlog.pop(0))

    async def publish_to_log(self, subject, data, /, *, stream, reply_to=None):
        headers: Mapping[str, str] = {REPLY_TO_HEADER: reply_to} if reply_to else {}
        message = Message(subject, data, None, dict(headers))
        self.published.append(message)
        if stream not in self.streams:
            raise NoSubscribersError('no stream captures the subject', subject=subject)
        return PublishAck(stream, self.append(stream, message))

    async def subscribe_durable(self, consumer, /):
        await self.consumer_info(consumer.stream, consumer.durable_name)
        key = consumer.stream, consumer.durable_name
        bound = [
            subscription
            for subscription in self.subscriptions
            if subscription.consumer
            and (subscription.consumer.stream, subscription.consumer.durable_name) == key
        ]
        if bound and consumer.queue is None:
            raise BrokerError('consumer is already bound to a subscription', durable_name=key[1])
        subscription = FakeSubscription(self, consumer.subject, consumer.queue, consumer)
        self.subscriptions.append(subscription)
        self.flush()
        return subscription


@pytest.fixture(autouse=True)
def logger():
    log.configure(fmt='pretty', level='debug')


@pytest.fixture
async def broker():
    async with FakeBroker() as broker:
        yield broker


@pytest.fixture
def call_options():
    return CallOptions(timeout=0.5, retries=2, retry_delay=0.01, max_retry_delay=0.05)


@pytest.fixture
async def bus(broker, call_options):
    async with Bus(broker, call_options) as bus:
        yield bus

