"""Idempotent provisioning of streams and durable consumers.

Many processes may start at once and race to create the same stream. Provisioning never
tries to prevent the race. It reconciles it: a failed creation is followed by a second
lookup, and only if that lookup also fails is the creation error surfaced.
"""

import asyncio
import collections
from dataclasses import dataclass, field
from typing import Optional

from .broker import (
    AckPolicy,
    Broker,
    ConsumerRecord,
    LogNotFoundError,
    StreamOptions,
    StreamRecord,
)
from .exception import ProvisioningError
from .log import Logger, get_logger
from .subject import stream_name_for

__all__ = ['StreamProvisioner']


@dataclass
class StreamProvisioner:
    """Ensure that a stream exists for every subject that needs durability.

    Parameters:
        broker: The broker whose log facility holds the streams.
        options: Default configuration for newly created streams.
        logger: A logger instance.

    Attributes:
        ensured: Names of streams confirmed to exist. This process-local cache is
            append-only and never invalidated. Streams are never deleted here.
    """

    broker: Broker
    options: StreamOptions = StreamOptions()
    logger: Logger = field(default_factory=get_logger)
    ensured: dict[str, StreamRecord] = field(default_factory=dict, init=False, repr=False)
    locks: collections.defaultdict[str, asyncio.Lock] = field(
        default_factory=lambda: collections.defaultdict(asyncio.Lock),
        init=False,
        repr=False,
    )

    async def ensure_stream(
        self,
        subject: str,
        /,
        options: Optional[StreamOptions] = None,
    ) -> StreamRecord:
        """Ensure a stream capturing ``subject`` exists.

        Concurrent callers in this process share one lookup (and at most one creation)
        per stream.

        Parameters:
            subject: The subject the stream should capture.
            options: Configuration used if the stream must be created. Has no effect on
                an existing stream.

        Returns:
            The stream's record. Every caller for the same subject gets the same name.

        Raises:
            ProvisioningError: If the stream neither exists nor could be created.
        """
        name = stream_name_for(subject)
        if name in self.ensured:
            return self.ensured[name]
        async with self.locks[name]:
            if name in self.ensured:
                return self.ensured[name]
            record = await self._lookup_or_create(
                StreamRecord(name, (subject,), options or self.options),
            )
            self.ensured[name] = record
        return record

    async def _lookup_or_create(self, record: StreamRecord, /) -> StreamRecord:
        logger = self.logger.bind(stream=record.name, subjects=list(record.subjects))
        try:
            return await self.broker.stream_info(record.name)
        except LogNotFoundError:
            pass
        try:
            await self.broker.add_stream(record)
        except Exception as exc:
            try:
                existing = await self.broker.stream_info(record.name)
            except LogNotFoundError:
                await logger.aerror('Stream creation failed', exc_info=exc)
                raise ProvisioningError(
                    'unable to create stream',
                    stream=record.name,
                    subjects=list(record.subjects),
                ) from exc
            await logger.adebug('Stream created concurrently by another caller')
            return existing
        await logger.ainfo('Stream created', replicas=record.options.replicas)
        return record

    async def ensure_consumer(self, consumer: ConsumerRecord, /) -> ConsumerRecord:
        """Ensure a durable consumer exists, creating it with explicit acks if missing.

        Raises:
            ProvisioningError: If the consumer neither exists nor could be created.
        """
        logger = self.logger.bind(stream=consumer.stream, durable_name=consumer.durable_name)
        try:
            return await self.broker.consumer_info(consumer.stream, consumer.durable_name)
        except LogNotFoundError:
            pass
        if consumer.ack_policy is not AckPolicy.EXPLICIT:
            raise ProvisioningError(
                'durable consumers require explicit acknowledgement',
                durable_name=consumer.durable_name,
                ack_policy=consumer.ack_policy.value,
            )
        try:
            await self.broker.add_consumer(consumer)
        except Exception as exc:
            try:
                existing = await self.broker.consumer_info(
                    consumer.stream,
                    consumer.durable_name,
                )
            except LogNotFoundError:
                await logger.aerror('Consumer creation failed', exc_info=exc)
                raise ProvisioningError(
                    'unable to create durable consumer',
                    stream=consumer.stream,
                    durable_name=consumer.durable_name,
                ) from exc
            return existing
        await logger.ainfo('Durable consumer created', subject=consumer.subject)
        return consumer
