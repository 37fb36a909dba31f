"""Issue remote calls with timeouts and retries.

A call fails in one of a few distinguishable ways (see :mod:`natsrpc.exception`). Two of
them look alike on the surface but are handled differently:

* A *timeout* means a responder exists but did not reply in time. Retrying would only
  pile more work onto a slow responder, so timeouts fail immediately.
* *No responders* means nobody is subscribed yet (for example, a service that is still
  starting). These calls are retried with exponential backoff.
"""

import asyncio
import random
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from . import envelope
from .broker import (
    REPLY_TO_HEADER,
    Broker,
    NoSubscribersError,
    PublishAck,
    RequestTimeoutError,
    StreamOptions,
)
from .envelope import EMPTY, Err, Ok
from .exception import CallTimeoutError, MalformedPayloadError, NoRespondersError, RemoteError
from .log import Logger, get_logger
from .provision import StreamProvisioner
from .registry import SubscriptionRegistry

__all__ = ['CallOptions', 'Client', 'backoff_delay', 'unwrap']

JITTER: float = 0.1


@dataclass(frozen=True)
class CallOptions:
    """Per-call timeout and retry policy.

    Parameters:
        timeout: Maximum duration (in seconds) to wait for each reply.
        retries: The number of times to retry a call nobody responded to.
        retry_delay: The delay (in seconds) before the first retry. Each subsequent
            retry doubles the delay. Clamped to ``max_retry_delay``.
        max_retry_delay: The maximum delay (in seconds) between retries.
    """

    timeout: float = 10
    retries: int = 3
    retry_delay: float = 1
    max_retry_delay: float = 20

    def __post_init__(self, /) -> None:
        if self.timeout <= 0:
            raise ValueError('timeout must be a positive number')
        if self.retries < 0:
            raise ValueError('retries must be a nonnegative integer')
        if self.retry_delay < 0 or self.max_retry_delay < 0:
            raise ValueError('retry delays must be nonnegative')
        if self.retry_delay > self.max_retry_delay:
            object.__setattr__(self, 'retry_delay', self.max_retry_delay)

    def merge(self, /, **overrides: Any) -> 'CallOptions':
        """Make a copy with the given options replaced. ``None`` values are ignored."""
        overrides = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **overrides)


def backoff_delay(attempt: int, options: CallOptions, /) -> float:
    """Compute the delay before retrying a call.

    Parameters:
        attempt: The zero-based index of the attempt that just failed.
        options: The call's retry policy.

    Returns:
        ``min(max_retry_delay, retry_delay * 2**attempt)`` plus up to 10% jitter.

    Example:
        >>> options = CallOptions(retry_delay=1, max_retry_delay=5)
        >>> [int(backoff_delay(attempt, options)) for attempt in range(4)]
        [1, 2, 4, 5]
    """
    delay = min(options.max_retry_delay, options.retry_delay * 2**attempt)
    return delay + random.uniform(0, JITTER * delay)


def unwrap(data: bytes, subject: str, /) -> Any:
    """Interpret a reply payload.

    Returns:
        The result of an :class:`Ok` envelope, ``None`` for an empty payload, or the
        decoded value of a reply that is not an envelope.

    Raises:
        RemoteError: If the reply is an :class:`Err` envelope.
        MalformedPayloadError: If the reply cannot be decoded.
    """
    try:
        reply = envelope.decode(data)
    except ValueError as exc:
        raise MalformedPayloadError(
            'reply could not be decoded',
            subject=subject,
            reason=str(exc),
        ) from exc
    if isinstance(reply, Ok):
        return reply.result
    if isinstance(reply, Err):
        raise RemoteError(reply.message, subject=subject, kind=reply.kind, detail=reply.detail)
    if reply is EMPTY:
        return None
    return reply


@dataclass
class Client:
    """Issue remote calls over a broker.

    Parameters:
        broker: An open broker.
        options: The default call options.
        provisioner: Ensures streams exist for persistent calls.
        registry: Tracks reply subscriptions of in-flight persistent calls.
        logger: A logger instance.
    """

    broker: Broker
    options: CallOptions = CallOptions()
    provisioner: Optional[StreamProvisioner] = None
    registry: SubscriptionRegistry = field(default_factory=SubscriptionRegistry)
    logger: Logger = field(default_factory=get_logger)

    def __post_init__(self, /) -> None:
        if self.provisioner is None:
            self.provisioner = StreamProvisioner(self.broker, logger=self.logger)

    async def call(
        self,
        subject: str,
        payload: Any = None,
        /,
        options: Optional[CallOptions] = None,
    ) -> Any:
        """Issue a remote call and wait for the result.

        Parameters:
            subject: The subject addressing the remote method.
            payload: The JSON-serializable request payload (usually a list of
                arguments).
            options: Overrides the client's default options.

        Raises:
            CallTimeoutError: The request was delivered, but no reply arrived in time.
            NoRespondersError: Nobody responded after all retries.
            RemoteError: The remote handler failed.
            MalformedPayloadError: The reply could not be decoded.
            TypeError: The payload is not JSON-serializable.
        """
        options = options or self.options
        data = envelope.encode(payload)
        logger = self.logger.bind(subject=subject, timeout=options.timeout)
        attempt = 0
        while True:
            await logger.adebug('Issuing remote call', attempt=attempt)
            try:
                reply = await self.broker.request(subject, data, timeout=options.timeout)
            except RequestTimeoutError as exc:
                raise CallTimeoutError(
                    'remote call timed out',
                    subject=subject,
                    timeout=options.timeout,
                ) from exc
            except NoSubscribersError as exc:
                if attempt >= options.retries:
                    raise NoRespondersError(
                        'no responders available',
                        subject=subject,
                        attempts=attempt + 1,
                    ) from exc
                delay = backoff_delay(attempt, options)
                await logger.awarning('No responders, retrying', attempt=attempt, delay=delay)
                await asyncio.sleep(delay)
                attempt += 1
                continue
            return unwrap(reply.data, subject)

    async def call_persistent(
        self,
        subject: str,
        payload: Any = None,
        /,
        options: Optional[CallOptions] = None,
        stream_options: Optional[StreamOptions] = None,
    ) -> Any:
        """Issue a remote call through the subject's stream and wait for the result.

        The request survives until a durable service consumes it, even if no service is
        running when the call is made. The caller still waits at most ``timeout``
        seconds for the reply.

        Raises:
            ProvisioningError: The stream could not be ensured.
            CallTimeoutError: No reply arrived in time. The request remains in the
                stream and may still be processed.
            RemoteError: The remote handler failed.
            MalformedPayloadError: The reply could not be decoded.
        """
        options = options or self.options
        if not self.provisioner:  # pragma: no cover; always initialized by `__post_init__`
            raise ValueError('provisioner is not initialized')
        record = await self.provisioner.ensure_stream(subject, stream_options)
        data = envelope.encode(payload)
        reply_to = self.broker.new_inbox()
        logger = self.logger.bind(subject=subject, stream=record.name, reply_to=reply_to)
        subscription = await self.broker.subscribe(reply_to)
        self.registry.register(subscription)
        try:
            if record.options.no_ack:
                await self.broker.publish(subject, data, headers={REPLY_TO_HEADER: reply_to})
                ack = PublishAck(record.name)
            else:
                ack = await self.broker.publish_to_log(
                    subject,
                    data,
                    stream=record.name,
                    reply_to=reply_to,
                )
            await logger.adebug('Published persistent call', sequence=ack.sequence)
            try:
                reply = await asyncio.wait_for(subscription.__anext__(), options.timeout)
            except (asyncio.TimeoutError, StopAsyncIteration) as exc:
                raise CallTimeoutError(
                    'persistent call timed out',
                    subject=subject,
                    timeout=options.timeout,
                    sequence=ack.sequence,
                ) from exc
        finally:
            self.registry.unregister(subscription)
            try:
                await subscription.unsubscribe()
            except Exception as exc:
                await logger.awarning('Unable to release reply subscription', exc_info=exc)
        return unwrap(reply.data, subject)
