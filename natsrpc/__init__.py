"""Remote procedure calls, durable calls, and events over NATS."""

from .broker import Broker, NatsBroker, Retention, Storage, StreamOptions
from .bus import Bus
from .client import CallOptions
from .exception import (
    CallTimeoutError,
    MalformedPayloadError,
    NoRespondersError,
    ProvisioningError,
    RemoteError,
    RpcError,
)
from .service import Handler, route

__all__ = [
    'Broker',
    'Bus',
    'CallOptions',
    'CallTimeoutError',
    'Handler',
    'MalformedPayloadError',
    'NatsBroker',
    'NoRespondersError',
    'ProvisioningError',
    'RemoteError',
    'Retention',
    'RpcError',
    'Storage',
    'StreamOptions',
    'route',
]

__version__ = '0.1.0'
