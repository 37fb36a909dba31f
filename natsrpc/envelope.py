"""The request/response envelope.

A reply is framed as exactly one of two JSON objects::

    {"__ok": true, "result": <value>}
    {"__error": true, "message": "...", "kind": "...", "detail": <value>}

A payload carrying neither discriminant is not an envelope. It decodes to the plain JSON
value, which lets callers talk to responders that know nothing about this protocol.
Requests and events are sent as plain values.
"""

import enum
import traceback
from dataclasses import dataclass
from typing import Any, Final, Literal, Union

import orjson as json

__all__ = ['EMPTY', 'Err', 'Ok', 'decode', 'encode']

OK_KEY: Final[str] = '__ok'
ERROR_KEY: Final[str] = '__error'


class _Empty(enum.Enum):
    EMPTY = enum.auto()

    def __repr__(self, /) -> str:
        return 'EMPTY'


EMPTY: Final = _Empty.EMPTY
"""Decoded form of a zero-length payload (as opposed to JSON ``null``)."""


@dataclass(frozen=True)
class Ok:
    """A successful result."""

    result: Any = None


@dataclass(frozen=True)
class Err:
    """A failure reported by a responder.

    Parameters:
        message: A human-readable description.
        kind: The failure's type name, such as the remote exception class.
        detail: Additional machine-readable data (for example, a traceback).
    """

    message: str
    kind: str = 'Error'
    detail: Any = None

    @classmethod
    def from_exception(cls, exc: BaseException, /) -> 'Err':
        lines = traceback.format_exception(type(exc), exc, exc.__traceback__)
        return cls(str(exc) or type(exc).__name__, type(exc).__name__, ''.join(lines))


Envelope = Union[Ok, Err]
Decoded = Union[Ok, Err, Literal[_Empty.EMPTY], Any]


def encode(obj: Any, /) -> bytes:
    """Encode an envelope or a plain value.

    Raises:
        TypeError: If the value is not JSON-serializable (:class:`orjson.JSONEncodeError`).
    """
    if isinstance(obj, Ok):
        obj = {OK_KEY: True, 'result': obj.result}
    elif isinstance(obj, Err):
        obj = {ERROR_KEY: True, 'message': obj.message, 'kind': obj.kind, 'detail': obj.detail}
    return json.dumps(obj)


def decode(buf: bytes, /) -> Decoded:
    """Decode a payload into an envelope, a plain value, or :data:`EMPTY`.

    Raises:
        ValueError: If the payload is not valid JSON (:class:`orjson.JSONDecodeError`).
    """
    if not buf:
        return EMPTY
    obj = json.loads(buf)
    if isinstance(obj, dict):
        if obj.get(OK_KEY) is True:
            return Ok(obj.get('result'))
        if obj.get(ERROR_KEY) is True:
            return Err(
                str(obj.get('message', '')),
                str(obj.get('kind') or 'Error'),
                obj.get('detail'),
            )
    return obj
