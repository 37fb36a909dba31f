"""Remote call exceptions.

Every failure a caller can observe is classified into one of the types below at the
boundary where it is first observed. Transport failures that fit none of them are
propagated unmodified.
"""

from typing import Any, ClassVar

# isort: unique-list
__all__ = [
    'CallTimeoutError',
    'MalformedPayloadError',
    'NoRespondersError',
    'ProvisioningError',
    'RemoteError',
    'RpcError',
]


class RpcError(Exception):
    """Base exception for remote call failures.

    Parameters:
        message: A human-readable description of the exception.
        context: Machine-readable data.

    Attributes:
        code: A stable identifier for the failure kind.
    """

    code: ClassVar[str] = 'RPC_ERROR'

    def __init__(self, message: str, /, **context: Any) -> None:
        super().__init__(message)
        self.context = context

    def __repr__(self, /) -> str:
        cls_name, args = self.__class__.__name__, [repr(self.args[0])]
        args.extend(f'{name}={value!r}' for name, value in self.context.items())
        return f'{cls_name}({", ".join(args)})'


class CallTimeoutError(RpcError):
    """No reply arrived within the deadline. Never retried."""

    code = 'RPC_TIMEOUT'


class NoRespondersError(RpcError):
    """Nobody was subscribed to the subject, even after retrying."""

    code = 'RPC_NO_RESPONDERS'


class RemoteError(RpcError):
    """The remote handler reported a failure.

    The remote exception's class name and traceback are available as :attr:`kind` and
    :attr:`detail`.
    """

    code = 'RPC_REMOTE_ERROR'

    @property
    def kind(self, /) -> str:
        return str(self.context.get('kind', ''))

    @property
    def detail(self, /) -> Any:
        return self.context.get('detail')


class MalformedPayloadError(RpcError):
    """A payload could not be decoded."""

    code = 'RPC_MALFORMED_PAYLOAD'


class ProvisioningError(RpcError):
    """A stream or durable consumer could not be set up."""

    code = 'RPC_PROVISIONING_FAILED'
