"""Deterministic names for subjects, streams, and durable consumers."""

import hashlib
import re
from typing import Optional

__all__ = ['durable_name_for', 'stream_name_for', 'subject_for']

_NON_ALNUM = re.compile(r'[^0-9A-Za-z]')
_CONSUMER_FORBIDDEN = re.compile(r'[.*>\s]')
_TOKEN_FORBIDDEN = re.compile(r'[*>\s]')


def _check_name(name: str, kind: str, /) -> None:
    if not name:
        raise ValueError(f'{kind} name must be nonempty')
    if '.' in name or _TOKEN_FORBIDDEN.search(name):
        raise ValueError(f'{kind} name {name!r} must be a single subject token')


def subject_for(service: Optional[str], method: str, /) -> str:
    """Build the subject addressing one method of a service.

    Service and method names are single tokens: no dots, wildcards, or whitespace. This
    keeps distinct pairs on distinct subjects and prevents a method from subscribing to
    its siblings. Without a service, the method is a bare subject that may contain dots
    but no wildcards.

    Raises:
        ValueError: If a name is empty or not a valid token.

    Examples:
        >>> subject_for('math', 'add')
        'math.add'
        >>> subject_for(None, 'user.created')
        'user.created'
        >>> subject_for('a.b', 'c')
        Traceback (most recent call last):
          ...
        ValueError: service name 'a.b' must be a single subject token
    """
    if service is None:
        if not method or _TOKEN_FORBIDDEN.search(method) or '' in method.split('.'):
            raise ValueError(f'{method!r} is not a valid subject')
        return method
    _check_name(service, 'service')
    _check_name(method, 'method')
    return f'{service}.{method}'


def stream_name_for(subject: str, /) -> str:
    """Derive a stream name from a subject.

    The readable part replaces every non-alphanumeric character with an underscore. A
    short digest of the exact subject is appended so that subjects differing only in
    punctuation do not share a stream. The result is stable across processes.

    Examples:
        >>> stream_name_for('math.add').startswith('RPC_math_add_')
        True
        >>> stream_name_for('math.add') == stream_name_for('math_add')
        False
    """
    digest = hashlib.blake2b(subject.encode(), digest_size=4).hexdigest()
    return f'RPC_{_NON_ALNUM.sub("_", subject)}_{digest}'


def durable_name_for(service: str, method: str, /) -> str:
    """Derive the durable consumer name shared by every instance of a service method.

    Examples:
        >>> durable_name_for('math', 'add')
        'math_add_durable'
    """
    return _CONSUMER_FORBIDDEN.sub('_', f'{service}_{method}_durable')
