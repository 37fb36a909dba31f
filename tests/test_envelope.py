import orjson as json
import pytest

from natsrpc import envelope
from natsrpc.envelope import EMPTY, Err, Ok


def test_encode_ok():
    assert json.loads(envelope.encode(Ok([1, 'a']))) == {'__ok': True, 'result': [1, 'a']}
    assert json.loads(envelope.encode(Ok())) == {'__ok': True, 'result': None}


def test_encode_err():
    payload = json.loads(envelope.encode(Err('bad', 'ValueError', {'line': 1})))
    assert payload == {
        '__error': True,
        'message': 'bad',
        'kind': 'ValueError',
        'detail': {'line': 1},
    }


def test_encode_raw():
    assert envelope.encode([1, 2]) == b'[1,2]'
    assert envelope.encode(None) == b'null'


def test_encode_unserializable():
    with pytest.raises(TypeError):
        envelope.encode(Ok(object()))


def test_decode_envelopes():
    assert envelope.decode(b'{"__ok":true,"result":3}') == Ok(3)
    assert envelope.decode(b'{"__ok":true}') == Ok(None)
    assert envelope.decode(b'{"__error":true,"message":"boom"}') == Err('boom', 'Error')
    err = envelope.decode(b'{"__error":true,"message":"x","kind":"KeyError","detail":"tb"}')
    assert err == Err('x', 'KeyError', 'tb')


@pytest.mark.parametrize('result', [42, 2.5, {'a': [1, None]}, None, [1, 'two', {}], ''])
def test_ok_preserved(result):
    assert envelope.decode(envelope.encode(Ok(result))) == Ok(result)


def test_err_preserved():
    err = Err('bad input', 'ValueError', {'field': 'amount'})
    assert envelope.decode(envelope.encode(err)) == err


def test_decode_empty():
    assert envelope.decode(b'') is EMPTY
    assert envelope.decode(b'null') is None
    assert repr(EMPTY) == 'EMPTY'


@pytest.mark.parametrize('payload,expected', [
    (b'{"result":1}', {'result': 1}),
    (b'{"__ok":"true","result":1}', {'__ok': 'true', 'result': 1}),
    (b'{"__error":1,"message":"m"}', {'__error': 1, 'message': 'm'}),
    (b'"text"', 'text'),
    (b'[1,2]', [1, 2]),
])
def test_decode_raw(payload, expected):
    assert envelope.decode(payload) == expected


def test_decode_invalid():
    with pytest.raises(ValueError):
        envelope.decode(b'{not json')
    with pytest.raises(ValueError):
        envelope.decode(b'\xff\xfe')


def test_err_from_exception():
    try:
        raise KeyError('missing')
    except KeyError as exc:
        err = Err.from_exception(exc)
    assert err.kind == 'KeyError'
    assert 'missing' in err.message
    assert 'Traceback' in err.detail
    assert 'test_err_from_exception' in err.detail
    assert Err.from_exception(ValueError()).message == 'ValueError'
