import asyncio

import pytest

from natsrpc.broker import (
    AckPolicy,
    BrokerError,
    ConsumerRecord,
    LogNotFoundError,
    Retention,
    StreamOptions,
    StreamRecord,
)
from natsrpc.exception import ProvisioningError
from natsrpc.provision import StreamProvisioner
from natsrpc.subject import stream_name_for


@pytest.fixture
def provisioner(broker):
    return StreamProvisioner(broker, StreamOptions(replicas=3))


@pytest.mark.asyncio
async def test_ensure_creates_stream(broker, provisioner):
    record = await provisioner.ensure_stream('math.add')
    assert record.name == stream_name_for('math.add')
    assert broker.streams[record.name] == StreamRecord(
        record.name,
        ('math.add',),
        StreamOptions(replicas=3),
    )


@pytest.mark.asyncio
async def test_ensure_existing_stream(mocker, broker, provisioner):
    existing = StreamRecord(stream_name_for('math.add'), ('math.add',), StreamOptions())
    broker.streams[existing.name] = existing
    add_stream = mocker.spy(broker, 'add_stream')
    assert await provisioner.ensure_stream('math.add', StreamOptions(replicas=5)) == existing
    add_stream.assert_not_called()


@pytest.mark.asyncio
async def test_ensure_cached(mocker, broker, provisioner):
    await provisioner.ensure_stream('math.add')
    stream_info = mocker.spy(broker, 'stream_info')
    for _ in range(3):
        await provisioner.ensure_stream('math.add')
    stream_info.assert_not_called()


@pytest.mark.asyncio
async def test_ensure_concurrent(mocker, broker, provisioner):
    add_stream = mocker.spy(broker, 'add_stream')
    records = await asyncio.gather(*(provisioner.ensure_stream('orders') for _ in range(10)))
    assert len({record.name for record in records}) == 1
    assert add_stream.call_count == 1


@pytest.mark.asyncio
async def test_ensure_race_with_other_process(mocker, broker, provisioner):
    name = stream_name_for('orders')

    async def created_elsewhere(record):
        broker.streams[name] = StreamRecord(name, ('orders',), StreamOptions(replicas=1))
        raise BrokerError('stream name already in use', stream=name)

    mocker.patch.object(broker, 'add_stream', side_effect=created_elsewhere)
    record = await provisioner.ensure_stream('orders')
    assert record.options.replicas == 1
    assert provisioner.ensured[name] == record


@pytest.mark.asyncio
async def test_ensure_failure(mocker, broker, provisioner):
    error = BrokerError('insufficient resources')
    mocker.patch.object(broker, 'add_stream', side_effect=error)
    with pytest.raises(ProvisioningError) as excinfo:
        await provisioner.ensure_stream('orders')
    assert excinfo.value.__cause__ is error
    assert excinfo.value.code == 'RPC_PROVISIONING_FAILED'
    assert stream_name_for('orders') not in provisioner.ensured


@pytest.mark.asyncio
async def test_ensure_options_override(broker, provisioner):
    options = StreamOptions(retention=Retention.WORK_QUEUE, max_age=60)
    record = await provisioner.ensure_stream('jobs.run', options)
    assert broker.streams[record.name].options == options


@pytest.mark.asyncio
async def test_ensure_consumer(mocker, broker, provisioner):
    record = await provisioner.ensure_stream('math.add')
    consumer = ConsumerRecord('math_add_durable', 'math.add', record.name, queue='math')
    assert await provisioner.ensure_consumer(consumer) == consumer
    add_consumer = mocker.spy(broker, 'add_consumer')
    assert await provisioner.ensure_consumer(consumer) == consumer
    add_consumer.assert_not_called()


@pytest.mark.asyncio
async def test_ensure_consumer_requires_explicit_ack(broker, provisioner):
    record = await provisioner.ensure_stream('math.add')
    consumer = ConsumerRecord('d', 'math.add', record.name, ack_policy=AckPolicy.NONE)
    with pytest.raises(ProvisioningError):
        await provisioner.ensure_consumer(consumer)


@pytest.mark.asyncio
async def test_ensure_consumer_missing_stream(provisioner):
    consumer = ConsumerRecord('d', 'math.add', 'RPC_missing')
    with pytest.raises(ProvisioningError) as excinfo:
        await provisioner.ensure_consumer(consumer)
    assert isinstance(excinfo.value.__cause__, LogNotFoundError)
