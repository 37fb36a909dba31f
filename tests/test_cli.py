import orjson as json
import pytest
from click.testing import CliRunner

from natsrpc.bus import Bus
from natsrpc.cli import cli, load_yaml
from natsrpc.exception import NoRespondersError


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def bus(mocker, broker):
    bus = Bus(broker)
    mocker.patch.object(Bus, 'from_options', return_value=bus)
    return bus


def test_help(runner):
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    for header in ('Broker Options', 'Call Options', 'Stream Options', 'Log Options'):
        assert header in result.output
    for command in ('call', 'emit', 'listen'):
        assert command in result.output


def test_call(mocker, runner, bus):
    call = mocker.patch.object(bus, 'call', return_value={'sum': 3})
    args = ['--log-level', 'error', '--timeout', '2', '--retries', '0']
    result = runner.invoke(cli, [*args, 'call', 'math', 'add', '1', '2'])
    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {'sum': 3}
    call.assert_awaited_once_with('math', 'add', 1, 2)
    options = Bus.from_options.call_args.args[0]
    assert options['timeout'] == 2
    assert options['retries'] == 0
    assert options['server'] == ('nats://localhost:4222',)
    assert options['stream_retention'] == 'limits'
    assert options['stream_no_ack'] is True
    assert options['stream_max_msgs'] is None


def test_call_stream_options(mocker, runner, bus):
    mocker.patch.object(bus, 'call_persistent', return_value=None)
    args = ['--stream-max-msgs', '100', '--stream-ack']
    result = runner.invoke(cli, [*args, 'call', '--persistent', 'billing', 'charge'])
    assert result.exit_code == 0, result.output
    options = Bus.from_options.call_args.args[0]
    assert options['stream_max_msgs'] == 100
    assert options['stream_no_ack'] is False
    result = runner.invoke(cli, ['--stream-max-msgs', '0', 'call', 'billing', 'charge'])
    assert result.exit_code == 2


def test_call_persistent(mocker, runner, bus):
    call = mocker.patch.object(bus, 'call_persistent', return_value=None)
    result = runner.invoke(cli, ['call', '--persistent', 'billing', 'charge', '{"cents": 5}'])
    assert result.exit_code == 0, result.output
    call.assert_awaited_once_with('billing', 'charge', {'cents': 5})


def test_call_failure(mocker, runner, bus):
    error = NoRespondersError('no responders available', subject='math.add', attempts=1)
    mocker.patch.object(bus, 'call', side_effect=error)
    result = runner.invoke(cli, ['--log-format', 'pretty', 'call', 'math', 'add'])
    assert result.exit_code == 1
    assert 'Remote call failed' in result.output


def test_call_bad_argument(runner, bus):
    result = runner.invoke(cli, ['call', 'math', 'add', '{'])
    assert result.exit_code == 2


def test_bad_option(runner):
    result = runner.invoke(cli, ['--timeout', '0', 'call', 'math', 'add'])
    assert result.exit_code == 2
    assert 'positive' in result.output


def test_emit(mocker, runner, bus):
    emit = mocker.patch.object(bus, 'emit')
    result = runner.invoke(cli, ['emit', 'orders.created', '{"id": 1}'])
    assert result.exit_code == 0, result.output
    emit.assert_awaited_once_with('orders.created', {'id': 1})
    result = runner.invoke(cli, ['emit', 'orders.cancelled'])
    emit.assert_awaited_with('orders.cancelled', None)


def test_config_file(mocker, runner, bus, tmp_path):
    mocker.patch.object(bus, 'call', return_value=1)
    config = tmp_path / 'natsrpc.yaml'
    config.write_text('timeout: 4\nserver: [nats://a:4222, nats://b:4222]\nlog_level: error\n')
    result = runner.invoke(
        cli,
        ['--config', str(config), '--retries', '5', 'call', 'math', 'add'],
        env={'NATSRPC_RETRY_DELAY': '0.5'},
    )
    assert result.exit_code == 0, result.output
    options = Bus.from_options.call_args.args[0]
    assert options['timeout'] == 4
    assert options['retries'] == 5
    assert options['retry_delay'] == 0.5
    assert options['server'] == ('nats://a:4222', 'nats://b:4222')


def test_config_file_invalid(runner, tmp_path):
    config = tmp_path / 'natsrpc.yaml'
    config.write_text('- not\n- a mapping\n')
    result = runner.invoke(cli, ['--config', str(config), 'call', 'math', 'add'])
    assert result.exit_code == 2


def test_load_yaml(tmp_path):
    path = tmp_path / 'bad.yaml'
    path.write_text(':')
    with pytest.raises(ValueError):
        load_yaml(path)
