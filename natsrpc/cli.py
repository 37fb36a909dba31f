"""Command-line interface and configuration."""

import functools
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, NamedTuple, Optional, TypeVar, Union

import click
import orjson as json
import uvloop
import yaml

import natsrpc

from . import log
from .broker import Retention, Storage
from .tools import client, events

__all__ = [
    'load_yaml',
    'cli',
]


class OptionGroupCommand(click.Command):
    @staticmethod
    def format_group(
        ctx: click.Context,
        formatter: click.HelpFormatter,
        header: str,
        params: list[click.Parameter],
    ) -> None:
        with formatter.section(header):
            options = []
            for param in params:
                record = param.get_help_record(ctx)
                if record is not None:  # pragma: no cover; does not occur currently
                    options.append(record)
            formatter.write_dl(options, col_max=30)

    def format_options(
        self,
        ctx: click.Context,
        formatter: click.HelpFormatter,
    ) -> None:
        grouped_params: dict[Optional['OptionGroup'], list[click.Parameter]] = {}
        for param in self.get_params(ctx):
            grouped_params.setdefault(getattr(param, 'group', None), []).append(param)
        for group, params in grouped_params.items():
            if group:
                header = group.header or f'{group.key.title()} Options'
                self.format_group(ctx, formatter, header, params)
        if ungrouped := grouped_params.get(None):
            self.format_group(ctx, formatter, 'Other Options', ungrouped)


class OptionGroupMultiCommand(OptionGroupCommand, click.Group):
    def format_options(
        self,
        ctx: click.Context,
        formatter: click.HelpFormatter,
    ) -> None:
        super().format_options(ctx, formatter)
        self.format_commands(ctx, formatter)


@dataclass
class OptionStore:
    options: dict[str, Any] = field(default_factory=dict)


class OptionGroup(NamedTuple):
    key: str
    header: Optional[str] = None


class Option(click.Option):
    def __init__(
        self,
        *args: Any,
        group: Optional[OptionGroup] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.group = group


FC = TypeVar('FC', Callable[..., Any], click.Command)
ParameterCallback = Callable[[click.Context, click.Parameter, Any], Any]


class OptionGroupFactory:
    def __init__(self) -> None:
        self.current: Optional[OptionGroup] = None

    def group(self, *args: Any, **kwargs: Any) -> Callable[[FC], FC]:
        self.current = OptionGroup(*args, **kwargs)
        return lambda func: func

    def option(self, *args: Any, **kwargs: Any) -> Callable[[FC], FC]:
        return click.option(*args, **kwargs, group=self.current)


@functools.lru_cache(maxsize=64)
def make_converter(convert: Callable[[Any], Any]) -> ParameterCallback:
    """Make a :mod:`click` callback that applies a conversion to each option value.

    Works with options provided multiple times (where ``multiple=True``) and variadic
    arguments (where ``nargs=-1``). ``None`` (an unset option) is passed through.

    Arguments:
        convert: A unary conversion callable. The argument/return types are arbitrary
            and need not be the same.

    Returns:
        A :mod:`click`-compatible callback.
    """

    def callback(_ctx: click.Context, _param: click.Parameter, value: Any, /) -> Any:
        try:
            if value is None:
                return None
            if isinstance(value, (tuple, list)):
                return tuple(convert(element) for element in value)
            return convert(value)
        except Exception as exc:
            raise click.BadParameter(str(exc)) from exc

    return callback


def check_positive(value: float) -> float:
    """Check whether the provided value is strictly positive.

    Examples:
        >>> check_positive(0.01)
        0.01
        >>> check_positive(0)
        Traceback (most recent call last):
          ...
        ValueError: '0' should be a positive number
    """
    if value <= 0:
        raise ValueError(f"'{value}' should be a positive number")
    return value


def check_nonnegative(value: float) -> float:
    """Check whether the provided value is zero or positive.

    Examples:
        >>> check_nonnegative(0)
        0
        >>> check_nonnegative(-1)
        Traceback (most recent call last):
          ...
        ValueError: '-1' should be a nonnegative number
    """
    if value < 0:
        raise ValueError(f"'{value}' should be a nonnegative number")
    return value


def load_yaml(path: Union[str, Path]) -> Any:
    """Read and parse a YAML file.

    Arguments:
        path: A path to a valid regular text file.

    Examples:
        >>> import tempfile
        >>> with tempfile.NamedTemporaryFile(mode='w') as tmp:
        ...     print('x: {y: 1}', file=tmp)
        ...     _ = tmp.seek(0)
        ...     load_yaml(tmp.name)
        {'x': {'y': 1}}
    """
    try:
        with Path(path).open() as stream:
            return yaml.load(stream, Loader=yaml.SafeLoader)
    except yaml.YAMLError as exc:
        message = f'Unable to parse YAML ({path})'
        mark = getattr(exc, 'problem_mark', None)
        if mark:  # pragma: no cover
            # The PyYAML docs recommend this pattern:
            # https://pyyaml.org/wiki/PyYAMLDocumentation
            message += f': line {mark.line + 1}, column {mark.column + 1}'
        raise ValueError(message) from exc


def load_config(ctx: click.Context, _param: click.Parameter, value: Optional[str]) -> None:
    """Load a YAML configuration file into the command's defaults.

    Keys are option names with underscores (for example, ``retry_delay``). Options
    given on the command line or through environment variables take precedence.
    """
    if not value:
        return
    try:
        config = load_yaml(value) or {}
    except (OSError, ValueError) as exc:
        raise click.BadParameter(str(exc)) from exc
    if not isinstance(config, dict):
        raise click.BadParameter(f'{value!r} should contain a mapping of options')
    ctx.default_map = {**(ctx.default_map or {}), **config}


def parse_json(value: str) -> Any:
    """Parse a JSON document given on the command line.

    Examples:
        >>> parse_json('[1, "two"]')
        [1, 'two']
    """
    return json.loads(value)


optgroup = OptionGroupFactory()
click.option: Callable[[FC], FC] = functools.partial(  # type: ignore[misc]
    click.option,
    cls=Option,
)


@click.group(
    context_settings=dict(
        auto_envvar_prefix='NATSRPC',
        max_content_width=100,
        show_default=True,
    ),
    cls=OptionGroupMultiCommand,
)
@click.option(
    '--config',
    type=click.Path(dir_okay=False, exists=True),
    callback=load_config,
    is_eager=True,
    expose_value=False,
    help='YAML file of option defaults.',
)
@optgroup.group('broker')
@optgroup.option(
    '--server',
    metavar='URL',
    multiple=True,
    default=['nats://localhost:4222'],
    help='NATS server URLs to connect to.',
)
@optgroup.option(
    '--name',
    help='Connection name reported to the server.',
)
@optgroup.group('call')
@optgroup.option(
    '--timeout',
    callback=make_converter(check_positive),
    type=float,
    default=10,
    help='Duration in seconds to wait for each reply.',
)
@optgroup.option(
    '--retries',
    callback=make_converter(check_nonnegative),
    type=int,
    default=3,
    help='Number of times to retry a call nobody responded to.',
)
@optgroup.option(
    '--retry-delay',
    callback=make_converter(check_nonnegative),
    type=float,
    default=1,
    help='Delay in seconds before the first retry. Doubles with each retry.',
)
@optgroup.option(
    '--max-retry-delay',
    callback=make_converter(check_nonnegative),
    type=float,
    default=20,
    help='Maximum delay in seconds between retries.',
)
@optgroup.group('stream')
@optgroup.option(
    '--stream-replicas',
    callback=make_converter(check_positive),
    type=int,
    default=1,
    help='Number of replicas of streams created on demand.',
)
@optgroup.option(
    '--stream-retention',
    type=click.Choice([policy.value for policy in Retention], case_sensitive=False),
    default=Retention.LIMITS.value,
    help='Retention policy of streams created on demand.',
)
@optgroup.option(
    '--stream-storage',
    type=click.Choice([storage.value for storage in Storage], case_sensitive=False),
    default=Storage.FILE.value,
    help='Storage backend of streams created on demand.',
)
@optgroup.option(
    '--stream-max-age',
    callback=make_converter(check_positive),
    type=float,
    help='Maximum age in seconds of stored messages.',
)
@optgroup.option(
    '--stream-max-bytes',
    callback=make_converter(check_positive),
    type=int,
    help='Maximum total size in bytes of stored messages.',
)
@optgroup.option(
    '--stream-max-msgs',
    callback=make_converter(check_positive),
    type=int,
    help='Maximum number of stored messages.',
)
@optgroup.option(
    '--stream-no-ack/--stream-ack',
    default=True,
    help='Whether streams created on demand skip acknowledging published messages.',
)
@optgroup.group('log')
@optgroup.option(
    '--log-level',
    type=click.Choice(log.LEVELS, case_sensitive=False),
    default='info',
    help='Minimum severity of log records displayed.',
)
@optgroup.option(
    '--log-format',
    type=click.Choice(['json', 'pretty'], case_sensitive=False),
    default='json',
    help='Format of records printed to standard output.',
)
@click.version_option(version=natsrpc.__version__, message='%(version)s')
@click.pass_context
def cli(ctx: click.Context, **options: Any) -> None:
    """Remote procedure calls and events over NATS.

    Services register methods under "<service>.<method>" subjects. Calls are JSON
    requests answered with JSON envelopes. Persistent calls are written to a stream
    first, so they survive until a durable service consumes them.
    """
    ctx.ensure_object(OptionStore)
    ctx.obj.options.update(options)
    log.configure(fmt=options['log_format'], level=options['log_level'])


@cli.command(name='call')
@click.option(
    '--persistent/--no-persistent',
    help='Send the call through the method\'s stream.',
)
@click.argument('service')
@click.argument('method')
@click.argument('arguments', metavar='[ARG]...', callback=make_converter(parse_json), nargs=-1)
@click.pass_context
def call_cli(ctx: click.Context, **options: Any) -> None:
    """Call a remote method and print the result as JSON.

    Each argument is a JSON document:

    \b
        $ python -m natsrpc call math add 1 2
        3
    """
    ctx.obj.options.update(options)
    uvloop.run(client.main(ctx))


@cli.command()
@click.argument('subject')
@click.argument('payload', default='null', callback=make_converter(parse_json))
@click.pass_context
def emit(ctx: click.Context, **options: Any) -> None:
    """Publish an event (a JSON document) on a subject."""
    ctx.obj.options.update(options)
    uvloop.run(events.emit(ctx))


@cli.command()
@click.option('--queue', help='Queue group to join. Each event reaches one member.')
@click.argument('subject')
@click.pass_context
def listen(ctx: click.Context, **options: Any) -> None:
    """Print events published on a subject as jsonlines until interrupted."""
    ctx.obj.options.update(options)
    uvloop.run(events.listen(ctx))
