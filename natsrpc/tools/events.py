import asyncio
from typing import Any

import click
import orjson as json

from .. import log
from ..bus import Bus


async def emit(ctx: click.Context) -> None:
    options = ctx.obj.options
    async with Bus.from_options(options) as bus:
        await bus.emit(options['subject'], options['payload'])
        await log.get_logger().adebug('Event emitted', subject=options['subject'])


async def print_event(payload: Any, /) -> None:
    click.echo(json.dumps(payload))


async def listen(ctx: click.Context) -> None:
    """Print events until the task is cancelled (for example, by ``SIGINT``)."""
    options = ctx.obj.options
    async with Bus.from_options(options) as bus:
        await bus.subscribe(options['subject'], print_event, queue=options['queue'])
        await log.get_logger().ainfo('Listening for events', subject=options['subject'])
        await asyncio.Event().wait()
