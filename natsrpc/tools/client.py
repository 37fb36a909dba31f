import click
import orjson as json

from .. import log
from ..bus import Bus
from ..exception import RpcError


async def main(ctx: click.Context) -> None:
    options = ctx.obj.options
    logger = log.get_logger().bind(service=options['service'], method=options['method'])
    async with Bus.from_options(options) as bus:
        call = bus.call_persistent if options['persistent'] else bus.call
        try:
            result = await call(options['service'], options['method'], *options['arguments'])
        except RpcError as exc:
            await logger.aerror('Remote call failed', exc_info=exc)
            ctx.exit(1)
        await logger.adebug('Remote call succeeded')
        click.echo(json.dumps(result))
