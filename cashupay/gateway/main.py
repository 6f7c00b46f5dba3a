import asyncio
import json
from typing import Optional

import click
import uvicorn
from click import Context

from ..core.settings import settings


@click.command(
    context_settings=dict(
        ignore_unknown_options=True,
        allow_extra_args=True,
    )
)
@click.option("--port", default=settings.gateway_listen_port, help="Port to listen on")
@click.option("--host", default=settings.gateway_listen_host, help="Host to run the gateway on")
@click.option("--ssl-keyfile", default=None, help="Path to SSL keyfile")
@click.option("--ssl-certfile", default=None, help="Path to SSL certificate")
@click.pass_context
def main(
    ctx: Context,
    port: int = settings.gateway_listen_port,
    host: str = settings.gateway_listen_host,
    ssl_keyfile: Optional[str] = None,
    ssl_certfile: Optional[str] = None,
):
    """Starts the uvicorn server of the gateway."""
    # remaining --key=value arguments are passed on to uvicorn
    d = dict()
    for a in ctx.args:
        item = a.split("=")
        if len(item) > 1:  # argument like --key=value
            d[item[0].strip("--").replace("-", "_")] = (
                int(item[1])  # need to convert to int if it's a number
                if item[1].isdigit()
                else item[1]
            )
        else:
            d[a.strip("--")] = True  # argument like --key

    config = uvicorn.Config(
        "cashupay.gateway.app:app",
        port=port,
        host=host,
        ssl_keyfile=ssl_keyfile,
        ssl_certfile=ssl_certfile,
        **d,
    )
    server = uvicorn.Server(config)
    server.run()


async def _run_cron() -> dict:
    from .startup import gateway, shutdown_gateway, start_gateway

    await start_gateway()
    try:
        response = await gateway.run_background_tasks()
    finally:
        await shutdown_gateway()
    return response.model_dump()


@click.command()
def cron():
    """Runs one round of background tasks, for use from a system cron job."""
    from ..core.logging import configure_logger

    configure_logger()
    click.echo(json.dumps(asyncio.run(_run_cron()), indent=2))
