"""xui-engine command line interface."""

import asyncio
import json
import logging
import sys
from functools import wraps

import click

from xui_engine import __version__
from xui_engine.engine import Engine
from xui_engine.monitor import Monitor, process_running
from xui_engine.settings import Settings, ensure_env_file
from xui_engine.store import InboundStore
from xui_engine.supervisor import Supervisor
from xui_engine.util import EngineError

logger = logging.getLogger(__name__)

# a one-shot status has no earlier CPU reading to measure from
STATUS_CPU_INTERVAL = 0.2


def run_async(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


def fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--env-file", default=".env", show_default=True, help="dotenv file to load settings from")
@click.pass_context
def cli(ctx, env_file):
    """Control plane for the Xray core: config generation, process
    supervision and traffic quotas."""
    settings = Settings.from_env(env_file)
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )
    ctx.obj = settings


@cli.command("init-env")
@click.option("--path", default=".env", show_default=True)
def init_env(path):
    """Write a default env file and create data/, logs/ and bin/."""
    if ensure_env_file(path):
        click.echo(f"Wrote {path}")
    else:
        click.echo(f"{path} already exists")


@cli.command()
@click.pass_obj
@run_async
async def serve(settings: Settings):
    """Apply the config once, then poll traffic forever."""
    supervisor = Supervisor(settings, Monitor())
    async with InboundStore(settings.database_path) as store:
        await store.run_migrations()
        engine = Engine(settings, store, supervisor)
        try:
            await engine.apply_config()
            logger.info("Initial Xray config applied")
        except EngineError as e:
            logger.error("Failed to apply config at startup: %s", e)
        await engine.run_forever()


@cli.command()
@click.pass_obj
@run_async
async def apply(settings: Settings):
    """Regenerate the config from the enabled inbounds and restart xray."""
    supervisor = Supervisor(settings, Monitor())
    async with InboundStore(settings.database_path) as store:
        await store.run_migrations()
        engine = Engine(settings, store, supervisor)
        try:
            config = await engine.apply_config()
        except EngineError as e:
            fail(str(e))
        await engine.restarts.wait()
    click.echo(f"Applied {len(config.inbounds) - 1} inbound(s) to {settings.xray_config_path}")


@cli.command()
@click.pass_obj
@run_async
async def start(settings: Settings):
    """Start xray."""
    try:
        await Supervisor(settings, Monitor()).start()
    except EngineError as e:
        fail(str(e))
    click.echo("Xray service started")


@cli.command()
@click.pass_obj
@run_async
async def stop(settings: Settings):
    """Stop every running xray."""
    await Supervisor(settings, Monitor()).stop()
    click.echo("Xray service stopped")


@cli.command()
@click.pass_obj
@run_async
async def restart(settings: Settings):
    """Stop, then start xray."""
    try:
        await Supervisor(settings, Monitor()).restart()
    except EngineError as e:
        fail(str(e))
    click.echo("Xray service restarted")


@cli.command()
@click.argument("version")
@click.pass_obj
@run_async
async def update(settings: Settings, version):
    """Install xray VERSION (e.g. v1.8.4) and restart it."""
    try:
        await Supervisor(settings, Monitor()).update(version)
    except EngineError as e:
        fail(str(e))
    click.echo(f"Xray updated to {version}")


@cli.command()
@click.pass_obj
@run_async
async def releases(settings: Settings):
    """List the published xray versions."""
    try:
        tags = await Supervisor(settings, Monitor()).list_releases()
    except EngineError as e:
        fail(str(e))
    for tag in tags:
        click.echo(tag)


@cli.command()
@click.pass_obj
@run_async
async def logs(settings: Settings):
    """Print recent xray output."""
    for line in await Supervisor(settings, Monitor()).read_logs():
        click.echo(line)


@cli.command()
@click.pass_obj
@run_async
async def status(settings: Settings):
    """Show host metrics and the xray state as JSON."""
    monitor = Monitor(running=process_running(settings.binary_name))
    supervisor = Supervisor(settings, monitor)
    version = await supervisor.version()
    await asyncio.to_thread(monitor.refresh_host_metrics, STATUS_CPU_INTERVAL)
    click.echo(monitor.snapshot(version).model_dump_json(indent=2))


@cli.command()
@click.pass_obj
@run_async
async def keypair(settings: Settings):
    """Generate an x25519 key pair for REALITY."""
    try:
        keys = await Supervisor(settings, Monitor()).generate_keypair()
    except EngineError as e:
        fail(str(e))
    click.echo(json.dumps(keys.dump(), indent=2))


if __name__ == "__main__":
    cli()
