"""Command-line interface with Rich formatting."""

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
import structlog

from . import __version__
from .config import load_settings, create_example_config
from .database import DatabaseManager

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False, log_format: str = "%(message)s") -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level), format=log_format, stream=sys.stdout)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """calpush - keep Busy events off the default reminders.

    Registers Google Calendar push channels and patches Busy events
    incrementally whenever a watched calendar changes.
    """
    ctx.ensure_object(dict)

    # `config create` has to work before any configuration exists
    if ctx.invoked_subcommand == 'config':
        return

    try:
        settings = load_settings(config)
    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)

    if debug:
        settings.debug = True
    if verbose:
        settings.log_level = 'DEBUG'

    ctx.obj['settings'] = settings
    setup_logging(settings.log_level, settings.debug, settings.log_format)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
@click.pass_context
def serve(ctx, host, port):
    """Run the webhook / registration HTTP server."""
    import uvicorn
    from .server import create_app

    app = create_app(ctx.obj['settings'])
    logger.info("listening", host=host, port=port)
    uvicorn.run(app, host=host, port=port, log_config=None)


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create database tables."""
    db_manager = DatabaseManager(ctx.obj['settings'])
    db_manager.init_db()
    console.print(f"[green]✓ Database ready[/green] ({ctx.obj['settings'].database_url})")


@cli.command()
@click.option('--user', '-u', 'principal_id', help='Only show channels of this Google user ID')
@click.pass_context
def channels(ctx, principal_id):
    """List registered watch channels."""
    db_manager = DatabaseManager(ctx.obj['settings'])
    db_manager.init_db()
    rows = db_manager.list_channels(principal_id)

    if not rows:
        console.print("[yellow]No watch channels registered[/yellow]")
        return

    table = Table(title="Watch channels")
    table.add_column("Channel ID", style="cyan")
    table.add_column("User")
    table.add_column("Calendar")
    table.add_column("Resource ID")
    table.add_column("Sync token", justify="center")

    for channel in rows:
        table.add_row(
            channel.channel_id,
            channel.principal_id,
            channel.calendar_id,
            channel.resource_id,
            "✅" if channel.sync_token else "❌",
        )

    console.print(table)


@cli.group()
def config():
    """Configuration helpers."""
    pass


@config.command('create')
@click.argument('path', type=click.Path(dir_okay=False, path_type=Path), default=Path('.env'))
@click.option('--force', is_flag=True, help='Overwrite an existing file')
def config_create(path, force):
    """Write an example .env configuration file."""
    if path.exists() and not force:
        console.print(f"[red]{path} already exists (use --force to overwrite)[/red]")
        sys.exit(1)
    create_example_config(path)
    console.print(f"[green]✓ Example configuration written to {path}[/green]")


if __name__ == '__main__':
    cli()
