# flowsync/main.py
import asyncio
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
import click

from core.settings import APP_NAME, CONFIG_PATH, DB_PATH
from storage.db import init_db
from services.errors import InvalidOperationError
from services.sync_queue import SyncQueueService


def _echo_json(data) -> None:
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=str))


@click.group()
@click.pass_context
def cli(ctx):
    """Flowsync: offline sync queue worker."""
    init_db()
    ctx.obj = SyncQueueService()


@cli.command()
@click.pass_obj
def run(service: SyncQueueService):
    """Run the worker loop until interrupted."""
    click.echo(f"{APP_NAME} worker on {DB_PATH} (config: {CONFIG_PATH})")

    async def _main():
        service.start_processing()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await service.stop_processing()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        click.echo("stopped")


@cli.command()
@click.pass_obj
def tick(service: SyncQueueService):
    """Process a single batch now."""
    click.echo(f"processed: {service.process_now()}")


@cli.command()
@click.argument("user_id")
@click.pass_obj
def status(service: SyncQueueService, user_id: str):
    """Show queue counts for USER_ID."""
    _echo_json(service.get_sync_status(user_id))


@cli.command()
@click.argument("user_id")
@click.option("--limit", default=100, show_default=True, type=int)
@click.pass_obj
def pending(service: SyncQueueService, user_id: str, limit: int):
    """List pending operations for USER_ID."""
    _echo_json(service.get_pending_operations(user_id, limit))


@cli.command()
@click.pass_obj
def stats(service: SyncQueueService):
    """Show global queue counts."""
    _echo_json(service.get_sync_stats())


@cli.command()
@click.option("--days", type=int, default=None, help="Age in days (defaults to retention_days).")
@click.pass_obj
def purge(service: SyncQueueService, days):
    """Delete completed/failed operations older than --days."""
    try:
        removed = service.clear_old_operations(days)
    except InvalidOperationError as exc:
        raise click.BadParameter(str(exc), param_hint="--days")
    click.echo(f"removed: {removed}")


if __name__ == "__main__":
    cli()
