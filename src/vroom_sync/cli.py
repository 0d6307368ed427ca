import asyncio
import json
import logging
from pathlib import Path

import click
from dotenv import load_dotenv

from .database import VehicleDatabase
from .models import UserAccount
from .sync.config import SyncConfig
from .sync.engine import SyncEngine
from .sync.exceptions import AuthInvalidError, SyncError
from .sync.interfaces import ArchiveAdapter, MirrorAdapter, RemoteAdapterFactory
from .sync.models import RestoreMode

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


class OfflineAdapterFactory(RemoteAdapterFactory):
    """Adapter factory for local-only commands; any remote call is refused."""

    def mirror_for(self, user: UserAccount) -> MirrorAdapter:
        raise AuthInvalidError(user.id, "Remote services are not available offline")

    def archive_for(self, user: UserAccount) -> ArchiveAdapter:
        raise AuthInvalidError(user.id, "Remote services are not available offline")


def _run(db_path: str, log_level: str, operation):
    """Open the database, build an engine and run one async operation against it."""
    config = SyncConfig.from_env()
    config.database_path = db_path
    config.log_level = log_level

    async def run_operation():
        with VehicleDatabase(Path(db_path)) as db:
            engine = SyncEngine(db, OfflineAdapterFactory(), config)
            try:
                return await operation(engine)
            finally:
                await engine.stop()

    try:
        return asyncio.run(run_operation())
    except SyncError as e:
        logger.error(f"{e.error_code.value}: {e.message}")
        raise click.ClickException(f"{e.error_code.value}: {e.message}")


@click.group()
@click.option('--db', 'db_path', envvar='VROOM_DATABASE_PATH', default='vroom.duckdb', show_default=True,
              type=click.Path(dir_okay=False), help='DuckDB database file')
@click.option('--log-level', envvar='VROOM_LOG_LEVEL', default='WARNING', show_default=True,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False),
              help='Logging level')
@click.pass_context
def cli(ctx, db_path, log_level):
    """
    Export, restore and inspect VROOM vehicle data against a local database.
    """
    ctx.ensure_object(dict)
    ctx.obj['db_path'] = db_path
    ctx.obj['log_level'] = log_level


@cli.command('export-archive')
@click.option('--user', 'user_id', required=True, help='ID of the user to export')
@click.option('--output', type=click.Path(dir_okay=False, writable=True), help='Archive file to write')
@click.pass_context
def export_archive(ctx, user_id, output):
    """Write an archive of a user's local data."""
    file_name, data = _run(ctx.obj['db_path'], ctx.obj['log_level'],
                           lambda engine: engine.download_archive(user_id))

    target = Path(output) if output else Path(file_name)
    target.write_bytes(data)
    click.echo(f"Wrote {len(data)} bytes to {target}")


@cli.command('restore-archive')
@click.option('--user', 'user_id', required=True, help='ID of the restoring user')
@click.option('--input', 'input_path', required=True, type=click.Path(exists=True, dir_okay=False),
              help='Archive file to restore from')
@click.option('--mode', type=click.Choice([mode.value for mode in RestoreMode]), default='preview',
              show_default=True, help='preview counts only, replace drops local data, merge aborts on conflicts')
@click.pass_context
def restore_archive(ctx, user_id, input_path, mode):
    """Restore a user's data from an archive file."""
    data = Path(input_path).read_bytes()
    result = _run(ctx.obj['db_path'], ctx.obj['log_level'],
                  lambda engine: engine.upload_archive(user_id, data, mode))

    for name, count in result.summary.to_dict().items():
        click.echo(f"{name}: {count}")

    if result.conflicts:
        for conflict in result.conflicts:
            click.echo(f"conflict {conflict.table}/{conflict.id}: {', '.join(conflict.fields)}")
        raise click.ClickException(f"{result.error_code}: {result.message}")

    click.echo(result.message)


@cli.command('status')
@click.option('--user', 'user_id', required=True, help='ID of the user')
@click.pass_context
def status(ctx, user_id):
    """Show a user's sync settings and last sync dates."""
    sync_status = _run(ctx.obj['db_path'], ctx.obj['log_level'],
                       lambda engine: engine.get_status(user_id))

    def fmt(value):
        return value.isoformat() if value else None

    click.echo(json.dumps({
        "enabledTypes": [sync_type.value for sync_type in sync_status.enabled_types],
        "syncOnInactivity": sync_status.sync_on_inactivity,
        "inactivityDelayMinutes": sync_status.inactivity_delay_minutes,
        "lastSyncDate": fmt(sync_status.last_sync_date),
        "lastBackupDate": fmt(sync_status.last_backup_date),
        "lastDataChangeDate": fmt(sync_status.last_data_change_date),
        "hasChangesSinceLastSync": sync_status.has_changes_since_last_sync,
        "lastSyncError": sync_status.last_sync_error,
    }, indent=2))


if __name__ == '__main__':
    cli()
