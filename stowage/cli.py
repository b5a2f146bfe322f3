"""
Command line interface: flask backup <command>.

Commands:
- list: List backups (--offset, --limit)
- create: Create a backup from the configured steps
- restore NAME: Restore a backup (--no-confirm skips the prompt)
- delete NAME: Delete a backup (--no-confirm skips the prompt)
- prune: Enforce the retention policy
- reconcile: Compare the index with remote storage
"""

import click
from flask.cli import AppGroup

from stowage.backup.errors import BackupError, BackupNotFoundError
from stowage.backup.orchestrator import BackupService
from stowage.backup.retention import RetentionManager


backup_cli = AppGroup('backup', help='Create, restore and manage backups.')


def _service() -> BackupService:
    return BackupService.from_app()


def _get_existing(service: BackupService, name: str):
    try:
        return service.get_backup(name)
    except BackupNotFoundError as e:
        raise click.ClickException(str(e))


@backup_cli.command('list')
@click.option('--offset', default=0, type=click.IntRange(min=0), help='Index of the first backup to show')
@click.option('--limit', default=0, type=click.IntRange(min=0), help='Number of backups to show (0 = all)')
def list_backups(offset, limit):
    """List available backups."""
    service = _service()
    backups = service.get_backups(offset, limit)
    total = service.get_count()

    if not backups:
        click.echo("No backups found.")
        return

    click.echo(f"{'Name':<45} {'Created (UTC)':<20} {'Compressor':<10} Steps")
    for backup in backups:
        click.echo(
            f"{backup.name:<45} "
            f"{backup.created_at.strftime('%Y-%m-%d %H:%M:%S'):<20} "
            f"{backup.compressor:<10} "
            f"{', '.join(backup.steps.keys())}"
        )

    click.echo(f"\nShowing {len(backups)} of {total} backups")


@backup_cli.command('create')
def create_backup():
    """Create a single backup."""
    service = _service()

    if service.no_steps_configured():
        raise click.ClickException("No backup steps configured. Set BACKUP_STEPS first.")

    try:
        backup = service.create_backup()
    except BackupError as e:
        raise click.ClickException(f"Backup failed: {e}")

    click.echo(f"Created backup {backup.name}")


@backup_cli.command('restore')
@click.argument('name')
@click.option('--no-confirm', is_flag=True, help='Do not ask for confirmation')
def restore_backup(name, no_confirm):
    """Restore a single backup."""
    service = _service()
    _get_existing(service, name)

    if not no_confirm:
        click.confirm(f"Restoring {name} overwrites the current state. Continue?", abort=True)

    try:
        service.restore_backup(name)
    except BackupError as e:
        raise click.ClickException(f"Restore failed: {e}")

    click.echo(f"Restored backup {name}")


@backup_cli.command('delete')
@click.argument('name')
@click.option('--no-confirm', is_flag=True, help='Do not ask for confirmation')
def delete_backup(name, no_confirm):
    """Delete a single backup."""
    service = _service()
    _get_existing(service, name)

    if not no_confirm:
        click.confirm(f"Delete backup {name}?", abort=True)

    try:
        service.delete_backup(name)
    except BackupError as e:
        raise click.ClickException(f"Delete failed: {e}")

    click.echo(f"Deleted backup {name}")


@backup_cli.command('prune')
def prune_backups():
    """Delete backups outside the retention policy."""
    summary = RetentionManager(_service()).enforce_policy()

    for name in summary['deleted']:
        click.echo(f"Deleted {name}")

    if summary['errors']:
        for error in summary['errors']:
            click.echo(error, err=True)
        raise click.ClickException(f"{len(summary['errors'])} backups could not be deleted")

    click.echo(f"Pruned {len(summary['deleted'])} backups")


@backup_cli.command('reconcile')
@click.option('--remove-orphans', is_flag=True, help='Delete stored archives that no backup refers to')
def reconcile(remove_orphans):
    """Compare the backup index with remote storage."""
    try:
        result = RetentionManager(_service()).reconcile(remove_orphans=remove_orphans)
    except BackupError as e:
        raise click.ClickException(f"Reconciliation failed: {e}")

    for key in result['orphaned_objects']:
        status = 'removed' if key in result['removed'] else 'orphaned'
        click.echo(f"{status}: {key}")

    for name in result['missing_archives']:
        click.echo(f"missing archive: {name}")

    if not result['orphaned_objects'] and not result['missing_archives']:
        click.echo("Index and storage are in sync.")

    if result['errors']:
        raise click.ClickException(f"{len(result['errors'])} orphaned objects could not be removed")
