# app/cli.py
import click

from .services.aggregation_service import AggregationService
from .services.settings_service import SettingsProvider
from .services.sync_service import SyncService, SyncAlreadyRunningError, cancel_stuck_syncs, SYNC_TYPES


def register_commands(app):
    """Operator commands, available as `flask <command>`."""

    @app.cli.command('sync-tours')
    @click.argument('wholesaler_id', type=int, required=False)
    @click.option('--type', 'sync_type', type=click.Choice(SYNC_TYPES), default='incremental')
    @click.option('--limit', type=int, default=None, help='Process at most this many tours.')
    def sync_tours(wholesaler_id, sync_type, limit):
        """Run a sync for one wholesaler, or for every sync-enabled wholesaler."""
        service = SyncService()
        if wholesaler_id is None:
            results = service.sync_all(sync_type, record_limit=limit)
        else:
            try:
                results = [service.run(wholesaler_id, sync_type, record_limit=limit)]
            except SyncAlreadyRunningError as e:
                raise click.ClickException(str(e))
            except ValueError as e:
                raise click.ClickException(str(e))
        for sync_log in results:
            click.echo(f"{sync_log.sync_id} wholesaler={sync_log.wholesaler_id} status={sync_log.status} "
                       f"created={sync_log.tours_created} updated={sync_log.tours_updated} "
                       f"skipped={sync_log.tours_skipped} failed={sync_log.tours_failed} errors={sync_log.error_count}")
        if not results:
            click.echo("No sync-enabled wholesalers.")

    @app.cli.command('cancel-stuck-syncs')
    @click.option('--timeout', type=int, default=None, help='Minutes without heartbeat; defaults to each run\'s own timeout.')
    @click.option('--dry-run', is_flag=True, help='Only list the runs that would be cancelled.')
    def cancel_stuck(timeout, dry_run):
        """Fail running syncs whose heartbeat went stale."""
        cancelled = cancel_stuck_syncs(timeout_minutes=timeout, dry_run=dry_run)
        if not cancelled:
            click.echo("No stuck syncs found.")
            return
        verb = "Would cancel" if dry_run else "Cancelled"
        for sync_id in cancelled:
            click.echo(f"{verb} {sync_id}")

    @app.cli.command('recalculate-aggregates')
    @click.option('--wholesaler', 'wholesaler_id', type=int, default=None)
    def recalculate_aggregates(wholesaler_id):
        """Recompute tour prices, discounts, promotion and hotel-star summaries."""
        count = AggregationService(SettingsProvider()).recalculate_all(wholesaler_id)
        click.echo(f"Recalculated {count} tours.")
