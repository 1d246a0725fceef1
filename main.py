import asyncio
import json
import sys

import click
from sqlalchemy import text, inspect

from services.db import init_db as init_db_func
from services.db import engine
from data_sources.prpc import UpstreamUnavailableError
from services.pod_snapshot import run_pod_snapshot
from services.system_metrics_import import import_system_metrics_to_db
from services.retention import cleanup_old_metrics
from services.pod_export import export_pods_json
from services.ip_geolocation import ip_geolocation_service
from config import RETENTION_DAYS

import logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

VALID_TABLES = {
    'pods': 'Registered pods (mirror of the latest live snapshot)',
    'pod_metrics_history': 'Per-pod metric snapshots (append-only)',
    'ip_geolocation': 'Geolocation per IP (write-once)',
    'system_metrics': 'Network-wide system stats samples',
}

@click.group()
def cli():
    """pNode Explorer CLI entrypoint."""
    pass

@cli.command(name="init_db")
def init_db():
    """Initialize the database (create tables)."""
    init_db_func()
    click.echo("Database initialized.")

@cli.command(name="snapshot_pods")
def snapshot_pods():
    """Fetch live pods, reconcile the registry and geolocate new IPs."""
    try:
        result = run_pod_snapshot()
    except UpstreamUnavailableError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo("Pod snapshot completed:")
    click.echo(f"  Live pods: {result['total_pods']}")
    click.echo(f"  Saved: {result['saved_count']}")
    click.echo(f"  Skipped (unchanged): {result['skipped_count']}")
    click.echo(f"  Deleted (no longer reported): {result['deleted_count']}")
    geo = result['geolocation']
    click.echo(f"  New IPs: {geo['new_ips_count']}, geolocated: {geo['stored_count']} in {geo['batches_processed']} batches")

    if result['errors']:
        click.echo("Errors:")
        for error in result['errors'][:5]:  # Show first 5 errors
            click.echo(f"  - {error['address']}: {error['error']}")
        if len(result['errors']) > 5:
            click.echo(f"  ... and {len(result['errors']) - 5} more errors")

@cli.command(name="snapshot_system")
def snapshot_system():
    """Store one network-wide system stats sample."""
    try:
        saved = import_system_metrics_to_db()
    except UpstreamUnavailableError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"System metrics saved for {saved['timestamp']}.")

@cli.command(name="geolocate")
@click.argument('addresses', nargs=-1, required=True)
def geolocate(addresses):
    """
    Geolocate the IPs behind the given pod addresses (host:port).

    Example:
      python main.py geolocate 1.2.3.4:9001 5.6.7.8:9001
    """
    result = asyncio.run(ip_geolocation_service.process_new_ips(list(addresses)))
    click.echo(json.dumps(result, indent=2))

@cli.command(name="cleanup")
@click.option('--days', default=RETENTION_DAYS, show_default=True, help='Retention window in days')
def cleanup(days):
    """Delete pod and system metrics older than the retention window."""
    deleted = cleanup_old_metrics(retention_days=days)
    click.echo(f"Deleted {deleted['pod_metrics']} pod metrics and {deleted['system_metrics']} system metrics older than {days} days.")

@cli.command(name="export_pods")
@click.option('--out', default=None, help='File to save JSON (optional)')
def export_pods(out):
    """Export pods with their latest metrics as JSON."""
    js = export_pods_json(out_path=out)
    if out:
        click.echo(f"Pods exported to {out}")
    else:
        click.echo(js)

@cli.command(name="show_table")
@click.argument('table')
def show_table(table):
    """
    Show first 10 records from a table.

    Available tables: pods, pod_metrics_history, ip_geolocation, system_metrics

    Examples:
      python main.py show_table pods
      python main.py show_table ip_geolocation
    """
    if table not in VALID_TABLES or not inspect(engine).has_table(table):
        click.echo(f"Error: Table '{table}' does not exist.\n", err=True)
        click.echo("Available tables:")
        for tbl, desc in VALID_TABLES.items():
            click.echo(f"  {tbl:20} - {desc}")
        click.echo("\nExample: python main.py show_table pods")
        return

    with engine.connect() as conn:
        result = conn.execute(text(f"SELECT * FROM {table} LIMIT 10"))
        rows = result.fetchall()
        if not rows:
            click.echo(f"No records found in table '{table}'.")
            return
        # Print column names
        columns = list(result.keys())
        click.echo(f"Columns: {columns}")
        click.echo(f"Showing first 10 records from '{table}':")
        for row in rows:
            click.echo(str(dict(zip(columns, row))))


if __name__ == "__main__":
    cli()
