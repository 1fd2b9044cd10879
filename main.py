import json
import click
from sqlalchemy import inspect, text
from services.db import init_db as init_db_func, engine, SessionLocal
from services.error_log import ErrorLogSink, query_error_logs
from services.gossip_sync import GossipSync
from services.stats_updater import StatsUpdater, NODE_POLICIES
from services.node_export import EXPORT_STATUSES, export_nodes_json
from services.ip_migration import migrate_remove_ports as migrate_remove_ports_func, verify_ip_format
from config import API_HOST, API_PORT, STATS_BATCH_SIZE, STATS_NODE_POLICY

import logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

VALID_TABLES = {
    'nodes': 'Pods keyed by bare IP with topology and live metrics',
    'node_snapshots': 'Per-cycle history of every node',
    'network_stats': 'Per-cycle network rollups',
    'error_logs': 'Pipeline errors by source and phase',
    'geo_cache': 'Cached geo-IP lookups',
}


@click.group()
def cli():
    """PodNet Explorer CLI entrypoint."""
    pass

@cli.command(name="init_db")
def init_db():
    """Initialize the database (create tables)."""
    init_db_func()
    click.echo("Database initialized.")

def _echo_result(result):
    click.echo(json.dumps(result.summary, indent=2, default=str))
    if result.status_code >= 500:
        raise SystemExit(1)

@cli.command(name="gossip_sync")
def gossip_sync():
    """Run one gossip sync cycle (topology from get-pods-with-stats)."""
    sink = ErrorLogSink(SessionLocal)
    _echo_result(GossipSync(SessionLocal, sink).run())

@cli.command(name="stats_update")
@click.option('--policy', type=click.Choice(NODE_POLICIES), default=STATS_NODE_POLICY, help='Poll only active nodes or all known nodes')
@click.option('--batch-size', default=STATS_BATCH_SIZE, type=int, help='Concurrent get-stats calls per batch')
def stats_update(policy, batch_size):
    """Run one stats updater cycle (live metrics from get-stats)."""
    sink = ErrorLogSink(SessionLocal)
    _echo_result(StatsUpdater(SessionLocal, sink, node_policy=policy, batch_size=batch_size).run())

@cli.command(name="show_errors")
@click.option('--source', default=None, help='Filter by source (e.g. cron/gossip-sync)')
@click.option('--phase', default=None, help='Filter by phase (e.g. fetch, validation, update)')
@click.option('--limit', default=20, help='Number of latest records (default 20)')
def show_errors(source, phase, limit):
    """Show the latest pipeline errors and counts per source/phase."""
    session = SessionLocal()
    try:
        data = query_error_logs(session, source=source, phase=phase, limit=limit)
    finally:
        session.close()

    click.echo("Error counts:")
    for s in data['stats']:
        click.echo(f"  {s['source']:24} {s['phase']:16} {s['count']}")
    click.echo(f"\nLatest {data['count']} errors:")
    for e in data['errors']:
        node = f" [{e['node_id']}]" if e['node_id'] else ""
        click.echo(f"  {e['timestamp']} {e['source']}/{e['phase']}{node}: {e['error']}")

@cli.command(name="show_table")
@click.argument('table')
def show_table(table):
    """
    Show first 10 records from a table.

    Available tables: nodes, node_snapshots, network_stats, error_logs, geo_cache

    Examples:
      python main.py show_table nodes
      python main.py show_table error_logs
    """
    if table not in VALID_TABLES or not inspect(engine).has_table(table):
        click.echo(f"Error: Table '{table}' does not exist.\n", err=True)
        click.echo("Available tables:")
        for tbl, desc in VALID_TABLES.items():
            click.echo(f"  {tbl:20} - {desc}")
        click.echo("\nExample: python main.py show_table nodes")
        return

    with engine.connect() as conn:
        result = conn.execute(text(f"SELECT * FROM {table} LIMIT 10"))
        rows = result.fetchall()
        if not rows:
            click.echo(f"No records found in table '{table}'.")
            return
        columns = list(result.keys())
        click.echo(f"Columns: {columns}")
        click.echo(f"Showing first 10 records from '{table}':")
        for row in rows:
            click.echo(str(dict(zip(columns, row))))

@cli.command(name="export_nodes")
@click.option('--out', default=None, help='File to save JSON (optional)')
@click.option('--status', type=click.Choice(EXPORT_STATUSES), default=None, help='Only export nodes with this status')
def export_nodes(out, status):
    """Export nodes as JSON."""
    js = export_nodes_json(out_path=out, status=status)
    if out:
        click.echo(f"Nodes exported to {out}")
    else:
        click.echo(js)

@cli.command(name="migrate_remove_ports")
def migrate_remove_ports():
    """Strip ports from stored node and snapshot IPs, merging duplicates."""
    session = SessionLocal()
    try:
        stats = migrate_remove_ports_func(session)
    finally:
        session.close()
    click.echo(f"Nodes updated: {stats['nodes_updated']}")
    click.echo(f"Duplicates removed: {stats['duplicates_removed']}")
    click.echo(f"Snapshots updated: {stats['snapshots_updated']}")

@cli.command(name="verify_ips")
def verify_ips():
    """Check that no stored IP carries a port."""
    session = SessionLocal()
    try:
        report = verify_ip_format(session)
    finally:
        session.close()

    if report['nodes_with_ports']:
        click.echo(f"❌ Found {len(report['nodes_with_ports'])} nodes with ports:")
        for ip in report['nodes_with_ports']:
            click.echo(f"  {ip}")
    else:
        click.echo("✅ All Node IPs are in correct format (no ports)")

    if report['snapshot_ips_with_ports']:
        click.echo(f"❌ Found {len(report['snapshot_ips_with_ports'])} snapshot IPs with ports")
    else:
        click.echo("✅ All snapshot IPs are in correct format (no ports)")

    click.echo("\nSample Node IPs:")
    for n in report['sample']:
        click.echo(f"  {n['ip']} ({n['status']})")

    if not report['ok']:
        raise SystemExit(1)

@cli.command(name="serve")
@click.option('--host', default=API_HOST, help='Bind address')
@click.option('--port', default=API_PORT, type=int, help='Bind port')
def serve(host, port):
    """Run the read API and reconciliation endpoints."""
    import uvicorn
    from api_main import app
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    cli()
