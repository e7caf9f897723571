"""Command line interface for discovery and scheduling."""

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Tuple

import click
import structlog

from fleetsync.clients.factory import ConnectorFactory
from fleetsync.config.connectors import load_connector_definitions
from fleetsync.config.settings import Settings
from fleetsync.core.exceptions import FleetSyncException
from fleetsync.core.utils import setup_logging
from fleetsync.discovery.reconciliation import ReconciliationEngine
from fleetsync.discovery.registry import ConnectorRegistry
from fleetsync.discovery.scheduler import RunRecord, RunState, Scheduler
from fleetsync.models.asset import Platform, SyncResult
from fleetsync.storage import create_store

logger = structlog.get_logger(__name__)

PLATFORM_CHOICE = click.Choice([p.value for p in Platform] + ["k8s"], case_sensitive=False)


def _bootstrap(ctx: click.Context) -> Tuple[Settings, ConnectorRegistry]:
    """Load settings and register every enabled connector definition."""
    settings = Settings.create_from_env()
    debug = ctx.obj.get("debug", False)
    if debug:
        settings.debug = True
    setup_logging(
        log_level="DEBUG" if debug else settings.log_level.value,
        log_format=settings.log_format
    )

    connectors_file = ctx.obj.get("connectors_file") or settings.connectors_file
    registry = ConnectorRegistry(ConnectorFactory(settings.discovery))
    registry.load_definitions(load_connector_definitions(connectors_file))
    return settings, registry


def _fail(ctx: click.Context, error: Exception) -> int:
    if isinstance(error, FleetSyncException):
        click.echo(f"❌ {error.message}", err=True)
        if error.details:
            click.echo(f"   {json.dumps(error.details, default=str)}", err=True)
    else:
        click.echo(f"❌ {error}", err=True)
    if ctx.obj.get("debug"):
        import traceback
        click.echo(traceback.format_exc(), err=True)
    return 1


def _echo_record(record: RunRecord) -> None:
    marker = "✅" if record.status == RunState.SUCCESS else "❌"
    click.echo(f"{marker} {record.tenant}/{record.platform.value} ({record.connector})")
    if record.status == RunState.SUCCESS:
        click.echo(
            f"   found={record.assets_found} new={record.assets_new} "
            f"updated={record.assets_updated} removed={record.assets_removed} "
            f"images={record.images} in {record.duration:.2f}s"
        )
        if record.result is not None and record.result.has_errors:
            for message in record.result.scope_errors + record.result.errors:
                click.echo(f"   ⚠️  {message}")
    else:
        click.echo(f"   error: {record.error}")


@click.group()
@click.option('--connectors-file', '-c', default=None,
              help='YAML file with connector definitions (default: FLEETSYNC_CONNECTORS_FILE)')
@click.option('--debug', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, connectors_file, debug):
    """Discover compute assets and reconcile them into the inventory."""
    ctx.ensure_object(dict)
    ctx.obj["connectors_file"] = connectors_file
    ctx.obj["debug"] = debug


@cli.command()
@click.option('--tenant', '-t', default=None, help='Only connectors of this tenant')
@click.option('--platform', '-p', type=PLATFORM_CHOICE, default=None, help='Only connectors of this platform')
@click.option('--output', '-o', default=None, help='Write run records as JSON to this file')
@click.pass_context
def discover(ctx, tenant, platform, output):
    """Run one discovery and reconciliation pass over the configured connectors.

    Example:
        fleetsync -c connectors.yaml discover --platform aws --output ./data/run.json
    """

    async def run_discovery() -> int:
        try:
            settings, registry = _bootstrap(ctx)
            if not registry.filter(tenant, platform):
                click.echo("❌ No enabled connectors match the given filters", err=True)
                return 1

            store = create_store(settings.storage)
            scheduler = Scheduler(registry, ReconciliationEngine(store), settings.scheduler)
            try:
                records = await scheduler.run_once(tenant, platform)
            finally:
                await registry.close_all()
                await store.close()

            for record in records:
                _echo_record(record)

            if output:
                output_path = Path(output)
                output_path.parent.mkdir(parents=True, exist_ok=True)
                with open(output_path, 'w') as f:
                    json.dump([r.model_dump(mode="json") for r in records], f, indent=2, default=str)
                click.echo(f"📁 Results saved to: {output_path}")

            failed = sum(1 for r in records if r.status != RunState.SUCCESS)
            return 1 if failed else 0

        except Exception as e:
            return _fail(ctx, e)

    sys.exit(asyncio.run(run_discovery()))


@cli.command()
@click.option('--platform', '-p', type=PLATFORM_CHOICE, required=True, help='Platform to list images for')
@click.option('--tenant', '-t', default=None, help='Only connectors of this tenant')
@click.pass_context
def images(ctx, platform, tenant):
    """List templates and base images as JSON."""

    async def run_images() -> int:
        try:
            _, registry = _bootstrap(ctx)
            entries = registry.filter(tenant, platform)
            if not entries:
                click.echo("❌ No enabled connectors match the given filters", err=True)
                return 1

            found = []
            for entry in entries:
                async with entry.connector as connector:
                    for image in await connector.discover_images():
                        found.append({"tenant": entry.tenant, **image.model_dump(mode="json")})

            click.echo(json.dumps(found, indent=2, default=str))
            return 0

        except Exception as e:
            return _fail(ctx, e)

    sys.exit(asyncio.run(run_images()))


@cli.command()
@click.pass_context
def run(ctx):
    """Start the scheduler and poll every connector until SIGINT or SIGTERM."""

    async def run_scheduler() -> int:
        try:
            settings, registry = _bootstrap(ctx)
            store = create_store(settings.storage)
            scheduler = Scheduler(registry, ReconciliationEngine(store), settings.scheduler)

            def report(result: SyncResult) -> None:
                click.echo(
                    f"🔄 {result.tenant}/{result.platform.value}: found={result.assets_found} "
                    f"new={result.assets_new} updated={result.assets_updated} removed={result.assets_removed}"
                )

            scheduler.add_result_handler(report)

            stop_requested = asyncio.Event()
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(signum, stop_requested.set)

            click.echo(f"🚀 Scheduler running with {len(registry)} connectors (Ctrl+C to stop)")
            await scheduler.start()
            await stop_requested.wait()

            click.echo("🛑 Shutting down...")
            await scheduler.stop()
            await store.close()
            return 0

        except Exception as e:
            return _fail(ctx, e)

    sys.exit(asyncio.run(run_scheduler()))


if __name__ == '__main__':
    cli()
