"""
LedgerReplica CLI Tool

Command-line interface for running replica syncs against a distributor, rebuilding
synthetic blocks, backfilling account history and inspecting the local replica.
"""

import asyncio
import json

import click

from ledgerreplica.config.settings import configure_logging, get_settings
from ledgerreplica.core.exceptions import LedgerReplicaError
from ledgerreplica.indexer.account_history import backfill_account_history
from ledgerreplica.indexer.block_builder import BlockBuilder
from ledgerreplica.storage import create_storage


def _load_settings(ctx):
    return ctx.obj["config"]


@click.group()
@click.option('--database-url', default=None, help='Override DATABASE_URL')
@click.option('--distributor-url', default=None, help='Override DISTRIBUTOR_URL')
@click.option('--log-level', default=None, help='Override LOG_LEVEL')
@click.pass_context
def cli(ctx, database_url, distributor_url, log_level):
    """LedgerReplica CLI - ledger replica ingestion tool"""
    ctx.ensure_object(dict)
    config = get_settings()
    if database_url:
        config.DATABASE_URL = database_url
    if distributor_url:
        config.DISTRIBUTOR_URL = distributor_url
    if log_level:
        config.LOG_LEVEL = log_level
    configure_logging(config)
    ctx.obj["config"] = config


@cli.command()
@click.option('--genesis/--no-genesis', default=True, help='Bootstrap genesis accounts first')
@click.option('--follow', is_flag=True, help='Keep consuming the live feed after catching up')
@click.pass_context
def sync(ctx, genesis, follow):
    """Catch up with the distributor"""
    from ledgerreplica.sync.orchestrator import SyncOrchestrator

    config = _load_settings(ctx)
    errors = config.validate_config()
    if errors:
        for error in errors:
            click.echo(f"Configuration error: {error}", err=True)
        raise SystemExit(1)

    async def _run():
        async with SyncOrchestrator(config) as orchestrator:
            report = await orchestrator.run(genesis=genesis)
            click.echo(json.dumps(report.to_dict(), indent=2, default=str))
            if follow:
                click.echo(f"Following live feed at {config.LIVE_FEED_ADDRESS}")
                await orchestrator.follow()
            return report

    try:
        report = asyncio.run(_run())
    except (LedgerReplicaError, ValueError) as e:
        click.echo(f"Sync failed: {e}", err=True)
        raise SystemExit(1)
    except KeyboardInterrupt:
        click.echo("Interrupted")
        return
    if not report.success:
        raise SystemExit(2)


@cli.command('build-blocks')
@click.option('--start', 'start_cycle', type=int, required=True, help='First cycle counter')
@click.option('--end', 'end_cycle', type=int, required=True, help='Last cycle counter')
@click.pass_context
def build_blocks(ctx, start_cycle, end_cycle):
    """Rebuild the blocks of stored cycles"""
    if end_cycle < start_cycle:
        click.echo("--end must not be smaller than --start", err=True)
        raise SystemExit(1)
    config = _load_settings(ctx)
    storage = create_storage(config)
    try:
        built = BlockBuilder(storage, config=config).build_blocks_for_cycles(start_cycle, end_cycle)
        click.echo(f"Built {built} blocks for cycles {start_cycle}-{end_cycle}")
    except LedgerReplicaError as e:
        click.echo(f"Error building blocks: {e}", err=True)
        raise SystemExit(1)
    finally:
        storage.close()


@cli.command('backfill-history')
@click.option('--page-size', type=int, default=100, help='Receipts per page')
@click.pass_context
def backfill_history(ctx, page_size):
    """Rebuild account history states from stored receipts"""
    config = _load_settings(ctx)
    storage = create_storage(config)
    try:
        written = backfill_account_history(storage, page_size=page_size)
        click.echo(f"Wrote {written} account history states")
    except LedgerReplicaError as e:
        click.echo(f"Error backfilling account history: {e}", err=True)
        raise SystemExit(1)
    finally:
        storage.close()


@cli.command()
@click.pass_context
def status(ctx):
    """Show local replica counts"""
    config = _load_settings(ctx)
    storage = create_storage(config)
    try:
        latest_cycle = storage.get_latest_cycle()
        latest_block = storage.get_latest_block()
        info = {
            "storage_backend": config.STORAGE_BACKEND,
            "cycles": storage.count_cycles(),
            "latest_cycle": latest_cycle.counter if latest_cycle else None,
            "receipts": storage.count_receipts(),
            "original_txs": storage.count_original_txs(),
            "blocks": storage.count_blocks(),
            "latest_block": latest_block.number if latest_block else None,
            "account_history_states": storage.count_account_history_states(),
        }
    except LedgerReplicaError as e:
        click.echo(f"Error reading replica status: {e}", err=True)
        raise SystemExit(1)
    finally:
        storage.close()

    for key, value in info.items():
        click.echo(f"{key}: {value}")


if __name__ == '__main__':
    cli()
