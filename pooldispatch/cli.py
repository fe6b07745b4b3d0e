"""
Command-line interface for pool dispatch.
Provides commands for database setup, serving the API, route optimization and ETAs.
"""

import asyncio
import logging

import click

from .auth import Actor
from .models import Role
from .schemas import ApplyRequest, OptimizeRequest
from .service import PoolDispatchService


logger = logging.getLogger(__name__)


@click.group()
@click.option('--config', default='config/params.yaml', help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def main(ctx, config: str, verbose: bool):
    """Pool Dispatch CLI."""
    # Setup logging
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # Store config path in context
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config


def _operator(org_id: int) -> Actor:
    return Actor(org_id=org_id, user_id="cli", role=Role.ADMIN)


@main.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create the database tables."""
    service = PoolDispatchService(ctx.obj['config_path'])
    click.echo(f"Database ready at {service.repo.url}")
    asyncio.run(service.close())


@main.command()
@click.option('--host', default='0.0.0.0', help='Host to bind to')
@click.option('--port', default=8000, type=int, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
def serve(host: str, port: int, reload: bool):
    """Start the API server."""
    import uvicorn

    click.echo(f"Starting Pool Dispatch API on {host}:{port}")
    uvicorn.run("pooldispatch.api:app", host=host, port=port, reload=reload)


@main.command()
@click.option('--org', 'org_id', required=True, type=int, help='Organization id')
@click.option('--date', required=True, help='Date to optimize (YYYY-MM-DD)')
@click.option('--carer', 'carer_id', type=int, default=None, help='Only this carer\'s jobs')
@click.option('--apply', 'apply_changes', is_flag=True, help='Write the new order to the jobs')
@click.pass_context
def optimize(ctx, org_id: int, date: str, carer_id: int, apply_changes: bool):
    """Optimize the day's routes and optionally apply them."""

    async def _optimize():
        service = PoolDispatchService(ctx.obj['config_path'])
        actor = _operator(org_id)
        try:
            result = await service.optimize_routes(actor, OptimizeRequest(date=date, carer_id=carer_id))

            click.echo(f"\nOptimization {result.optimization_id}")
            click.echo(f"  Current distance:   {result.summary.current_distance_km:.2f} km")
            click.echo(f"  Optimized distance: {result.summary.optimized_distance_km:.2f} km")
            click.echo(f"  Savings: {result.summary.savings_km:.2f} km, {result.summary.savings_min:.1f} min")
            if not result.changes:
                click.echo("  No scheduled jobs to optimize")
            for change in result.changes:
                click.echo(
                    f"  Job {change.job_id}: {change.from_seq} -> {change.to_seq} "
                    f"ETA {change.eta} ({change.distance_km:.2f} km, {change.duration_min:.1f} min)"
                )

            if apply_changes and result.changes:
                applied = await service.apply_routes(
                    actor, ApplyRequest(optimization_id=result.optimization_id, changes=result.changes)
                )
                click.echo(f"\nApplied: {applied.jobs_updated} jobs updated")

        except Exception as e:
            logger.error(f"Optimization failed: {e}")
            raise click.ClickException(str(e))
        finally:
            await service.close()

    asyncio.run(_optimize())


@main.command('recalculate-etas')
@click.option('--org', 'org_id', required=True, type=int, help='Organization id')
@click.option('--carer', 'carer_id', required=True, type=int, help='Carer id')
@click.pass_context
def recalculate_etas(ctx, org_id: int, carer_id: int):
    """Recompute today's ETAs for a carer."""

    async def _recalculate():
        service = PoolDispatchService(ctx.obj['config_path'])
        try:
            updated = await service.jobs.recalculate_etas(_operator(org_id), carer_id)
            click.echo(f"Updated {updated} ETAs for carer {carer_id}")
        except Exception as e:
            logger.error(f"ETA recalculation failed: {e}")
            raise click.ClickException(str(e))
        finally:
            await service.close()

    asyncio.run(_recalculate())


if __name__ == '__main__':
    main()
