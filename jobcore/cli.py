"""
JobCore CLI commands

This module provides command-line interface for JobCore operations.
"""

import asyncio
import importlib
from pathlib import Path

import click
import yaml

from jobcore.config.jobcore_config import JobCoreConfig
from jobcore.config.logging_setup import configure_logging
from jobcore.context import UserContext
from jobcore.errors import JobCoreError
from jobcore.jobCore import JobCore
from jobcore.processors.base import BaseJobProcessor


def _load_config(ctx) -> JobCoreConfig:
    config_path = ctx.obj.get('config_path')
    if config_path:
        return JobCoreConfig.from_file(config_path)
    return JobCoreConfig()


def _core(ctx) -> JobCore:
    config = _load_config(ctx)
    configure_logging(config.get_logging_config(), level=ctx.obj.get('log_level'))
    return JobCore(config=config)


def _load_processors(references):
    """Resolve ``module:attribute`` references to processor instances"""
    processors = []
    for reference in references:
        module_name, _, attr = reference.partition(':')
        if not attr:
            raise click.BadParameter(f"Expected module:attribute, got {reference}", param_hint='--processors')
        target = getattr(importlib.import_module(module_name), attr)
        if callable(target) and not isinstance(target, BaseJobProcessor):
            target = target()
        if isinstance(target, BaseJobProcessor):
            processors.append(target)
        else:
            processors.extend(target)
    return processors


def _echo_job(job):
    click.echo(f"{job['id']}  {job['type']:<28} {job['status']:<10} {job['progress']:>3}%  "
               f"{job.get('progress_message') or ''}")


@click.group()
@click.option('--config', 'config_path', type=click.Path(), help='Path to configuration file')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']), help='Logging level')
@click.pass_context
def cli(ctx, config_path, log_level):
    """JobCore command-line interface"""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['log_level'] = log_level


@cli.command()
@click.option('--db-type', type=click.Choice(['sqlite', 'postgresql']), help='Database type')
@click.option('--db-path', type=click.Path(), help='SQLite database path')
@click.option('--db-host', help='PostgreSQL host')
@click.option('--db-port', type=int, help='PostgreSQL port')
@click.option('--db-name', help='PostgreSQL database name')
@click.option('--db-user', help='PostgreSQL user')
@click.option('--db-password', help='PostgreSQL password')
@click.option('--save', is_flag=True, help='Write the resulting configuration to the config file')
@click.pass_context
def init(ctx, db_type, db_path, db_host, db_port, db_name, db_user, db_password, save):
    """Create the job table and show the effective configuration"""
    try:
        user_config = {'database': {}}
        postgres = {}
        if db_type:
            user_config['database']['type'] = db_type
        if db_path:
            user_config['database']['sqlite'] = {'path': db_path}
        if db_host:
            postgres['host'] = db_host
        if db_port:
            postgres['port'] = db_port
        if db_name:
            postgres['database'] = db_name
        if db_user:
            postgres['user'] = db_user
        if db_password:
            postgres['password'] = db_password
        if postgres:
            user_config['database']['postgres'] = postgres
        if ctx.obj.get('log_level'):
            user_config['logging'] = {'level': ctx.obj['log_level']}

        config = JobCore.setup(config_file=ctx.obj.get('config_path'), **user_config)

        db_config = config.get_database_config()
        click.echo('Database Setup:')
        click.echo(f'  Type: {db_config["type"]}')
        if db_config['type'] == 'sqlite':
            click.echo(f'  Path: {Path(db_config["sqlite"]["path"]).absolute()}')
        else:
            click.echo(f'  Host: {db_config["postgres"]["host"]}')
            click.echo(f'  Database: {db_config["postgres"]["database"]}')

        click.echo(f'  Worker secret configured: {bool(config.get_worker_secret())}')

        if save:
            config.save()
            click.echo(f'Configuration saved to {config.config_file}')

        click.echo('\nConfiguration:')
        safe_config = config.get_all()
        click.echo(yaml.dump(
            {key: value for key, value in safe_config.items() if key != 'worker'},
            default_flow_style=False,
            sort_keys=False
        ))
        click.echo('JobCore initialized successfully!')

    except Exception as e:
        click.echo(f'Error initializing JobCore: {str(e)}', err=True)
        raise click.Abort()


@cli.command()
@click.option('--processors', 'processor_refs', multiple=True, required=True,
              help='module:attribute resolving to a processor, a list of processors, or a factory')
@click.option('--max-concurrent', type=int, help='Maximum jobs run at once')
@click.option('--poll-interval', type=float, help='Seconds between polls while busy')
@click.pass_context
def worker(ctx, processor_refs, max_concurrent, poll_interval):
    """Run a worker until SIGTERM/SIGINT"""
    try:
        core = _core(ctx)
        job_worker = core.create_worker(_load_processors(processor_refs))
        if max_concurrent:
            job_worker.config.max_concurrent = max_concurrent
        if poll_interval:
            job_worker.config.poll_interval = poll_interval
    except (JobCoreError, ImportError, AttributeError) as e:
        click.echo(f'Error starting worker: {str(e)}', err=True)
        raise click.Abort()

    asyncio.run(job_worker.run())
    stats = job_worker.get_stats()
    click.echo(f"Worker stopped. Processed: {stats['processed_count']}, Failed: {stats['failed_count']}")


@cli.group()
def jobs():
    """Inspect and maintain jobs"""
    pass


@jobs.command('status')
@click.argument('job_id')
@click.option('--user', 'user_id', required=True, help='Owner of the job')
@click.pass_context
def job_status(ctx, job_id, user_id):
    """Show one job"""
    try:
        detail = _core(ctx).user_jobs(UserContext(user_id=user_id)).get_job_detail(job_id)
    except JobCoreError as e:
        click.echo(f'Error: {str(e)}', err=True)
        raise click.Abort()
    click.echo(yaml.dump(detail, default_flow_style=False, sort_keys=False))


@jobs.command('list')
@click.option('--user', 'user_id', required=True, help='Owner of the jobs')
@click.option('--status', 'statuses', multiple=True,
              type=click.Choice(['pending', 'processing', 'completed', 'failed', 'cancelled']),
              help='Only jobs in this status (repeatable)')
@click.option('--project', 'project_id', help='Only jobs of this project')
@click.option('--limit', type=int, default=50, show_default=True, help='Maximum number of jobs')
@click.pass_context
def list_jobs(ctx, user_id, statuses, project_id, limit):
    """List a user's jobs, newest first"""
    try:
        user_jobs = _core(ctx).user_jobs(UserContext(user_id=user_id))
        rows = user_jobs.get_user_jobs(status=list(statuses) or None, project_id=project_id, limit=limit)
    except JobCoreError as e:
        click.echo(f'Error: {str(e)}', err=True)
        raise click.Abort()
    if not rows:
        click.echo('No jobs found.')
        return
    for row in rows:
        _echo_job(row)


@jobs.command('pending')
@click.option('--limit', default='20', show_default=True, help='Maximum number of jobs')
@click.pass_context
def pending_jobs(ctx, limit):
    """Show the oldest pending jobs without claiming them"""
    try:
        core = _core(ctx)
        rows = core.worker_operations.get_pending_jobs(limit, core.auth.get_worker_token())
    except (JobCoreError, ValueError) as e:
        click.echo(f'Error: {str(e)}', err=True)
        raise click.Abort()
    if not rows:
        click.echo('No pending jobs.')
        return
    for job in rows:
        _echo_job(job.to_dict())


@jobs.command('stats')
@click.pass_context
def stats(ctx):
    """Show job counts by status and type"""
    queue_stats = _core(ctx).get_queue_stats()
    click.echo(f"Total jobs: {queue_stats['total']}")
    click.echo('By status:')
    for status, count in queue_stats['by_status'].items():
        click.echo(f'  {status}: {count}')
    if queue_stats['by_type']:
        click.echo('By type:')
        for job_type, counts in sorted(queue_stats['by_type'].items()):
            summary = ', '.join(f'{status}={count}' for status, count in sorted(counts.items()))
            click.echo(f'  {job_type}: {summary}')


@jobs.command('recover-timeouts')
@click.pass_context
def recover_timeouts(ctx):
    """Fail processing jobs that exceeded their timeout"""
    try:
        core = _core(ctx)
        recovered = core.worker_operations.recover_timeout_jobs(core.auth.get_worker_token())
    except JobCoreError as e:
        click.echo(f'Error: {str(e)}', err=True)
        raise click.Abort()
    click.echo(f'Recovered {len(recovered)} jobs')
    for job_id in recovered:
        click.echo(f'  {job_id}')


@jobs.command('usage')
@click.option('--user', 'user_id', required=True, help='User to report on')
@click.pass_context
def usage(ctx, user_id):
    """Show a user's usage against the rate limits"""
    report = _core(ctx).rate_limiter.get_usage(user_id)
    limits = report['limits']
    click.echo(f"User: {report['user_id']}")
    click.echo(f"  Active jobs: {report['active_jobs']}/{limits['max_active_jobs_per_user']}")
    click.echo(f"  Jobs today: {report['jobs_today']}/{limits['max_jobs_per_day']}")


if __name__ == '__main__':
    cli()
