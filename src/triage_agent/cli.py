"""
Command-line interface for the triage agent.

CLI Structure:
    triage-agent init-db
    triage-agent add-account <email>
    triage-agent add-label <account_id> <name> [--description TEXT] [--reason TEXT ...]
    triage-agent sweep <job> [--now ISO_DATE] [--account ID ...]
    triage-agent work [--once] [--poll-interval SECONDS]
    triage-agent process <account_id> <message_id>
    triage-agent queue-stats
    triage-agent feedback <account_id> <message_id> <text>

Scheduling stays outside the agent: run `sweep poll` every few minutes,
`sweep morning` at 08:00, `sweep evening` at 17:00, `sweep weekly`,
`sweep monthly` and `sweep yearly` on their periods (cron, systemd timers),
and keep `work` running to drain the queue.
"""
import logging
import sys
from datetime import datetime
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

import click
from dateutil import parser as date_parser

from triage_agent import __version__
from triage_agent.config import ConfigError, ConfigLoader, load_env_vars
from triage_agent.logging_config import init_logging
from triage_agent.models import format_timestamp
from triage_agent.orchestrator import JOBS
from triage_agent.runtime import TriageRuntime
from triage_agent.settings import settings

DEFAULT_CONFIG_PATH = 'config/config.yaml'

logger = logging.getLogger('triage_agent.cli')


def _get_runtime(ctx: click.Context) -> TriageRuntime:
    if ctx.obj.get('runtime') is None:
        ctx.obj['runtime'] = TriageRuntime(ctx.obj['config'])
        ctx.call_on_close(ctx.obj['runtime'].close)
    return ctx.obj['runtime']


def _parse_now(value: Optional[str], timezone_name: str) -> Optional[datetime]:
    """Parse --now; a value without an offset is read in the scheduler timezone."""
    if not value:
        return None
    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError) as e:
        raise click.BadParameter(f"Cannot parse date '{value}': {e}", param_hint='--now')
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(timezone_name))
    return parsed


@click.group()
@click.version_option(version=__version__, prog_name='triage-agent')
@click.option(
    '--config',
    'config_path',
    type=click.Path(dir_okay=False),
    default=DEFAULT_CONFIG_PATH,
    help=f'YAML configuration file (default: {DEFAULT_CONFIG_PATH}; defaults apply when it is absent)'
)
@click.option(
    '--env-file',
    type=click.Path(dir_okay=False),
    default='.env',
    help='Path to .env file containing secrets (default: .env)'
)
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    default=None,
    help='Override the configured logging level'
)
@click.pass_context
def cli(ctx: click.Context, config_path: str, env_file: str, log_level: Optional[str]):
    """
    Inbox triage agent: classify new mail with a language model, label and
    archive it, and keep a layered memory of past decisions.
    """
    ctx.ensure_object(dict)

    # Must happen before configuration reads any secret
    env_loaded = load_env_vars(env_file)

    try:
        config = ConfigLoader(config_path, allow_missing=(config_path == DEFAULT_CONFIG_PATH)).load()
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    settings.load_config(config)
    ctx.obj['config'] = config

    log_overrides = dict(config.logging)
    if log_level:
        log_overrides['level'] = log_level.upper()
    try:
        init_logging(overrides=log_overrides)
    except (OSError, ValueError) as e:
        click.echo(f"Warning: Could not initialize logging: {e}", err=True)

    if env_loaded:
        logger.debug(f"Loaded environment variables from: {env_file}")


@cli.command('init-db')
@click.pass_context
def init_db(ctx: click.Context):
    """Create the database tables (safe to re-run)."""
    runtime = _get_runtime(ctx)
    store, queue = runtime.store, runtime.queue
    click.echo(f"Database ready: {store.db_path} ({sum(queue.stats().values())} queued item(s))")


@cli.command('add-account')
@click.argument('email')
@click.option('--redirect-uri', default='http://localhost:8080/callback', show_default=True,
              help='Redirect URI registered for the OAuth client')
@click.pass_context
def add_account(ctx: click.Context, email: str, redirect_uri: str):
    """Authorize a Gmail account and store its tokens."""
    from triage_agent.auth.oauth import GoogleAuthorizer
    from triage_agent.config import require_env

    gmail = ctx.obj['config'].gmail
    try:
        authorizer = GoogleAuthorizer(
            require_env(gmail.client_id_env), require_env(gmail.client_secret_env),
            token_uri=gmail.token_uri, redirect_uri=redirect_uri,
        )
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo("Open this URL, grant access, then paste the 'code' parameter of the redirect:")
    click.echo(authorizer.authorization_url())
    code = click.prompt('Authorization code').strip()
    tokens = authorizer.exchange_code(code)

    account = _get_runtime(ctx).store.create_account(
        email,
        access_token=tokens['access_token'],
        refresh_token=tokens['refresh_token'],
        token_expiry=tokens['expires_at'],
    )
    click.echo(f"Account {account.id} created for {account.email}")


@cli.command('add-label')
@click.argument('account_id', type=int)
@click.argument('name')
@click.option('--description', default='', help='What belongs under this label')
@click.option('--reason', 'reasons', multiple=True, help='Example reason (repeatable)')
@click.pass_context
def add_label(ctx: click.Context, account_id: int, name: str, description: str, reasons: Tuple[str, ...]):
    """Add a label to an account's catalog."""
    store = _get_runtime(ctx).store
    if store.get_account(account_id) is None:
        click.echo(f"Error: account {account_id} not found", err=True)
        sys.exit(1)
    label = store.create_label(account_id, name, description=description, reasons=list(reasons))
    click.echo(f"Label '{label.name}' added to account {account_id}")


@cli.command()
@click.argument('job', type=click.Choice(JOBS))
@click.option('--now', 'now_value', default=None, help='Reference time (ISO date), default: current time')
@click.option('--account', 'account_ids', type=int, multiple=True, help='Restrict to account id (repeatable)')
@click.pass_context
def sweep(ctx: click.Context, job: str, now_value: Optional[str], account_ids: Tuple[int, ...]):
    """
    Run one scheduled job over all active accounts.

    \b
    poll      detect new messages and enqueue them
    morning   morning wrapup
    evening   evening wrapup, then daily memory
    daily | weekly | monthly | yearly   one memory tier
    memories  all memory tiers in order
    """
    now = _parse_now(now_value, ctx.obj['config'].scheduler.timezone)
    result = _get_runtime(ctx).orchestrator.run(job, now=now, account_ids=list(account_ids) or None)

    click.echo(str(result))
    for account_id, account_result in result.account_results.items():
        status = 'FAILED' if not account_result.success else ('skipped' if account_result.skipped else 'ok')
        line = f"  account {account_id}: {status}"
        if account_result.detail:
            line += f" ({account_result.detail})"
        if account_result.error:
            line += f": {account_result.error}"
        click.echo(line, err=not account_result.success)
    if result.failed:
        sys.exit(1)


@cli.command()
@click.option('--once', is_flag=True, help='Drain a single batch and exit')
@click.option('--poll-interval', type=float, default=5.0, show_default=True,
              help='Seconds to wait when the queue is empty')
@click.pass_context
def work(ctx: click.Context, once: bool, poll_interval: float):
    """Consume the work queue."""
    consumer = _get_runtime(ctx).consumer
    if once:
        summary = consumer.run_once()
        click.echo(f"Batch: {summary}")
        return
    try:
        consumer.run_forever(poll_interval=poll_interval)
    except KeyboardInterrupt:
        consumer.stop()
        click.echo("\nStopped.", err=True)


@cli.command()
@click.argument('account_id', type=int)
@click.argument('message_id')
@click.pass_context
def process(ctx: click.Context, account_id: int, message_id: str):
    """Triage one message immediately, bypassing the queue."""
    runtime = _get_runtime(ctx)
    account = runtime.store.get_account(account_id)
    if account is None:
        click.echo(f"Error: account {account_id} not found", err=True)
        sys.exit(1)

    result = runtime.processor.process(account, message_id, runtime.providers.for_account(account))
    click.echo(f"Message {message_id}: {result.outcome.value}")
    if result.record is not None:
        record = result.record
        click.echo(f"  slug: {record.slug}")
        click.echo(f"  labels: {', '.join(record.labels_applied) or '(none)'}")
        click.echo(f"  archived: {'yes' if record.bypassed_inbox else 'no'}")
        click.echo(f"  reasoning: {record.reasoning}")


@cli.command('queue-stats')
@click.option('--dead', 'show_dead', is_flag=True, help='List dead-lettered items')
@click.pass_context
def queue_stats(ctx: click.Context, show_dead: bool):
    """Show work queue counts per status."""
    queue = _get_runtime(ctx).queue
    for status, count in queue.stats().items():
        click.echo(f"{status}: {count}")
    if show_dead:
        for item in queue.list_dead():
            enqueued = format_timestamp(item.enqueued_at) if item.enqueued_at else '?'
            click.echo(
                f"  #{item.id} account={item.account_id} message={item.message_id} "
                f"attempts={item.attempts} enqueued={enqueued} error={item.last_error}"
            )


@cli.command()
@click.argument('account_id', type=int)
@click.argument('message_id')
@click.argument('text')
@click.pass_context
def feedback(ctx: click.Context, account_id: int, message_id: str, text: str):
    """Attach human feedback to a processed message (used by the next daily memory)."""
    if not _get_runtime(ctx).store.update_feedback(account_id, message_id, text):
        click.echo(f"Error: no processed message {message_id} for account {account_id}", err=True)
        sys.exit(1)
    click.echo(f"Feedback saved for message {message_id}")


def main() -> None:
    cli(obj={})


if __name__ == '__main__':
    main()
