"""
Operator command line.

Commands are exposed as the ``vwbackup`` console script, which leaves out
Flask's default commands so ``vwbackup run <tier>`` is the backup command.
They are also registered on the Flask CLI, where ``flask run`` stays the
development server; there the backup command is ``flask --app vwbackup
run-backup <tier>``.

Results are printed as JSON on stdout; failures print
``{"error": kind, "message": ..., "exit_code": n}`` on stderr and exit with
the error's code.
"""

import os
import sys
import json
import signal
import logging
import threading
from datetime import datetime, timezone
from functools import wraps

import click
from flask import current_app
from flask.cli import FlaskGroup, with_appcontext

from vwbackup.backup.errors import BackupError, VerificationFailed, ERROR_KINDS

logger = logging.getLogger(__name__)

TIER_CHOICE = click.Choice(['hourly', 'daily', 'monthly', 'yearly'], case_sensitive=False)


def _emit(data):
    click.echo(json.dumps(data, indent=2, default=str))


def _fail(error: BackupError):
    click.echo(json.dumps(error.to_dict()), err=True)
    sys.exit(error.exit_code)


def handle_backup_errors(f):
    """Turn BackupError into structured stderr output and its exit code."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except BackupError as e:
            _fail(e)
    return wrapper


def _context():
    from vwbackup import get_backup_context
    return get_backup_context(current_app)


@click.command('run')
@click.argument('tier', type=TIER_CHOICE)
@with_appcontext
@handle_backup_errors
def run_command(tier):
    """Run a backup of TIER now."""
    from vwbackup.backup.executor import execute_backup

    record = execute_backup(_context(), tier.lower(), trigger='manual')
    _emit(record.to_dict())
    if not record.succeeded:
        error_cls = ERROR_KINDS.get(record.error_kind, BackupError)
        _fail(error_cls(record.error_detail or 'Backup failed'))


@click.command('verify')
@click.argument('tier', type=TIER_CHOICE)
@with_appcontext
@handle_backup_errors
def verify_command(tier):
    """Verify the newest artifact of TIER."""
    from vwbackup.backup.executor import execute_verification

    result = execute_verification(_context(), tier.lower(), trigger='manual')
    _emit(result.to_dict())
    if not result.ok:
        error_cls = ERROR_KINDS.get(result.error_kind, VerificationFailed)
        raise error_cls(result.reason or 'verification failed', detail=result.detail)


@click.command('restore')
@click.argument('tier', type=TIER_CHOICE)
@click.argument('artifact_id')
@click.argument('destination', type=click.Path(file_okay=False))
@with_appcontext
@handle_backup_errors
def restore_command(tier, artifact_id, destination):
    """Restore ARTIFACT_ID of TIER into the empty directory DESTINATION."""
    from vwbackup.backup.executor import execute_restore

    result = execute_restore(_context(), tier.lower(), artifact_id, destination)
    _emit({
        'remote_key': result['remote_key'],
        'destination': result['destination'],
        'entries': len(result['members'])
    })


@click.command('list')
@click.argument('tier', type=TIER_CHOICE)
@click.option('--destination', type=click.Choice(['primary', 'secondary']), default='primary',
              help='Destination to list.')
@with_appcontext
@handle_backup_errors
def list_command(tier, destination):
    """List remote artifacts of TIER, newest first, with their age."""
    from vwbackup.backup.errors import ConfigurationError
    from vwbackup.backup.retention import list_artifacts

    context = _context()
    if destination == 'primary':
        storage = context.primary_storage()
    else:
        storages = context.secondary_storages()
        if not storages:
            raise ConfigurationError("No secondary destination configured")
        storage = storages[0]

    now = datetime.now(timezone.utc)
    _emit([
        {
            'key': artifact.remote_key,
            'created_at': artifact.created_at.isoformat(),
            'age_seconds': int(artifact.age_seconds(now)),
            'size_bytes': artifact.size_bytes
        }
        for artifact in list_artifacts(storage, tier.lower())
    ])


@click.command('status')
@with_appcontext
@handle_backup_errors
def status_command():
    """Show last run and staleness per tier; exits 1 when any tier is stale."""
    from vwbackup.scheduler import get_tier_status

    report = get_tier_status(_context().settings)
    _emit(report)
    stale = [entry['tier'] for entry in report if entry['stale']]
    if stale:
        click.echo(json.dumps({
            'error': 'stale',
            'message': f"No recent successful backup for: {', '.join(stale)}",
            'exit_code': 1
        }), err=True)
        sys.exit(1)


@click.command('history')
@click.option('--tier', type=TIER_CHOICE, default=None)
@click.option('--operation', type=click.Choice(['backup', 'verify', 'restore']), default=None)
@click.option('--limit', type=click.IntRange(1, 1000), default=20)
@with_appcontext
def history_command(tier, operation, limit):
    """Show recent run records, newest first."""
    from vwbackup.models import RunRecord

    query = RunRecord.query
    if tier:
        query = query.filter_by(tier=tier.lower())
    if operation:
        query = query.filter_by(operation=operation)
    records = query.order_by(RunRecord.finished_at.desc(), RunRecord.id.desc()).limit(limit).all()
    _emit([record.to_dict() for record in records])


@click.command('daemon')
@with_appcontext
@handle_backup_errors
def daemon_command():
    """Run the tier scheduler in the foreground until SIGINT/SIGTERM."""
    from vwbackup.scheduler import init_scheduler, start_scheduler, sync_backup_jobs, stop_scheduler

    _context()
    app = current_app._get_current_object()
    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down scheduler")
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    init_scheduler(app)
    start_scheduler()
    sync_backup_jobs()
    logger.info("Scheduler daemon running")

    while not stop.is_set():
        stop.wait(1)

    stop_scheduler(wait=True)


@click.command('secrets-set')
@click.argument('name')
@click.option('--value', prompt=True, hide_input=True, confirmation_prompt=True,
              help='Secret value (prompted when omitted).')
@with_appcontext
@handle_backup_errors
def secrets_set_command(name, value):
    """Store secret NAME in the encrypted secrets file."""
    from vwbackup.utils.secrets import EncryptedFileSecretStore

    store = EncryptedFileSecretStore(current_app.config['SECRETS_FILE'], current_app.config['SECRET_KEY'])
    store.put(name, value)
    _emit({'stored': name, 'file': current_app.config['SECRETS_FILE']})


COMMANDS = (
    run_command, verify_command, restore_command, list_command,
    status_command, history_command, daemon_command, secrets_set_command
)


def register_commands(app):
    for command in COMMANDS:
        app.cli.add_command(command)
    # flask's built-in run command shadows ours under the flask entry point
    app.cli.add_command(run_command, name='run-backup')


def _create_cli_app():
    from vwbackup import create_app
    return create_app()


@click.group(cls=FlaskGroup, create_app=_create_cli_app, add_default_commands=False)
def cli():
    """Vaultwarden backup, retention and restore."""


def main():
    # The scheduler only runs inside the daemon command
    os.environ['VWBACKUP_CLI'] = 'true'
    cli()


if __name__ == '__main__':
    main()
