"""
Command line interface.

Commands: backup, restore, verify, list, version. Errors are printed as
'Error: <message>' with a hint on stderr; the exit status is 1, or 130 when
interrupted.
"""

import os
import sys
import signal
import logging
import functools
from contextlib import contextmanager
from datetime import datetime, timezone

import click

from securebackup import TOOL_NAME, __version__, configure_logging
from securebackup.config import Config, get_config
from securebackup.errors import PipelineCancelled, SecureBackupError
from securebackup.backup.compression import create_compressor, valid_methods as compression_methods
from securebackup.backup.conduit import Cancellation
from securebackup.backup.encryption import create_encryptor, valid_methods as encryption_methods
from securebackup.backup.executor import BackupExecutor
from securebackup.backup.naming import resolve_methods
from securebackup.backup.restore import RestoreExecutor, VerifyExecutor
from securebackup.backup.retention import list_backups
from securebackup.backup.storage import parse_file_mode
from securebackup.utils.format import format_age, format_size
from securebackup.utils.passphrase import get_passphrase


logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def handle_errors(f):
    """Turn SecureBackupError into 'Error: ...' and a non-zero exit status."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except PipelineCancelled as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(EXIT_INTERRUPTED)
        except SecureBackupError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(EXIT_FAILURE)

    return wrapper


@contextmanager
def signal_cancellation():
    """Map SIGINT and SIGTERM onto a pipeline Cancellation."""
    cancellation = Cancellation()

    def handler(signum, frame):
        name = signal.Signals(signum).name
        logger.warning(f"Received {name}, cancelling")
        cancellation.cancel(PipelineCancelled(f"Interrupted by {name}"))

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, handler)
        except ValueError:
            # Not the main thread: signals stay with the default handlers
            logger.debug("Signal handlers not installed (not in main thread)")

    try:
        yield cancellation
    finally:
        for signum, old in previous.items():
            signal.signal(signum, old)


def passphrase_options(f):
    """Shared --passphrase / --passphrase-file options."""
    f = click.option(
        '--passphrase-file', type=click.Path(dir_okay=False),
        help='File containing the passphrase'
    )(f)
    f = click.option(
        '--passphrase',
        help='Passphrase (insecure - use the environment variable or --passphrase-file instead)'
    )(f)
    return f


def _build_encryptor(ctx, method, passphrase, passphrase_file):
    app_config = ctx.obj['config']
    secret = get_passphrase(passphrase, app_config.PASSPHRASE_ENV, passphrase_file)
    return create_encryptor(method, secret, iterations=app_config.KDF_ITERATIONS)


def _detect_strategies(ctx, backup_file, encryption, passphrase, passphrase_file):
    compression_method, encryption_method = resolve_methods(backup_file)
    if encryption:
        encryption_method = encryption
    compressor = create_compressor(compression_method)
    encryptor = _build_encryptor(ctx, encryption_method, passphrase, passphrase_file)
    return compressor, encryptor


def _raise_on_failure(result):
    if not result.success and result.error is not None:
        raise result.error


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Verbose output')
@click.option('--env', 'env_name', help='Configuration name (development, testing, production)')
@click.pass_context
def cli(ctx, verbose, env_name):
    """Encrypted, compressed directory backups with integrity manifests."""
    try:
        app_config = get_config(env_name)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--env')

    configure_logging(app_config, verbose=verbose)
    ctx.obj = {'config': app_config, 'verbose': verbose}


@cli.command()
@click.option('--source', required=True, type=click.Path(), help='Directory to back up')
@click.option('--dest', required=True, type=click.Path(file_okay=False), help='Destination directory')
@click.option('--compression', type=click.Choice(compression_methods(), case_sensitive=False),
              help=f'Compression method  [default: {Config.DEFAULT_COMPRESSION}]')
@click.option('--level', type=int, help='Compression level (method specific)')
@click.option('--encryption', type=click.Choice(encryption_methods(), case_sensitive=False),
              help=f'Encryption method  [default: {Config.DEFAULT_ENCRYPTION}]')
@passphrase_options
@click.option('--keep', type=int, help='Keep the newest N backups per source (enables retention)')
@click.option('--file-mode', help="Backup file permissions: octal (default 0600) or 'system' for the umask")
@click.option('--dry-run', is_flag=True, help='Preview the backup without writing anything')
@click.pass_context
@handle_errors
def backup(ctx, source, dest, compression, level, encryption, passphrase, passphrase_file,
           keep, file_mode, dry_run):
    """Create an encrypted backup: archive, compress, encrypt."""
    app_config = ctx.obj['config']
    compression = compression or app_config.DEFAULT_COMPRESSION
    encryption = encryption or app_config.DEFAULT_ENCRYPTION

    compressor = create_compressor(compression, level)
    encryptor = _build_encryptor(ctx, encryption, passphrase, passphrase_file)

    with signal_cancellation() as cancellation:
        result = BackupExecutor(
            source,
            dest,
            compressor,
            encryptor,
            keep_last=keep,
            dry_run=dry_run,
            file_mode=parse_file_mode(file_mode),
            cancellation=cancellation
        ).execute()

    _raise_on_failure(result)

    if result.dry_run:
        click.echo(f"[DRY RUN] Would create: {result.path}")
    else:
        click.echo(f"Backup created: {result.path}")
        click.echo(f"Size: {format_size(result.size_bytes)} ({format_size(result.uncompressed_bytes)} uncompressed)")
        if result.manifest_path:
            click.echo(f"Manifest: {result.manifest_path}")
        else:
            click.echo("Warning: manifest was not written", err=True)

    if result.retention is not None:
        prefix = '[DRY RUN] Would delete' if result.retention.dry_run else 'Retention: deleted'
        click.echo(f"{prefix} {result.retention.deleted_count} old backup(s)")
        if result.retention.orphans:
            click.echo(f"Warning: {len(result.retention.orphans)} orphan backup(s) skipped", err=True)
        if result.retention.failures:
            click.echo(f"Warning: {result.retention.failed_count} backup(s) could not be deleted", err=True)


@cli.command()
@click.option('--file', 'backup_file', required=True, type=click.Path(dir_okay=False), help='Backup file to restore')
@click.option('--dest', required=True, type=click.Path(file_okay=False), help='Destination directory')
@click.option('--encryption', type=click.Choice(encryption_methods(), case_sensitive=False),
              help='Encryption method (auto-detected from the file extension if omitted)')
@passphrase_options
@click.option('--force', is_flag=True, help='Allow restoring into a non-empty directory')
@click.option('--skip-manifest', is_flag=True, help='Skip manifest validation (not recommended)')
@click.option('--dry-run', is_flag=True, help='Preview the restore without extracting')
@click.pass_context
@handle_errors
def restore(ctx, backup_file, dest, encryption, passphrase, passphrase_file, force, skip_manifest, dry_run):
    """Restore a backup: decrypt, decompress, extract."""
    compressor, encryptor = _detect_strategies(ctx, backup_file, encryption, passphrase, passphrase_file)

    with signal_cancellation() as cancellation:
        result = RestoreExecutor(
            backup_file,
            dest,
            compressor,
            encryptor,
            force=force,
            skip_manifest=skip_manifest,
            dry_run=dry_run,
            cancellation=cancellation
        ).execute()

    _raise_on_failure(result)

    if result.dry_run:
        click.echo(f"[DRY RUN] Would restore {result.backup_file} to {result.dest_dir}")
    else:
        click.echo(f"Restored {format_size(result.bytes_restored)} to {result.dest_dir}")


@cli.command()
@click.option('--file', 'backup_file', required=True, type=click.Path(dir_okay=False), help='Backup file to verify')
@click.option('--encryption', type=click.Choice(encryption_methods(), case_sensitive=False),
              help='Encryption method (auto-detected from the file extension if omitted)')
@passphrase_options
@click.option('--quick', is_flag=True, help='Only check the manifest checksum and file header')
@click.option('--skip-manifest', is_flag=True, help='Skip manifest validation')
@click.option('--dry-run', is_flag=True, help='Preview the verification')
@click.pass_context
@handle_errors
def verify(ctx, backup_file, encryption, passphrase, passphrase_file, quick, skip_manifest, dry_run):
    """Verify backup integrity without restoring."""
    compressor, encryptor = _detect_strategies(ctx, backup_file, encryption, passphrase, passphrase_file)

    with signal_cancellation() as cancellation:
        result = VerifyExecutor(
            backup_file,
            compressor,
            encryptor,
            quick=quick,
            skip_manifest=skip_manifest,
            dry_run=dry_run,
            cancellation=cancellation
        ).execute()

    _raise_on_failure(result)

    if result.dry_run:
        click.echo(f"[DRY RUN] Would verify {result.backup_file}")
    elif quick:
        click.echo(f"Quick verification passed: {os.path.basename(result.backup_file)}")
    else:
        click.echo(
            f"Verification passed: {os.path.basename(result.backup_file)} "
            f"({result.members} entries, {format_size(result.bytes_verified)})"
        )


@cli.command(name='list')
@click.option('--dest', required=True, type=click.Path(file_okay=False), help='Backup directory')
@click.pass_context
@handle_errors
def list_command(ctx, dest):
    """List backups in a destination, newest first."""
    backups = list_backups(dest)

    if not backups:
        click.echo(f"No backups found in {os.path.abspath(dest)}")
        return

    now = datetime.now(timezone.utc)
    managed = [b for b in backups if b.managed]
    orphans = [b for b in backups if not b.managed]

    if managed:
        click.echo(f"Backups in {os.path.abspath(dest)}:")
        for info in managed:
            m = info.manifest
            click.echo(
                f"  {info.name}  {format_size(info.size)}  {format_age(now - info.created_at)}  "
                f"{m.hostname}:{m.source_path}  {m.created_by.tool} {m.created_by.version}  "
                f"{m.checksum_algorithm}:{m.checksum_value[:12]}"
            )

    if orphans:
        click.echo("Orphan backups (no valid manifest, never deleted by retention):")
        for info in orphans:
            click.echo(f"  {info.name}  {format_size(info.size)}  {format_age(now - info.created_at)}  ({info.orphan_reason})")

    click.echo(f"Total: {len(backups)} backup(s), {len(orphans)} orphan(s)")


@cli.command()
def version():
    """Show version information."""
    click.echo(f"{TOOL_NAME} {__version__}")


def main():
    """Console script entry point."""
    cli(prog_name=TOOL_NAME)


if __name__ == '__main__':
    main()
