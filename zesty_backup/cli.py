"""
zesty-backup command-line interface.

Usage:
    zesty-backup backup [--full]
    zesty-backup list [--remote]
    zesty-backup upload [--file PATH]
    zesty-backup download KEY [--output DIR]
    zesty-backup clean [--dry-run]
    zesty-backup restore FILE [--target DIR]
    zesty-backup daemon [--backup-interval H] [--upload-interval H] [--pid-file P]
    zesty-backup status
    zesty-backup logs [--lines N]
    zesty-backup generate-config [--output P]
    zesty-backup serve [--host H] [--port N]

Errors exit with the code of their kind (see zesty_backup.errors.ExitCode).
"""

import json
import logging
import os
import threading
from typing import Optional

import click

from zesty_backup import __version__, create_app
from zesty_backup.backup.executor import BackupExecutor, CleanExecutor, RestoreExecutor, UploadExecutor
from zesty_backup.backup.manifest import ManifestStore, is_archive_name
from zesty_backup.backup.restore import RestoreEngine
from zesty_backup.backup.storage import create_gateway
from zesty_backup.errors import BackupError, ProviderError, RestoreError
from zesty_backup.models import CycleRun
from zesty_backup.settings import DEFAULT_CONFIG_PATH, generate_example_config, load_settings
from zesty_backup.utils.logs import log_file_path, tail_log


logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = './logs'


class CliContext:
    """Lazily loaded settings, Flask app and gateway shared by commands."""

    def __init__(self):
        self.config_path: str = os.environ.get('ZESTY_CONFIG') or DEFAULT_CONFIG_PATH
        self.json_output: bool = False
        self._settings = None
        self._app = None
        self._gateway = None

    @property
    def settings(self):
        if self._settings is None:
            self._settings = load_settings(self.config_path)
        return self._settings

    @property
    def app(self):
        if self._app is None:
            settings = self.settings
            self._app = create_app(config_overrides={
                'SETTINGS_FILE': self.config_path,
                'ZESTY_SETTINGS': settings,
                'LOG_DIR': str(settings.logging.log_dir),
                'LOG_LEVEL': settings.logging.level,
            })
        return self._app

    @property
    def gateway(self):
        if self._gateway is None:
            self._gateway = create_gateway(self.settings.storage, self.settings.retry)
        return self._gateway

    def echo_json(self, data):
        click.echo(json.dumps(data, indent=2, default=str))


pass_context = click.make_pass_decorator(CliContext, ensure=True)


class ZestyGroup(click.Group):
    """Maps BackupError kinds to process exit codes."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except BackupError as e:
            logger.error(f"{type(e).__name__}: {e}")
            click.echo(f"Error: {e}", err=True)
            ctx.exit(int(e.exit_code))


@click.group(cls=ZestyGroup)
@click.option("--config", "config_file", type=click.Path(dir_okay=False), help="Settings file (default: config.toml)")
@click.option("--json", "json_output", is_flag=True, help="Output results as JSON")
@click.version_option(version=__version__, prog_name="zesty-backup")
@pass_context
def cli(ctx: CliContext, config_file: Optional[str], json_output: bool):
    """
    zesty-backup - scheduled incremental backups to remote object storage.
    """
    if config_file:
        ctx.config_path = config_file
    ctx.json_output = json_output


@cli.command("backup")
@click.option("--full", is_flag=True, help="Force a full backup")
@pass_context
def backup_command(ctx: CliContext, full: bool):
    """Create a new backup archive."""
    app = ctx.app
    with app.app_context():
        outcome = BackupExecutor(ctx.settings, full=full, temp_root=app.config.get('TEMP_DIR')).execute()

    if ctx.json_output:
        ctx.echo_json({
            'archive': outcome.entry.summary(),
            'path': str(outcome.path),
            'skipped': outcome.build.skipped,
            'scan_warnings': outcome.scan_warnings,
            'snapshot_failures': outcome.snapshot_failures,
            'retention': outcome.retention.to_dict() if outcome.retention else None,
        })
        return

    entry = outcome.entry
    click.echo(f"Backup created: {outcome.path}")
    click.echo(f"  Kind: {entry.kind.value}" + (f" (base: {entry.base})" if entry.base else ""))
    click.echo(f"  Files: {outcome.build.files_added}, size: {entry.size / 1024 / 1024:.2f} MB")
    for warning in outcome.scan_warnings:
        click.echo(f"  Warning: {warning}")
    for label, error in outcome.snapshot_failures.items():
        click.echo(f"  Snapshot failed: {label}: {error}")
    if outcome.retention and outcome.retention.deleted:
        click.echo(f"  Retention deleted: {', '.join(outcome.retention.deleted)}")


@cli.command("list")
@click.option("--remote", is_flag=True, help="List remote archives instead of local ones")
@pass_context
def list_command(ctx: CliContext, remote: bool):
    """List backups."""
    if remote:
        objects = sorted(
            (obj for obj in ctx.gateway.list() if is_archive_name(obj.name)),
            key=lambda obj: obj.name,
            reverse=True,
        )
        if ctx.json_output:
            ctx.echo_json([{'name': o.name, 'size': o.size, 'modified': o.modified} for o in objects])
            return
        click.echo(f"Remote backups ({ctx.settings.storage.provider}):")
        for obj in objects:
            modified = f" - {obj.modified}" if obj.modified else ""
            click.echo(f"  {obj.name} ({obj.size / 1024 / 1024:.2f} MB){modified}")
        return

    entries = list(reversed(ManifestStore(ctx.settings.backup.local_backup_dir).entries()))
    if ctx.json_output:
        ctx.echo_json([entry.summary() for entry in entries])
        return
    click.echo("Local backups:")
    for entry in entries:
        uploaded = 'uploaded' if entry.is_uploaded else 'pending upload'
        click.echo(f"  {entry.name} ({entry.size / 1024 / 1024:.2f} MB) [{entry.kind.value}, {uploaded}]")


@cli.command("upload")
@click.option("--file", "files", multiple=True, type=click.Path(dir_okay=False),
              help="Archive to upload (default: every pending local archive)")
@pass_context
def upload_command(ctx: CliContext, files):
    """Upload backups to remote storage."""
    gateway = ctx.gateway
    with ctx.app.app_context():
        report = UploadExecutor(ctx.settings, gateway, files=list(files) or None).execute()

    if ctx.json_output:
        ctx.echo_json({'uploaded': report.uploaded, 'failed': report.failed, 'skipped': report.skipped})
    else:
        for name in report.uploaded:
            click.echo(f"Uploaded: {name}")
        for name, error in report.failed.items():
            click.echo(f"Failed: {name}: {error}", err=True)
        if not report.uploaded and not report.failed:
            click.echo("Nothing to upload")
    report.raise_for_errors()


@cli.command("download")
@click.argument("key")
@click.option("--output", default=".", type=click.Path(file_okay=False), help="Output directory")
@pass_context
def download_command(ctx: CliContext, key: str, output: str):
    """Download a backup from remote storage."""
    name = key.split('/')[-1]
    path = RestoreEngine(gateway=ctx.gateway).fetch(name, output)
    if ctx.json_output:
        ctx.echo_json({'name': name, 'path': str(path)})
    else:
        click.echo(f"Downloaded: {path}")


@cli.command("clean")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
@pass_context
def clean_command(ctx: CliContext, dry_run: bool):
    """Apply the retention policy locally and remotely."""
    gateway = None if dry_run else ctx.gateway
    with ctx.app.app_context():
        outcome = CleanExecutor(ctx.settings, gateway=gateway, dry_run=dry_run).execute()

    if ctx.json_output:
        ctx.echo_json({
            'local': outcome.local.to_dict(),
            'remote': outcome.remote.to_dict() if outcome.remote else None,
        })
    else:
        for name in outcome.local.would_delete:
            click.echo(f"Would delete: {name}")
        for name in outcome.local.deleted:
            click.echo(f"Deleted: {name}")
        for name in outcome.local.retained:
            click.echo(f"Retained: {name}")
        if outcome.remote is not None:
            for name in outcome.remote.deleted:
                click.echo(f"Deleted remote: {name}")
    outcome.raise_for_errors()


@cli.command("restore")
@click.argument("file")
@click.option("--target", default="./restored", type=click.Path(file_okay=False), help="Target directory")
@pass_context
def restore_command(ctx: CliContext, file: str, target: str):
    """Restore a backup archive (local path or remote name)."""
    gateway = None if os.path.exists(file) else ctx.gateway
    with ctx.app.app_context():
        report = RestoreExecutor(file, target, gateway=gateway, work_dir=ctx.app.config.get('TEMP_DIR')).execute()

    if ctx.json_output:
        ctx.echo_json(report.to_dict())
    else:
        click.echo(f"Restored {len(report.extracted)} entries to {report.target}")
        for name, error in report.failed.items():
            click.echo(f"Failed: {name}: {error}", err=True)
    if not report.ok:
        raise RestoreError(f"{len(report.failed)} entries could not be restored")


@cli.command("daemon")
@click.option("--backup-interval", type=float, help="Hours between backups (default: daemon.backup_interval_hours)")
@click.option("--upload-interval", type=float, help="Hours between uploads (default: daemon.upload_interval_hours)")
@click.option("--pid-file", type=click.Path(dir_okay=False), help="PID file (default: daemon.pid_file)")
@click.option("--http-port", type=int, help="Also serve the status API on this port")
@click.option("--http-host", default="127.0.0.1", help="Status API bind address")
@pass_context
def daemon_command(ctx: CliContext, backup_interval, upload_interval, pid_file, http_port, http_host):
    """Run scheduled backups and uploads until stopped."""
    from zesty_backup.scheduler import init_scheduler, start_scheduler

    app = ctx.app
    init_scheduler(
        app,
        ctx.settings,
        backup_interval_hours=backup_interval,
        upload_interval_hours=upload_interval,
        pid_file=pid_file,
        gateway=ctx.gateway,
    )

    if http_port:
        from werkzeug.serving import make_server
        server = make_server(http_host, http_port, app, threaded=True)
        thread = threading.Thread(target=server.serve_forever, name='zesty-http', daemon=True)
        thread.start()
        logger.info(f"Status API listening on http://{http_host}:{http_port}")

    start_scheduler()


@cli.command("status")
@pass_context
def status_command(ctx: CliContext):
    """Show configuration, local backups and recent runs."""
    settings = ctx.settings
    entries = ManifestStore(settings.backup.local_backup_dir).entries()

    with ctx.app.app_context():
        last_runs = {}
        for operation in ('backup', 'upload', 'clean', 'restore'):
            run = CycleRun.latest(operation)
            last_runs[operation] = run.to_dict() if run else None

    remote_count = None
    remote_error = None
    try:
        remote_count = sum(1 for obj in ctx.gateway.list() if is_archive_name(obj.name))
    except ProviderError as e:
        remote_error = str(e)

    if ctx.json_output:
        ctx.echo_json({
            'provider': settings.storage.provider,
            'bucket': settings.storage.bucket,
            'local_backup_dir': str(settings.backup.local_backup_dir),
            'project_path': str(settings.backup.project_path),
            'retention_days': settings.backup.retention_days,
            'local_backups': len(entries),
            'pending_uploads': sum(1 for e in entries if not e.is_uploaded),
            'remote_backups': remote_count,
            'remote_error': remote_error,
            'last_runs': last_runs,
        })
        return

    click.echo("Backup System Status")
    click.echo("-" * 40)
    click.echo(f"Provider: {settings.storage.provider}")
    if settings.storage.bucket:
        click.echo(f"Bucket: {settings.storage.bucket}")
    if settings.storage.endpoint:
        click.echo(f"Endpoint: {settings.storage.endpoint}")
    click.echo(f"Backup Directory: {settings.backup.local_backup_dir}")
    click.echo(f"Project Path: {settings.backup.project_path}")
    click.echo(f"Retention: {settings.backup.retention_days} days")
    click.echo("-" * 40)
    click.echo(f"Local Backups: {len(entries)} ({sum(1 for e in entries if not e.is_uploaded)} pending upload)")
    if remote_error:
        click.echo(f"Remote Backups: unavailable ({remote_error})")
    else:
        click.echo(f"Remote Backups: {remote_count}")
    for operation, run in last_runs.items():
        if run:
            click.echo(f"Last {operation}: {run['status']} at {run['started_at']}")


@cli.command("logs")
@click.option("--lines", default=50, type=int, help="Number of lines to show")
@pass_context
def logs_command(ctx: CliContext, lines: int):
    """Show recent log lines."""
    log_dir = DEFAULT_LOG_DIR
    if os.path.exists(ctx.config_path):
        log_dir = str(ctx.settings.logging.log_dir)

    log_lines = tail_log(log_dir, lines)
    if log_lines is None:
        click.echo(f"No log file found at: {log_file_path(log_dir)}")
        return
    for line in log_lines:
        click.echo(line)


@cli.command("generate-config")
@click.option("--output", default=DEFAULT_CONFIG_PATH, type=click.Path(dir_okay=False), help="Output path")
@pass_context
def generate_config_command(ctx: CliContext, output: str):
    """Write an example configuration file."""
    path = generate_example_config(output)
    click.echo(f"Example configuration file generated: {path}")
    click.echo("Please edit it with your actual credentials and paths")


@cli.command("serve")
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=5000, type=int, help="Port")
@pass_context
def serve_command(ctx: CliContext, host: str, port: int):
    """Serve the read-only status API."""
    ctx.app.run(host=host, port=port)


def main():
    """Main entry point for the CLI."""
    cli(prog_name="zesty-backup")


if __name__ == "__main__":
    main()
