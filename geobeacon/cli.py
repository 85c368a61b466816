"""Command-line entry points.

    geobeacon start                  bootstrap: sign in, permissions, job, service
    geobeacon service run|stop|status
    geobeacon task run <task_id>     one OS job invocation (exit 0/1)
    geobeacon task register|cancel
    geobeacon once                   run a single cycle in the foreground
"""

import asyncio
import sys
from datetime import timedelta
from pathlib import Path

import click

from geobeacon.config import get_settings
from geobeacon.config_loader import get_agent_config
from geobeacon.exceptions import GeobeaconError
from geobeacon.main import bootstrap
from geobeacon.runtime import build_notification_surface, build_runtime, configure_logging
from geobeacon.service.fallback import FallbackScheduler, dispatch_task, get_job_backend
from geobeacon.service.foreground import (
    BackgroundService,
    ForegroundServiceConfig,
    read_pid,
    resolve_entry_point,
    run_service,
)

DEFAULT_ENTRY = "geobeacon.service.foreground:on_start"


@click.group()
@click.option("--log-file", type=click.Path(dir_okay=False, path_type=Path), help="Log to this file instead of stdout")
@click.option("--log-level", help="Override GEOBEACON_LOG_LEVEL")
@click.version_option(package_name="geobeacon")
@click.pass_context
def main(ctx, log_file, log_level):
    """Background location telemetry agent."""
    settings = get_settings()
    ctx.ensure_object(dict)
    ctx.obj["log_file"] = log_file
    ctx.obj["log_level"] = log_level or settings.log_level
    configure_logging(ctx.obj["log_level"], log_file)


@main.command()
@click.pass_context
def start(ctx):
    """Sign in, request permissions, register the periodic job and start the service."""
    try:
        result = asyncio.run(bootstrap(log_file=ctx.obj["log_file"]))
    except GeobeaconError as exc:
        click.echo(click.style(f"Bootstrap failed: {exc}", fg="red"), err=True)
        sys.exit(1)

    click.echo(f"Identity:    {result.identity or 'unavailable'}")
    click.echo(f"Permissions: {'granted' if result.permissions.granted else 'denied ' + ', '.join(map(str, result.permissions.denied))}")
    click.echo(f"Periodic:    {result.task.unique_name if result.task else 'not registered'}")
    click.echo(f"Service:     pid {result.service_pid}")
    for problem in result.errors:
        click.echo(click.style(f"  ! {problem}", fg="yellow"))
    sys.exit(0 if result.ok else 1)


@main.command()
def once():
    """Run one Identity → Location → Sink cycle and report the outcome."""

    async def _run():
        async with build_runtime() as runtime:
            return await runtime.run_cycle(trigger="manual")

    result = asyncio.run(_run())
    if result.ok:
        click.echo(
            f"Published {result.sample.latitude:.6f}, {result.sample.longitude:.6f} for {result.identity}"
        )
        sys.exit(0)
    if result.status == "skipped":
        click.echo(
            click.style(
                f"Skipped {result.sample.captured_at.isoformat()} for {result.identity}: stored record is as recent",
                fg="yellow",
            )
        )
        sys.exit(0)
    click.echo(click.style(f"{result.stage} failed: {result.error}", fg="red"), err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# service
# ---------------------------------------------------------------------------


@main.group()
def service():
    """Foreground service commands."""
    pass


@service.command("run")
@click.option("--entry", default=DEFAULT_ENTRY, show_default=True, help="on_start entry point (module:function)")
@click.option("--channel", help="Notification channel id")
@click.option("--title", help="Notification title")
@click.option("--body", help="Notification body")
@click.option("--notification-id", type=int, help="Notification id")
@click.option("--background", is_flag=True, help="Do not show the ongoing notification")
def service_run(entry, channel, title, body, notification_id, background):
    """Run the foreground service in this process until stopped."""
    settings = get_settings()
    agent_config = get_agent_config(settings.agent_config_path)
    fg = agent_config.foreground_service
    try:
        config = ForegroundServiceConfig(
            on_start=resolve_entry_point(entry),
            auto_start=False,
            is_foreground_mode=not background,
            notification_channel_id=channel or agent_config.notification_channel.channel_id,
            initial_title=title or fg.initial_title,
            initial_body=body or fg.initial_body,
            notification_id=notification_id or fg.notification_id,
        )
        asyncio.run(run_service(config, build_notification_surface(settings), settings))
    except GeobeaconError as exc:
        click.echo(click.style(f"Service failed: {exc}", fg="red"), err=True)
        sys.exit(1)


@service.command("stop")
def service_stop():
    """Send stopService to the running foreground service."""
    settings = get_settings()
    handle = BackgroundService(build_notification_surface(settings), settings)
    if asyncio.run(handle.stop_service()):
        click.echo("Stop requested")
        return
    click.echo("Service is not running")
    sys.exit(1)


@service.command("status")
def service_status():
    """Show whether the foreground service is running."""
    pid = read_pid(get_settings().pid_path)
    if pid is None:
        click.echo("stopped")
        sys.exit(1)
    click.echo(f"running (pid {pid})")


# ---------------------------------------------------------------------------
# task
# ---------------------------------------------------------------------------


def _scheduler(settings, agent_config) -> FallbackScheduler:
    scheduler = FallbackScheduler(
        get_job_backend(settings.job_backend, settings.state_dir),
        notifications=build_notification_surface(settings),
        notification_channel_id=agent_config.notification_channel.channel_id,
        log_file=settings.log_path,
    )
    scheduler.initialize(dispatch_task, is_in_debug_mode=agent_config.fallback_task.debug or settings.debug)
    return scheduler


@main.group()
def task():
    """Periodic job commands."""
    pass


@task.command("run")
@click.argument("task_id")
def task_run(task_id):
    """Run one invocation of TASK_ID (called by the OS scheduler)."""
    settings = get_settings()
    scheduler = _scheduler(settings, get_agent_config(settings.agent_config_path))
    ok = asyncio.run(scheduler.execute_task(task_id))
    sys.exit(0 if ok else 1)


@task.command("register")
@click.option("--frequency-minutes", type=int, help="Override the configured cadence")
def task_register(frequency_minutes):
    """Register (or replace) the periodic job."""
    settings = get_settings()
    agent_config = get_agent_config(settings.agent_config_path)
    cfg = agent_config.fallback_task
    frequency = timedelta(minutes=frequency_minutes) if frequency_minutes else cfg.frequency
    scheduler = _scheduler(settings, agent_config)
    try:
        registered = asyncio.run(scheduler.register_periodic_task(cfg.task_id, cfg.unique_name, frequency))
    except GeobeaconError as exc:
        click.echo(click.style(f"Registration failed: {exc}", fg="red"), err=True)
        sys.exit(1)
    click.echo(f"Registered {registered.unique_name} every {registered.frequency}")


@task.command("cancel")
def task_cancel():
    """Cancel the periodic job."""
    settings = get_settings()
    agent_config = get_agent_config(settings.agent_config_path)
    scheduler = _scheduler(settings, agent_config)
    try:
        cancelled = asyncio.run(scheduler.cancel(agent_config.fallback_task.unique_name))
    except GeobeaconError as exc:
        click.echo(click.style(f"Cancel failed: {exc}", fg="red"), err=True)
        sys.exit(1)
    click.echo("Cancelled" if cancelled else "No job was registered")
