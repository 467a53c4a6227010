"""Unified CLI for teleop-rtc using Click."""

import sys

import click
from loguru import logger

from teleop_rtc.exceptions import SessionError
from teleop_rtc.rtc_session import run_session
from teleop_rtc.session import SessionState


@click.group()
def cli():
    pass


@cli.command()
@click.option(
    "--host",
    "-h",
    type=str,
    required=False,
    help="Relay host, optionally with port (e.g. relay.local:8080). Overrides config.",
)
@click.option(
    "--device",
    "-d",
    type=str,
    required=False,
    help="Name of the robot to connect to. Overrides config.",
)
@click.option(
    "--secure/--insecure",
    default=None,
    help="Connect to the relay over wss (secure) or ws (insecure). Overrides config.",
)
@click.option(
    "--ice-server",
    "ice_servers",
    type=str,
    multiple=True,
    help="STUN/TURN server URL. Repeat for several. Overrides config.",
)
@click.option(
    "--record",
    "-o",
    type=click.Path(dir_okay=False),
    required=False,
    help="Record the robot's video track to this file.",
)
def start(host, device, secure, ice_servers, record):
    """Start a video session with a robot.

    Opens the relay channel for the device, answers the robot's offer and
    keeps the session up until it closes or fails.

    Examples:

        teleop-rtc start --host relay.local:8080 --device rover

        teleop-rtc start -d rover --secure --ice-server stun:stun.example.com:3478
    """
    try:
        state = run_session(
            host=host,
            device=device,
            secure=secure,
            ice_servers=list(ice_servers),
            record=record,
        )
    except ValueError as e:
        logger.error(f"{e}. Use --host/--device or set them in teleop-rtc.toml")
        sys.exit(1)
    except SessionError as e:
        logger.error(f"Session error: {e}")
        sys.exit(1)

    if state is SessionState.FAILED:
        sys.exit(1)


@cli.group()
def config():
    """Inspect teleop-rtc configuration."""
    pass


@config.command(name="show")
def config_show():
    """Show the resolved configuration."""
    from teleop_rtc.config import get_config

    cfg = get_config()
    click.echo(f"Environment: {cfg.environment}")
    click.echo(f"Config file: {cfg.config_file or '(none)'}")
    click.echo(f"Relay host:  {cfg.relay_host or '(not set)'}")
    click.echo(f"Device:      {cfg.device or '(not set)'}")
    click.echo(f"Secure:      {'yes' if cfg.secure else 'no'}")
    click.echo("ICE servers:")
    for url in cfg.ice_servers:
        click.echo(f"  {url}")


if __name__ == "__main__":
    cli()
