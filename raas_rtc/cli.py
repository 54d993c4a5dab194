"""Unified CLI for raas-rtc using Click."""

import sys

import click
from loguru import logger

from raas_rtc.config import get_config
from raas_rtc.rtc_lab import run_lab
from raas_rtc.rtc_user import run_user
from raas_rtc.types import MASTER_PEER_ID


def configure_logging(verbose: bool) -> None:
    """Replace the default loguru sink with one at the requested level."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


@click.group()
def cli():
    pass


@cli.command()
@click.option(
    "--channel",
    "-c",
    type=str,
    required=False,
    help="Signaling channel to serve. Defaults to the configured channel.",
)
@click.option(
    "--client-id",
    type=str,
    default=MASTER_PEER_ID,
    show_default=True,
    help="Id the lab registers under. Users connect to this id.",
)
@click.option(
    "--test-pattern/--no-test-pattern",
    default=False,
    help="Stream a synthetic video track labelled 'cam' to every peer.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def lab(channel, client_id, test_pattern, verbose):
    """Start the lab host and answer every user on the channel.

    Example:
        raas-rtc lab --channel my-lab --test-pattern
    """
    configure_logging(verbose)
    run_lab(channel_name=channel, client_id=client_id, test_pattern=test_pattern)


@cli.command()
@click.option(
    "--channel",
    "-c",
    type=str,
    required=False,
    help="Signaling channel to join. Defaults to the configured channel.",
)
@click.option(
    "--peer-id",
    "-p",
    type=str,
    default=MASTER_PEER_ID,
    show_default=True,
    help="Client id of the lab to connect to.",
)
@click.option(
    "--send-test-pattern",
    is_flag=True,
    default=False,
    help="Send a synthetic video track once the control channel is ready.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def user(channel, peer_id, send_test_pattern, verbose):
    """Connect to a lab as a user.

    Example:
        raas-rtc user --channel my-lab
    """
    if not peer_id.strip():
        logger.error("--peer-id cannot be empty")
        sys.exit(1)

    configure_logging(verbose)
    run_user(channel_name=channel, peer_id=peer_id, send_test_pattern=send_test_pattern)


@cli.command(name="config")
def show_config():
    """Show the effective configuration.

    Values come from, in order of precedence: environment variables
    (RAAS_RTC_*), raas-rtc.toml or ~/.raas-rtc/config.toml, and defaults.
    """
    config = get_config()
    for key, value in config.as_dict().items():
        click.echo(f"{key}: {value if value is not None else '(none)'}")


if __name__ == "__main__":
    cli()
