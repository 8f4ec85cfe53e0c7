"""Unified CLI for peer-relay using Click."""

import asyncio
import json
import sys

import click
import requests
import websockets
from loguru import logger

from peer_relay.config import VALID_LOG_LEVELS, get_config


def configure_logging(level: str) -> None:
    """Route loguru output to stderr at ``level``."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


@click.group()
def cli():
    pass


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default: from config, 0.0.0.0).")
@click.option("--port", type=int, default=None, help="Port to listen on (default: from config, 3000).")
@click.option(
    "--max-pending-candidates",
    type=click.IntRange(min=1),
    default=None,
    help="Candidates held per call direction before the answer arrives.",
)
@click.option(
    "--log-level",
    type=click.Choice(sorted(VALID_LOG_LEVELS), case_sensitive=False),
    default=None,
    help="Log level (default: from config, INFO).",
)
def serve(host, port, max_pending_candidates, log_level):
    """Run the signaling relay.

    Participants connect over WebSocket at /ws; GET /health lists the
    registered identities.

    Example:
        peer-relay serve --port 3000
    """
    from peer_relay.server import run_server

    config = get_config()
    host = host or config.host
    port = port or config.port
    max_pending_candidates = max_pending_candidates or config.max_pending_candidates
    configure_logging(log_level or config.log_level)

    try:
        asyncio.run(run_server(host, port, max_pending_candidates))
    except KeyboardInterrupt:
        logger.info("Server stopped")
    except OSError as e:
        logger.error(f"Could not start server on {host}:{port}: {e}")
        sys.exit(1)


@cli.command()
@click.option("--url", default=None, help="Relay WebSocket URL (default: from config).")
@click.option("--json", "as_json", is_flag=True, help="Print the raw health response.")
def status(url, as_json):
    """Show the identities currently registered on a relay.

    Example:
        peer-relay status --url ws://localhost:3000/ws
    """
    health_url = get_config().get_health_url(url)

    try:
        response = requests.get(health_url, timeout=10)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"Health check failed for {health_url}: {e}")
        sys.exit(1)

    data = response.json()
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    identities = data.get("identities", [])
    click.echo(f"Status:     {data.get('status', 'unknown')}")
    click.echo(f"Sessions:   {data.get('sessions', 0)}")
    click.echo(f"Registered: {len(identities)}")
    for identity in identities:
        click.echo(f"  {identity}")


@cli.command()
@click.option("--identity", "-i", required=True, help="Identity to join as.")
@click.option("--url", default=None, help="Relay WebSocket URL (default: from config).")
def listen(identity, url):
    """Join a relay and print every message it delivers.

    Useful for checking what a participant would receive.

    Example:
        peer-relay listen --identity bob
    """
    from peer_relay.client import SignalingClient
    from peer_relay.errors import RelayError

    relay_url = url or get_config().relay_url

    async def _listen():
        async with SignalingClient(relay_url) as client:
            await client.join(identity)
            click.echo(f"Joined {relay_url} as {identity}")
            while True:
                message = await client.recv()
                click.echo(json.dumps(message))

    try:
        asyncio.run(_listen())
    except KeyboardInterrupt:
        pass
    except RelayError as e:
        logger.error(f"Join failed: {e}")
        sys.exit(1)
    except (OSError, websockets.exceptions.WebSocketException) as e:
        logger.error(f"Connection to {relay_url} failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
