"""Main CLI entry point for the CAP service broker."""

import asyncio
import json
import sys
import time
from typing import List, Tuple

import click
from tabulate import tabulate

from cap_broker.clients.upstream_client import UpstreamClient
from cap_broker.config import Config
from cap_broker.exceptions import BrokerError, ConfigurationError
from cap_broker.logging_config import setup_logging
from cap_broker.models.factory import ServiceBrokerFactory
from cap_broker.storage.factory import StorageFactory


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def cli(ctx, verbose):
    """CAP Service Broker CLI - run and inspect the OSB broker."""
    ctx.ensure_object(dict)

    app_config = Config.from_env()
    if verbose:
        app_config.logging.level = 'DEBUG'
        setup_logging(app_config)

    ctx.obj['config'] = app_config


@cli.command()
@click.option('--host', help='Interface to bind (overrides API_HOST)')
@click.option('--port', type=int, help='Port to listen on (overrides API_PORT)')
@click.pass_context
def serve(ctx, host, port):
    """Run the OSB HTTP server."""
    from cap_broker.api.service_broker import run_server

    app_config: Config = ctx.obj['config']
    if host:
        app_config.api.host = host
    if port:
        app_config.api.port = port

    try:
        app_config.validate()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(2)

    setup_logging(app_config)
    run_server(app_config)


async def _probe(name: str, probe) -> Tuple[str, str, str]:
    start = time.monotonic()
    try:
        healthy = await probe()
    except BrokerError as e:
        return name, 'FAIL', e.message
    elapsed = f"{(time.monotonic() - start) * 1000:.0f} ms"
    return name, 'OK' if healthy else 'FAIL', elapsed


async def _diagnose(app_config: Config) -> List[Tuple[str, str, str]]:
    store = StorageFactory.create_store(app_config)
    upstream = UpstreamClient.from_config(app_config.upstream)
    try:
        return [
            await _probe(f"database ({app_config.database.type})", store.ping),
            await _probe(f"upstream ({app_config.upstream.api_base})", upstream.ping),
        ]
    finally:
        await upstream.close()
        await store.close()


@cli.command()
@click.pass_context
def diagnose(ctx):
    """Check connectivity to the state store and the upstream API."""
    app_config: Config = ctx.obj['config']

    try:
        app_config.validate()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(2)

    rows = asyncio.run(_diagnose(app_config))
    click.echo(tabulate(rows, headers=['Check', 'Status', 'Detail'], tablefmt='grid'))

    if any(status != 'OK' for _, status, _ in rows):
        click.echo("One or more checks failed", err=True)
        sys.exit(1)


@cli.command()
def catalog():
    """Print the OSB service catalog as JSON."""
    catalog = ServiceBrokerFactory.create_catalog()
    click.echo(json.dumps(catalog.model_dump(mode='json', exclude_none=True), indent=2))


def main():
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        click.echo("\nOperation cancelled by user")
        sys.exit(1)


if __name__ == '__main__':
    main()
