"""CLI commands for the mock government endpoint."""

import json
import logging
from pathlib import Path
from typing import Optional

import click
import requests

from ..mock_server.app import run_server
from ..mock_server.config import GovernmentDecision, load_config

logger = logging.getLogger(__name__)


@click.group(name="mock")
def mock_group():
    """Run the mock government compliance endpoint.

    The mock endpoint serves:
    - /health - Health check endpoint
    - POST submit endpoint - accepts encrypted submission batches
    - GET status endpoint - reports the government decision for a reference

    Available commands:
    - start: Start the mock endpoint in the foreground
    - health: Query a running mock endpoint
    """


@mock_group.command(name="start")
@click.option("--port", type=int, help="Server port (overrides config file)")
@click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (default: mocks/config.json)",
)
@click.option("--fail-first-n", type=int, default=None, help="Fail this many submissions before accepting")
@click.option("--failure-rate", type=float, default=None, help="Probability of a simulated failure (0.0-1.0)")
@click.option(
    "--decision",
    type=click.Choice([decision.value for decision in GovernmentDecision]),
    default=None,
    help="Decision reported by the status endpoint",
)
@click.option("--debug", is_flag=True, help="Enable debug mode")
def start_server(
    port: Optional[int],
    config: Optional[Path],
    fail_first_n: Optional[int],
    failure_rate: Optional[float],
    decision: Optional[str],
    debug: bool,
):
    """Start the mock government endpoint.

    Examples:

        # Start on the configured port\n
        medsubmit mock start

        # Fail the first two submissions to exercise retries\n
        medsubmit mock start --fail-first-n 2

        # Report every submission as rejected\n
        medsubmit mock start --decision rejected
    """
    try:
        server_config = load_config(config)

        overrides = {}
        if fail_first_n is not None:
            overrides["fail_first_n"] = fail_first_n
        if failure_rate is not None:
            overrides["failure_rate"] = failure_rate
        if decision is not None:
            overrides["decision"] = GovernmentDecision(decision)
        if overrides:
            behavior = server_config.behavior.model_validate({**server_config.behavior.model_dump(), **overrides})
            server_config = server_config.model_copy(update={"behavior": behavior})

        if port is None:
            port = server_config.http_port
        if not 1 <= port <= 65535:
            raise click.ClickException(f"Invalid port {port}. Port must be between 1 and 65535.")

        base_url = f"http://{server_config.host}:{port}"
        click.echo("=" * 50)
        click.echo("Mock Government Endpoint")
        click.echo("=" * 50)
        click.echo(f"Host: {server_config.host}")
        click.echo(f"Port: {port}")
        click.echo(f"Health Check: {base_url}/health")
        click.echo(f"Submit: {base_url}{server_config.submit_endpoint}")
        click.echo(f"Status: {base_url}{server_config.status_endpoint}/<reference>")
        click.echo(f"Fail first: {server_config.behavior.fail_first_n}")
        click.echo(f"Failure rate: {server_config.behavior.failure_rate}")
        click.echo(f"Decision: {server_config.behavior.decision.value}")
        click.echo("=" * 50)
        click.echo("")
        click.echo("Starting server... (Press Ctrl+C to stop)")
        click.echo("")

        run_server(host=server_config.host, port=port, config=server_config, debug=debug)

    except FileNotFoundError as e:
        raise click.ClickException(str(e))
    except ValueError as e:
        raise click.ClickException(f"Configuration error: {e}")
    except KeyboardInterrupt:
        click.echo("\n\nServer stopped by user.")


@mock_group.command(name="health")
@click.option("--url", default="http://127.0.0.1:8080", show_default=True, help="Base URL of the mock endpoint")
@click.option("--json", "output_json", is_flag=True, help="Output in JSON format")
def health(url: str, output_json: bool):
    """Query the health endpoint of a running mock server."""
    health_url = f"{url.rstrip('/')}/health"
    try:
        response = requests.get(health_url, timeout=5)
    except requests.RequestException as e:
        logger.debug(f"Health check failed: {e}")
        raise click.ClickException(f"Mock endpoint is not responding at {health_url}: {e}")

    if response.status_code != 200:
        raise click.ClickException(f"Health check returned HTTP {response.status_code}")

    health_data = response.json()
    if output_json:
        click.echo(json.dumps(health_data, indent=2))
        return

    click.echo(f"✓ Mock endpoint is {health_data.get('status', 'unknown')} at {url}")
    click.echo(f"  Uptime: {health_data.get('uptime_seconds', 0)}s")
    click.echo(f"  Requests: {health_data.get('request_count', 0)}")
    click.echo(f"  Submissions: {health_data.get('submissions', 0)}")
    for endpoint in health_data.get("endpoints", []):
        click.echo(f"  - {endpoint}")
