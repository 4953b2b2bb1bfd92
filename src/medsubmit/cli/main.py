"""Main CLI entry point for MedSubmit.

This module provides the main Click command group for the medsubmit CLI.
"""

from pathlib import Path
from typing import Optional

import click

from medsubmit import __version__
from medsubmit.cli.mock_commands import mock_group
from medsubmit.cli.submission_commands import batch_group, period, queue_group, scheduler_group, stats
from medsubmit.config import load_config
from medsubmit.logging_audit import configure_logging
from medsubmit.utils.exceptions import ConfigurationError


@click.group()
@click.version_option(version=__version__, prog_name="medsubmit")
@click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to configuration file (default: ./config/config.json)",
)
@click.option("--verbose", is_flag=True, help="Enable verbose logging (DEBUG level)")
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to log file (overrides config file)",
)
@click.option(
    "--redact-pii",
    is_flag=True,
    help="Redact patient identifiers from logs",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Optional[Path],
    verbose: bool,
    log_file: Optional[Path],
    redact_pii: bool,
) -> None:
    """MedSubmit - regulated submission of finalized medical reports.

    Groups finalized reports into batches and submits them to the government
    compliance endpoint during the monthly submission period, with automatic
    retries and a full audit trail.

    Common usage:

        # Create a batch from finalized reports
        medsubmit batch create --month 2024-05 -r r1 -r r2 --created-by dr-popescu

        # Queue it and process the queue
        medsubmit queue add batch_2024-05_ab12cd34
        medsubmit queue process

        # Run both periodic triggers until interrupted
        medsubmit scheduler run

    Use --help with any command for more information.
    """
    ctx.ensure_object(dict)

    try:
        config_obj = load_config(config)
        ctx.obj["config"] = config_obj
    except ConfigurationError as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        ctx.exit(1)

    ctx.obj["verbose"] = verbose
    ctx.obj["redact_pii"] = redact_pii
    ctx.obj["log_file"] = log_file

    # Precedence: CLI flags > config file > defaults
    log_level = "DEBUG" if verbose else config_obj.logging.level
    log_file_path = log_file if log_file else config_obj.logging.log_file
    redact_pii_setting = redact_pii if redact_pii else config_obj.logging.redact_pii

    configure_logging(level=log_level, log_file=log_file_path, redact_pii=redact_pii_setting)


cli.add_command(batch_group)
cli.add_command(queue_group)
cli.add_command(scheduler_group)
cli.add_command(stats)
cli.add_command(period)
cli.add_command(mock_group)


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


@config.command()
@click.argument("config_file", type=click.Path(exists=True, path_type=Path))
def validate(config_file: Path) -> None:
    """Validate a configuration file.

    Example:
        medsubmit config validate config/config.json
    """
    try:
        config_obj = load_config(config_file)
    except ConfigurationError as e:
        click.echo(click.style("✗", fg="red", bold=True) + " Configuration validation failed")
        click.echo(f"\n{e}", err=True)
        raise click.exceptions.Exit(1)

    click.echo(click.style("✓", fg="green", bold=True) + " Configuration is valid")
    click.echo(f"\nConfiguration file: {config_file}")

    click.echo("\nGovernment endpoint:")
    click.echo(f"  Submit URL:  {config_obj.government.api_url}{config_obj.government.submit_endpoint}")
    click.echo(f"  Timeout:     {config_obj.government.timeout_seconds}s")
    click.echo(f"  Verify TLS:  {config_obj.government.verify_tls}")

    click.echo("\nSubmission period:")
    click.echo(
        f"  Days:        {config_obj.period.start_day}-{config_obj.period.end_day} "
        f"({config_obj.period.timezone})"
    )

    click.echo("\nRetry policy:")
    click.echo(f"  Max retries: {config_obj.retry.max_retries}")
    click.echo(
        f"  Delay:       {config_obj.retry.base_delay_seconds}s base, "
        f"{config_obj.retry.max_delay_seconds}s cap"
    )

    click.echo("\nQueue:")
    click.echo(f"  Workers:     {config_obj.queue.worker_pool_size}")
    click.echo(f"  Lock timeout:{config_obj.queue.lock_timeout_seconds:>5}s")

    click.echo("\nStorage:")
    click.echo(f"  Database:    {config_obj.storage.database_url}")

    click.echo("\nLogging:")
    click.echo(f"  Level:       {config_obj.logging.level}")
    click.echo(f"  Log file:    {config_obj.logging.log_file}")
    click.echo(f"  Redact PII:  {config_obj.logging.redact_pii}")


cli.add_command(config)


@cli.command()
def version() -> None:
    """Display version information."""
    click.echo(f"medsubmit version {__version__}")


if __name__ == "__main__":
    cli()
