"""Allow running the CLI with ``python -m medsubmit``."""

from medsubmit.cli.main import cli

if __name__ == "__main__":
    cli()
