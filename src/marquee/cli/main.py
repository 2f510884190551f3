"""Main CLI entry point"""

import logging
from pathlib import Path

import click
from dotenv import load_dotenv

# Load .env file from current working directory before importing anything else
# This ensures environment variables are set before pydantic-settings reads them
_env_file = Path.cwd() / ".env"
if _env_file.exists():
    load_dotenv(_env_file)


def setup_logging(verbose: bool):
    """Configure logging from settings.log_level (DEBUG when verbose)"""
    from marquee.config import settings

    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        datefmt='%H:%M:%S'
    )


@click.group()
@click.version_option(version='0.1.0', prog_name='marquee')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def cli(verbose: bool):
    """Marquee CLI - sign in to a media server and inspect its status"""
    setup_logging(verbose)


def setup_cli():
    """Register all CLI commands"""
    from .auth_cmd import login, logout, whoami
    from .status_cmd import status

    cli.add_command(login, name='login')
    cli.add_command(logout, name='logout')
    cli.add_command(whoami, name='whoami')
    cli.add_command(status, name='status')


# Setup commands when module is imported
setup_cli()
