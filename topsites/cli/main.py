"""Main CLI entry point for topsites-proxy."""

import click

from topsites import __version__
from topsites.config.settings import Settings


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    type=click.Path(exists=True),
    help="Path to configuration file"
)
@click.pass_context
def cli(ctx, config):
    """topsites-proxy - Campaign redirection relay.

    Resolves per-campaign target URLs and forwards requests to them.
    """
    # Ensure context object exists
    ctx.ensure_object(dict)

    # Load settings
    if config:
        ctx.obj["settings"] = Settings.load_from_file(config)
    else:
        ctx.obj["settings"] = Settings()


# Import and register commands
from topsites.cli.serve_cmd import serve
from topsites.cli.resolve_cmd import resolve

cli.add_command(serve)
cli.add_command(resolve)


if __name__ == "__main__":
    cli()
