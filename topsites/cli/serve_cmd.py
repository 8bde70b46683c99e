"""CLI command to start the relay server."""

import logging

import click


@click.command()
@click.option("--port", type=int, default=None, help="Port to listen on (default: settings, 8000)")
@click.option("--host", default=None, help="Host to bind to (default: settings, 127.0.0.1)")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.pass_context
def serve(ctx, port, host, log_level):
    """Start the campaign redirection relay.

    \b
    Quickstart:
        AMZN_2020_1_KEY=xxx topsites serve --port 8000
        curl -H "X-Region: us" http://localhost:8000/cid/amzn_2020_1
    """
    settings = ctx.obj["settings"]
    overrides = {"port": port, "host": host, "log_level": log_level}
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if overrides:
        settings = settings.model_copy(update=overrides)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    import uvicorn

    from topsites.proxy.app import create_default_app

    try:
        app = create_default_app(settings)
    except (FileNotFoundError, ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo("Top Sites Proxy - campaign redirection relay")
    click.echo(f"  Campaigns:     {settings.campaigns_file or 'bundled campaigns.yaml'}")
    click.echo(f"  Environment:   {settings.env}")
    click.echo(f"  Timeout:       {settings.proxy_timeout or 'none'}")
    click.echo(f"  Listening on:  http://{settings.host}:{settings.port}")
    click.echo()

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
