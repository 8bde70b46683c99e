"""Resolve command: show the target URL a campaign request would be forwarded to."""

import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from topsites.core.builder import TargetURLBuilder
from topsites.core.campaign import CampaignRegistry
from topsites.core.errors import ProxyError
from topsites.core.rules import RoutingRules
from topsites.core.template import render_template_value
from topsites.proxy.app import load_campaign_config
from topsites.utils.helpers import prune_user_agent, truncate_text

console = Console()


def _parse_pairs(values, separator, label):
    pairs = []
    for raw in values:
        name, sep, value = raw.partition(separator)
        if not sep or not name.strip():
            raise click.BadParameter(f"expected NAME{separator}VALUE, got {raw!r}", param_hint=label)
        pairs.append((name.strip(), value.strip() if separator == ":" else value))
    return pairs


@click.command()
@click.argument("cid", required=False)
@click.option(
    "--header", "-H", "headers",
    multiple=True,
    help='Request header, e.g. -H "X-Region: us"'
)
@click.option(
    "--query", "-q", "query",
    multiple=True,
    help="Query parameter, e.g. -q locationKey=123"
)
@click.option(
    "--method", "-X",
    default="GET",
    help="Request method (default: GET)"
)
@click.option(
    "--list", "list_campaigns",
    is_flag=True,
    help="List configured campaigns and exit"
)
@click.pass_context
def resolve(ctx, cid, headers, query, method, list_campaigns):
    """Resolve a campaign's target URL without forwarding anything."""
    settings = ctx.obj.get("settings")

    try:
        config = load_campaign_config(settings)
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    registry = CampaignRegistry.from_config(config)

    if list_campaigns:
        table = Table(title="Campaigns", show_header=True, header_style="bold cyan")
        table.add_column("Campaign", style="green")
        table.add_column("Method")
        table.add_column("Base URL", style="yellow")
        table.add_column("Query template")

        for campaign in sorted(registry, key=lambda c: c.id):
            template = "&".join(
                f"{name}={render_template_value(value)}"
                for name, value in campaign.query_template.items()
            )
            table.add_row(
                campaign.id,
                campaign.allowed_method,
                campaign.base_url or "[red]not configured[/red]",
                truncate_text(template, 80),
            )

        console.print("\n")
        console.print(table)
        console.print("\n")
        return

    if not cid:
        click.echo("Error: Either provide a campaign id or use --list", err=True)
        click.echo("Try 'topsites resolve --help' for more information.")
        sys.exit(1)

    header_pairs = _parse_pairs(headers, ":", "--header")
    query_pairs = _parse_pairs(query, "=", "--query")
    header_map = {name.lower(): value for name, value in header_pairs}

    builder = TargetURLBuilder(rules=RoutingRules.from_config(config))
    try:
        campaign = registry.lookup(cid, method)
        target = builder.resolve(header_map, query_pairs, campaign)
    except ProxyError as e:
        click.echo(f"Error ({e.status_code}): {e}", err=True)
        sys.exit(1)

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="cyan", width=14)
    table.add_column("Value", style="bold green")

    table.add_row("Campaign", campaign.id)
    table.add_row("Base URL", target.base_url)
    for name, value in target.query:
        table.add_row(f"  {name}", value or "[dim](empty)[/dim]")
    table.add_row("User-Agent", prune_user_agent(header_map.get("user-agent")) or "[dim](none)[/dim]")

    console.print("\n")
    console.print(Panel(table, title="Resolved Target", border_style="blue"))
    console.print(target.url, soft_wrap=True, markup=False, highlight=False)
    console.print("\n")
