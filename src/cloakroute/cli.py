"""cloakroute CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_COLORS = {
    "PENDING": "yellow",
    "PROPAGATING": "cyan",
    "ACTIVE": "green",
    "ERROR": "red",
}


def _configure_logging(log_level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
    )


def _get_config(ctx: click.Context):
    from cloakroute.core.config import PlatformConfig, get_config

    config_file = (ctx.obj or {}).get("config_file")
    if config_file:
        return PlatformConfig.from_file(config_file)
    return get_config()


@click.group()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="info",
    help="Log level",
)
@click.pass_context
def main(ctx: click.Context, config_file: str | None, log_level: str):
    """cloakroute - custom domains and cloaking for multi-tenant traffic routing."""
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file
    _configure_logging(log_level)


@main.command()
def version():
    """Show version information."""
    from cloakroute import __version__

    console.print(f"[bold]cloakroute[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


@main.command()
@click.option("--control-bind", help="Control plane bind address (host:port)")
@click.option("--edge-bind", help="Edge plane bind address (host:port)")
@click.option("--no-sweep", is_flag=True, help="Disable the background reconciliation sweep")
@click.pass_context
def serve(ctx: click.Context, control_bind: str | None, edge_bind: str | None, no_sweep: bool):
    """Run the control and edge planes."""
    config = _get_config(ctx)
    if control_bind:
        config.server.control_bind = control_bind
    if edge_bind:
        config.server.edge_bind = edge_bind
    if no_sweep:
        config.reconcile.sweep_enabled = False

    console.print(
        Panel(
            f"[bold]Control:[/bold] {config.server.control_bind}\n"
            f"[bold]Edge:[/bold] {config.server.edge_bind}\n"
            f"[bold]Edge origin:[/bold] {config.edge.edge_origin}\n"
            f"[bold]Provisioner:[/bold] {config.provisioner.backend}",
            title="cloakroute",
            border_style="cyan",
        )
    )

    try:
        asyncio.run(_serve_async(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


async def _serve_async(config) -> None:
    from cloakroute.server import PlatformServer, build_platform

    server = PlatformServer(build_platform(config))
    await server.serve_forever()


@main.command()
@click.pass_context
def sweep(ctx: click.Context):
    """Reconcile every domain that is not ACTIVE yet, once."""
    asyncio.run(_sweep_async(_get_config(ctx)))


async def _sweep_async(config) -> None:
    from cloakroute.server import build_platform

    platform = build_platform(config, access_log=False)
    try:
        reports = await platform.sweeper.sweep_once()
    finally:
        await platform.aclose()

    if not reports:
        console.print("[dim]No pending domains[/dim]")
        return

    table = Table(title="Reconciliation Sweep")
    table.add_column("Domain", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Certificate", justify="center")
    table.add_column("Reason")
    for report in reports:
        color = STATUS_COLORS.get(report.domain_status.value, "white")
        table.add_row(
            report.hostname,
            f"[{color}]{report.domain_status.value}[/{color}]",
            report.cert_status.value,
            report.reason or "",
        )
    console.print(table)


@main.command("config")
@click.pass_context
def config_show(ctx: click.Context):
    """Show the effective configuration (secrets removed)."""
    config = _get_config(ctx)
    console.print(json.dumps(config.to_display_dict(), indent=2, default=str))


@main.group()
def domain():
    """Manage customer domains.

    Examples:

        cloakroute domain add promo.example.com --owner tenant-1 --black offer.example.net

        cloakroute domain list --owner tenant-1

        cloakroute domain status promo.example.com

        cloakroute domain retry promo.example.com

        cloakroute domain remove promo.example.com
    """
    pass


async def _find(platform, ref: str):
    """Look a domain up by id, then by hostname."""
    return await platform.directory.get(ref) or await platform.directory.find_by_hostname(ref)


def _print_report(report, title: str) -> None:
    color = STATUS_COLORS.get(report.domain_status.value, "white")
    content = (
        f"[bold]Domain:[/bold] {report.hostname}\n"
        f"[bold]Status:[/bold] [{color}]{report.domain_status.value}[/{color}]\n"
        f"[bold]Certificate:[/bold] {report.cert_status.value}\n"
        f"[bold]Reason:[/bold] {report.reason or 'N/A'}\n\n"
        f"[yellow]Point your DNS here:[/yellow]\n"
        f"   {report.hostname}  CNAME  {report.internal_target}"
    )
    if report.challenge:
        content += (
            f"\n\n[yellow]Certificate validation record:[/yellow]\n"
            f"   Name: {report.challenge.name}\n"
            f"   Value: {report.challenge.value}"
        )
    console.print(Panel(content, title=title, border_style=color))


@domain.command("add")
@click.argument("hostname")
@click.option("--owner", "-o", required=True, help="Tenant id owning the domain")
@click.option("--white", help="Destination for bots")
@click.option("--black", help="Destination for human visitors")
@click.option("--ua-block", help="Extra user-agent regex classified as bot")
@click.option("--swap", is_flag=True, help="Send bots to --black and humans to --white")
@click.pass_context
def domain_add(
    ctx: click.Context,
    hostname: str,
    owner: str,
    white: str | None,
    black: str | None,
    ua_block: str | None,
    swap: bool,
):
    """Register a customer domain and run its first status check."""
    asyncio.run(_domain_add_async(_get_config(ctx), hostname, owner, white, black, ua_block, swap))


async def _domain_add_async(config, hostname, owner, white, black, ua_block, swap) -> None:
    from cloakroute.domains import DomainConflictError, InvalidHostnameError
    from cloakroute.server import build_platform

    platform = build_platform(config, access_log=False)
    try:
        domain, report = await platform.manager.create_domain(
            hostname,
            owner,
            white_destination=white,
            black_destination=black,
            rules={"ua_block": ua_block, "swap_destinations": swap},
        )
    except (DomainConflictError, InvalidHostnameError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        await platform.aclose()

    console.print(f"[green]Domain registered:[/green] {domain.hostname} ([dim]{domain.id}[/dim])")
    _print_report(report, "Domain Registration")


@domain.command("list")
@click.option("--owner", "-o", help="Only list this tenant's domains")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def domain_list(ctx: click.Context, owner: str | None, json_output: bool):
    """List registered domains."""
    asyncio.run(_domain_list_async(_get_config(ctx), owner, json_output))


async def _domain_list_async(config, owner: str | None, json_output: bool) -> None:
    from cloakroute.domains import DomainStore

    store = DomainStore(config.storage.domains_path)
    domains = await store.list_by_owner(owner) if owner else await store.list_all()

    if json_output:
        click.echo(json.dumps([d.to_dict() for d in domains], indent=2, default=str))
        return

    if not domains:
        console.print("[dim]No domains registered[/dim]")
        return

    table = Table(title="Registered Domains")
    table.add_column("Domain", style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Owner")
    table.add_column("Status", justify="center")
    table.add_column("Certificate", justify="center")
    table.add_column("Last Checked")

    for d in domains:
        color = STATUS_COLORS.get(d.domain_status.value, "white")
        checked = d.last_checked_at.strftime("%Y-%m-%d %H:%M") if d.last_checked_at else "N/A"
        table.add_row(
            d.hostname,
            d.id[:12],
            d.owner_id,
            f"[{color}]{d.domain_status.value}[/{color}]",
            d.cert_status.value,
            checked,
        )

    console.print(table)


@domain.command("status")
@click.argument("ref")
@click.pass_context
def domain_status(ctx: click.Context, ref: str):
    """Run a status check for a domain (id or hostname)."""
    asyncio.run(_domain_check_async(_get_config(ctx), ref, retry=False))


@domain.command("retry")
@click.argument("ref")
@click.pass_context
def domain_retry(ctx: click.Context, ref: str):
    """Retry certificate provisioning after a failure."""
    asyncio.run(_domain_check_async(_get_config(ctx), ref, retry=True))


async def _domain_check_async(config, ref: str, retry: bool) -> None:
    from cloakroute.server import build_platform

    platform = build_platform(config, access_log=False)
    try:
        found = await _find(platform, ref)
        if found is None:
            console.print(f"[red]Domain not found:[/red] {ref}")
            sys.exit(1)
        report = await platform.manager.check_status(found.id, retry=retry)
    finally:
        await platform.aclose()

    _print_report(report, f"Domain Status: {report.hostname}")


@domain.command("remove")
@click.argument("ref")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def domain_remove(ctx: click.Context, ref: str, yes: bool):
    """Remove a domain (id or hostname) and release its certificate."""
    if not yes and not click.confirm(f"Are you sure you want to remove '{ref}'?"):
        console.print("[dim]Cancelled[/dim]")
        return

    asyncio.run(_domain_remove_async(_get_config(ctx), ref))


async def _domain_remove_async(config, ref: str) -> None:
    from cloakroute.server import build_platform

    platform = build_platform(config, access_log=False)
    try:
        found = await _find(platform, ref)
        if found is None:
            console.print(f"[red]Domain not found:[/red] {ref}")
            sys.exit(1)
        await platform.manager.delete_domain(found.id)
    finally:
        await platform.aclose()

    console.print(f"[green]Domain removed:[/green] {found.hostname}")


if __name__ == "__main__":
    main()
