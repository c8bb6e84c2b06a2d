import logging
import signal
import sys
import threading

import click
import halo
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from click.shell_completion import CompletionItem

from gsfleet.config import Settings
from gsfleet.control.service import FleetService
from gsfleet.errors import ErrorKind, classify, user_message
from gsfleet.games.registry import get_variant, list_variants
from gsfleet.log import setup_logging

console = Console()
logger = logging.getLogger(__name__)

PROGRESS_MODE = "steps"  # "steps" or "plain"


class StepProgress:
    """Step-by-step progress display.

    Modes:
        "steps"   halo bouncingBar spinner, checkmark/cross per step on new lines
        "plain"   just print each message, no spinner/ANSI (for non-TTY / debug)
    """

    def __init__(self, mode="steps"):
        self._mode = mode
        self._spinner = None

    def update(self, message):
        if self._mode == "steps":
            if self._spinner:
                self._spinner.succeed()
            self._spinner = halo.Halo(text=message, spinner="bouncingBar")
            self._spinner.start()
        else:
            print(message)

    def finish(self):
        if self._mode == "steps" and self._spinner:
            self._spinner.succeed()
            self._spinner = None

    def fail(self, message=None):
        if self._mode == "steps":
            if self._spinner:
                self._spinner.fail(message)
                self._spinner = None
        else:
            print(message or "Failed")


def _progress_mode(ctx):
    debug = ctx.obj.get("debug", False) if ctx.obj else False
    if debug or not sys.stderr.isatty():
        return "plain"
    return PROGRESS_MODE


def _complete_variant(ctx, param, incomplete):
    _load_variants()
    return [
        CompletionItem(v.name, help=v.display_name)
        for v in list_variants()
        if v.name.startswith(incomplete)
    ]


def _complete_instance(ctx, param, incomplete):
    from gsfleet.control.state import FleetState
    return [
        CompletionItem(r.id, help=f"{r.owner_id} - {r.variant} - {r.status}")
        for r in FleetState(Settings().state_dir).list_all()
        if r.id.startswith(incomplete)
    ]


def _load_variants():
    """Import all variant modules to trigger registration."""
    import gsfleet.games.tf2  # noqa: F401


def _make_service(ctx, on_status=None) -> FleetService:
    return FleetService.from_settings(ctx.obj["settings"], on_status=on_status)


def _fail(error: Exception, progress: StepProgress | None = None) -> None:
    message = user_message(error)
    if classify(error) is ErrorKind.UNEXPECTED:
        logger.exception("Command failed")
    if progress:
        progress.fail(message)
    console.print(f"[bold red]Error:[/] {message}")
    raise SystemExit(1)


class HelpfulCommand(click.Command):
    """Show full help text when a command is invoked incorrectly."""

    def parse_args(self, ctx, args):
        try:
            return super().parse_args(ctx, args)
        except click.UsageError as e:
            click.echo(ctx.get_help())
            click.echo()
            console.print(f"[bold red]Error:[/] {e.format_message()}")
            ctx.exit(2)


class HelpfulGroup(click.Group):
    command_class = HelpfulCommand


@click.group(cls=HelpfulGroup)
@click.version_option(version="0.1.0", prog_name="gsfleet")
@click.option("--debug", is_flag=True, help="Verbose logging")
@click.pass_context
def cli(ctx, debug):
    """gsfleet - Run one game server per owner and reclaim idle ones automatically."""
    _load_variants()
    ctx.ensure_object(dict)
    settings = ctx.obj.get("settings") or Settings()
    ctx.obj["settings"] = settings
    ctx.obj["debug"] = debug
    setup_logging("DEBUG" if debug else settings.log_level)


@cli.command()
@click.argument("shell", type=click.Choice(["bash", "zsh", "fish"]))
def completion(shell):
    """Generate shell completion script."""
    from click.shell_completion import get_completion_class
    comp_cls = get_completion_class(shell)
    comp = comp_cls(cli, {}, "gsfleet", "_GSFLEET_COMPLETE")
    click.echo(comp.source())


@cli.command()
@click.option("--guild", "-g", default=None, help="Include variants private to this guild")
def variants(guild):
    """List server variants."""
    all_variants = list_variants(guild)
    if not all_variants:
        click.echo("No variants registered.")
        return

    table = Table(title="Server Variants")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Display Name", style="green")
    table.add_column("Map", style="yellow")
    table.add_column("Players", justify="right")
    table.add_column("Idle Limit", justify="right")
    table.add_column("Instance Type", style="magenta")

    for v in sorted(all_variants, key=lambda x: x.name):
        idle = f"{v.idle_minutes} min" if v.idle_minutes is not None else "default"
        table.add_row(v.name, v.display_name, v.default_map, str(v.max_players), idle, v.default_instance_type)

    console.print(table)


@cli.command()
@click.argument("owner_id")
@click.argument("variant", shell_complete=_complete_variant)
@click.option("--region", "-r", default=None, help="AWS region")
@click.option("--guild", "-g", default=None, help="Guild the request comes from")
@click.pass_context
def create(ctx, owner_id, variant, region, guild):
    """Create a game server for OWNER_ID."""
    if not get_variant(variant):
        console.print(f"[red]Unknown variant: {variant}[/]")
        raise SystemExit(1)

    progress = StepProgress(mode=_progress_mode(ctx))
    service = _make_service(ctx, on_status=progress.update)
    progress.update("Reserving server")
    try:
        record = service.create(owner_id, variant, region=region, guild_id=guild)
        progress.finish()
    except KeyboardInterrupt:
        progress.fail("Interrupted")
        console.print("\n[yellow]Interrupted.[/]")
        raise SystemExit(130)
    except Exception as e:
        _fail(e, progress)

    result_lines = [
        f"[bold]ID:[/]         {record.id}",
        f"[bold]Variant:[/]    {record.variant}",
        f"[bold]Region:[/]     {record.region}",
        f"[bold]Connect:[/]    connect {record.connection_string}; password \"{record.server_password}\"",
    ]
    if record.tv_port:
        result_lines.append(f"[bold]SourceTV:[/]   connect {record.tv_host}:{record.tv_port}")
    if record.rcon_password:
        result_lines.append(f"[bold]RCON Pass:[/]  {record.rcon_password}")
    console.print(Panel("\n".join(result_lines), title="[green]Server Ready[/]", border_style="green"))


@cli.command()
@click.argument("owner_id")
@click.argument("instance_id", required=False, default=None, shell_complete=_complete_instance)
@click.pass_context
def terminate(ctx, owner_id, instance_id):
    """Terminate OWNER_ID's server (their active one if no INSTANCE_ID is given)."""
    service = _make_service(ctx)
    progress = StepProgress(mode=_progress_mode(ctx))
    progress.update("Terminating server")
    try:
        terminated = service.terminate(owner_id, instance_id)
        progress.finish()
    except KeyboardInterrupt:
        progress.fail("Interrupted")
        console.print("\n[yellow]Interrupted.[/]")
        raise SystemExit(130)
    except Exception as e:
        _fail(e, progress)
    console.print(f"[green]Server {terminated} terminated.[/]")


@cli.command("list")
@click.option("--owner", default=None, help="Only this owner's servers")
@click.pass_context
def list_servers(ctx, owner):
    """List tracked servers."""
    records = _make_service(ctx).list_instances(owner)
    if not records:
        console.print("No servers running.")
        return

    table = Table(title="Game Servers")
    table.add_column("ID", style="cyan")
    table.add_column("Owner", style="green")
    table.add_column("Variant", style="yellow")
    table.add_column("Region")
    table.add_column("Status")
    table.add_column("Address", style="magenta")
    table.add_column("Created")

    for r in records:
        status = "[green]ready[/]" if r.status == "ready" else "[yellow]pending[/]"
        table.add_row(
            r.id, r.owner_id, r.variant, r.region, status,
            r.connection_string, r.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@cli.command()
@click.argument("instance_id", shell_complete=_complete_instance)
@click.pass_context
def status(ctx, instance_id):
    """Query a running server and show who is on it."""
    try:
        result = _make_service(ctx).status(instance_id)
    except Exception as e:
        _fail(e)

    console.print(f"[bold]Hostname:[/] {result.hostname or '-'}")
    console.print(f"[bold]Map:[/]      {result.map or '-'}")
    console.print(f"[bold]Address:[/]  {result.server_ip}:{result.server_port}")
    if result.tv_ip:
        console.print(f"[bold]SourceTV:[/] {result.tv_ip}:{result.tv_port}")
    console.print(f"[bold]Players:[/]  {result.player_count}")


@cli.command()
@click.argument("policy", type=click.Choice(["empty", "pending", "long-running", "credit"]))
@click.pass_context
def reap(ctx, policy):
    """Run one reclamation cycle now."""
    service = _make_service(ctx)
    try:
        service.reap(policy)
    except Exception as e:
        _fail(e)
    # Deletes from the empty-server policy are deferred; flush them before exiting.
    while service.queue.process_next():
        pass
    if len(service.queue):
        console.print(f"[yellow]{len(service.queue)} task(s) waiting for retry were dropped on exit.[/]")
    console.print(f"[green]{policy} cycle complete.[/]")


@cli.group()
def credits():
    """Inspect or adjust owner credits."""


@credits.command("show")
@click.argument("owner_id")
@click.pass_context
def credits_show(ctx, owner_id):
    balance = _make_service(ctx).credits.get_balance(owner_id)
    console.print(f"{owner_id}: [bold]{balance:g}[/] credits")


@credits.command("set")
@click.argument("owner_id")
@click.argument("balance", type=float)
@click.pass_context
def credits_set(ctx, owner_id, balance):
    _make_service(ctx).credits.set_balance(owner_id, balance)
    console.print(f"[green]{owner_id} now has {balance:g} credits.[/]")


@cli.command("bind-identity")
@click.argument("owner_id")
@click.argument("identity")
@click.pass_context
def bind_identity(ctx, owner_id, identity):
    """Link OWNER_ID to the in-game IDENTITY that gets admin rights."""
    _make_service(ctx).owners.bind_identity(owner_id, identity)
    console.print(f"[green]Linked {owner_id} to {identity}.[/]")


@cli.command()
@click.argument("key")
@click.option("--reason", "-r", default="", help="Shown to the owner when they try to create a server")
@click.pass_context
def ban(ctx, key, reason):
    """Stop KEY (an owner id or in-game identity) from creating servers."""
    _make_service(ctx).owners.ban(key, reason)
    console.print(f"[yellow]Banned {key}.[/]")


@cli.command()
@click.argument("key")
@click.pass_context
def unban(ctx, key):
    """Lift a ban on KEY."""
    _make_service(ctx).owners.unban(key)
    console.print(f"[green]Unbanned {key}.[/]")


@cli.command()
@click.option("--tail", "-n", default=20, help="Number of events to show")
@click.pass_context
def events(ctx, tail):
    """Show the most recent fleet events."""
    entries = _make_service(ctx).event_log.tail(tail)
    if not entries:
        console.print("No events recorded.")
        return
    for entry in entries:
        console.print(f"[dim]{entry['at']}[/] [cyan]{entry['actor_id']}[/] {entry['message']}")


@cli.command()
@click.option("--port", "-p", default=8080, help="API port")
@click.option("--host", default="127.0.0.1", help="API host")
@click.option("--no-api", is_flag=True, help="Run the background loops only")
@click.pass_context
def serve(ctx, port, host, no_api):
    """Run the controller: reclamation loops, task queue and REST API."""
    service = _make_service(ctx)
    service.start()
    try:
        if no_api:
            stop = threading.Event()
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, lambda *_: stop.set())
            console.print("[green]Controller running. Press Ctrl+C to stop.[/]")
            stop.wait()
        else:
            import uvicorn
            from gsfleet.api import create_app

            console.print(f"[green]Starting API server on {host}:{port}[/]")
            uvicorn.run(create_app(service), host=host, port=port)
    finally:
        console.print("[yellow]Draining in-flight work...[/]")
        service.shutdown()
        console.print("[green]Stopped.[/]")
