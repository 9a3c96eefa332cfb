"""CLI application using Typer for the officesync core."""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ..access.roles import RoleResolver
from ..config.settings import settings
from ..core.errors import ConfigurationError, OfficeSyncError
from ..core.models import OfficeSnapshot, Principal, Role
from ..invites.acceptor import InviteAcceptor, InviteState
from ..invites.links import InviteLinkService, invite_url
from ..mirror.builder import OfficeBuilder
from ..mirror.session import OfficeSession
from ..store.memory import InMemoryStore, MemoryDatabase, seed_demo
from ..store.rest import RestStore
from ..utils.logging import get_logger
from ..video.provisioner import VideoRoomProvisioner, canonicalize_room_name

app = typer.Typer(
    name="officesync",
    help="Workspace synchronization and access core - roles, invites, office mirror, video rooms",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


def _rest_store(access_token: Optional[str] = None) -> RestStore:
    try:
        return RestStore(access_token=access_token)
    except ConfigurationError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _snapshot_table(snapshot: OfficeSnapshot) -> Table:
    table = Table(title=f"Space {snapshot.space_id} (cycle {snapshot.cycle})")
    table.add_column("Room", style="cyan")
    table.add_column("Type")
    table.add_column("Furniture", justify="right", style="green")
    table.add_column("Connected to")
    names = {r.id: r.name for r in snapshot.rooms}
    for room in snapshot.rooms:
        neighbours = ", ".join(names.get(n, n) for n in snapshot.neighbours(room.id))
        table.add_row(room.name, room.type, str(len(snapshot.furniture_in(room.id))), neighbours or "-")
    return table


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Hostname to bind the web server to."),
    port: int = typer.Option(8000, "--port", help="Port for the web server."),
    reload: bool = typer.Option(False, "--reload/--no-reload", help="Enable auto-reload (development only)."),
) -> None:
    """Start the HTTP API (video room provisioning)."""
    from ..web.app import start_server

    console.print(f"[bold blue]Starting web server[/bold blue] at http://{host}:{port}")
    start_server(host=host, port=port, reload=reload)


@app.command()
def canonical(name: str = typer.Argument(..., help="Raw room name")) -> None:
    """Print the canonical video room name for NAME."""
    console.print(canonicalize_room_name(name))


@app.command()
def room(name: str = typer.Argument(..., help="Raw room name")) -> None:
    """Get or create the video room for NAME."""

    async def _run():
        async with VideoRoomProvisioner() as provisioner:
            return await provisioner.get_or_create_room(name)

    try:
        video_room = asyncio.run(_run())
    except OfficeSyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        details = getattr(e, "details", None)
        if details:
            console.print(details)
        raise typer.Exit(1)
    state = "[green]created[/green]" if video_room.created else "existing"
    console.print(f"{video_room.name} ({state}): {video_room.url}")


@app.command()
def invite(
    token: str = typer.Argument(..., help="Invite token"),
    access_token: Optional[str] = typer.Option(None, "--access-token", help="Access token of the signed-in user"),
) -> None:
    """Redeem an invite token against the configured datastore."""

    async def _run():
        async with _rest_store(access_token) as store:
            async with InviteAcceptor(store, token) as acceptor:
                return await acceptor.run()

    outcome = asyncio.run(_run())
    if outcome.workspace_name:
        console.print(f"Workspace: [bold]{outcome.workspace_name}[/bold] (role: {outcome.role.value if outcome.role else '-'})")
    if outcome.state is InviteState.NEEDS_AUTH:
        console.print("[yellow]Sign in first, then run again with --access-token.[/yellow]")
        raise typer.Exit(2)
    if outcome.state is InviteState.ERROR:
        console.print(f"[red]{outcome.error}[/red]")
        raise typer.Exit(1)
    label = "Welcome!" if outcome.state is InviteState.SUCCESS else "Already a member."
    console.print(f"[green]{label}[/green] Continue at {outcome.landing_path}")


@app.command()
def role(
    workspace_id: str = typer.Argument(..., help="Workspace id"),
    user_id: Optional[str] = typer.Option(None, "--user", help="User id (default: signed-in user)"),
) -> None:
    """Show a user's role and capabilities in a workspace."""

    async def _run():
        async with _rest_store() as store:
            return await RoleResolver(store).capabilities(workspace_id, user_id)

    caps = asyncio.run(_run())
    if caps.role is None:
        console.print("[red]No access[/red]")
        raise typer.Exit(1)
    console.print(f"Role: [bold]{caps.role.value}[/bold]")
    console.print(f"Capabilities: {', '.join(caps.granted()) or 'none'}")


@app.command()
def watch(
    space_id: str = typer.Argument(..., help="Space id"),
    seconds: float = typer.Option(30.0, "--seconds", help="How long to keep mirroring"),
) -> None:
    """Mirror a space and print every new snapshot."""

    async def _run():
        async with _rest_store() as store:
            async with OfficeSession(store) as session:
                mirror = await session.enter(space_id)
                console.print(_snapshot_table(mirror.snapshot))
                mirror.add_listener(lambda snap: console.print(_snapshot_table(snap)))
                await asyncio.sleep(seconds)

    try:
        asyncio.run(_run())
    except OfficeSyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def demo() -> None:
    """Walk through invite, mirror and builder mode on an in-memory store."""
    asyncio.run(_run_demo())


async def _run_demo() -> None:
    db = MemoryDatabase()
    ids = seed_demo(db, owner_id="owner-1")
    owner = InMemoryStore(db, Principal(id="owner-1", email="owner@example.com"))
    visitor = InMemoryStore(db)

    link = await InviteLinkService(owner).create_link(ids["workspace_id"], role=Role.MEMBER, max_uses=5)
    console.print(f"Invite link: {invite_url('https://office.example.com', link.token)}")

    async with InviteAcceptor(visitor, link.token) as acceptor:
        outcome = await acceptor.run()
        console.print(f"Visitor (signed out): [yellow]{outcome.state.value}[/yellow]")
        visitor.sign_in(Principal(id="user-2", email="new@example.com"))
        outcome = await acceptor.resume()
        console.print(f"Visitor (signed in): [green]{outcome.state.value}[/green] -> {outcome.landing_path}")

    async with OfficeSession(visitor, refetch_rate=50.0) as session:
        mirror = await session.enter(outcome.landing_space_id)
        console.print(_snapshot_table(mirror.snapshot))
        console.print(f"Visitor can edit rooms: {session.capabilities.can_edit_rooms}")

        builder = OfficeBuilder(owner, ids["space_id"])
        focus = await builder.add_room("Focus", type="focus", x=480)
        await builder.add_furniture(focus.id, "desk", label="Quiet desk")
        await asyncio.sleep(0.05)
        await mirror.wait_idle()
        console.print(_snapshot_table(mirror.snapshot))

    console.print(f"[bold green]✓ Demo complete[/bold green] (invite uses: {db.rows('workspace_invitations')[0]['use_count']})")


if __name__ == "__main__":
    app()
