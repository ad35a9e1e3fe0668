"""CLI commands for homebot."""

from __future__ import annotations

import asyncio
import sys
from typing import Any

import httpx
import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from homebot import __logo__, __version__

app = typer.Typer(
    name="homebot",
    help=f"{__logo__} homebot - messaging bridge connection manager",
    no_args_is_help=True,
)
conflict_app = typer.Typer(help="Detect and resolve home/remote session conflicts")
app.add_typer(conflict_app, name="conflict")

console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"{__logo__} homebot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
) -> None:
    """homebot - messaging bridge connection manager."""


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


# ============================================================================
# Setup
# ============================================================================


@app.command()
def onboard() -> None:
    """Initialize homebot configuration."""
    from homebot.config.loader import get_config_path, save_config
    from homebot.config.schema import Config
    from homebot.utils.helpers import get_secrets_path

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] Created config at {config_path}")
    console.print(f"[green]✓[/green] Credentials will be stored under {get_secrets_path()}")

    console.print(f"\n{__logo__} homebot is ready!")
    console.print("\nNext steps:")
    console.print(f"  1. Set [cyan]bridge.bridgeToken[/cyan] in [cyan]{config_path}[/cyan]")
    console.print("  2. Add control-plane URLs under [cyan]status.urls[/cyan] (optional)")
    console.print("  3. Run: [cyan]homebot run[/cyan] and scan the QR code")


# ============================================================================
# Processes
# ============================================================================


@app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
    autostart: bool = typer.Option(True, "--autostart/--no-autostart", help="Connect on startup"),
) -> None:
    """Run the bridge in the foreground."""
    from homebot.app.bootstrap import build_bridge_runtime
    from homebot.config.loader import load_config

    _configure_logging(verbose)
    config = load_config()
    if not config.bridge.bridge_token.strip():
        console.print("[red]bridge.bridgeToken is required[/red]")
        raise typer.Exit(1)

    console.print(f"{__logo__} Starting homebot bridge (API on {config.api.host}:{config.api.port})")
    runtime = build_bridge_runtime(config)
    try:
        asyncio.run(runtime.run(autostart=autostart))
    except KeyboardInterrupt:
        console.print("\nGoodbye!")


@app.command("control-plane")
def control_plane(
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
    port: int | None = typer.Option(None, "--port", "-p", help="Override controlPlane.port"),
) -> None:
    """Run the control plane (status intake + conflict arbitration)."""
    import uvicorn

    from homebot.app.bootstrap import build_control_plane
    from homebot.config.loader import load_config

    _configure_logging(verbose)
    config = load_config()
    if port is not None:
        config.control_plane.port = port
    app_, _registry, _arbiter = build_control_plane(config)
    uvicorn.run(app_, host=config.control_plane.host, port=config.control_plane.port, log_level="info")


# ============================================================================
# Operator commands (talk to a running bridge / control plane)
# ============================================================================


def _api_request(
    method: str,
    base_url: str,
    path: str,
    token: str,
    json: dict[str, Any] | None = None,
    timeout: float = 30.0,
) -> httpx.Response:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    try:
        return httpx.request(method, f"{base_url}{path}", headers=headers, json=json, timeout=timeout)
    except httpx.HTTPError as e:
        console.print(f"[red]Cannot reach {base_url}: {e}[/red]")
        raise typer.Exit(1)


def _bridge_request(method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
    from homebot.config.loader import load_config

    config = load_config()
    base_url = f"http://{config.api.host}:{config.api.port}"
    response = _api_request(method, base_url, path, config.api.auth_token, json=json)
    if response.status_code >= 400:
        console.print(f"[red]Bridge API error {response.status_code}:[/red] {response.text}")
        raise typer.Exit(1)
    return response.json()


def _control_plane_request(method: str, path: str, timeout: float = 60.0) -> httpx.Response:
    from homebot.config.loader import load_config

    config = load_config()
    cp = config.control_plane
    return _api_request(method, f"http://{cp.host}:{cp.port}", path, cp.auth_token, timeout=timeout)


@app.command()
def status(
    show_qr: bool = typer.Option(True, "--qr/--no-qr", help="Render the QR code in the terminal"),
) -> None:
    """Show the bridge connection state."""
    data = _bridge_request("GET", "/status")

    table = Table(title=f"{__logo__} homebot")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("State", str(data.get("state")))
    table.add_row("Identity", str(data.get("selfIdentity") or "-"))
    table.add_row("Reconnect attempts", str(data.get("reconnectAttempts", 0)))
    if data.get("retryAction"):
        table.add_row("Next retry", f"{data.get('retryAction')} at {data.get('nextRetryAt')}")
    if data.get("pairingCode"):
        table.add_row("Pairing code", f"[bold green]{data['pairingCode']}[/bold green]")
    if data.get("lastError"):
        table.add_row("Last error", f"[yellow]{data['lastError']}[/yellow]")
    console.print(table)

    qr_payload = data.get("qrPayload")
    if show_qr and qr_payload:
        import qrcode

        qr = qrcode.QRCode(border=1)
        qr.add_data(qr_payload)
        qr.print_ascii(invert=True)


@app.command()
def start() -> None:
    """Ask the bridge to open a session."""
    _bridge_request("POST", "/start")
    console.print("[green]✓[/green] Start requested")


@app.command()
def stop() -> None:
    """Ask the bridge to close its session (credentials are kept)."""
    _bridge_request("POST", "/stop")
    console.print("[green]✓[/green] Stop requested")


@app.command()
def pair(
    phone: str = typer.Option(..., "--phone", help="Phone number in international format"),
) -> None:
    """Switch to phone-number pairing and request a pairing code."""
    _bridge_request("POST", "/pairing", json={"phoneNumber": phone})
    console.print("[green]✓[/green] Pairing requested; run [cyan]homebot status[/cyan] for the code")


@app.command()
def forget(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Stop the session and delete stored credentials."""
    if not yes and not typer.confirm("Forget this identity? You will need to pair again."):
        raise typer.Exit()
    _bridge_request("POST", "/forget")
    console.print("[green]✓[/green] Identity forgotten")


# ============================================================================
# Conflict Commands
# ============================================================================


def _print_report(report: dict[str, Any]) -> None:
    table = Table(title="Conflict check")
    table.add_column("Side", style="cyan")
    table.add_column("State")
    table.add_column("Details")

    home_details = f"{report.get('homeHostname') or '?'} / {report.get('homeIdentity') or '-'}"
    if report.get("homeError"):
        home_details += f" ({report['homeError']})"
    table.add_row("Home", str(report.get("homeState")), home_details)
    remote_state = "[red]active[/red]" if report.get("remoteActive") else "inactive"
    table.add_row("Remote", remote_state, str(report.get("remoteError") or ""))
    console.print(table)

    if report.get("hasConflict"):
        console.print("[red]Conflict:[/red] both instances hold the same identity")
        console.print("Run [cyan]homebot conflict fix[/cyan] to stop the remote deployment")
    else:
        console.print("[green]✓[/green] No conflict")


@conflict_app.command("check")
def conflict_check() -> None:
    """Run a fresh conflict check on the control plane."""
    response = _control_plane_request("GET", "/conflict")
    if response.status_code >= 400:
        console.print(f"[red]Control plane error {response.status_code}:[/red] {response.text}")
        raise typer.Exit(1)
    _print_report(response.json())


@conflict_app.command("latest")
def conflict_latest() -> None:
    """Show the last conflict report without probing again."""
    response = _control_plane_request("GET", "/conflict/latest")
    if response.status_code == 404:
        console.print("[yellow]No conflict check has run yet[/yellow]")
        return
    if response.status_code >= 400:
        console.print(f"[red]Control plane error {response.status_code}:[/red] {response.text}")
        raise typer.Exit(1)
    _print_report(response.json())


@conflict_app.command("fix")
def conflict_fix(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Stop and disable the remote deployment."""
    if not yes and not typer.confirm("Stop and disable the remote deployment?"):
        raise typer.Exit()
    response = _control_plane_request("POST", "/conflict/remediate", timeout=120.0)
    try:
        result = response.json()
    except ValueError:
        console.print(f"[red]Control plane error {response.status_code}:[/red] {response.text}")
        raise typer.Exit(1)

    if result.get("success"):
        console.print("[green]✓[/green] Remote deployment stopped and disabled")
        if result.get("output"):
            console.print(f"[dim]{result['output']}[/dim]")
        return
    console.print(f"[red]Remediation failed:[/red] {result.get('error') or response.text}")
    raise typer.Exit(1)


if __name__ == "__main__":
    app()
