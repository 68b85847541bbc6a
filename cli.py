"""
gws-credentials: operator CLI for the credential lifecycle.

Usage:
    gws-credentials auth --service drive --service docs
    gws-credentials health
    gws-credentials rotate-key [--force]
    gws-credentials rollback-key [--backup PATH]
    gws-credentials verify-keys
    gws-credentials key-status
    gws-credentials list-backups
    gws-credentials migrate-tokens
    gws-credentials revoke-all-tokens --yes

Every command exits 0 on success and 1 on failure, with the reason on stderr.
"""

import json
import logging
import secrets
import webbrowser

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from auth.codec import blob_from_json, is_legacy_format
from auth.config import encryption_key_env_name
from auth.credential_types import AuditEvent, HealthStatus, utcnow
from auth.google_oauth import GoogleOAuthClient
from auth.oauth_callback_server import start_oauth_callback_server
from auth.scopes import get_scopes_for_services
from core.container import Container, get_container
from core.context import set_audit_session_id
from core.errors import DecryptionError, ServiceConfigurationError, WorkspaceMCPError

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="gws-credentials",
    help="Manage encrypted Google Workspace OAuth tokens: sign-in, health, key rotation and backups.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def _fail(message: str) -> typer.Exit:
    err_console.print(f"[red]Error:[/red] {escape(message)}")
    return typer.Exit(1)


def _container() -> Container:
    try:
        return get_container()
    except WorkspaceMCPError as e:
        raise _fail(str(e)) from e


def _rotation_failed(container: Container, stage: str, message: str) -> typer.Exit:
    container.audit_log.record(AuditEvent.ROTATION_FAILED, {"stage": stage, "error": message, "rolledBack": False})
    return _fail(message)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Credential lifecycle tools for the Google Workspace MCP server."""
    set_audit_session_id(f"cli-{secrets.token_hex(6)}")
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def auth(
    service: list[str] = typer.Option(
        None,
        "--service",
        "-s",
        help="Service to request access for (drive, docs, sheets, calendar, gmail). Repeatable; default all.",
    ),
    timeout: float = typer.Option(300.0, "--timeout", help="Seconds to wait for the browser sign-in"),
    no_browser: bool = typer.Option(False, "--no-browser", help="Print the URL instead of opening a browser"),
) -> None:
    """Sign in with Google and store encrypted tokens."""
    container = _container()
    client = container.oauth_client
    if not isinstance(client, GoogleOAuthClient):
        message = "Set GOOGLE_OAUTH_CLIENT_ID and GOOGLE_OAUTH_CLIENT_SECRET before signing in."
        container.audit_log.record(AuditEvent.AUTH_FAILED, {"error": message})
        raise _fail(message)

    try:
        client.scopes = get_scopes_for_services(service)
        state = secrets.token_urlsafe(24)
        server = start_oauth_callback_server(expected_state=state)
        try:
            url, _ = client.authorization_url(server.redirect_uri, state=state)
            console.print("Open this URL to sign in:\n")
            console.print(url, soft_wrap=True)
            if not no_browser:
                webbrowser.open(url)
            code = server.wait_for_code(timeout)
        finally:
            server.stop()

        record = client.exchange(code)
        container.scheduler.record_initial_tokens(record)
    except WorkspaceMCPError as e:
        container.audit_log.record(AuditEvent.AUTH_FAILED, {"error": str(e)})
        raise _fail(str(e)) from e

    console.print(f"[green]✓[/green] Signed in. Tokens saved to [bold]{container.store.token_path}[/bold]")


@app.command()
def health() -> None:
    """Print token health as JSON; exit 0 only when HEALTHY."""
    report = _container().facade.get_health()
    typer.echo(json.dumps(report.to_dict(), indent=2))
    if report.status != HealthStatus.HEALTHY:
        raise typer.Exit(1)


@app.command("rotate-key")
def rotate_key(
    force: bool = typer.Option(
        False,
        "--force",
        help="Wait for an in-flight refresh and skip disk-space and writability pre-checks",
    ),
) -> None:
    """Re-encrypt stored tokens under the next key version."""
    container = _container()
    try:
        blob = container.store.read_blob()
    except DecryptionError as e:
        raise _rotation_failed(container, "load", f"Cannot read the current token file: {e}") from e
    if blob is None:
        message = f"No stored tokens at {container.store.token_path}; nothing to rotate."
        raise _rotation_failed(container, "load", message)

    next_version = blob.key_version + 1
    try:
        new_secret = container.config.get_secret(next_version)
        result = container.rotator.rotate(new_secret, force=force)
    except ServiceConfigurationError as e:
        raise _rotation_failed(container, "config", str(e)) from e
    except WorkspaceMCPError as e:
        raise _fail(str(e)) from e

    console.print(
        f"[green]✓[/green] Rotated key version {result.previous_version} -> {result.new_version}. "
        f"Backup: [bold]{result.backup_path}[/bold]"
    )
    if result.pruned:
        console.print(f"[dim]Pruned {len(result.pruned)} old backup(s)[/dim]")


@app.command("rollback-key")
def rollback_key(
    backup: str = typer.Option(None, "--backup", "-b", help="Backup file to restore (default: newest)"),
) -> None:
    """Restore the token file from a backup."""
    container = _container()
    try:
        restored = container.rotator.rollback(backup)
    except WorkspaceMCPError as e:
        raise _fail(str(e)) from e
    console.print(
        f"[green]✓[/green] Restored [bold]{restored.path}[/bold] (key version {restored.source_key_version})"
    )


@app.command("verify-keys")
def verify_keys() -> None:
    """Decrypt the live token file and every backup without changing anything."""
    container = _container()
    store, config = container.store, container.config

    targets = []
    if store.exists():
        targets.append(("live", store.token_path))
    targets.extend(("backup", b.path) for b in container.backups.list_backups())
    if not targets:
        raise _fail("No token file or backups to verify.")

    table = Table(title="Key verification")
    table.add_column("File")
    table.add_column("Key version", justify="right")
    table.add_column("Result")

    verified, failed, skipped = 0, 0, 0
    for kind, path in targets:
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except OSError as e:
            failed += 1
            table.add_row(f"{kind}: {path}", "-", f"[red]unreadable: {e}[/red]")
            continue

        if is_legacy_format(raw):
            skipped += 1
            table.add_row(f"{kind}: {path}", "-", "[yellow]legacy format, run migrate-tokens[/yellow]")
            continue

        try:
            blob = blob_from_json(raw)
            if not config.has_secret(blob.key_version):
                skipped += 1
                table.add_row(
                    f"{kind}: {path}",
                    str(blob.key_version),
                    f"[yellow]skipped, {encryption_key_env_name(blob.key_version)} not set[/yellow]",
                )
                continue
            store.decrypt_blob(blob)
        except DecryptionError as e:
            failed += 1
            table.add_row(f"{kind}: {path}", "-", f"[red]FAILED: {e}[/red]")
            continue
        verified += 1
        table.add_row(f"{kind}: {path}", str(blob.key_version), "[green]ok[/green]")

    container.audit_log.record(AuditEvent.KEYS_VERIFIED, {"verified": verified, "failed": failed, "skipped": skipped})
    console.print(table)
    if failed:
        raise _fail(f"{failed} file(s) could not be decrypted")


@app.command("key-status")
def key_status() -> None:
    """Show the current key version, its age and the backup count."""
    container = _container()
    try:
        key_version = container.store.current_key_version()
    except DecryptionError as e:
        raise _fail(f"Cannot read the current token file: {e}") from e
    if key_version is None:
        raise _fail(f"No stored tokens at {container.store.token_path}.")

    age = key_version.age(utcnow())
    next_version = key_version.version + 1

    table = Table(show_header=False)
    table.add_row("Token file", container.store.token_path)
    table.add_row("Key version", str(key_version.version))
    table.add_row("Created", key_version.created_at.isoformat())
    table.add_row("Age", f"{age.days} days")
    table.add_row("KDF iterations", str(key_version.iterations))
    table.add_row("Backups", str(len(container.backups.list_backups())))
    table.add_row(
        "Next key",
        f"{encryption_key_env_name(next_version)} "
        + ("[green]set[/green]" if container.config.has_secret(next_version) else "[dim]not set[/dim]"),
    )
    console.print(table)


@app.command("list-backups")
def list_backups() -> None:
    """List token backups, newest first."""
    container = _container()
    backups = container.backups.list_backups()
    if not backups:
        console.print(f"No backups in {container.backups.backup_dir}")
        return

    table = Table(title=f"Backups in {container.backups.backup_dir}")
    table.add_column("Created (UTC)")
    table.add_column("Key version", justify="right")
    table.add_column("File")
    for backup in backups:
        version = "-" if backup.source_key_version is None else str(backup.source_key_version)
        table.add_row(backup.timestamp.isoformat(), version, backup.path)
    console.print(table)


@app.command("migrate-tokens")
def migrate_tokens() -> None:
    """Convert a legacy token file to the versioned encrypted format."""
    container = _container()
    try:
        result = container.migrator.migrate()
    except WorkspaceMCPError as e:
        raise _fail(str(e)) from e
    console.print(
        f"[green]✓[/green] Migrated tokens to key version {result.key_version}. "
        f"Backup: [bold]{result.backup_path}[/bold]"
    )


@app.command("revoke-all-tokens")
def revoke_all_tokens(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete stored tokens. A new sign-in is required afterwards."""
    container = _container()
    if not yes:
        typer.confirm(f"Delete tokens at {container.store.token_path}?", abort=True)

    try:
        existed = container.store.delete(event=AuditEvent.TOKEN_REVOKED, metadata={"source": "cli"})
    except OSError as e:
        raise _fail(f"Failed to delete tokens: {e}") from e

    if existed:
        console.print("[green]✓[/green] Stored tokens deleted. Run 'gws-credentials auth' to sign in again.")
    else:
        console.print("No stored tokens to delete.")


if __name__ == "__main__":
    app()
