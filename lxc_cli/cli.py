"""
Command line front end for the LXC console.

Talks to a running console server (``lxc-console-server``) over HTTP.
Mutating commands return as soon as the server accepted the request and
print the operation id; use ``ops`` or ``watch`` to follow progress.
"""

import json
import os
import shutil
import subprocess
import sys

import click

from lxc_common.models import DEFAULT_IMAGE, DEFAULT_LIMITS

from . import client

SHELL_NOT_FOUND = 127  # exit code of `lxc exec` when the command is missing


def get_server_url() -> str:
    """
    Get the console server URL from environment variable or use default.

    Environment variables:
    - LXC_CONSOLE_URL: Custom server URL
    """
    return os.environ.get("LXC_CONSOLE_URL", client.DEFAULT_SERVER_URL)


def fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def format_bytes(value: int | None) -> str:
    if value is None:
        return "-"
    size = float(value)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


def format_progress(operation: dict) -> str:
    if operation.get("progress") is None:
        return ""
    return f"{operation['progress']}%"


@click.group()
def cli():
    """LXC Console - manage LXD containers without waiting on them."""
    pass


# ============================================================================
# Read Commands
# ============================================================================


@cli.command("ls")
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
def list_command(json_mode: bool):
    """List containers."""
    try:
        containers = client.list_containers(get_server_url())
    except RuntimeError as e:
        fail(str(e))

    if json_mode:
        click.echo(json.dumps(containers, indent=2))
        return

    if not containers:
        click.echo("No containers found.")
        return

    click.echo(f"{'NAME':<24} {'STATUS':<10} {'TYPE':<16} {'IPV4':<16} {'MEMORY':<10} {'IMAGE'}")
    for container in containers:
        status = container["status"]
        if container.get("operation_id"):
            status = f"{status}*"
        ipv4 = container["ipv4"][0] if container.get("ipv4") else "-"
        click.echo(
            f"{container['name']:<24} {status:<10} {container['type']:<16} "
            f"{ipv4:<16} {format_bytes(container.get('memory_usage')):<10} "
            f"{container.get('image') or '-'}"
        )


@cli.command("ops")
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
def operations_command(json_mode: bool):
    """List recent operations, newest first."""
    try:
        operations = client.list_operations(get_server_url())
    except RuntimeError as e:
        fail(str(e))

    if json_mode:
        click.echo(json.dumps(operations, indent=2))
        return

    if not operations:
        click.echo("No operations.")
        return

    click.echo(f"{'ID':<36} {'STATE':<10} {'PROGRESS':<8} {'DESCRIPTION'}")
    for operation in operations:
        line = (
            f"{operation['id']:<36} {operation['state']:<10} "
            f"{format_progress(operation):<8} {operation['description']}"
        )
        if operation.get("error"):
            line += f" ({operation['error']})"
        click.echo(line)


@cli.command()
def status():
    """Show engine status and LXD connectivity."""
    try:
        result = client.get_status(get_server_url())
    except RuntimeError as e:
        fail(str(e))

    connectivity = result.get("connectivity_error") or "ok"
    click.echo(f"Engine running: {result['running']}")
    click.echo(f"LXD connectivity: {connectivity}")
    click.echo(f"Containers: {result['containers']}")
    click.echo(f"Active operations: {result['active_operations']}")


# ============================================================================
# Mutating Commands
# ============================================================================


def _submitted(operation_id: str) -> None:
    click.echo(f"✓ Operation submitted: {operation_id}")


@cli.command()
@click.argument("name")
def start(name: str):
    """Start a container."""
    try:
        _submitted(client.change_state(name, "start", get_server_url()))
    except RuntimeError as e:
        fail(str(e))


@cli.command()
@click.argument("name")
@click.option("--force", is_flag=True, help="Kill the container instead of a clean shutdown")
def stop(name: str, force: bool):
    """Stop a container."""
    try:
        _submitted(client.change_state(name, "stop", get_server_url(), force=force))
    except RuntimeError as e:
        fail(str(e))


@cli.command()
@click.argument("name")
def restart(name: str):
    """Restart a running container."""
    try:
        _submitted(client.change_state(name, "restart", get_server_url()))
    except RuntimeError as e:
        fail(str(e))


@cli.command()
@click.argument("name")
@click.option("--yes", is_flag=True, help="Skip confirmation prompt")
def delete(name: str, yes: bool):
    """Delete a stopped container."""
    if not yes:
        click.confirm(f"Delete container '{name}'?", abort=True)
    try:
        _submitted(client.delete_container(name, get_server_url()))
    except RuntimeError as e:
        fail(str(e))


@cli.command()
@click.argument("name")
@click.argument("new_name")
def clone(name: str, new_name: str):
    """Copy container NAME to NEW_NAME."""
    try:
        _submitted(client.clone_container(name, new_name, get_server_url()))
    except RuntimeError as e:
        fail(str(e))


@cli.command()
@click.argument("name")
@click.option("--image", default=DEFAULT_IMAGE, show_default=True, help="Image alias")
@click.option("--vm", is_flag=True, help="Create a virtual machine instead of a container")
@click.option("--no-start", is_flag=True, help="Do not start the instance after creation")
@click.option(
    "-c",
    "--config",
    "config_items",
    multiple=True,
    help="Config key=value (repeatable), e.g. -c limits.cpu=4",
)
def create(name: str, image: str, vm: bool, no_start: bool, config_items: tuple[str, ...]):
    """Create (and start) a container from an image."""
    spec = {
        "name": name,
        "image": image,
        "type": "virtual-machine" if vm else "container",
        "start": not no_start,
    }
    if config_items:
        config = dict(DEFAULT_LIMITS)
        for item in config_items:
            key, sep, value = item.partition("=")
            if not sep or not key:
                fail(f"Invalid config '{item}', expected key=value")
            config[key] = value
        spec["config"] = config

    try:
        _submitted(client.create_container(spec, get_server_url()))
    except RuntimeError as e:
        fail(str(e))


@cli.command("exec", context_settings={"ignore_unknown_options": True})
@click.argument("name")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
def exec_command(name: str, command: tuple[str, ...]):
    """Run COMMAND in container NAME (use -- before the command)."""
    try:
        _submitted(client.exec_command(name, list(command), get_server_url()))
    except RuntimeError as e:
        fail(str(e))


@cli.command()
@click.argument("operation_id")
def cancel(operation_id: str):
    """Cancel an operation."""
    try:
        operation = client.cancel_operation(operation_id, get_server_url())
    except RuntimeError as e:
        fail(str(e))
    click.echo(f"✓ Operation cancelled: {operation['description']}")


@cli.command()
def refresh():
    """Ask the server to re-read all containers from LXD."""
    try:
        client.request_refresh(get_server_url())
    except RuntimeError as e:
        fail(str(e))
    click.echo("✓ Refresh requested")


@cli.command()
def watch():
    """Print change notifications as they happen (Ctrl-C to stop)."""
    server_url = get_server_url()
    try:
        for event in client.watch_events(server_url):
            keys = ", ".join(event.get("keys") or [])
            if event["type"] == "connectivity":
                error = event.get("error")
                click.echo(f"[{event['timestamp']}] connectivity: {error or 'ok'}")
            else:
                click.echo(f"[{event['timestamp']}] {event['type']}: {keys}")
    except RuntimeError as e:
        fail(str(e))
    except KeyboardInterrupt:
        click.echo("Stopped watching.", err=True)


@cli.command()
@click.argument("name")
def shell(name: str):
    """Open an interactive shell in container NAME (needs the lxc client)."""
    if shutil.which("lxc") is None:
        fail("The 'lxc' command is not installed")

    returncode = subprocess.call(["lxc", "exec", name, "--", "/bin/bash"])
    if returncode == SHELL_NOT_FOUND:
        returncode = subprocess.call(["lxc", "exec", name, "--", "/bin/sh"])
    sys.exit(returncode)


def main():
    cli()


if __name__ == "__main__":
    main()
