"""Main CLI entrypoint for the sandbox devtools."""

import json
import logging
import sys
from typing import Any, Dict

import click

from ..devtools import DevTools, create_devtools
from ..settings import DevToolsSettings


@click.group()
@click.option('--identifier', envvar='DEVTOOLS_BACKEND_IDENTIFIER', required=True,
              help='Sandbox backend identifier')
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.option('--verbose', is_flag=True, help='Enable debug logging')
@click.pass_context
def main(ctx, identifier, output_json, verbose):
    """Sandbox DevTools - local resource cache and live log streaming."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    ctx.ensure_object(dict)
    ctx.obj['json'] = output_json
    ctx.obj['identifier'] = identifier


def _json_output(data: Any) -> None:
    """Output data as JSON."""
    print(json.dumps(data, indent=None))


def _human_output(message: str) -> None:
    """Output human-readable message."""
    if not click.get_current_context().obj.get('json', False):
        click.echo(message)


def _fail(message: str, exit_code: int = 1) -> None:
    if click.get_current_context().obj.get('json', False):
        _json_output({'error': message})
    else:
        click.echo(f"❌ {message}", err=True)
    sys.exit(exit_code)


def _devtools(ctx) -> DevTools:
    return create_devtools(ctx.obj['identifier'], DevToolsSettings.from_env())


@main.command()
@click.option('--host', default='127.0.0.1', help='Interface to bind')
@click.option('--port', type=int, help='Port to listen on (defaults to DEVTOOLS_HTTP_PORT)')
@click.pass_context
def serve(ctx, host, port):
    """Run the dashboard API and event WebSocket."""
    import uvicorn

    from ..api import create_app

    devtools = _devtools(ctx)
    devtools.deployment.refresh_status()
    port = port or devtools.settings.http_port
    _human_output(f"🚀 Serving sandbox {devtools.backend_identifier} on http://{host}:{port}")
    _human_output(f"📡 Events available at ws://{host}:{port}/ws")
    uvicorn.run(create_app(devtools), host=host, port=port)


@main.command()
@click.option('--saved', is_flag=True, help='Only show the cached snapshot')
@click.pass_context
def resources(ctx, saved):
    """List the deployed backend resources."""
    devtools = _devtools(ctx)
    try:
        if saved:
            snapshot = devtools.storage.load_resources()
            if snapshot is None:
                _fail("No saved resources found", exit_code=2)
        else:
            devtools.deployment.refresh_status()
            snapshot = devtools.resources.get_deployed_backend_resources()
        snapshot = devtools.resources.apply_friendly_name_overrides(snapshot)
    except Exception as e:
        _fail(f"Resource lookup failed: {str(e)}")

    if ctx.obj['json']:
        _json_output(snapshot.to_dict())
        return

    _print_snapshot_human(snapshot.to_dict())


@main.command()
@click.argument('resource_id')
@click.pass_context
def logs(ctx, resource_id):
    """Show the cached log lines for a resource."""
    devtools = _devtools(ctx)
    entries = devtools.streaming.replay(resource_id)

    if ctx.obj['json']:
        _json_output([entry.to_dict() for entry in entries])
        return

    if not entries:
        _human_output(f"No saved logs for {resource_id}")
        return
    for entry in entries:
        click.echo(f"{entry.timestamp}  {entry.message}")


@main.command()
@click.pass_context
def status(ctx):
    """Show the live sandbox status."""
    devtools = _devtools(ctx)
    current = devtools.deployment.refresh_status()

    if ctx.obj['json']:
        _json_output({'status': current.value, 'identifier': devtools.backend_identifier})
        return

    _human_output(f"📦 {devtools.backend_identifier}: {current.value}")


@main.command()
@click.option('--refresh', is_flag=True, help='Record new CloudFormation stack events first')
@click.pass_context
def progress(ctx, refresh):
    """Show the saved deployment progress events."""
    devtools = _devtools(ctx)
    if refresh:
        devtools.progress.fetch_stack_events()
    events = devtools.progress.saved_progress()

    if ctx.obj['json']:
        _json_output([event.to_dict() for event in events])
        return

    if not events:
        _human_output("No deployment progress recorded")
        return
    for event in events:
        click.echo(f"{event.timestamp}  {event.message}")


@main.command()
@click.option('--yes', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def clear(ctx, yes):
    """Delete every cached file for the sandbox."""
    identifier = ctx.obj['identifier']
    if not yes and not click.confirm(f"Delete all cached data for {identifier}?"):
        _human_output("❌ Clear cancelled")
        return

    _devtools(ctx).storage.clear_all()
    if ctx.obj['json']:
        _json_output({'status': 'cleared', 'identifier': identifier})
    else:
        _human_output(f"🗑️  Cleared cached data for {identifier}")


def _print_snapshot_human(snapshot: Dict[str, Any]) -> None:
    """Print a resource snapshot in human-readable format."""
    click.echo(f"📦 {snapshot['name']} ({snapshot['status']})")
    if snapshot.get('region'):
        click.echo(f"🌍 Region: {snapshot['region']}")
    if snapshot.get('message'):
        click.echo(f"ℹ️  {snapshot['message']}")

    for resource in snapshot.get('resources', []):
        click.echo(
            f"  {resource['friendlyName']:<40} {resource['resourceType']:<32} {resource['resourceStatus']}"
        )


if __name__ == '__main__':
    main()
