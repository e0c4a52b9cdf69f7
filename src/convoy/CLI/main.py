"""
Command Line Interface for Convoy.
"""
import logging
import os
import time

import click

from ..DRIVERS.docker_driver import DockerDriver
from ..DRIVERS.process_driver import ProcessDriver
from ..errors import ConvoyError, ManifestError, OrchestrationCancelled, OrchestrationError
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MANAGERS.session_store import SessionStore
from ..PARSERS.manifest_parser import ManifestParser

DEFAULT_FILES = (
    'convoy.yml', 'convoy.yaml',
    'compose.yml', 'compose.yaml',
    'docker-compose.yml', 'docker-compose.yaml',
)

EXIT_FAILURE = 1
EXIT_INVALID = 2
EXIT_CANCELLED = 130


@click.group()
@click.option('--file', '-f', envvar='CONVOY_FILE', help='Manifest file path')
@click.option('--project-name', '-p', envvar='CONVOY_PROJECT_NAME', help='Project name')
@click.option('--runtime', type=click.Choice(['docker', 'process']), default='docker',
              envvar='CONVOY_RUNTIME', show_default=True, help='Container runtime to drive')
@click.option('--verbose', '-v', is_flag=True, help='Show debug output')
@click.pass_context
def cli(ctx, file, project_name, runtime, verbose):
    """
    Convoy - declarative multi-service orchestration.

    Starts the services of a compose-style manifest in dependency order and
    tears them down in reverse.
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO,
                        format='%(levelname)s %(name)s: %(message)s')
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['project_name'] = project_name
    ctx.obj['runtime'] = runtime


def _manifest_path(ctx) -> str:
    file = ctx.obj.get('file')
    if file:
        if not os.path.exists(file):
            click.echo(f"Error: {file} not found.", err=True)
            ctx.exit(EXIT_INVALID)
        return file
    for candidate in DEFAULT_FILES:
        if os.path.exists(candidate):
            return candidate
    click.echo(f"Error: no manifest found (looked for {', '.join(DEFAULT_FILES)}).", err=True)
    ctx.exit(EXIT_INVALID)


def _load(ctx, **options):
    """
    Parses the manifest and builds the orchestrator, driver, session store and session.
    Invalid manifests end the command before anything touches the runtime.
    """
    path = _manifest_path(ctx)
    try:
        manifest = ManifestParser(project_name=ctx.obj.get('project_name')).parse(path)
    except ManifestError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_INVALID)

    base_dir = os.path.dirname(os.path.abspath(path))
    if ctx.obj.get('runtime') == 'process':
        driver = ProcessDriver(manifest, base_dir=base_dir)
    else:
        driver = DockerDriver()

    store = SessionStore(base_dir)
    orchestrator = ServiceOrchestrator(manifest, driver, **options)
    return orchestrator, store, store.load_or_new(manifest.name)


def _report_failure(error: OrchestrationError):
    click.echo(f"Error: {error.primary}", err=True)
    for warning in error.warnings:
        click.echo(f"Warning: {warning}", err=True)


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.option('--timeout', '-t', type=float, default=None, help='Stop grace period used on shutdown')
@click.option('--readiness-timeout', type=float, default=30.0, show_default=True,
              help='Seconds a service has to report running')
@click.option('--workers', type=int, default=None, help='Services started in parallel within a stage')
@click.pass_context
def up(ctx, services, detach, timeout, readiness_timeout, workers):
    """Start services defined in the manifest."""
    orchestrator, store, session = _load(ctx, readiness_timeout=readiness_timeout, max_workers=workers)
    try:
        orchestrator.up(session, services=services or None)
    except ManifestError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_INVALID)
    except OrchestrationCancelled as e:
        store.save(session)
        _report_failure(e)
        ctx.exit(EXIT_CANCELLED)
    except OrchestrationError as e:
        store.save(session)
        _report_failure(e)
        ctx.exit(EXIT_FAILURE)
    store.save(session)
    click.echo("Services started.")

    if detach:
        return

    click.echo("Running... Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping services...")
    report = orchestrator.down(session, timeout=timeout)
    store.save(session)
    if not report.ok:
        ctx.exit(EXIT_FAILURE)


@cli.command()
@click.option('--timeout', '-t', type=float, default=None, help='Stop grace period in seconds')
@click.option('--volumes', is_flag=True, help='Also remove named volumes')
@click.pass_context
def down(ctx, timeout, volumes):
    """Stop and remove all services."""
    orchestrator, store, session = _load(ctx)
    report = orchestrator.down(session, timeout=timeout, remove_volumes=volumes)
    for warning in report.warnings:
        click.echo(f"Warning: {warning}", err=True)

    if session.handles():
        store.save(session)
        ctx.exit(EXIT_FAILURE)
    store.delete(session.project)
    click.echo("Services removed.")
    if not report.ok:
        ctx.exit(EXIT_FAILURE)


@cli.command()
@click.option('--timeout', '-t', type=float, default=None, help='Stop grace period in seconds')
@click.pass_context
def stop(ctx, timeout):
    """Stop running services without removing them."""
    orchestrator, store, session = _load(ctx)
    report = orchestrator.stop(session, timeout=timeout)
    store.save(session)
    for warning in report.warnings:
        click.echo(f"Warning: {warning}", err=True)
    if not report.ok:
        ctx.exit(EXIT_FAILURE)
    click.echo("Services stopped.")


@cli.command()
@click.pass_context
def start(ctx):
    """Start services previously stopped."""
    orchestrator, store, session = _load(ctx)
    try:
        orchestrator.start(session)
    except OrchestrationError as e:
        store.save(session)
        _report_failure(e)
        ctx.exit(EXIT_FAILURE)
    except ConvoyError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_FAILURE)
    store.save(session)
    click.echo("Services started.")


@cli.command()
@click.pass_context
def ps(ctx):
    """List service status"""
    orchestrator, _, session = _load(ctx)
    status = orchestrator.ps(session)
    click.echo(f"{'SERVICE':15} {'STATUS':10} {'CONTAINER'}")
    click.echo("-" * 40)
    for name, state in status.items():
        handle = session.handle(name)
        click.echo(f"{name:15} {state:10} {handle or ''}")


@cli.command()
@click.pass_context
def config(ctx):
    """Validate the manifest and show the start stages"""
    orchestrator, _, _ = _load(ctx)
    try:
        stages = orchestrator.resolver.resolve(orchestrator.manifest)
    except ManifestError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_INVALID)
    click.echo(f"Project: {orchestrator.manifest.name}")
    for index, stage in enumerate(stages, start=1):
        click.echo(f"Stage {index}: {', '.join(stage)}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
