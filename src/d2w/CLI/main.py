"""
Command Line Interface for D2W.
"""
import asyncio
import click
from ..exceptions import D2WError
from ..log import configure_logging
from ..MODELS.container_spec import ContainerSpec, PortMapping, VolumeMount
from ..MODELS.runtime_settings import RuntimeSettings
from ..PARSERS.descriptor_parser import DescriptorParser
from ..RUNNERS.execution_session import ExecutionSession

@click.group()
@click.option('--log-level', default=None, help='Log level (overrides D2W_LOG_LEVEL)')
@click.option('--env-config', default=None, help='.env file with D2W_* settings')
@click.pass_context
def cli(ctx, log_level, env_config):
    """
    D2W - Docker to WASM container runtime.

    Runs container images whose payload is a WebAssembly program inside a
    wasmtime sandbox.
    """
    ctx.ensure_object(dict)
    settings = RuntimeSettings.from_env(env_file=env_config)
    if log_level:
        settings = settings.model_copy(update={'log_level': log_level})
    configure_logging(settings.log_level)
    ctx.obj['settings'] = settings

def _build_spec(descriptor, command, workdir, env, env_file, volume, publish, settings):
    image = DescriptorParser().parse(descriptor)
    return ContainerSpec.build(
        image,
        command=list(command) or None,
        workdir=workdir,
        env=list(env),
        env_files=list(env_file),
        volumes=[VolumeMount.parse(v) for v in volume],
        ports=[PortMapping.parse(p) for p in publish],
        default_path=settings.default_path,
    )

@cli.command()
@click.argument('descriptor', type=click.Path(exists=True, dir_okay=False))
@click.option('--command', '-c', multiple=True, help='Override the image command (repeat per argument)')
@click.option('--workdir', '-w', default=None, help='Working directory inside the container')
@click.option('--env', '-e', multiple=True, help='Set an environment variable (KEY=VALUE)')
@click.option('--env-file', multiple=True, help='Read environment variables from a file')
@click.option('--volume', '-v', multiple=True, help='Copy a host path in (HOST:CONTAINER[:ro])')
@click.option('--publish', '-p', multiple=True, help='Publish a port (HOST:CONTAINER[/PROTO])')
@click.pass_context
def run(ctx, descriptor, command, workdir, env, env_file, volume, publish):
    """Run a container from an image descriptor."""
    settings = ctx.obj['settings']
    try:
        spec = _build_spec(descriptor, command, workdir, env, env_file, volume, publish, settings)
    except (ValueError, D2WError) as e:
        raise click.ClickException(str(e))

    session = ExecutionSession(settings=settings)
    try:
        record = asyncio.run(session.run(spec))
    except KeyboardInterrupt:
        # asyncio.run has already interrupted the sandbox; this covers an
        # interrupt that arrived before the run started
        session.stop(spec.id)
        click.echo("\nContainer stopped.")
        raise SystemExit(130)
    except D2WError as e:
        click.echo(f"Error: {e}", err=True)
        record = session.registry.get(spec.id)

    click.echo(f"{'CONTAINER ID':14} {'IMAGE':25} {'STATUS':10}")
    click.echo("-" * 51)
    click.echo(f"{record.id[:12]:14} {record.image:25} {record.status.value:10}")
    if record.status.value == 'failed':
        ctx.exit(record.exit_code or 1)

@cli.command()
@click.argument('descriptor', type=click.Path(exists=True, dir_okay=False))
@click.option('--command', '-c', multiple=True, help='Override the image command')
@click.option('--workdir', '-w', default=None, help='Working directory inside the container')
@click.option('--env', '-e', multiple=True, help='Set an environment variable (KEY=VALUE)')
@click.option('--env-file', multiple=True, help='Read environment variables from a file')
@click.pass_context
def inspect(ctx, descriptor, command, workdir, env, env_file):
    """Show what a container would run, without running it."""
    settings = ctx.obj['settings']
    try:
        spec = _build_spec(descriptor, command, workdir, env, env_file, (), (), settings)
    except (ValueError, D2WError) as e:
        raise click.ClickException(str(e))

    click.echo(f"Image:   {spec.image_name}")
    click.echo(f"Argv:    {' '.join(spec.argv)}")
    click.echo(f"Workdir: {spec.workdir or '/'}")
    click.echo("Env:")
    for key, value in sorted(spec.env.items()):
        click.echo(f"  {key}={value}")

def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})

if __name__ == '__main__':
    main()
