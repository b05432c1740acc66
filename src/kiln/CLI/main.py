"""
Command Line Interface for kiln.
"""
import os
from functools import wraps

import click
from docker.errors import DockerException

from ..BUILDERS.dockerfile import Dockerfile
from ..config import Settings
from ..errors import KilnError
from ..logger import set_level
from ..MANAGERS.container_session import ContainerSession
from ..MODELS.run_context import RunContext
from ..MODELS.volume import Volume
from ..PARSERS.env_parser import EnvParser
from ..RUNNERS.step_runner import RunParams, RunSpec, StepRunner, SyncMode
from ..UTILS.docker_util import DockerUtil
from ..UTILS.temp_dir import TempWorkspace

SYNC_MODES = [mode.value for mode in SyncMode]


def _fail_on_errors(command):
    @wraps(command)
    def wrapper(*args, **kwargs):
        try:
            return command(*args, **kwargs)
        except (KilnError, DockerException) as e:
            raise click.ClickException(str(e)) from e
    return wrapper


def _util(obj) -> DockerUtil:
    if obj.get('util') is None:
        obj['util'] = DockerUtil(docker_host=obj['settings'].docker_host or None)
    return obj['util']


@click.group()
@click.option('--debug', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, debug):
    """
    kiln - runs build steps inside ephemeral Docker containers.
    """
    ctx.ensure_object(dict)
    settings = ctx.obj.get('settings') or Settings.from_env()
    ctx.obj['settings'] = settings
    ctx.obj['debug'] = debug
    ctx.obj.setdefault('workspace', TempWorkspace.from_env(base_dir=settings.temp_dir))
    set_level('DEBUG' if debug else settings.log_level)


@cli.command(context_settings={'ignore_unknown_options': True})
@click.argument('image')
@click.argument('command', nargs=-1, type=click.UNPROCESSED)
@click.option('--run-id', default='run', help='Identifier of the run')
@click.option('--volume', '-v', 'volumes', multiple=True, help='host:container[:mode]')
@click.option('--env', '-e', 'env', multiple=True, help='KEY=VALUE')
@click.option('--port', '-p', 'ports', multiple=True, help='[host_ip:]host_port:container_port[/proto]')
@click.option('--user', default='', help='Container user')
@click.option('--workdir', default='', help='Working directory in the container')
@click.option('--sync-mode', type=click.Choice(SYNC_MODES), default=SyncMode.BIND.value)
@click.option('--reuse', is_flag=True, help='Reuse a container with the same configuration')
@click.option('--no-cache', is_flag=True, help='Always rebuild the derived image')
@click.option('--cleanup-orphans', is_flag=True, help='Remove containers left by earlier runs first')
@click.option('--privileged', is_flag=True)
@click.option('--mount-docker-socket', is_flag=True)
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.pass_context
@_fail_on_errors
def run(ctx, image, command, run_id, volumes, env, ports, user, workdir, sync_mode, reuse, no_cache,
        cleanup_orphans, privileged, mount_docker_socket, detach):
    """Run COMMAND in a container created from IMAGE."""
    obj = ctx.obj
    util = _util(obj)
    session = ContainerSession(run_id, image, util=util, settings=obj['settings'], workspace=obj['workspace'],
                               docker_config=obj.get('docker_config'), registry=obj.get('registry'))
    params = RunParams(project_name=run_id, volumes=[Volume.parse(v) for v in volumes], work_dir=workdir)
    StepRunner(settings=obj['settings'], util=util, workspace=obj['workspace'],
               sync_mode=SyncMode(sync_mode)).configure_volumes(session, params)
    session.add_env(*env) \
        .add_ports(*ports) \
        .set_reuse(reuse) \
        .set_disable_cache(no_cache) \
        .set_cleanup_orphans(cleanup_orphans) \
        .set_privileged(privileged) \
        .set_mount_docker_socket(mount_docker_socket)
    commands = [' '.join(command)] if command else []
    if not commands:
        session.set_use_default_command()

    run_ctx = RunContext(
        user=user,
        work_dir=workdir,
        debug=obj['debug'],
        detached=detach,
        current_ci=obj['settings'].ci_name,
    )
    try:
        session.run(run_ctx, *commands)
    finally:
        if not detach:
            obj['workspace'].cleanup()
    if detach:
        click.echo(session.container_id)


@cli.command()
@click.option('--run-id', required=True, help='Identifier of the run')
@click.pass_context
@_fail_on_errors
def destroy(ctx, run_id):
    """Remove containers and networks of a run."""
    session = ContainerSession(run_id, '', util=_util(ctx.obj), settings=ctx.obj['settings'],
                               workspace=ctx.obj['workspace'], registry=ctx.obj.get('registry'))
    session.destroy()
    click.echo(f"Run {run_id} destroyed.")


@cli.command()
@click.argument('dockerfile', type=click.Path(exists=True, dir_okay=False))
@click.option('--tag', '-t', 'tags', multiple=True, required=True)
@click.option('--context', 'context_path', default='', type=click.Path(file_okay=False))
@click.option('--build-arg', 'build_args', multiple=True, help='KEY=VALUE')
@click.option('--no-cache', is_flag=True)
@click.option('--push', is_flag=True, help='Push every tag after the build')
@click.pass_context
@_fail_on_errors
def build(ctx, dockerfile, tags, context_path, build_args, no_cache, push):
    """Build (and optionally push) an image from DOCKERFILE."""
    record = Dockerfile(dockerfile, tags=list(tags), context_path=context_path,
                        args=EnvParser.to_map(build_args), util=_util(ctx.obj),
                        docker_config=ctx.obj.get('docker_config'))
    record.reuse_images_with_same_cfg = not no_cache
    record.disable_no_cache = not no_cache
    out = click.get_text_stream('stdout')
    image_id = record.build_and_wait(output=out if ctx.obj['debug'] else None)
    click.echo(f"Built {image_id}")
    if push:
        for tag, digest in sorted(record.push_and_wait(output=out if ctx.obj['debug'] else None).items()):
            click.echo(f"{tag} {digest.digest}")


@cli.command()
@click.argument('spec_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--run-id', required=True, help='Identifier of the run')
@click.option('--on-host', is_flag=True, help='Run the scripts on the host')
@click.option('--project-root', default=None, type=click.Path(file_okay=False),
              help='Project directory, the current one by default')
@click.option('--sync-mode', type=click.Choice(SYNC_MODES), default=SyncMode.BIND.value)
@click.option('--user', default='')
@click.option('--reuse', is_flag=True)
@click.option('--no-cache', is_flag=True)
@click.pass_context
@_fail_on_errors
def step(ctx, spec_file, run_id, on_host, project_root, sync_mode, user, reuse, no_cache):
    """Run the scripts of the step defined in SPEC_FILE."""
    obj = ctx.obj
    spec = RunSpec.from_yaml(spec_file)
    root = os.path.abspath(project_root or os.getcwd())
    params = RunParams.for_project(spec.project or os.path.basename(root), root, spec, RunContext().os_name())
    runner = StepRunner(
        settings=obj['settings'],
        util=obj.get('util'),
        workspace=obj['workspace'],
        docker_config=obj.get('docker_config'),
        sync_mode=SyncMode(sync_mode),
        user=user,
        reuse=reuse,
        no_cache=no_cache,
        verbose=obj['debug'],
    )
    if on_host:
        runner.run_on_host(params, spec)
    else:
        runner.run_in_container(run_id, params, spec)
    click.echo(runner.last_output, nl=False)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
