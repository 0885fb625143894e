import click
import json
from pathlib import Path

from fdawg_engine.artifact_manager import ArtifactManager
from fdawg_engine.build_manager import BuildManager
from fdawg_engine.config import config_exists, default_build_config, default_config_for_project, load_config, resolve_config_path, save_config
from fdawg_engine.errors import BuildError
from fdawg_engine.logger_setup import logger # Global logger
from fdawg_engine.models import ALL_PLATFORMS, ArtifactFilters, BuildOptions, Platform
from fdawg_engine.project import validate_project


def parse_platforms(values) -> list:
    """Flattens '-p android,ios -p web' into platforms; 'all' means every platform."""
    platforms = []
    for value in values:
        for name in value.split(","):
            name = name.strip()
            if not name:
                continue
            if name.lower() == "all":
                platforms.extend(ALL_PLATFORMS)
                continue
            try:
                platforms.append(Platform.parse(name))
            except ValueError as e:
                raise click.BadParameter(str(e), param_hint="'-p' / '--platforms'")
    return list(dict.fromkeys(platforms))


def _load_project_config(project: Path, config_path):
    validate_project(project)
    if not config_exists(project, config_path):
        raise click.ClickException(
            f"No build configuration at {resolve_config_path(project, config_path)}. Run 'fdawg-build setup' first."
        )
    return load_config(project, config_path)


@click.group()
@click.option("--project", default=".", type=click.Path(file_okay=False, path_type=Path),
              help="Path to the Flutter project (default: current directory).")
@click.pass_context
def cli(ctx, project: Path):
    """fdawg-build: cross-platform Flutter build orchestration."""
    ctx.obj = {"project": project.resolve()}


@cli.command("run")
@click.option("--platforms", "-p", multiple=True, help="Platforms to build (repeatable, comma separated, or 'all').")
@click.option("--config", "-c", "config_path", default=None, help="Build config file (default: .fdawg/build.yaml).")
@click.option("--skip-pre-build", is_flag=True, help="Skip pre-build steps.")
@click.option("--continue-on-error", is_flag=True, help="Keep building other platforms after a failure.")
@click.option("--dry-run", is_flag=True, help="Show what would be executed without running anything.")
@click.option("--parallel", is_flag=True, help="Build platforms in parallel.")
@click.option("--env", "-e", "environment", default=None, help="Environment file name from .environment/ (without .json).")
@click.pass_context
def run_build(ctx, platforms, config_path, skip_pre_build, continue_on_error, dry_run, parallel, environment):
    """Builds the app for the selected platforms."""
    project = ctx.obj["project"]
    try:
        config = _load_project_config(project, config_path)
        selected = parse_platforms(platforms) or config.enabled_platforms()
        if not selected:
            raise click.ClickException("No platforms selected and none are enabled in the build configuration.")

        options = BuildOptions(
            skip_pre_build=skip_pre_build,
            continue_on_error=continue_on_error,
            dry_run=dry_run,
            parallel=parallel,
            environment=environment,
        )
        manager = BuildManager(project, config)
        if dry_run:
            click.echo(manager.render_build_plan(selected, options))
            return

        click.echo(f"Building {', '.join(str(p) for p in selected)}...")
        result = manager.execute_build(selected, options)
    except BuildError as e:
        raise click.ClickException(str(e))

    click.echo("")
    click.echo(f"Build {'succeeded' if result.success else 'FAILED'} in {result.duration:.1f}s")
    for platform, platform_result in result.platform_results.items():
        if platform_result.skipped:
            click.echo(f"  {platform}: skipped (disabled)")
        elif platform_result.success:
            click.echo(f"  {platform}: {len(platform_result.artifacts)} artifact(s)")
        else:
            click.echo(f"  {platform}: failed - {platform_result.error}")
    for artifact in result.artifacts:
        click.echo(f"  -> {artifact.file_path}")
    if result.error:
        click.echo(f"Error: {result.error}")
    if result.log_file:
        click.echo(f"Log: {result.log_file}")
    if not result.success:
        ctx.exit(1)


@cli.command("setup")
@click.option("--default", "use_default", is_flag=True, help="Write the plain default configuration with every platform enabled.")
@click.option("--force", is_flag=True, help="Overwrite an existing configuration.")
@click.option("--config", "-c", "config_path", default=None, help="Where to write the config (default: .fdawg/build.yaml).")
@click.pass_context
def setup(ctx, use_default, force, config_path):
    """Writes a build configuration for the project."""
    project = ctx.obj["project"]
    try:
        validate_project(project)
        if config_exists(project, config_path) and not force:
            raise click.ClickException(
                f"Configuration already exists at {resolve_config_path(project, config_path)} (use --force to overwrite)."
            )
        config = default_build_config() if use_default else default_config_for_project(project)
        path = save_config(project, config_path, config)
    except BuildError as e:
        raise click.ClickException(str(e))

    click.echo(f"Build configuration written to {path}")
    enabled = config.enabled_platforms()
    click.echo(f"Enabled platforms: {', '.join(str(p) for p in enabled) if enabled else 'none'}")


@cli.command("status")
@click.option("--config", "-c", "config_path", default=None, help="Build config file.")
@click.option("--json", "as_json", is_flag=True, help="Print the status as JSON.")
@click.pass_context
def status(ctx, config_path, as_json):
    """Shows a summary of the organized artifacts."""
    project = ctx.obj["project"]
    try:
        config = _load_project_config(project, config_path)
        build_status = ArtifactManager(project, config).get_build_status()
    except BuildError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(build_status.to_dict(), indent=2))
        return
    if build_status.total_artifacts == 0:
        click.echo("No build artifacts found.")
        return
    click.echo(f"Total artifacts: {build_status.total_artifacts}")
    click.echo(f"Last build: {build_status.last_build_time:%Y-%m-%d %H:%M:%S}")
    click.echo("Recent builds:")
    for recent in build_status.recent_builds:
        click.echo(f"  - {recent.date}: {recent.artifact_count} artifact(s)")


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{size} B"
        size /= 1024


@cli.command("list")
@click.option("--date", default=None, help="Only artifacts from this date folder (e.g. June-6).")
@click.option("--platform", default=None, help="Only artifacts for this platform.")
@click.option("--config", "-c", "config_path", default=None, help="Build config file.")
@click.pass_context
def list_artifacts(ctx, date, platform, config_path):
    """Lists organized build artifacts, newest first."""
    project = ctx.obj["project"]
    try:
        config = _load_project_config(project, config_path)
        artifacts = ArtifactManager(project, config).list_artifacts(ArtifactFilters(date=date, platform=platform))
    except BuildError as e:
        raise click.ClickException(str(e))

    if not artifacts:
        click.echo("No artifacts found.")
        return
    click.echo(f"{'Platform':<10} {'Type':<14} {'Arch':<12} {'Size':>10}  {'Built':<19}  File")
    click.echo("-" * 100)
    for a in artifacts:
        click.echo(
            f"{str(a.platform or '-'):<10} "
            f"{(a.build_type or '-'):<14} "
            f"{a.architecture:<12} "
            f"{_format_size(a.size):>10}  "
            f"{a.build_time:%Y-%m-%d %H:%M:%S}  "
            f"{a.file_path}"
        )


@cli.command("clean")
@click.option("--all", "clean_everything", is_flag=True, help="Remove the whole output directory.")
@click.option("--older-than", default=None, help="Remove artifacts older than this (e.g. 7d, 2w, 1m).")
@click.option("--config", "-c", "config_path", default=None, help="Build config file.")
@click.pass_context
def clean(ctx, clean_everything, older_than, config_path):
    """Removes build artifacts."""
    if clean_everything == bool(older_than):
        raise click.UsageError("Specify exactly one of --all or --older-than.")

    project = ctx.obj["project"]
    try:
        config = _load_project_config(project, config_path)
        manager = ArtifactManager(project, config)
        if clean_everything:
            manager.clean_all()
            click.echo(f"Removed all artifacts in {manager.get_output_dir()}")
        else:
            removed = manager.clean_older_than(older_than)
            click.echo(f"Removed {removed} artifact(s) older than {older_than}")
    except BuildError as e:
        raise click.ClickException(str(e))


@cli.command("serve")
@click.option("--host", default="127.0.0.1", help="Interface to bind.")
@click.option("--port", default=5000, type=int, help="Port to listen on.")
@click.option("--config", "-c", "config_path", default=None, help="Build config file.")
@click.pass_context
def serve(ctx, host, port, config_path):
    """Starts the JSON build API."""
    from web_ui.app import create_app

    project = ctx.obj["project"]
    try:
        validate_project(project)
    except BuildError as e:
        raise click.ClickException(str(e))

    app = create_app(project, config_path)
    logger.info(f"Serving build API for {project} on http://{host}:{port}")
    app.run(debug=False, use_reloader=False, host=host, port=port) # The reloader would start a second build runner


if __name__ == '__main__':
    cli()
