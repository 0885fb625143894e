"""Runs a build: pre-build steps, per-platform toolchain builds, artifact organization.

The run order is fixed. Failure policy:
  - a required step failure aborts (global) or fails the platform (platform steps)
  - an optional step failure is a warning
  - a failed platform aborts the run unless continue_on_error is set
  - an artifact that cannot be organized is dropped with a warning
"""
import shlex
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .artifact_manager import ArtifactManager
from .config import BuildConfig, BuildStep, BuildType
from .errors import (
    BuildCancelled, BuildError, ConfigError, DiscoveryError, OrganizeError,
    PlatformUnavailable, ProjectError, StepFailure,
)
from .executor import CommandExecutor
from .logger_setup import close_build_logger, get_build_logger, logger, set_log_level
from .models import BuildArtifact, BuildOptions, BuildResult, Platform, PlatformBuildResult
from .platforms import BUILDERS, PlatformBuilder, get_builder
from .project import ProjectInfo, environment_file_path, is_platform_available

PLAN_SEPARATOR = "=" * 60


class BuildManager:
    def __init__(self, project_path, config: BuildConfig,
                 builders: Optional[Dict[Platform, PlatformBuilder]] = None,
                 display_name_resolver: Optional[Callable[[Path], Optional[str]]] = None):
        path = Path(project_path)
        if not path.is_dir():
            raise ProjectError(f"project directory does not exist: {path}")

        self.project_path = path.resolve()
        self.config = config
        self.builders = builders if builders is not None else BUILDERS
        self.artifact_manager = ArtifactManager(self.project_path, config, display_name_resolver)
        self._cancel_event = threading.Event()
        self._organize_lock = threading.Lock()

    def cancel(self):
        """Stops the current run: the running process tree is killed and the run aborts."""
        logger.warning("Build cancellation requested")
        self._cancel_event.set()

    def _check_cancelled(self, label: str):
        if self._cancel_event.is_set():
            raise BuildCancelled(label)

    def _new_executor(self, build_logger, environment: Optional[Dict[str, str]] = None) -> CommandExecutor:
        executor = CommandExecutor(
            self.project_path,
            logger=build_logger,
            flutter_command=self.config.execution.flutter_command,
            cancel_event=self._cancel_event,
        )
        if environment:
            executor.set_environment(environment)
        return executor

    def resolve_environment_file(self, options: BuildOptions) -> Optional[Path]:
        if not options.environment:
            return None
        path = environment_file_path(self.project_path, options.environment)
        if not path.is_file():
            raise ConfigError(f"environment file not found: {path}", "environment")
        return path

    def execute_build(self, platforms: Iterable[Platform], options: Optional[BuildOptions] = None) -> BuildResult:
        options = options or BuildOptions()
        platforms = list(dict.fromkeys(platforms))
        started_at = datetime.now()
        env_file = self.resolve_environment_file(options)

        if options.dry_run:
            self.show_build_plan(platforms, options)
            return BuildResult(build_time=started_at, dry_run=True)

        set_log_level(self.config.execution.log_level)
        log_dir = self.artifact_manager.get_logs_dir() if self.config.execution.save_logs else None
        build_logger, log_handler, log_path = get_build_logger(log_dir, started_at)

        result = BuildResult(build_time=started_at, log_file=str(log_path) if log_path else None)
        continue_on_error = options.continue_on_error or self.config.execution.continue_on_error
        parallel = (options.parallel or self.config.execution.parallel_builds) and len(platforms) > 1
        start = time.monotonic()

        try:
            self._run(platforms, options, env_file, continue_on_error, parallel, build_logger, result)
            result.duration = time.monotonic() - start
            self._finish(result, build_logger)
        finally:
            close_build_logger(build_logger, log_handler)
            self._cancel_event.clear()
        return result

    def _run(self, platforms, options, env_file, continue_on_error, parallel, build_logger, result):
        try:
            build_logger.info(f"Starting build for: {', '.join(str(p) for p in platforms) or 'no platforms'}")
            if result.log_file:
                build_logger.info(f"Build log: {result.log_file}")

            if options.skip_pre_build:
                build_logger.info("Skipping pre-build steps")
            else:
                self._run_steps(self._new_executor(build_logger), self.config.pre_build.global_steps, build_logger)

            info = self.artifact_manager.project_info()
            if parallel:
                result.error = self._build_parallel(platforms, options, env_file, info, build_logger,
                                                    continue_on_error, result)
            else:
                result.error = self._build_sequential(platforms, options, env_file, info, build_logger,
                                                      continue_on_error, result)
        except BuildError as e:
            result.error = e

    def _finish(self, result: BuildResult, build_logger):
        for platform_result in result.platform_results.values():
            result.artifacts.extend(platform_result.artifacts)
        result.success = result.error is None and len(result.artifacts) > 0

        if result.error is not None:
            build_logger.error(f"Build aborted: {result.error}")
        elif not result.artifacts:
            build_logger.warning("Build finished but no artifacts were produced")

        if result.success and self.config.artifacts.cleanup.enabled:
            self._apply_retention(build_logger)

        self._log_summary(result, build_logger)

    def _run_steps(self, executor: CommandExecutor, steps: List[BuildStep], build_logger):
        for step in steps:
            self._check_cancelled(step.name)
            try:
                executor.execute_step(step)
            except BuildCancelled:
                raise
            except StepFailure as e:
                if step.required:
                    raise
                build_logger.warning(f"Optional step '{step.name}' failed, continuing: {e}")

    def _build_sequential(self, platforms, options, env_file, info, build_logger,
                          continue_on_error: bool, result: BuildResult) -> Optional[BuildError]:
        for platform in platforms:
            self._check_cancelled(f"{platform} build")
            platform_result = self._build_platform(platform, options, env_file, info, build_logger)
            result.platform_results[platform] = platform_result
            if platform_result.error is not None:
                if isinstance(platform_result.error, BuildCancelled) or not continue_on_error:
                    return platform_result.error
        return None

    def _build_parallel(self, platforms, options, env_file, info, build_logger,
                        continue_on_error: bool, result: BuildResult) -> Optional[BuildError]:
        max_workers = max(1, self.config.execution.max_parallel)
        build_logger.info(f"Building {len(platforms)} platforms in parallel (max {max_workers} at a time)")

        abort_error = None
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = {
                pool.submit(self._build_platform, platform, options, env_file, info, build_logger): platform
                for platform in platforms
            }
            for future in as_completed(futures):
                if future.cancelled():
                    continue
                error = future.result().error
                if error is None or abort_error is not None:
                    continue
                if isinstance(error, BuildCancelled) or not continue_on_error:
                    abort_error = error
                    for pending in futures:
                        pending.cancel()

        # Keep the caller's platform order in the result
        by_platform = {platform: future for future, platform in futures.items()}
        for platform in platforms:
            future = by_platform[platform]
            if future.cancelled():
                result.platform_results[platform] = PlatformBuildResult(
                    platform=platform,
                    error=BuildError(f"{platform} build was not started because the run was aborted"),
                )
            else:
                result.platform_results[platform] = future.result()
        return abort_error

    def _build_platform(self, platform: Platform, options: BuildOptions, env_file: Optional[Path],
                        info: ProjectInfo, build_logger) -> PlatformBuildResult:
        platform_result = PlatformBuildResult(platform=platform)
        platform_config = self.config.platform(platform)
        if not platform_config.enabled:
            build_logger.warning(f"Platform {platform} is disabled in the build configuration, skipping")
            platform_result.skipped = True
            return platform_result

        start = time.monotonic()
        build_logger.info(f"Building {platform}...")
        try:
            if not is_platform_available(self.project_path, platform):
                raise PlatformUnavailable(platform.value)
            builder = get_builder(platform, self.builders)

            executor = self._new_executor(build_logger, platform_config.environment)
            if not options.skip_pre_build:
                self._run_steps(executor, self.config.pre_build.steps_for(platform), build_logger)

            if not platform_config.build_types:
                build_logger.warning(f"No build types configured for {platform}")
            for build_type in platform_config.build_types:
                self._check_cancelled(f"{platform} {build_type.name}")
                platform_result.artifacts.extend(
                    self._build_type(builder, executor, build_type, env_file, info, build_logger)
                )
            platform_result.success = True
        except (StepFailure, DiscoveryError, PlatformUnavailable) as e:
            platform_result.error = e
            build_logger.error(f"{platform} build failed: {e}")
        platform_result.duration = time.monotonic() - start
        return platform_result

    def _build_type(self, builder: PlatformBuilder, executor: CommandExecutor, build_type: BuildType,
                    env_file: Optional[Path], info: ProjectInfo, build_logger) -> List[BuildArtifact]:
        args = builder.build_args(build_type, env_file)
        executor.run_flutter(args, f"{builder.platform} {build_type.name}")

        organized = []
        for artifact in builder.discover(self.project_path, build_type):
            artifact.build_type = build_type.type
            with self._organize_lock:
                try:
                    organized.append(self.artifact_manager.organize_artifact(artifact, info))
                except OrganizeError as e:
                    build_logger.warning(f"Failed to organize artifact {artifact.file_name}: {e}")
        return organized

    def _apply_retention(self, build_logger):
        try:
            removed = self.artifact_manager.apply_retention()
        except (OSError, BuildError) as e:
            build_logger.warning(f"Artifact cleanup failed: {e}")
            return
        if removed:
            build_logger.info(f"Cleanup removed {removed} old artifacts")

    def _log_summary(self, result: BuildResult, build_logger):
        build_logger.info(PLAN_SEPARATOR)
        build_logger.info(f"Build {'succeeded' if result.success else 'failed'} in {result.duration:.1f}s")
        for platform, platform_result in result.platform_results.items():
            if platform_result.skipped:
                state = "skipped"
            elif platform_result.success:
                state = f"ok, {len(platform_result.artifacts)} artifacts"
            else:
                state = f"failed: {platform_result.error}"
            build_logger.info(f"  {platform}: {state}")
        for artifact in result.artifacts:
            build_logger.info(f"  -> {artifact.file_path} ({artifact.size} bytes)")

    def toolchain_command(self, platform: Platform, build_type: BuildType, env_file: Optional[Path] = None) -> str:
        builder = get_builder(platform, self.builders)
        command = shlex.split(self.config.execution.flutter_command) + builder.build_args(build_type, env_file)
        return shlex.join(command)

    def render_build_plan(self, platforms: Iterable[Platform], options: Optional[BuildOptions] = None) -> str:
        """Describes what execute_build would do. Spawns nothing, writes nothing."""
        options = options or BuildOptions()
        env_file = environment_file_path(self.project_path, options.environment) if options.environment else None
        lines = ["", PLAN_SEPARATOR, "Build Plan (Dry Run)", PLAN_SEPARATOR]

        lines.append("")
        lines.append("Pre-build Steps:")
        if options.skip_pre_build:
            lines.append("  (skipped)")
        else:
            lines.extend(_describe_steps(self.config.pre_build.global_steps, indent="  "))

        lines.append("")
        lines.append("Platform Builds:")
        for platform in dict.fromkeys(platforms):
            platform_config = self.config.platform(platform)
            if not platform_config.enabled:
                lines.append(f"  * {platform} (disabled, will be skipped)")
                continue
            available = is_platform_available(self.project_path, platform)
            lines.append(f"  * {platform}" + ("" if available else f" (not available: no '{platform}/' directory)"))
            if not options.skip_pre_build:
                lines.extend(_describe_steps(self.config.pre_build.steps_for(platform), indent="      "))
            if not platform_config.build_types:
                lines.append("      (no build types configured)")
            for build_type in platform_config.build_types:
                try:
                    command = self.toolchain_command(platform, build_type, env_file)
                except DiscoveryError as e:
                    command = f"<{e}>"
                lines.append(f"      {build_type.name} ({build_type.build_mode}): {command}")

        lines.append("")
        lines.append("Artifact Organization:")
        lines.append(f"  * Output directory: {self.artifact_manager.get_output_dir()}")
        lines.append(f"  * Naming pattern: {self.config.artifacts.naming.pattern}")
        return "\n".join(lines)

    def show_build_plan(self, platforms: Iterable[Platform], options: Optional[BuildOptions] = None, out=None):
        out = out or sys.stdout
        out.write(self.render_build_plan(platforms, options) + "\n")


def _describe_steps(steps: List[BuildStep], indent: str) -> List[str]:
    lines = []
    for step in steps:
        flags = "required" if step.required else "optional"
        if step.condition:
            flags += f", if {step.condition}"
        lines.append(f"{indent}- {step.name} [{flags}]: {step.command}")
    return lines
