from flask import Flask, request, abort, send_file, jsonify
from pathlib import Path
from typing import Optional
import threading

from fdawg_engine.artifact_manager import ArtifactManager
from fdawg_engine.build_manager import BuildManager
from fdawg_engine.config import (
    BuildConfig, config_exists, default_build_config, default_config_for_project,
    load_config, resolve_config_path, save_config,
)
from fdawg_engine.errors import BuildError, ConfigError, DurationError, ProjectError
from fdawg_engine.logger_setup import logger as global_logger
from fdawg_engine.models import ALL_PLATFORMS, ArtifactFilters, BuildOptions, BuildResult, Platform
from fdawg_engine.project import is_platform_available

PLATFORM_NAMES = {
    Platform.ANDROID: "Android",
    Platform.IOS: "iOS",
    Platform.WEB: "Web",
    Platform.MACOS: "macOS",
    Platform.LINUX: "Linux",
    Platform.WINDOWS: "Windows",
}


class BuildRunner:
    """Owns the single background build an app instance may run at a time."""

    def __init__(self):
        self.lock = threading.Lock()
        self.manager: Optional[BuildManager] = None
        self.thread: Optional[threading.Thread] = None
        self.last_result: Optional[BuildResult] = None
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self, manager: BuildManager, platforms, options: BuildOptions) -> bool:
        with self.lock:
            if self.running:
                return False
            self.manager = manager
            self.last_error = None
            self.thread = threading.Thread(target=self._run, args=(manager, platforms, options), daemon=True)
            self.thread.start()
            return True

    def _run(self, manager: BuildManager, platforms, options: BuildOptions):
        try:
            self.last_result = manager.execute_build(platforms, options)
        except BuildError as e:
            global_logger.error(f"Background build failed to start: {e}")
            self.last_error = str(e)
        except Exception as e:
            global_logger.error(f"Unexpected error in background build: {e}", exc_info=True)
            self.last_error = f"Unexpected error: {e}"

    def stop(self) -> bool:
        with self.lock:
            if not self.running or self.manager is None:
                return False
            self.manager.cancel()
            return True


def _error(message: str, status: int):
    return jsonify({"error": message}), status


def create_app(project_path, config_path: Optional[str] = None):
    project = Path(project_path).resolve()
    runner = BuildRunner()

    app = Flask(__name__)
    app.config["PROJECT_PATH"] = project
    app.config["BUILD_RUNNER"] = runner

    def current_config() -> BuildConfig:
        if not config_exists(project, config_path):
            abort(404, description=f"Build configuration not found at {resolve_config_path(project, config_path)}")
        return load_config(project, config_path)

    @app.errorhandler(ConfigError)
    def handle_config_error(e):
        return _error(str(e), 400)

    @app.errorhandler(DurationError)
    def handle_duration_error(e):
        return _error(str(e), 400)

    @app.errorhandler(ProjectError)
    def handle_project_error(e):
        return _error(str(e), 404)

    @app.errorhandler(BuildError)
    def handle_build_error(e):
        return _error(str(e), 400)

    @app.errorhandler(404)
    def handle_not_found(e):
        return _error(e.description, 404)

    @app.errorhandler(403)
    def handle_forbidden(e):
        return _error(e.description, 403)

    @app.route('/api/build/status')
    def build_status():
        response = {
            "config_exists": config_exists(project, config_path),
            "running": runner.running,
            "last_result": runner.last_result.to_dict() if runner.last_result else None,
            "last_error": runner.last_error,
        }
        if response["config_exists"]:
            try:
                config = load_config(project, config_path)
                response["config"] = config.to_dict()
                response["artifacts"] = ArtifactManager(project, config).get_build_status().to_dict()
            except ConfigError as e:
                response["error"] = f"Failed to load config: {e}"
        return jsonify(response)

    @app.route('/api/build/platforms')
    def build_platforms():
        config = load_config(project, config_path) if config_exists(project, config_path) else None
        platforms = [
            {
                "id": p.value,
                "name": PLATFORM_NAMES[p],
                "available": is_platform_available(project, p),
                "enabled": bool(config and config.platform(p).enabled),
            }
            for p in ALL_PLATFORMS
        ]
        return jsonify({"all": platforms, "available": [p for p in platforms if p["available"]]})

    @app.route('/api/build/artifacts')
    def build_artifacts():
        manager = ArtifactManager(project, current_config())
        filters = ArtifactFilters(date=request.args.get("date") or None, platform=request.args.get("platform") or None)
        output_dir = manager.get_output_dir()
        artifacts = []
        for artifact in manager.list_artifacts(filters):
            data = artifact.to_dict()
            data["relative_path"] = Path(artifact.file_path).relative_to(output_dir).as_posix()
            artifacts.append(data)
        return jsonify({"artifacts": artifacts})

    @app.route('/api/build/artifacts/download')
    def download_artifact():
        relative_path = request.args.get("path")
        if not relative_path:
            return _error("Path parameter required", 400)

        output_dir = ArtifactManager(project, current_config()).get_output_dir().resolve()
        full_path = (output_dir / relative_path).resolve()
        try:
            full_path.relative_to(output_dir)
        except ValueError:
            abort(403, description="Access to files outside the output directory is forbidden")
        if not full_path.is_file():
            abort(404, description="Artifact not found")
        return send_file(full_path, as_attachment=True)

    @app.route('/api/build/config')
    def get_config():
        return jsonify(current_config().to_dict())

    @app.route('/api/build/config/update', methods=['POST'])
    def update_config():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return _error("Invalid request, JSON object expected", 400)
        path = save_config(project, config_path, BuildConfig.from_dict(data))
        return jsonify({"status": "success", "path": str(path)})

    @app.route('/api/build/setup', methods=['POST'])
    def setup_config():
        data = request.get_json(silent=True) or {}
        if config_exists(project, config_path) and not data.get("force"):
            return _error("Build configuration already exists (pass force to overwrite)", 409)
        config = default_build_config() if data.get("default") else default_config_for_project(project)
        path = save_config(project, config_path, config)
        return jsonify({"status": "success", "path": str(path), "config": config.to_dict()})

    @app.route('/api/build/reset', methods=['POST'])
    def reset_config():
        path = resolve_config_path(project, config_path)
        if path.is_file():
            path.unlink()
            global_logger.info(f"Removed build configuration {path}")
        return jsonify({"status": "success"})

    @app.route('/api/build/run', methods=['POST'])
    def run_build():
        data = request.get_json(silent=True) or {}
        config = current_config()
        try:
            platforms = [Platform.parse(str(p)) for p in data.get("platforms") or []]
        except ValueError as e:
            return _error(str(e), 400)
        platforms = platforms or config.enabled_platforms()
        if not platforms:
            return _error("No platforms selected and none are enabled in the build configuration", 400)

        options = BuildOptions(
            skip_pre_build=bool(data.get("skip_pre_build")),
            continue_on_error=bool(data.get("continue_on_error")),
            dry_run=bool(data.get("dry_run")),
            parallel=bool(data.get("parallel")),
            environment=data.get("environment") or None,
        )
        manager = BuildManager(project, config)
        manager.resolve_environment_file(options)

        if options.dry_run:
            return jsonify({"status": "dry_run", "plan": manager.render_build_plan(platforms, options)})

        if not runner.start(manager, platforms, options):
            return _error("A build is already running", 409)
        global_logger.info(f"Build started from API for {', '.join(str(p) for p in platforms)}")
        return jsonify({"status": "started", "platforms": [p.value for p in platforms]}), 202

    @app.route('/api/build/stop', methods=['POST'])
    def stop_build():
        if runner.stop():
            return jsonify({"status": "stopping"})
        return jsonify({"status": "not_running"})

    @app.route('/api/build/clean', methods=['POST'])
    def clean_artifacts():
        data = request.get_json(silent=True) or {}
        if runner.running:
            return _error("Cannot clean while a build is running", 409)
        manager = ArtifactManager(project, current_config())
        if data.get("older_than"):
            removed = manager.clean_older_than(str(data["older_than"]))
            return jsonify({"status": "success", "removed": removed})
        if data.get("all"):
            manager.clean_all()
            return jsonify({"status": "success"})
        return _error("Specify 'all' or 'older_than'", 400)

    return app
