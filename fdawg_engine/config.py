import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from .conditions import Condition
from .errors import ConfigError
from .logger_setup import logger
from .models import Platform, ALL_PLATFORMS

DEFAULT_CONFIG_PATH = ".fdawg/build.yaml"
DEFAULT_STEP_TIMEOUT = 300  # seconds
DEFAULT_OUTPUT_DIR = "build/fdawg-outputs"
DEFAULT_DATE_FORMAT = "%B-%-d"  # June-6
DEFAULT_NAMING_PATTERN = "{app_name}_{version}_{arch}"
DEFAULT_FALLBACK_APP_NAME = "flutter_app"

APP_NAME_SOURCES = ["namer", "pubspec", "custom"]
VERSION_SOURCES = ["pubspec", "custom"]
SOURCE_ALIASES = {"derived": "namer", "manifest": "pubspec"}
BUILD_MODES = ["release", "debug", "profile"]
LOG_LEVELS = ["debug", "info", "warning", "error"]
NAMING_TOKENS = ["app_name", "version", "arch", "platform", "build_type"]

_PATTERN_FIELD_RE = re.compile(r"\{([^{}]*)\}")

VALID_BUILD_TYPES: Dict[Platform, List[str]] = {
    Platform.ANDROID: ["apk", "appbundle"],
    Platform.IOS: ["archive", "ipa"],
    Platform.WEB: ["web"],
    Platform.MACOS: ["macos"],
    Platform.LINUX: ["linux"],
    Platform.WINDOWS: ["windows"],
}


def _as_mapping(value: Any, field_name: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"must be a mapping, got {type(value).__name__}", field_name)
    return value


def _as_list(value: Any, field_name: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"must be a list, got {type(value).__name__}", field_name)
    return value


def _as_int(value: Any, field_name: str, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"invalid integer value '{value}'", field_name)


def _as_bool(value: Any, field_name: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"must be true or false, got '{value}'", field_name)
    return value


def _check_segment(value: str, field_name: str) -> str:
    if value in (".", "..") or "/" in value or "\\" in value:
        raise ConfigError(f"'{value}' cannot be used as a directory name", field_name)
    return value


def _check_pattern(pattern: str, field_name: str) -> str:
    unknown = [f for f in _PATTERN_FIELD_RE.findall(pattern) if f not in NAMING_TOKENS]
    if unknown:
        raise ConfigError(f"unknown placeholder '{{{unknown[0]}}}' (must be one of: {NAMING_TOKENS})", field_name)
    return pattern


def _as_env(value: Any, field_name: str) -> Dict[str, str]:
    return {str(k): "" if v is None else str(v) for k, v in _as_mapping(value, field_name).items()}


def _check_choice(value: str, choices: List[str], field_name: str) -> str:
    if value not in choices:
        raise ConfigError(f"invalid value '{value}' (must be one of: {choices})", field_name)
    return value


@dataclass
class BuildStep:
    name: str
    command: str
    required: bool = False
    timeout: int = DEFAULT_STEP_TIMEOUT  # seconds
    working_dir: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    condition: Optional[Condition] = None

    def to_dict(self) -> dict:
        data = {
            "name": self.name,
            "command": self.command,
            "required": self.required,
            "timeout": self.timeout,
        }
        if self.working_dir:
            data["working_dir"] = self.working_dir
        if self.env:
            data["env"] = dict(self.env)
        if self.condition:
            data["condition"] = str(self.condition)
        return data

    @classmethod
    def from_dict(cls, data: Any, field_name: str) -> "BuildStep":
        data = _as_mapping(data, field_name)
        if not data.get("name") or not data.get("command"):
            raise ConfigError("a build step needs both 'name' and 'command'", field_name)
        timeout = _as_int(data.get("timeout"), f"{field_name}.timeout", DEFAULT_STEP_TIMEOUT)
        return cls(
            name=str(data["name"]),
            command=str(data["command"]),
            required=_as_bool(data.get("required"), f"{field_name}.required", False),
            timeout=timeout if timeout > 0 else DEFAULT_STEP_TIMEOUT,
            working_dir=data.get("working_dir") or None,
            env=_as_env(data.get("env"), f"{field_name}.env"),
            condition=Condition.parse(data.get("condition"), f"{field_name}.condition"),
        )


@dataclass
class BuildType:
    name: str
    type: str
    build_mode: str = "release"
    custom_args: List[str] = field(default_factory=list)
    split_per_abi: bool = False  # android apk only
    export_method: Optional[str] = None  # ios ipa only: app-store, ad-hoc, development
    pwa: Optional[bool] = None  # web only

    def to_dict(self) -> dict:
        data = {
            "name": self.name,
            "type": self.type,
            "build_mode": self.build_mode,
        }
        if self.split_per_abi:
            data["split_per_abi"] = True
        if self.export_method:
            data["export_method"] = self.export_method
        if self.pwa is not None:
            data["pwa"] = self.pwa
        data["custom_args"] = list(self.custom_args)
        return data

    @classmethod
    def from_dict(cls, data: Any, platform: Platform, field_name: str) -> "BuildType":
        data = _as_mapping(data, field_name)
        build_type = str(data.get("type") or VALID_BUILD_TYPES[platform][0])
        _check_choice(build_type, VALID_BUILD_TYPES[platform], f"{field_name}.type")
        build_mode = str(data.get("build_mode") or "release")
        _check_choice(build_mode, BUILD_MODES, f"{field_name}.build_mode")
        pwa = data.get("pwa")
        return cls(
            name=_check_segment(str(data.get("name") or build_type), f"{field_name}.name"),
            type=build_type,
            build_mode=build_mode,
            custom_args=[str(a) for a in _as_list(data.get("custom_args"), f"{field_name}.custom_args")],
            split_per_abi=_as_bool(data.get("split_per_abi"), f"{field_name}.split_per_abi", False),
            export_method=data.get("export_method") or None,
            pwa=None if pwa is None else _as_bool(pwa, f"{field_name}.pwa", True),
        )


@dataclass
class PlatformConfig:
    enabled: bool = False
    build_types: List[BuildType] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "enabled": self.enabled,
            "build_types": [bt.to_dict() for bt in self.build_types],
        }
        if self.environment:
            data["environment"] = dict(self.environment)
        return data

    @classmethod
    def from_dict(cls, data: Any, platform: Platform, field_name: str) -> "PlatformConfig":
        data = _as_mapping(data, field_name)
        build_types = [
            BuildType.from_dict(bt, platform, f"{field_name}.build_types[{i}]")
            for i, bt in enumerate(_as_list(data.get("build_types"), f"{field_name}.build_types"))
        ]
        return cls(
            enabled=_as_bool(data.get("enabled"), f"{field_name}.enabled", False),
            build_types=build_types,
            environment=_as_env(data.get("environment"), f"{field_name}.environment"),
        )


@dataclass
class PreBuildConfig:
    global_steps: List[BuildStep] = field(default_factory=list)
    platform_steps: Dict[Platform, List[BuildStep]] = field(default_factory=dict)

    def steps_for(self, platform: Platform) -> List[BuildStep]:
        return self.platform_steps.get(platform, [])

    def to_dict(self) -> dict:
        data = {"global": [s.to_dict() for s in self.global_steps]}
        for platform in ALL_PLATFORMS:
            steps = self.platform_steps.get(platform)
            if steps:
                data[platform.value] = [s.to_dict() for s in steps]
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "PreBuildConfig":
        data = _as_mapping(data, "pre_build")
        for key in data:
            if key != "global" and key not in [p.value for p in ALL_PLATFORMS]:
                raise ConfigError(f"unknown pre-build list '{key}'", "pre_build")

        def parse_steps(key: str) -> List[BuildStep]:
            return [
                BuildStep.from_dict(s, f"pre_build.{key}[{i}]")
                for i, s in enumerate(_as_list(data.get(key), f"pre_build.{key}"))
            ]

        platform_steps = {}
        for platform in ALL_PLATFORMS:
            steps = parse_steps(platform.value)
            if steps:
                platform_steps[platform] = steps
        return cls(global_steps=parse_steps("global"), platform_steps=platform_steps)


@dataclass
class MetadataConfig:
    app_name_source: str = "namer"
    custom_app_name: str = ""
    version_source: str = "pubspec"
    custom_version: str = ""

    def to_dict(self) -> dict:
        return {
            "app_name_source": self.app_name_source,
            "custom_app_name": self.custom_app_name,
            "version_source": self.version_source,
            "custom_version": self.custom_version,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "MetadataConfig":
        data = _as_mapping(data, "metadata")
        app_name_source = str(data.get("app_name_source") or "namer")
        app_name_source = SOURCE_ALIASES.get(app_name_source, app_name_source)
        version_source = str(data.get("version_source") or "pubspec")
        version_source = SOURCE_ALIASES.get(version_source, version_source)
        return cls(
            app_name_source=_check_choice(app_name_source, APP_NAME_SOURCES, "metadata.app_name_source"),
            custom_app_name=str(data.get("custom_app_name") or ""),
            version_source=_check_choice(version_source, VERSION_SOURCES, "metadata.version_source"),
            custom_version=str(data.get("custom_version") or ""),
        )


@dataclass
class OrganizationConfig:
    by_date: bool = True
    date_format: str = DEFAULT_DATE_FORMAT
    by_platform: bool = True
    by_build_type: bool = True

    def to_dict(self) -> dict:
        return {
            "by_date": self.by_date,
            "date_format": self.date_format,
            "by_platform": self.by_platform,
            "by_build_type": self.by_build_type,
        }


@dataclass
class NamingConfig:
    pattern: str = DEFAULT_NAMING_PATTERN
    fallback_app_name: str = DEFAULT_FALLBACK_APP_NAME

    def to_dict(self) -> dict:
        return {"pattern": self.pattern, "fallback_app_name": self.fallback_app_name}


@dataclass
class CleanupConfig:
    enabled: bool = False
    keep_last_builds: int = 10
    max_age_days: int = 30

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "keep_last_builds": self.keep_last_builds,
            "max_age_days": self.max_age_days,
        }


@dataclass
class ArtifactsConfig:
    base_output_dir: str = DEFAULT_OUTPUT_DIR
    organization: OrganizationConfig = field(default_factory=OrganizationConfig)
    naming: NamingConfig = field(default_factory=NamingConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)

    def to_dict(self) -> dict:
        return {
            "base_output_dir": self.base_output_dir,
            "organization": self.organization.to_dict(),
            "naming": self.naming.to_dict(),
            "cleanup": self.cleanup.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ArtifactsConfig":
        data = _as_mapping(data, "artifacts")
        org = _as_mapping(data.get("organization"), "artifacts.organization")
        naming = _as_mapping(data.get("naming"), "artifacts.naming")
        cleanup = _as_mapping(data.get("cleanup"), "artifacts.cleanup")
        return cls(
            base_output_dir=str(data.get("base_output_dir") or DEFAULT_OUTPUT_DIR),
            organization=OrganizationConfig(
                by_date=_as_bool(org.get("by_date"), "artifacts.organization.by_date", True),
                date_format=str(org.get("date_format") or DEFAULT_DATE_FORMAT),
                by_platform=_as_bool(org.get("by_platform"), "artifacts.organization.by_platform", True),
                by_build_type=_as_bool(org.get("by_build_type"), "artifacts.organization.by_build_type", True),
            ),
            naming=NamingConfig(
                pattern=_check_pattern(str(naming.get("pattern") or DEFAULT_NAMING_PATTERN), "artifacts.naming.pattern"),
                fallback_app_name=str(naming.get("fallback_app_name") or DEFAULT_FALLBACK_APP_NAME),
            ),
            cleanup=CleanupConfig(
                enabled=_as_bool(cleanup.get("enabled"), "artifacts.cleanup.enabled", False),
                keep_last_builds=_as_int(cleanup.get("keep_last_builds"), "artifacts.cleanup.keep_last_builds", 10),
                max_age_days=_as_int(cleanup.get("max_age_days"), "artifacts.cleanup.max_age_days", 30),
            ),
        )


@dataclass
class ExecutionConfig:
    parallel_builds: bool = False
    max_parallel: int = 2
    continue_on_error: bool = False
    save_logs: bool = True
    log_level: str = "info"
    flutter_command: str = "flutter"

    def to_dict(self) -> dict:
        return {
            "parallel_builds": self.parallel_builds,
            "max_parallel": self.max_parallel,
            "continue_on_error": self.continue_on_error,
            "save_logs": self.save_logs,
            "log_level": self.log_level,
            "flutter_command": self.flutter_command,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ExecutionConfig":
        data = _as_mapping(data, "execution")
        max_parallel = _as_int(data.get("max_parallel"), "execution.max_parallel", 2)
        log_level = str(data.get("log_level") or "info").lower()
        return cls(
            parallel_builds=_as_bool(data.get("parallel_builds"), "execution.parallel_builds", False),
            max_parallel=max_parallel if max_parallel > 0 else 2,
            continue_on_error=_as_bool(data.get("continue_on_error"), "execution.continue_on_error", False),
            save_logs=_as_bool(data.get("save_logs"), "execution.save_logs", True),
            log_level=_check_choice(log_level, LOG_LEVELS, "execution.log_level"),
            flutter_command=str(data.get("flutter_command") or "flutter"),
        )


@dataclass
class BuildConfig:
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    pre_build: PreBuildConfig = field(default_factory=PreBuildConfig)
    platforms: Dict[Platform, PlatformConfig] = field(default_factory=dict)
    artifacts: ArtifactsConfig = field(default_factory=ArtifactsConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    def platform(self, platform: Platform) -> PlatformConfig:
        return self.platforms.get(platform) or PlatformConfig()

    def enabled_platforms(self) -> List[Platform]:
        return [p for p in ALL_PLATFORMS if self.platform(p).enabled]

    def to_dict(self) -> dict:
        return {
            "metadata": self.metadata.to_dict(),
            "pre_build": self.pre_build.to_dict(),
            "platforms": {p.value: self.platform(p).to_dict() for p in ALL_PLATFORMS},
            "artifacts": self.artifacts.to_dict(),
            "execution": self.execution.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "BuildConfig":
        """Builds a config from parsed YAML, filling defaults for anything unset."""
        data = _as_mapping(data, "config")
        platforms_data = _as_mapping(data.get("platforms"), "platforms")
        platforms = {}
        for key, value in platforms_data.items():
            try:
                platform = Platform.parse(str(key))
            except ValueError as e:
                raise ConfigError(str(e), "platforms")
            platforms[platform] = PlatformConfig.from_dict(value, platform, f"platforms.{platform.value}")

        return cls(
            metadata=MetadataConfig.from_dict(data.get("metadata")),
            pre_build=PreBuildConfig.from_dict(data.get("pre_build")),
            platforms=platforms,
            artifacts=ArtifactsConfig.from_dict(data.get("artifacts")),
            execution=ExecutionConfig.from_dict(data.get("execution")),
        )


def resolve_config_path(project_path, config_path: Optional[str] = None) -> Path:
    path = Path(config_path or DEFAULT_CONFIG_PATH)
    if not path.is_absolute():
        path = Path(project_path) / path
    return path


def config_exists(project_path, config_path: Optional[str] = None) -> bool:
    return resolve_config_path(project_path, config_path).is_file()


def load_config(project_path, config_path: Optional[str] = None) -> BuildConfig:
    path = resolve_config_path(project_path, config_path)
    if not path.is_file():
        raise ConfigError(f"config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file {path.name}: {e}")
    except OSError as e:
        raise ConfigError(f"failed to read config file {path}: {e}")

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"config file {path.name} must contain a mapping at the top level")

    try:
        config = BuildConfig.from_dict(raw)
    except ConfigError as e:
        error = ConfigError(f"invalid configuration in {path.name}: {e}")
        error.field = e.field
        raise error from e
    logger.debug(f"Loaded build configuration from {path}")
    return config


def save_config(project_path, config_path: Optional[str], config: BuildConfig) -> Path:
    path = resolve_config_path(project_path, config_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(config.to_dict(), f, sort_keys=False, default_flow_style=False, allow_unicode=True)
    except OSError as e:
        raise ConfigError(f"failed to write config file {path}: {e}")
    logger.info(f"Build configuration saved to {path}")
    return path


def _release_build_type(platform: Platform) -> BuildType:
    if platform == Platform.ANDROID:
        return BuildType(
            name="release_apk",
            type="apk",
            split_per_abi=True,
            custom_args=["--obfuscate", "--split-debug-info=build/debug-info"],
        )
    if platform == Platform.IOS:
        return BuildType(name="archive", type="archive", export_method="development", custom_args=["--no-codesign"])
    if platform == Platform.WEB:
        return BuildType(name="release", type="web", pwa=True)
    return BuildType(name="release", type=platform.value)


def default_build_config(available_platforms: Optional[Iterable[Platform]] = None) -> BuildConfig:
    """Conservative configuration that works without any user input.

    With available_platforms=None every platform is enabled; otherwise only the
    given ones are.
    """
    enabled = set(ALL_PLATFORMS if available_platforms is None else available_platforms)

    global_steps = [
        BuildStep(name="Install dependencies", command="flutter pub get", required=True, timeout=300),
        BuildStep(
            name="Generate code",
            command="dart run build_runner build --delete-conflicting-outputs",
            required=False,
            timeout=600,
            condition=Condition.parse("file_exists:build.yaml"),
        ),
    ]
    platform_steps = {}
    if Platform.IOS in enabled:
        platform_steps[Platform.IOS] = [
            BuildStep(
                name="Pod install",
                command="pod install",
                working_dir="ios",
                required=True,
                timeout=600,
                condition=Condition.parse("platform_available:ios"),
            )
        ]

    return BuildConfig(
        metadata=MetadataConfig(),
        pre_build=PreBuildConfig(global_steps=global_steps, platform_steps=platform_steps),
        platforms={
            p: PlatformConfig(enabled=p in enabled, build_types=[_release_build_type(p)])
            for p in ALL_PLATFORMS
        },
        artifacts=ArtifactsConfig(cleanup=CleanupConfig(enabled=True)),
        execution=ExecutionConfig(),
    )


# Optional generator steps added when the project carries the matching config file
_GENERATOR_STEPS = [
    ("flutter_launcher_icons.yaml", "Generate launcher icons", "dart run flutter_launcher_icons:main"),
    ("flutter_native_splash.yaml", "Generate splash screens", "dart run flutter_native_splash:create"),
]


def default_config_for_project(project_path) -> BuildConfig:
    from .project import detect_available_platforms

    available = detect_available_platforms(project_path)
    config = default_build_config(available)

    existing = {step.command for step in config.pre_build.global_steps}
    for filename, name, command in _GENERATOR_STEPS:
        if (Path(project_path) / filename).is_file() and command not in existing:
            config.pre_build.global_steps.append(BuildStep(
                name=name,
                command=command,
                required=False,
                timeout=300,
                condition=Condition.parse(f"file_exists:{filename}"),
            ))
    logger.debug(f"Default configuration enables: {', '.join(p.value for p in available) or 'no platforms'}")
    return config
