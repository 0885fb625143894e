from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from fdawg_engine.conditions import Condition, ConditionKind
from fdawg_engine.config import (
    DEFAULT_STEP_TIMEOUT,
    BuildConfig,
    config_exists,
    default_build_config,
    default_config_for_project,
    load_config,
    save_config,
)
from fdawg_engine.errors import ConfigError
from fdawg_engine.models import ALL_PLATFORMS, Platform


def write_config(project: Path, data: dict) -> None:
    path = project / ".fdawg" / "build.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))


def test_default_config_enables_only_given_platforms() -> None:
    config = default_build_config([Platform.ANDROID, Platform.WEB])

    assert config.enabled_platforms() == [Platform.ANDROID, Platform.WEB]
    assert len(config.platform(Platform.IOS).build_types) == 1
    assert Platform.IOS not in config.pre_build.platform_steps
    assert config.pre_build.global_steps[0].command == "flutter pub get"
    assert config.pre_build.global_steps[0].required is True
    assert str(config.pre_build.global_steps[1].condition) == "file_exists:build.yaml"


def test_default_config_without_platform_list_enables_everything() -> None:
    config = default_build_config()

    assert config.enabled_platforms() == ALL_PLATFORMS
    pod_install = config.pre_build.steps_for(Platform.IOS)[0]
    assert pod_install.working_dir == "ios"
    assert pod_install.condition == Condition(ConditionKind.PLATFORM_AVAILABLE, "ios")


def test_default_config_for_project_adds_generator_steps(flutter_project: Path) -> None:
    (flutter_project / "flutter_launcher_icons.yaml").write_text("flutter_launcher_icons: {}\n")

    config = default_config_for_project(flutter_project)

    assert config.enabled_platforms() == [Platform.ANDROID, Platform.WEB, Platform.LINUX]
    names = [step.name for step in config.pre_build.global_steps]
    assert "Generate launcher icons" in names
    assert "Generate splash screens" not in names
    assert len(names) == len(set(names))


def test_save_then_load_keeps_configuration(flutter_project: Path) -> None:
    config = default_build_config([Platform.ANDROID, Platform.IOS])
    config.execution.max_parallel = 4
    config.artifacts.naming.pattern = "{app_name}-{platform}-{arch}"

    path = save_config(flutter_project, None, config)
    loaded = load_config(flutter_project)

    assert path == flutter_project / ".fdawg" / "build.yaml"
    assert config_exists(flutter_project)
    assert loaded.to_dict() == config.to_dict()


def test_saved_yaml_keeps_section_order(flutter_project: Path) -> None:
    save_config(flutter_project, None, default_build_config())

    text = (flutter_project / ".fdawg" / "build.yaml").read_text()
    positions = [text.index(f"{key}:") for key in ("metadata", "pre_build", "platforms", "artifacts", "execution")]
    assert positions == sorted(positions)


def test_empty_file_gets_defaults(flutter_project: Path) -> None:
    path = flutter_project / ".fdawg" / "build.yaml"
    path.parent.mkdir()
    path.write_text("")

    config = load_config(flutter_project)

    assert config.artifacts.base_output_dir == "build/fdawg-outputs"
    assert config.artifacts.organization.date_format == "%B-%-d"
    assert config.artifacts.naming.pattern == "{app_name}_{version}_{arch}"
    assert config.execution.log_level == "info"
    assert config.enabled_platforms() == []


def test_missing_file_raises(flutter_project: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(flutter_project)


def test_yaml_syntax_error_names_file(flutter_project: Path) -> None:
    path = flutter_project / ".fdawg" / "build.yaml"
    path.parent.mkdir()
    path.write_text("platforms: [android\n")

    with pytest.raises(ConfigError, match="build.yaml"):
        load_config(flutter_project)


def test_top_level_list_is_rejected(flutter_project: Path) -> None:
    path = flutter_project / ".fdawg" / "build.yaml"
    path.parent.mkdir()
    path.write_text("- android\n")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(flutter_project)


def test_unknown_condition_kind_fails_at_load(flutter_project: Path) -> None:
    write_config(flutter_project, {
        "pre_build": {"global": [{"name": "x", "command": "true", "condition": "file_exist:pubspec.yaml"}]},
    })

    with pytest.raises(ConfigError) as excinfo:
        load_config(flutter_project)
    assert excinfo.value.field == "pre_build.global[0].condition"
    assert "file_exist" in str(excinfo.value)


def test_invalid_build_mode_names_field(flutter_project: Path) -> None:
    write_config(flutter_project, {
        "platforms": {"android": {"enabled": True, "build_types": [{"type": "apk", "build_mode": "fast"}]}},
    })

    with pytest.raises(ConfigError) as excinfo:
        load_config(flutter_project)
    assert excinfo.value.field == "platforms.android.build_types[0].build_mode"


def test_invalid_app_name_source(flutter_project: Path) -> None:
    write_config(flutter_project, {"metadata": {"app_name_source": "guess"}})

    with pytest.raises(ConfigError, match="app_name_source"):
        load_config(flutter_project)


def test_source_aliases_are_normalized() -> None:
    config = BuildConfig.from_dict({"metadata": {"app_name_source": "derived", "version_source": "manifest"}})

    assert config.metadata.app_name_source == "namer"
    assert config.metadata.version_source == "pubspec"


def test_step_timeout_defaults() -> None:
    config = BuildConfig.from_dict({
        "pre_build": {"global": [
            {"name": "a", "command": "true"},
            {"name": "b", "command": "true", "timeout": 0},
            {"name": "c", "command": "true", "timeout": 42},
        ]},
    })

    assert [s.timeout for s in config.pre_build.global_steps] == [DEFAULT_STEP_TIMEOUT, DEFAULT_STEP_TIMEOUT, 42]


def test_unknown_platform_key_is_rejected() -> None:
    with pytest.raises(ConfigError, match="invalid platform"):
        BuildConfig.from_dict({"platforms": {"fuchsia": {"enabled": True}}})


def test_build_type_not_valid_for_platform() -> None:
    with pytest.raises(ConfigError) as excinfo:
        BuildConfig.from_dict({"platforms": {"web": {"build_types": [{"type": "apk"}]}}})
    assert excinfo.value.field == "platforms.web.build_types[0].type"


def test_platform_specific_extras_are_omitted_when_unset() -> None:
    data = default_build_config().to_dict()

    linux_type = data["platforms"]["linux"]["build_types"][0]
    assert "split_per_abi" not in linux_type
    assert "pwa" not in linux_type
    assert data["platforms"]["web"]["build_types"][0]["pwa"] is True


@pytest.mark.parametrize("pattern", ["{app_name.upper}_{version}", "{app_name}_{flavor}", "{0}_{arch}"])
def test_naming_pattern_rejects_unknown_placeholders(pattern: str) -> None:
    with pytest.raises(ConfigError) as excinfo:
        BuildConfig.from_dict({"artifacts": {"naming": {"pattern": pattern}}})
    assert excinfo.value.field == "artifacts.naming.pattern"


def test_naming_pattern_accepts_every_token() -> None:
    pattern = "{app_name}-{version}-{arch}-{platform}-{build_type}"

    config = BuildConfig.from_dict({"artifacts": {"naming": {"pattern": pattern}}})

    assert config.artifacts.naming.pattern == pattern


@pytest.mark.parametrize("name", ["../../../escaped", "nested/name", "..", "win\\name"])
def test_build_type_name_cannot_be_a_path(name: str) -> None:
    with pytest.raises(ConfigError) as excinfo:
        BuildConfig.from_dict({"platforms": {"android": {"build_types": [{"name": name, "type": "apk"}]}}})
    assert excinfo.value.field == "platforms.android.build_types[0].name"


@pytest.mark.parametrize("data, field", [
    ({"platforms": {"android": {"enabled": "false"}}}, "platforms.android.enabled"),
    ({"platforms": {"android": {"build_types": [{"type": "apk", "split_per_abi": "no"}]}}},
     "platforms.android.build_types[0].split_per_abi"),
    ({"pre_build": {"global": [{"name": "x", "command": "true", "required": "false"}]}},
     "pre_build.global[0].required"),
    ({"execution": {"continue_on_error": 1}}, "execution.continue_on_error"),
])
def test_boolean_fields_reject_non_booleans(data: dict, field: str) -> None:
    with pytest.raises(ConfigError) as excinfo:
        BuildConfig.from_dict(data)
    assert excinfo.value.field == field


def test_yaml_booleans_load(flutter_project: Path) -> None:
    (flutter_project / ".fdawg").mkdir()
    (flutter_project / ".fdawg" / "build.yaml").write_text(
        "platforms:\n  android:\n    enabled: false\n  web:\n    enabled: yes\n"
    )

    assert load_config(flutter_project).enabled_platforms() == [Platform.WEB]
