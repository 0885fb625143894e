from __future__ import annotations

import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

import pytest

from fdawg_engine.config import BuildConfig, BuildStep, PreBuildConfig, default_build_config
from fdawg_engine.models import Platform

# Stands in for the flutter toolchain: records each call and fabricates the
# outputs real `flutter build` would leave behind.
FAKE_FLUTTER_SCRIPT = textwrap.dedent(
    """\
    #!/bin/sh
    echo "flutter $*" >> "${FAKE_FLUTTER_LOG:-/dev/null}"
    [ "$1" = "build" ] || exit 0
    type="$2"
    mode="${3#--}"
    split=0
    for arg in "$@"; do
        [ "$arg" = "--split-per-abi" ] && split=1
    done
    if [ -n "$FAKE_FLUTTER_SLEEP" ]; then
        sleep "$FAKE_FLUTTER_SLEEP"
    fi
    if [ "$type" = "$FAKE_FLUTTER_FAIL" ]; then
        echo "error: $type build failed" >&2
        exit 1
    fi
    case "$type" in
        apk)
            mkdir -p build/app/outputs/flutter-apk
            if [ "$split" = 1 ]; then
                for abi in arm64-v8a armeabi-v7a x86_64; do
                    echo apk > "build/app/outputs/flutter-apk/app-$abi-$mode.apk"
                done
            else
                echo apk > "build/app/outputs/flutter-apk/app-$mode.apk"
            fi
            ;;
        appbundle)
            mkdir -p "build/app/outputs/bundle/$mode"
            echo aab > "build/app/outputs/bundle/$mode/app-$mode.aab"
            ;;
        web)
            mkdir -p build/web/assets
            echo "<html></html>" > build/web/index.html
            echo "{}" > build/web/assets/manifest.json
            ;;
        linux)
            mkdir -p "build/linux/x64/$mode/bundle"
            echo bin > "build/linux/x64/$mode/bundle/my_app"
            ;;
    esac
    echo "Built $type"
    """
)


@dataclass
class FakeFlutter:
    command: str
    log_path: Path

    def calls(self) -> List[str]:
        if not self.log_path.exists():
            return []
        return self.log_path.read_text().splitlines()


def pytest_collection_modifyitems(config, items):
    if sys.platform != "win32":
        return
    skip = pytest.mark.skip(reason="tests drive POSIX shell scripts")
    for item in items:
        item.add_marker(skip)


@pytest.fixture
def flutter_project(tmp_path: Path) -> Path:
    project = tmp_path / "my_app"
    project.mkdir()
    (project / "pubspec.yaml").write_text(
        "name: my_app\nversion: 1.2.0+7\ndescription: A test Flutter app\n"
    )
    for platform_dir in ("android", "web", "linux"):
        (project / platform_dir).mkdir()
    return project


@pytest.fixture
def fake_flutter(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeFlutter:
    script = tmp_path / "fake_flutter.sh"
    script.write_text(FAKE_FLUTTER_SCRIPT)
    script.chmod(0o755)
    log_path = tmp_path / "flutter_calls.log"
    monkeypatch.setenv("FAKE_FLUTTER_LOG", str(log_path))
    monkeypatch.delenv("FAKE_FLUTTER_FAIL", raising=False)
    monkeypatch.delenv("FAKE_FLUTTER_SLEEP", raising=False)
    return FakeFlutter(command=f"sh {script}", log_path=log_path)


def make_config(
    fake: FakeFlutter,
    platforms: Iterable[Platform] = (Platform.ANDROID,),
    steps: Optional[List[BuildStep]] = None,
) -> BuildConfig:
    config = default_build_config(list(platforms))
    config.pre_build = PreBuildConfig(global_steps=list(steps or []))
    config.execution.flutter_command = fake.command
    config.artifacts.cleanup.enabled = False
    return config
