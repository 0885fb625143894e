from __future__ import annotations

import os
import zipfile
from pathlib import Path

import pytest

from fdawg_engine.config import BuildType
from fdawg_engine.errors import DiscoveryError
from fdawg_engine.models import Platform
from fdawg_engine.platforms import (
    BUILDERS,
    AndroidBuilder,
    IOSBuilder,
    LinuxBuilder,
    MacOSBuilder,
    PlatformBuilder,
    WebBuilder,
    WindowsBuilder,
    detect_host_architecture,
    detect_macos_architecture,
    get_builder,
    register_builder,
)


def touch(path: Path, content: str = "x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def test_every_platform_has_a_builder() -> None:
    assert set(BUILDERS) == set(Platform)
    assert isinstance(get_builder(Platform.WEB), WebBuilder)


def test_android_build_args() -> None:
    build_type = BuildType(name="release_apk", type="apk", split_per_abi=True, custom_args=["--obfuscate"])

    args = AndroidBuilder().build_args(build_type, env_file=Path("/p/.environment/dev.json"))

    assert args == [
        "build", "apk", "--release", "--split-per-abi",
        "--dart-define-from-file=/p/.environment/dev.json", "--obfuscate",
    ]


def test_split_per_abi_is_ignored_for_app_bundles() -> None:
    build_type = BuildType(name="bundle", type="appbundle", split_per_abi=True)

    assert AndroidBuilder().build_args(build_type) == ["build", "appbundle", "--release"]


def test_ios_and_web_flags() -> None:
    ipa = BuildType(name="ipa", type="ipa", export_method="ad-hoc")
    web = BuildType(name="web", type="web", build_mode="profile", pwa=False)

    assert IOSBuilder().build_args(ipa) == ["build", "ipa", "--release", "--export-method", "ad-hoc"]
    assert WebBuilder().build_args(web) == ["build", "web", "--profile", "--pwa-strategy=none"]


def test_android_split_discovery_accepts_partial_abis(tmp_path: Path) -> None:
    apk_dir = tmp_path / "build" / "app" / "outputs" / "flutter-apk"
    touch(apk_dir / "app-arm64-v8a-release.apk")
    touch(apk_dir / "app-x86_64-release.apk")
    build_type = BuildType(name="release_apk", type="apk", split_per_abi=True)

    artifacts = AndroidBuilder().discover(tmp_path, build_type)

    assert [a.architecture for a in artifacts] == ["arm64-v8a", "x86_64"]
    assert all(a.platform == Platform.ANDROID for a in artifacts)


def test_android_split_discovery_needs_at_least_one_apk(tmp_path: Path) -> None:
    build_type = BuildType(name="release_apk", type="apk", split_per_abi=True)

    with pytest.raises(DiscoveryError):
        AndroidBuilder().discover(tmp_path, build_type)


def test_android_universal_and_bundle_paths(tmp_path: Path) -> None:
    outputs = tmp_path / "build" / "app" / "outputs"
    touch(outputs / "flutter-apk" / "app-debug.apk")
    touch(outputs / "bundle" / "release" / "app-release.aab")

    apk = AndroidBuilder().discover(tmp_path, BuildType(name="dbg", type="apk", build_mode="debug"))
    aab = AndroidBuilder().discover(tmp_path, BuildType(name="store", type="appbundle"))

    assert apk[0].file_name == "app-debug.apk"
    assert apk[0].architecture == "universal"
    assert aab[0].file_name == "app-release.aab"


def test_unknown_build_type_raises(tmp_path: Path) -> None:
    with pytest.raises(DiscoveryError, match="unknown Android build type"):
        AndroidBuilder().discover(tmp_path, BuildType(name="x", type="bogus"))


def test_ios_archive_discovery_finds_bundle_directory(tmp_path: Path) -> None:
    archive = tmp_path / "build" / "ios" / "archive" / "Runner.xcarchive"
    touch(archive / "Info.plist")

    artifacts = IOSBuilder().discover(tmp_path, BuildType(name="archive", type="archive"))

    assert artifacts[0].file_path == str(archive)


def test_ios_ipa_missing_raises(tmp_path: Path) -> None:
    (tmp_path / "build" / "ios" / "ipa").mkdir(parents=True)

    with pytest.raises(DiscoveryError, match=".ipa"):
        IOSBuilder().discover(tmp_path, BuildType(name="ipa", type="ipa"))


def test_web_discovery_zips_build_directory(tmp_path: Path) -> None:
    touch(tmp_path / "build" / "web" / "index.html", "<html></html>")
    touch(tmp_path / "build" / "web" / "assets" / "app.js", "main()")

    artifacts = WebBuilder().discover(tmp_path, BuildType(name="release", type="web"))

    assert artifacts[0].architecture == "web"
    with zipfile.ZipFile(artifacts[0].file_path) as zf:
        assert sorted(zf.namelist()) == ["assets/app.js", "index.html"]


def test_web_discovery_without_output_raises(tmp_path: Path) -> None:
    with pytest.raises(DiscoveryError):
        WebBuilder().discover(tmp_path, BuildType(name="release", type="web"))


def test_linux_bundle_files_use_host_arch(tmp_path: Path) -> None:
    touch(tmp_path / "build" / "linux" / "x64" / "release" / "bundle" / "my_app")
    (tmp_path / "build" / "linux" / "x64" / "release" / "bundle" / "lib").mkdir()

    artifacts = LinuxBuilder().discover(tmp_path, BuildType(name="release", type="linux"))

    assert [a.file_name for a in artifacts] == ["my_app"]
    assert artifacts[0].architecture == detect_host_architecture()


def test_windows_falls_back_to_legacy_runner_dir(tmp_path: Path) -> None:
    runner = tmp_path / "build" / "windows" / "runner" / "Release"
    touch(runner / "my_app.exe")
    touch(runner / "flutter_windows.dll")

    artifacts = WindowsBuilder().discover(tmp_path, BuildType(name="release", type="windows"))

    assert [a.file_name for a in artifacts] == ["my_app.exe"]


def test_register_builder_replaces_entry(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakeWebBuilder(PlatformBuilder):
        platform = Platform.WEB

    monkeypatch.setitem(BUILDERS, Platform.WEB, BUILDERS[Platform.WEB])
    register_builder(FakeWebBuilder())

    assert isinstance(get_builder(Platform.WEB), FakeWebBuilder)


@pytest.fixture
def fake_file_command(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    bin_dir = tmp_path / "bin"
    script = touch(bin_dir / "file", '#!/bin/sh\necho "$1: $FAKE_FILE_OUTPUT"\n')
    script.chmod(0o755)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    return bin_dir


@pytest.mark.parametrize("output, expected", [
    ("Mach-O 64-bit executable arm64", "arm64"),
    ("Mach-O 64-bit executable x86_64", "x86_64"),
    ("Mach-O universal binary with 2 architectures: [x86_64] [arm64]", "universal"),
    ("data", "universal"),
])
def test_detect_macos_architecture(tmp_path: Path, fake_file_command: Path, monkeypatch: pytest.MonkeyPatch,
                                   output: str, expected: str) -> None:
    monkeypatch.setenv("FAKE_FILE_OUTPUT", output)

    assert detect_macos_architecture(tmp_path / "My App.app") == expected


def test_detect_macos_architecture_without_file_command(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    empty = tmp_path / "empty-bin"
    empty.mkdir()
    monkeypatch.setenv("PATH", str(empty))

    assert detect_macos_architecture(tmp_path / "My App.app") == "unknown"


def test_macos_discovery_finds_app_bundles(tmp_path: Path, fake_file_command: Path,
                                           monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FAKE_FILE_OUTPUT", "Mach-O 64-bit executable arm64")
    products = tmp_path / "build" / "macos" / "Build" / "Products" / "Release"
    touch(products / "My App.app" / "Contents" / "MacOS" / "My App")
    touch(products / "My App.swiftmodule")

    artifacts = MacOSBuilder().discover(tmp_path, BuildType(name="release", type="macos"))

    assert [a.file_name for a in artifacts] == ["My App.app"]
    assert artifacts[0].architecture == "arm64"
    assert artifacts[0].platform == Platform.MACOS


def test_macos_discovery_without_app_raises(tmp_path: Path) -> None:
    (tmp_path / "build" / "macos" / "Build" / "Products" / "Debug").mkdir(parents=True)

    with pytest.raises(DiscoveryError, match="no macos artifacts"):
        MacOSBuilder().discover(tmp_path, BuildType(name="dbg", type="macos", build_mode="debug"))


def test_get_builder_uses_given_registry() -> None:
    with pytest.raises(DiscoveryError, match="no builder registered"):
        get_builder(Platform.MACOS, registry={Platform.WEB: WebBuilder()})
    assert isinstance(get_builder(Platform.WEB, registry={Platform.WEB: WebBuilder()}), WebBuilder)
