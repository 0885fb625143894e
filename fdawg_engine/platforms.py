"""Per-platform toolchain invocation and artifact discovery.

`flutter build` does not report where it wrote its output, so each builder knows
the directory conventions of its platform and goes looking. A miss is a
DiscoveryError: the toolchain exited cleanly but did not produce what we asked for.
"""
import os
import platform as host_platform
import subprocess
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

from .config import BuildType
from .errors import DiscoveryError
from .logger_setup import logger
from .models import BuildArtifact, Platform

ANDROID_ABIS = ["arm64-v8a", "armeabi-v7a", "x86_64"]


def detect_host_architecture() -> str:
    arch = host_platform.machine().lower()
    if arch in ("x86_64", "amd64"):
        return "x64"
    if arch in ("arm64", "aarch64"):
        return "arm64"
    if arch in ("i386", "i686", "x86"):
        return "x86"
    return arch or "x64"


def _mode_dir(build_type: BuildType) -> str:
    # Xcode and MSBuild name their configuration folders Release/Debug/Profile
    return (build_type.build_mode or "release").capitalize()


class PlatformBuilder:
    platform: Platform

    def build_args(self, build_type: BuildType, env_file: Optional[Path] = None) -> List[str]:
        args = ["build", build_type.type or self.platform.value]
        if build_type.build_mode:
            args.append(f"--{build_type.build_mode}")
        args.extend(self.extra_args(build_type))
        if env_file is not None:
            args.append(f"--dart-define-from-file={env_file}")
        args.extend(build_type.custom_args)
        return args

    def extra_args(self, build_type: BuildType) -> List[str]:
        return []

    def discover(self, project_path: Path, build_type: BuildType) -> List[BuildArtifact]:
        raise NotImplementedError

    def _artifact(self, path: Path, architecture: str) -> BuildArtifact:
        return BuildArtifact(
            platform=self.platform,
            architecture=architecture,
            file_name=path.name,
            file_path=str(path),
        )


class AndroidBuilder(PlatformBuilder):
    platform = Platform.ANDROID

    def extra_args(self, build_type: BuildType) -> List[str]:
        if build_type.type == "apk" and build_type.split_per_abi:
            return ["--split-per-abi"]
        return []

    def discover(self, project_path: Path, build_type: BuildType) -> List[BuildArtifact]:
        mode = build_type.build_mode or "release"
        outputs = project_path / "build" / "app" / "outputs"

        if build_type.type == "apk" and build_type.split_per_abi:
            apk_dir = outputs / "flutter-apk"
            artifacts = []
            for abi in ANDROID_ABIS:
                apk_path = apk_dir / f"app-{abi}-{mode}.apk"
                if apk_path.is_file():
                    artifacts.append(self._artifact(apk_path, abi))
            if not artifacts:
                raise DiscoveryError(f"no split APKs found in {apk_dir}")
            return artifacts

        if build_type.type == "apk":
            artifact_path = outputs / "flutter-apk" / f"app-{mode}.apk"
        elif build_type.type == "appbundle":
            artifact_path = outputs / "bundle" / mode / f"app-{mode}.aab"
        else:
            raise DiscoveryError(f"unknown Android build type: {build_type.type}")

        if not artifact_path.is_file():
            raise DiscoveryError(f"android artifact not found: {artifact_path}")
        return [self._artifact(artifact_path, "universal")]


class IOSBuilder(PlatformBuilder):
    platform = Platform.IOS

    def extra_args(self, build_type: BuildType) -> List[str]:
        if build_type.type == "ipa" and build_type.export_method:
            return ["--export-method", build_type.export_method]
        return []

    def discover(self, project_path: Path, build_type: BuildType) -> List[BuildArtifact]:
        if build_type.type == "archive":
            search_dir, suffix, want_dir = project_path / "build" / "ios" / "archive", ".xcarchive", True
        elif build_type.type == "ipa":
            search_dir, suffix, want_dir = project_path / "build" / "ios" / "ipa", ".ipa", False
        else:
            raise DiscoveryError(f"unknown iOS build type: {build_type.type}")

        if search_dir.is_dir():
            for entry in sorted(search_dir.iterdir()):
                if entry.name.endswith(suffix) and entry.is_dir() == want_dir:
                    return [self._artifact(entry, "universal")]
        raise DiscoveryError(f"no {suffix} found in {search_dir}")


class WebBuilder(PlatformBuilder):
    platform = Platform.WEB

    def extra_args(self, build_type: BuildType) -> List[str]:
        if build_type.pwa is False:
            return ["--pwa-strategy=none"]
        return []

    def discover(self, project_path: Path, build_type: BuildType) -> List[BuildArtifact]:
        web_dir = project_path / "build" / "web"
        if not web_dir.is_dir():
            raise DiscoveryError(f"web build directory not found: {web_dir}")

        zip_path = project_path / "build" / "web.zip"
        try:
            create_zip_archive(web_dir, zip_path)
        except OSError as e:
            raise DiscoveryError(f"failed to create web archive: {e}")
        return [self._artifact(zip_path, "web")]


def create_zip_archive(source_dir: Path, zip_path: Path):
    """Zips every file under source_dir with paths relative to it."""
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for root, _dirs, files in os.walk(source_dir):
            for name in sorted(files):
                file_path = Path(root) / name
                zf.write(file_path, file_path.relative_to(source_dir).as_posix())


class MacOSBuilder(PlatformBuilder):
    platform = Platform.MACOS

    def discover(self, project_path: Path, build_type: BuildType) -> List[BuildArtifact]:
        build_dir = project_path / "build" / "macos" / "Build" / "Products" / _mode_dir(build_type)
        if not build_dir.is_dir():
            raise DiscoveryError(f"build directory not found: {build_dir}")

        artifacts = [
            self._artifact(entry, detect_macos_architecture(entry))
            for entry in sorted(build_dir.iterdir())
            if entry.is_dir() and entry.suffix == ".app"
        ]
        if not artifacts:
            raise DiscoveryError(f"no macos artifacts found in {build_dir}")
        return artifacts


def detect_macos_architecture(app_path: Path) -> str:
    executable = app_path / "Contents" / "MacOS" / app_path.stem
    try:
        output = subprocess.run(["file", str(executable)], capture_output=True, text=True, check=True).stdout
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug(f"Could not probe architecture of {executable}: {e}")
        return "unknown"

    has_arm = "arm64" in output
    has_x86 = "x86_64" in output
    if has_arm and has_x86:
        return "universal"
    if has_arm:
        return "arm64"
    if has_x86:
        return "x86_64"
    return "universal"


class LinuxBuilder(PlatformBuilder):
    platform = Platform.LINUX

    def discover(self, project_path: Path, build_type: BuildType) -> List[BuildArtifact]:
        mode = build_type.build_mode or "release"
        linux_dir = project_path / "build" / "linux"
        # Flutter nests the bundle under the target arch (x64, arm64)
        candidates = [linux_dir / detect_host_architecture() / mode / "bundle"]
        if linux_dir.is_dir():
            candidates += sorted(p / mode / "bundle" for p in linux_dir.iterdir() if p.is_dir())
        build_dir = next((c for c in candidates if c.is_dir()), candidates[0])
        return _collect_executables(self, build_dir, suffix="")


class WindowsBuilder(PlatformBuilder):
    platform = Platform.WINDOWS

    def discover(self, project_path: Path, build_type: BuildType) -> List[BuildArtifact]:
        windows_dir = project_path / "build" / "windows"
        candidates = [
            windows_dir / "x64" / "runner" / _mode_dir(build_type),
            windows_dir / "runner" / _mode_dir(build_type),  # Flutter < 3.15
        ]
        build_dir = next((c for c in candidates if c.is_dir()), candidates[0])
        return _collect_executables(self, build_dir, suffix=".exe")


def _collect_executables(builder: PlatformBuilder, build_dir: Path, suffix: str) -> List[BuildArtifact]:
    if not build_dir.is_dir():
        raise DiscoveryError(f"build directory not found: {build_dir}")

    arch = detect_host_architecture()
    artifacts = [
        builder._artifact(entry, arch)
        for entry in sorted(build_dir.iterdir())
        if entry.is_file() and (not suffix or entry.name.endswith(suffix))
    ]
    if not artifacts:
        raise DiscoveryError(f"no {builder.platform.value} artifacts found in {build_dir}")
    return artifacts


BUILDERS: Dict[Platform, PlatformBuilder] = {}


def register_builder(builder: PlatformBuilder):
    BUILDERS[builder.platform] = builder


def get_builder(platform: Platform, registry: Optional[Dict[Platform, PlatformBuilder]] = None) -> PlatformBuilder:
    builders = BUILDERS if registry is None else registry
    try:
        return builders[platform]
    except KeyError:
        raise DiscoveryError(f"no builder registered for platform {platform}")


for _builder in (AndroidBuilder(), IOSBuilder(), WebBuilder(), MacOSBuilder(), LinuxBuilder(), WindowsBuilder()):
    register_builder(_builder)
