"""Read-only view of a Flutter project: manifest, platform folders, display name."""
import json
import plistlib
import re
from xml.parsers.expat import ExpatError
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import yaml

from .errors import ProjectError
from .logger_setup import logger
from .models import Platform, ALL_PLATFORMS

PUBSPEC_FILENAME = "pubspec.yaml"
ENVIRONMENT_DIR_NAME = ".environment"

_ANDROID_LABEL_RE = re.compile(r'android:label\s*=\s*"([^"]*)"')


@dataclass
class ProjectInfo:
    path: Path
    name: str = ""
    version: str = ""
    description: str = ""


def validate_project(project_path) -> ProjectInfo:
    """Checks that project_path is a Flutter project and returns its pubspec info."""
    path = Path(project_path).resolve()
    if not path.exists():
        raise ProjectError(f"directory does not exist: {path}")
    if not path.is_dir():
        raise ProjectError(f"not a directory: {path}")

    pubspec_path = path / PUBSPEC_FILENAME
    if not pubspec_path.is_file():
        raise ProjectError(f"not a Flutter project: {PUBSPEC_FILENAME} not found in {path}")

    try:
        with open(pubspec_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ProjectError(f"failed to parse {PUBSPEC_FILENAME}: {e}")
    except OSError as e:
        raise ProjectError(f"failed to read {PUBSPEC_FILENAME}: {e}")

    if not isinstance(data, dict):
        raise ProjectError(f"{PUBSPEC_FILENAME} must contain a mapping")

    return ProjectInfo(
        path=path,
        name=str(data.get("name") or ""),
        version=str(data.get("version") or ""),
        description=str(data.get("description") or ""),
    )


def is_platform_available(project_path, platform: Platform) -> bool:
    return (Path(project_path) / platform.value).is_dir()


def detect_available_platforms(project_path) -> List[Platform]:
    return [p for p in ALL_PLATFORMS if is_platform_available(project_path, p)]


def environment_file_path(project_path, env_name: str) -> Path:
    return Path(project_path) / ENVIRONMENT_DIR_NAME / f"{env_name}.json"


def read_display_name(project_path) -> Optional[str]:
    """Best-effort lookup of the user-facing app name from the platform folders.

    Checks the web manifest, the Android manifest label and the iOS Info.plist,
    in that order. Resource references such as '@string/app_name' are skipped.
    """
    project_path = Path(project_path)

    web_manifest = project_path / "web" / "manifest.json"
    if web_manifest.is_file():
        try:
            with open(web_manifest, "r", encoding="utf-8") as f:
                name = json.load(f).get("name")
            if name:
                return str(name)
        except (OSError, ValueError, AttributeError) as e:
            logger.debug(f"Could not read display name from {web_manifest}: {e}")

    android_manifest = project_path / "android" / "app" / "src" / "main" / "AndroidManifest.xml"
    if android_manifest.is_file():
        try:
            match = _ANDROID_LABEL_RE.search(android_manifest.read_text(encoding="utf-8"))
            if match and match.group(1) and not match.group(1).startswith("@"):
                return match.group(1)
        except OSError as e:
            logger.debug(f"Could not read display name from {android_manifest}: {e}")

    info_plist = project_path / "ios" / "Runner" / "Info.plist"
    if info_plist.is_file():
        try:
            with open(info_plist, "rb") as f:
                plist = plistlib.load(f)
            name = plist.get("CFBundleDisplayName") or plist.get("CFBundleName")
            # Xcode variables like $(PRODUCT_NAME) are not real names
            if name and not str(name).startswith("$("):
                return str(name)
        except (OSError, ValueError, ExpatError) as e:
            logger.debug(f"Could not read display name from {info_plist}: {e}")

    return None
