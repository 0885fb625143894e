import os
import re
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from .config import BuildConfig, DEFAULT_FALLBACK_APP_NAME
from .errors import DurationError, OrganizeError, ProjectError
from .logger_setup import logger, BUILD_LOGS_DIR_NAME
from .models import ArtifactFilters, BuildArtifact, BuildStatus, Platform, RecentBuild
from .project import ProjectInfo, read_display_name, validate_project

DEFAULT_VERSION = "1.0.0"
MAX_RECENT_BUILDS = 10

BUNDLE_SUFFIXES = (".app", ".xcarchive")
# Order matters: longer names first so 'x86' does not shadow 'x86_64'
ARCH_MARKERS = ["arm64-v8a", "armeabi-v7a", "x86_64", "x86", "arm64", "amd64", "x64", "universal"]

_UNSAFE_CHARS_RE = re.compile(r'[\s<>:"/\\|?*]')
_UNDERSCORE_RUN_RE = re.compile(r"_+")
_UNPADDED_RE = re.compile(r"%-([dmHIMSj])")
_DURATION_RE = re.compile(r"^\s*(\d+)\s*([hdwmy])\s*$", re.IGNORECASE)

DURATION_UNITS: Dict[str, timedelta] = {
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "m": timedelta(days=30),
    "y": timedelta(days=365),
}

# Go reference-time tokens, longest first at each position
_GO_LAYOUT_TOKENS = [
    ("January", "%B"), ("Monday", "%A"), ("2006", "%Y"),
    ("Jan", "%b"), ("Mon", "%a"), ("MST", "%Z"),
    ("01", "%m"), ("02", "%d"), ("03", "%I"), ("04", "%M"), ("05", "%S"),
    ("06", "%y"), ("15", "%H"), ("PM", "%p"),
    ("1", "%-m"), ("2", "%-d"),
]


def to_strftime(date_format: str) -> str:
    """Returns date_format as a strftime pattern.

    A format without any '%' is a Go reference layout such as 'January-2' or
    '2006-01-02' and gets translated token by token.
    """
    if "%" in date_format:
        return date_format

    out = []
    i = 0
    while i < len(date_format):
        for token, directive in _GO_LAYOUT_TOKENS:
            if date_format.startswith(token, i):
                out.append(directive)
                i += len(token)
                break
        else:
            out.append(date_format[i])
            i += 1
    return "".join(out)


def format_date_bucket(moment: datetime, date_format: str) -> str:
    # '%-d' is a glibc extension; expand it by hand so Windows gets the same names
    fmt = _UNPADDED_RE.sub(lambda m: str(int(moment.strftime("%" + m.group(1)))), to_strftime(date_format))
    return moment.strftime(fmt)


def parse_date_bucket(value: str, date_format: str, reference: datetime) -> Optional[datetime]:
    """Parses a bucket name back into a date. Formats without a year borrow reference's."""
    fmt = _UNPADDED_RE.sub(r"%\1", to_strftime(date_format))
    try:
        if "%Y" in fmt or "%y" in fmt:
            return datetime.strptime(value, fmt)
        return datetime.strptime(f"{value}|{reference.year}", f"{fmt}|%Y")
    except ValueError:
        return None


def parse_duration(expr: str) -> timedelta:
    """'12h', '7d', '2w', '1m' (30 days), '1y' (365 days)."""
    match = _DURATION_RE.match(expr or "")
    if not match:
        raise DurationError(f"invalid duration '{expr}' (expected <number><h|d|w|m|y>, e.g. 7d)")
    return int(match.group(1)) * DURATION_UNITS[match.group(2).lower()]


def sanitize_filename(name: str) -> str:
    name = _UNSAFE_CHARS_RE.sub("_", name)
    name = _UNDERSCORE_RUN_RE.sub("_", name)
    return name.strip("_-.")


def detect_architecture(file_name: str) -> str:
    lowered = file_name.lower()
    for marker in ARCH_MARKERS:
        if marker in lowered:
            return marker
    return "universal"


def path_size(path: Path) -> int:
    if path.is_dir():
        return sum(p.stat().st_size for p in path.rglob("*") if p.is_file() and not p.is_symlink())
    return path.stat().st_size


def remove_path(path: Path):
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _move_file(source: Path, destination: Path):
    try:
        os.replace(source, destination)
    except OSError:
        # Cross-device moves cannot be renames
        shutil.copy2(source, destination)
        source.unlink()


class ArtifactManager:
    """Names, places, lists and prunes build outputs under the output directory.

    The directory tree is the only index: listing and status are recomputed from
    disk on every call.
    """

    def __init__(self, project_path, config: BuildConfig,
                 display_name_resolver: Optional[Callable[[Path], Optional[str]]] = None):
        self.project_path = Path(project_path).resolve()
        self.config = config
        self.display_name_resolver = display_name_resolver or read_display_name

    @property
    def organization(self):
        return self.config.artifacts.organization

    def get_output_dir(self) -> Path:
        base = Path(self.config.artifacts.base_output_dir)
        return base if base.is_absolute() else self.project_path / base

    def get_logs_dir(self) -> Path:
        return self.get_output_dir() / BUILD_LOGS_DIR_NAME

    def project_info(self) -> ProjectInfo:
        try:
            return validate_project(self.project_path)
        except ProjectError as e:
            logger.warning(f"Could not read project manifest: {e}")
            return ProjectInfo(path=self.project_path)

    def resolve_app_name(self, info: Optional[ProjectInfo] = None) -> str:
        metadata = self.config.metadata
        fallback = self.config.artifacts.naming.fallback_app_name or DEFAULT_FALLBACK_APP_NAME

        if metadata.app_name_source == "custom":
            return metadata.custom_app_name or fallback

        if metadata.app_name_source == "namer":
            try:
                display_name = self.display_name_resolver(self.project_path)
            except OSError as e:
                logger.debug(f"Display name lookup failed: {e}")
                display_name = None
            if display_name:
                return display_name

        info = info or self.project_info()
        return info.name or fallback

    def resolve_version(self, info: Optional[ProjectInfo] = None) -> str:
        metadata = self.config.metadata
        if metadata.version_source == "custom":
            return metadata.custom_version or DEFAULT_VERSION

        info = info or self.project_info()
        # '1.2.0+5' -> '1.2.0'
        return info.version.split("+", 1)[0] or DEFAULT_VERSION

    def generate_file_name(self, artifact: BuildArtifact) -> str:
        extension = Path(artifact.file_name).suffix
        tokens = {
            "app_name": artifact.app_name,
            "version": artifact.version,
            "arch": artifact.architecture or "universal",
            "platform": str(artifact.platform) if artifact.platform else "",
            "build_type": artifact.build_type,
        }
        # Plain substitution: anything in braces that is not a token stays literal
        stem = self.config.artifacts.naming.pattern
        for token, value in tokens.items():
            stem = stem.replace("{" + token + "}", value or "")
        stem = sanitize_filename(stem) or sanitize_filename(self.config.artifacts.naming.fallback_app_name)
        return f"{stem}{extension}"

    def get_destination_dir(self, artifact: BuildArtifact) -> Path:
        path = self.get_output_dir()
        if self.organization.by_date:
            path = path / format_date_bucket(artifact.build_time or datetime.now(), self.organization.date_format)
        if self.organization.by_platform and artifact.platform:
            path = path / str(artifact.platform)
        if self.organization.by_build_type and artifact.build_type:
            segment = sanitize_filename(artifact.build_type)
            if segment:
                path = path / segment
        return path

    def organize_artifact(self, artifact: BuildArtifact, info: Optional[ProjectInfo] = None) -> BuildArtifact:
        """Renames and moves a raw artifact into the output tree, updating it in place."""
        source = Path(artifact.file_path)
        if not source.exists():
            raise OrganizeError(f"artifact does not exist: {source}")

        info = info or self.project_info()
        if artifact.build_time is None:
            artifact.build_time = datetime.now()
        artifact.architecture = artifact.architecture or "universal"
        artifact.app_name = self.resolve_app_name(info)
        artifact.version = self.resolve_version(info)

        file_name = self.generate_file_name(artifact)
        destination = self.get_destination_dir(artifact) / file_name

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            if destination.exists() or destination.is_symlink():
                logger.debug(f"Replacing existing artifact {destination}")
                remove_path(destination)
            if source.is_dir():
                shutil.copytree(source, destination, symlinks=True)
                shutil.rmtree(source)
            else:
                _move_file(source, destination)
            size = path_size(destination)
        except OSError as e:
            raise OrganizeError(f"failed to move {source} to {destination}: {e}")

        artifact.file_name = file_name
        artifact.file_path = str(destination)
        artifact.size = size
        logger.info(f"Organized artifact: {source.name} -> {destination}")
        return artifact

    def _iter_artifact_paths(self, directory: Path) -> Iterator[Path]:
        for entry in sorted(directory.iterdir()):
            if entry.is_dir():
                if entry.name == BUILD_LOGS_DIR_NAME:
                    continue
                if entry.suffix in BUNDLE_SUFFIXES:
                    yield entry
                else:
                    yield from self._iter_artifact_paths(entry)
            elif entry.is_file() and entry.suffix != ".log":
                yield entry

    def _parse_artifact(self, path: Path, base: Path) -> BuildArtifact:
        segments = list(path.relative_to(base).parts[:-1])
        org = self.organization
        expected = [name for name, on in (("date", org.by_date), ("platform", org.by_platform),
                                          ("build_type", org.by_build_type)) if on]
        if len(segments) == len(expected):
            fields = dict(zip(expected, segments))
        else:
            fields = dict(zip(("date", "platform", "build_type"), segments))

        mtime = datetime.fromtimestamp(path.stat().st_mtime)
        build_time = mtime
        if fields.get("date"):
            bucket = parse_date_bucket(fields["date"], org.date_format, mtime)
            if bucket is not None:
                build_time = mtime if bucket.date() == mtime.date() else bucket

        platform = None
        if fields.get("platform"):
            try:
                platform = Platform.parse(fields["platform"])
            except ValueError:
                logger.debug(f"Unrecognized platform folder for {path}")

        return BuildArtifact(
            platform=platform,
            build_type=fields.get("build_type", ""),
            architecture=detect_architecture(path.name),
            file_name=path.name,
            file_path=str(path),
            size=path_size(path),
            build_time=build_time,
        )

    def list_artifacts(self, filters: Optional[ArtifactFilters] = None) -> List[BuildArtifact]:
        filters = filters or ArtifactFilters()
        base = self.get_output_dir()
        if not base.is_dir():
            return []

        artifacts = []
        for path in self._iter_artifact_paths(base):
            artifact = self._parse_artifact(path, base)
            if filters.date and format_date_bucket(artifact.build_time, self.organization.date_format) != filters.date:
                continue
            if filters.platform and str(artifact.platform) != filters.platform:
                continue
            artifacts.append(artifact)

        artifacts.sort(key=lambda a: a.build_time, reverse=True)
        return artifacts

    def get_build_status(self) -> BuildStatus:
        artifacts = self.list_artifacts()
        status = BuildStatus(total_artifacts=len(artifacts))
        if not artifacts:
            return status

        status.last_build_time = artifacts[0].build_time
        counts: Dict[str, int] = {}
        # artifacts are newest first, so dict insertion order is newest bucket first
        for artifact in artifacts:
            bucket = format_date_bucket(artifact.build_time, self.organization.date_format)
            counts[bucket] = counts.get(bucket, 0) + 1
        status.recent_builds = [RecentBuild(date=d, artifact_count=c) for d, c in counts.items()][:MAX_RECENT_BUILDS]
        return status

    def clean_all(self):
        base = self.get_output_dir()
        if not base.exists():
            return
        shutil.rmtree(base)
        logger.info(f"Removed all build artifacts in {base}")

    def clean_older_than(self, expr: str) -> int:
        """Deletes artifacts built before now - expr. Returns how many were removed."""
        cutoff = datetime.now() - parse_duration(expr)
        removed = 0
        for artifact in self.list_artifacts():
            if artifact.build_time < cutoff:
                logger.info(f"Removing old artifact {artifact.file_path}")
                remove_path(Path(artifact.file_path))
                removed += 1
        if removed:
            self._prune_empty_dirs()
        return removed

    def apply_retention(self) -> int:
        """Applies artifacts.cleanup: max age first, then the newest-N date buckets."""
        cleanup = self.config.artifacts.cleanup
        removed = 0
        if cleanup.max_age_days > 0:
            removed += self.clean_older_than(f"{cleanup.max_age_days}d")

        base = self.get_output_dir()
        if not (self.organization.by_date and cleanup.keep_last_builds > 0 and base.is_dir()):
            return removed

        buckets = [d for d in base.iterdir() if d.is_dir() and d.name != BUILD_LOGS_DIR_NAME]
        buckets.sort(key=self._bucket_time, reverse=True)
        for stale in buckets[cleanup.keep_last_builds:]:
            count = sum(1 for _ in self._iter_artifact_paths(stale))
            logger.info(f"Removing build folder {stale.name} ({count} artifacts) to keep the last {cleanup.keep_last_builds}")
            shutil.rmtree(stale)
            removed += count
        return removed

    def _bucket_time(self, bucket_dir: Path) -> datetime:
        mtime = datetime.fromtimestamp(bucket_dir.stat().st_mtime)
        return parse_date_bucket(bucket_dir.name, self.organization.date_format, mtime) or mtime

    def _prune_empty_dirs(self):
        base = self.get_output_dir()
        for root, dirs, files in os.walk(base, topdown=False):
            root_path = Path(root)
            if root_path != base and not any(root_path.iterdir()):
                root_path.rmdir()
