from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Optional, Any
import datetime


class Platform(str, Enum):
    ANDROID = "android"
    IOS = "ios"
    WEB = "web"
    MACOS = "macos"
    LINUX = "linux"
    WINDOWS = "windows"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str) -> "Platform":
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ValueError(f"invalid platform: {value} (must be one of: {valid})")


ALL_PLATFORMS: List[Platform] = list(Platform)


@dataclass
class BuildOptions:
    skip_pre_build: bool = False
    continue_on_error: bool = False
    dry_run: bool = False
    parallel: bool = False
    environment: Optional[str] = None  # name of .environment/<name>.json


@dataclass
class BuildArtifact:
    platform: Optional[Platform]  # None when the output tree does not record it
    file_name: str
    file_path: str
    architecture: str = "universal"
    build_type: str = ""
    size: int = 0
    build_time: Optional[datetime.datetime] = None
    app_name: str = ""
    version: str = ""

    def to_dict(self) -> dict:
        return {
            "platform": str(self.platform) if self.platform else None,
            "build_type": self.build_type,
            "architecture": self.architecture,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "size": self.size,
            "build_time": self.build_time.isoformat() if self.build_time else None,
            "app_name": self.app_name,
            "version": self.version,
        }


@dataclass
class PlatformBuildResult:
    platform: Platform
    success: bool = False
    skipped: bool = False
    artifacts: List[BuildArtifact] = field(default_factory=list)
    error: Optional[Exception] = None
    duration: float = 0.0  # seconds

    def to_dict(self) -> dict:
        return {
            "platform": str(self.platform),
            "success": self.success,
            "skipped": self.skipped,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "error": str(self.error) if self.error else None,
            "duration": round(self.duration, 3),
        }


@dataclass
class BuildResult:
    build_time: datetime.datetime
    success: bool = False
    dry_run: bool = False
    platform_results: Dict[Platform, PlatformBuildResult] = field(default_factory=dict)
    artifacts: List[BuildArtifact] = field(default_factory=list)
    duration: float = 0.0
    log_file: Optional[str] = None
    error: Optional[Exception] = None  # what aborted the run, if anything

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "build_time": self.build_time.isoformat(),
            "duration": round(self.duration, 3),
            "log_file": self.log_file,
            "error": str(self.error) if self.error else None,
            "platform_results": {str(p): r.to_dict() for p, r in self.platform_results.items()},
            "artifacts": [a.to_dict() for a in self.artifacts],
        }


@dataclass
class ArtifactFilters:
    date: Optional[str] = None
    platform: Optional[str] = None


@dataclass
class RecentBuild:
    date: str
    artifact_count: int

    def to_dict(self) -> dict:
        return {"date": self.date, "artifact_count": self.artifact_count}


@dataclass
class BuildStatus:
    total_artifacts: int = 0
    last_build_time: Optional[datetime.datetime] = None
    recent_builds: List[RecentBuild] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_artifacts": self.total_artifacts,
            "last_build_time": self.last_build_time.isoformat() if self.last_build_time else None,
            "recent_builds": [r.to_dict() for r in self.recent_builds],
        }
