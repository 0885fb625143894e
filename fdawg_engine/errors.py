from typing import Optional


class BuildError(Exception):
    """Base class for everything the build engine raises on purpose."""


class ConfigError(BuildError):
    """Missing, malformed or invalid build configuration."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        if field:
            message = f"{field}: {message}"
        super().__init__(message)


class ProjectError(BuildError):
    """The project root is missing or is not a Flutter project."""


class StepFailure(BuildError):
    """A shell step or toolchain invocation exited non-zero or ran out of time."""

    def __init__(self, step_name: str, reason: str, returncode: Optional[int] = None, timed_out: bool = False):
        self.step_name = step_name
        self.returncode = returncode
        self.timed_out = timed_out
        super().__init__(f"Step '{step_name}' failed: {reason}")


class BuildCancelled(StepFailure):
    def __init__(self, step_name: str):
        super().__init__(step_name, "build was cancelled")


class PlatformUnavailable(BuildError):
    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(f"Platform {platform} not available in project (no '{platform}/' directory)")


class DiscoveryError(BuildError):
    """The toolchain ran but the expected output is not where it should be."""


class OrganizeError(BuildError):
    """Naming or moving an artifact into the output tree failed."""


class DurationError(BuildError, ValueError):
    """A cleanup age expression such as '7d' could not be parsed."""
