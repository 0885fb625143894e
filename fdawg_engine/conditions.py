"""Step conditions: 'kind:argument' strings parsed once, evaluated by lookup."""
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional

from .errors import ConfigError


class ConditionKind(str, Enum):
    FILE_EXISTS = "file_exists"
    DIR_EXISTS = "dir_exists"
    PLATFORM_AVAILABLE = "platform_available"
    ENV_SET = "env_set"
    COMMAND_EXISTS = "command_exists"


@dataclass(frozen=True)
class Condition:
    kind: ConditionKind
    argument: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.argument}"

    @classmethod
    def parse(cls, raw: Optional[str], field: Optional[str] = None) -> Optional["Condition"]:
        """Returns None for an empty condition ("always run")."""
        if raw is None:
            return None
        raw = str(raw).strip()
        if not raw:
            return None

        kind_str, sep, argument = raw.partition(":")
        valid = ", ".join(k.value for k in ConditionKind)
        if not sep:
            raise ConfigError(f"condition '{raw}' must look like 'kind:argument' (kinds: {valid})", field)
        try:
            kind = ConditionKind(kind_str.strip())
        except ValueError:
            raise ConfigError(f"unknown condition kind '{kind_str}' (must be one of: {valid})", field)
        argument = argument.strip()
        if not argument:
            raise ConfigError(f"condition '{raw}' has no argument", field)
        return cls(kind=kind, argument=argument)


def _resolve(argument: str, base_dir: Path) -> Path:
    path = Path(argument)
    return path if path.is_absolute() else base_dir / path


def _file_exists(argument: str, working_dir: Path, project_path: Path) -> bool:
    return _resolve(argument, working_dir).is_file()


def _dir_exists(argument: str, working_dir: Path, project_path: Path) -> bool:
    return _resolve(argument, working_dir).is_dir()


def _platform_available(argument: str, working_dir: Path, project_path: Path) -> bool:
    return (project_path / argument).is_dir()


def _env_set(argument: str, working_dir: Path, project_path: Path) -> bool:
    return bool(os.environ.get(argument))


def _command_exists(argument: str, working_dir: Path, project_path: Path) -> bool:
    return shutil.which(argument) is not None


PREDICATES: Dict[ConditionKind, Callable[[str, Path, Path], bool]] = {
    ConditionKind.FILE_EXISTS: _file_exists,
    ConditionKind.DIR_EXISTS: _dir_exists,
    ConditionKind.PLATFORM_AVAILABLE: _platform_available,
    ConditionKind.ENV_SET: _env_set,
    ConditionKind.COMMAND_EXISTS: _command_exists,
}


def evaluate(condition: Optional[Condition], working_dir: Path, project_path: Path) -> bool:
    if condition is None:
        return True
    return PREDICATES[condition.kind](condition.argument, working_dir, project_path)
