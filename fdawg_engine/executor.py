import os
import re
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from .conditions import evaluate
from .config import BuildStep, DEFAULT_STEP_TIMEOUT
from .errors import BuildCancelled, StepFailure
from .logger_setup import logger as engine_logger

POLL_INTERVAL = 0.1  # seconds between deadline/cancel checks while a process runs
_ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def expand_env(value: str, env: Dict[str, str]) -> str:
    """Expands $VAR and ${VAR} against env; unknown names become ''."""
    return _ENV_REF_RE.sub(lambda m: env.get(m.group(1) or m.group(2), ""), value)


def kill_process_tree(pid: int):
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    processes = parent.children(recursive=True) + [parent]
    for proc in processes:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(processes, timeout=5)


class CommandExecutor:
    """Runs build steps and toolchain commands for one project.

    Environment precedence: step env > executor env > os.environ.
    """

    def __init__(self, working_dir: Path, logger=None, flutter_command: str = "flutter",
                 cancel_event: Optional[threading.Event] = None):
        self.working_dir = Path(working_dir).resolve()
        self.environment: Dict[str, str] = {}
        self.logger = logger or engine_logger
        self.flutter_command = shlex.split(flutter_command) or ["flutter"]
        self.cancel_event = cancel_event

    def set_environment(self, env: Dict[str, str]):
        self.environment.update(env)

    def resolve_working_dir(self, working_dir: Optional[str]) -> Path:
        if not working_dir:
            return self.working_dir
        path = Path(working_dir)
        return path if path.is_absolute() else self.working_dir / path

    def build_environment(self, step_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.environment)
        for key, value in (step_env or {}).items():
            env[key] = expand_env(value, env)
        return env

    def should_execute_step(self, step: BuildStep) -> bool:
        return evaluate(step.condition, self.resolve_working_dir(step.working_dir), self.working_dir)

    def execute_step(self, step: BuildStep) -> bool:
        """Runs one step. Returns False if its condition skipped it.

        Raises StepFailure on non-zero exit or timeout; the caller decides
        whether that matters based on step.required.
        """
        if not self.should_execute_step(step):
            self.logger.info(f"Skipping step '{step.name}' - condition not met: {step.condition}")
            return False

        cwd = self.resolve_working_dir(step.working_dir)
        if not cwd.is_dir():
            raise StepFailure(step.name, f"working directory does not exist: {cwd}")

        self.logger.info(f"Executing: {step.name}")
        self.logger.debug(f"Command: {step.command}")
        timeout = step.timeout if step.timeout and step.timeout > 0 else DEFAULT_STEP_TIMEOUT
        self._run(step.command, step.name, cwd, self.build_environment(step.env), timeout=timeout, shell=True)
        return True

    def run_flutter(self, args: List[str], label: str):
        """Runs the flutter toolchain in the project root with no deadline."""
        command = self.flutter_command + list(args)
        self.logger.info(f"Running {label}")
        self.logger.debug(f"Command: {shlex.join(command)}")
        self._run(command, label, self.working_dir, self.build_environment(), timeout=None, shell=False)

    def _stream_output(self, stream, label: str, is_stderr: bool):
        for line in stream:
            line = line.rstrip("\r\n")
            if is_stderr:
                self.logger.warning(f"[{label}] {line}")
            else:
                self.logger.info(f"[{label}] {line}")
        stream.close()

    def _run(self, command, label: str, cwd: Path, env: Dict[str, str], timeout: Optional[float], shell: bool):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise BuildCancelled(label)

        try:
            process = subprocess.Popen(
                command,
                shell=shell,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=env,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise StepFailure(label, f"failed to start command: {e}")

        readers = [
            threading.Thread(target=self._stream_output, args=(process.stdout, label, False), daemon=True),
            threading.Thread(target=self._stream_output, args=(process.stderr, label, True), daemon=True),
        ]
        for reader in readers:
            reader.start()

        deadline = time.monotonic() + timeout if timeout else None
        timed_out = cancelled = False
        while True:
            try:
                process.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pass
            if self.cancel_event is not None and self.cancel_event.is_set():
                cancelled = True
            elif deadline is not None and time.monotonic() >= deadline:
                timed_out = True
            if timed_out or cancelled:
                kill_process_tree(process.pid)
                process.wait()
                break

        for reader in readers:
            reader.join(timeout=5)

        if cancelled:
            raise BuildCancelled(label)
        if timed_out:
            raise StepFailure(label, f"timed out after {timeout}s", process.returncode, timed_out=True)
        if process.returncode != 0:
            raise StepFailure(label, f"command exited with code {process.returncode}", process.returncode)
