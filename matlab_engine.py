"""MATLAB engine gateway: configuration, script persistence and subprocess runs.

Every engine invocation is a fresh ``matlab`` process started in batch mode.
Outcomes are classified into ExecutionResult records; subprocess failures are
reported in the result rather than raised.

  mcp_server.py --run('<scratch>/<name>.m')--> matlab -nosplash -batch
"""

import asyncio
import os
import platform
import re
import signal
import sys
import tempfile
import time
from dataclasses import dataclass

IS_WINDOWS = platform.system() == "Windows"

DEFAULT_EXECUTABLE = "matlab"
DEFAULT_PAUSE_SECONDS = 1
SCRIPT_EXTENSION = ".m"

IDENTIFIER_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9_]{0,62}")

NO_OUTPUT_PLACEHOLDER = "Execution completed (no output captured)"
TIMEOUT_MESSAGE = "execution timed out"

# Shell convention for "command not found"
EXIT_COMMAND_NOT_FOUND = 127


def _log(message: str) -> None:
    print(f"[matlab] {message}", file=sys.stderr, flush=True)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class EngineError(Exception):
    """Base class for gateway failures."""


class InvalidIdentifier(EngineError, ValueError):
    pass


class PersistenceFailure(EngineError):
    pass


class ScriptNotFound(EngineError):
    pass


class SubprocessFailure(EngineError):
    """Non-zero exit, spawn error or timeout of an engine process."""

    def __init__(self, message: str, returncode: int | None = None,
                 not_found: bool = False):
        super().__init__(message)
        self.returncode = returncode
        self.not_found = not_found


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EngineConfig:
    executable_path: str
    scratch_dir: str
    pause_seconds: int = DEFAULT_PAUSE_SECONDS

    @classmethod
    def from_env(cls, argv: list[str] | None = None,
                 environ: dict | None = None) -> "EngineConfig":
        """Resolve configuration from environment overrides and argv[0] (pause)."""
        env = os.environ if environ is None else environ
        executable = env.get("ENGINE_PATH") or env.get("MATLAB_PATH") or DEFAULT_EXECUTABLE
        scratch_dir = (env.get("ENGINE_TEMP_DIR") or env.get("MATLAB_TEMP_DIR")
                       or os.path.join(tempfile.gettempdir(), "matlab-mcp"))
        pause = DEFAULT_PAUSE_SECONDS
        if argv:
            try:
                pause = int(argv[0])
            except ValueError:
                _log(f"Ignoring pause argument {argv[0]!r}: not an integer")
            else:
                if pause < 0:
                    _log(f"Ignoring pause argument {argv[0]!r}: must be >= 0")
                    pause = DEFAULT_PAUSE_SECONDS
        return cls(
            executable_path=executable,
            scratch_dir=os.path.abspath(scratch_dir),
            pause_seconds=pause,
        )


@dataclass(frozen=True)
class ExecutionResult:
    output: str
    error: str | None = None


@dataclass(frozen=True)
class GeneratedScript:
    code: str
    script_path: str


@dataclass(frozen=True)
class ShutdownResult:
    success: bool
    error: str | None = None


def is_valid_identifier(name) -> bool:
    """True if *name* is a legal MATLAB identifier (letter first, <= 63 chars)."""
    return isinstance(name, str) and IDENTIFIER_PATTERN.fullmatch(name) is not None


def _script_mode(script_path: str) -> int:
    """Permission bits a plain ``open(script_path, "w")`` would leave behind.

    An existing script keeps its mode; a new one gets 0o666 minus the umask.
    """
    try:
        return os.stat(script_path).st_mode & 0o777
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def _matlab_path(path: str) -> str:
    """Render *path* as a single-quoted MATLAB string body."""
    return path.replace("\\", "/").replace("'", "''")


# ---------------------------------------------------------------------------
# MatlabGateway
# ---------------------------------------------------------------------------

class MatlabGateway:
    EXECUTION_TIMEOUT_SECONDS = 30
    SIGTERM_GRACE_SECONDS = 2

    def __init__(self, config: EngineConfig | None = None):
        self.config = config if config is not None else EngineConfig.from_env(sys.argv[1:])
        self.ensure_scratch_dir()

    @property
    def scratch_dir(self) -> str:
        return self.config.scratch_dir

    def ensure_scratch_dir(self) -> None:
        os.makedirs(self.config.scratch_dir, exist_ok=True)

    def script_path(self, script_name: str) -> str:
        return os.path.join(self.config.scratch_dir, f"{script_name}{SCRIPT_EXTENSION}")

    def validate(self, name) -> bool:
        return is_valid_identifier(name)

    # -- persistence --------------------------------------------------------

    def generate_code(self, script_name: str, code: str) -> GeneratedScript:
        """Save *code* as ``<script_name>.m``, replacing any previous version.

        The text lands via a temporary sibling file and ``os.replace``, so a
        failed write never leaves a truncated script behind.
        """
        if not self.validate(script_name):
            raise InvalidIdentifier("Script name must be a valid MATLAB identifier")

        script_path = self.script_path(script_name)
        tmp_path = None
        try:
            self.ensure_scratch_dir()
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", newline="", dir=self.config.scratch_dir,
                prefix=f".{script_name}.", suffix=".tmp", delete=False,
            ) as f:
                tmp_path = f.name
                f.write(code)
            os.chmod(tmp_path, _script_mode(script_path))
            os.replace(tmp_path, script_path)
        except OSError as e:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise PersistenceFailure(f"Failed to create MATLAB script: {e}") from e

        _log(f"Saved script {script_name} -> {script_path}")
        return GeneratedScript(code=code, script_path=script_path)

    # -- execution ----------------------------------------------------------

    def _batch_command(self, statements: str) -> list[str]:
        return [self.config.executable_path, "-nosplash", "-batch", statements]

    def _desktop_command(self, statements: str) -> list[str]:
        return [self.config.executable_path, "-nosplash", "-nodesktop", "-r", statements]

    async def execute_code(self, code: str) -> ExecutionResult:
        """Run ad hoc *code* once, bounded by EXECUTION_TIMEOUT_SECONDS.

        Never raises: every failure comes back as ``ExecutionResult("", msg)``.
        """
        try:
            self.ensure_scratch_dir()
            # Same-millisecond calls share a file name
            script_path = os.path.join(
                self.config.scratch_dir,
                f"temp_script_{int(time.time() * 1000)}{SCRIPT_EXTENSION}",
            )
            with open(script_path, "w", encoding="utf-8", newline="") as f:
                f.write(code)

            stdout, stderr = await self._run(
                self._batch_command(f"run('{_matlab_path(script_path)}');"),
                timeout=self.EXECUTION_TIMEOUT_SECONDS,
            )
        except (OSError, SubprocessFailure) as e:
            return ExecutionResult(output="", error=str(e))

        return ExecutionResult(
            output=stdout or NO_OUTPUT_PLACEHOLDER,
            error=stderr or None,
        )

    async def execute_script(self, script_name: str) -> ExecutionResult:
        """Run a saved script, then hold the engine open for ``pause_seconds``.

        No timeout applies here; plotting sessions may run for as long as
        they need.
        """
        script_path = self.script_path(script_name)
        if not self.validate(script_name) or not os.path.exists(script_path):
            raise ScriptNotFound(
                f"Script {script_name}{SCRIPT_EXTENSION} not found in {self.config.scratch_dir}"
            )

        statements = (
            f"run('{_matlab_path(script_path)}'); "
            f"pause({self.config.pause_seconds}); exit;"
        )
        try:
            stdout, stderr = await self._run(self._batch_command(statements))
        except SubprocessFailure as e:
            _log(f"Error executing MATLAB script {script_name}: {e}")
            return ExecutionResult(output="", error=str(e))

        return ExecutionResult(output=stdout, error=stderr or None)

    async def check_availability(self) -> bool:
        try:
            await self._run(self._desktop_command("disp('MATLAB is available'); exit;"))
        except SubprocessFailure as e:
            _log(f"MATLAB is not available: {e}")
            return False
        return True

    async def close_windows(self) -> ShutdownResult:
        """Ask every running MATLAB instance to quit.

        Advisory only: apart from a missing executable, failures (typically
        "nothing to close") are reported as success.
        """
        try:
            await self._run(self._desktop_command("quit force; exit;"))
        except SubprocessFailure as e:
            message = str(e)
            lowered = message.lower()
            if e.not_found or "not found" in lowered or "not recognized" in lowered:
                return ShutdownResult(
                    success=False,
                    error=f"MATLAB executable not found: {message}",
                )
        return ShutdownResult(success=True)

    # -- subprocess plumbing ------------------------------------------------

    async def _run(self, argv: list[str], timeout: float | None = None) -> tuple[str, str]:
        """Run *argv* to completion and return decoded (stdout, stderr).

        Raises SubprocessFailure on spawn error, non-zero exit or timeout. On
        timeout the child's process group is terminated before raising.
        """
        _log(f"Running: {' '.join(argv)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=not IS_WINDOWS,
            )
        except FileNotFoundError as e:
            raise SubprocessFailure(
                f"{argv[0]}: command not found ({e.strerror})", not_found=True,
            ) from e
        except OSError as e:
            raise SubprocessFailure(f"Failed to start {argv[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            _log(f"Timed out after {timeout}s, terminating pid {proc.pid}")
            await self._terminate(proc)
            raise SubprocessFailure(TIMEOUT_MESSAGE) from None

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            detail = err.strip() or out.strip()
            message = f"Command failed with exit code {proc.returncode}: {' '.join(argv)}"
            if detail:
                message += f"\n{detail}"
            raise SubprocessFailure(
                message,
                returncode=proc.returncode,
                not_found=proc.returncode == EXIT_COMMAND_NOT_FOUND,
            )
        return out, err

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        # SIGTERM first, SIGKILL after the grace period
        self._signal(proc, force=False)
        try:
            await asyncio.wait_for(proc.wait(), self.SIGTERM_GRACE_SECONDS)
        except asyncio.TimeoutError:
            self._signal(proc, force=True)
            await proc.wait()

    @staticmethod
    def _signal(proc: asyncio.subprocess.Process, force: bool) -> None:
        try:
            if IS_WINDOWS:
                if force:
                    proc.kill()
                else:
                    proc.terminate()
            else:
                os.killpg(proc.pid, signal.SIGKILL if force else signal.SIGTERM)
        except ProcessLookupError:
            pass
