"""Per-target workspace: an isolated directory, its logs and its environment."""

import logging
import os
import shutil
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 600  # seconds


class WorkspaceError(Exception):
    """Raised when a workspace cannot be prepared or a command cannot run."""


class CommandError(WorkspaceError):
    """Raised when a command exits non-zero or times out."""

    def __init__(self, command: str, code: int | None, working_dir: Path):
        self.command = command
        self.code = code
        self.working_dir = working_dir
        if code is None:
            reason = "timed out"
        else:
            reason = f"exited with {code}"
        super().__init__(
            f"{command} {reason}. You can check {working_dir} for the output files"
        )


def make_script_absolute(path: str) -> str:
    """Resolve a relative script path against the process working directory."""
    script = Path(path)
    if not script.is_absolute():
        script = Path.cwd() / script
    return str(script)


class Workspace:
    """Owns one target's working directory for the duration of a pipeline.

    Every command's stdout and stderr are appended to ``stdout.log`` and
    ``stderr.log`` in the workspace root, each prefixed with the command line.
    Use it as a context manager so the log files are closed on every exit
    path; the directory is left behind for inspection.
    """

    def __init__(
        self,
        root_dir: Path,
        env: dict[str, str] | None = None,
        timeout: int = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.root_dir = Path(root_dir)
        self.working_dir = self.root_dir
        self.name = self.root_dir.name
        self.env: dict[str, str] = dict(env or {})
        self.timeout = timeout
        self._stdout: IO[bytes] | None = None
        self._stderr: IO[bytes] | None = None

    @classmethod
    def create(
        cls,
        parent: str | Path,
        name: str,
        env: dict[str, str] | None = None,
        timeout: int = DEFAULT_COMMAND_TIMEOUT,
    ) -> "Workspace":
        """Create a clean ``<parent>/<name>`` directory and open its logs.

        *name* must be a single path component; anything that resolves
        outside *parent* raises WorkspaceError before touching the disk.
        """
        parent_dir = Path(parent).resolve()
        root = (parent_dir / name).resolve()
        if not name or root.parent != parent_dir or root.name != name:
            raise WorkspaceError(f"Invalid workspace name {name!r} under {parent_dir}")
        if root.exists():
            logger.warning("Removing existing workspace at %s", root)
            shutil.rmtree(root)
        try:
            root.mkdir(parents=True)
        except OSError as e:
            raise WorkspaceError(f"Unable to create workspace {root}: {e}") from e
        workspace = cls(root, env=env, timeout=timeout)
        workspace.open()
        return workspace

    def open(self) -> None:
        self._stdout = open(self.root_dir / "stdout.log", "ab")
        self._stderr = open(self.root_dir / "stderr.log", "ab")

    def close(self) -> None:
        for handle in (self._stdout, self._stderr):
            if handle is not None and not handle.closed:
                handle.flush()
                handle.close()

    @property
    def closed(self) -> bool:
        return self._stdout is None or self._stdout.closed

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def set_working_dir(self, path: str) -> None:
        self.working_dir = self.root_dir / path

    def set_env_vars(self, env: dict[str, str]) -> None:
        self.env.update(env)

    def _write(self, stdout: bytes, stderr: bytes) -> None:
        if self._stdout is None or self._stderr is None:
            raise WorkspaceError(f"Workspace {self.root_dir} is not open")
        self._stdout.write(stdout)
        self._stderr.write(stderr)
        self._stdout.flush()
        self._stderr.flush()

    def run_command(self, command: str) -> subprocess.CompletedProcess:
        """Run *command* through ``/bin/sh`` in the working directory.

        Output goes to the logs byte for byte; the returned process carries
        it decoded as UTF-8 with undecodable bytes replaced.  Raises
        CommandError if the command exceeds the workspace timeout.
        """
        logger.debug("Running %s in %s", command, self.working_dir)
        stamp = datetime.now(timezone.utc).isoformat()
        notification = f">> [{stamp}] Running {command}\n".encode()
        self._write(notification, notification)

        try:
            proc = subprocess.run(
                ["/bin/sh", "-c", command],
                cwd=self.working_dir,
                capture_output=True,
                timeout=self.timeout,
                env={**os.environ, **self.env},
            )
        except subprocess.TimeoutExpired as e:
            self._write(b"", f"Timed out after {self.timeout}s\n".encode())
            raise CommandError(command, None, self.working_dir) from e
        except OSError as e:
            raise WorkspaceError(f"Unable to run {command}: {e}") from e

        stdout = proc.stdout or b""
        stderr = proc.stderr or b""
        self._write(stdout, stderr)
        return subprocess.CompletedProcess(
            proc.args,
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    def run_command_successfully(self, command: str) -> subprocess.CompletedProcess:
        proc = self.run_command(command)
        if proc.returncode != 0:
            raise CommandError(command, proc.returncode, self.working_dir)
        return proc
